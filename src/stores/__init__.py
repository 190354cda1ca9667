"""Persistence backends for plans, tasks, conflicts and the audit log."""

from .base import (
    AuditLogStore,
    BehaviorProfileProvider,
    ConflictStore,
    PlanStore,
    TaskStore,
)
from .memory import MemoryStores
from .postgres import PostgresStores, ensure_scheduler_tables

__all__ = [
    "AuditLogStore",
    "BehaviorProfileProvider",
    "ConflictStore",
    "PlanStore",
    "TaskStore",
    "MemoryStores",
    "PostgresStores",
    "ensure_scheduler_tables",
]
