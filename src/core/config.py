"""Configuration management for the study scheduler."""

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, ConfigDict


class SchedulerSettings(BaseModel):
    """Engine tunables. Defaults match the documented scheduling behaviour.

    The 30-minute slot grid and the default study blocks are fixed; unknown
    keys are rejected so a stale YAML file fails loudly.
    """
    model_config = ConfigDict(extra="forbid")

    lookahead_days: int = 30
    max_daily_hours: float = 8.0
    max_tasks_per_day: int = 4
    max_hard_per_day: int = 2
    buffer_ratio: float = 0.9
    max_to_reschedule: int = 50
    suggestion_count: int = 5
    emergency_retention_ratio: float = 0.6
    emergency_intensity: float = 2.0
    emergency_tasks_per_day: int = 8
    hyper_block_min_minutes: int = 90
    hyper_block_max_minutes: int = 120


class AppConfig(BaseModel):
    """Application configuration."""
    scheduler_config_path: Optional[str] = None
    host: str = "0.0.0.0"
    port: int = 5230
    log_level: str = "INFO"
    sweep_enabled: bool = True
    sweep_interval_minutes: int = 15
    sync_task_limit: int = 300


def load_scheduler_settings(config_path: Optional[str] = None) -> SchedulerSettings:
    """Load engine settings from a YAML file.

    Falls back to the built-in defaults when no path is configured. A path
    that is configured but missing is an error.
    """
    if config_path is None:
        config_path = os.getenv("SCHEDULER_CONFIG_PATH")
    if not config_path:
        return SchedulerSettings()

    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Scheduler config not found: {config_path}")

    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}

    return SchedulerSettings(**data)


def load_app_config() -> AppConfig:
    """Load application configuration from environment variables."""
    return AppConfig(
        scheduler_config_path=os.getenv("SCHEDULER_CONFIG_PATH") or None,
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "5230")),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        sweep_enabled=os.getenv("SWEEP_ENABLED", "true").lower() in ("1", "true", "yes"),
        sweep_interval_minutes=int(os.getenv("SWEEP_INTERVAL_MINUTES", "15")),
        sync_task_limit=int(os.getenv("SYNC_TASK_LIMIT", "300")),
    )
