"""Database module for the study scheduler."""

from .pool import Database, get_database

__all__ = ["Database", "get_database"]
