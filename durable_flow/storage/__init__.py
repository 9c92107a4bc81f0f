"""Database models and storage layer."""

from .database import (
    Base,
    create_tables,
    drop_tables,
    create_database_engine,
    create_session_factory,
    init_database,
    reset_database_engine,
)
from .models import ExecutionModel, JournalEventModel
from .migrations import run_migrations

__all__ = [
    "Base",
    "create_tables",
    "drop_tables",
    "create_database_engine",
    "create_session_factory",
    "init_database",
    "reset_database_engine",
    "ExecutionModel",
    "JournalEventModel",
    "run_migrations",
]
