"""Database migrations for journal reads and lease scans."""

from typing import Optional
from sqlalchemy import Engine, text

from ..core.logging import get_logger
from .database import create_tables, get_database_engine

logger = get_logger(__name__)


def create_journal_indexes(engine: Engine):
    """Create indexes used by recovery scans and retention cleanup."""
    try:
        with engine.connect() as connection:
            # Recovery scans non-terminal executions by lease expiry
            connection.execute(text("""
                CREATE INDEX IF NOT EXISTS idx_executions_status_lease
                ON executions(status, lease_expires_at)
            """))

            # Retention cleanup
            connection.execute(text("""
                CREATE INDEX IF NOT EXISTS idx_executions_completed_at
                ON executions(completed_at)
            """))

            connection.execute(text("""
                CREATE INDEX IF NOT EXISTS idx_executions_workflow_created
                ON executions(workflow_id, created_at DESC)
            """))

            connection.execute(text("""
                CREATE INDEX IF NOT EXISTS idx_journal_events_kind
                ON journal_events(execution_id, kind)
            """))

            connection.commit()
            logger.info("Created journal indexes")

    except Exception as e:
        logger.error(f"Failed to create journal indexes: {str(e)}")
        raise


def optimize_sqlite(engine: Engine):
    """Enable WAL so journal readers do not block the appending orchestrators."""
    if "sqlite" not in str(engine.url) or ":memory:" in str(engine.url):
        return
    try:
        with engine.connect() as connection:
            connection.execute(text("PRAGMA journal_mode=WAL"))
            connection.execute(text("PRAGMA synchronous=NORMAL"))
            connection.commit()
            logger.info("Applied SQLite journal optimizations")
    except Exception as e:
        logger.error(f"Failed to optimize database: {str(e)}")
        raise


def run_migrations(engine: Optional[Engine] = None):
    """Create tables and indexes, then apply backend-specific settings."""
    engine = engine or get_database_engine()
    logger.info("Starting journal migrations")
    create_tables(engine)
    create_journal_indexes(engine)
    optimize_sqlite(engine)
    logger.info("Journal migrations completed successfully")
