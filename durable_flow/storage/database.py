"""Database connection and session management."""

from typing import Optional
from sqlalchemy import create_engine, Engine, event
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from ..config import AppConfig, get_config

# Global engine and session factory
_engine: Optional[Engine] = None
SessionLocal: Optional[sessionmaker] = None

# Base class for all database models
Base = declarative_base()


def create_database_engine(database_url: str,
                           echo: bool = False,
                           connect_args: Optional[dict] = None) -> Engine:
    """Create an engine suited to the journal's concurrent writers."""
    if connect_args is None:
        if database_url.startswith("sqlite"):
            connect_args = {"check_same_thread": False, "timeout": 30}
        else:
            connect_args = {}

    if database_url.startswith("sqlite") and ":memory:" in database_url:
        engine = create_engine(
            database_url,
            connect_args=connect_args,
            poolclass=StaticPool,
            echo=echo
        )
    else:
        engine = create_engine(
            database_url,
            echo=echo,
            connect_args=connect_args,
            pool_pre_ping=not database_url.startswith("sqlite")
        )

    if database_url.startswith("sqlite"):
        @event.listens_for(engine, "connect")
        def _set_sqlite_pragmas(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute("PRAGMA busy_timeout=30000")
            cursor.close()

    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    """Session factory bound to an engine."""
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def init_database(config: Optional[AppConfig] = None) -> Engine:
    """Create the global engine and session factory from configuration."""
    global _engine, SessionLocal

    config = config or get_config()
    if _engine is None:
        _engine = create_database_engine(
            config.database_url,
            echo=config.database_echo,
            connect_args=config.get_database_connect_args()
        )
        SessionLocal = create_session_factory(_engine)
    return _engine


def get_database_engine() -> Engine:
    """Get the global engine, creating it from configuration on first use."""
    if _engine is None:
        return init_database()
    return _engine


def reset_database_engine():
    """Reset the global database engine (mainly for testing)."""
    global _engine, SessionLocal
    if _engine:
        _engine.dispose()
    _engine = None
    SessionLocal = None


def create_tables(engine: Optional[Engine] = None):
    """Create all database tables."""
    from . import models  # noqa: F401  registers the tables on Base.metadata
    Base.metadata.create_all(bind=engine or get_database_engine())


def drop_tables(engine: Optional[Engine] = None):
    """Drop all database tables."""
    from . import models  # noqa: F401
    Base.metadata.drop_all(bind=engine or get_database_engine())
