"""Configuration management for the durable workflow engine."""

import os
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field, field_validator
from enum import Enum


ENV_PREFIX = "DURABLE_FLOW_"


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class DatabaseType(str, Enum):
    """Supported database types."""
    SQLITE = "sqlite"
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"


class AppConfig(BaseModel):
    """Application configuration settings."""

    # Application settings
    app_name: str = Field(default="Durable Flow", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Server settings
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port")
    reload: bool = Field(default=False, description="Enable auto-reload in development")

    # Database settings
    database_url: str = Field(
        default="sqlite:///./durable_flow.db",
        description="Database connection URL for the execution journal"
    )
    database_echo: bool = Field(default=False, description="Enable SQLAlchemy query logging")
    database_pool_size: int = Field(default=5, description="Database connection pool size")
    database_max_overflow: int = Field(default=10, description="Database connection pool overflow")

    # Execution engine settings
    worker_id: Optional[str] = Field(
        default=None,
        description="Lease owner id of this process; generated when unset"
    )
    max_concurrent_nodes: int = Field(
        default=10,
        description="Maximum number of activities running at once across all executions"
    )
    node_timeout: int = Field(
        default=300,
        description="Default node execution timeout in seconds"
    )
    lease_seconds: float = Field(
        default=30.0,
        description="Execution lease duration; renewed every third of it"
    )
    cancel_grace_period_seconds: float = Field(
        default=5.0,
        description="How long cancellation waits for in-flight activities"
    )
    retry_max_delay_ms: int = Field(default=30000, description="Upper bound on retry backoff")
    retry_backoff_multiplier: float = Field(default=2.0, description="Retry backoff growth factor")
    recover_on_startup: bool = Field(
        default=True,
        description="Take over orphaned executions when the service starts"
    )

    # WebSocket settings
    websocket_max_connections: int = Field(
        default=100,
        description="Maximum WebSocket connections"
    )

    # Logging settings
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log message format"
    )
    log_file: Optional[str] = Field(default=None, description="Log file path")
    log_max_size: int = Field(default=10485760, description="Maximum log file size in bytes")  # 10MB
    log_backup_count: int = Field(default=5, description="Number of log backup files to keep")
    log_structured: bool = Field(default=False, description="Emit JSON log lines")

    # Security settings
    cors_origins: list = Field(
        default=["*"],
        description="CORS allowed origins"
    )
    cors_methods: list = Field(
        default=["GET", "POST", "PUT", "DELETE"],
        description="CORS allowed methods"
    )

    # Storage settings
    enable_historical_data_cleanup: bool = Field(
        default=True,
        description="Purge terminal executions past retention on startup"
    )
    historical_data_retention_days: int = Field(
        default=30,
        description="Number of days to retain finished executions and their journals"
    )

    @field_validator('database_url')
    @classmethod
    def validate_database_url(cls, v):
        """Validate database URL format."""
        if not v:
            raise ValueError("Database URL cannot be empty")

        supported_schemes = ['sqlite', 'postgresql', 'mysql']
        scheme = v.split('://')[0].split('+')[0].lower()

        if scheme not in supported_schemes:
            raise ValueError(f"Unsupported database scheme: {scheme}. Supported: {supported_schemes}")

        return v

    @field_validator('port')
    @classmethod
    def validate_port(cls, v):
        """Validate port number."""
        if not 1 <= v <= 65535:
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator('max_concurrent_nodes')
    @classmethod
    def validate_max_concurrent_nodes(cls, v):
        if v < 1:
            raise ValueError("Maximum concurrent nodes must be at least 1")
        return v

    @field_validator('node_timeout')
    @classmethod
    def validate_node_timeout(cls, v):
        if v < 1:
            raise ValueError("Timeout must be at least 1 second")
        return v

    @field_validator('lease_seconds', 'retry_backoff_multiplier')
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("Value must be positive")
        return v

    @field_validator('cancel_grace_period_seconds')
    @classmethod
    def validate_grace_period(cls, v):
        if v < 0:
            raise ValueError("Grace period cannot be negative")
        return v

    @property
    def database_type(self) -> DatabaseType:
        """Get the database type from the URL."""
        scheme = self.database_url.split('://')[0].lower()
        if scheme.startswith('sqlite'):
            return DatabaseType.SQLITE
        elif scheme.startswith('postgresql'):
            return DatabaseType.POSTGRESQL
        elif scheme.startswith('mysql'):
            return DatabaseType.MYSQL
        else:
            raise ValueError(f"Unknown database type: {scheme}")

    @property
    def is_sqlite(self) -> bool:
        return self.database_type == DatabaseType.SQLITE

    @property
    def is_production(self) -> bool:
        return not self.debug and not self.reload

    @property
    def heartbeat_interval(self) -> float:
        """Seconds between lease renewals."""
        return self.lease_seconds / 3

    def get_database_connect_args(self) -> Dict[str, Any]:
        """Get database connection arguments based on database type."""
        if self.is_sqlite:
            return {"check_same_thread": False, "timeout": 30}
        return {}

    def get_uvicorn_config(self) -> Dict[str, Any]:
        """Get Uvicorn server configuration."""
        return {
            "host": self.host,
            "port": self.port,
            "reload": self.reload,
            "log_level": self.log_level.lower(),
            "access_log": self.debug
        }

    @classmethod
    def from_env(cls) -> 'AppConfig':
        """Create configuration from DURABLE_FLOW_* environment variables."""
        def get_env(key: str, default=None, type_func=str):
            value = os.getenv(f"{ENV_PREFIX}{key}")
            if value is None:
                return default
            if type_func == bool:
                return str(value).lower() in ('true', '1', 'yes', 'on')
            elif type_func == list:
                return [item.strip() for item in value.split(',') if item.strip()] if value else default
            return type_func(value)

        return cls(
            app_name=get_env("APP_NAME", "Durable Flow"),
            app_version=get_env("APP_VERSION", "1.0.0"),
            debug=get_env("DEBUG", False, bool),
            host=get_env("HOST", "0.0.0.0"),
            port=get_env("PORT", 8000, int),
            reload=get_env("RELOAD", False, bool),
            database_url=get_env("DATABASE_URL", "sqlite:///./durable_flow.db"),
            database_echo=get_env("DATABASE_ECHO", False, bool),
            database_pool_size=get_env("DATABASE_POOL_SIZE", 5, int),
            database_max_overflow=get_env("DATABASE_MAX_OVERFLOW", 10, int),
            worker_id=get_env("WORKER_ID", None),
            max_concurrent_nodes=get_env("MAX_CONCURRENT_NODES", 10, int),
            node_timeout=get_env("NODE_TIMEOUT", 300, int),
            lease_seconds=get_env("LEASE_SECONDS", 30.0, float),
            cancel_grace_period_seconds=get_env("CANCEL_GRACE_PERIOD_SECONDS", 5.0, float),
            retry_max_delay_ms=get_env("RETRY_MAX_DELAY_MS", 30000, int),
            retry_backoff_multiplier=get_env("RETRY_BACKOFF_MULTIPLIER", 2.0, float),
            recover_on_startup=get_env("RECOVER_ON_STARTUP", True, bool),
            websocket_max_connections=get_env("WEBSOCKET_MAX_CONNECTIONS", 100, int),
            log_level=LogLevel(get_env("LOG_LEVEL", "INFO").upper()),
            log_format=get_env("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s"),
            log_file=get_env("LOG_FILE", None),
            log_max_size=get_env("LOG_MAX_SIZE", 10485760, int),
            log_backup_count=get_env("LOG_BACKUP_COUNT", 5, int),
            log_structured=get_env("LOG_STRUCTURED", False, bool),
            cors_origins=get_env("CORS_ORIGINS", ["*"], list),
            cors_methods=get_env("CORS_METHODS", ["GET", "POST", "PUT", "DELETE"], list),
            enable_historical_data_cleanup=get_env("ENABLE_HISTORICAL_DATA_CLEANUP", True, bool),
            historical_data_retention_days=get_env("HISTORICAL_DATA_RETENTION_DAYS", 30, int)
        )


# Global configuration instance
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def load_config(config_file: Optional[str] = None) -> AppConfig:
    """Load configuration from a .env file and environment variables."""
    global _config
    from dotenv import load_dotenv

    if config_file and os.path.exists(config_file):
        load_dotenv(config_file)
    elif os.path.exists('.env'):
        load_dotenv('.env')

    _config = AppConfig.from_env()

    return _config


def set_config(config: AppConfig) -> None:
    """Install an explicit configuration as the global instance."""
    global _config
    _config = config


def reset_config():
    """Reset the global configuration instance (mainly for testing)."""
    global _config
    _config = None


def validate_config(config: AppConfig) -> None:
    """Validate configuration settings that depend on the environment."""
    errors = []

    if config.is_sqlite and ":memory:" not in config.database_url:
        db_path = config.database_url.split(":///", 1)[-1]
        db_dir = os.path.dirname(db_path)
        if db_dir and not os.path.exists(db_dir):
            try:
                os.makedirs(db_dir, exist_ok=True)
            except OSError as e:
                errors.append(f"Cannot create database directory {db_dir}: {e}")

    if config.log_file:
        log_dir = os.path.dirname(config.log_file)
        if log_dir and not os.path.exists(log_dir):
            try:
                os.makedirs(log_dir, exist_ok=True)
            except OSError as e:
                errors.append(f"Cannot create log directory {log_dir}: {e}")

    if config.cancel_grace_period_seconds >= config.lease_seconds:
        errors.append("Cancel grace period must be shorter than the lease duration")

    if config.max_concurrent_nodes > 200:
        errors.append("High concurrent node limit may exhaust the worker pool")

    if errors:
        raise ValueError(f"Configuration validation failed: {'; '.join(errors)}")


def get_development_config() -> AppConfig:
    """Get development configuration."""
    return AppConfig(
        debug=True,
        reload=True,
        log_level=LogLevel.DEBUG,
        database_echo=True
    )


def get_production_config() -> AppConfig:
    """Get production configuration."""
    return AppConfig(
        debug=False,
        reload=False,
        log_level=LogLevel.INFO,
        database_echo=False,
        log_structured=True,
        cors_origins=[]
    )


def get_testing_config() -> AppConfig:
    """Get testing configuration."""
    return AppConfig(
        debug=True,
        database_url="sqlite:///:memory:",
        log_level=LogLevel.WARNING,
        max_concurrent_nodes=4,
        node_timeout=10,
        lease_seconds=3.0,
        cancel_grace_period_seconds=0.5,
        recover_on_startup=False,
        enable_historical_data_cleanup=False
    )
