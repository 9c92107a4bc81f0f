"""Application startup script and CLI interface."""

import sys
import argparse

from .config import (
    AppConfig,
    LogLevel,
    load_config,
    get_development_config,
    get_production_config,
    get_testing_config,
    set_config,
    validate_config
)
from .core.logging import get_logger, setup_logging


def create_argument_parser() -> argparse.ArgumentParser:
    """Create command line argument parser."""
    parser = argparse.ArgumentParser(
        prog="durable-flow",
        description="Durable Flow - a workflow engine with an append-only execution journal"
    )

    # Server configuration
    parser.add_argument("--host", help="Host to bind the server to (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, help="Port to bind the server to (default: 8000)")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload for development")

    # Environment configuration
    parser.add_argument(
        "--env",
        choices=["development", "production", "testing"],
        help="Environment configuration preset"
    )
    parser.add_argument("--config", help="Path to a .env configuration file")

    parser.add_argument("--database-url", help="Database connection URL")

    parser.add_argument(
        "--log-level",
        choices=[level.value for level in LogLevel],
        help="Logging level"
    )
    parser.add_argument("--log-file", help="Path to log file")
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")

    parser.add_argument(
        "--max-concurrent-nodes",
        type=int,
        help="Maximum number of activities running at once"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser("run", help="Run the workflow engine server")
    run_parser.add_argument(
        "--workers",
        type=int,
        default=1,
        help="Number of worker processes (default: 1)"
    )

    db_parser = subparsers.add_parser("db", help="Database management commands")
    db_subparsers = db_parser.add_subparsers(dest="db_command", help="Database commands")
    db_subparsers.add_parser("init", help="Create the journal tables and indexes")
    db_subparsers.add_parser("reset", help="Drop and recreate the journal tables")
    purge_parser = db_subparsers.add_parser("purge", help="Delete finished executions past retention")
    purge_parser.add_argument("--days", type=int, help="Retention window in days")

    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_subparsers = config_parser.add_subparsers(dest="config_command", help="Config commands")
    config_subparsers.add_parser("show", help="Show current configuration")
    config_subparsers.add_parser("validate", help="Validate configuration")

    return parser


def load_configuration(args: argparse.Namespace) -> AppConfig:
    """Load configuration based on command line arguments."""
    if args.env == "development":
        config = get_development_config()
    elif args.env == "production":
        config = get_production_config()
    elif args.env == "testing":
        config = get_testing_config()
    else:
        config = load_config(args.config)

    # Command line arguments win over presets and the environment
    if args.host:
        config.host = args.host
    if args.port:
        config.port = args.port
    if args.reload:
        config.reload = True
    if args.database_url:
        config.database_url = args.database_url
    if args.log_level:
        config.log_level = LogLevel(args.log_level)
    if args.log_file:
        config.log_file = args.log_file
    if args.debug:
        config.debug = True
    if args.max_concurrent_nodes:
        config.max_concurrent_nodes = args.max_concurrent_nodes

    set_config(config)
    return config


def run_server(config: AppConfig, workers: int = 1):
    """Run the workflow engine server."""
    import uvicorn
    from .factory import create_app

    logger = get_logger(__name__)
    logger.info(f"Starting server with {workers} worker(s)")

    uvicorn_config = config.get_uvicorn_config()

    if workers > 1 or config.reload:
        # Each worker process builds its own app from the environment
        uvicorn.run(
            "durable_flow.factory:create_app",
            factory=True,
            workers=workers,
            **uvicorn_config
        )
    else:
        uvicorn.run(create_app(config), **uvicorn_config)


def run_database_command(command: str, config: AppConfig, days=None):
    """Run database management commands."""
    from .storage.database import create_database_engine, create_session_factory, drop_tables
    from .storage.migrations import run_migrations
    from .core.journal import ExecutionJournal

    logger = get_logger(__name__)
    engine = create_database_engine(
        config.database_url,
        echo=config.database_echo,
        connect_args=config.get_database_connect_args()
    )
    try:
        if command == "init":
            run_migrations(engine)
            print("Database initialized")

        elif command == "reset":
            logger.warning("Dropping all journal tables")
            drop_tables(engine)
            run_migrations(engine)
            print("Database reset completed")

        elif command == "purge":
            retention = config.historical_data_retention_days if days is None else days
            purged = ExecutionJournal(create_session_factory(engine)).purge_expired(retention)
            print(f"Purged {purged} executions older than {retention} days")
    finally:
        engine.dispose()


def show_configuration(config: AppConfig):
    """Show current configuration."""
    print("Current Configuration:")
    print(f"  App Name: {config.app_name}")
    print(f"  Version: {config.app_version}")
    print(f"  Debug: {config.debug}")
    print(f"  Host: {config.host}")
    print(f"  Port: {config.port}")
    print(f"  Database URL: {config.database_url}")
    print(f"  Log Level: {config.log_level.value}")
    print(f"  Max Concurrent Nodes: {config.max_concurrent_nodes}")
    print(f"  Node Timeout: {config.node_timeout}s")
    print(f"  Lease: {config.lease_seconds}s (heartbeat {config.heartbeat_interval:.1f}s)")
    print(f"  Cancel Grace Period: {config.cancel_grace_period_seconds}s")
    print(f"  WebSocket Max Connections: {config.websocket_max_connections}")


def validate_configuration_command(config: AppConfig):
    """Validate configuration and show results."""
    try:
        validate_config(config)
        print("Configuration validation: PASSED")
    except ValueError as e:
        print("Configuration validation: FAILED")
        print(f"Error: {e}")
        sys.exit(1)


def main(argv=None):
    """Main entry point for the application."""
    parser = create_argument_parser()
    args = parser.parse_args(argv)

    try:
        config = load_configuration(args)
        setup_logging(
            level=config.log_level.value,
            log_file=config.log_file,
            log_format=config.log_format,
            structured=config.log_structured
        )

        if args.command == "config":
            if args.config_command == "show":
                show_configuration(config)
            elif args.config_command == "validate":
                validate_configuration_command(config)
            else:
                print("Configuration command required. Use --help for options.")
                sys.exit(1)
            return

        validate_config(config)

        if args.command == "run" or args.command is None:
            run_server(config, getattr(args, "workers", 1))
        elif args.command == "db":
            if not args.db_command:
                print("Database command required. Use --help for options.")
                sys.exit(1)
            run_database_command(args.db_command, config, getattr(args, "days", None))
        else:
            parser.print_help()

    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
