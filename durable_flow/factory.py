"""Application factory for creating FastAPI instances."""

from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.engine import Engine

from .config import AppConfig, get_config, validate_config
from .core.logging import setup_logging, get_logger
from .core.activity_registry import ActivityRegistry
from .core.runtime import WorkflowRuntime
from .core.websocket_manager import WebSocketManager
from .activities.builtin import register_builtin_activities
from .storage.database import create_database_engine, create_session_factory
from .storage.migrations import run_migrations
from .api.endpoints import router, init_dependencies
from .models.core import utc_now


class ApplicationState:
    """Container for application state and components."""

    def __init__(self):
        self.config: Optional[AppConfig] = None
        self.engine: Optional[Engine] = None
        self.registry: Optional[ActivityRegistry] = None
        self.runtime: Optional[WorkflowRuntime] = None
        self.websocket_manager: Optional[WebSocketManager] = None


# Global application state
app_state = ApplicationState()


def initialize_database(config: AppConfig, logger) -> Engine:
    """Create the engine and bring the journal schema up to date."""
    try:
        engine = create_database_engine(
            config.database_url,
            echo=config.database_echo,
            connect_args=config.get_database_connect_args()
        )
        run_migrations(engine)
        logger.info("Database initialized")
        return engine
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise


def initialize_runtime(config: AppConfig, engine: Engine, registry: Optional[ActivityRegistry],
                       logger) -> tuple:
    """Build the activity registry, runtime and websocket fan-out."""
    registry = register_builtin_activities(registry or ActivityRegistry())
    websocket_manager = WebSocketManager(max_connections=config.websocket_max_connections)
    runtime = WorkflowRuntime(
        session_factory=create_session_factory(engine),
        registry=registry,
        config=config,
        listeners=[websocket_manager.on_journal_event]
    )
    logger.info(f"Runtime initialized with {len(registry)} activities")
    return registry, runtime, websocket_manager


def run_startup_maintenance(config: AppConfig, runtime: WorkflowRuntime, logger) -> None:
    """Recover orphaned executions and purge expired history."""
    if config.recover_on_startup:
        recovered = runtime.recover_all()
        logger.info(f"Startup recovery resumed {len(recovered)} executions")

    if config.enable_historical_data_cleanup:
        try:
            purged = runtime.purge_expired()
            logger.info(f"Purged {purged} executions older than {config.historical_data_retention_days} days")
        except Exception as e:
            logger.warning(f"Historical data cleanup failed: {str(e)}")


def graceful_shutdown(runtime: Optional[WorkflowRuntime], websocket_manager: Optional[WebSocketManager],
                      engine: Optional[Engine], logger) -> None:
    """Handle graceful shutdown of application components."""
    logger.info("Shutting down Durable Flow")

    if websocket_manager is not None:
        try:
            websocket_manager.stop_broadcast_processor()
        except Exception as e:
            logger.error(f"Error stopping WebSocket broadcast processor: {str(e)}")

    if runtime is not None:
        try:
            runtime.shutdown()
        except Exception as e:
            logger.error(f"Error during runtime shutdown: {str(e)}")

    if engine is not None:
        engine.dispose()


def create_lifespan_handler(config: AppConfig, registry: Optional[ActivityRegistry] = None):
    """Create application lifespan handler."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger = setup_logging(
            level=config.log_level.value,
            log_file=config.log_file,
            log_format=config.log_format,
            structured=config.log_structured,
            max_size=config.log_max_size,
            backup_count=config.log_backup_count
        )
        logger.info(f"Starting {config.app_name} v{config.app_version}")

        engine = runtime = websocket_manager = None
        try:
            engine = initialize_database(config, logger)
            active_registry, runtime, websocket_manager = initialize_runtime(config, engine, registry, logger)

            app_state.config = config
            app_state.engine = engine
            app_state.registry = active_registry
            app_state.runtime = runtime
            app_state.websocket_manager = websocket_manager

            init_dependencies(runtime=runtime, websocket_manager=websocket_manager)
            websocket_manager.start_broadcast_processor()
            run_startup_maintenance(config, runtime, logger)

            logger.info("Application startup completed successfully")
        except Exception as e:
            logger.error(f"Application startup failed: {e}")
            graceful_shutdown(runtime, websocket_manager, engine, logger)
            raise

        try:
            yield
        finally:
            graceful_shutdown(runtime, websocket_manager, engine, logger)
            init_dependencies(runtime=None, websocket_manager=None)

    return lifespan


def create_app(config: Optional[AppConfig] = None, registry: Optional[ActivityRegistry] = None) -> FastAPI:
    """
    Create and configure FastAPI application instance.

    Args:
        config: Configuration; loaded from the environment when omitted
        registry: Registry with custom activities; built-ins are added to it
    """
    if config is None:
        config = get_config()

    validate_config(config)

    app = FastAPI(
        title=config.app_name,
        description="A durable workflow engine with an append-only execution journal",
        version=config.app_version,
        debug=config.debug,
        lifespan=create_lifespan_handler(config, registry)
    )

    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_credentials=True,
            allow_methods=config.cors_methods,
            allow_headers=["*"],
        )

    app.include_router(router)
    add_health_endpoints(app, config)

    return app


def add_health_endpoints(app: FastAPI, config: AppConfig) -> None:
    """Add health check endpoints to the application."""

    service = config.app_name.lower().replace(" ", "-")

    @app.get("/")
    async def root():
        return {"message": f"{config.app_name} is running", "version": config.app_version}

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "service": service, "version": config.app_version}

    @app.get("/health/ready")
    def readiness_check():
        """Readiness check: the journal database must answer."""
        try:
            if app_state.engine is None:
                raise RuntimeError("Database engine not initialized")
            with app_state.engine.connect() as connection:
                connection.execute(text("SELECT 1"))
            return {"status": "ready", "service": service, "timestamp": utc_now().isoformat()}
        except Exception as e:
            get_logger(__name__).error(f"Readiness check failed: {str(e)}")
            return JSONResponse(
                status_code=503,
                content={"status": "not_ready", "service": service, "error": str(e),
                         "timestamp": utc_now().isoformat()}
            )
