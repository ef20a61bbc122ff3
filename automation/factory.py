"""Application factory for creating FastAPI instances."""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional
import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from .config import AppConfig, get_config, validate_config
from .core.exceptions import ConfigurationError
from .core.logging import setup_logging, get_logger
from .core.middleware import ErrorHandlingMiddleware, RequestLoggingMiddleware
from .core.registry import ActionRegistry, TriggerRegistry
from .core.validator import GraphValidator
from .core.graph_manager import WorkflowManager
from .core.state_manager import ExecutionStateManager
from .core.execution_engine import ExecutionEngine
from .storage.database import (
    create_tables,
    get_database_engine,
    get_session_factory,
    reset_database_engine,
)
from .storage.migrations import run_migrations
from .tools import register_builtins
from .api.endpoints import router, init_dependencies


class ApplicationState:
    """Container for application state and components."""

    def __init__(self):
        self.config: Optional[AppConfig] = None
        self.triggers: Optional[TriggerRegistry] = None
        self.actions: Optional[ActionRegistry] = None
        self.workflow_manager: Optional[WorkflowManager] = None
        self.state_manager: Optional[ExecutionStateManager] = None
        self.execution_engine: Optional[ExecutionEngine] = None
        self.http_client: Optional[httpx.Client] = None


# Global application state
app_state = ApplicationState()


def initialize_database(config: AppConfig, logger) -> None:
    """Bind the global engine to the configured URL, create tables and run migrations."""
    try:
        reset_database_engine()
        engine = get_database_engine(
            config.database_url,
            echo=config.database_echo,
            connect_args=config.get_database_connect_args()
        )
        create_tables(engine)
        logger.info("Database tables created")

        try:
            run_migrations(engine)
        except SQLAlchemyError as e:
            logger.warning(f"Database migrations failed: {str(e)}")

    except SQLAlchemyError as e:
        logger.error(f"Database initialization failed: {str(e)}")
        raise ConfigurationError(f"Database initialization failed: {str(e)}", config_key="database_url")


def initialize_core_components(config: AppConfig, logger) -> ApplicationState:
    """Build registries, stores and the execution engine."""
    state = ApplicationState()
    state.config = config

    if config.webhook_delivery_enabled:
        state.http_client = httpx.Client(timeout=config.webhook_timeout)
        logger.info("Outbound webhook delivery enabled")

    state.triggers = TriggerRegistry()
    state.actions = ActionRegistry()
    register_builtins(state.triggers, state.actions, http_client=state.http_client)

    session_factory = get_session_factory()
    state.workflow_manager = WorkflowManager(
        GraphValidator(state.triggers, state.actions),
        session_factory=session_factory
    )
    state.state_manager = ExecutionStateManager(session_factory=session_factory)
    state.execution_engine = ExecutionEngine(
        state.triggers,
        state.actions,
        state.workflow_manager,
        state.state_manager,
        max_execution_steps=config.max_execution_steps
    )

    logger.info("Core components initialized")
    return state


def graceful_shutdown(state: ApplicationState, logger) -> None:
    """Release outbound connections and the database engine."""
    logger.info(f"Shutting down {state.config.app_name if state.config else 'application'}")
    if state.http_client is not None:
        state.http_client.close()
        state.http_client = None
    reset_database_engine()


def create_lifespan_handler(config: AppConfig):
    """Create the application lifespan handler for ``config``."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(
            level=config.log_level.value,
            log_file=config.log_file,
            log_format=config.log_format,
            structured=config.structured_logging,
            max_size=config.log_max_size,
            backup_count=config.log_backup_count
        )
        logger = get_logger(__name__)
        logger.info(f"Starting {config.app_name} v{config.app_version}")

        initialize_database(config, logger)
        state = initialize_core_components(config, logger)

        app_state.__dict__.update(state.__dict__)
        init_dependencies(
            workflow_manager=state.workflow_manager,
            execution_engine=state.execution_engine,
            state_manager=state.state_manager
        )
        logger.info("Application startup completed successfully")

        try:
            yield
        finally:
            graceful_shutdown(state, logger)

    return lifespan


def create_app(config: Optional[AppConfig] = None) -> FastAPI:
    """Create and configure FastAPI application instance."""
    if config is None:
        config = get_config()

    validate_config(config)

    app = FastAPI(
        title=config.app_name,
        description="Rules engine wiring business events to notifications, webhooks and CRM updates",
        version=config.app_version,
        debug=config.debug,
        lifespan=create_lifespan_handler(config)
    )

    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_credentials=True,
            allow_methods=config.cors_methods,
            allow_headers=["*"],
        )

    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(ErrorHandlingMiddleware)

    app.include_router(router)
    add_health_endpoints(app, config)

    return app


def add_health_endpoints(app: FastAPI, config: AppConfig) -> None:
    """Add health check endpoints to the application."""

    @app.get("/")
    async def root():
        return {"message": f"{config.app_name} is running", "version": config.app_version}

    @app.get("/health")
    def health_check():
        """Health check including database connectivity."""
        service = config.app_name.lower().replace(" ", "-")
        try:
            db = get_session_factory()()
            try:
                db.execute(text("SELECT 1"))
            finally:
                db.close()
        except SQLAlchemyError as e:
            get_logger(__name__).error(f"Health check failed: {str(e)}")
            return JSONResponse(
                status_code=503,
                content={
                    "status": "unhealthy",
                    "service": service,
                    "error": str(e),
                    "timestamp": datetime.utcnow().isoformat()
                }
            )

        return {
            "status": "healthy",
            "service": service,
            "version": config.app_version,
            "triggers": len(app_state.triggers) if app_state.triggers else 0,
            "actions": len(app_state.actions) if app_state.actions else 0,
        }
