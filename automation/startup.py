"""Command line interface for running and operating the workflow automation service."""

import sys
import json
import argparse
from typing import List, Optional

from .config import (
    AppConfig,
    load_config,
    get_development_config,
    get_production_config,
    get_testing_config,
    validate_config
)
from .core.exceptions import WorkflowEngineError
from .core.logging import get_logger, setup_logging


def create_argument_parser() -> argparse.ArgumentParser:
    """Create command line argument parser."""
    parser = argparse.ArgumentParser(
        description="Workflow Automation Engine - wire business events to automated actions"
    )

    parser.add_argument("--host", help="Host to bind the server to (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, help="Port to bind the server to (default: 8000)")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload for development")
    parser.add_argument(
        "--env",
        choices=["development", "production", "testing"],
        help="Environment configuration preset"
    )
    parser.add_argument("--config", help="Path to a .env configuration file")
    parser.add_argument("--database-url", help="Database connection URL")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level"
    )
    parser.add_argument("--log-file", help="Path to log file")
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")
    parser.add_argument(
        "--max-execution-steps",
        type=int,
        help="Maximum number of edges a single execution may traverse"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("run", help="Run the workflow automation server")

    db_parser = subparsers.add_parser("db", help="Database management commands")
    db_subparsers = db_parser.add_subparsers(dest="db_command", help="Database commands")
    db_subparsers.add_parser("init", help="Initialize database tables")
    db_subparsers.add_parser("migrate", help="Run database migrations")
    db_subparsers.add_parser("reset", help="Reset database (drop and recreate tables)")

    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_subparsers = config_parser.add_subparsers(dest="config_command", help="Config commands")
    config_subparsers.add_parser("show", help="Show current configuration")
    config_subparsers.add_parser("validate", help="Validate configuration")

    subparsers.add_parser("catalog", help="List registered trigger and action types")

    trigger_parser = subparsers.add_parser("trigger", help="Fire a trigger against active workflows")
    trigger_parser.add_argument("trigger_type", help="Trigger type, e.g. orders.created")
    trigger_parser.add_argument("--payload", default="{}", help="JSON payload for the trigger")

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

    if args.host:
        config.host = args.host
    if args.port:
        config.port = args.port
    if args.reload:
        config.reload = args.reload
    if args.database_url:
        config.database_url = args.database_url
    if args.log_level:
        config.log_level = args.log_level
    if args.log_file:
        config.log_file = args.log_file
    if args.debug:
        config.debug = args.debug
    if args.max_execution_steps:
        config.max_execution_steps = args.max_execution_steps

    return config


def run_server(config: AppConfig):
    """Run the workflow automation server."""
    import uvicorn
    from .factory import create_app

    app = create_app(config)
    uvicorn.run(app, **config.get_uvicorn_config())


def run_database_command(command: str, config: AppConfig):
    """Run database management commands."""
    from .storage.database import create_tables, drop_tables, get_database_engine
    from .storage.migrations import run_migrations

    logger = get_logger(__name__)
    engine = get_database_engine(config.database_url, connect_args=config.get_database_connect_args())

    if command == "init":
        logger.info("Initializing database tables...")
        create_tables(engine)
        logger.info("Database tables created successfully")

    elif command == "migrate":
        logger.info("Running database migrations...")
        run_migrations(engine)
        logger.info("Database migrations completed successfully")

    elif command == "reset":
        logger.info("Resetting database...")
        drop_tables(engine)
        create_tables(engine)
        run_migrations(engine)
        logger.info("Database reset completed successfully")


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
    print(f"  Max Execution Steps: {config.max_execution_steps}")
    print(f"  Webhook Delivery: {'enabled' if config.webhook_delivery_enabled else 'disabled'}")


def validate_configuration_command(config: AppConfig):
    """Validate configuration and show results."""
    try:
        validate_config(config)
        print("Configuration validation: PASSED")
        print("All configuration settings are valid.")
    except ValueError as e:
        print("Configuration validation: FAILED")
        print(f"Error: {e}")
        sys.exit(1)


def show_catalog(config: AppConfig):
    """Print the built-in trigger and action types."""
    from .core.registry import ActionRegistry, TriggerRegistry
    from .tools import register_builtins

    triggers = TriggerRegistry()
    actions = ActionRegistry()
    register_builtins(triggers, actions)

    print("Triggers:")
    for trigger in triggers.list():
        print(f"  {trigger.type}: {trigger.label}")
    print("Actions:")
    for action in actions.list():
        simulation = " (simulation-safe)" if action.supports_simulation else ""
        print(f"  {action.type}: {action.label}{simulation}")


def fire_trigger(config: AppConfig, trigger_type: str, payload: str):
    """Fire a trigger against the configured database and print the results."""
    from .factory import initialize_core_components, initialize_database, graceful_shutdown

    logger = get_logger(__name__)
    initialize_database(config, logger)
    state = initialize_core_components(config, logger)
    try:
        results = state.execution_engine.run_trigger(trigger_type, json.loads(payload))
        print(json.dumps([result.model_dump(mode="json") for result in results], indent=2))
    finally:
        graceful_shutdown(state, logger)


def main(argv: Optional[List[str]] = None):
    """Main entry point for the application."""
    parser = create_argument_parser()
    args = parser.parse_args(argv)

    try:
        config = load_configuration(args)
        validate_config(config)
        setup_logging(level=config.log_level.value, log_file=config.log_file)

        if args.command == "run" or args.command is None:
            run_server(config)

        elif args.command == "db":
            if args.db_command:
                run_database_command(args.db_command, config)
            else:
                print("Database command required. Use --help for options.")
                sys.exit(1)

        elif args.command == "config":
            if args.config_command == "show":
                show_configuration(config)
            elif args.config_command == "validate":
                validate_configuration_command(config)
            else:
                print("Configuration command required. Use --help for options.")
                sys.exit(1)

        elif args.command == "catalog":
            show_catalog(config)

        elif args.command == "trigger":
            fire_trigger(config, args.trigger_type, args.payload)

        else:
            parser.print_help()

    except (ValueError, WorkflowEngineError) as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
