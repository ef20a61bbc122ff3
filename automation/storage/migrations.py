"""Database migrations for execution history queries."""

from typing import Optional
from sqlalchemy import Engine, text

from .database import get_database_engine
from ..core.logging import get_logger

logger = get_logger(__name__)


def create_indexes_for_history_queries(engine: Optional[Engine] = None):
    """Create indexes used by execution history listings and trigger matching."""
    engine = engine or get_database_engine()
    try:
        with engine.connect() as connection:
            # Execution history per workflow, newest first
            connection.execute(text("""
                CREATE INDEX IF NOT EXISTS idx_workflow_executions_workflow_started
                ON workflow_executions(workflow_id, started_at DESC)
            """))

            # Status filtering on execution history
            connection.execute(text("""
                CREATE INDEX IF NOT EXISTS idx_workflow_executions_status
                ON workflow_executions(status)
            """))

            # Ordered event retrieval for a single execution
            connection.execute(text("""
                CREATE INDEX IF NOT EXISTS idx_workflow_execution_events_execution_id
                ON workflow_execution_events(execution_id, id)
            """))

            # run_trigger looks up active workflows by trigger node type
            connection.execute(text("""
                CREATE INDEX IF NOT EXISTS idx_workflow_nodes_workflow_kind_type
                ON workflow_nodes(workflow_id, kind, type)
            """))

            connection.commit()
            logger.info("Created database indexes for execution history queries")

    except Exception as e:
        logger.error(f"Failed to create database indexes: {str(e)}")
        raise


def optimize_database(engine: Optional[Engine] = None):
    """Apply backend-specific settings for the workflow tables."""
    engine = engine or get_database_engine()
    try:
        with engine.connect() as connection:
            if engine.url.get_backend_name() == "sqlite" and engine.url.database not in (None, "", ":memory:"):
                # WAL lets history reads proceed while an execution transaction is open
                connection.execute(text("PRAGMA journal_mode=WAL"))
                connection.execute(text("PRAGMA optimize"))
                logger.info("Applied SQLite optimizations")

            connection.commit()

    except Exception as e:
        logger.error(f"Failed to optimize database: {str(e)}")
        raise


def run_migrations(engine: Optional[Engine] = None):
    """Run all migrations."""
    logger.info("Starting database migrations")
    create_indexes_for_history_queries(engine)
    optimize_database(engine)
    logger.info("Database migrations completed successfully")


if __name__ == "__main__":
    run_migrations()
