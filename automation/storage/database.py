"""Database connection and session management."""

import os
from typing import Optional
from sqlalchemy import create_engine, Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

# Global engine instance
_engine: Optional[Engine] = None

# Base class for all database models
Base = declarative_base()

# Session factory, bound lazily to the global engine
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False)


def create_database_engine(database_url: str,
                           echo: bool = False,
                           connect_args: Optional[dict] = None) -> Engine:
    """Create a standalone engine with the right pooling for the URL."""
    if connect_args is None:
        if database_url.startswith("sqlite"):
            connect_args = {"check_same_thread": False}
        else:
            connect_args = {}

    if database_url.startswith("sqlite") and ":memory:" in database_url:
        # In-memory SQLite only exists for the lifetime of one connection
        return create_engine(
            database_url,
            connect_args=connect_args,
            poolclass=StaticPool,
            echo=echo
        )
    return create_engine(database_url, echo=echo, connect_args=connect_args)


def get_database_engine(database_url: Optional[str] = None,
                        echo: bool = False,
                        connect_args: Optional[dict] = None) -> Engine:
    """Get or create the global database engine."""
    global _engine

    if _engine is None:
        if database_url is None:
            database_url = os.getenv(
                "WORKFLOW_AUTOMATION_DATABASE_URL", "sqlite:///./workflow_automation.db"
            )
        _engine = create_database_engine(database_url, echo=echo, connect_args=connect_args)
        SessionLocal.configure(bind=_engine)

    return _engine


def reset_database_engine():
    """Reset the global database engine (mainly for testing)."""
    global _engine
    if _engine:
        _engine.dispose()
    _engine = None


def get_session_factory() -> sessionmaker:
    """Return the session factory bound to the global engine."""
    get_database_engine()
    return SessionLocal


def create_tables(engine: Optional[Engine] = None):
    """Create all database tables."""
    # Models must be imported so they are attached to Base.metadata
    from . import models  # noqa: F401
    Base.metadata.create_all(bind=engine or get_database_engine())


def drop_tables(engine: Optional[Engine] = None):
    """Drop all database tables."""
    from . import models  # noqa: F401
    Base.metadata.drop_all(bind=engine or get_database_engine())
