"""Settings for the workflow automation service.

Every field of ``AppConfig`` can be supplied through an environment variable
named ``WORKFLOW_AUTOMATION_<FIELD>`` (for example
``WORKFLOW_AUTOMATION_MAX_EXECUTION_STEPS=250``). List fields take
comma-separated values. A ``.env`` file is read first when present.
"""

import os
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, field_validator


ENV_PREFIX = "WORKFLOW_AUTOMATION_"
SUPPORTED_DATABASE_SCHEMES = ("sqlite", "postgresql", "mysql")
MAX_STEP_LIMIT = 100000


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class DatabaseType(str, Enum):
    SQLITE = "sqlite"
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"


class AppConfig(BaseModel):
    """Service settings: server, storage, execution limits, logging and CORS."""

    app_name: str = Field(default="Workflow Automation Engine", description="Service name shown in logs and /health")
    app_version: str = Field(default="1.0.0")
    debug: bool = Field(default=False)

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)
    reload: bool = Field(default=False, description="Restart the server on code changes")

    database_url: str = Field(
        default="sqlite:///./workflow_automation.db",
        description="SQLAlchemy URL of the workflow and execution history store"
    )
    database_echo: bool = Field(default=False, description="Log every SQL statement")

    max_execution_steps: int = Field(
        default=1000,
        description="Edges a single execution may traverse before it is failed"
    )
    webhook_delivery_enabled: bool = Field(
        default=False,
        description="POST webhook actions to their URL instead of only recording them as enqueued"
    )
    webhook_timeout: float = Field(default=10.0, description="Seconds before an outbound webhook gives up")

    log_level: LogLevel = Field(default=LogLevel.INFO)
    log_format: str = Field(default="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    log_file: Optional[str] = Field(default=None, description="Also write logs to this file, rotated by size")
    log_max_size: int = Field(default=10 * 1024 * 1024, description="Bytes per log file before rotation")
    log_backup_count: int = Field(default=5)
    structured_logging: bool = Field(default=False, description="Emit one JSON object per log line")

    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    cors_methods: List[str] = Field(default_factory=lambda: ["GET", "POST", "PUT", "DELETE"])

    @field_validator('database_url')
    @classmethod
    def validate_database_url(cls, v):
        if not v:
            raise ValueError("Database URL cannot be empty")
        scheme = _url_scheme(v)
        if scheme not in SUPPORTED_DATABASE_SCHEMES:
            raise ValueError(
                f"Unsupported database scheme: {scheme}. Supported: {list(SUPPORTED_DATABASE_SCHEMES)}"
            )
        return v

    @field_validator('port')
    @classmethod
    def validate_port(cls, v):
        if not 1 <= v <= 65535:
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator('max_execution_steps')
    @classmethod
    def validate_max_execution_steps(cls, v):
        if v < 1:
            raise ValueError("Maximum execution steps must be at least 1")
        return v

    @field_validator('webhook_timeout')
    @classmethod
    def validate_webhook_timeout(cls, v):
        if v <= 0:
            raise ValueError("Webhook timeout must be positive")
        return v

    @field_validator('log_level', mode='before')
    @classmethod
    def normalize_log_level(cls, v):
        return v.upper() if isinstance(v, str) else v

    @field_validator('cors_origins', 'cors_methods', mode='before')
    @classmethod
    def split_csv(cls, v):
        if isinstance(v, str):
            return [item.strip() for item in v.split(',') if item.strip()]
        return v

    @property
    def database_type(self) -> DatabaseType:
        return DatabaseType(_url_scheme(self.database_url))

    @property
    def is_sqlite(self) -> bool:
        return self.database_type == DatabaseType.SQLITE

    @property
    def is_in_memory(self) -> bool:
        return self.is_sqlite and ":memory:" in self.database_url

    def get_database_connect_args(self) -> Dict[str, Any]:
        """SQLite connections are shared with the server's worker threads."""
        if self.is_sqlite:
            return {"check_same_thread": False}
        return {}

    def get_uvicorn_config(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "reload": self.reload,
            "log_level": self.log_level.value.lower(),
            "access_log": self.debug
        }

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> 'AppConfig':
        """Build a configuration from ``WORKFLOW_AUTOMATION_*`` variables; unset fields keep their defaults."""
        environ = os.environ if environ is None else environ
        values = {}
        for name in cls.model_fields:
            raw = environ.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is not None:
                values[name] = raw
        return cls(**values)


def _url_scheme(url: str) -> str:
    """``postgresql+psycopg://...`` -> ``postgresql``"""
    return url.split('://')[0].lower().split('+')[0]


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """The process-wide configuration, read from the environment on first use."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def load_config(config_file: Optional[str] = None) -> AppConfig:
    """Load ``config_file`` (or ``./.env``) into the environment, then rebuild the configuration.

    Variables already set in the environment win over the file.
    """
    global _config

    env_file = config_file if config_file and os.path.exists(config_file) else '.env'
    if os.path.exists(env_file):
        from dotenv import load_dotenv
        load_dotenv(env_file)

    _config = AppConfig.from_env()
    return _config


def reset_config():
    global _config
    _config = None


def validate_config(config: AppConfig) -> None:
    """Check the settings that depend on the host: directories must be creatable.

    Raises:
        ValueError: Listing every problem found
    """
    errors = []

    directories = []
    if config.is_sqlite and not config.is_in_memory:
        directories.append(("database", os.path.dirname(config.database_url.split(":///", 1)[-1])))
    if config.log_file:
        directories.append(("log", os.path.dirname(config.log_file)))

    for purpose, directory in directories:
        if not directory:
            continue
        try:
            Path(directory).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            errors.append(f"Cannot create {purpose} directory {directory}: {e}")

    if config.max_execution_steps > MAX_STEP_LIMIT:
        errors.append(f"Execution step limit {config.max_execution_steps} exceeds {MAX_STEP_LIMIT}")

    if errors:
        raise ValueError(f"Configuration validation failed: {'; '.join(errors)}")


def get_development_config() -> AppConfig:
    return AppConfig(
        debug=True,
        reload=True,
        log_level=LogLevel.DEBUG,
        database_echo=True
    )


def get_production_config() -> AppConfig:
    """JSON logs and no cross-origin access unless configured explicitly."""
    return AppConfig(
        debug=False,
        reload=False,
        log_level=LogLevel.INFO,
        database_echo=False,
        structured_logging=True,
        cors_origins=[]
    )


def get_testing_config() -> AppConfig:
    return AppConfig(
        debug=True,
        database_url="sqlite:///:memory:",
        log_level=LogLevel.WARNING,
        max_execution_steps=200
    )
