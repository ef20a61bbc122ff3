"""Logging setup shared by the API, the CLI and the execution engine.

Records carry ambient fields (``workflow_id``, ``execution_id``,
``request_id``) set with ``set_logging_context``; the runner and the request
middleware set and clear their own keys.
"""

import json
import logging
import sys
import traceback
from contextvars import ContextVar
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

DEFAULT_PLAIN_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(module)s:%(funcName)s:%(lineno)d] - %(message)s"

QUIET_LOGGERS = {
    "uvicorn.access": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "sqlalchemy.pool": logging.WARNING,
    "httpx": logging.WARNING,
}


class StructuredFormatter(logging.Formatter):
    """One JSON object per line; context fields are merged at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        entry.update(getattr(record, "extra_fields", None) or {})

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": traceback.format_exception(*record.exc_info),
            }

        return json.dumps(entry, default=str)


class ContextFormatter(logging.Formatter):
    """Plain text format with the context fields appended as ``key=value`` pairs."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = getattr(record, "extra_fields", None)
        if fields:
            line += " | " + " ".join(f"{key}={value}" for key, value in fields.items())
        return line


class WorkflowContextFilter(logging.Filter):
    """Copies the ambient context onto every record passing through a handler.

    The context is held in a ``ContextVar``, so each thread and each asyncio
    task sees only the fields it set itself (or inherited when it started).
    """

    def __init__(self):
        super().__init__()
        self._context: ContextVar[Dict[str, Any]] = ContextVar(f"logging_context_{id(self)}", default={})

    def set_context(self, **kwargs):
        fields = dict(self._context.get())
        fields.update({key: value for key, value in kwargs.items() if value is not None})
        self._context.set(fields)

    def clear_context(self, *keys: str):
        """Drop the named fields, or everything when no key is given."""
        if not keys:
            self._context.set({})
            return
        self._context.set({key: value for key, value in self._context.get().items() if key not in keys})

    def filter(self, record: logging.LogRecord) -> bool:
        # extra_fields passed to the log call win over ambient values
        fields = dict(self._context.get())
        fields.update(getattr(record, "extra_fields", None) or {})
        record.extra_fields = fields
        return True


_context_filter = WorkflowContextFilter()


def _handler(handler: logging.Handler, formatter: logging.Formatter) -> logging.Handler:
    handler.setFormatter(formatter)
    handler.addFilter(_context_filter)
    return handler


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    log_format: Optional[str] = None,
    structured: bool = False,
    max_size: int = 10 * 1024 * 1024,
    backup_count: int = 5
) -> logging.Logger:
    """
    Route all logging to stdout and, optionally, a size-rotated file.

    Args:
        level: Root level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional log file; parent directories are created
        log_format: ``logging`` format string for plain output
        structured: Emit JSON lines instead of plain text
        max_size: Bytes per file before rotation
        backup_count: Rotated files to keep

    Returns:
        The root logger
    """
    numeric_level = getattr(logging, level.upper())
    if structured:
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = ContextFormatter(fmt=log_format or DEFAULT_PLAIN_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    for existing in root_logger.handlers[:]:
        root_logger.removeHandler(existing)

    root_logger.addHandler(_handler(logging.StreamHandler(sys.stdout), formatter))
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        root_logger.addHandler(_handler(
            RotatingFileHandler(log_file, maxBytes=max_size, backupCount=backup_count),
            formatter
        ))

    for name, quiet_level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)
    logging.getLogger("automation").setLevel(numeric_level)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def set_logging_context(**kwargs):
    """Attach fields to every subsequent record until cleared."""
    _context_filter.set_context(**kwargs)


def clear_logging_context(*keys: str):
    _context_filter.clear_context(*keys)


def log_with_context(logger: logging.Logger, level: int, message: str, **context):
    """Log one message with extra fields that apply to this record only."""
    logger.log(level, message, extra={"extra_fields": context})
