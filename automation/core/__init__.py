"""Core workflow automation components."""

from .exceptions import (
    WorkflowEngineError,
    WorkflowValidationError,
    TriggerPayloadError,
    RegistryError,
    UnknownTriggerError,
    ExecutionEngineError,
    WorkflowStateError,
    StorageError,
    ConfigurationError,
)
from .logging import setup_logging, get_logger
from .registry import ActionExecutor, ActionRegistry, TriggerRegistry
from .validator import GraphValidator
from .graph_manager import WorkflowManager
from .state_manager import ExecutionSink, ExecutionStateManager, PersistentExecutionSink
from .execution_engine import ExecutionEngine, SimulationSink, WorkflowRunner

__all__ = [
    "WorkflowEngineError",
    "WorkflowValidationError",
    "TriggerPayloadError",
    "RegistryError",
    "UnknownTriggerError",
    "ExecutionEngineError",
    "WorkflowStateError",
    "StorageError",
    "ConfigurationError",
    "setup_logging",
    "get_logger",
    "ActionExecutor",
    "ActionRegistry",
    "TriggerRegistry",
    "GraphValidator",
    "WorkflowManager",
    "ExecutionSink",
    "ExecutionStateManager",
    "PersistentExecutionSink",
    "ExecutionEngine",
    "SimulationSink",
    "WorkflowRunner",
]
