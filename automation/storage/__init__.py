"""Database models and storage layer."""

from .database import Base, get_session_factory, create_tables, drop_tables
from .models import (
    WorkflowDefinitionModel,
    WorkflowNodeModel,
    WorkflowEdgeModel,
    WorkflowExecutionModel,
    WorkflowExecutionEventModel,
)

__all__ = [
    "Base",
    "get_session_factory",
    "create_tables",
    "drop_tables",
    "WorkflowDefinitionModel",
    "WorkflowNodeModel",
    "WorkflowEdgeModel",
    "WorkflowExecutionModel",
    "WorkflowExecutionEventModel",
]
