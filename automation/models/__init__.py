"""Data models for the workflow automation engine."""

from .core import (
    WorkflowStatus,
    ExecutionStatusEnum,
    NodeKind,
    ActionStatus,
    ExecutionEventType,
    ValidationResult,
    NodeDefinition,
    EdgeDefinition,
    WorkflowDefinitionInput,
    WorkflowDefinitionPatch,
    WorkflowUpsert,
    WorkflowUpdate,
    WorkflowNode,
    WorkflowEdge,
    Workflow,
    WorkflowSummary,
    ActionResult,
    TriggerContext,
    ExecutionLog,
    ExecutionResult,
    TriggerInfo,
    ActionInfo,
    Catalog,
    ExecutionEvent,
    ExecutionRecord,
)

__all__ = [
    "WorkflowStatus",
    "ExecutionStatusEnum",
    "NodeKind",
    "ActionStatus",
    "ExecutionEventType",
    "ValidationResult",
    "NodeDefinition",
    "EdgeDefinition",
    "WorkflowDefinitionInput",
    "WorkflowDefinitionPatch",
    "WorkflowUpsert",
    "WorkflowUpdate",
    "WorkflowNode",
    "WorkflowEdge",
    "Workflow",
    "WorkflowSummary",
    "ActionResult",
    "TriggerContext",
    "ExecutionLog",
    "ExecutionResult",
    "TriggerInfo",
    "ActionInfo",
    "Catalog",
    "ExecutionEvent",
    "ExecutionRecord",
]
