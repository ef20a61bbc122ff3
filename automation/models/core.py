"""Core Pydantic models for the workflow automation engine."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from pydantic import AliasChoices, BaseModel, Field, field_validator, model_validator


class WorkflowStatus(str, Enum):
    """Lifecycle of a workflow definition."""
    DRAFT = "draft"
    ACTIVE = "active"
    ARCHIVED = "archived"


class ExecutionStatusEnum(str, Enum):
    """Enumeration of workflow execution statuses."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class NodeKind(str, Enum):
    TRIGGER = "trigger"
    ACTION = "action"


class ActionStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class ExecutionEventType(str, Enum):
    """Event-type tags written to an execution's log."""
    NODE_STARTED = "node_started"
    ACTION_COMPLETED = "action_completed"
    ACTION_FAILED = "action_failed"
    MISSING_NODE = "missing_node"
    UNKNOWN_ACTION = "unknown_action"
    NO_TRIGGER = "no_trigger"
    STEP_LIMIT_EXCEEDED = "step_limit_exceeded"
    ERROR = "error"


class ValidationResult(BaseModel):
    """Result of graph validation."""
    valid: bool = Field(..., description="Whether the graph is valid")
    errors: List[str] = Field(default_factory=list, description="List of validation errors")
    warnings: List[str] = Field(default_factory=list, description="List of validation warnings")


class NodeDefinition(BaseModel):
    """A node as supplied by the caller, identified by its workflow-local key."""
    key: str = Field(..., description="Caller-supplied key, unique within the workflow")
    kind: NodeKind = Field(..., description="Whether the node is a trigger or an action")
    type: str = Field(..., description="Registered trigger or action type")
    label: str = Field(default="", description="Human readable label")
    config: Dict[str, Any] = Field(default_factory=dict, description="Configuration interpreted by the node's type")
    position_x: int = Field(default=0, validation_alias=AliasChoices("position_x", "positionX"))
    position_y: int = Field(default=0, validation_alias=AliasChoices("position_y", "positionY"))

    @field_validator('key', 'type')
    @classmethod
    def validate_not_empty(cls, value):
        if not value or not value.strip():
            raise ValueError("Node key and type cannot be empty")
        return value.strip()

    @field_validator('config', mode='before')
    @classmethod
    def coerce_config(cls, value):
        """Missing or non-mapping configuration is treated as empty."""
        return value if isinstance(value, dict) else {}

    @model_validator(mode='after')
    def default_label(self):
        if not self.label.strip():
            self.label = self.key
        return self


class EdgeDefinition(BaseModel):
    """An edge as supplied by the caller, referencing nodes by key."""
    source: str = Field(
        ...,
        validation_alias=AliasChoices("source", "source_node_id", "sourceNodeId"),
        description="Key of the source node",
    )
    target: str = Field(
        ...,
        validation_alias=AliasChoices("target", "target_node_id", "targetNodeId"),
        description="Key of the target node",
    )
    label: Optional[str] = Field(None, description="Optional edge label")
    condition: Dict[str, Any] = Field(default_factory=dict, description="Stored edge condition")

    @field_validator('source', 'target', mode='before')
    @classmethod
    def coerce_key(cls, value):
        return "" if value is None else str(value).strip()

    @field_validator('condition', mode='before')
    @classmethod
    def coerce_condition(cls, value):
        return value if isinstance(value, dict) else {}


class WorkflowDefinitionInput(BaseModel):
    """Definition fields accepted on workflow creation."""
    name: str = Field(..., description="Display name")
    description: Optional[str] = Field(None, description="Description of the workflow")
    status: WorkflowStatus = Field(default=WorkflowStatus.DRAFT)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    branch_id: Optional[str] = Field(None, validation_alias=AliasChoices("branch_id", "branchId"))
    created_by: Optional[str] = Field(None, validation_alias=AliasChoices("created_by", "createdBy"))

    @field_validator('name')
    @classmethod
    def validate_name_not_empty(cls, name):
        if not name.strip():
            raise ValueError("Workflow name cannot be empty")
        return name.strip()


class WorkflowDefinitionPatch(BaseModel):
    """Definition fields accepted on workflow update; omitted fields are kept."""
    name: Optional[str] = None
    description: Optional[str] = None
    status: Optional[WorkflowStatus] = None
    metadata: Optional[Dict[str, Any]] = None
    branch_id: Optional[str] = Field(None, validation_alias=AliasChoices("branch_id", "branchId"))

    @field_validator('name')
    @classmethod
    def validate_name_not_empty(cls, name):
        if name is not None and not name.strip():
            raise ValueError("Workflow name cannot be empty")
        return name.strip() if name else name


class WorkflowUpsert(BaseModel):
    """Full graph submitted on create."""
    definition: WorkflowDefinitionInput
    nodes: List[NodeDefinition] = Field(default_factory=list)
    edges: List[EdgeDefinition] = Field(default_factory=list)


class WorkflowUpdate(BaseModel):
    """Full graph submitted on update; nodes and edges replace the stored ones."""
    definition: WorkflowDefinitionPatch = Field(default_factory=WorkflowDefinitionPatch)
    nodes: List[NodeDefinition] = Field(default_factory=list)
    edges: List[EdgeDefinition] = Field(default_factory=list)


class WorkflowNode(BaseModel):
    """A persisted node."""
    id: str
    workflow_id: str
    key: str
    label: str
    kind: NodeKind
    type: str
    config: Dict[str, Any] = Field(default_factory=dict)
    position_x: int = 0
    position_y: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class WorkflowEdge(BaseModel):
    """A persisted edge; node references are identities, keys are kept alongside."""
    id: str
    workflow_id: str
    source_node_id: str
    target_node_id: str
    source_key: Optional[str] = None
    target_key: Optional[str] = None
    label: Optional[str] = None
    condition: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None


class Workflow(BaseModel):
    """A workflow definition hydrated with its current nodes and edges."""
    id: str
    name: str
    description: Optional[str] = None
    status: WorkflowStatus
    metadata: Dict[str, Any] = Field(default_factory=dict)
    branch_id: Optional[str] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None
    nodes: List[WorkflowNode] = Field(default_factory=list)
    edges: List[WorkflowEdge] = Field(default_factory=list)

    def to_definitions(self) -> Tuple[List[NodeDefinition], List[EdgeDefinition]]:
        """Express the stored graph in caller terms (keys instead of identities)."""
        nodes = [
            NodeDefinition(
                key=node.key,
                kind=node.kind,
                type=node.type,
                label=node.label,
                config=dict(node.config),
                position_x=node.position_x,
                position_y=node.position_y,
            )
            for node in self.nodes
        ]
        edges = [
            EdgeDefinition(
                source=edge.source_key or edge.source_node_id,
                target=edge.target_key or edge.target_node_id,
                label=edge.label,
                condition=dict(edge.condition),
            )
            for edge in self.edges
        ]
        return nodes, edges


class WorkflowSummary(BaseModel):
    """Summary information about a workflow, for listings."""
    id: str
    name: str
    status: WorkflowStatus
    trigger_types: List[str] = Field(default_factory=list)
    action_types: List[str] = Field(default_factory=list)
    node_count: int = 0
    created_at: Optional[datetime] = None


class ActionResult(BaseModel):
    """Outcome of a single action run."""
    status: ActionStatus
    context_patch: Optional[Dict[str, Any]] = None
    message: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def success(cls, message: Optional[str] = None, context_patch: Optional[Dict[str, Any]] = None) -> "ActionResult":
        return cls(status=ActionStatus.SUCCESS, message=message, context_patch=context_patch)

    @classmethod
    def failure(cls, error: str, context_patch: Optional[Dict[str, Any]] = None) -> "ActionResult":
        return cls(status=ActionStatus.FAILURE, error=error, context_patch=context_patch)


class TriggerContext(BaseModel):
    """Trigger metadata handed to every action of a run."""
    trigger_type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    workflow: Workflow


class ExecutionLog(BaseModel):
    """One entry of an execution's ordered log."""
    node_id: Optional[str] = None
    event_type: str
    message: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)


class ExecutionResult(BaseModel):
    """Result of one workflow run; ``execution_id`` is None for simulations."""
    execution_id: Optional[str] = None
    workflow_id: Optional[str] = None
    status: ExecutionStatusEnum
    logs: List[ExecutionLog] = Field(default_factory=list)
    context: Dict[str, Any] = Field(default_factory=dict)
    duration_ms: int = 0


class TriggerInfo(BaseModel):
    type: str
    label: str
    description: Optional[str] = None


class ActionInfo(BaseModel):
    type: str
    label: str
    description: Optional[str] = None
    supports_simulation: bool = False


class Catalog(BaseModel):
    """Registered trigger and action types, for the workflow builder."""
    triggers: List[TriggerInfo] = Field(default_factory=list)
    actions: List[ActionInfo] = Field(default_factory=list)


class ExecutionEvent(BaseModel):
    """A persisted execution log entry."""
    id: int
    node_id: Optional[str] = None
    event_type: str
    message: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None


class ExecutionRecord(BaseModel):
    """A persisted execution, optionally with its events."""
    id: str
    workflow_id: str
    trigger_type: str
    status: ExecutionStatusEnum
    context: Dict[str, Any] = Field(default_factory=dict)
    trigger_payload: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    events: List[ExecutionEvent] = Field(default_factory=list)
