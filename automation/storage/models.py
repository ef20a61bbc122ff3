"""SQLAlchemy database models for workflow definitions and their execution history."""

import uuid
from datetime import datetime
from sqlalchemy import (
    Column, String, DateTime, Text, JSON, Integer, ForeignKey, UniqueConstraint, Index
)
from sqlalchemy.orm import relationship
from .database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class WorkflowDefinitionModel(Base):
    """Database model for workflow definitions."""
    __tablename__ = "workflow_definitions"

    id = Column(String, primary_key=True, default=_uuid)
    name = Column(String, nullable=False)
    description = Column(Text)
    status = Column(String, nullable=False, default="draft")  # draft, active, archived
    # "metadata" is reserved on declarative classes
    workflow_metadata = Column("metadata", JSON, nullable=False, default=dict)
    branch_id = Column(String, index=True)
    created_by = Column(String)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    archived_at = Column(DateTime)

    nodes = relationship("WorkflowNodeModel", back_populates="workflow")
    edges = relationship("WorkflowEdgeModel", back_populates="workflow")
    executions = relationship("WorkflowExecutionModel", back_populates="workflow")

    __table_args__ = (
        Index("workflow_definitions_status_idx", "status"),
    )


class WorkflowNodeModel(Base):
    """Database model for trigger and action nodes of a workflow graph."""
    __tablename__ = "workflow_nodes"

    id = Column(String, primary_key=True, default=_uuid)
    workflow_id = Column(String, ForeignKey("workflow_definitions.id"), nullable=False, index=True)
    key = Column(String, nullable=False)
    label = Column(String, nullable=False)
    kind = Column(String, nullable=False)  # trigger, action
    type = Column(String, nullable=False)
    config = Column(JSON, nullable=False, default=dict)
    position_x = Column(Integer, nullable=False, default=0)
    position_y = Column(Integer, nullable=False, default=0)
    ordinal = Column(Integer, nullable=False, default=0)  # submission order
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    workflow = relationship("WorkflowDefinitionModel", back_populates="nodes")

    __table_args__ = (
        UniqueConstraint("workflow_id", "key", name="workflow_nodes_workflow_key_unique"),
        Index("workflow_nodes_kind_type_idx", "kind", "type"),
    )


class WorkflowEdgeModel(Base):
    """Database model for directed edges between workflow nodes."""
    __tablename__ = "workflow_edges"

    id = Column(String, primary_key=True, default=_uuid)
    workflow_id = Column(String, ForeignKey("workflow_definitions.id"), nullable=False, index=True)
    source_node_id = Column(String, ForeignKey("workflow_nodes.id"), nullable=False, index=True)
    target_node_id = Column(String, ForeignKey("workflow_nodes.id"), nullable=False, index=True)
    label = Column(String)
    condition = Column(JSON, nullable=False, default=dict)  # stored for the builder, not evaluated
    ordinal = Column(Integer, nullable=False, default=0)  # submission order
    created_at = Column(DateTime, default=datetime.utcnow)

    workflow = relationship("WorkflowDefinitionModel", back_populates="edges")


class WorkflowExecutionModel(Base):
    """Database model for real (non-simulated) workflow executions."""
    __tablename__ = "workflow_executions"

    id = Column(String, primary_key=True, default=_uuid)
    workflow_id = Column(String, ForeignKey("workflow_definitions.id"), nullable=False, index=True)
    trigger_type = Column(String, nullable=False)
    status = Column(String, nullable=False, default="pending")  # pending, running, completed, failed
    context = Column(JSON, nullable=False, default=dict)
    trigger_payload = Column(JSON, nullable=False, default=dict)
    execution_metadata = Column("metadata", JSON, nullable=False, default=dict)
    error_message = Column(Text)
    started_at = Column(DateTime, default=datetime.utcnow, index=True)
    completed_at = Column(DateTime)

    workflow = relationship("WorkflowDefinitionModel", back_populates="executions")
    events = relationship(
        "WorkflowExecutionEventModel",
        back_populates="execution",
        order_by="WorkflowExecutionEventModel.id",
    )


class WorkflowExecutionEventModel(Base):
    """Append-only log entries of an execution; ``id`` orders them by creation."""
    __tablename__ = "workflow_execution_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    execution_id = Column(String, ForeignKey("workflow_executions.id"), nullable=False, index=True)
    node_id = Column(String)  # nodes are replaced on update, so no hard reference
    event_type = Column(String, nullable=False)
    message = Column(Text)
    payload = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow)

    execution = relationship("WorkflowExecutionModel", back_populates="events")
