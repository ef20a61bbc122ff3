"""Pytest configuration and fixtures."""

import os
import tempfile
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import pytest
from sqlalchemy.orm import sessionmaker

from automation.core.execution_engine import ExecutionEngine
from automation.core.graph_manager import WorkflowManager
from automation.core.registry import ActionRegistry, TriggerRegistry
from automation.core.state_manager import ExecutionStateManager
from automation.core.validator import GraphValidator
from automation.models.core import (
    ActionResult,
    NodeKind,
    Workflow,
    WorkflowEdge,
    WorkflowNode,
    WorkflowStatus,
)
from automation.storage.database import create_database_engine, create_tables
from automation.tools import register_builtin_actions, register_builtin_triggers


@pytest.fixture
def temp_db():
    """Create a temporary SQLite database and return a session factory bound to it."""
    db_fd, db_path = tempfile.mkstemp(suffix=".db")
    os.close(db_fd)

    engine = create_database_engine(f"sqlite:///{db_path}")
    create_tables(engine)
    session_factory = sessionmaker(
        bind=engine, autocommit=False, autoflush=False, expire_on_commit=False
    )

    yield session_factory

    engine.dispose()
    try:
        os.unlink(db_path)
    except OSError:
        pass


@pytest.fixture
def action_calls() -> List[Tuple[str, bool]]:
    """(node key, simulation flag) for every run of a test action, in order."""
    return []


@pytest.fixture
def triggers() -> TriggerRegistry:
    registry = TriggerRegistry()
    register_builtin_triggers(registry)
    return registry


@pytest.fixture
def actions(action_calls) -> ActionRegistry:
    """Built-in actions plus recording, failing and raising test actions."""
    registry = ActionRegistry()
    register_builtin_actions(registry)

    def record(node, context, payload, trigger, simulation):
        action_calls.append((node.key, simulation))
        patch = {f"visited:{node.key}": True, "last": node.key}
        patch.update(node.config.get("patch", {}))
        return ActionResult.success(message=f"recorded {node.key}", context_patch=patch)

    def fail(node, context, payload, trigger, simulation):
        action_calls.append((node.key, simulation))
        return ActionResult.failure(
            node.config.get("error", "boom"),
            context_patch={"failed_at": node.key}
        )

    def explode(node, context, payload, trigger, simulation):
        action_calls.append((node.key, simulation))
        raise RuntimeError("kaboom")

    def stamp(node, context, payload, trigger, simulation):
        action_calls.append((node.key, simulation))
        return ActionResult.success(
            message="stamped",
            context_patch={"stamped_at": datetime(2024, 1, 1, 9, 30), "amount": Decimal("19.90")}
        )

    registry.register_function("test.record", "Record", record, supports_simulation=True)
    registry.register_function("test.fail", "Fail", fail)
    registry.register_function("test.explode", "Explode", explode)
    registry.register_function("test.stamp", "Stamp", stamp)
    return registry


@pytest.fixture
def validator(triggers, actions) -> GraphValidator:
    return GraphValidator(triggers, actions)


@pytest.fixture
def workflow_manager(temp_db, validator) -> WorkflowManager:
    return WorkflowManager(validator, session_factory=temp_db)


@pytest.fixture
def state_manager(temp_db) -> ExecutionStateManager:
    return ExecutionStateManager(session_factory=temp_db)


@pytest.fixture
def execution_engine(triggers, actions, workflow_manager, state_manager) -> ExecutionEngine:
    return ExecutionEngine(triggers, actions, workflow_manager, state_manager, max_execution_steps=50)


def build_workflow(
    nodes: List[Tuple[str, str, str]],
    edges: List[Tuple[str, str]],
    configs: Optional[Dict[str, Dict[str, Any]]] = None,
    status: WorkflowStatus = WorkflowStatus.ACTIVE,
) -> Workflow:
    """In-memory workflow whose node ids equal their keys.

    ``nodes`` are ``(key, kind, type)`` triples, ``edges`` are
    ``(source, target)`` pairs; edge ids are ``source->target``.
    """
    configs = configs or {}
    return Workflow(
        id="wf-test",
        name="In-memory workflow",
        status=status,
        nodes=[
            WorkflowNode(
                id=key,
                workflow_id="wf-test",
                key=key,
                label=key.upper(),
                kind=NodeKind(kind),
                type=node_type,
                config=configs.get(key, {}),
            )
            for key, kind, node_type in nodes
        ],
        edges=[
            WorkflowEdge(
                id=f"{source}->{target}",
                workflow_id="wf-test",
                source_node_id=source,
                target_node_id=target,
                source_key=source,
                target_key=target,
            )
            for source, target in edges
        ],
    )


@pytest.fixture
def graph():
    """Factory for in-memory workflows."""
    return build_workflow
