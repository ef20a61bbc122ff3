"""Execution Engine: graph traversal plus the trigger and simulation entry points."""

import logging
import time
from collections import deque
from typing import Any, Deque, Dict, List, Optional

from ..models.core import (
    ActionResult,
    ActionStatus,
    Catalog,
    ExecutionEventType,
    ExecutionLog,
    ExecutionResult,
    ExecutionStatusEnum,
    NodeKind,
    TriggerContext,
    Workflow,
    WorkflowEdge,
)
from .exceptions import ExecutionEngineError, StorageError, WorkflowEngineError
from .graph_manager import WorkflowManager
from .logging import clear_logging_context, get_logger, log_with_context, set_logging_context
from .registry import ActionRegistry, TriggerRegistry
from .state_manager import ExecutionSink, ExecutionStateManager

logger = get_logger(__name__)

DEFAULT_MAX_EXECUTION_STEPS = 1000


class SimulationSink(ExecutionSink):
    """Sink for dry runs: nothing is stored and no execution id is issued."""

    simulation = True


class _RunState:
    """Mutable state of one run, private to the runner."""

    def __init__(self, sink: ExecutionSink, context: Dict[str, Any]):
        self.sink = sink
        self.context = context
        self.logs: List[ExecutionLog] = []
        self.status = ExecutionStatusEnum.RUNNING
        self.started = time.monotonic()

    def log(
        self,
        event_type: ExecutionEventType,
        message: Optional[str] = None,
        node_id: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None
    ) -> None:
        entry = ExecutionLog(
            node_id=node_id,
            event_type=event_type.value,
            message=message,
            payload=payload or {},
        )
        self.logs.append(entry)
        self.sink.record(entry)

    def result(self, execution_id: Optional[str], workflow_id: str) -> ExecutionResult:
        return ExecutionResult(
            execution_id=execution_id,
            workflow_id=workflow_id,
            status=self.status,
            logs=list(self.logs),
            context=dict(self.context),
            duration_ms=int((time.monotonic() - self.started) * 1000),
        )


class WorkflowRunner:
    """Walks a workflow graph from its matching trigger nodes.

    Outgoing edges are processed first-in first-out. Each edge is followed
    at most once per run, so cyclic graphs terminate; a node reachable over
    two distinct edges runs once per edge. The first action failure stops
    the whole run.
    """

    def __init__(self, actions: ActionRegistry, max_steps: int = DEFAULT_MAX_EXECUTION_STEPS):
        self.actions = actions
        self.max_steps = max_steps

    def run(
        self,
        workflow: Workflow,
        trigger_type: str,
        payload: Dict[str, Any],
        sink: ExecutionSink
    ) -> ExecutionResult:
        """
        Execute a workflow for one trigger firing.

        Args:
            workflow: Hydrated workflow to run
            trigger_type: Type of the firing trigger
            payload: Trigger payload; the initial context is a copy of it
            sink: Receives the execution lifecycle (persistent or simulated)

        Returns:
            ExecutionResult: Final status, ordered logs, context and duration

        Raises:
            ExecutionEngineError: If anything raised during traversal, or the
                execution could not be stored at all; the partial result is
                attached and the sink is still finished
        """
        payload = dict(payload or {})
        state = _RunState(sink, dict(payload))
        execution_id = sink.start(workflow, trigger_type, payload, state.context)

        set_logging_context(workflow_id=workflow.id, execution_id=execution_id)
        error_message = None
        finalize_error = None
        stored = True
        aborted: Optional[Exception] = None
        try:
            try:
                self._traverse(workflow, trigger_type, payload, state)
                if state.status != ExecutionStatusEnum.FAILED:
                    state.status = ExecutionStatusEnum.COMPLETED

            except Exception as e:
                aborted = e
                state.status = ExecutionStatusEnum.FAILED
                error_message = str(e)
                logger.error(f"Workflow {workflow.id} aborted: {error_message}", exc_info=True)
                try:
                    state.log(ExecutionEventType.ERROR, error_message)
                except StorageError as record_error:
                    logger.error(f"Could not record error event: {record_error.message}")

            finally:
                try:
                    finalize_error = sink.finish(state.status, state.context, error_message)
                except StorageError as e:
                    finalize_error = e.message
                    stored = False
                    execution_id = None

            if finalize_error is not None:
                state.status = ExecutionStatusEnum.FAILED
                state.logs.append(ExecutionLog(event_type=ExecutionEventType.ERROR.value, message=finalize_error))
            logger.info(f"Workflow {workflow.id} finished with status {state.status.value}")
        finally:
            clear_logging_context("workflow_id", "execution_id")

        result = state.result(execution_id, workflow.id)
        if aborted is not None:
            raise ExecutionEngineError(
                error_message,
                execution_id=execution_id,
                workflow_id=workflow.id,
                result=result
            ) from aborted
        if not stored:
            raise ExecutionEngineError(finalize_error, workflow_id=workflow.id, result=result)
        return result

    def _traverse(
        self,
        workflow: Workflow,
        trigger_type: str,
        payload: Dict[str, Any],
        state: _RunState
    ) -> None:
        nodes_by_id = {node.id: node for node in workflow.nodes}
        edges_by_source: Dict[str, List[WorkflowEdge]] = {}
        for edge in workflow.edges:
            edges_by_source.setdefault(edge.source_node_id, []).append(edge)

        trigger_nodes = [
            node for node in workflow.nodes
            if node.kind == NodeKind.TRIGGER and node.type == trigger_type
        ]
        if not trigger_nodes:
            state.log(ExecutionEventType.NO_TRIGGER, f"No trigger nodes for {trigger_type}")
            state.status = ExecutionStatusEnum.FAILED
            return

        trigger = TriggerContext(trigger_type=trigger_type, payload=payload, workflow=workflow)
        queue: Deque[WorkflowEdge] = deque()
        for trigger_node in trigger_nodes:
            queue.extend(edges_by_source.get(trigger_node.id, []))

        visited_edges = set()
        steps = 0
        while queue:
            edge = queue.popleft()
            if edge.id in visited_edges:
                continue
            visited_edges.add(edge.id)

            steps += 1
            if steps > self.max_steps:
                state.log(
                    ExecutionEventType.STEP_LIMIT_EXCEEDED,
                    f"Execution exceeded {self.max_steps} steps",
                    payload={"max_steps": self.max_steps},
                )
                state.status = ExecutionStatusEnum.FAILED
                return

            node = nodes_by_id.get(edge.target_node_id)
            if node is None:
                state.log(
                    ExecutionEventType.MISSING_NODE,
                    "Edge target missing",
                    node_id=edge.source_node_id,
                    payload={"edge_id": edge.id, "target_node_id": edge.target_node_id},
                )
                continue

            if node.kind == NodeKind.ACTION:
                executor = self.actions.get(node.type)
                if executor is None:
                    # Abandon this branch only
                    state.log(ExecutionEventType.UNKNOWN_ACTION, f"No executor for {node.type}", node_id=node.id)
                    continue

                state.log(
                    ExecutionEventType.NODE_STARTED,
                    f"Executing node {node.label}",
                    node_id=node.id,
                    payload={"node_type": node.type, "node_kind": node.kind.value},
                )
                result = executor.run(node, dict(state.context), payload, trigger, state.sink.simulation)
                if not isinstance(result, ActionResult):
                    result = ActionResult.model_validate(result)

                if result.context_patch:
                    state.context.update(result.context_patch)
                if result.status == ActionStatus.FAILURE:
                    log_with_context(
                        logger, logging.WARNING,
                        f"Action {node.type} failed: {result.error}",
                        node_id=node.id
                    )
                    state.log(ExecutionEventType.ACTION_FAILED, result.error or "Action failed", node_id=node.id)
                    state.status = ExecutionStatusEnum.FAILED
                    return
                state.log(ExecutionEventType.ACTION_COMPLETED, result.message or "Action complete", node_id=node.id)

            queue.extend(edges_by_source.get(node.id, []))


class ExecutionEngine:
    """Entry points for firing triggers and simulating workflows."""

    def __init__(
        self,
        triggers: TriggerRegistry,
        actions: ActionRegistry,
        workflow_manager: WorkflowManager,
        state_manager: ExecutionStateManager,
        max_execution_steps: int = DEFAULT_MAX_EXECUTION_STEPS
    ):
        """Initialize the execution engine.

        The registries are frozen: types cannot be added once the engine
        is running.

        Args:
            triggers: Trigger registry
            actions: Action registry
            workflow_manager: Workflow store used to load and match workflows
            state_manager: Opens persistent sinks for real runs
            max_execution_steps: Upper bound on edges processed per run
        """
        triggers.freeze()
        actions.freeze()
        self.triggers = triggers
        self.actions = actions
        self.workflow_manager = workflow_manager
        self.state_manager = state_manager
        self.runner = WorkflowRunner(actions, max_steps=max_execution_steps)
        logger.info(
            f"ExecutionEngine initialized with {len(triggers)} trigger(s), "
            f"{len(actions)} action(s), max_execution_steps={max_execution_steps}"
        )

    def simulate_workflow(
        self,
        workflow_id: str,
        trigger_type: str,
        payload: Optional[Dict[str, Any]] = None
    ) -> Optional[ExecutionResult]:
        """
        Dry-run a workflow in memory, whatever its status.

        Nothing is written to execution history and the result carries no
        execution id. Actions still run, with ``simulation=True``.

        Returns:
            Optional[ExecutionResult]: The result, or None if the workflow does not exist

        Raises:
            ExecutionEngineError: If an action raised
        """
        workflow = self.workflow_manager.get_workflow(workflow_id)
        if workflow is None:
            return None

        logger.info(f"Simulating workflow {workflow_id} for trigger {trigger_type}")
        return self.runner.run(workflow, trigger_type, dict(payload or {}), SimulationSink())

    def run_trigger(self, trigger_type: str, payload: Optional[Dict[str, Any]] = None) -> List[ExecutionResult]:
        """
        Fire a trigger: run every active workflow that listens for it.

        The payload is validated and resolved into context once; the
        workflows then run one after another, each in its own transaction.
        A workflow that aborts is reported as a failed result and does not
        stop the others.

        Args:
            trigger_type: Registered trigger type
            payload: Raw event payload

        Returns:
            List[ExecutionResult]: One result per matched workflow

        Raises:
            UnknownTriggerError: If the trigger type is not registered
            TriggerPayloadError: If the payload fails the trigger's schema
        """
        parsed = self.triggers.parse(trigger_type, payload)
        resolved = self.triggers.get(trigger_type).resolve_context(parsed)
        run_payload = {**parsed.model_dump(by_alias=True, exclude_unset=True), **(resolved or {})}

        workflows = self.workflow_manager.find_active_by_trigger(trigger_type)
        logger.info(f"Trigger {trigger_type} matched {len(workflows)} active workflow(s)")

        results: List[ExecutionResult] = []
        for workflow in workflows:
            try:
                results.append(
                    self.runner.run(workflow, trigger_type, run_payload, self.state_manager.open_sink())
                )
            except ExecutionEngineError as e:
                results.append(e.result)
            except WorkflowEngineError as e:
                logger.error(f"Workflow {workflow.id} could not be executed: {e.message}")
                results.append(ExecutionResult(
                    workflow_id=workflow.id,
                    status=ExecutionStatusEnum.FAILED,
                    logs=[ExecutionLog(event_type=ExecutionEventType.ERROR.value, message=e.message)],
                    context=dict(run_payload),
                ))
        return results

    def catalog(self) -> Catalog:
        """Registered trigger and action types."""
        return Catalog(triggers=self.triggers.list(), actions=self.actions.list())
