"""Tests for graph traversal, trigger firing and simulation."""

import pytest
from sqlalchemy.exc import OperationalError

from automation.core.exceptions import ExecutionEngineError, TriggerPayloadError, UnknownTriggerError
from automation.core.execution_engine import SimulationSink, WorkflowRunner
from automation.core.state_manager import ExecutionSink, PersistentExecutionSink
from automation.models.core import ExecutionStatusEnum, WorkflowUpsert


class RecordingSink(ExecutionSink):
    """Sink that remembers its lifecycle calls."""

    def __init__(self):
        self.started = []
        self.recorded = []
        self.finished = []

    def start(self, workflow, trigger_type, payload, context):
        self.started.append(trigger_type)
        return "exec-1"

    def record(self, entry):
        self.recorded.append(entry.event_type)

    def finish(self, status, context, error_message=None):
        self.finished.append((status, error_message))


class FailingFirstSession:
    """Session factory whose first session cannot commit, or cannot flush
    after ``ok_flushes`` flushes; later sessions work normally."""

    def __init__(self, session_factory, ok_flushes=None):
        self.session_factory = session_factory
        self.ok_flushes = ok_flushes
        self.handed_out = 0

    def __call__(self):
        session = self.session_factory()
        self.handed_out += 1
        if self.handed_out > 1:
            return session

        flush = session.flush
        flushes = []

        def failing_flush(*args, **kwargs):
            if self.ok_flushes is not None and len(flushes) >= self.ok_flushes:
                raise OperationalError("INSERT", {}, Exception("disk I/O error"))
            flushes.append(True)
            return flush(*args, **kwargs)

        def failing_commit():
            raise OperationalError("COMMIT", {}, Exception("database is locked"))

        session.flush = failing_flush
        if self.ok_flushes is None:
            session.commit = failing_commit
        return session


def event_types(result):
    return [log.event_type for log in result.logs]


def keys(calls):
    return [key for key, _ in calls]


class TestWorkflowRunner:
    """Test cases for WorkflowRunner using in-memory workflows."""

    def test_edges_processed_first_in_first_out(self, actions, action_calls, graph):
        """Test that siblings run before grandchildren."""
        workflow = graph(
            [("t", "trigger", "orders.created"), ("a", "action", "test.record"),
             ("b", "action", "test.record"), ("c", "action", "test.record")],
            [("t", "a"), ("t", "b"), ("a", "c")]
        )

        result = WorkflowRunner(actions).run(workflow, "orders.created", {}, SimulationSink())

        assert result.status == ExecutionStatusEnum.COMPLETED
        assert keys(action_calls) == ["a", "b", "c"]
        assert result.execution_id is None
        assert result.workflow_id == "wf-test"

    def test_log_entries(self, actions, graph):
        """Test the started and completed entries written for each action."""
        workflow = graph([("t", "trigger", "orders.created"), ("a", "action", "test.record")], [("t", "a")])

        result = WorkflowRunner(actions).run(workflow, "orders.created", {}, SimulationSink())

        started, completed = result.logs
        assert started.event_type == "node_started"
        assert started.node_id == "a"
        assert started.message == "Executing node A"
        assert started.payload == {"node_type": "test.record", "node_kind": "action"}
        assert completed.event_type == "action_completed"
        assert completed.message == "recorded a"
        assert result.duration_ms >= 0

    def test_context_patches_merge_last_write_wins(self, actions, graph):
        """Test that later actions overwrite earlier context entries."""
        workflow = graph(
            [("t", "trigger", "orders.created"), ("a", "action", "test.record"), ("b", "action", "test.record")],
            [("t", "a"), ("a", "b")],
            configs={"a": {"patch": {"tier": "silver"}}, "b": {"patch": {"tier": "gold"}}}
        )

        result = WorkflowRunner(actions).run(workflow, "orders.created", {"orderId": "o1"}, SimulationSink())

        assert result.context["tier"] == "gold"
        assert result.context["last"] == "b"
        assert result.context["orderId"] == "o1"
        assert result.context["visited:a"] is True

    def test_payload_is_not_mutated(self, actions, graph):
        """Test that the caller's payload is copied into the context."""
        workflow = graph([("t", "trigger", "orders.created"), ("a", "action", "test.record")], [("t", "a")])
        payload = {"orderId": "o1"}

        WorkflowRunner(actions).run(workflow, "orders.created", payload, SimulationSink())

        assert payload == {"orderId": "o1"}

    def test_first_failure_stops_the_run(self, actions, action_calls, graph):
        """Test fail-fast behaviour across sibling branches."""
        workflow = graph(
            [("t", "trigger", "orders.created"), ("a", "action", "test.fail"), ("b", "action", "test.record")],
            [("t", "a"), ("t", "b")],
            configs={"a": {"error": "card declined"}}
        )

        result = WorkflowRunner(actions).run(workflow, "orders.created", {}, SimulationSink())

        assert result.status == ExecutionStatusEnum.FAILED
        assert keys(action_calls) == ["a"]
        assert event_types(result) == ["node_started", "action_failed"]
        assert result.logs[-1].message == "card declined"
        assert result.context["failed_at"] == "a"

    def test_cycle_terminates(self, actions, action_calls, graph):
        """Test that each edge is followed once, so a loop runs its nodes a bounded number of times."""
        workflow = graph(
            [("t", "trigger", "orders.created"), ("a", "action", "test.record"), ("b", "action", "test.record")],
            [("t", "a"), ("a", "b"), ("b", "a")]
        )

        result = WorkflowRunner(actions).run(workflow, "orders.created", {}, SimulationSink())

        assert result.status == ExecutionStatusEnum.COMPLETED
        assert keys(action_calls) == ["a", "b", "a"]

    def test_node_runs_once_per_incoming_edge(self, actions, action_calls, graph):
        """Test that a join node reached over two edges runs twice."""
        workflow = graph(
            [("t", "trigger", "orders.created"), ("a", "action", "test.record"),
             ("b", "action", "test.record"), ("c", "action", "test.record")],
            [("t", "a"), ("t", "b"), ("a", "c"), ("b", "c")]
        )

        WorkflowRunner(actions).run(workflow, "orders.created", {}, SimulationSink())

        assert keys(action_calls) == ["a", "b", "c", "c"]

    def test_missing_target_node(self, actions, action_calls, graph):
        """Test that a dangling edge is logged and its siblings still run."""
        workflow = graph(
            [("t", "trigger", "orders.created"), ("a", "action", "test.record")],
            [("t", "ghost"), ("t", "a")]
        )

        result = WorkflowRunner(actions).run(workflow, "orders.created", {}, SimulationSink())

        assert result.status == ExecutionStatusEnum.COMPLETED
        missing = result.logs[0]
        assert missing.event_type == "missing_node"
        assert missing.message == "Edge target missing"
        assert missing.node_id == "t"
        assert missing.payload == {"edge_id": "t->ghost", "target_node_id": "ghost"}
        assert keys(action_calls) == ["a"]

    def test_unknown_action_abandons_only_its_branch(self, actions, action_calls, graph):
        """Test that an unregistered action type stops its branch but not the run."""
        workflow = graph(
            [("t", "trigger", "orders.created"), ("x", "action", "fax.send"),
             ("a", "action", "test.record"), ("b", "action", "test.record")],
            [("t", "x"), ("x", "a"), ("t", "b")]
        )

        result = WorkflowRunner(actions).run(workflow, "orders.created", {}, SimulationSink())

        assert result.status == ExecutionStatusEnum.COMPLETED
        assert keys(action_calls) == ["b"]
        unknown = result.logs[0]
        assert unknown.event_type == "unknown_action"
        assert unknown.node_id == "x"
        assert unknown.message == "No executor for fax.send"

    def test_trigger_nodes_pass_through(self, actions, action_calls, graph):
        """Test that reaching a trigger node continues along its edges without logging it."""
        workflow = graph(
            [("t", "trigger", "orders.created"), ("a", "action", "test.record"),
             ("t2", "trigger", "customers.segmented"), ("b", "action", "test.record")],
            [("t", "a"), ("a", "t2"), ("t2", "b")]
        )

        result = WorkflowRunner(actions).run(workflow, "orders.created", {}, SimulationSink())

        assert keys(action_calls) == ["a", "b"]
        assert all(log.node_id != "t2" for log in result.logs)

    def test_every_matching_trigger_node_starts(self, actions, action_calls, graph):
        """Test that all trigger nodes of the fired type seed the queue."""
        workflow = graph(
            [("t1", "trigger", "orders.created"), ("t2", "trigger", "orders.created"),
             ("other", "trigger", "customers.segmented"), ("a", "action", "test.record"),
             ("b", "action", "test.record"), ("c", "action", "test.record")],
            [("t1", "a"), ("t2", "b"), ("other", "c")]
        )

        WorkflowRunner(actions).run(workflow, "orders.created", {}, SimulationSink())

        assert keys(action_calls) == ["a", "b"]

    def test_no_matching_trigger(self, actions, action_calls, graph):
        """Test that a run without a matching trigger node fails immediately."""
        workflow = graph([("t", "trigger", "orders.created"), ("a", "action", "test.record")], [("t", "a")])

        result = WorkflowRunner(actions).run(workflow, "customers.segmented", {}, SimulationSink())

        assert result.status == ExecutionStatusEnum.FAILED
        assert event_types(result) == ["no_trigger"]
        assert result.logs[0].message == "No trigger nodes for customers.segmented"
        assert action_calls == []

    def test_step_limit(self, actions, action_calls, graph):
        """Test that traversal stops once the step limit is exceeded."""
        workflow = graph(
            [("t", "trigger", "orders.created"), ("a", "action", "test.record"),
             ("b", "action", "test.record"), ("c", "action", "test.record")],
            [("t", "a"), ("a", "b"), ("b", "c")]
        )

        result = WorkflowRunner(actions, max_steps=2).run(workflow, "orders.created", {}, SimulationSink())

        assert result.status == ExecutionStatusEnum.FAILED
        assert keys(action_calls) == ["a", "b"]
        assert result.logs[-1].event_type == "step_limit_exceeded"
        assert result.logs[-1].payload == {"max_steps": 2}

    def test_raising_action_aborts_with_partial_result(self, actions, action_calls, graph):
        """Test that an exception fails the run, keeps its partial result and still finishes the sink."""
        workflow = graph(
            [("t", "trigger", "orders.created"), ("a", "action", "test.record"), ("x", "action", "test.explode")],
            [("t", "a"), ("a", "x")]
        )
        sink = RecordingSink()

        with pytest.raises(ExecutionEngineError) as exc_info:
            WorkflowRunner(actions).run(workflow, "orders.created", {}, sink)

        partial = exc_info.value.result
        assert partial.status == ExecutionStatusEnum.FAILED
        assert partial.execution_id == "exec-1"
        assert partial.context["visited:a"] is True
        assert partial.logs[-1].event_type == "error"
        assert partial.logs[-1].message == "kaboom"
        assert sink.finished == [(ExecutionStatusEnum.FAILED, "kaboom")]
        assert keys(action_calls) == ["a", "x"]

    def test_sink_lifecycle(self, actions, graph):
        """Test that the sink sees start, every log entry in order, then finish."""
        workflow = graph([("t", "trigger", "orders.created"), ("a", "action", "test.record")], [("t", "a")])
        sink = RecordingSink()

        result = WorkflowRunner(actions).run(workflow, "orders.created", {}, sink)

        assert sink.started == ["orders.created"]
        assert sink.recorded == ["node_started", "action_completed"]
        assert sink.finished == [(ExecutionStatusEnum.COMPLETED, None)]
        assert result.execution_id == "exec-1"

    def test_simulation_flag_reaches_actions(self, actions, action_calls, graph):
        """Test that executors learn whether they run in a simulation."""
        workflow = graph([("t", "trigger", "orders.created"), ("a", "action", "test.record")], [("t", "a")])
        runner = WorkflowRunner(actions)

        runner.run(workflow, "orders.created", {}, SimulationSink())
        runner.run(workflow, "orders.created", {}, ExecutionSink())

        assert action_calls == [("a", True), ("a", False)]


def create_workflow(manager, name, nodes, edges, status="active"):
    return manager.create_workflow(WorkflowUpsert.model_validate({
        "definition": {"name": name, "status": status},
        "nodes": nodes,
        "edges": edges,
    }))


ORDER_FLOW_NODES = [
    {"key": "start", "kind": "trigger", "type": "orders.created"},
    {"key": "notify", "kind": "action", "type": "notifications.dispatch",
     "config": {"channel": "email", "template": "order-confirmation"}},
    {"key": "crm", "kind": "action", "type": "crm.update-field", "config": {"field": "lifetime_value"}},
]
ORDER_FLOW_EDGES = [{"source": "start", "target": "notify"}, {"source": "notify", "target": "crm"}]


class TestExecutionEngine:
    """Test cases for ExecutionEngine backed by a temporary database."""

    def test_order_created_runs_notification_and_crm(self, execution_engine, workflow_manager, state_manager):
        """Test the order confirmation workflow end to end."""
        workflow = create_workflow(workflow_manager, "Order confirmation", ORDER_FLOW_NODES, ORDER_FLOW_EDGES)

        results = execution_engine.run_trigger("orders.created", {"orderId": "o1", "total": 42})

        assert len(results) == 1
        result = results[0]
        assert result.status == ExecutionStatusEnum.COMPLETED
        assert result.workflow_id == workflow.id
        assert event_types(result).count("action_completed") == 2
        assert result.context["lastNotificationChannel"] == "email"
        assert result.context["crm:lifetime_value"] == 42
        assert result.context["orderId"] == "o1"

        record = state_manager.get_execution(result.execution_id)
        assert record.status == ExecutionStatusEnum.COMPLETED
        assert record.trigger_type == "orders.created"
        assert record.trigger_payload["orderId"] == "o1"
        assert record.context["crm:lifetime_value"] == 42
        assert record.completed_at is not None
        assert [event.event_type for event in record.events] == [
            "node_started", "action_completed", "node_started", "action_completed"
        ]

    def test_simulation_leaves_no_trace(self, execution_engine, workflow_manager, state_manager):
        """Test that a simulated run is not persisted."""
        workflow = create_workflow(workflow_manager, "Order confirmation", ORDER_FLOW_NODES, ORDER_FLOW_EDGES)

        result = execution_engine.simulate_workflow(workflow.id, "orders.created", {"orderId": "o1", "total": 42})

        assert result.status == ExecutionStatusEnum.COMPLETED
        assert result.execution_id is None
        assert result.context["crm:lifetime_value"] == 42
        assert state_manager.list_executions(workflow.id) == []
        assert state_manager.count_events(workflow.id) == 0

    def test_simulation_ignores_status(self, execution_engine, workflow_manager):
        """Test that draft and archived workflows can be simulated."""
        draft = create_workflow(workflow_manager, "Draft", ORDER_FLOW_NODES, ORDER_FLOW_EDGES, status="draft")
        archived = create_workflow(workflow_manager, "Old", ORDER_FLOW_NODES, ORDER_FLOW_EDGES)
        workflow_manager.delete_workflow(archived.id)

        for workflow_id in (draft.id, archived.id):
            result = execution_engine.simulate_workflow(workflow_id, "orders.created", {"orderId": "o1"})
            assert result.status == ExecutionStatusEnum.COMPLETED

    def test_simulation_passes_simulation_flag(self, execution_engine, workflow_manager, action_calls):
        """Test that actions are told they are simulated."""
        workflow = create_workflow(
            workflow_manager, "Recorder",
            [{"key": "start", "kind": "trigger", "type": "orders.created"},
             {"key": "rec", "kind": "action", "type": "test.record"}],
            [{"source": "start", "target": "rec"}]
        )

        execution_engine.simulate_workflow(workflow.id, "orders.created", {})

        assert action_calls == [("rec", True)]

    def test_simulate_missing_workflow(self, execution_engine):
        """Test that simulating an unknown workflow returns None."""
        assert execution_engine.simulate_workflow("missing", "orders.created", {}) is None

    def test_unknown_trigger(self, execution_engine):
        """Test that firing an unregistered trigger raises."""
        with pytest.raises(UnknownTriggerError):
            execution_engine.run_trigger("orders.deleted", {})

    def test_invalid_payload_creates_no_execution(self, execution_engine, workflow_manager, state_manager):
        """Test that payload validation happens before any workflow runs."""
        workflow = create_workflow(workflow_manager, "Order confirmation", ORDER_FLOW_NODES, ORDER_FLOW_EDGES)

        with pytest.raises(TriggerPayloadError):
            execution_engine.run_trigger("orders.created", {"total": 10})

        assert state_manager.list_executions(workflow.id) == []

    def test_only_active_workflows_run(self, execution_engine, workflow_manager):
        """Test that draft and archived workflows are not matched."""
        create_workflow(workflow_manager, "Draft", ORDER_FLOW_NODES, ORDER_FLOW_EDGES, status="draft")
        archived = create_workflow(workflow_manager, "Old", ORDER_FLOW_NODES, ORDER_FLOW_EDGES)
        workflow_manager.delete_workflow(archived.id)

        assert execution_engine.run_trigger("orders.created", {"orderId": "o1"}) == []

    def test_workflows_run_in_isolation(self, execution_engine, workflow_manager, state_manager):
        """Test that one workflow aborting does not stop another matched workflow."""
        broken = create_workflow(
            workflow_manager, "Broken",
            [{"key": "start", "kind": "trigger", "type": "orders.created"},
             {"key": "boom", "kind": "action", "type": "test.explode"}],
            [{"source": "start", "target": "boom"}]
        )
        healthy = create_workflow(workflow_manager, "Healthy", ORDER_FLOW_NODES, ORDER_FLOW_EDGES)

        results = execution_engine.run_trigger("orders.created", {"orderId": "o1", "total": 5})

        by_workflow = {result.workflow_id: result for result in results}
        assert by_workflow[broken.id].status == ExecutionStatusEnum.FAILED
        assert by_workflow[broken.id].logs[-1].event_type == "error"
        assert by_workflow[healthy.id].status == ExecutionStatusEnum.COMPLETED

        failed = state_manager.get_execution(by_workflow[broken.id].execution_id)
        assert failed.status == ExecutionStatusEnum.FAILED
        assert failed.error_message == "kaboom"
        assert [event.event_type for event in failed.events] == ["node_started", "error"]

    def test_failed_action_is_persisted(self, execution_engine, workflow_manager, state_manager):
        """Test that an action failure is stored as a failed execution."""
        workflow = create_workflow(
            workflow_manager, "Failing",
            [{"key": "start", "kind": "trigger", "type": "orders.created"},
             {"key": "nope", "kind": "action", "type": "test.fail"}],
            [{"source": "start", "target": "nope"}]
        )

        execution_engine.run_trigger("orders.created", {"orderId": "o1"})

        executions = state_manager.list_executions(workflow.id)
        assert len(executions) == 1
        assert executions[0].status == ExecutionStatusEnum.FAILED
        assert executions[0].events == []
        assert state_manager.count_events(workflow.id) == 2

    def test_execution_history(self, execution_engine, workflow_manager, state_manager):
        """Test listing executions with a limit."""
        workflow = create_workflow(workflow_manager, "Order confirmation", ORDER_FLOW_NODES, ORDER_FLOW_EDGES)

        execution_engine.run_trigger("orders.created", {"orderId": "o1"})
        execution_engine.run_trigger("orders.created", {"orderId": "o2"})

        assert len(state_manager.list_executions(workflow.id)) == 2
        assert len(state_manager.list_executions(workflow.id, limit=1)) == 1
        assert state_manager.get_execution("missing") is None

    def test_registries_frozen(self, execution_engine, triggers, actions):
        """Test that the engine makes both registries read-only."""
        assert triggers.frozen
        assert actions.frozen

    def test_catalog(self, execution_engine):
        """Test the catalog lists registered types."""
        catalog = execution_engine.catalog()

        assert [trigger.type for trigger in catalog.triggers] == ["orders.created", "customers.segmented"]
        assert "crm.update-field" in [action.type for action in catalog.actions]


class TestPersistentExecutionSink:
    """Test cases for storing executions when values or the database misbehave."""

    def test_non_json_context_values_are_stored(self, execution_engine, workflow_manager, state_manager):
        """Test that datetimes and decimals in the context do not lose the execution."""
        workflow = create_workflow(
            workflow_manager, "Stamping",
            [{"key": "start", "kind": "trigger", "type": "orders.created"},
             {"key": "stamp", "kind": "action", "type": "test.stamp"}],
            [{"source": "start", "target": "stamp"}]
        )

        result = execution_engine.run_trigger("orders.created", {"orderId": "o1"})[0]

        assert result.status == ExecutionStatusEnum.COMPLETED
        assert result.execution_id is not None
        executions = state_manager.list_executions(workflow.id)
        assert [execution.id for execution in executions] == [result.execution_id]

        record = state_manager.get_execution(result.execution_id)
        assert record.status == ExecutionStatusEnum.COMPLETED
        assert record.context["stamped_at"] == "2024-01-01T09:30:00"
        assert record.context["amount"] == "19.90"
        assert [event.event_type for event in record.events] == ["node_started", "action_completed"]

    def test_failed_commit_stores_failed_execution(self, temp_db, actions, workflow_manager, state_manager):
        """Test that a lost final commit is replaced by a failed execution with every event."""
        workflow = create_workflow(workflow_manager, "Order confirmation", ORDER_FLOW_NODES, ORDER_FLOW_EDGES)
        sink = PersistentExecutionSink(FailingFirstSession(temp_db))

        result = WorkflowRunner(actions).run(workflow, "orders.created", {"orderId": "o1", "total": 42}, sink)

        assert result.status == ExecutionStatusEnum.FAILED
        assert result.execution_id == sink.execution_id
        assert result.logs[-1].event_type == "error"
        assert "Failed to finalize execution" in result.logs[-1].message

        record = state_manager.get_execution(result.execution_id)
        assert record.status == ExecutionStatusEnum.FAILED
        assert "database is locked" in record.error_message
        assert record.context["crm:lifetime_value"] == 42
        assert record.completed_at is not None
        assert [event.event_type for event in record.events] == [
            "node_started", "action_completed", "node_started", "action_completed", "error"
        ]

    def test_failed_event_write_stores_failed_execution(self, temp_db, actions, action_calls, workflow_manager, state_manager):
        """Test that a failed event write aborts the run and still leaves a failed execution."""
        workflow = create_workflow(
            workflow_manager, "Recording",
            [{"key": "start", "kind": "trigger", "type": "orders.created"},
             {"key": "rec", "kind": "action", "type": "test.record"}],
            [{"source": "start", "target": "rec"}]
        )
        sink = PersistentExecutionSink(FailingFirstSession(temp_db, ok_flushes=1))

        with pytest.raises(ExecutionEngineError) as exc_info:
            WorkflowRunner(actions).run(workflow, "orders.created", {"orderId": "o1"}, sink)

        assert action_calls == []
        partial = exc_info.value.result
        assert partial.status == ExecutionStatusEnum.FAILED
        assert partial.execution_id == sink.execution_id

        record = state_manager.get_execution(sink.execution_id)
        assert record.status == ExecutionStatusEnum.FAILED
        assert "Failed to record execution event" in record.error_message
        assert [event.event_type for event in record.events] == ["node_started", "error", "error"]
