"""Execution state persistence and execution history queries."""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic_core import to_jsonable_python
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..models.core import (
    ExecutionEvent,
    ExecutionEventType,
    ExecutionLog,
    ExecutionRecord,
    ExecutionStatusEnum,
    Workflow,
)
from ..storage.database import get_session_factory
from ..storage.models import WorkflowExecutionEventModel, WorkflowExecutionModel
from .exceptions import StorageError
from .logging import get_logger

logger = get_logger(__name__)


def to_json_safe(value: Any) -> Any:
    """JSON form of a context or payload; values JSON cannot hold become strings."""
    return to_jsonable_python(value, fallback=str)


class ExecutionSink:
    """Receives the lifecycle of one run.

    ``start`` is called once before traversal and returns the execution id
    (or None when nothing is stored), ``record`` once per log entry in
    order, and ``finish`` exactly once, even when traversal raised.
    ``finish`` returns None when the outcome was stored as given, or an
    error message when the execution had to be stored as failed instead.
    """

    simulation = False

    def start(
        self,
        workflow: Workflow,
        trigger_type: str,
        payload: Dict[str, Any],
        context: Dict[str, Any]
    ) -> Optional[str]:
        return None

    def record(self, entry: ExecutionLog) -> None:
        pass

    def finish(
        self,
        status: ExecutionStatusEnum,
        context: Dict[str, Any],
        error_message: Optional[str] = None
    ) -> Optional[str]:
        return None


class PersistentExecutionSink(ExecutionSink):
    """Writes one execution row and its events inside a single transaction.

    The transaction is opened by ``start`` and committed by ``finish``.
    Context and event payloads are stored in their JSON form. Events are
    also kept in memory, so when the transaction is lost (a failed event
    write or a failed commit) ``finish`` stores the execution again as
    ``failed`` in a fresh session, with every event recorded so far.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory
        self._db: Optional[Session] = None
        self._execution: Optional[Dict[str, Any]] = None
        self._events: List[Dict[str, Any]] = []
        self._broken = False

    @property
    def execution_id(self) -> Optional[str]:
        return self._execution["id"] if self._execution is not None else None

    def start(self, workflow, trigger_type, payload, context):
        self._execution = {
            "id": str(uuid.uuid4()),
            "workflow_id": workflow.id,
            "trigger_type": trigger_type,
            "trigger_payload": to_json_safe(payload),
            "execution_metadata": {"simulation": False},
            "started_at": datetime.utcnow(),
        }
        self._db = self._session_factory()
        try:
            self._db.add(WorkflowExecutionModel(
                status=ExecutionStatusEnum.RUNNING.value,
                context=to_json_safe(context),
                **self._execution
            ))
            self._db.flush()
        except SQLAlchemyError as e:
            self._close(rollback=True)
            self._execution = None
            logger.error(f"Failed to create execution for workflow {workflow.id}: {str(e)}")
            raise StorageError(
                f"Failed to create execution: {str(e)}",
                operation="start_execution",
                table="workflow_executions"
            )

        logger.debug(f"Execution {self.execution_id} started for workflow {workflow.id}")
        return self.execution_id

    def record(self, entry: ExecutionLog) -> None:
        if self._execution is None:
            return
        event = {
            "node_id": entry.node_id,
            "event_type": entry.event_type,
            "message": entry.message,
            "payload": to_json_safe(entry.payload),
            "created_at": entry.created_at,
        }
        self._events.append(event)
        if self._broken:
            return
        try:
            self._db.add(WorkflowExecutionEventModel(execution_id=self.execution_id, **event))
            self._db.flush()
        except SQLAlchemyError as e:
            self._broken = True
            self._close(rollback=True)
            logger.error(f"Failed to record event for execution {self.execution_id}: {str(e)}")
            raise StorageError(
                f"Failed to record execution event: {str(e)}",
                operation="record_event",
                table="workflow_execution_events"
            )

    def finish(self, status, context, error_message=None) -> Optional[str]:
        if self._execution is None:
            return None
        completed_at = datetime.utcnow()

        if not self._broken:
            try:
                execution = self._db.get(WorkflowExecutionModel, self.execution_id)
                execution.status = ExecutionStatusEnum(status).value
                execution.context = to_json_safe(context)
                execution.error_message = error_message
                execution.completed_at = completed_at
                self._db.commit()
                logger.debug(f"Execution {self.execution_id} finished with status {execution.status}")
                return None
            except SQLAlchemyError as e:
                logger.error(f"Failed to finalize execution {self.execution_id}: {str(e)}")
                finalize_error = f"Failed to finalize execution: {str(e)}"
            finally:
                self._close(rollback=True)
        else:
            finalize_error = "Failed to record execution event"

        self._store_failed(context, error_message, finalize_error, completed_at)
        return finalize_error

    def _store_failed(
        self,
        context: Dict[str, Any],
        error_message: Optional[str],
        finalize_error: str,
        completed_at: datetime
    ) -> None:
        """Write the execution as failed, with its buffered events, in a new session."""
        events = self._events + [{
            "node_id": None,
            "event_type": ExecutionEventType.ERROR.value,
            "message": finalize_error,
            "payload": {},
            "created_at": completed_at,
        }]
        db = self._session_factory()
        try:
            db.add(WorkflowExecutionModel(
                status=ExecutionStatusEnum.FAILED.value,
                context=to_json_safe(context),
                error_message="; ".join(filter(None, [error_message, finalize_error])),
                completed_at=completed_at,
                **self._execution
            ))
            db.flush()
            for event in events:
                db.add(WorkflowExecutionEventModel(execution_id=self.execution_id, **event))
            db.commit()
            logger.warning(f"Execution {self.execution_id} stored as failed: {finalize_error}")
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to store failed execution {self.execution_id}: {str(e)}")
            raise StorageError(
                f"Failed to store execution: {str(e)}",
                operation="finish_execution",
                table="workflow_executions"
            )
        finally:
            db.close()

    def _close(self, rollback: bool = False) -> None:
        if self._db is None:
            return
        if rollback:
            self._db.rollback()
        self._db.close()
        self._db = None


class ExecutionStateManager:
    """Opens persistent sinks for real runs and answers execution history queries."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self._session_factory = session_factory

    def _factory(self) -> sessionmaker:
        return self._session_factory or get_session_factory()

    def open_sink(self) -> PersistentExecutionSink:
        return PersistentExecutionSink(self._factory())

    def list_executions(self, workflow_id: str, limit: Optional[int] = None) -> List[ExecutionRecord]:
        """
        Executions of a workflow, newest first, without their events.

        Args:
            workflow_id: Workflow identifier
            limit: Optional maximum number of executions to return

        Returns:
            List[ExecutionRecord]: Execution summaries
        """
        db = self._factory()()
        try:
            query = (
                db.query(WorkflowExecutionModel)
                .filter(WorkflowExecutionModel.workflow_id == workflow_id)
                .order_by(WorkflowExecutionModel.started_at.desc(), WorkflowExecutionModel.id)
            )
            if limit is not None:
                query = query.limit(limit)
            return [self._to_record(model) for model in query.all()]
        except SQLAlchemyError as e:
            logger.error(f"Failed to list executions for workflow {workflow_id}: {str(e)}")
            raise StorageError(f"Failed to list executions: {str(e)}", operation="list_executions")
        finally:
            db.close()

    def get_execution(self, execution_id: str) -> Optional[ExecutionRecord]:
        """
        Retrieve one execution with its events in creation order.

        Returns:
            Optional[ExecutionRecord]: The execution, or None if it does not exist
        """
        db = self._factory()()
        try:
            model = db.get(WorkflowExecutionModel, execution_id)
            if model is None:
                return None
            events = (
                db.query(WorkflowExecutionEventModel)
                .filter(WorkflowExecutionEventModel.execution_id == execution_id)
                .order_by(WorkflowExecutionEventModel.id)
                .all()
            )
            return self._to_record(model, events)
        except SQLAlchemyError as e:
            logger.error(f"Failed to retrieve execution {execution_id}: {str(e)}")
            raise StorageError(f"Failed to retrieve execution: {str(e)}", operation="get_execution")
        finally:
            db.close()

    def count_events(self, workflow_id: str) -> int:
        """Number of events recorded across all executions of a workflow."""
        db = self._factory()()
        try:
            return (
                db.query(WorkflowExecutionEventModel)
                .join(
                    WorkflowExecutionModel,
                    WorkflowExecutionModel.id == WorkflowExecutionEventModel.execution_id
                )
                .filter(WorkflowExecutionModel.workflow_id == workflow_id)
                .count()
            )
        finally:
            db.close()

    @staticmethod
    def _to_record(
        model: WorkflowExecutionModel,
        events: Optional[List[WorkflowExecutionEventModel]] = None
    ) -> ExecutionRecord:
        return ExecutionRecord(
            id=model.id,
            workflow_id=model.workflow_id,
            trigger_type=model.trigger_type,
            status=ExecutionStatusEnum(model.status),
            context=dict(model.context or {}),
            trigger_payload=dict(model.trigger_payload or {}),
            metadata=dict(model.execution_metadata or {}),
            error_message=model.error_message,
            started_at=model.started_at,
            completed_at=model.completed_at,
            events=[
                ExecutionEvent(
                    id=event.id,
                    node_id=event.node_id,
                    event_type=event.event_type,
                    message=event.message,
                    payload=dict(event.payload or {}),
                    created_at=event.created_at,
                )
                for event in events or []
            ],
        )
