"""FastAPI REST endpoints for workflow automation."""

from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Body, Depends, HTTPException, Query, Response, status
from pydantic import AliasChoices, BaseModel, Field

from ..core.execution_engine import ExecutionEngine
from ..core.exceptions import ExecutionEngineError, WorkflowEngineError, create_error_response
from ..core.graph_manager import WorkflowManager
from ..core.logging import get_logger
from ..core.middleware import status_code_for_error
from ..core.state_manager import ExecutionStateManager
from ..models.core import (
    Catalog,
    ExecutionRecord,
    ExecutionResult,
    ValidationResult,
    Workflow,
    WorkflowStatus,
    WorkflowUpdate,
    WorkflowUpsert,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/api/workflows", tags=["workflows"])

# Global instances (initialized by the application factory)
_workflow_manager: Optional[WorkflowManager] = None
_execution_engine: Optional[ExecutionEngine] = None
_state_manager: Optional[ExecutionStateManager] = None


def init_dependencies(
    workflow_manager: WorkflowManager,
    execution_engine: ExecutionEngine,
    state_manager: ExecutionStateManager
):
    """Initialize the global dependencies."""
    global _workflow_manager, _execution_engine, _state_manager
    _workflow_manager = workflow_manager
    _execution_engine = execution_engine
    _state_manager = state_manager


def get_workflow_manager() -> WorkflowManager:
    """Dependency to get the workflow manager."""
    if _workflow_manager is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Workflow manager not initialized"
        )
    return _workflow_manager


def get_execution_engine() -> ExecutionEngine:
    """Dependency to get the execution engine."""
    if _execution_engine is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Execution engine not initialized"
        )
    return _execution_engine


def get_state_manager() -> ExecutionStateManager:
    """Dependency to get the execution state manager."""
    if _state_manager is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="State manager not initialized"
        )
    return _state_manager


# Request/Response models
class WorkflowListResponse(BaseModel):
    workflows: List[Workflow] = Field(default_factory=list)


class SimulateRequest(BaseModel):
    """Request model for a dry run."""
    trigger_type: str = Field(
        ...,
        validation_alias=AliasChoices("trigger_type", "triggerType"),
        description="Trigger type to simulate"
    )
    payload: Dict[str, Any] = Field(default_factory=dict, description="Trigger payload")


class TriggerResponse(BaseModel):
    results: List[ExecutionResult] = Field(default_factory=list)


class ExecutionListResponse(BaseModel):
    executions: List[ExecutionRecord] = Field(default_factory=list)


def _not_found(message: str = "Workflow not found") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"error": "NotFound", "message": message}
    )


def _engine_error(error: WorkflowEngineError, operation: str) -> HTTPException:
    logger.warning(f"Workflow engine error during {operation}: {error.message}")
    detail = create_error_response(error)
    if isinstance(error, ExecutionEngineError) and error.result is not None:
        detail["result"] = error.result.model_dump(mode="json")
    return HTTPException(status_code=status_code_for_error(error), detail=detail)


# Endpoints

@router.get("/catalog", response_model=Catalog, summary="List trigger and action types")
def get_catalog(engine: ExecutionEngine = Depends(get_execution_engine)) -> Catalog:
    return engine.catalog()


@router.get("/", response_model=WorkflowListResponse, summary="List workflows")
def list_workflows(
    workflow_status: Optional[WorkflowStatus] = Query(None, alias="status"),
    manager: WorkflowManager = Depends(get_workflow_manager)
) -> WorkflowListResponse:
    try:
        return WorkflowListResponse(workflows=manager.list_workflows(workflow_status))
    except WorkflowEngineError as e:
        raise _engine_error(e, "list_workflows")


@router.post(
    "/",
    response_model=Workflow,
    status_code=status.HTTP_201_CREATED,
    summary="Create a workflow",
    description="Validate and store a workflow definition with its graph"
)
def create_workflow(
    request: WorkflowUpsert,
    manager: WorkflowManager = Depends(get_workflow_manager)
) -> Workflow:
    """
    Create a workflow.

    Raises:
        HTTPException: 400 if the graph is invalid, 500 on storage failure
    """
    try:
        return manager.create_workflow(request)
    except WorkflowEngineError as e:
        raise _engine_error(e, "create_workflow")


@router.post("/trigger/{trigger_type}", response_model=TriggerResponse, summary="Fire a trigger")
def run_trigger(
    trigger_type: str,
    payload: Optional[Dict[str, Any]] = Body(None),
    engine: ExecutionEngine = Depends(get_execution_engine)
) -> TriggerResponse:
    """
    Run every active workflow listening for ``trigger_type``.

    Raises:
        HTTPException: 400 for unknown trigger types or invalid payloads
    """
    try:
        return TriggerResponse(results=engine.run_trigger(trigger_type, payload or {}))
    except WorkflowEngineError as e:
        raise _engine_error(e, "run_trigger")


@router.get("/executions/{execution_id}", response_model=ExecutionRecord, summary="Get an execution")
def get_execution(
    execution_id: str,
    state_manager: ExecutionStateManager = Depends(get_state_manager)
) -> ExecutionRecord:
    try:
        record = state_manager.get_execution(execution_id)
    except WorkflowEngineError as e:
        raise _engine_error(e, "get_execution")
    if record is None:
        raise _not_found("Execution not found")
    return record


@router.get("/{workflow_id}", response_model=Workflow, summary="Get a workflow")
def get_workflow(
    workflow_id: str,
    manager: WorkflowManager = Depends(get_workflow_manager)
) -> Workflow:
    try:
        workflow = manager.get_workflow(workflow_id)
    except WorkflowEngineError as e:
        raise _engine_error(e, "get_workflow")
    if workflow is None:
        raise _not_found()
    return workflow


@router.put("/{workflow_id}", response_model=Workflow, summary="Replace a workflow's graph")
def update_workflow(
    workflow_id: str,
    request: WorkflowUpdate,
    manager: WorkflowManager = Depends(get_workflow_manager)
) -> Workflow:
    """
    Update a workflow; nodes and edges are replaced wholesale.

    Raises:
        HTTPException: 404 if missing, 400 if invalid, 409 if archived
    """
    try:
        workflow = manager.update_workflow(workflow_id, request)
    except WorkflowEngineError as e:
        raise _engine_error(e, "update_workflow")
    if workflow is None:
        raise _not_found()
    return workflow


@router.delete("/{workflow_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Archive a workflow")
def delete_workflow(
    workflow_id: str,
    manager: WorkflowManager = Depends(get_workflow_manager)
) -> Response:
    try:
        archived = manager.delete_workflow(workflow_id)
    except WorkflowEngineError as e:
        raise _engine_error(e, "delete_workflow")
    if not archived:
        raise _not_found()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{workflow_id}/validate", response_model=ValidationResult, summary="Validate a stored workflow")
def validate_workflow(
    workflow_id: str,
    manager: WorkflowManager = Depends(get_workflow_manager)
) -> ValidationResult:
    try:
        result = manager.validate_workflow(workflow_id)
    except WorkflowEngineError as e:
        raise _engine_error(e, "validate_workflow")
    if result is None:
        raise _not_found()
    return result


@router.post("/{workflow_id}/simulate", response_model=ExecutionResult, summary="Dry-run a workflow")
def simulate_workflow(
    workflow_id: str,
    request: SimulateRequest,
    engine: ExecutionEngine = Depends(get_execution_engine)
) -> ExecutionResult:
    """Simulate a workflow in memory; nothing is written to execution history."""
    try:
        result = engine.simulate_workflow(workflow_id, request.trigger_type, request.payload)
    except WorkflowEngineError as e:
        raise _engine_error(e, "simulate_workflow")
    if result is None:
        raise _not_found()
    return result


@router.get("/{workflow_id}/executions", response_model=ExecutionListResponse, summary="Execution history")
def list_executions(
    workflow_id: str,
    limit: Optional[int] = Query(None, ge=1, le=500),
    manager: WorkflowManager = Depends(get_workflow_manager),
    state_manager: ExecutionStateManager = Depends(get_state_manager)
) -> ExecutionListResponse:
    try:
        if manager.get_workflow(workflow_id) is None:
            raise _not_found()
        return ExecutionListResponse(executions=state_manager.list_executions(workflow_id, limit=limit))
    except WorkflowEngineError as e:
        raise _engine_error(e, "list_executions")
