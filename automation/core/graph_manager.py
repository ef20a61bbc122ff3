"""Workflow Manager for persisted workflow definitions and their graphs."""

import uuid
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional, Sequence
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..models.core import (
    EdgeDefinition,
    NodeDefinition,
    NodeKind,
    ValidationResult,
    Workflow,
    WorkflowEdge,
    WorkflowNode,
    WorkflowStatus,
    WorkflowSummary,
    WorkflowUpdate,
    WorkflowUpsert,
)
from ..storage.database import get_session_factory
from ..storage.models import WorkflowDefinitionModel, WorkflowEdgeModel, WorkflowNodeModel
from .exceptions import StorageError, WorkflowStateError, WorkflowValidationError
from .logging import get_logger
from .validator import GraphValidator

logger = get_logger(__name__)


class WorkflowManager:
    """Creates, updates, archives and hydrates workflow definitions.

    Every write validates the full graph first and is applied in a single
    transaction, so an invalid or failed write leaves storage untouched.
    """

    def __init__(self, validator: GraphValidator, session_factory: Optional[sessionmaker] = None):
        """Initialize WorkflowManager.

        Args:
            validator: Graph validator used before every write
            session_factory: Optional session factory; defaults to the global one
        """
        self.validator = validator
        self._session_factory = session_factory

    def _get_db_session(self) -> Session:
        """Open a new session from the configured factory."""
        factory = self._session_factory or get_session_factory()
        return factory()

    def create_workflow(self, upsert: WorkflowUpsert) -> Workflow:
        """
        Validate and persist a new workflow with its nodes and edges.

        Args:
            upsert: Definition fields plus the full graph

        Returns:
            Workflow: The stored workflow, hydrated

        Raises:
            WorkflowValidationError: If the graph fails validation
            StorageError: If the storage operation fails
        """
        definition = upsert.definition
        logger.info(f"Creating workflow: {definition.name}")
        self._ensure_valid(upsert.nodes, upsert.edges)

        workflow_id = str(uuid.uuid4())
        now = datetime.utcnow()
        db = self._get_db_session()
        try:
            db.add(WorkflowDefinitionModel(
                id=workflow_id,
                name=definition.name,
                description=definition.description,
                status=definition.status.value,
                workflow_metadata=self._build_metadata(definition.metadata, upsert.nodes),
                branch_id=definition.branch_id,
                created_by=definition.created_by,
                created_at=now,
                updated_at=now,
                archived_at=now if definition.status == WorkflowStatus.ARCHIVED else None,
            ))
            self._insert_graph(db, workflow_id, upsert.nodes, upsert.edges)
            db.commit()

            logger.info(f"Successfully created workflow '{definition.name}' with ID: {workflow_id}")
            return self._hydrate(db, db.get(WorkflowDefinitionModel, workflow_id))

        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Database error while creating workflow: {str(e)}")
            raise StorageError(
                f"Failed to store workflow: {str(e)}",
                operation="create_workflow",
                table="workflow_definitions"
            )
        finally:
            db.close()

    def update_workflow(self, workflow_id: str, update: WorkflowUpdate) -> Optional[Workflow]:
        """
        Replace a workflow's graph and apply the supplied definition fields.

        Nodes and edges are replaced wholesale; node identities change on
        every update.

        Args:
            workflow_id: Workflow identifier
            update: Definition changes plus the full replacement graph

        Returns:
            Optional[Workflow]: The updated workflow, or None if it does not exist

        Raises:
            WorkflowValidationError: If the graph fails validation
            WorkflowStateError: If an archived workflow would leave the archived status
            StorageError: If the storage operation fails
        """
        logger.info(f"Updating workflow: {workflow_id}")
        db = self._get_db_session()
        try:
            model = db.get(WorkflowDefinitionModel, workflow_id)
            if model is None:
                return None

            patch = update.definition
            if (model.status == WorkflowStatus.ARCHIVED.value
                    and patch.status is not None
                    and patch.status != WorkflowStatus.ARCHIVED):
                raise WorkflowStateError(
                    f"Workflow {workflow_id} is archived and cannot be set to {patch.status.value}",
                    workflow_id=workflow_id
                )

            self._ensure_valid(update.nodes, update.edges, workflow_id=workflow_id)

            now = datetime.utcnow()
            if patch.name is not None:
                model.name = patch.name
            if patch.description is not None:
                model.description = patch.description
            if patch.branch_id is not None:
                model.branch_id = patch.branch_id
            if patch.status is not None and patch.status.value != model.status:
                model.status = patch.status.value
                if patch.status == WorkflowStatus.ARCHIVED:
                    model.archived_at = now

            merged_metadata = dict(model.workflow_metadata or {})
            merged_metadata.update(patch.metadata or {})
            model.workflow_metadata = self._build_metadata(merged_metadata, update.nodes)
            model.updated_at = now

            # Edges reference nodes, so they go first
            db.query(WorkflowEdgeModel).filter(
                WorkflowEdgeModel.workflow_id == workflow_id
            ).delete(synchronize_session=False)
            db.query(WorkflowNodeModel).filter(
                WorkflowNodeModel.workflow_id == workflow_id
            ).delete(synchronize_session=False)
            db.flush()

            self._insert_graph(db, workflow_id, update.nodes, update.edges)
            db.commit()

            logger.info(f"Successfully updated workflow {workflow_id}")
            return self._hydrate(db, model)

        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Database error while updating workflow {workflow_id}: {str(e)}")
            raise StorageError(
                f"Failed to update workflow: {str(e)}",
                operation="update_workflow",
                table="workflow_definitions"
            )
        except (WorkflowValidationError, WorkflowStateError):
            db.rollback()
            raise
        finally:
            db.close()

    def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        """
        Retrieve a workflow with its nodes and edges.

        Returns:
            Optional[Workflow]: The workflow, or None if it does not exist
        """
        logger.debug(f"Retrieving workflow with ID: {workflow_id}")
        db = self._get_db_session()
        try:
            model = db.get(WorkflowDefinitionModel, workflow_id)
            if model is None:
                return None
            return self._hydrate(db, model)
        except SQLAlchemyError as e:
            logger.error(f"Database error while retrieving workflow {workflow_id}: {str(e)}")
            raise StorageError(f"Failed to retrieve workflow: {str(e)}", operation="get_workflow")
        finally:
            db.close()

    def list_workflows(self, status: Optional[WorkflowStatus] = None) -> List[Workflow]:
        """
        List workflows in creation order, optionally filtered by status.

        Args:
            status: Only return workflows with this status

        Returns:
            List[Workflow]: Hydrated workflows
        """
        db = self._get_db_session()
        try:
            query = db.query(WorkflowDefinitionModel)
            if status is not None:
                query = query.filter(WorkflowDefinitionModel.status == WorkflowStatus(status).value)
            models = query.order_by(WorkflowDefinitionModel.created_at, WorkflowDefinitionModel.id).all()
            return self._hydrate_many(db, models)
        except SQLAlchemyError as e:
            logger.error(f"Database error while listing workflows: {str(e)}")
            raise StorageError(f"Failed to list workflows: {str(e)}", operation="list_workflows")
        finally:
            db.close()

    def list_summaries(self, status: Optional[WorkflowStatus] = None) -> List[WorkflowSummary]:
        """Lightweight listing built from the denormalized metadata."""
        return [
            WorkflowSummary(
                id=workflow.id,
                name=workflow.name,
                status=workflow.status,
                trigger_types=list(workflow.metadata.get("trigger_types", [])),
                action_types=list(workflow.metadata.get("action_types", [])),
                node_count=len(workflow.nodes),
                created_at=workflow.created_at,
            )
            for workflow in self.list_workflows(status)
        ]

    def delete_workflow(self, workflow_id: str) -> bool:
        """
        Archive a workflow. Nothing is hard-deleted so execution history stays valid.

        Returns:
            bool: True if the workflow exists (and is now archived), False otherwise
        """
        logger.info(f"Archiving workflow: {workflow_id}")
        db = self._get_db_session()
        try:
            model = db.get(WorkflowDefinitionModel, workflow_id)
            if model is None:
                logger.warning(f"Workflow with ID '{workflow_id}' not found for archiving")
                return False

            if model.status != WorkflowStatus.ARCHIVED.value:
                now = datetime.utcnow()
                model.status = WorkflowStatus.ARCHIVED.value
                model.archived_at = now
                model.updated_at = now
                db.commit()

            logger.info(f"Successfully archived workflow {workflow_id}")
            return True

        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Database error while archiving workflow {workflow_id}: {str(e)}")
            raise StorageError(
                f"Failed to archive workflow: {str(e)}",
                operation="delete_workflow",
                table="workflow_definitions"
            )
        finally:
            db.close()

    def validate_workflow(self, workflow_id: str) -> Optional[ValidationResult]:
        """Re-validate a stored workflow against the current registries."""
        workflow = self.get_workflow(workflow_id)
        if workflow is None:
            return None
        nodes, edges = workflow.to_definitions()
        return self.validator.validate(nodes, edges)

    def find_active_by_trigger(self, trigger_type: str) -> List[Workflow]:
        """
        Active workflows containing at least one trigger node of the given type.

        Returns:
            List[Workflow]: Hydrated workflows in creation order
        """
        db = self._get_db_session()
        try:
            listening = (
                db.query(WorkflowNodeModel.workflow_id)
                .filter(
                    WorkflowNodeModel.kind == NodeKind.TRIGGER.value,
                    WorkflowNodeModel.type == trigger_type,
                )
            )
            models = (
                db.query(WorkflowDefinitionModel)
                .filter(
                    WorkflowDefinitionModel.status == WorkflowStatus.ACTIVE.value,
                    WorkflowDefinitionModel.id.in_(listening),
                )
                .order_by(WorkflowDefinitionModel.created_at, WorkflowDefinitionModel.id)
                .all()
            )
            return self._hydrate_many(db, models)
        except SQLAlchemyError as e:
            logger.error(f"Database error while matching workflows for {trigger_type}: {str(e)}")
            raise StorageError(f"Failed to find workflows: {str(e)}", operation="find_active_by_trigger")
        finally:
            db.close()

    def _ensure_valid(
        self,
        nodes: Sequence[NodeDefinition],
        edges: Sequence[EdgeDefinition],
        workflow_id: Optional[str] = None
    ) -> ValidationResult:
        result = self.validator.validate(nodes, edges)
        if not result.valid:
            error_msg = f"Workflow validation failed: {', '.join(result.errors)}"
            logger.error(error_msg)
            raise WorkflowValidationError(
                error_msg,
                validation_errors=result.errors,
                warnings=result.warnings,
                workflow_id=workflow_id
            )
        if result.warnings:
            logger.warning(f"Workflow validation warnings: {'; '.join(result.warnings)}")
        return result

    @staticmethod
    def _build_metadata(metadata: Optional[Dict], nodes: Sequence[NodeDefinition]) -> Dict:
        """Caller metadata with the trigger/action type lists recomputed."""
        result = dict(metadata or {})
        result["trigger_types"] = [node.type for node in nodes if node.kind == NodeKind.TRIGGER]
        result["action_types"] = [node.type for node in nodes if node.kind == NodeKind.ACTION]
        return result

    @staticmethod
    def _insert_graph(
        db: Session,
        workflow_id: str,
        nodes: Sequence[NodeDefinition],
        edges: Sequence[EdgeDefinition]
    ) -> None:
        """Insert nodes, then edges with keys resolved to the new node ids."""
        now = datetime.utcnow()
        node_ids: Dict[str, str] = {}
        for ordinal, node in enumerate(nodes):
            node_id = str(uuid.uuid4())
            node_ids[node.key] = node_id
            db.add(WorkflowNodeModel(
                id=node_id,
                workflow_id=workflow_id,
                key=node.key,
                label=node.label,
                kind=node.kind.value,
                type=node.type,
                config=dict(node.config),
                position_x=node.position_x,
                position_y=node.position_y,
                ordinal=ordinal,
                created_at=now,
                updated_at=now,
            ))
        # Nodes must exist before edges can reference them
        db.flush()

        for ordinal, edge in enumerate(edges):
            db.add(WorkflowEdgeModel(
                id=str(uuid.uuid4()),
                workflow_id=workflow_id,
                source_node_id=node_ids[edge.source],
                target_node_id=node_ids[edge.target],
                label=edge.label,
                condition=dict(edge.condition),
                ordinal=ordinal,
                created_at=now,
            ))

    def _hydrate(self, db: Session, model: WorkflowDefinitionModel) -> Workflow:
        return self._hydrate_many(db, [model])[0]

    def _hydrate_many(self, db: Session, models: Sequence[WorkflowDefinitionModel]) -> List[Workflow]:
        """Load nodes and edges for a batch of definitions with two queries."""
        if not models:
            return []

        ids = [model.id for model in models]
        nodes_by_workflow = defaultdict(list)
        for node in (
            db.query(WorkflowNodeModel)
            .filter(WorkflowNodeModel.workflow_id.in_(ids))
            .order_by(WorkflowNodeModel.ordinal)
            .all()
        ):
            nodes_by_workflow[node.workflow_id].append(node)

        edges_by_workflow = defaultdict(list)
        for edge in (
            db.query(WorkflowEdgeModel)
            .filter(WorkflowEdgeModel.workflow_id.in_(ids))
            .order_by(WorkflowEdgeModel.ordinal)
            .all()
        ):
            edges_by_workflow[edge.workflow_id].append(edge)

        return [
            self._to_workflow(model, nodes_by_workflow[model.id], edges_by_workflow[model.id])
            for model in models
        ]

    @staticmethod
    def _to_workflow(
        model: WorkflowDefinitionModel,
        nodes: List[WorkflowNodeModel],
        edges: List[WorkflowEdgeModel]
    ) -> Workflow:
        keys = {node.id: node.key for node in nodes}
        return Workflow(
            id=model.id,
            name=model.name,
            description=model.description,
            status=WorkflowStatus(model.status),
            metadata=dict(model.workflow_metadata or {}),
            branch_id=model.branch_id,
            created_by=model.created_by,
            created_at=model.created_at,
            updated_at=model.updated_at,
            archived_at=model.archived_at,
            nodes=[
                WorkflowNode(
                    id=node.id,
                    workflow_id=node.workflow_id,
                    key=node.key,
                    label=node.label,
                    kind=NodeKind(node.kind),
                    type=node.type,
                    config=dict(node.config or {}),
                    position_x=node.position_x,
                    position_y=node.position_y,
                    created_at=node.created_at,
                    updated_at=node.updated_at,
                )
                for node in nodes
            ],
            edges=[
                WorkflowEdge(
                    id=edge.id,
                    workflow_id=edge.workflow_id,
                    source_node_id=edge.source_node_id,
                    target_node_id=edge.target_node_id,
                    source_key=keys.get(edge.source_node_id),
                    target_key=keys.get(edge.target_node_id),
                    label=edge.label,
                    condition=dict(edge.condition or {}),
                    created_at=edge.created_at,
                )
                for edge in edges
            ],
        )
