"""Structural and semantic validation of workflow graphs."""

from typing import Any, List, Sequence

from ..models.core import EdgeDefinition, NodeDefinition, NodeKind, ValidationResult
from .logging import get_logger
from .registry import ActionRegistry, TriggerRegistry

logger = get_logger(__name__)


class GraphValidator:
    """Checks a candidate graph against the registered trigger and action types.

    Validation is pure: executor ``validate`` hooks are consulted but no
    action is run. All rules are evaluated so callers see every problem at
    once.
    """

    def __init__(self, triggers: TriggerRegistry, actions: ActionRegistry):
        self.triggers = triggers
        self.actions = actions

    def validate(self, nodes: Sequence[NodeDefinition], edges: Sequence[EdgeDefinition]) -> ValidationResult:
        """
        Validate a graph expressed with caller-supplied node keys.

        Args:
            nodes: Candidate nodes
            edges: Candidate edges, referencing nodes by key

        Returns:
            ValidationResult: ``valid`` is true exactly when ``errors`` is empty
        """
        errors: List[str] = []
        warnings: List[str] = []

        if not any(node.kind == NodeKind.TRIGGER for node in nodes):
            errors.append("Workflow requires at least one trigger node")
        if not any(node.kind == NodeKind.ACTION for node in nodes):
            warnings.append("Workflow has no action nodes")

        for node in nodes:
            if node.kind == NodeKind.TRIGGER and not self.triggers.has(node.type):
                errors.append(f"Unknown trigger type: {node.type}")
            if node.kind == NodeKind.ACTION and not self.actions.has(node.type):
                errors.append(f"Unknown action type: {node.type}")

        missing = self._missing_edge_endpoints(nodes, edges)
        if missing:
            errors.append(f"Edges reference unknown nodes: {', '.join(missing)}")

        duplicates = self._duplicate_keys(nodes)
        if duplicates:
            errors.append(f"Duplicate node keys: {', '.join(duplicates)}")

        for node in nodes:
            if node.kind != NodeKind.ACTION:
                continue
            executor = self.actions.get(node.type)
            if executor is not None and executor.has_validator:
                errors.extend(executor.validate(node))

        if errors:
            logger.debug(f"Graph validation found {len(errors)} error(s): {'; '.join(errors)}")

        return ValidationResult(valid=not errors, errors=errors, warnings=warnings)

    @staticmethod
    def _missing_edge_endpoints(nodes: Sequence[Any], edges: Sequence[EdgeDefinition]) -> List[str]:
        """Unknown keys referenced by edges, first-seen order, without repeats."""
        keys = {node.key for node in nodes}
        missing: List[str] = []
        for edge in edges:
            for endpoint in (edge.source, edge.target):
                if endpoint not in keys and endpoint not in missing:
                    missing.append(endpoint)
        return missing

    @staticmethod
    def _duplicate_keys(nodes: Sequence[Any]) -> List[str]:
        seen = set()
        duplicates: List[str] = []
        for node in nodes:
            if node.key in seen and node.key not in duplicates:
                duplicates.append(node.key)
            seen.add(node.key)
        return duplicates
