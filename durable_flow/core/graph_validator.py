"""Graph Validator: static checks that gate the start of an execution."""

from collections import Counter
from typing import Dict, List, Optional

from ..models.core import WorkflowDefinition, ValidationResult
from .activity_registry import ActivityRegistry
from .exceptions import ValidationError
from .logging import get_logger

logger = get_logger(__name__)

UNVISITED, IN_PROGRESS, DONE = 0, 1, 2


class GraphValidator:
    """Validates workflow definitions before any journal entry is written."""

    def __init__(self, registry: Optional[ActivityRegistry] = None):
        self.registry = registry

    def validate(self, definition: WorkflowDefinition) -> ValidationResult:
        """
        Validate a workflow definition for structural correctness.

        Every check runs, so all violations are reported together.

        Args:
            definition: The workflow definition to validate

        Returns:
            ValidationResult: Validation results with errors and warnings
        """
        logger.debug(f"Validating workflow: {definition.display_name}")

        errors: List[str] = []
        warnings: List[str] = []

        self._validate_unique_ids(definition, errors)
        self._validate_references(definition, errors)
        self._validate_triggers(definition, errors, warnings)
        self._validate_incoming_edges(definition, errors)
        self._validate_cycles(definition, errors)
        self._validate_node_types(definition, errors)
        self._validate_reachability(definition, warnings)

        result = ValidationResult(is_valid=len(errors) == 0, errors=errors, warnings=warnings)

        logger.debug(f"Workflow validation completed. Valid: {result.is_valid}, "
                     f"Errors: {len(result.errors)}, Warnings: {len(result.warnings)}")
        return result

    def validate_or_raise(self, definition: WorkflowDefinition) -> ValidationResult:
        """Validate and raise ValidationError listing every violation."""
        result = self.validate(definition)
        if not result.is_valid:
            error_msg = f"Workflow validation failed: {'; '.join(result.errors)}"
            logger.error(error_msg)
            raise ValidationError(error_msg, validation_errors=result.errors, workflow_id=definition.id)
        if result.warnings:
            logger.warning(f"Workflow validation warnings: {'; '.join(result.warnings)}")
        return result

    def _validate_unique_ids(self, definition: WorkflowDefinition, errors: List[str]):
        for node_id, count in Counter(node.id for node in definition.nodes).items():
            if count > 1:
                errors.append(f"Duplicate node id '{node_id}'")
        for edge_id, count in Counter(edge.id for edge in definition.edges).items():
            if count > 1:
                errors.append(f"Duplicate edge id '{edge_id}'")

    def _validate_references(self, definition: WorkflowDefinition, errors: List[str]):
        node_ids = {node.id for node in definition.nodes}
        for edge in definition.edges:
            if edge.source not in node_ids:
                errors.append(f"Edge '{edge.id}' references non-existent source node '{edge.source}'")
            if edge.target not in node_ids:
                errors.append(f"Edge '{edge.id}' references non-existent target node '{edge.target}'")
            if edge.source == edge.target:
                errors.append(f"Edge '{edge.id}' connects node '{edge.source}' to itself")

    def _validate_triggers(self, definition: WorkflowDefinition, errors: List[str], warnings: List[str]):
        triggers = definition.trigger_nodes()
        if not triggers:
            errors.append("Workflow must have at least one trigger node")
            return
        for trigger in triggers:
            if trigger.disabled:
                warnings.append(f"Trigger node '{trigger.id}' is disabled")

    def _validate_incoming_edges(self, definition: WorkflowDefinition, errors: List[str]):
        targets = {edge.target for edge in definition.edges}
        for node in definition.nodes:
            if not node.is_trigger and node.id not in targets:
                errors.append(f"Node '{node.id}' is not connected to the workflow (no incoming edges)")

    def _validate_cycles(self, definition: WorkflowDefinition, errors: List[str]):
        """Depth-first search from every trigger with a three-state marker per node."""
        adjacency: Dict[str, List[str]] = {node.id: [] for node in definition.nodes}
        for edge in definition.edges:
            if edge.source in adjacency and edge.target in adjacency and edge.source != edge.target:
                adjacency[edge.source].append(edge.target)

        marks = {node_id: UNVISITED for node_id in adjacency}
        reported = set()

        # Triggers first, then any node left unvisited: a cycle cut off from
        # every trigger would never settle either
        roots = [trigger.id for trigger in definition.trigger_nodes()] + list(adjacency)
        for root in roots:
            if marks[root] != UNVISITED:
                continue
            # Iterative DFS; the path mirrors the in-progress nodes
            path = [root]
            iterators = [iter(adjacency[root])]
            marks[root] = IN_PROGRESS
            while iterators:
                next_id = next(iterators[-1], None)
                if next_id is None:
                    marks[path.pop()] = DONE
                    iterators.pop()
                    continue
                if marks[next_id] == IN_PROGRESS:
                    cycle = path[path.index(next_id):] + [next_id]
                    key = frozenset(cycle)
                    if key not in reported:
                        reported.add(key)
                        errors.append(f"Cycle detected: {' -> '.join(cycle)}")
                elif marks[next_id] == UNVISITED:
                    marks[next_id] = IN_PROGRESS
                    path.append(next_id)
                    iterators.append(iter(adjacency[next_id]))

    def _validate_node_types(self, definition: WorkflowDefinition, errors: List[str]):
        if self.registry is None:
            return
        for node in definition.nodes:
            if node.disabled or node.is_trigger:
                continue
            if not self.registry.has(node.type):
                errors.append(f"Unknown node type '{node.type}' for node '{node.id}'")

    def _validate_reachability(self, definition: WorkflowDefinition, warnings: List[str]):
        triggers = definition.trigger_nodes()
        if not triggers:
            return
        reachable = set()
        stack = [trigger.id for trigger in triggers]
        while stack:
            node_id = stack.pop()
            if node_id in reachable:
                continue
            reachable.add(node_id)
            stack.extend(edge.target for edge in definition.outgoing_edges(node_id))

        unreachable = [node.id for node in definition.nodes if node.id not in reachable]
        if unreachable:
            warnings.append(f"Unreachable nodes detected: {', '.join(unreachable)}")


def validate_workflow(definition: WorkflowDefinition, registry: Optional[ActivityRegistry] = None) -> ValidationResult:
    """Convenience wrapper around GraphValidator.validate."""
    return GraphValidator(registry).validate(definition)
