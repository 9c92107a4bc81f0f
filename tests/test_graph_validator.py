"""Tests for the graph validator."""

import pytest

from durable_flow.core.activity_registry import ActivityRegistry
from durable_flow.core.exceptions import ValidationError
from durable_flow.core.graph_validator import GraphValidator, validate_workflow
from durable_flow.models.core import WorkflowDefinition

from conftest import make_workflow, node, trigger


def definition(nodes, edges, **settings):
    return WorkflowDefinition.model_validate(make_workflow(nodes, edges, **settings))


@pytest.fixture
def validator(registry):
    return GraphValidator(registry)


class TestValidGraphs:
    """Graphs that must pass."""

    def test_linear_graph(self, validator):
        result = validator.validate(definition(
            [trigger(), node("a"), node("b")],
            [("trigger", "a"), ("a", "b")]
        ))
        assert result.is_valid
        assert result.errors == []
        assert result.warnings == []

    def test_diamond_with_error_edge(self, validator):
        result = validator.validate(definition(
            [trigger(), node("a"), node("b"), node("handler"), node("join")],
            [("trigger", "a"), ("trigger", "b"), ("a", "handler", "error"), ("a", "join"), ("b", "join")]
        ))
        assert result.is_valid

    def test_disabled_node_of_unknown_type_is_accepted(self, validator):
        result = validator.validate(definition(
            [trigger(), node("legacy", "not-installed", disabled=True)],
            [("trigger", "legacy")]
        ))
        assert result.is_valid

    def test_without_registry_node_types_are_not_checked(self):
        result = validate_workflow(definition(
            [trigger(), node("a", "anything-goes")],
            [("trigger", "a")]
        ))
        assert result.is_valid


class TestInvalidGraphs:
    """Each structural violation is reported."""

    def test_missing_trigger(self, validator):
        result = validator.validate(definition([node("a"), node("b")], [("a", "b")]))
        assert not result.is_valid
        assert "Workflow must have at least one trigger node" in result.errors

    def test_cycle_is_reported_with_its_path(self, validator):
        result = validator.validate(definition(
            [trigger(), node("a"), node("b")],
            [("trigger", "a"), ("a", "b"), ("b", "a")]
        ))
        assert not result.is_valid
        assert "Cycle detected: a -> b -> a" in result.errors

    def test_cycle_unreachable_from_triggers(self, validator):
        result = validator.validate(definition(
            [trigger(), node("a"), node("x"), node("y")],
            [("trigger", "a"), ("x", "y"), ("y", "x")]
        ))
        assert not result.is_valid
        assert any(error.startswith("Cycle detected:") for error in result.errors)

    def test_orphan_node(self, validator):
        result = validator.validate(definition([trigger(), node("a"), node("orphan")], [("trigger", "a")]))
        assert "Node 'orphan' is not connected to the workflow (no incoming edges)" in result.errors

    def test_unknown_node_type(self, validator):
        result = validator.validate(definition([trigger(), node("a", "mystery")], [("trigger", "a")]))
        assert "Unknown node type 'mystery' for node 'a'" in result.errors

    def test_dangling_edge(self, validator):
        result = validator.validate(definition([trigger(), node("a")], [("trigger", "a"), ("a", "ghost")]))
        assert "Edge 'e2' references non-existent target node 'ghost'" in result.errors

    def test_self_loop(self, validator):
        result = validator.validate(definition([trigger(), node("a")], [("trigger", "a"), ("a", "a")]))
        assert "Edge 'e2' connects node 'a' to itself" in result.errors

    def test_duplicate_node_id(self, validator):
        result = validator.validate(definition(
            [trigger(), node("a"), node("a")],
            [("trigger", "a")]
        ))
        assert "Duplicate node id 'a'" in result.errors

    def test_all_errors_are_reported_together(self, validator):
        result = validator.validate(definition(
            [node("a"), node("b", "mystery")],
            [("a", "b"), ("b", "a")]
        ))
        assert len(result.errors) >= 3
        assert "Workflow must have at least one trigger node" in result.errors
        assert "Unknown node type 'mystery' for node 'b'" in result.errors


class TestWarnings:
    """Warnings never block a start."""

    def test_disabled_trigger_warns(self, validator):
        disabled = definition(
            [dict(trigger("t1"), disabled=True), trigger("t2"), node("a")],
            [("t1", "a"), ("t2", "a")]
        )
        result = validator.validate(disabled)
        assert result.is_valid
        assert "Trigger node 't1' is disabled" in result.warnings


class TestValidateOrRaise:
    """The raising form used by the start path."""

    def test_raises_with_every_violation(self, validator):
        with pytest.raises(ValidationError) as exc_info:
            validator.validate_or_raise(definition(
                [trigger(), node("a"), node("b")],
                [("trigger", "a"), ("a", "b"), ("b", "a")]
            ))
        error = exc_info.value
        assert "Cycle detected: a -> b -> a" in error.validation_errors
        assert str(error).startswith("Workflow validation failed")

    def test_returns_result_when_valid(self):
        registry = ActivityRegistry()
        registry.register("noop", lambda input_data, context: None)
        result = GraphValidator(registry).validate_or_raise(definition(
            [trigger(), node("a", "noop")],
            [("trigger", "a")]
        ))
        assert result.is_valid
