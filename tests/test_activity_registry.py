"""Tests for the activity registry and the built-in activities."""

import json

import pytest
import requests

from durable_flow.activities.builtin import BUILTIN_ACTIVITIES, register_builtin_activities
from durable_flow.activities.conditions import evaluate_condition, evaluate_conditions
from durable_flow.core.activity_registry import ActivityRegistry
from durable_flow.core.exceptions import ActivityRegistryError, TerminalNodeError
from durable_flow.core.node_executor import NodeExecutor, NodeRequest
from durable_flow.models.core import NodeDefinition


def noop(input_data, context):
    """Do nothing at all."""
    return None


class TestRegistration:
    """Registering and looking up activities."""

    def test_register_and_get(self):
        registry = ActivityRegistry()
        definition = registry.register("noop", noop)

        assert registry.get("noop") is definition
        assert definition.handler is noop
        assert definition.description == "Do nothing at all."
        assert "noop" in registry
        assert len(registry) == 1

    def test_duplicate_registration_rejected(self):
        registry = ActivityRegistry()
        registry.register("noop", noop)
        with pytest.raises(ActivityRegistryError):
            registry.register("noop", lambda input_data, context: 1)

    def test_replace(self):
        registry = ActivityRegistry()
        registry.register("noop", noop)
        replacement = registry.register("noop", lambda input_data, context: 1, description="new", replace=True)
        assert registry.get("noop") is replacement
        assert registry.list() == {"noop": "new"}

    def test_handler_must_accept_input_and_context(self):
        registry = ActivityRegistry()
        with pytest.raises(ActivityRegistryError):
            registry.register("bad", lambda only_input: None)
        with pytest.raises(ActivityRegistryError):
            registry.register("not-callable", "nope")
        with pytest.raises(ActivityRegistryError):
            registry.register("  ", noop)

    def test_timeout_must_be_positive(self):
        with pytest.raises(ActivityRegistryError):
            ActivityRegistry().register("noop", noop, timeout_seconds=0)

    def test_decorator(self):
        registry = ActivityRegistry()

        @registry.activity("decorated", description="Via decorator")
        def decorated(input_data, context):
            return input_data

        assert registry.get("decorated").handler is decorated
        assert registry.list() == {"decorated": "Via decorator"}

    def test_unregister(self):
        registry = ActivityRegistry()
        registry.register("noop", noop)
        assert registry.unregister("noop") is True
        assert registry.unregister("noop") is False
        with pytest.raises(ActivityRegistryError):
            registry.get("noop")


class TestResolve:
    """Node type resolution used by the executor."""

    def test_trigger_without_activity_resolves_to_none(self):
        registry = ActivityRegistry()
        assert registry.resolve("trigger-manual") is None
        assert registry.supports("trigger-webhook")

    def test_unknown_type_raises(self):
        with pytest.raises(ActivityRegistryError) as exc_info:
            ActivityRegistry().resolve("mystery")
        assert exc_info.value.context["activity_type"] == "mystery"

    def test_names_are_sorted(self):
        registry = ActivityRegistry()
        registry.register("b", noop)
        registry.register("a", noop)
        assert registry.names() == ["a", "b"]


class FakeSession:
    """Stands in for requests.Session and records requests."""

    def __init__(self, status_code=200, body=None):
        self.status_code = status_code
        self.body = body if body is not None else {"ok": True}
        self.requests = []

    def request(self, method, url, **kwargs):
        self.requests.append((method, url, kwargs))
        response = requests.Response()
        response.status_code = self.status_code
        response._content = json.dumps(self.body).encode("utf-8")
        response.headers["Content-Type"] = "application/json"
        response.url = url
        return response

    def close(self):
        pass


def run_builtin(registry, test_config, node_type, input_data=None, session=None, **config):
    executor = NodeExecutor(registry, test_config, http_client=session)
    try:
        return executor.execute(NodeRequest(
            execution_id="exec-b",
            node=NodeDefinition(id="n", type=node_type, data={"config": config}),
            attempt=1,
            input=input_data,
        ))
    finally:
        executor.shutdown()


class TestBuiltinActivities:
    """Activities registered for every workflow."""

    def test_builtins_are_registered_once(self):
        registry = register_builtin_activities(ActivityRegistry())
        register_builtin_activities(registry)
        assert set(BUILTIN_ACTIVITIES) <= set(registry.names())

    def test_transform_set(self, registry, test_config):
        outcome = run_builtin(registry, test_config, "transform-set", key="greeting", value="hello")
        assert outcome.output == {"greeting": "hello"}

    def test_transform_set_requires_key(self, registry, test_config):
        outcome = run_builtin(registry, test_config, "transform-set")
        assert not outcome.success
        assert outcome.retryable is False

    def test_transform_pick(self, registry, test_config):
        outcome = run_builtin(registry, test_config, "transform-pick", {"a": 1, "b": 2, "c": 3}, fields=["a", "c", "z"])
        assert outcome.output == {"a": 1, "c": 3}

    def test_wait_delay_passes_input(self, registry, test_config):
        outcome = run_builtin(registry, test_config, "wait-delay", {"x": 1}, duration=10)
        assert outcome.output == {"x": 1}

    def test_action_http_posts_input(self, registry, test_config):
        session = FakeSession(body={"id": 9})
        outcome = run_builtin(
            registry, test_config, "action-http", {"name": "n"}, session=session,
            url="https://api.example.test/items", method="post"
        )

        assert outcome.success
        assert outcome.output["status_code"] == 200
        assert outcome.output["body"] == {"id": 9}
        method, url, kwargs = session.requests[0]
        assert (method, url) == ("POST", "https://api.example.test/items")
        assert kwargs["json"] == {"name": "n"}

    def test_action_http_server_error_is_retryable(self, registry, test_config):
        outcome = run_builtin(
            registry, test_config, "action-http", session=FakeSession(status_code=502),
            url="https://api.example.test/down"
        )
        assert not outcome.success
        assert outcome.error_type == "HTTPError"
        assert outcome.retryable is True

    def test_action_http_client_error_is_terminal(self, registry, test_config):
        outcome = run_builtin(
            registry, test_config, "action-http", session=FakeSession(status_code=404),
            url="https://api.example.test/missing"
        )
        assert outcome.retryable is False

    def test_logic_if_reports_branch(self, registry, test_config):
        outcome = run_builtin(
            registry, test_config, "logic-if", {"tags": ["vip"], "total": 5},
            conditions=[
                {"field": "tags", "operator": "contains", "value": "vip"},
                {"field": "total", "operator": "greaterThan", "value": 10},
            ],
            combinator="or"
        )
        assert outcome.output == {"branch": True, "data": {"tags": ["vip"], "total": 5}}

    def test_logic_switch_requires_rules_or_field(self, registry, test_config):
        outcome = run_builtin(registry, test_config, "logic-switch", {"a": 1})
        assert not outcome.success
        assert outcome.retryable is False


class TestConditions:
    """Condition operators used by the branching activities."""

    order = {"id": "A-17", "total": 42.5, "items": [{"sku": "x1"}], "note": "", "paid": True}

    @pytest.mark.parametrize("condition", [
        {"field": "id", "operator": "equals", "value": "A-17"},
        {"field": "id", "operator": "startsWith", "value": "A-"},
        {"field": "id", "operator": "regex", "value": r"^A-\d+$"},
        {"field": "total", "operator": "greaterThanOrEqual", "value": "42.5"},
        {"field": "items.0.sku", "operator": "equals", "value": "x1"},
        {"field": "note", "operator": "isEmpty"},
        {"field": "paid", "operator": "isTrue"},
        {"field": "id", "operator": "notIn", "value": ["B-1"]},
    ])
    def test_matches(self, condition):
        assert evaluate_condition(condition, self.order) is True

    @pytest.mark.parametrize("condition", [
        {"field": "total", "operator": "lessThan", "value": "not a number"},
        {"field": "missing.deep", "operator": "isNotEmpty"},
        {"field": "items.5.sku", "operator": "equals", "value": "x1"},
        {"field": "id", "operator": "regex", "value": "("},
    ])
    def test_does_not_match(self, condition):
        assert evaluate_condition(condition, self.order) is False

    def test_no_conditions_hold_trivially(self):
        assert evaluate_conditions([], self.order) is True
        assert evaluate_conditions([], self.order, "or") is False

    def test_unknown_operator_is_terminal(self):
        with pytest.raises(TerminalNodeError):
            evaluate_condition({"field": "id", "operator": "near"}, self.order)
        with pytest.raises(TerminalNodeError):
            evaluate_conditions([], self.order, "xor")
