"""Pytest configuration and fixtures."""

import threading
import time
from collections import defaultdict
from typing import Any, Dict, List, Optional

import pytest

from durable_flow.activities.builtin import register_builtin_activities
from durable_flow.config import AppConfig, LogLevel
from durable_flow.core.activity_registry import ActivityRegistry
from durable_flow.core.exceptions import TerminalNodeError
from durable_flow.core.journal import ExecutionJournal
from durable_flow.core.runtime import WorkflowRuntime
from durable_flow.storage.database import create_database_engine, create_session_factory
from durable_flow.storage.migrations import run_migrations


def make_workflow(nodes: List[Dict[str, Any]], edges: List[Any], workflow_id: str = "wf-test",
                  **settings) -> Dict[str, Any]:
    """
    Build a workflow definition dict.

    Edges may be given as ``(source, target)`` or ``(source, target, kind)``
    tuples; ids are generated.
    """
    edge_defs = []
    for index, edge in enumerate(edges, start=1):
        if isinstance(edge, dict):
            edge_defs.append(edge)
            continue
        source, target = edge[0], edge[1]
        kind = edge[2] if len(edge) > 2 else "default"
        edge_defs.append({"id": f"e{index}", "source": source, "target": target, "kind": kind})
    return {
        "id": workflow_id,
        "name": "Test workflow",
        "nodes": nodes,
        "edges": edge_defs,
        "settings": {"retry_delay_ms": 10, **settings},
    }


def node(node_id: str, node_type: str = "test-record", disabled: bool = False,
         timeout_seconds: Optional[float] = None, **config) -> Dict[str, Any]:
    data: Dict[str, Any] = {"label": node_id, "config": config}
    if timeout_seconds is not None:
        data["timeout_seconds"] = timeout_seconds
    return {"id": node_id, "type": node_type, "data": data, "disabled": disabled}


def trigger(node_id: str = "trigger") -> Dict[str, Any]:
    return {"id": node_id, "type": "trigger-manual", "data": {"label": "Manual trigger"}}


def wait_until(predicate, timeout: float = 5.0, interval: float = 0.02) -> bool:
    """Poll until the predicate holds; fails the test on timeout."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    pytest.fail(f"Condition not met within {timeout} seconds")


class ActivityCalls:
    """Thread-safe log of activity invocations."""

    def __init__(self):
        self._lock = threading.Lock()
        self.calls: List[tuple] = []

    def record(self, node_id: str, attempt: int):
        with self._lock:
            self.calls.append((node_id, attempt))

    def nodes(self) -> List[str]:
        with self._lock:
            return [node_id for node_id, _ in self.calls]

    def count(self, node_id: str) -> int:
        return self.nodes().count(node_id)


@pytest.fixture
def activity_calls():
    return ActivityCalls()


@pytest.fixture
def gates():
    """Named events that gate activities; all are opened at teardown."""
    events = defaultdict(threading.Event)
    yield events
    for event in list(events.values()):
        event.set()


@pytest.fixture
def registry(activity_calls, gates):
    """Registry with the built-in activities plus test helpers."""
    registry = register_builtin_activities(ActivityRegistry())

    @registry.activity("test-record", description="Record the call and echo the node id")
    def record(input_data, context):
        activity_calls.record(context.node_id, context.attempt)
        return {"node": context.node_id, "input": input_data}

    @registry.activity("test-echo")
    def echo(input_data, context):
        activity_calls.record(context.node_id, context.attempt)
        return input_data

    @registry.activity("test-flaky")
    def flaky(input_data, context):
        activity_calls.record(context.node_id, context.attempt)
        if context.attempt <= context.config.get("fail_times", 1):
            raise ConnectionError(f"temporary outage on attempt {context.attempt}")
        return {"attempt": context.attempt}

    @registry.activity("test-fail")
    def fail(input_data, context):
        activity_calls.record(context.node_id, context.attempt)
        raise ValueError(context.config.get("message", "boom"))

    @registry.activity("test-terminal")
    def terminal(input_data, context):
        activity_calls.record(context.node_id, context.attempt)
        raise TerminalNodeError("unrecoverable", node_id=context.node_id)

    @registry.activity("test-sleep")
    def sleep(input_data, context):
        activity_calls.record(context.node_id, context.attempt)
        time.sleep(context.config.get("seconds", 0.1))
        return {"slept": context.config.get("seconds", 0.1)}

    @registry.activity("test-gate")
    def gate(input_data, context):
        activity_calls.record(context.node_id, context.attempt)
        gates[context.config.get("gate", context.node_id)].wait(timeout=10)
        return {"gate": context.node_id}

    return registry


@pytest.fixture
def test_config(tmp_path):
    """Configuration with short leases backed by a temporary SQLite file."""
    return AppConfig(
        app_name="Test Durable Flow",
        debug=True,
        database_url=f"sqlite:///{tmp_path / 'journal.db'}",
        log_level=LogLevel.WARNING,
        max_concurrent_nodes=4,
        node_timeout=10,
        lease_seconds=3.0,
        cancel_grace_period_seconds=0.5,
        retry_max_delay_ms=200,
        recover_on_startup=False,
        enable_historical_data_cleanup=False,
        cors_origins=[],
    )


@pytest.fixture
def engine(test_config):
    engine = create_database_engine(
        test_config.database_url,
        connect_args=test_config.get_database_connect_args()
    )
    run_migrations(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def journal(session_factory):
    return ExecutionJournal(session_factory)


@pytest.fixture
def runtime(session_factory, registry, test_config):
    runtime = WorkflowRuntime(session_factory, registry=registry, config=test_config, owner_id="worker-a")
    yield runtime
    runtime.shutdown(wait=False, timeout=2.0)
