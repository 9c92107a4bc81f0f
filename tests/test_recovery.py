"""Crash recovery, lease takeover and fencing across runtimes."""

from datetime import timedelta

import pytest

from durable_flow.core.exceptions import LeaseHeldError, LeaseLostError, StorageError
from durable_flow.core.orchestrator import APPEND_RETRY
from durable_flow.core.runtime import WorkflowRuntime
from durable_flow.models.core import (
    ExecutionStatusEnum,
    JournalEventKind,
    NodeStatusEnum,
    ResultStatus,
    WorkflowDefinition,
    utc_now,
)

from conftest import make_workflow, node, trigger, wait_until


def orphan_execution(journal, definition, execution_id="orphan-1", input_data=None, lease_seconds=1.0,
                     owner_id="dead-worker", created_ago=timedelta(minutes=5)):
    """Create an execution whose owner died; returns the stale lease."""
    definition = WorkflowDefinition.model_validate(definition)
    lease = journal.create_execution(
        execution_id=execution_id,
        workflow_id=definition.id,
        owner_id=owner_id,
        lease_seconds=lease_seconds,
        now=utc_now() - created_ago,
    )
    journal.append(lease, JournalEventKind.EXECUTION_STARTED, {
        "workflow_id": definition.id,
        "definition": definition.model_dump(mode="json"),
        "input": input_data,
        "organization_id": None,
        "trigger_type": "manual",
    })
    return lease


def run_node(journal, lease, node_id, output, node_type="test-record"):
    journal.append(lease, JournalEventKind.NODE_SCHEDULED, {"node_id": node_id, "attempt": 1, "type": node_type})
    journal.append(lease, JournalEventKind.NODE_STARTED, {"node_id": node_id, "attempt": 1})
    journal.append(lease, JournalEventKind.NODE_SUCCEEDED, {"node_id": node_id, "attempt": 1, "output": output})


@pytest.fixture
def second_runtime(session_factory, registry, test_config):
    runtime = WorkflowRuntime(session_factory, registry=registry, config=test_config, owner_id="worker-b")
    yield runtime
    runtime.shutdown(wait=False, timeout=2.0)


class TestRecovery:
    """Executions abandoned by a dead owner are resumed from the journal."""

    def test_recovery_never_reruns_succeeded_nodes(self, runtime, journal, activity_calls):
        workflow = make_workflow(
            [trigger(), node("a"), node("b"), node("c")],
            [("trigger", "a"), ("a", "b"), ("b", "c")]
        )
        lease = orphan_execution(journal, workflow, input_data={"n": 1})
        run_node(journal, lease, "trigger", {"n": 1}, node_type="trigger-manual")
        run_node(journal, lease, "a", {"node": "a", "input": {"n": 1}})
        journal.append(lease, JournalEventKind.NODE_SCHEDULED, {"node_id": "b", "attempt": 1, "type": "test-record"})
        journal.append(lease, JournalEventKind.NODE_STARTED, {"node_id": "b", "attempt": 1})

        assert runtime.recover_all() == ["orphan-1"]
        result = runtime.await_result("orphan-1", timeout=10)

        assert result.status == ResultStatus.SUCCESS
        assert activity_calls.calls == [("b", 1), ("c", 1)]
        assert result.results["a"] == {"node": "a", "input": {"n": 1}}
        assert result.results["b"]["input"] == {"node": "a", "input": {"n": 1}}

    def test_dead_owner_cannot_append_after_takeover(self, runtime, journal):
        workflow = make_workflow([trigger(), node("a")], [("trigger", "a")])
        stale_lease = orphan_execution(journal, workflow)

        runtime.recover("orphan-1")
        runtime.await_result("orphan-1", timeout=10)

        with pytest.raises(LeaseLostError):
            journal.append(stale_lease, JournalEventKind.EXECUTION_PAUSED, {})

    def test_recovery_resumes_pending_retry(self, runtime, journal, activity_calls):
        workflow = make_workflow(
            [trigger(), node("flaky", "test-flaky", fail_times=1)],
            [("trigger", "flaky")],
            max_retries=3
        )
        lease = orphan_execution(journal, workflow)
        run_node(journal, lease, "trigger", None, node_type="trigger-manual")
        journal.append(lease, JournalEventKind.NODE_SCHEDULED, {"node_id": "flaky", "attempt": 1, "type": "test-flaky"})
        journal.append(lease, JournalEventKind.NODE_STARTED, {"node_id": "flaky", "attempt": 1})
        journal.append(lease, JournalEventKind.NODE_RETRIED, {
            "node_id": "flaky", "attempt": 1, "error": "temporary outage", "error_type": "ConnectionError",
            "delay_ms": 10, "next_attempt": 2,
        })

        runtime.recover("orphan-1")
        result = runtime.await_result("orphan-1", timeout=10)

        assert result.status == ResultStatus.SUCCESS
        assert activity_calls.calls == [("flaky", 2)]
        assert result.results["flaky"] == {"attempt": 2}

    def test_live_lease_is_not_taken_over(self, runtime, journal):
        workflow = make_workflow([trigger(), node("a")], [("trigger", "a")])
        orphan_execution(journal, workflow, lease_seconds=600, created_ago=timedelta(0))

        with pytest.raises(LeaseHeldError):
            runtime.recover("orphan-1")
        assert runtime.recover_all() == []

    def test_terminal_execution_is_not_recovered(self, runtime, second_runtime):
        workflow = make_workflow([trigger(), node("a")], [("trigger", "a")])
        execution_id = runtime.start(workflow)
        runtime.await_result(execution_id, timeout=10)

        assert second_runtime.recover(execution_id) is None
        assert second_runtime.get_state(execution_id).completed_nodes == ["trigger", "a"]

    def test_restart_matches_uninterrupted_run(self, runtime, second_runtime, gates, activity_calls):
        workflow = make_workflow(
            [trigger(), node("a"), node("gate", "test-gate"), node("c")],
            [("trigger", "a"), ("a", "gate"), ("gate", "c")]
        )
        execution_id = runtime.start(workflow, {"n": 2})
        wait_until(lambda: runtime.get_node_result(execution_id, "gate").status == NodeStatusEnum.RUNNING)

        # First owner goes away mid-node
        first = runtime._local(execution_id)
        first.stop(timeout=2.0)
        assert not first.is_active

        second_runtime.recover(execution_id)
        gates["gate"].set()
        result = second_runtime.await_result(execution_id, timeout=10)

        assert result.status == ResultStatus.SUCCESS
        assert activity_calls.count("a") == 1
        assert activity_calls.count("c") == 1
        assert set(result.results) == {"trigger", "a", "gate", "c"}
        assert result.results["trigger"] == {"n": 2}

        with pytest.raises(LeaseLostError):
            runtime.journal.append(first._lease, JournalEventKind.EXECUTION_PAUSED, {})


def fail_appends(runtime, kind, node_id, times):
    """Make the next ``times`` appends of ``kind`` for ``node_id`` fail like a locked database."""
    real_append = runtime.journal.append
    remaining = [times]

    def append(lease, event_kind, payload, *args, **kwargs):
        if event_kind == kind and payload.get("node_id") == node_id and remaining[0] > 0:
            remaining[0] -= 1
            raise StorageError("database is locked", operation="append", table="journal_events")
        return real_append(lease, event_kind, payload, *args, **kwargs)

    runtime.journal.append = append
    return remaining


class TestStorageFaults:
    """Transient journal failures never strand a running execution."""

    workflow = make_workflow([trigger(), node("a"), node("b")], [("trigger", "a"), ("a", "b")])

    def test_failed_append_is_retried(self, runtime, activity_calls):
        remaining = fail_appends(runtime, JournalEventKind.NODE_SUCCEEDED, "a", times=1)
        execution_id = runtime.start(self.workflow)
        result = runtime.await_result(execution_id, timeout=5)

        assert remaining == [0]
        assert result.status == ResultStatus.SUCCESS
        assert activity_calls.nodes() == ["a", "b"]
        sequences = [event.sequence for event in runtime.get_journal(execution_id)]
        assert sequences == list(range(1, len(sequences) + 1))

    def test_crashed_loop_is_recovered_by_await_result(self, runtime, activity_calls):
        remaining = fail_appends(runtime, JournalEventKind.NODE_SUCCEEDED, "a", times=APPEND_RETRY.max_attempts)
        execution_id = runtime.start(self.workflow)

        crashed = runtime._local(execution_id)
        assert crashed.wait(timeout=5)
        assert isinstance(crashed.crashed, StorageError)
        assert runtime.get_state(execution_id).status == ExecutionStatusEnum.RUNNING

        result = runtime.await_result(execution_id, timeout=5)

        assert remaining == [0]
        assert result.status == ResultStatus.SUCCESS
        assert runtime._local(execution_id) is not crashed
        # The lost attempt of a runs again, at least once delivery
        assert activity_calls.nodes() == ["a", "a", "b"]
