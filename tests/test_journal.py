"""Tests for the SQLAlchemy execution journal."""

from datetime import datetime, timedelta

import pytest

from durable_flow.core.exceptions import (
    ExecutionNotFoundError,
    JournalError,
    LeaseHeldError,
    LeaseLostError,
)
from durable_flow.core.journal import normalize_payload
from durable_flow.models.core import ExecutionStatusEnum, JournalEventKind, utc_now


def create(journal, execution_id="exec-1", owner_id="worker-a", lease_seconds=30.0, now=None):
    return journal.create_execution(
        execution_id=execution_id,
        workflow_id="wf-1",
        owner_id=owner_id,
        lease_seconds=lease_seconds,
        organization_id="org-1",
        trigger_type="manual",
        now=now,
    )


class TestAppendAndRead:
    """Append-only log behaviour."""

    def test_sequences_are_assigned_in_order(self, journal):
        lease = create(journal)
        first = journal.append(lease, JournalEventKind.EXECUTION_STARTED, {"workflow_id": "wf-1"})
        second = journal.append(lease, JournalEventKind.NODE_SCHEDULED, {"node_id": "a", "attempt": 1})
        third = journal.append(lease, JournalEventKind.NODE_STARTED, {"node_id": "a", "attempt": 1})

        assert [first.sequence, second.sequence, third.sequence] == [1, 2, 3]
        events = journal.read("exec-1")
        assert [event.kind for event in events] == [
            JournalEventKind.EXECUTION_STARTED,
            JournalEventKind.NODE_SCHEDULED,
            JournalEventKind.NODE_STARTED,
        ]
        assert events[1].payload == {"node_id": "a", "attempt": 1}
        assert [event.sequence for event in journal.read("exec-1", after_sequence=1)] == [2, 3]

    def test_returned_event_matches_stored_event(self, journal):
        lease = create(journal)
        when = datetime(2024, 5, 1, 12, 30, 15, 123456)
        appended = journal.append(lease, JournalEventKind.EXECUTION_STARTED, {"at": when}, timestamp=when)

        stored = journal.read("exec-1")[0]
        assert stored == appended
        assert stored.payload == {"at": str(when)}

    def test_normalize_payload(self):
        assert normalize_payload(None) == {}
        assert normalize_payload({"t": (1, 2), "n": None}) == {"t": [1, 2], "n": None}

    def test_status_snapshot_follows_lifecycle_events(self, journal):
        lease = create(journal)
        assert journal.get_summary("exec-1").status == ExecutionStatusEnum.INITIALIZED

        journal.append(lease, JournalEventKind.EXECUTION_STARTED, {})
        assert journal.get_summary("exec-1").status == ExecutionStatusEnum.RUNNING

        journal.append(lease, JournalEventKind.EXECUTION_PAUSED, {})
        assert journal.get_summary("exec-1").status == ExecutionStatusEnum.PAUSED

        journal.append(lease, JournalEventKind.EXECUTION_RESUMED, {})
        journal.append(lease, JournalEventKind.EXECUTION_FAILED, {"error": "Node a failed after 1 attempt(s): x"})
        summary = journal.get_summary("exec-1")
        assert summary.status == ExecutionStatusEnum.FAILED
        assert summary.error_message == "Node a failed after 1 attempt(s): x"
        assert summary.completed_at is not None
        assert summary.last_sequence == 4
        assert summary.organization_id == "org-1"

    def test_unknown_execution(self, journal):
        with pytest.raises(ExecutionNotFoundError):
            journal.read("missing")
        with pytest.raises(ExecutionNotFoundError):
            journal.get_summary("missing")
        assert journal.exists("missing") is False

    def test_duplicate_execution_rejected(self, journal):
        create(journal)
        with pytest.raises(JournalError):
            create(journal)

    def test_list_executions_filters_by_status(self, journal):
        first = create(journal, "exec-1")
        create(journal, "exec-2")
        journal.append(first, JournalEventKind.EXECUTION_STARTED, {})
        journal.append(first, JournalEventKind.EXECUTION_COMPLETED, {})

        succeeded = journal.list_executions(status=ExecutionStatusEnum.SUCCEEDED)
        assert [summary.execution_id for summary in succeeded] == ["exec-1"]
        assert len(journal.list_executions()) == 2
        assert len(journal.list_executions(limit=1)) == 1


class TestLeasesAndFencing:
    """Ownership is exclusive and stale owners cannot write."""

    def test_lease_held_by_live_owner(self, journal):
        create(journal, owner_id="worker-a")
        with pytest.raises(LeaseHeldError) as exc_info:
            journal.acquire_lease("exec-1", "worker-b", 30.0)
        assert exc_info.value.context["owner_id"] == "worker-a"

    def test_expired_lease_can_be_taken_over(self, journal):
        stale = create(journal, owner_id="worker-a", lease_seconds=1.0, now=utc_now() - timedelta(minutes=1))
        journal.append(stale, JournalEventKind.EXECUTION_STARTED, {})

        fresh = journal.acquire_lease("exec-1", "worker-b", 30.0)
        assert fresh.token == stale.token + 1
        assert fresh.owner_id == "worker-b"

        with pytest.raises(LeaseLostError):
            journal.append(stale, JournalEventKind.NODE_SCHEDULED, {"node_id": "a"})
        with pytest.raises(LeaseLostError):
            journal.renew_lease(stale, 30.0)

        event = journal.append(fresh, JournalEventKind.NODE_SCHEDULED, {"node_id": "a"})
        assert event.sequence == 2

    def test_every_acquire_bumps_the_token(self, journal):
        first = create(journal)
        again = journal.acquire_lease("exec-1", "worker-a", 30.0)
        assert again.token == first.token + 1

        # The same owner's previous lease is fenced off too
        with pytest.raises(LeaseLostError):
            journal.append(first, JournalEventKind.EXECUTION_STARTED, {})

    def test_renew_extends_expiry(self, journal):
        lease = create(journal, lease_seconds=5.0)
        renewed = journal.renew_lease(lease, 60.0)
        assert renewed.token == lease.token
        assert renewed.expires_at > lease.expires_at

    def test_release_frees_the_lease(self, journal):
        lease = create(journal)
        journal.append(lease, JournalEventKind.EXECUTION_STARTED, {})

        assert journal.release_lease(lease) is True
        assert journal.release_lease(lease) is False
        assert [s.execution_id for s in journal.list_recoverable()] == ["exec-1"]

        taken = journal.acquire_lease("exec-1", "worker-b", 30.0)
        assert taken.owner_id == "worker-b"

    def test_list_recoverable_skips_live_and_terminal(self, journal):
        live = create(journal, "live")
        journal.append(live, JournalEventKind.EXECUTION_STARTED, {})

        done = create(journal, "done", lease_seconds=1.0, now=utc_now() - timedelta(minutes=1))
        journal.append(done, JournalEventKind.EXECUTION_STARTED, {})
        journal.append(done, JournalEventKind.EXECUTION_COMPLETED, {})

        # Never started: nothing to replay
        create(journal, "empty", lease_seconds=1.0, now=utc_now() - timedelta(minutes=1))

        assert journal.list_recoverable() == []

    def test_acquire_unknown_execution(self, journal):
        with pytest.raises(ExecutionNotFoundError):
            journal.acquire_lease("missing", "worker-a", 30.0)


class TestRetention:
    """Purging of finished executions."""

    def test_purge_removes_only_expired_terminal_executions(self, journal):
        old = create(journal, "old")
        journal.append(old, JournalEventKind.EXECUTION_STARTED, {})
        journal.append(old, JournalEventKind.EXECUTION_COMPLETED, {}, timestamp=utc_now() - timedelta(days=40))

        recent = create(journal, "recent")
        journal.append(recent, JournalEventKind.EXECUTION_STARTED, {})
        journal.append(recent, JournalEventKind.EXECUTION_COMPLETED, {})

        running = create(journal, "running")
        journal.append(running, JournalEventKind.EXECUTION_STARTED, {}, timestamp=utc_now() - timedelta(days=40))

        assert journal.purge_expired(retention_days=30) == 1
        assert journal.exists("old") is False
        assert journal.exists("recent") is True
        assert journal.exists("running") is True
        with pytest.raises(ExecutionNotFoundError):
            journal.read("old")
