"""Pure fold of journal events into an ExecutionRecord.

The orchestrator applies every event through ``apply_event`` right after the
journal accepted it, and recovery calls ``replay`` on the stored log, so a
live record and a replayed record are always produced by the same code. No
clock is read here; every timestamp comes from the events.
"""

from datetime import timedelta
from typing import Iterable, Optional

from .exceptions import JournalError
from ..models.core import (
    ExecutionRecord,
    ExecutionResult,
    ExecutionStateView,
    ExecutionStatusEnum,
    JournalEvent,
    JournalEventKind,
    NodeExecutionState,
    NodeStatusEnum,
    ResultStatus,
    SkipReason,
    WorkflowDefinition,
)


CANCELLED_MESSAGE = "Execution was cancelled"


def initial_record(event: JournalEvent) -> ExecutionRecord:
    """Build the record described by an ExecutionStarted event."""
    if event.kind != JournalEventKind.EXECUTION_STARTED:
        raise JournalError(
            f"Journal must begin with ExecutionStarted, got {event.kind.value}",
            execution_id=event.execution_id
        )
    payload = event.payload
    definition = WorkflowDefinition.model_validate(payload["definition"])
    return ExecutionRecord(
        execution_id=event.execution_id,
        workflow_id=payload.get("workflow_id", definition.id),
        definition=definition,
        status=ExecutionStatusEnum.RUNNING,
        started_at=event.timestamp,
        input=payload.get("input"),
        organization_id=payload.get("organization_id"),
        trigger_type=payload.get("trigger_type"),
        node_states={node.id: NodeExecutionState() for node in definition.nodes},
        last_sequence=event.sequence,
    )


def apply_event(record: Optional[ExecutionRecord], event: JournalEvent) -> ExecutionRecord:
    """
    Apply one journal event and return the new record.

    Args:
        record: Current record, or None before the first event
        event: Next event of the same execution

    Returns:
        A new ExecutionRecord; the input record is left untouched

    Raises:
        JournalError: If the event does not follow from the current record
    """
    if record is None:
        return initial_record(event)

    if event.execution_id != record.execution_id:
        raise JournalError(
            f"Event for {event.execution_id} applied to {record.execution_id}",
            execution_id=record.execution_id
        )
    if event.sequence <= record.last_sequence:
        raise JournalError(
            f"Sequence {event.sequence} does not follow {record.last_sequence}",
            execution_id=record.execution_id
        )
    if record.is_terminal:
        raise JournalError(
            f"Execution already {record.status.value}; cannot apply {event.kind.value}",
            execution_id=record.execution_id
        )

    updated = record.model_copy(deep=True)
    handler = _HANDLERS.get(event.kind)
    if handler is None:
        raise JournalError(f"Unexpected event kind {event.kind.value}", execution_id=record.execution_id)
    handler(updated, event)
    updated.last_sequence = event.sequence
    return updated


def replay(events: Iterable[JournalEvent]) -> ExecutionRecord:
    """Fold a full journal, in sequence order, into its canonical record."""
    record = None
    for event in events:
        record = apply_event(record, event)
    if record is None:
        raise JournalError("Cannot replay an empty journal")
    return record


def to_state_view(record: ExecutionRecord) -> ExecutionStateView:
    """Answer to the getState query."""
    return ExecutionStateView(
        execution_id=record.execution_id,
        status=record.status,
        completed_nodes=record.completed_nodes,
        current_nodes=record.current_nodes,
        node_states={node_id: state.model_copy() for node_id, state in record.node_states.items()},
        error=record.error,
    )


def to_result(record: ExecutionRecord) -> ExecutionResult:
    """Final result of a terminal record; only successful nodes contribute outputs."""
    if not record.is_terminal:
        raise JournalError(
            f"Execution {record.execution_id} is still {record.status.value}",
            execution_id=record.execution_id
        )
    results = {
        node.id: record.node_states[node.id].output
        for node in record.definition.nodes
        if record.node_states[node.id].status == NodeStatusEnum.SUCCESS
    }
    attempts = None
    if record.failed_node_id and record.failed_node_id in record.node_states:
        attempts = record.node_states[record.failed_node_id].attempt
    return ExecutionResult(
        execution_id=record.execution_id,
        status=_RESULT_STATUS[record.status],
        results=results,
        error=record.error,
        failed_node_id=record.failed_node_id,
        attempts=attempts,
    )


_RESULT_STATUS = {
    ExecutionStatusEnum.SUCCEEDED: ResultStatus.SUCCESS,
    ExecutionStatusEnum.FAILED: ResultStatus.FAILED,
    ExecutionStatusEnum.CANCELLED: ResultStatus.CANCELLED,
}


def _node_state(record: ExecutionRecord, event: JournalEvent) -> NodeExecutionState:
    node_id = event.payload.get("node_id")
    state = record.node_states.get(node_id)
    if state is None:
        raise JournalError(
            f"Event {event.kind.value} references unknown node {node_id}",
            execution_id=record.execution_id
        )
    return state


def _next_completed_order(record: ExecutionRecord) -> int:
    return sum(1 for state in record.node_states.values() if state.completed_order is not None) + 1


def _reject(record: ExecutionRecord, event: JournalEvent, state: NodeExecutionState):
    raise JournalError(
        f"Illegal transition for node {event.payload.get('node_id')}: "
        f"{state.status.value} -> {event.kind.value}",
        execution_id=record.execution_id
    )


def _on_execution_started(record: ExecutionRecord, event: JournalEvent):
    raise JournalError("Execution already started", execution_id=record.execution_id)


def _on_node_dispatched(record: ExecutionRecord, event: JournalEvent):
    # NodeScheduled and NodeStarted; a running node may be restarted after a retry or a crash
    state = _node_state(record, event)
    if state.status not in (NodeStatusEnum.IDLE, NodeStatusEnum.RUNNING):
        _reject(record, event, state)
    state.status = NodeStatusEnum.RUNNING
    state.attempt = int(event.payload.get("attempt", state.attempt or 1))
    state.awaiting_retry = False
    state.retry_at = None
    if event.kind == JournalEventKind.NODE_STARTED or state.start_time is None:
        state.start_time = event.timestamp


def _on_node_retried(record: ExecutionRecord, event: JournalEvent):
    state = _node_state(record, event)
    if state.status != NodeStatusEnum.RUNNING:
        _reject(record, event, state)
    delay_ms = int(event.payload.get("delay_ms", 0))
    state.attempt = int(event.payload.get("attempt", state.attempt))
    state.error = event.payload.get("error")
    state.error_type = event.payload.get("error_type")
    state.awaiting_retry = True
    state.retry_at = event.timestamp + timedelta(milliseconds=delay_ms)


def _on_node_succeeded(record: ExecutionRecord, event: JournalEvent):
    state = _node_state(record, event)
    if state.status != NodeStatusEnum.RUNNING:
        _reject(record, event, state)
    state.status = NodeStatusEnum.SUCCESS
    state.attempt = int(event.payload.get("attempt", state.attempt))
    state.output = event.payload.get("output")
    state.error = None
    state.error_type = None
    state.awaiting_retry = False
    state.retry_at = None
    state.end_time = event.timestamp
    state.completed_order = _next_completed_order(record)


def _on_node_failed(record: ExecutionRecord, event: JournalEvent):
    state = _node_state(record, event)
    if state.status != NodeStatusEnum.RUNNING:
        _reject(record, event, state)
    state.status = NodeStatusEnum.ERROR
    state.attempt = int(event.payload.get("attempt", state.attempt))
    state.error = event.payload.get("error")
    state.error_type = event.payload.get("error_type")
    state.awaiting_retry = False
    state.retry_at = None
    state.end_time = event.timestamp
    state.completed_order = _next_completed_order(record)


def _on_node_skipped(record: ExecutionRecord, event: JournalEvent):
    state = _node_state(record, event)
    if state.status != NodeStatusEnum.IDLE:
        _reject(record, event, state)
    state.status = NodeStatusEnum.SKIPPED
    state.skip_reason = SkipReason(event.payload.get("reason", SkipReason.BLOCKED.value))
    state.end_time = event.timestamp
    state.completed_order = _next_completed_order(record)


def _on_paused(record: ExecutionRecord, event: JournalEvent):
    if record.status != ExecutionStatusEnum.RUNNING:
        raise JournalError(f"Cannot pause a {record.status.value} execution", execution_id=record.execution_id)
    record.status = ExecutionStatusEnum.PAUSED


def _on_resumed(record: ExecutionRecord, event: JournalEvent):
    if record.status != ExecutionStatusEnum.PAUSED:
        raise JournalError(f"Cannot resume a {record.status.value} execution", execution_id=record.execution_id)
    record.status = ExecutionStatusEnum.RUNNING


def _fold_remaining(record: ExecutionRecord, event: JournalEvent, skip_reason: SkipReason,
                    error: str, error_type: str):
    """Settle every non-terminal node so the terminal record is canonical."""
    for node in record.definition.nodes:
        state = record.node_states[node.id]
        if state.status == NodeStatusEnum.IDLE:
            state.status = NodeStatusEnum.SKIPPED
            state.skip_reason = skip_reason
        elif state.status == NodeStatusEnum.RUNNING:
            state.status = NodeStatusEnum.ERROR
            state.error = error
            state.error_type = error_type
            state.awaiting_retry = False
            state.retry_at = None
        else:
            continue
        state.end_time = event.timestamp
        state.completed_order = _next_completed_order(record)


def _on_cancelled(record: ExecutionRecord, event: JournalEvent):
    message = event.payload.get("reason") or CANCELLED_MESSAGE
    _fold_remaining(record, event, SkipReason.CANCELLED, message, "CancelledError")
    record.status = ExecutionStatusEnum.CANCELLED
    record.error = message
    record.error_type = "CancelledError"
    record.completed_at = event.timestamp


def _on_completed(record: ExecutionRecord, event: JournalEvent):
    _fold_remaining(record, event, SkipReason.BLOCKED, "Execution completed", "ExecutionCompleted")
    record.status = ExecutionStatusEnum.SUCCEEDED
    record.completed_at = event.timestamp


def _on_failed(record: ExecutionRecord, event: JournalEvent):
    payload = event.payload
    error = payload.get("error") or "Execution failed"
    error_type = payload.get("error_type") or "NodeExecutionError"
    skip_reason = SkipReason.TIMED_OUT if error_type == "ExecutionTimeoutError" else SkipReason.HALTED
    _fold_remaining(record, event, skip_reason, error, error_type)
    record.status = ExecutionStatusEnum.FAILED
    record.error = error
    record.error_type = error_type
    record.failed_node_id = payload.get("failed_node_id")
    record.completed_at = event.timestamp


_HANDLERS = {
    JournalEventKind.EXECUTION_STARTED: _on_execution_started,
    JournalEventKind.NODE_SCHEDULED: _on_node_dispatched,
    JournalEventKind.NODE_STARTED: _on_node_dispatched,
    JournalEventKind.NODE_RETRIED: _on_node_retried,
    JournalEventKind.NODE_SUCCEEDED: _on_node_succeeded,
    JournalEventKind.NODE_FAILED: _on_node_failed,
    JournalEventKind.NODE_SKIPPED: _on_node_skipped,
    JournalEventKind.EXECUTION_PAUSED: _on_paused,
    JournalEventKind.EXECUTION_RESUMED: _on_resumed,
    JournalEventKind.EXECUTION_CANCELLED: _on_cancelled,
    JournalEventKind.EXECUTION_COMPLETED: _on_completed,
    JournalEventKind.EXECUTION_FAILED: _on_failed,
}
