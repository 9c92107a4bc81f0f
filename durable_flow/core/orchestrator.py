"""Orchestrator: the per-execution state machine.

Each execution is driven by one Orchestrator that owns a mailbox drained by a
single thread. Node outcomes, retry timers, control signals, the execution
timeout and lease heartbeats all arrive as messages, so every decision is
taken on that thread, journaled first and only then applied to the in-memory
record through the same reducer used for replay.
"""

import queue
import threading
import time
from concurrent.futures import Future, wait as wait_futures
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from .exceptions import LeaseLostError, StorageError
from .journal import ExecutionJournal
from .logging import get_logger, set_logging_context, clear_logging_context
from .node_executor import NodeExecutor, NodeOutcome, NodeRequest
from .reducer import apply_event, to_result, to_state_view
from .retry_policy import RetryConfig, RetryPolicy, call_with_retry
from ..config import AppConfig
from ..models.core import (
    ControlCommand,
    EdgeDefinition,
    EdgeKind,
    ErrorHandling,
    ExecutionRecord,
    ExecutionResult,
    ExecutionStateView,
    ExecutionStatusEnum,
    JournalEvent,
    JournalEventKind,
    Lease,
    NodeDefinition,
    NodeExecutionState,
    NodeStatusEnum,
    SkipReason,
    WorkflowDefinition,
    utc_now,
)

logger = get_logger(__name__)


ProgressListener = Callable[[JournalEvent, ExecutionRecord], None]


# Mailbox messages

@dataclass
class _Advance:
    pass


@dataclass
class _Recover:
    pass


@dataclass
class _Outcome:
    outcome: NodeOutcome


@dataclass
class _RetryDue:
    node_id: str
    attempt: int


@dataclass
class _Control:
    command: ControlCommand


@dataclass
class _Timeout:
    pass


@dataclass
class _Stop:
    pass


# Ready-set decisions
_WAIT, _RUN, _SKIP = "wait", "run", "skip"


# Node types whose output picks the outgoing edges that fire, by source handle
BRANCHING_TYPES = frozenset({"logic-if", "logic-switch"})
IF_TRUE_HANDLE, IF_FALSE_HANDLE = "output-0", "output-1"
SWITCH_DEFAULT_HANDLE = "default"

# Journal appends roll back on failure, so a failed one can simply be repeated
APPEND_RETRY = RetryConfig(max_attempts=3, base_delay=0.05, max_delay=0.5)


def failure_message(node_id: str, attempts: int, message: Optional[str]) -> str:
    """User-visible description of a node failure."""
    return f"Node {node_id} failed after {attempts} attempt(s): {message}"


def branch_value(output: Any) -> Any:
    """The routing value of a branching node: its ``branch`` field, or the whole output."""
    if isinstance(output, dict) and "branch" in output:
        return output["branch"]
    return output


def branch_handle(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def handle_selected(edge: EdgeDefinition, node_type: str, output: Any) -> bool:
    """Whether a succeeded branching node routes its output along this edge."""
    value = branch_value(output)
    if node_type == "logic-if":
        handle = IF_TRUE_HANDLE if value else IF_FALSE_HANDLE
        return edge.source_handle == handle or (not edge.source_handle and bool(value))
    if node_type == "logic-switch":
        return edge.source_handle in (branch_handle(value), SWITCH_DEFAULT_HANDLE)
    return True


def edge_satisfied(edge: EdgeDefinition, source: NodeExecutionState,
                   source_node: Optional[NodeDefinition] = None) -> bool:
    """Whether a settled source activates an edge."""
    if edge.kind == EdgeKind.ERROR:
        return source.status == NodeStatusEnum.ERROR
    if source.status == NodeStatusEnum.SUCCESS:
        if source_node is not None and source_node.type in BRANCHING_TYPES:
            return handle_selected(edge, source_node.type, source.output)
        return True
    return source.status == NodeStatusEnum.SKIPPED and source.skip_reason == SkipReason.DISABLED


class Orchestrator:
    """Drives one execution from its journal to a terminal status."""

    def __init__(
        self,
        execution_id: str,
        journal: ExecutionJournal,
        executor: NodeExecutor,
        config: AppConfig,
        lease: Lease,
        record: Optional[ExecutionRecord] = None,
        listeners: Optional[List[ProgressListener]] = None
    ):
        self.execution_id = execution_id
        self._journal = journal
        self._executor = executor
        self._config = config
        self._lease = lease
        self._record = record
        self._record_lock = threading.Lock()
        self._listeners: List[ProgressListener] = list(listeners or [])

        self._mailbox: "queue.Queue[Any]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._in_flight: Dict[str, Tuple[int, Future]] = {}
        self._retry_timers: Dict[str, threading.Timer] = {}
        self._retry_ready: Dict[str, int] = {}
        self._timeout_timer: Optional[threading.Timer] = None
        self._retry_policy: Optional[RetryPolicy] = None
        self._next_renewal = 0.0

        self._finished = threading.Event()
        self._lease_lost = False
        self._crashed: Optional[BaseException] = None

        if record is not None:
            self._retry_policy = self._build_retry_policy(record.definition)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(
        self,
        definition: WorkflowDefinition,
        input_data: Any = None,
        organization_id: Optional[str] = None,
        trigger_type: Optional[str] = None
    ):
        """Journal ExecutionStarted on the caller's thread, then run the loop."""
        if self._record is not None:
            raise RuntimeError(f"Execution {self.execution_id} has already started")
        self._retry_policy = self._build_retry_policy(definition)
        self._append(JournalEventKind.EXECUTION_STARTED, {
            "workflow_id": definition.id,
            "definition": definition.model_dump(mode="json"),
            "input": input_data,
            "organization_id": organization_id,
            "trigger_type": trigger_type,
        })
        self._launch(_Advance())

    def resume_from_journal(self):
        """Run the loop for a record rebuilt by replay (crash recovery)."""
        if self._record is None:
            raise RuntimeError("Recovery requires a replayed record")
        self._launch(_Recover())

    def _launch(self, first_message):
        self._mailbox.put(first_message)
        self._next_renewal = time.monotonic() + self._config.heartbeat_interval
        self._thread = threading.Thread(
            target=self._run,
            name=f"orchestrator-{self.execution_id[:8]}",
            daemon=True
        )
        self._thread.start()

    def signal(self, command: ControlCommand):
        self._mailbox.put(_Control(ControlCommand(command)))

    def stop(self, timeout: Optional[float] = None):
        """Leave the execution without finishing it; another owner may recover it."""
        self._mailbox.put(_Stop())
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    @property
    def record(self) -> Optional[ExecutionRecord]:
        with self._record_lock:
            return self._record

    @property
    def is_active(self) -> bool:
        """True while the loop owns the execution."""
        return self._thread is not None and not self._finished.is_set()

    @property
    def lease_lost(self) -> bool:
        return self._lease_lost

    @property
    def crashed(self) -> Optional[BaseException]:
        """The error that ended the loop before the execution finished, if any."""
        return self._crashed

    def get_state(self) -> ExecutionStateView:
        return to_state_view(self.record)

    def get_node_result(self, node_id: str) -> Optional[NodeExecutionState]:
        state = self.record.node_states.get(node_id)
        return state.model_copy() if state is not None else None

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the loop exits; True if it did within the timeout."""
        return self._finished.wait(timeout)

    def result(self) -> ExecutionResult:
        return to_result(self.record)

    # ------------------------------------------------------------------
    # Event loop
    # ------------------------------------------------------------------

    def _run(self):
        set_logging_context(execution_id=self.execution_id)
        logger.info(f"Orchestrator loop started for execution {self.execution_id}")
        try:
            while True:
                try:
                    message = self._mailbox.get(timeout=self._config.heartbeat_interval)
                except queue.Empty:
                    message = None

                if isinstance(message, _Stop):
                    logger.info(f"Orchestrator for {self.execution_id} stopped before completion")
                    break
                if message is not None:
                    self._handle(message)
                    if not self._record.is_terminal:
                        self._advance()

                if self._record.is_terminal:
                    break
                if time.monotonic() >= self._next_renewal:
                    self._heartbeat()
        except LeaseLostError as e:
            self._lease_lost = True
            logger.warning(f"Abandoning execution {self.execution_id}: {e.message}")
        except Exception as e:
            self._crashed = e
            logger.error(f"Orchestrator for {self.execution_id} crashed: {e}", exc_info=True)
        finally:
            self._cancel_timers()
            if not self._lease_lost:
                try:
                    self._journal.release_lease(self._lease)
                except StorageError as e:
                    logger.warning(f"Could not release lease on {self.execution_id}: {e.message}")
            self._finished.set()
            logger.info(f"Orchestrator loop finished for execution {self.execution_id} "
                        f"with status {self._record.status.value}")
            clear_logging_context()

    def _handle(self, message):
        if isinstance(message, _Outcome):
            self._on_outcome(message.outcome)
        elif isinstance(message, _RetryDue):
            self._on_retry_due(message.node_id, message.attempt)
        elif isinstance(message, _Control):
            self._on_control(message.command)
        elif isinstance(message, _Timeout):
            self._on_timeout()
        elif isinstance(message, _Recover):
            self._on_recover()
        elif isinstance(message, _Advance):
            self._arm_timeout()

    def _append(self, kind: JournalEventKind, payload: Dict[str, Any]) -> JournalEvent:
        """Write-ahead: journal the event, then fold it into the record."""
        event = call_with_retry(self._journal.append, APPEND_RETRY, self._lease, kind, payload)
        updated = apply_event(self._record, event)
        with self._record_lock:
            self._record = updated
        logger.debug(f"#{event.sequence} {kind.value} {payload.get('node_id', '')}".rstrip())
        for listener in self._listeners:
            try:
                listener(event, updated)
            except Exception as e:
                logger.error(f"Progress listener failed for {self.execution_id}: {e}")
        return event

    def _heartbeat(self):
        try:
            self._lease = self._journal.renew_lease(self._lease, self._config.lease_seconds)
        except StorageError as e:
            logger.warning(f"Lease renewal for {self.execution_id} failed, will retry: {e.message}")
        self._next_renewal = time.monotonic() + self._config.heartbeat_interval

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _advance(self):
        """Dispatch ready nodes, settle blocked ones and detect termination."""
        if self._record.is_terminal or self._record.status == ExecutionStatusEnum.PAUSED:
            return

        if self._halting_node() is not None:
            self._halt()
            return

        for node_id, attempt in list(self._retry_ready.items()):
            if not self._has_capacity():
                break
            del self._retry_ready[node_id]
            self._dispatch(self._record.definition.get_node(node_id), attempt)

        definition = self._record.definition
        changed = True
        while changed:
            changed = False
            for node in definition.nodes:
                if self._record.node_states[node.id].status != NodeStatusEnum.IDLE:
                    continue
                decision = self._resolve(node)
                if decision == _WAIT:
                    continue
                if decision == _SKIP:
                    self._append(JournalEventKind.NODE_SKIPPED, {
                        "node_id": node.id, "reason": SkipReason.BLOCKED.value
                    })
                    changed = True
                elif node.disabled:
                    self._append(JournalEventKind.NODE_SKIPPED, {
                        "node_id": node.id, "reason": SkipReason.DISABLED.value
                    })
                    changed = True
                elif self._has_capacity():
                    self._dispatch(node, 1)

        self._check_termination()

    def _resolve(self, node: NodeDefinition) -> str:
        incoming = self._record.definition.incoming_edges(node.id)
        if not incoming:
            return _RUN

        definition = self._record.definition
        satisfied = []
        for edge in incoming:
            source = self._record.node_states.get(edge.source)
            if source is None or not source.status.is_terminal:
                return _WAIT
            satisfied.append(edge_satisfied(edge, source, definition.get_node(edge.source)))

        if self._record.definition.settings.error_handling == ErrorHandling.CONTINUE:
            return _RUN if any(satisfied) else _SKIP
        return _RUN if all(satisfied) else _SKIP

    def _has_capacity(self) -> bool:
        limit = self._record.definition.settings.max_concurrency
        return limit is None or len(self._in_flight) < limit

    def _dispatch(self, node: NodeDefinition, attempt: int):
        self._append(JournalEventKind.NODE_SCHEDULED, {
            "node_id": node.id, "attempt": attempt, "type": node.type
        })
        self._append(JournalEventKind.NODE_STARTED, {"node_id": node.id, "attempt": attempt})

        request = NodeRequest(
            execution_id=self.execution_id,
            node=node,
            attempt=attempt,
            input=self._build_input(node),
            variables=self._build_variables(),
            organization_id=self._record.organization_id,
            trigger_type=self._record.trigger_type,
        )
        future = self._executor.submit(request, self._post_outcome)
        self._in_flight[node.id] = (attempt, future)
        logger.info(f"Dispatched node {node.id} ({node.type}) attempt {attempt}")

    def _post_outcome(self, outcome: NodeOutcome):
        self._mailbox.put(_Outcome(outcome))

    def _build_input(self, node: NodeDefinition) -> Any:
        """Execution input for entry nodes, one upstream output, or a merge of them."""
        incoming = self._record.definition.incoming_edges(node.id)
        if not incoming:
            return self._record.input

        sources: List[str] = []
        for edge in incoming:
            source = self._record.node_states[edge.source]
            source_node = self._record.definition.get_node(edge.source)
            if edge_satisfied(edge, source, source_node) and edge.source not in sources:
                sources.append(edge.source)

        if len(sources) == 1:
            return self._source_output(sources[0])
        return {source_id: self._source_output(source_id) for source_id in sources}

    def _source_output(self, node_id: str) -> Any:
        state = self._record.node_states[node_id]
        if state.status == NodeStatusEnum.ERROR:
            return {"error": state.error, "error_type": state.error_type, "attempt": state.attempt}
        return state.output

    def _build_variables(self) -> Dict[str, Any]:
        variables: Dict[str, Any] = {"$input": self._record.input, "$trigger": self._record.input}
        for node in self._record.definition.nodes:
            state = self._record.node_states[node.id]
            if state.status != NodeStatusEnum.SUCCESS:
                continue
            variables[f"$node.{node.id}"] = state.output
            if node.is_trigger:
                variables["$trigger"] = state.output
        return variables

    # ------------------------------------------------------------------
    # Outcomes and retries
    # ------------------------------------------------------------------

    def _on_outcome(self, outcome: NodeOutcome):
        entry = self._in_flight.get(outcome.node_id)
        if entry is None or entry[0] != outcome.attempt:
            logger.debug(f"Discarding stale outcome of node {outcome.node_id} attempt {outcome.attempt}")
            return
        del self._in_flight[outcome.node_id]

        if self._record.is_terminal:
            return

        if outcome.success:
            self._append(JournalEventKind.NODE_SUCCEEDED, {
                "node_id": outcome.node_id,
                "attempt": outcome.attempt,
                "output": outcome.output,
                "duration_ms": round(outcome.duration_ms, 3),
            })
            return

        may_retry = self._retry_policy.should_retry(outcome.retryable, outcome.attempt)
        if may_retry and self._halting_node() is None:
            delay_ms = self._retry_policy.delay_ms(outcome.attempt)
            self._append(JournalEventKind.NODE_RETRIED, {
                "node_id": outcome.node_id,
                "attempt": outcome.attempt,
                "error": outcome.error,
                "error_type": outcome.error_type,
                "delay_ms": delay_ms,
                "next_attempt": outcome.attempt + 1,
            })
            self._schedule_retry(outcome.node_id, outcome.attempt + 1, delay_ms)
            logger.info(f"Node {outcome.node_id} will retry as attempt {outcome.attempt + 1} in {delay_ms} ms")
            return

        self._append(JournalEventKind.NODE_FAILED, {
            "node_id": outcome.node_id,
            "attempt": outcome.attempt,
            "error": outcome.error,
            "error_type": outcome.error_type,
            "retryable": outcome.retryable,
        })
        logger.warning(failure_message(outcome.node_id, outcome.attempt, outcome.error))

    def _schedule_retry(self, node_id: str, attempt: int, delay_ms: float):
        timer = threading.Timer(max(delay_ms, 0) / 1000.0, self._mailbox.put, args=(_RetryDue(node_id, attempt),))
        timer.daemon = True
        self._retry_timers[node_id] = timer
        timer.start()

    def _on_retry_due(self, node_id: str, attempt: int):
        self._retry_timers.pop(node_id, None)
        state = self._record.node_states.get(node_id)
        if state is None or not state.awaiting_retry or state.attempt + 1 != attempt:
            return
        # Dispatched by _advance once the run is not paused and has capacity
        self._retry_ready[node_id] = attempt

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    def _unhandled_failures(self) -> List[str]:
        """Failed nodes without an outgoing error edge, in failure order."""
        definition = self._record.definition
        failed = []
        for node in definition.nodes:
            state = self._record.node_states[node.id]
            if state.status != NodeStatusEnum.ERROR:
                continue
            if any(edge.kind == EdgeKind.ERROR for edge in definition.outgoing_edges(node.id)):
                continue
            failed.append((state.completed_order or 0, node.id))
        return [node_id for _, node_id in sorted(failed)]

    def _halting_node(self) -> Optional[str]:
        if self._record.definition.settings.error_handling != ErrorHandling.STOP:
            return None
        failures = self._unhandled_failures()
        return failures[0] if failures else None

    def _halt(self):
        """Stop mode after an unhandled failure: settle everything, let in-flight work finish."""
        for node in self._record.definition.nodes:
            if self._record.node_states[node.id].status == NodeStatusEnum.IDLE:
                self._append(JournalEventKind.NODE_SKIPPED, {
                    "node_id": node.id, "reason": SkipReason.HALTED.value
                })

        for node in self._record.definition.nodes:
            state = self._record.node_states[node.id]
            if state.status == NodeStatusEnum.RUNNING and state.awaiting_retry:
                timer = self._retry_timers.pop(node.id, None)
                if timer is not None:
                    timer.cancel()
                self._retry_ready.pop(node.id, None)
                self._append(JournalEventKind.NODE_FAILED, {
                    "node_id": node.id,
                    "attempt": state.attempt,
                    "error": state.error,
                    "error_type": state.error_type,
                    "retryable": True,
                    "halted": True,
                })

        if self._in_flight:
            return
        self._fail_with_first_failure()

    def _fail_with_first_failure(self):
        node_id = self._unhandled_failures()[0]
        state = self._record.node_states[node_id]
        self._append(JournalEventKind.EXECUTION_FAILED, {
            "error": failure_message(node_id, state.attempt, state.error),
            "error_type": state.error_type or "NodeExecutionError",
            "failed_node_id": node_id,
            "attempts": state.attempt,
        })
        logger.error(f"Execution {self.execution_id} failed: node {node_id}")

    def _check_termination(self):
        states = self._record.node_states
        if self._in_flight or any(state.status == NodeStatusEnum.RUNNING for state in states.values()):
            return

        idle = [node_id for node_id, state in states.items() if state.status == NodeStatusEnum.IDLE]
        if idle:
            self._append(JournalEventKind.EXECUTION_FAILED, {
                "error": f"Execution stalled with unresolved nodes: {', '.join(idle)}",
                "error_type": "NodeExecutionError",
            })
            return

        if self._unhandled_failures():
            self._fail_with_first_failure()
            return

        self._append(JournalEventKind.EXECUTION_COMPLETED, {
            "succeeded": sum(1 for state in states.values() if state.status == NodeStatusEnum.SUCCESS),
            "skipped": sum(1 for state in states.values() if state.status == NodeStatusEnum.SKIPPED),
            "failed": sum(1 for state in states.values() if state.status == NodeStatusEnum.ERROR),
        })
        logger.info(f"Execution {self.execution_id} succeeded")

    # ------------------------------------------------------------------
    # Control, timeout and recovery
    # ------------------------------------------------------------------

    def _on_control(self, command: ControlCommand):
        status = self._record.status
        if self._record.is_terminal:
            logger.info(f"Ignoring {command.value} for {status.value} execution {self.execution_id}")
            return

        if command == ControlCommand.PAUSE:
            if status == ExecutionStatusEnum.RUNNING:
                self._append(JournalEventKind.EXECUTION_PAUSED, {})
                logger.info(f"Execution {self.execution_id} paused")
        elif command == ControlCommand.RESUME:
            if status == ExecutionStatusEnum.PAUSED:
                self._append(JournalEventKind.EXECUTION_RESUMED, {})
                logger.info(f"Execution {self.execution_id} resumed")
        elif command == ControlCommand.CANCEL:
            self._append(JournalEventKind.EXECUTION_CANCELLED, {"reason": "Execution was cancelled"})
            logger.info(f"Execution {self.execution_id} cancelled")
            self._drain_in_flight()

    def _on_timeout(self):
        if self._record.is_terminal:
            return
        minutes = self._record.definition.settings.timeout_minutes
        self._append(JournalEventKind.EXECUTION_FAILED, {
            "error": f"Execution timed out after {minutes} minute(s)",
            "error_type": "ExecutionTimeoutError",
        })
        logger.error(f"Execution {self.execution_id} timed out")
        self._drain_in_flight()

    def _drain_in_flight(self):
        """Give in-flight activities the grace period; their late results are discarded."""
        self._cancel_timers()
        futures = [future for _, future in self._in_flight.values()]
        for future in futures:
            future.cancel()
        pending = [future for future in futures if not future.done()]
        if pending:
            wait_futures(pending, timeout=self._config.cancel_grace_period_seconds)
        self._in_flight.clear()

    def _arm_timeout(self):
        minutes = self._record.definition.settings.timeout_minutes
        if minutes is None or self._timeout_timer is not None:
            return
        deadline = self._record.started_at + timedelta(minutes=minutes)
        remaining = max((deadline - utc_now()).total_seconds(), 0.0)
        self._timeout_timer = threading.Timer(remaining, self._mailbox.put, args=(_Timeout(),))
        self._timeout_timer.daemon = True
        self._timeout_timer.start()

    def _on_recover(self):
        """Re-dispatch work that was in flight when the previous owner died."""
        logger.info(f"Recovering execution {self.execution_id} at sequence {self._record.last_sequence}")
        self._arm_timeout()
        now = utc_now()
        for node in self._record.definition.nodes:
            state = self._record.node_states[node.id]
            if state.status != NodeStatusEnum.RUNNING:
                continue
            if state.awaiting_retry:
                remaining_ms = 0.0
                if state.retry_at is not None:
                    remaining_ms = max((state.retry_at - now).total_seconds() * 1000, 0.0)
                self._schedule_retry(node.id, state.attempt + 1, remaining_ms)
            else:
                # At-least-once: the lost attempt runs again under the same number
                self._dispatch(node, max(state.attempt, 1))

    def _cancel_timers(self):
        for timer in self._retry_timers.values():
            timer.cancel()
        self._retry_timers.clear()
        self._retry_ready.clear()
        if self._timeout_timer is not None:
            self._timeout_timer.cancel()
            self._timeout_timer = None

    def _build_retry_policy(self, definition: WorkflowDefinition) -> RetryPolicy:
        return RetryPolicy.from_settings(
            definition.settings,
            max_delay_ms=self._config.retry_max_delay_ms,
            multiplier=self._config.retry_backoff_multiplier
        )
