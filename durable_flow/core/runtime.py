"""Control Interface: start, signal, query and await executions."""

import threading
import time
import uuid
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import sessionmaker

from .activity_registry import ActivityRegistry
from .exceptions import (
    ExecutionNotFoundError, LeaseHeldError, StorageError, ValidationError, WorkflowEngineError
)
from .graph_validator import GraphValidator
from .journal import ExecutionJournal
from .logging import get_logger
from .node_executor import CredentialsProvider, NodeExecutor
from .orchestrator import Orchestrator, ProgressListener
from .reducer import replay, to_result, to_state_view
from ..config import AppConfig, get_config
from ..models.core import (
    ControlCommand,
    ExecutionRecord,
    ExecutionResult,
    ExecutionStateView,
    ExecutionStatusEnum,
    ExecutionSummary,
    JournalEvent,
    NodeExecutionState,
    QueryType,
    ValidationResult,
    WorkflowDefinition,
)

logger = get_logger(__name__)


class WorkflowRuntime:
    """
    Entry point for callers of the engine.

    Owns the node executor shared by all executions and one Orchestrator per
    execution started or recovered by this process. Executions owned by
    other processes are answered from their journal.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        registry: Optional[ActivityRegistry] = None,
        config: Optional[AppConfig] = None,
        owner_id: Optional[str] = None,
        credentials_provider: Optional[CredentialsProvider] = None,
        listeners: Optional[List[ProgressListener]] = None
    ):
        self.config = config or get_config()
        self.registry = registry or ActivityRegistry()
        self.owner_id = owner_id or self.config.worker_id or f"worker-{uuid.uuid4().hex[:12]}"
        self.journal = ExecutionJournal(session_factory)
        self.validator = GraphValidator(self.registry)
        self.executor = NodeExecutor(self.registry, self.config, credentials_provider=credentials_provider)
        self._listeners: List[ProgressListener] = list(listeners or [])
        self._orchestrators: Dict[str, Orchestrator] = {}
        self._lock = threading.RLock()
        self._closed = False

        logger.info(f"WorkflowRuntime initialized as {self.owner_id}")

    def add_listener(self, listener: ProgressListener):
        """Receive every journal event of executions driven by this runtime."""
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def validate(self, definition: Union[WorkflowDefinition, Dict[str, Any]]) -> ValidationResult:
        try:
            definition = _as_definition(definition)
        except ValidationError as e:
            return ValidationResult(is_valid=False, errors=e.validation_errors)
        return self.validator.validate(definition)

    def start(
        self,
        definition: Union[WorkflowDefinition, Dict[str, Any]],
        input_data: Any = None,
        organization_id: Optional[str] = None,
        trigger_type: Optional[str] = None,
        execution_id: Optional[str] = None
    ) -> str:
        """
        Validate a workflow and start executing it.

        Args:
            definition: Workflow definition (model or plain dict)
            input_data: Execution input handed to trigger nodes
            organization_id: Owning organization, passed to activities
            trigger_type: What started the execution (manual, webhook, ...)
            execution_id: Optional caller-chosen id

        Returns:
            The execution id; ExecutionStarted is durable when this returns

        Raises:
            ValidationError: If the graph is rejected; nothing is journaled
        """
        self._ensure_open()
        definition = _as_definition(definition)
        self.validator.validate_or_raise(definition)

        execution_id = execution_id or str(uuid.uuid4())
        lease = self.journal.create_execution(
            execution_id=execution_id,
            workflow_id=definition.id,
            owner_id=self.owner_id,
            lease_seconds=self.config.lease_seconds,
            organization_id=organization_id,
            trigger_type=trigger_type,
        )
        orchestrator = self._new_orchestrator(execution_id, lease)
        with self._lock:
            self._orchestrators[execution_id] = orchestrator
        orchestrator.start(definition, input_data, organization_id, trigger_type)

        logger.info(f"Started execution {execution_id} of workflow {definition.id}")
        return execution_id

    def signal(self, execution_id: str, command: Union[ControlCommand, str]) -> None:
        """
        Deliver pause, resume or cancel to an execution.

        Signals are idempotent; signals to terminal executions are ignored.
        An execution whose owner has died is recovered first.

        Raises:
            ExecutionNotFoundError: If the execution is unknown
            LeaseHeldError: If another live process owns the execution
        """
        command = ControlCommand(command)
        orchestrator = self._local(execution_id)
        if orchestrator is None or not orchestrator.is_active:
            summary = self.journal.get_summary(execution_id)
            if summary.status.is_terminal:
                logger.info(f"Ignoring {command.value} for {summary.status.value} execution {execution_id}")
                return
            orchestrator = self.recover(execution_id)
            if orchestrator is None:
                return
        orchestrator.signal(command)

    def pause(self, execution_id: str) -> None:
        self.signal(execution_id, ControlCommand.PAUSE)

    def resume(self, execution_id: str) -> None:
        self.signal(execution_id, ControlCommand.RESUME)

    def cancel(self, execution_id: str) -> None:
        self.signal(execution_id, ControlCommand.CANCEL)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def query(self, execution_id: str, query_type: Union[QueryType, str] = QueryType.GET_STATE,
              node_id: Optional[str] = None) -> Union[ExecutionStateView, Optional[NodeExecutionState]]:
        """Non-blocking snapshot read (getState or getNodeResult)."""
        query_type = QueryType(query_type)
        record = self.get_record(execution_id)
        if query_type == QueryType.GET_NODE_RESULT:
            if node_id is None:
                raise ValueError("getNodeResult requires a node_id")
            state = record.node_states.get(node_id)
            return state.model_copy() if state is not None else None
        return to_state_view(record)

    def get_state(self, execution_id: str) -> ExecutionStateView:
        return self.query(execution_id, QueryType.GET_STATE)

    def get_node_result(self, execution_id: str, node_id: str) -> Optional[NodeExecutionState]:
        return self.query(execution_id, QueryType.GET_NODE_RESULT, node_id=node_id)

    def get_record(self, execution_id: str) -> ExecutionRecord:
        """Live record when this process drives the execution, journal replay otherwise."""
        orchestrator = self._local(execution_id)
        if orchestrator is not None and not orchestrator.lease_lost:
            record = orchestrator.record
            # A loop that exited early holds a snapshot the journal may have moved past
            if record is not None and (orchestrator.is_active or record.is_terminal):
                return record
        events = self.journal.read(execution_id)
        if not events:
            raise ExecutionNotFoundError(execution_id)
        return replay(events)

    def await_result(self, execution_id: str, timeout: Optional[float] = None,
                     poll_interval: float = 0.2) -> ExecutionResult:
        """
        Block until the execution is terminal.

        Raises:
            TimeoutError: If it is still running when the timeout expires
            ExecutionNotFoundError: If the execution is unknown
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        orchestrator = self._local(execution_id)
        if orchestrator is not None:
            orchestrator.wait(timeout)
            record = orchestrator.record
            if record is not None and record.is_terminal:
                return to_result(record)

        while True:
            self._revive_crashed(execution_id)
            record = self.get_record(execution_id)
            if record.is_terminal:
                return to_result(record)
            if deadline is not None and time.monotonic() >= deadline:
                raise TimeoutError(
                    f"Execution {execution_id} still {record.status.value} after {timeout} seconds"
                )
            time.sleep(poll_interval)

    def get_journal(self, execution_id: str) -> List[JournalEvent]:
        return self.journal.read(execution_id)

    def list_executions(self, status: Optional[ExecutionStatusEnum] = None,
                        limit: int = 100, offset: int = 0) -> List[ExecutionSummary]:
        return self.journal.list_executions(status=status, limit=limit, offset=offset)

    # ------------------------------------------------------------------
    # Recovery and maintenance
    # ------------------------------------------------------------------

    def recover(self, execution_id: str) -> Optional[Orchestrator]:
        """
        Take over an orphaned execution: acquire its lease, replay, re-dispatch.

        Returns:
            The new orchestrator, or None if the execution was already terminal

        Raises:
            LeaseHeldError: If another live owner holds the lease
        """
        self._ensure_open()
        with self._lock:
            current = self._orchestrators.get(execution_id)
            if current is not None and current.is_active:
                return current

            lease = self.journal.acquire_lease(execution_id, self.owner_id, self.config.lease_seconds)
            record = replay(self.journal.read(execution_id))
            if record.is_terminal:
                self.journal.release_lease(lease)
                return None

            orchestrator = self._new_orchestrator(execution_id, lease, record)
            self._orchestrators[execution_id] = orchestrator

        orchestrator.resume_from_journal()
        logger.info(f"Recovered execution {execution_id} at sequence {record.last_sequence}")
        return orchestrator

    def recover_all(self) -> List[str]:
        """Recover every execution whose lease has lapsed."""
        recovered = []
        for summary in self.journal.list_recoverable():
            try:
                if self.recover(summary.execution_id) is not None:
                    recovered.append(summary.execution_id)
            except LeaseHeldError:
                logger.info(f"Execution {summary.execution_id} was taken over by another worker")
            except WorkflowEngineError as e:
                logger.error(f"Failed to recover execution {summary.execution_id}: {e.message}")
        if recovered:
            logger.info(f"Recovered {len(recovered)} executions")
        return recovered

    def purge_expired(self, retention_days: Optional[int] = None) -> int:
        """Delete finished executions older than the retention window."""
        retention_days = self.config.historical_data_retention_days if retention_days is None else retention_days
        purged = self.journal.purge_expired(retention_days)
        with self._lock:
            for execution_id, orchestrator in list(self._orchestrators.items()):
                if not orchestrator.is_active and not self.journal.exists(execution_id):
                    del self._orchestrators[execution_id]
        return purged

    def shutdown(self, wait: bool = True, timeout: float = 10.0):
        """Stop every orchestrator (leases are released) and the worker pool."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            orchestrators = list(self._orchestrators.values())

        for orchestrator in orchestrators:
            if orchestrator.is_active:
                orchestrator.stop(timeout if wait else 0)
        self.executor.shutdown(wait=wait)
        logger.info(f"WorkflowRuntime {self.owner_id} shut down")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _new_orchestrator(self, execution_id, lease, record=None) -> Orchestrator:
        return Orchestrator(
            execution_id=execution_id,
            journal=self.journal,
            executor=self.executor,
            config=self.config,
            lease=lease,
            record=record,
            listeners=self._listeners,
        )

    def _revive_crashed(self, execution_id: str):
        """Re-drive a local execution whose loop died before it finished."""
        orchestrator = self._local(execution_id)
        if self._closed or orchestrator is None or orchestrator.is_active or orchestrator.crashed is None:
            return
        record = orchestrator.record
        if record is None or record.is_terminal:
            return
        logger.warning(f"Orchestrator for {execution_id} stopped after {orchestrator.crashed!r}, recovering")
        try:
            self.recover(execution_id)
        except LeaseHeldError:
            logger.info(f"Execution {execution_id} was taken over by another worker")
        except StorageError as e:
            logger.warning(f"Could not recover execution {execution_id} yet: {e.message}")

    def _local(self, execution_id: str) -> Optional[Orchestrator]:
        with self._lock:
            return self._orchestrators.get(execution_id)

    def _ensure_open(self):
        if self._closed:
            raise RuntimeError("WorkflowRuntime has been shut down")


def _as_definition(definition: Union[WorkflowDefinition, Dict[str, Any]]) -> WorkflowDefinition:
    if isinstance(definition, WorkflowDefinition):
        return definition
    try:
        return WorkflowDefinition.model_validate(definition)
    except PydanticValidationError as e:
        errors = [_describe_model_error(error) for error in e.errors()]
        workflow_id = definition.get("id") if isinstance(definition, dict) else None
        raise ValidationError(
            f"Workflow definition is malformed: {'; '.join(errors)}",
            validation_errors=errors,
            workflow_id=workflow_id if isinstance(workflow_id, str) else None
        ) from e


def _describe_model_error(error: Dict[str, Any]) -> str:
    location = ".".join(str(part) for part in error.get("loc", ()))
    return f"{location}: {error.get('msg')}" if location else str(error.get("msg"))
