"""Node Executor: runs one node attempt on a bounded worker pool."""

import asyncio
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import requests

from .activity_registry import ActivityDefinition, ActivityRegistry
from .exceptions import ActivityTimeoutError, TerminalNodeError
from .logging import get_activity_logger, get_logger, set_logging_context, clear_logging_context
from .retry_policy import classify_error
from ..config import AppConfig
from ..models.core import NodeDefinition

logger = get_logger(__name__)


CredentialsProvider = Callable[[Optional[str], NodeDefinition], Dict[str, Any]]


@dataclass
class ActivityContext:
    """Everything an activity may use besides its input."""
    execution_id: str
    organization_id: Optional[str]
    trigger_type: Optional[str]
    node: NodeDefinition
    attempt: int
    config: Dict[str, Any]
    variables: Dict[str, Any]
    credentials: Dict[str, Any]
    http_client: requests.Session
    logger: logging.LoggerAdapter

    @property
    def node_id(self) -> str:
        return self.node.id


@dataclass
class NodeRequest:
    """One attempt of one node, as dispatched by the orchestrator."""
    execution_id: str
    node: NodeDefinition
    attempt: int
    input: Any = None
    variables: Dict[str, Any] = field(default_factory=dict)
    organization_id: Optional[str] = None
    trigger_type: Optional[str] = None


@dataclass
class NodeOutcome:
    """Result of a node attempt, classified for the retry decision."""
    execution_id: str
    node_id: str
    attempt: int
    success: bool
    output: Any = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    retryable: bool = False
    duration_ms: float = 0.0


class NodeExecutor:
    """
    Executes activities for orchestrators.

    The pool is shared by every execution in the process, which bounds the
    number of activities running at once to ``max_concurrent_nodes``. The
    executor never touches orchestrator state: it reports each outcome
    through the callback given to ``submit``.
    """

    def __init__(
        self,
        registry: ActivityRegistry,
        config: AppConfig,
        http_client: Optional[requests.Session] = None,
        credentials_provider: Optional[CredentialsProvider] = None
    ):
        self.registry = registry
        self.config = config
        self._http_client = http_client
        self._http_lock = threading.Lock()
        self._credentials_provider = credentials_provider
        self._pool = ThreadPoolExecutor(
            max_workers=config.max_concurrent_nodes,
            thread_name_prefix="node-worker"
        )
        self._closed = False

    @property
    def http_client(self) -> requests.Session:
        with self._http_lock:
            if self._http_client is None:
                self._http_client = requests.Session()
            return self._http_client

    def submit(self, request: NodeRequest, on_complete: Callable[[NodeOutcome], None]) -> Future:
        """Queue a node attempt; ``on_complete`` receives its NodeOutcome."""
        if self._closed:
            raise RuntimeError("Node executor has been shut down")

        future = self._pool.submit(self.execute, request)

        def _deliver(done: Future):
            if done.cancelled():
                return
            try:
                on_complete(done.result())
            except Exception as e:
                logger.error(
                    f"Outcome callback failed for node {request.node.id} of {request.execution_id}: {e}",
                    exc_info=True
                )

        future.add_done_callback(_deliver)
        return future

    def execute(self, request: NodeRequest) -> NodeOutcome:
        """Run one attempt synchronously. Never raises: failures become outcomes."""
        node = request.node
        started = time.monotonic()
        set_logging_context(execution_id=request.execution_id, node_id=node.id, attempt=request.attempt)
        activity: Optional[ActivityDefinition] = None
        try:
            activity = self.registry.resolve(node.type)
            if activity is None:
                # Trigger without a registered activity: pass the execution input through
                output = request.input
            else:
                context = self._build_context(request)
                timeout = self._resolve_timeout(node, activity)
                output = self._invoke(activity, request.input, context, timeout)

            logger.debug(f"Node {node.id} attempt {request.attempt} succeeded")
            return NodeOutcome(
                execution_id=request.execution_id,
                node_id=node.id,
                attempt=request.attempt,
                success=True,
                output=output,
                duration_ms=(time.monotonic() - started) * 1000,
            )
        except Exception as e:
            retryable = self._classify(activity, e)
            logger.warning(
                f"Node {node.id} attempt {request.attempt} failed "
                f"({'retryable' if retryable else 'terminal'}): {type(e).__name__}: {e}"
            )
            return NodeOutcome(
                execution_id=request.execution_id,
                node_id=node.id,
                attempt=request.attempt,
                success=False,
                error=str(e) or type(e).__name__,
                error_type=type(e).__name__,
                retryable=retryable,
                duration_ms=(time.monotonic() - started) * 1000,
            )
        finally:
            clear_logging_context()

    def _build_context(self, request: NodeRequest) -> ActivityContext:
        node = request.node
        credentials = {}
        if self._credentials_provider is not None:
            credentials = self._credentials_provider(request.organization_id, node) or {}
        return ActivityContext(
            execution_id=request.execution_id,
            organization_id=request.organization_id,
            trigger_type=request.trigger_type,
            node=node,
            attempt=request.attempt,
            config=dict(node.config),
            variables=dict(request.variables),
            credentials=credentials,
            http_client=self.http_client,
            logger=get_activity_logger(node.type, request.execution_id, node.id, request.attempt),
        )

    def _resolve_timeout(self, node: NodeDefinition, activity: ActivityDefinition) -> float:
        if node.timeout_seconds is not None:
            return node.timeout_seconds
        if activity.timeout_seconds is not None:
            return activity.timeout_seconds
        return float(self.config.node_timeout)

    def _invoke(self, activity: ActivityDefinition, input_data: Any, context: ActivityContext, timeout: float) -> Any:
        """
        Call an activity with a timeout.

        Args:
            activity: Activity to call
            input_data: Node input
            context: Activity context
            timeout: Timeout in seconds

        Returns:
            Activity output

        Raises:
            ActivityTimeoutError: If the activity does not finish in time
        """
        if activity.is_async:
            try:
                return asyncio.run(asyncio.wait_for(activity.handler(input_data, context), timeout))
            except asyncio.TimeoutError:
                raise ActivityTimeoutError(
                    f"Activity '{activity.name}' timed out after {timeout} seconds",
                    node_id=context.node_id, execution_id=context.execution_id, timeout_seconds=timeout
                )

        # The handler runs on its own thread so the worker can stop waiting for it
        runner = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"activity-{activity.name}")
        try:
            future = runner.submit(activity.handler, input_data, context)
            return future.result(timeout=timeout)
        except FutureTimeoutError:
            if future.done():
                # TimeoutError raised by the handler itself
                raise
            raise ActivityTimeoutError(
                f"Activity '{activity.name}' timed out after {timeout} seconds",
                node_id=context.node_id, execution_id=context.execution_id, timeout_seconds=timeout
            )
        finally:
            runner.shutdown(wait=False)

    def _classify(self, activity: Optional[ActivityDefinition], error: Exception) -> bool:
        if isinstance(error, ActivityTimeoutError):
            return activity.retry_on_timeout if activity is not None else True
        if isinstance(error, TerminalNodeError):
            return False
        if activity is not None and activity.classify_error is not None:
            try:
                verdict = activity.classify_error(error)
                if verdict is not None:
                    return bool(verdict)
            except Exception as e:
                logger.error(f"Error classifier of activity '{activity.name}' failed: {e}")
        return classify_error(error)

    def shutdown(self, wait: bool = True):
        """Stop accepting work and release the worker pool."""
        self._closed = True
        self._pool.shutdown(wait=wait, cancel_futures=not wait)
        if self._http_client is not None:
            self._http_client.close()
