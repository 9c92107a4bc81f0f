"""Core Pydantic models for the durable workflow engine."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, field_validator


TRIGGER_TYPE = "trigger"
TRIGGER_PREFIX = "trigger-"


def utc_now() -> datetime:
    """Naive UTC timestamp; naive values round-trip through SQLite unchanged."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def is_trigger_type(node_type: str) -> bool:
    """Return True when a node type marks an entry (trigger) node."""
    return node_type == TRIGGER_TYPE or node_type.startswith(TRIGGER_PREFIX)


class ExecutionStatusEnum(str, Enum):
    """Enumeration of workflow execution statuses."""
    INITIALIZED = "initialized"
    RUNNING = "running"
    PAUSED = "paused"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            ExecutionStatusEnum.SUCCEEDED,
            ExecutionStatusEnum.FAILED,
            ExecutionStatusEnum.CANCELLED,
        )


class NodeStatusEnum(str, Enum):
    """Enumeration of per-node execution statuses."""
    IDLE = "idle"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (NodeStatusEnum.SUCCESS, NodeStatusEnum.ERROR, NodeStatusEnum.SKIPPED)


class EdgeKind(str, Enum):
    """Which outcome of the source node an edge follows."""
    DEFAULT = "default"
    SUCCESS = "success"
    ERROR = "error"


class ErrorHandling(str, Enum):
    """Run-level failure policy."""
    STOP = "stop"
    CONTINUE = "continue"


class SkipReason(str, Enum):
    """Why a node was skipped without running."""
    DISABLED = "disabled"
    BLOCKED = "blocked"
    HALTED = "halted"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"


class JournalEventKind(str, Enum):
    """Kinds of events recorded in the execution journal."""
    EXECUTION_STARTED = "ExecutionStarted"
    NODE_SCHEDULED = "NodeScheduled"
    NODE_STARTED = "NodeStarted"
    NODE_RETRIED = "NodeRetried"
    NODE_SUCCEEDED = "NodeSucceeded"
    NODE_FAILED = "NodeFailed"
    NODE_SKIPPED = "NodeSkipped"
    EXECUTION_PAUSED = "ExecutionPaused"
    EXECUTION_RESUMED = "ExecutionResumed"
    EXECUTION_CANCELLED = "ExecutionCancelled"
    EXECUTION_COMPLETED = "ExecutionCompleted"
    EXECUTION_FAILED = "ExecutionFailed"


TERMINAL_EVENT_KINDS = (
    JournalEventKind.EXECUTION_CANCELLED,
    JournalEventKind.EXECUTION_COMPLETED,
    JournalEventKind.EXECUTION_FAILED,
)


class ControlCommand(str, Enum):
    """External control signals accepted by a running execution."""
    PAUSE = "pause"
    RESUME = "resume"
    CANCEL = "cancel"


class QueryType(str, Enum):
    """Read-only queries answered from the execution snapshot."""
    GET_STATE = "getState"
    GET_NODE_RESULT = "getNodeResult"


class ResultStatus(str, Enum):
    """Final outcome reported by await_result."""
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ValidationResult(BaseModel):
    """Result of graph validation."""
    is_valid: bool = Field(..., description="Whether the graph is valid")
    errors: List[str] = Field(default_factory=list, description="List of validation errors")
    warnings: List[str] = Field(default_factory=list, description="List of validation warnings")


class NodeDefinition(BaseModel):
    """Definition of a workflow node."""
    id: str = Field(..., description="Unique identifier for the node")
    type: str = Field(..., description="Activity type executed for this node")
    data: Dict[str, Any] = Field(default_factory=dict, description="Label, config and timeout overrides")
    disabled: bool = Field(False, description="Disabled nodes are skipped and pass resolution through")

    @field_validator('id', 'type')
    @classmethod
    def validate_not_empty(cls, value):
        """Ensure identifiers are not blank."""
        if not value or not value.strip():
            raise ValueError("Node id and type cannot be empty")
        return value.strip()

    @property
    def is_trigger(self) -> bool:
        return is_trigger_type(self.type)

    @property
    def label(self) -> str:
        return self.data.get("label") or self.id

    @property
    def config(self) -> Dict[str, Any]:
        return self.data.get("config") or {}

    @property
    def timeout_seconds(self) -> Optional[float]:
        value = self.data.get("timeout_seconds")
        return float(value) if value is not None else None


class EdgeDefinition(BaseModel):
    """Definition of an edge between workflow nodes."""
    id: str = Field(..., description="Unique identifier for the edge")
    source: str = Field(..., description="Source node ID")
    target: str = Field(..., description="Target node ID")
    source_handle: Optional[str] = Field(None, description="Editor handle on the source node")
    target_handle: Optional[str] = Field(None, description="Editor handle on the target node")
    kind: EdgeKind = Field(EdgeKind.DEFAULT, description="Outcome of the source this edge follows")

    @field_validator('source', 'target')
    @classmethod
    def validate_node_ids(cls, node_id):
        """Ensure node IDs are valid."""
        if not node_id or not node_id.strip():
            raise ValueError("Node ID cannot be empty")
        return node_id.strip()


class WorkflowSettings(BaseModel):
    """Per-workflow execution settings."""
    error_handling: ErrorHandling = Field(ErrorHandling.STOP, description="stop or continue on node failure")
    max_retries: int = Field(3, ge=1, description="Maximum attempts per node, including the first")
    retry_delay_ms: int = Field(1000, ge=0, description="Initial retry backoff in milliseconds")
    timeout_minutes: Optional[float] = Field(None, gt=0, description="Whole-execution timeout")
    max_concurrency: Optional[int] = Field(None, ge=1, description="In-flight node cap for this execution")

    @field_validator('error_handling', mode='before')
    @classmethod
    def normalize_error_handling(cls, value):
        """Accept the editor's legacy 'retry' mode as an alias of 'stop'."""
        if isinstance(value, str) and value.strip().lower() == "retry":
            return ErrorHandling.STOP
        return value


class WorkflowDefinition(BaseModel):
    """Complete definition of a workflow graph."""
    id: str = Field(..., description="Workflow identifier")
    name: Optional[str] = Field(None, description="Display name, defaults to the id")
    nodes: List[NodeDefinition] = Field(default_factory=list, description="Nodes in definition order")
    edges: List[EdgeDefinition] = Field(default_factory=list, description="Edges connecting nodes")
    settings: WorkflowSettings = Field(default_factory=WorkflowSettings)

    @field_validator('id')
    @classmethod
    def validate_id(cls, value):
        if not value or not value.strip():
            raise ValueError("Workflow id cannot be empty")
        return value.strip()

    @property
    def display_name(self) -> str:
        return self.name or self.id

    def get_node(self, node_id: str) -> Optional[NodeDefinition]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def incoming_edges(self, node_id: str) -> List[EdgeDefinition]:
        return [edge for edge in self.edges if edge.target == node_id]

    def outgoing_edges(self, node_id: str) -> List[EdgeDefinition]:
        return [edge for edge in self.edges if edge.source == node_id]

    def trigger_nodes(self) -> List[NodeDefinition]:
        return [node for node in self.nodes if node.is_trigger]


class NodeExecutionState(BaseModel):
    """Per-node progress and diagnostics inside an execution."""
    status: NodeStatusEnum = NodeStatusEnum.IDLE
    attempt: int = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    output: Optional[Any] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    skip_reason: Optional[SkipReason] = None
    awaiting_retry: bool = False
    retry_at: Optional[datetime] = None
    completed_order: Optional[int] = None


class ExecutionRecord(BaseModel):
    """Canonical state of one execution, produced by folding its journal."""
    execution_id: str
    workflow_id: str
    definition: WorkflowDefinition
    status: ExecutionStatusEnum = ExecutionStatusEnum.INITIALIZED
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    input: Any = None
    organization_id: Optional[str] = None
    trigger_type: Optional[str] = None
    node_states: Dict[str, NodeExecutionState] = Field(default_factory=dict)
    error: Optional[str] = None
    error_type: Optional[str] = None
    failed_node_id: Optional[str] = None
    last_sequence: int = 0

    @property
    def completed_nodes(self) -> List[str]:
        """Ids of terminal nodes in the order they became terminal."""
        finished = [
            (state.completed_order, node_id)
            for node_id, state in self.node_states.items()
            if state.status.is_terminal and state.completed_order is not None
        ]
        return [node_id for _, node_id in sorted(finished)]

    @property
    def current_nodes(self) -> List[str]:
        return [
            node_id for node_id, state in self.node_states.items()
            if state.status == NodeStatusEnum.RUNNING
        ]

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class JournalEvent(BaseModel):
    """One immutable entry in an execution's append-only journal."""
    sequence: int = Field(..., ge=1)
    execution_id: str
    timestamp: datetime
    kind: JournalEventKind
    payload: Dict[str, Any] = Field(default_factory=dict)


class ExecutionResult(BaseModel):
    """Final outcome of an execution."""
    execution_id: str
    status: ResultStatus
    results: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    failed_node_id: Optional[str] = None
    attempts: Optional[int] = None


class ExecutionStateView(BaseModel):
    """Snapshot returned by the getState query."""
    execution_id: str
    status: ExecutionStatusEnum
    completed_nodes: List[str] = Field(default_factory=list)
    current_nodes: List[str] = Field(default_factory=list)
    node_states: Dict[str, NodeExecutionState] = Field(default_factory=dict)
    error: Optional[str] = None


class ExecutionSummary(BaseModel):
    """Row-level summary of an execution as stored in the journal."""
    execution_id: str
    workflow_id: str
    status: ExecutionStatusEnum
    organization_id: Optional[str] = None
    trigger_type: Optional[str] = None
    error_message: Optional[str] = None
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    last_sequence: int = 0
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class Lease(BaseModel):
    """Ownership of an execution, fenced by a monotonically increasing token."""
    execution_id: str
    owner_id: str
    token: int
    expires_at: datetime
