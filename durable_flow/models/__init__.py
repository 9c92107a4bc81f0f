"""Data models for the workflow engine."""

from .core import (
    ExecutionStatusEnum,
    NodeStatusEnum,
    EdgeKind,
    ErrorHandling,
    SkipReason,
    JournalEventKind,
    ControlCommand,
    QueryType,
    NodeDefinition,
    EdgeDefinition,
    WorkflowSettings,
    WorkflowDefinition,
    NodeExecutionState,
    ExecutionRecord,
    JournalEvent,
    ExecutionResult,
    ExecutionStateView,
    ExecutionSummary,
    ValidationResult,
    Lease,
)

__all__ = [
    "ExecutionStatusEnum",
    "NodeStatusEnum",
    "EdgeKind",
    "ErrorHandling",
    "SkipReason",
    "JournalEventKind",
    "ControlCommand",
    "QueryType",
    "NodeDefinition",
    "EdgeDefinition",
    "WorkflowSettings",
    "WorkflowDefinition",
    "NodeExecutionState",
    "ExecutionRecord",
    "JournalEvent",
    "ExecutionResult",
    "ExecutionStateView",
    "ExecutionSummary",
    "ValidationResult",
    "Lease",
]
