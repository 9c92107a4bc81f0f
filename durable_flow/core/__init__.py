"""Core workflow engine components."""

from .exceptions import (
    WorkflowEngineError,
    ValidationError,
    ActivityRegistryError,
    NodeExecutionError,
    RetryableNodeError,
    TerminalNodeError,
    ExecutionTimeoutError,
    CancelledError,
    ExecutionNotFoundError,
    JournalError,
    LeaseHeldError,
    LeaseLostError,
    StorageError,
    ConfigurationError,
)
from .logging import setup_logging, get_logger
from .activity_registry import ActivityRegistry
from .graph_validator import GraphValidator, validate_workflow

__all__ = [
    "WorkflowEngineError",
    "ValidationError",
    "ActivityRegistryError",
    "NodeExecutionError",
    "RetryableNodeError",
    "TerminalNodeError",
    "ExecutionTimeoutError",
    "CancelledError",
    "ExecutionNotFoundError",
    "JournalError",
    "LeaseHeldError",
    "LeaseLostError",
    "StorageError",
    "ConfigurationError",
    "setup_logging",
    "get_logger",
    "ActivityRegistry",
    "GraphValidator",
    "validate_workflow",
]
