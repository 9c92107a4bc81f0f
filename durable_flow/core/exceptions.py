"""Custom exceptions for the durable workflow engine with detailed error information."""

import traceback
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels for categorizing exceptions."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Categories of errors for better classification."""
    VALIDATION = "validation"
    EXECUTION = "execution"
    STORAGE = "storage"
    NETWORK = "network"
    CONFIGURATION = "configuration"
    CONCURRENCY = "concurrency"
    BUSINESS_LOGIC = "business_logic"


class WorkflowEngineError(Exception):
    """Base exception for all workflow engine errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.EXECUTION,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
        retry_after: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.severity = severity
        self.category = category
        self.details = details or {}
        self.recoverable = recoverable
        self.retry_after = retry_after
        self.context = context or {}
        self.timestamp = datetime.now(timezone.utc)
        self.traceback_info = traceback.format_stack()

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging and API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "details": self.details,
            "recoverable": self.recoverable,
            "retry_after": self.retry_after,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "exception_type": self.__class__.__name__
        }

    def add_context(self, **kwargs):
        """Add additional context to the exception."""
        self.context.update(kwargs)
        return self

    def add_details(self, **kwargs):
        """Add additional details to the exception."""
        self.details.update(kwargs)
        return self


class ValidationError(WorkflowEngineError):
    """Raised when a workflow definition is rejected before execution."""

    def __init__(
        self,
        message: str,
        validation_errors: Optional[List[str]] = None,
        workflow_id: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.VALIDATION,
            **kwargs
        )
        self.validation_errors = validation_errors or []
        if workflow_id:
            self.add_context(workflow_id=workflow_id)
        if validation_errors:
            self.add_details(validation_errors=validation_errors)


class ActivityRegistryError(WorkflowEngineError):
    """Raised when activity registry operations fail."""

    def __init__(
        self,
        message: str,
        activity_type: Optional[str] = None,
        operation: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )
        if activity_type:
            self.add_context(activity_type=activity_type)
        if operation:
            self.add_context(operation=operation)


class NodeExecutionError(WorkflowEngineError):
    """Raised by activities when node execution fails."""

    def __init__(
        self,
        message: str,
        node_id: Optional[str] = None,
        execution_id: Optional[str] = None,
        recoverable: bool = True,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.EXECUTION,
            recoverable=recoverable,
            **kwargs
        )
        if node_id:
            self.add_context(node_id=node_id)
        if execution_id:
            self.add_context(execution_id=execution_id)


class RetryableNodeError(NodeExecutionError):
    """Transient node failure that is retried according to the retry policy."""

    def __init__(self, message: str, **kwargs):
        kwargs.pop("recoverable", None)
        super().__init__(message, recoverable=True, **kwargs)


class TerminalNodeError(NodeExecutionError):
    """Non-retryable node failure; fails the node immediately."""

    def __init__(self, message: str, **kwargs):
        kwargs.pop("recoverable", None)
        super().__init__(message, recoverable=False, **kwargs)


class ActivityTimeoutError(RetryableNodeError):
    """Raised when an activity exceeds its per-node timeout."""

    def __init__(self, message: str, timeout_seconds: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        if timeout_seconds is not None:
            self.add_details(timeout_seconds=timeout_seconds)


class ExecutionTimeoutError(WorkflowEngineError):
    """Raised when a whole execution exceeds its configured timeout."""

    def __init__(self, message: str, execution_id: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.EXECUTION,
            **kwargs
        )
        if execution_id:
            self.add_context(execution_id=execution_id)


class CancelledError(WorkflowEngineError):
    """Raised or recorded when an execution is cancelled from outside."""

    def __init__(self, message: str = "Execution was cancelled", execution_id: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.EXECUTION,
            **kwargs
        )
        if execution_id:
            self.add_context(execution_id=execution_id)


class ExecutionNotFoundError(WorkflowEngineError):
    """Raised when an execution id is unknown to the journal."""

    def __init__(self, execution_id: str, **kwargs):
        super().__init__(
            f"Execution {execution_id} not found",
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.BUSINESS_LOGIC,
            **kwargs
        )
        self.execution_id = execution_id
        self.add_context(execution_id=execution_id)


class StorageError(WorkflowEngineError):
    """Raised when storage operations fail."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.STORAGE,
            recoverable=True,
            retry_after=3,
            **kwargs
        )
        if operation:
            self.add_context(operation=operation)
        if table:
            self.add_context(table=table)


class JournalError(WorkflowEngineError):
    """Raised when the execution journal rejects an operation."""

    def __init__(self, message: str, execution_id: Optional[str] = None, **kwargs):
        kwargs.setdefault("category", ErrorCategory.STORAGE)
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        super().__init__(message, **kwargs)
        if execution_id:
            self.add_context(execution_id=execution_id)


class LeaseHeldError(JournalError):
    """Raised when another live owner holds the lease on an execution."""

    def __init__(self, message: str, execution_id: Optional[str] = None, owner_id: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            execution_id=execution_id,
            category=ErrorCategory.CONCURRENCY,
            severity=ErrorSeverity.MEDIUM,
            **kwargs
        )
        if owner_id:
            self.add_context(owner_id=owner_id)


class LeaseLostError(JournalError):
    """Raised when an append carries a stale fencing token."""

    def __init__(self, message: str, execution_id: Optional[str] = None, token: Optional[int] = None, **kwargs):
        super().__init__(
            message,
            execution_id=execution_id,
            category=ErrorCategory.CONCURRENCY,
            **kwargs
        )
        if token is not None:
            self.add_context(token=token)


class ConfigurationError(WorkflowEngineError):
    """Raised when configuration is invalid or missing."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )
        if config_key:
            self.add_context(config_key=config_key)


def create_error_response(error: WorkflowEngineError) -> Dict[str, Any]:
    """Create a standardized error response from a WorkflowEngineError."""
    return {
        "error": error.error_code,
        "message": error.message,
        "details": {
            **error.details,
            "severity": error.severity.value,
            "category": error.category.value,
            "recoverable": error.recoverable,
            "retry_after": error.retry_after,
            "timestamp": error.timestamp.isoformat()
        },
        "context": error.context
    }
