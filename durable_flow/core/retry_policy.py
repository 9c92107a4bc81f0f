"""Retry policy, error classification and retry helpers for storage calls."""

import time
import random
from typing import Callable, Any, Optional, List, Type
from functools import wraps

import requests

from .exceptions import (
    WorkflowEngineError, RetryableNodeError, TerminalNodeError, StorageError
)
from .logging import get_logger
from ..models.core import WorkflowSettings


logger = get_logger(__name__)


# Error names that are never worth retrying, whatever their class hierarchy.
NON_RETRYABLE_ERROR_NAMES = frozenset({
    "SandboxSecurityError",
    "ConfigurationError",
    "AuthenticationError",
    "ValidationError",
})

TERMINAL_BUILTIN_ERRORS = (ValueError, TypeError, KeyError, PermissionError)
RETRYABLE_BUILTIN_ERRORS = (TimeoutError, ConnectionError)


class RetryPolicy:
    """Exponential backoff for node retries.

    Delays are deterministic (no jitter): the delay is journaled with the
    retry and must be reproducible on replay.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        initial_delay_ms: int = 1000,
        max_delay_ms: int = 30000,
        multiplier: float = 2.0
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.initial_delay_ms = initial_delay_ms
        self.max_delay_ms = max_delay_ms
        self.multiplier = multiplier

    @classmethod
    def from_settings(
        cls,
        settings: WorkflowSettings,
        max_delay_ms: int = 30000,
        multiplier: float = 2.0
    ) -> 'RetryPolicy':
        return cls(
            max_attempts=settings.max_retries,
            initial_delay_ms=settings.retry_delay_ms,
            max_delay_ms=max_delay_ms,
            multiplier=multiplier
        )

    def should_retry(self, retryable: bool, attempt: int) -> bool:
        """Whether the attempt that just failed gets another try."""
        return retryable and attempt < self.max_attempts

    def delay_ms(self, attempt: int) -> int:
        """Backoff after the given (1-based) failed attempt."""
        delay = self.initial_delay_ms * (self.multiplier ** (attempt - 1))
        return int(min(self.max_delay_ms, delay))

    def __repr__(self) -> str:
        return (
            f"RetryPolicy(max_attempts={self.max_attempts}, initial_delay_ms={self.initial_delay_ms}, "
            f"max_delay_ms={self.max_delay_ms}, multiplier={self.multiplier})"
        )


def classify_error(error: BaseException) -> bool:
    """
    Decide whether a node failure is retryable.

    Args:
        error: Exception raised by an activity

    Returns:
        True when the failure is transient and the node may be retried
    """
    if isinstance(error, RetryableNodeError):
        return True
    if isinstance(error, TerminalNodeError):
        return False
    if type(error).__name__ in NON_RETRYABLE_ERROR_NAMES:
        return False
    if isinstance(error, WorkflowEngineError):
        return error.recoverable

    if isinstance(error, requests.HTTPError):
        response = error.response
        if response is None:
            return True
        return response.status_code == 429 or response.status_code >= 500
    if isinstance(error, (requests.ConnectionError, requests.Timeout)):
        return True

    if isinstance(error, RETRYABLE_BUILTIN_ERRORS):
        return True
    if isinstance(error, TERMINAL_BUILTIN_ERRORS):
        return False
    return True


class RetryConfig:
    """Retry settings for infrastructure calls such as journal reads."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 0.1,
        max_delay: float = 2.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Optional[List[Type[Exception]]] = None
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions or [StorageError]

    def should_retry(self, exception: Exception, attempt: int) -> bool:
        if attempt >= self.max_attempts:
            return False
        if not any(isinstance(exception, exc_type) for exc_type in self.retryable_exceptions):
            return False
        if isinstance(exception, WorkflowEngineError):
            return exception.recoverable
        return True

    def get_delay(self, attempt: int) -> float:
        delay = self.base_delay * (self.exponential_base ** (attempt - 1))
        delay = min(delay, self.max_delay)

        if self.jitter:
            delay *= (0.5 + random.random() * 0.5)

        return delay


def with_retry(config: Optional[RetryConfig] = None):
    """Decorator to add retry logic to functions."""
    if config is None:
        config = RetryConfig()

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            return call_with_retry(func, config, *args, **kwargs)
        return wrapper

    return decorator


def call_with_retry(func: Callable, config: RetryConfig, *args, **kwargs) -> Any:
    """Call ``func``, retrying the failures ``config`` accepts."""
    operation = getattr(func, "__name__", repr(func))

    attempt = 1
    while True:
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            if not config.should_retry(e, attempt):
                if attempt > 1:
                    logger.error(f"{operation} failed after {attempt} attempts: {e}")
                raise
            logger.warning(
                f"Retrying {operation} after attempt {attempt}/{config.max_attempts} failed",
                extra={"extra_fields": {
                    "operation": operation,
                    "error_type": type(e).__name__,
                    "error_message": str(e),
                    "attempt": attempt,
                }}
            )
            time.sleep(config.get_delay(attempt))
            attempt += 1
            continue

        if attempt > 1:
            logger.info(f"{operation} succeeded on attempt {attempt}")
        return result
