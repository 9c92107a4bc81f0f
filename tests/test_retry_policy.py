"""Tests for retry policy and error classification."""

import logging

import pytest
import requests

from durable_flow.core.exceptions import (
    ActivityTimeoutError,
    ConfigurationError,
    NodeExecutionError,
    StorageError,
    TerminalNodeError,
)
from durable_flow.core.retry_policy import RetryConfig, RetryPolicy, call_with_retry, classify_error, with_retry
from durable_flow.models.core import WorkflowSettings


def http_error(status_code):
    response = requests.Response()
    response.status_code = status_code
    return requests.HTTPError(f"{status_code} error", response=response)


class TestRetryPolicy:
    """Backoff arithmetic."""

    def test_delay_grows_exponentially(self):
        policy = RetryPolicy(max_attempts=5, initial_delay_ms=100, max_delay_ms=10000)
        assert [policy.delay_ms(attempt) for attempt in range(1, 5)] == [100, 200, 400, 800]

    def test_delay_is_capped(self):
        policy = RetryPolicy(max_attempts=10, initial_delay_ms=1000, max_delay_ms=3000)
        assert policy.delay_ms(2) == 2000
        assert policy.delay_ms(3) == 3000
        assert policy.delay_ms(8) == 3000

    def test_should_retry_counts_the_first_attempt(self):
        policy = RetryPolicy(max_attempts=3)
        assert policy.should_retry(True, 1)
        assert policy.should_retry(True, 2)
        assert not policy.should_retry(True, 3)
        assert not policy.should_retry(False, 1)

    def test_single_attempt_never_retries(self):
        assert not RetryPolicy(max_attempts=1).should_retry(True, 1)

    def test_from_settings(self):
        policy = RetryPolicy.from_settings(WorkflowSettings(max_retries=4, retry_delay_ms=250), max_delay_ms=600)
        assert policy.max_attempts == 4
        assert policy.delay_ms(1) == 250
        assert policy.delay_ms(3) == 600

    def test_invalid_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)


class TestClassifyError:
    """Default retryable/terminal decision."""

    @pytest.mark.parametrize("error", [
        ConnectionError("reset"),
        TimeoutError("slow"),
        ActivityTimeoutError("timed out"),
        NodeExecutionError("flaky upstream"),
        RuntimeError("unknown"),
        requests.ConnectionError("refused"),
        http_error(503),
        http_error(429),
    ])
    def test_retryable(self, error):
        assert classify_error(error) is True

    @pytest.mark.parametrize("error", [
        ValueError("bad"),
        KeyError("missing"),
        TypeError("wrong"),
        TerminalNodeError("stop"),
        ConfigurationError("misconfigured"),
        http_error(404),
    ])
    def test_terminal(self, error):
        assert classify_error(error) is False

    def test_non_retryable_name_wins(self):
        class AuthenticationError(ConnectionError):
            pass

        assert classify_error(AuthenticationError("denied")) is False


class TestWithRetry:
    """Retry decorator for storage calls."""

    def test_recovers_from_storage_errors(self):
        calls = []

        @with_retry(RetryConfig(max_attempts=3, base_delay=0.001))
        def flaky_read():
            calls.append(1)
            if len(calls) < 3:
                raise StorageError("database is locked")
            return "rows"

        assert flaky_read() == "rows"
        assert len(calls) == 3

    def test_gives_up_after_max_attempts(self):
        calls = []

        @with_retry(RetryConfig(max_attempts=2, base_delay=0.001))
        def always_locked():
            calls.append(1)
            raise StorageError("database is locked")

        with pytest.raises(StorageError):
            always_locked()
        assert len(calls) == 2

    def test_other_errors_are_not_retried(self):
        calls = []

        @with_retry(RetryConfig(max_attempts=3, base_delay=0.001))
        def broken():
            calls.append(1)
            raise ValueError("bug")

        with pytest.raises(ValueError):
            broken()
        assert len(calls) == 1

    def test_delay_without_jitter(self):
        config = RetryConfig(base_delay=0.5, max_delay=1.5, jitter=False)
        assert config.get_delay(1) == 0.5
        assert config.get_delay(2) == 1.0
        assert config.get_delay(4) == 1.5

    def test_retry_attempts_carry_structured_fields(self, caplog):
        calls = []

        def locked_once():
            calls.append(1)
            if len(calls) == 1:
                raise StorageError("database is locked")
            return "ok"

        with caplog.at_level(logging.WARNING, logger="durable_flow.core.retry_policy"):
            assert call_with_retry(locked_once, RetryConfig(base_delay=0.001)) == "ok"

        retries = [record for record in caplog.records if record.name == "durable_flow.core.retry_policy"]
        assert len(retries) == 1
        assert retries[0].extra_fields["operation"] == "locked_once"
        assert retries[0].extra_fields["error_type"] == "StorageError"
        assert retries[0].extra_fields["attempt"] == 1
