"""
Tests for retry logic and circuit breaker.
"""

import pytest
import time
from bookbackfill.retry import (
    exponential_backoff,
    CircuitBreaker,
    CircuitOpenError,
    is_transient_error,
    should_retry_http_status,
    RetryError,
)


class TestExponentialBackoff:
    """Test exponential backoff decorator."""

    def test_success_on_first_try(self):
        """Function that succeeds immediately should not retry."""
        call_count = [0]

        @exponential_backoff(max_retries=3, base_delay=0.1)
        def succeeds():
            call_count[0] += 1
            return "volume"

        assert succeeds() == "volume"
        assert call_count[0] == 1

    def test_retry_then_succeed(self, no_backoff_sleep):
        """Function that fails then succeeds should retry."""
        call_count = [0]

        @exponential_backoff(max_retries=3, base_delay=0.01)
        def fails_twice():
            call_count[0] += 1
            if call_count[0] < 3:
                raise ConnectionError("Temporary failure")
            return "volume"

        assert fails_twice() == "volume"
        assert call_count[0] == 3
        assert no_backoff_sleep == [0.01, 0.02]

    def test_all_retries_exhausted_chains_last_error(self, no_backoff_sleep):
        """RetryError carries the final exception as its cause."""
        call_count = [0]

        @exponential_backoff(max_retries=2, base_delay=0.01)
        def always_fails():
            call_count[0] += 1
            raise ValueError(f"failure {call_count[0]}")

        with pytest.raises(RetryError) as exc_info:
            always_fails()

        assert call_count[0] == 3  # Initial + 2 retries
        assert isinstance(exc_info.value.__cause__, ValueError)
        assert str(exc_info.value.__cause__) == "failure 3"

    def test_only_catches_specified_exceptions(self):
        """Should only retry on specified exception types."""
        call_count = [0]

        @exponential_backoff(max_retries=3, base_delay=0.01, exceptions=(ConnectionError,))
        def raises_value_error():
            call_count[0] += 1
            raise ValueError("Not retryable")

        with pytest.raises(ValueError):
            raises_value_error()

        assert call_count[0] == 1

    def test_exponential_delay(self, no_backoff_sleep):
        """Delay should double between attempts."""
        delays = []

        @exponential_backoff(
            max_retries=3,
            base_delay=0.01,
            exponential_base=2.0,
            on_retry=lambda attempt, exc, delay: delays.append((attempt, delay)),
        )
        def always_fails():
            raise ConnectionError("Test")

        with pytest.raises(RetryError):
            always_fails()

        assert delays == [(1, 0.01), (2, 0.02), (3, 0.04)]

    def test_max_delay_cap(self, no_backoff_sleep):
        """Delay should not exceed max_delay."""

        @exponential_backoff(max_retries=5, base_delay=1.0, max_delay=2.0, exponential_base=3.0)
        def always_fails():
            raise ConnectionError("Test")

        with pytest.raises(RetryError):
            always_fails()

        assert no_backoff_sleep[0] == 1.0
        assert all(d <= 2.0 for d in no_backoff_sleep)


class TestCircuitBreaker:
    """Test circuit breaker pattern."""

    def test_closed_state_allows_calls(self):
        """Circuit starts closed and allows calls."""
        breaker = CircuitBreaker(failure_threshold=3, recovery_timeout=1)

        assert breaker.call(lambda: "volume") == "volume"
        assert breaker.state == CircuitBreaker.CLOSED

    def test_opens_after_threshold(self):
        """Circuit opens after failure threshold and then fails fast."""
        breaker = CircuitBreaker(name="GOOGLE_BOOKS", failure_threshold=3, recovery_timeout=60)
        calls = [0]

        def failing_func():
            calls[0] += 1
            raise ConnectionError("Test failure")

        for _ in range(3):
            with pytest.raises(ConnectionError):
                breaker.call(failing_func)

        assert breaker.state == CircuitBreaker.OPEN

        with pytest.raises(CircuitOpenError, match="GOOGLE_BOOKS"):
            breaker.call(failing_func)
        assert calls[0] == 3

    def test_success_resets_failure_count(self):
        """Failures must be consecutive to open the circuit."""
        breaker = CircuitBreaker(failure_threshold=2)

        with pytest.raises(ConnectionError):
            breaker.call(self._raise, ConnectionError("one"))
        breaker.call(lambda: None)
        with pytest.raises(ConnectionError):
            breaker.call(self._raise, ConnectionError("two"))

        assert breaker.state == CircuitBreaker.CLOSED

    def test_unexpected_exceptions_do_not_count(self):
        """Only expected_exception failures trip the breaker."""
        breaker = CircuitBreaker(failure_threshold=1, expected_exception=ConnectionError)

        with pytest.raises(ValueError):
            breaker.call(self._raise, ValueError("bad input"))

        assert breaker.state == CircuitBreaker.CLOSED
        assert breaker.failure_count == 0

    def test_half_open_failure_reopens(self):
        """A failed probe in half-open state opens the circuit again."""
        breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=0.1)

        for _ in range(2):
            with pytest.raises(ConnectionError):
                breaker.call(self._raise, ConnectionError("Test"))

        time.sleep(0.15)

        # Probe is attempted, not blocked
        with pytest.raises(ConnectionError):
            breaker.call(self._raise, ConnectionError("Still down"))

        assert breaker.state == CircuitBreaker.OPEN
        with pytest.raises(CircuitOpenError):
            breaker.call(lambda: "volume")

    def test_closes_on_success_in_half_open(self):
        """Successful call in half-open state closes circuit."""
        breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=0.1)

        for _ in range(2):
            with pytest.raises(ConnectionError):
                breaker.call(self._raise, ConnectionError("Fail"))

        assert breaker.state == CircuitBreaker.OPEN

        time.sleep(0.15)
        assert breaker.call(lambda: "volume") == "volume"
        assert breaker.state == CircuitBreaker.CLOSED

    def test_manual_reset(self):
        """Manual reset should close the circuit."""
        breaker = CircuitBreaker(failure_threshold=2)

        for _ in range(2):
            with pytest.raises(ConnectionError):
                breaker.call(self._raise, ConnectionError("Test"))

        assert breaker.state == CircuitBreaker.OPEN

        breaker.reset()
        assert breaker.state == CircuitBreaker.CLOSED
        assert breaker.failure_count == 0

    @staticmethod
    def _raise(exc):
        raise exc


class TestTransientErrorDetection:
    """Test transient error detection utilities."""

    def test_detects_timeout_errors(self):
        assert is_transient_error(TimeoutError("read timed out"))
        assert is_transient_error(Exception("Connection timeout"))

    def test_open_circuit_is_transient(self):
        assert is_transient_error(CircuitOpenError("OPEN_LIBRARY", 30))

    def test_detects_server_errors(self):
        """Should detect 5xx and 429 errors as transient."""
        errors = [
            Exception("GOOGLE_BOOKS request failed (503): https://example.com"),
            Exception("502 Bad Gateway"),
            Exception("500 Internal Server Error"),
            Exception("429 Too Many Requests"),
        ]
        for error in errors:
            assert is_transient_error(error)

    def test_non_transient_errors(self):
        """Should not detect permanent errors as transient."""
        errors = [
            Exception("404 Not Found"),
            ValueError("Invalid book aggregate: Missing required field: title"),
            Exception("401 Unauthorized"),
        ]
        for error in errors:
            assert not is_transient_error(error)

    def test_http_status_retry_logic(self):
        """Should correctly identify retryable HTTP status codes."""
        for status in (408, 429, 500, 502, 503, 504):
            assert should_retry_http_status(status)
        for status in (200, 400, 401, 403, 404):
            assert not should_retry_http_status(status)
