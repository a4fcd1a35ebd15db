"""
Tests for the provider circuit breaker.

Tests cover:
1. State transitions (CLOSED -> OPEN -> HALF_OPEN -> CLOSED)
2. Core methods (record_success, record_failure, allow_request, available_calls, reset)
3. CircuitBreakerRegistry (get, get_all_states)
4. State shared through the circuit_breaker_state table
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from sqlalchemy.exc import OperationalError

from keyword_snapshots.core.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
)


def _half_open(half_open_max_calls: int = 3) -> CircuitBreaker:
    cb = CircuitBreaker(
        name="test", failure_threshold=1, recovery_timeout=60.0, half_open_max_calls=half_open_max_calls
    )
    cb.record_failure()
    cb._last_failure_time = datetime.now(timezone.utc) - timedelta(seconds=61)
    return cb


class TestCircuitBreakerTransitions:
    """Tests for breaker state transitions."""

    def test_starts_closed(self):
        cb = CircuitBreaker(name="test")

        assert cb.state == CircuitState.CLOSED
        assert cb.allow_request() is True

    def test_opens_at_threshold(self):
        cb = CircuitBreaker(name="test", failure_threshold=3)

        cb.record_failure()
        cb.record_failure()
        assert cb.state == CircuitState.CLOSED

        cb.record_failure()
        assert cb.state == CircuitState.OPEN
        assert cb.allow_request() is False

    def test_success_resets_failure_count(self):
        cb = CircuitBreaker(name="test", failure_threshold=3)
        cb.record_failure()
        cb.record_failure()

        cb.record_success()
        cb.record_failure()

        assert cb.failure_count == 1
        assert cb.state == CircuitState.CLOSED

    def test_half_open_after_recovery_timeout(self):
        cb = CircuitBreaker(name="test", failure_threshold=1, recovery_timeout=60.0)
        cb.record_failure()
        cb._last_failure_time = datetime.now(timezone.utc) - timedelta(seconds=61)

        assert cb.allow_request() is True
        assert cb.state == CircuitState.HALF_OPEN

    def test_half_open_limits_trial_calls(self):
        cb = _half_open(half_open_max_calls=2)

        assert cb.allow_request() is True
        assert cb.allow_request() is True
        assert cb.allow_request() is False
        assert cb.available_calls() == 0

    def test_available_calls_does_not_use_trial_slots(self):
        cb = _half_open(half_open_max_calls=3)

        for _ in range(10):
            assert cb.available_calls() == 3

        assert cb.state == CircuitState.HALF_OPEN
        assert cb.allow_request() is True
        assert cb.available_calls() == 2

    def test_available_calls_by_state(self):
        cb = CircuitBreaker(name="test", failure_threshold=1, recovery_timeout=60.0)
        assert cb.available_calls() is None

        cb.record_failure()
        assert cb.available_calls() == 0

        cb._last_failure_time = datetime.now(timezone.utc) - timedelta(seconds=61)
        assert cb.available_calls() == cb.half_open_max_calls
        assert cb.state == CircuitState.HALF_OPEN

    def test_unreported_trial_slots_come_back(self):
        cb = _half_open(half_open_max_calls=2)
        cb.allow_request()
        cb.allow_request()
        assert cb.available_calls() == 0

        cb._half_open_since = datetime.now(timezone.utc) - timedelta(seconds=61)

        assert cb.available_calls() == 2
        assert cb.state == CircuitState.HALF_OPEN

    def test_half_open_closes_after_successes(self):
        cb = CircuitBreaker(name="test", failure_threshold=1, recovery_timeout=0.0, half_open_max_calls=2)
        cb.record_failure()
        cb.allow_request()

        cb.record_success()
        assert cb.state == CircuitState.HALF_OPEN
        cb.record_success()

        assert cb.state == CircuitState.CLOSED
        assert cb.failure_count == 0

    def test_half_open_failure_reopens(self):
        cb = CircuitBreaker(name="test", failure_threshold=1, recovery_timeout=0.0)
        cb.record_failure()
        cb.allow_request()

        cb.record_failure()

        assert cb.state == CircuitState.OPEN

    def test_opening_reports_message(self):
        cb = CircuitBreaker(name="test", failure_threshold=1)

        with patch("keyword_snapshots.core.circuit_breaker.capture_message") as mock_capture:
            cb.record_failure()

        mock_capture.assert_called_once()
        assert "test" in mock_capture.call_args[0][0]

    def test_reset(self):
        cb = CircuitBreaker(name="test", failure_threshold=1)
        cb.record_failure()

        cb.reset()

        assert cb.state == CircuitState.CLOSED
        assert cb.failure_count == 0


class TestCircuitBreakerPersistence:
    """Tests for state shared through the database."""

    def test_open_state_restored_by_new_breaker(self, test_engine):
        first = CircuitBreaker(name="rainforest", failure_threshold=2, engine=test_engine)
        first.record_failure()
        first.record_failure()

        second = CircuitBreaker(name="rainforest", engine=test_engine)

        assert second.state == CircuitState.OPEN
        assert second.failure_count == 2
        assert second.allow_request() is False

    def test_reset_is_persisted(self, test_engine):
        first = CircuitBreaker(name="rainforest", failure_threshold=1, engine=test_engine)
        first.record_failure()
        first.reset()

        second = CircuitBreaker(name="rainforest", engine=test_engine)

        assert second.state == CircuitState.CLOSED

    def test_persist_failure_keeps_memory_state(self, test_engine):
        cb = CircuitBreaker(name="rainforest", failure_threshold=1, engine=test_engine)
        error = OperationalError("UPDATE", {}, Exception("connection refused"))

        with patch("keyword_snapshots.core.circuit_breaker.Session", side_effect=error):
            cb.record_failure()

        assert cb.state == CircuitState.OPEN

    def test_no_engine_no_persistence(self, test_engine):
        cb = CircuitBreaker(name="memory-only", failure_threshold=1)
        cb.record_failure()

        restored = CircuitBreaker(name="memory-only", engine=test_engine)

        assert restored.state == CircuitState.CLOSED


class TestCircuitBreakerRegistry:
    """Tests for CircuitBreakerRegistry."""

    def test_get_returns_same_instance(self):
        first = CircuitBreakerRegistry.get("rainforest", failure_threshold=2)
        second = CircuitBreakerRegistry.get("rainforest")

        assert first is second
        assert first.failure_threshold == 2

    def test_get_all_states(self):
        CircuitBreakerRegistry.get("rainforest", failure_threshold=1).record_failure()
        CircuitBreakerRegistry.get("other")

        assert CircuitBreakerRegistry.get_all_states() == {"rainforest": "open", "other": "closed"}
