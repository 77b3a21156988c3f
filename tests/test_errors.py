"""
Tests for the PRP loop error hierarchy.

Tests error creation, categorization, recoverability, and error context.
"""

import pytest

from prp_loop.errors import (
    CircuitBreakerError,
    CircuitOpenError,
    ConfigurationError,
    CooldownActiveError,
    ErrorCategory,
    HourlyLimitExceededError,
    InvalidConfigError,
    InvalidTransitionError,
    PRPLoopError,
    ProviderOverloadedError,
    RateLimitError,
    SessionNotFoundError,
    StateCorruptionError,
    StateError,
    TerminalSessionError,
    WorkerError,
    WorkerReportError,
)


class TestBaseError:
    """Test base PRPLoopError class"""

    def test_error_creation(self):
        error = PRPLoopError("Test error message")
        assert str(error) == "Test error message"
        assert error.recoverable is False
        assert error.error_code == "UNKNOWN"
        assert error.category == ErrorCategory.STATE
        assert error.context == {}

    def test_error_to_dict(self):
        error = PRPLoopError("Test error", recoverable=True, context={"detail": "test"})
        error_dict = error.to_dict()

        assert error_dict == {
            "error_code": "UNKNOWN",
            "category": "state",
            "message": "Test error",
            "recoverable": True,
            "context": {"detail": "test"},
        }


class TestStateErrors:
    """Test session state errors"""

    def test_corruption_error(self):
        error = StateCorruptionError("/tmp/s/loop-state.json", "not valid JSON")
        assert isinstance(error, StateError)
        assert error.error_code == "STATE_CORRUPTION"
        assert "loop-state.json" in str(error)
        assert error.context["reason"] == "not valid JSON"

    def test_session_not_found(self):
        error = SessionNotFoundError("abc")
        assert "abc" in str(error)
        assert error.context["session_id"] == "abc"

    def test_terminal_session(self):
        error = TerminalSessionError("abc", "halted")
        assert error.context["status"] == "halted"
        assert "cannot be modified" in str(error)

    def test_invalid_transition_context(self):
        error = InvalidTransitionError("nope", current="running", requested="completed")
        assert error.context == {"current": "running", "requested": "completed"}


class TestCircuitAndRateLimitErrors:

    def test_circuit_open(self):
        error = CircuitOpenError("No progress for 2 consecutive iterations")
        assert isinstance(error, CircuitBreakerError)
        assert error.category == ErrorCategory.CIRCUIT_BREAKER
        assert error.context["open_reason"] == "No progress for 2 consecutive iterations"

    def test_circuit_open_without_reason(self):
        assert "no reason recorded" in str(CircuitOpenError())

    def test_hourly_limit_is_recoverable(self):
        error = HourlyLimitExceededError(100, 100, next_reset="2026-01-05T11:00:00+00:00")
        assert isinstance(error, RateLimitError)
        assert error.recoverable is True
        assert "100/100" in str(error)
        assert error.context["next_reset"] == "2026-01-05T11:00:00+00:00"

    def test_cooldown_active(self):
        error = CooldownActiveError("2026-01-05T15:00:00+00:00")
        assert error.category == ErrorCategory.RATE_LIMIT
        assert error.recoverable is True


class TestWorkerErrors:

    def test_worker_errors_default_recoverable(self):
        assert WorkerError("boom").recoverable is True
        assert WorkerReportError("bad", phase="GREEN").context["phase"] == "GREEN"

    def test_worker_error_can_be_unrecoverable(self):
        assert WorkerError("boom", recoverable=False).recoverable is False

    def test_provider_overloaded_is_worker_error(self):
        error = ProviderOverloadedError("529 overloaded", phase="RED")
        assert isinstance(error, WorkerError)
        assert error.error_code == "PROVIDER_OVERLOADED"


class TestConfigErrors:

    def test_invalid_config(self):
        error = InvalidConfigError("PRP_HOURLY_LIMIT", "abc", "must be an integer")
        assert isinstance(error, ConfigurationError)
        assert error.recoverable is False
        assert error.context["config_key"] == "PRP_HOURLY_LIMIT"
        assert error.context["value"] == "abc"


@pytest.mark.parametrize("error_cls,category", [
    (StateError, ErrorCategory.STATE),
    (CircuitBreakerError, ErrorCategory.CIRCUIT_BREAKER),
    (RateLimitError, ErrorCategory.RATE_LIMIT),
])
def test_categories(error_cls, category):
    error = error_cls("x")
    assert isinstance(error, PRPLoopError)
    assert error.category == category
