"""
Tests for session lifecycle rules: transitions, status changes, resume validation and reset.
"""

import pytest
from pydantic import ValidationError

from prp_loop.circuit_breaker import CircuitBreaker
from prp_loop.config import HistoryConfig, RateLimitConfig
from prp_loop.errors import (
    CircuitOpenError,
    InvalidTransitionError,
    TerminalSessionError,
)
from prp_loop.models import CircuitBreakerState, CircuitState, Phase, PHASE_ORDER, Session, SessionStatus
from prp_loop.rate_limiter import RateLimiter
from prp_loop.session_manager import SessionStateManager


@pytest.fixture
def manager(clock):
    return SessionStateManager(HistoryConfig(error_history_limit=3), clock)


@pytest.fixture
def session(manager):
    return manager.create("PRPs/feature.md")


def open_breaker_state() -> CircuitBreakerState:
    return CircuitBreakerState(state=CircuitState.OPEN, open_reason="No progress for 2 consecutive iterations")


class TestCreate:

    def test_fresh_session(self, session, clock):
        assert session.current_phase == Phase.RED
        assert session.current_iteration == 0
        assert session.status == SessionStatus.RUNNING
        assert session.phases_completed == []
        assert session.created_at == clock.now
        assert len(session.session_id) == 36

    def test_explicit_id(self, manager):
        assert manager.create("t", session_id="fixed").session_id == "fixed"


class TestTransition:

    def test_gate_closed_is_a_no_op(self, manager, session):
        assert manager.transition(session, can_exit=False) is False
        assert session.current_phase == Phase.RED
        assert session.transitions == []

    def test_transition_resets_iteration(self, manager, session):
        manager.increment_iteration(session)
        manager.increment_iteration(session)

        assert manager.transition(session, can_exit=True) is True

        assert session.current_phase == Phase.GREEN
        assert session.current_iteration == 0
        assert session.phases_completed == [Phase.RED]
        record = session.transitions[-1]
        assert record.from_phase == Phase.RED
        assert record.to_phase == Phase.GREEN
        assert record.iteration == 2
        assert record.forced is False

    def test_phases_are_never_skipped(self, manager, session):
        seen = [session.current_phase]
        while session.status != SessionStatus.COMPLETED:
            manager.transition(session, can_exit=True)
            if session.status != SessionStatus.COMPLETED:
                seen.append(session.current_phase)

        assert seen == PHASE_ORDER
        assert session.phases_completed == PHASE_ORDER
        assert session.completed_at is not None
        assert session.transitions[-1].to_phase is None

    def test_forced_transition_is_flagged(self, manager, session):
        manager.transition(session, can_exit=False, forced=True, reason="Tests supplied by hand")
        record = session.transitions[-1]
        assert record.forced is True
        assert record.reason == "Tests supplied by hand"
        assert session.current_phase == Phase.GREEN

    def test_terminal_session_is_immutable(self, manager, session):
        manager.abort(session, "stop")
        with pytest.raises(TerminalSessionError):
            manager.transition(session, can_exit=True)
        with pytest.raises(TerminalSessionError):
            manager.increment_iteration(session)
        with pytest.raises(TerminalSessionError):
            manager.set_status(session, SessionStatus.RUNNING)


class TestSessionModelInvariants:

    def test_out_of_order_phases_rejected(self):
        with pytest.raises(ValidationError):
            Session(session_id="s", target="t", phases_completed=[Phase.GREEN], current_phase=Phase.REFACTOR)

    def test_current_phase_in_completed_rejected(self):
        with pytest.raises(ValidationError):
            Session(session_id="s", target="t", phases_completed=[Phase.RED], current_phase=Phase.RED)

    def test_completed_requires_all_phases(self):
        with pytest.raises(ValidationError):
            Session(session_id="s", target="t", status=SessionStatus.COMPLETED)


class TestStatus:

    def test_pause_and_resume_keep_position(self, manager, session, clock):
        manager.increment_iteration(session)
        manager.pause(session, "Lunch")
        assert session.status == SessionStatus.PAUSED
        assert session.pause_reason == "Lunch"
        assert session.paused_at == clock.now

        clock.advance(minutes=30)
        manager.resume(session)

        assert session.status == SessionStatus.RUNNING
        assert session.pause_reason is None
        assert session.resumed_at == clock.now
        assert session.current_iteration == 1

    def test_resume_refused_while_breaker_open(self, manager, session):
        manager.pause(session, "x")
        with pytest.raises(CircuitOpenError):
            manager.resume(session, open_breaker_state())
        assert session.status == SessionStatus.PAUSED

    def test_resume_requires_paused(self, manager, session):
        with pytest.raises(InvalidTransitionError):
            manager.resume(session)

    def test_cannot_complete_by_status(self, manager, session):
        with pytest.raises(InvalidTransitionError):
            manager.set_status(session, SessionStatus.COMPLETED)

    def test_halt_records_reason(self, manager, session):
        manager.set_status(session, SessionStatus.HALTED, "Circuit breaker OPEN")
        assert session.halt_reason == "Circuit breaker OPEN"
        assert session.is_terminal


class TestResumeValidation:

    def test_valid(self, manager, session):
        assert manager.validate_for_resume(session, "PRPs/feature.md", CircuitBreakerState()) == (True, [])

    def test_every_reason_reported(self, manager, session):
        manager.abort(session, "operator")
        valid, reasons = manager.validate_for_resume(session, "other.md", open_breaker_state())

        assert valid is False
        assert len(reasons) == 3
        assert reasons[0].startswith("target mismatch")
        assert reasons[1] == "session halted: operator"
        assert reasons[2].startswith("circuit breaker OPEN")

    def test_open_breaker_always_invalid(self, manager, session):
        manager.pause(session, "x")
        valid, _ = manager.validate_for_resume(session, session.target, open_breaker_state())
        assert valid is False

    def test_completed_invalid(self, manager, session):
        for _ in PHASE_ORDER:
            manager.transition(session, can_exit=True)
        valid, reasons = manager.validate_for_resume(session, session.target)
        assert not valid
        assert reasons == ["session already completed"]


class TestErrorHistory:

    def test_bounded(self, manager, session):
        for i in range(5):
            manager.record_error(session, f"error {i}", f"hash{i}")

        assert [e.message for e in session.error_history] == ["error 2", "error 3", "error 4"]
        assert session.error_history[-1].phase == Phase.RED


class TestReset:

    def _open(self, clock):
        breaker = CircuitBreaker(clock=clock)
        breaker.record_tick(Phase.RED, False)
        breaker.record_tick(Phase.RED, False)
        breaker.record_tick(Phase.RED, False)
        assert breaker.is_open
        return breaker

    def test_reset_revives_halted_session(self, manager, session, clock):
        breaker = self._open(clock)
        limiter = RateLimiter(RateLimitConfig(hourly_limit=10), clock=clock)
        limiter.record_call()
        limiter.open_cooldown()
        manager.increment_iteration(session)
        manager.set_status(session, SessionStatus.HALTED, "Circuit breaker OPEN")

        manager.reset(session, breaker, limiter, "Reviewed")

        assert session.status == SessionStatus.RUNNING
        assert session.halt_reason is None
        assert session.current_iteration == 1
        assert breaker.current == CircuitState.CLOSED
        assert limiter.state.hourly.calls_made == 0
        assert limiter.state.cooldown.waiting is False

    def test_reset_rejects_completed(self, manager, session, clock):
        for _ in PHASE_ORDER:
            manager.transition(session, can_exit=True)
        with pytest.raises(TerminalSessionError):
            manager.reset(session, CircuitBreaker(clock=clock), RateLimiter(RateLimitConfig(hourly_limit=10), clock=clock))
