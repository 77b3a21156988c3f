"""
Loop Control Actions
====================

External actions on a persisted session, used by the control script and
the dashboard. Each action loads the session directory, applies one rule
through SessionStateManager, and writes everything back atomically. A
running orchestrator sees the change at the top of its next tick.

Actions:
- reset: clear an OPEN breaker and the rate limit state; revive a halted session
- skip_phase: force the current phase to exit, flagged as forced in history
- abort: halt the session
- pause / resume: toggle running <-> paused without touching phase or iteration
- override_rate_limit: continue past the hourly limit until the window resets
"""

from datetime import datetime
from typing import Any, Callable, Dict, Optional

from prp_loop.circuit_breaker import CircuitBreaker
from prp_loop.config import Config
from prp_loop.errors import CircuitOpenError, CooldownActiveError, HourlyLimitExceededError
from prp_loop.models import SessionStatus, utc_now
from prp_loop.progress import progress_percent
from prp_loop.rate_limiter import RateLimitOutcome, RateLimiter
from prp_loop.session_manager import SessionStateManager
from prp_loop.state_store import SessionBundle, StateStore
from prp_loop.structured_logging import get_logger

logger = get_logger(__name__)


class LoopControls:
    """Applies control actions to sessions in one state store."""

    def __init__(
        self,
        config: Optional[Config] = None,
        store: Optional[StateStore] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config or Config.load_default()
        self.store = store or StateStore(self.config.storage.session_root)
        self.clock = clock
        self.sessions = SessionStateManager(self.config.history, clock)

    def _load(self, session_id: str):
        bundle = self.store.load(session_id)
        breaker = CircuitBreaker(bundle.breaker, clock=self.clock)
        rate_limiter = RateLimiter(self.config.rate_limit, bundle.rate_limit, clock=self.clock)
        return bundle, breaker, rate_limiter

    def _save(self, bundle: SessionBundle, breaker: CircuitBreaker, rate_limiter: RateLimiter) -> None:
        bundle.breaker = breaker.state
        bundle.rate_limit = rate_limiter.state
        self.store.save(bundle)

    def status(self, session_id: str) -> Dict[str, Any]:
        """Summary of the decision state of one session."""
        bundle = self.store.load(session_id)
        session = bundle.session
        latest = bundle.metrics.latest(session.current_phase)
        rate_limiter = RateLimiter(self.config.rate_limit, bundle.rate_limit, clock=self.clock)
        now = self.clock()
        return {
            "session_id": session.session_id,
            "target": session.target,
            "status": session.status.value,
            "phase": session.current_phase.value,
            "iteration": session.current_iteration,
            "phases_completed": [p.value for p in session.phases_completed],
            "halt_reason": session.halt_reason,
            "pause_reason": session.pause_reason,
            "progress_percent": progress_percent(latest),
            "last_activity": session.last_activity.isoformat(),
            "circuit_breaker": {
                "state": bundle.breaker.state.value,
                "no_progress_count": bundle.breaker.no_progress_count,
                "same_error_count": bundle.breaker.same_error_count,
                "open_reason": bundle.breaker.open_reason,
            },
            "rate_limit": {
                "calls_made": bundle.rate_limit.hourly.calls_made,
                "limit": bundle.rate_limit.hourly.limit,
                "next_reset": bundle.rate_limit.hourly.next_reset.isoformat(),
                "reset_in_seconds": rate_limiter.seconds_until_reset(now),
                "cooldown_waiting": bundle.rate_limit.cooldown.waiting,
                "cooldown_remaining_seconds": rate_limiter.seconds_until_cooldown_ends(now),
                "override_active": bundle.rate_limit.override_active,
            },
            "dual_gate": self.store.load_dual_gate(session_id),
        }

    def reset(self, session_id: str, reason: str = "Manual reset") -> Dict[str, Any]:
        """
        Re-initialize breaker and rate limiter as a unit.

        Raises:
            TerminalSessionError: Session is completed
        """
        bundle, breaker, rate_limiter = self._load(session_id)
        self.sessions.reset(bundle.session, breaker, rate_limiter, reason)
        self._save(bundle, breaker, rate_limiter)
        return self.status(session_id)

    def skip_phase(self, session_id: str, reason: str = "Skipped by operator") -> Dict[str, Any]:
        """
        Force the current phase to exit without the dual gate.

        Raises:
            TerminalSessionError: Session is completed or halted
            CircuitOpenError: Breaker is OPEN; reset first
        """
        bundle, breaker, rate_limiter = self._load(session_id)
        if breaker.is_open:
            raise CircuitOpenError(bundle.breaker.open_reason)
        session = bundle.session
        from_phase = session.current_phase
        self.sessions.transition(session, can_exit=False, forced=True, reason=reason)
        next_phase = None if session.status == SessionStatus.COMPLETED else session.current_phase
        breaker.on_phase_transition(from_phase, next_phase)
        self._save(bundle, breaker, rate_limiter)
        return self.status(session_id)

    def abort(self, session_id: str, reason: str = "Aborted by operator") -> Dict[str, Any]:
        bundle, breaker, rate_limiter = self._load(session_id)
        self.sessions.abort(bundle.session, reason)
        self._save(bundle, breaker, rate_limiter)
        return self.status(session_id)

    def pause(self, session_id: str, reason: str = "Paused by operator") -> Dict[str, Any]:
        bundle, breaker, rate_limiter = self._load(session_id)
        self.sessions.pause(bundle.session, reason)
        self._save(bundle, breaker, rate_limiter)
        return self.status(session_id)

    def resume(self, session_id: str) -> Dict[str, Any]:
        """
        Raises:
            CircuitOpenError: Breaker is OPEN; reset first
            InvalidTransitionError: Session is not paused
            HourlyLimitExceededError: Hourly limit still reached; wait for the reset or override
        """
        bundle, breaker, rate_limiter = self._load(session_id)
        self.sessions.resume(bundle.session, bundle.breaker)
        if rate_limiter.check(self.clock()).outcome == RateLimitOutcome.HOURLY_LIMIT:
            hourly = rate_limiter.state.hourly
            raise HourlyLimitExceededError(
                hourly.calls_made, hourly.limit, next_reset=hourly.next_reset.isoformat()
            )
        self._save(bundle, breaker, rate_limiter)
        return self.status(session_id)

    def override_rate_limit(self, session_id: str) -> Dict[str, Any]:
        """
        Override the hourly limit and resume a session paused by it.

        Raises:
            CooldownActiveError: A provider cooldown is running; the override would not apply to it
        """
        bundle, breaker, rate_limiter = self._load(session_id)
        now = self.clock()
        rate_limiter.refresh(now)
        cooldown = rate_limiter.state.cooldown
        if cooldown.waiting:
            raise CooldownActiveError(cooldown.resume_at.isoformat())
        was_limited = rate_limiter.state.paused
        rate_limiter.override(now)
        if was_limited and bundle.session.status == SessionStatus.PAUSED:
            self.sessions.resume(bundle.session, bundle.breaker)
        self._save(bundle, breaker, rate_limiter)
        return self.status(session_id)
