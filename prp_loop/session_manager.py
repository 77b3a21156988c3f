"""
Session State Manager
=====================

Owns the rules for mutating a Session: phase transitions in fixed order,
iteration counting, status changes, bounded error history, and the
validate-for-resume check used when a process restarts.

Completed and halted sessions are immutable; the only way back from
halted is a manual reset, which re-initializes the circuit breaker and
rate limiter together with the session status.
"""

from datetime import datetime
from typing import Callable, List, Optional, Tuple
from uuid import uuid4

from prp_loop.circuit_breaker import CircuitBreaker
from prp_loop.config import HistoryConfig
from prp_loop.errors import (
    CircuitOpenError,
    InvalidTransitionError,
    TerminalSessionError,
)
from prp_loop.models import (
    CircuitBreakerState,
    ErrorRecord,
    PHASE_ORDER,
    Session,
    SessionStatus,
    TransitionRecord,
    utc_now,
)
from prp_loop.rate_limiter import RateLimiter
from prp_loop.structured_logging import get_logger

logger = get_logger(__name__)


class SessionStateManager:
    """Applies transition and status rules to Session records."""

    def __init__(
        self,
        history: Optional[HistoryConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.history = history or HistoryConfig()
        self.clock = clock

    def _ensure_mutable(self, session: Session) -> None:
        if session.is_terminal:
            raise TerminalSessionError(session.session_id, session.status.value)

    def _touch(self, session: Session) -> datetime:
        now = self.clock()
        session.last_activity = now
        return now

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def create(self, target: str, session_id: Optional[str] = None) -> Session:
        """New running session at the first phase, iteration 0."""
        now = self.clock()
        session = Session(
            session_id=session_id or str(uuid4()),
            target=target,
            created_at=now,
            current_phase=PHASE_ORDER[0],
            current_iteration=0,
            status=SessionStatus.RUNNING,
            last_activity=now,
        )
        logger.info(f"Created session {session.session_id} for target {target}")
        return session

    def validate_for_resume(
        self,
        session: Session,
        target: str,
        breaker: Optional[CircuitBreakerState] = None,
    ) -> Tuple[bool, List[str]]:
        """
        Check whether a persisted session may be resumed.

        Each condition is checked independently so every reason is reported.

        Args:
            session: Persisted session
            target: Target the caller wants to run against
            breaker: Persisted breaker state paired with the session

        Returns:
            Tuple of (is_valid, reasons)
        """
        reasons: List[str] = []

        if session.target != target:
            reasons.append(f"target mismatch: session is for '{session.target}', requested '{target}'")

        if session.status == SessionStatus.COMPLETED:
            reasons.append("session already completed")
        elif session.status == SessionStatus.HALTED:
            reasons.append(f"session halted: {session.halt_reason or 'no reason recorded'}")

        if breaker is not None and breaker.is_open:
            reasons.append(f"circuit breaker OPEN: {breaker.open_reason or 'no reason recorded'}")

        if reasons:
            logger.warning(
                f"Session {session.session_id} is invalid for resume",
                extra={"reasons": reasons}
            )
        return len(reasons) == 0, reasons

    # =========================================================================
    # Phase and iteration
    # =========================================================================

    def transition(
        self,
        session: Session,
        can_exit: bool,
        forced: bool = False,
        reason: str = "",
    ) -> bool:
        """
        Exit the current phase if allowed.

        Args:
            session: Session to mutate
            can_exit: Dual-gate result for this tick
            forced: Skip-phase request bypassing the dual gate
            reason: Recorded with the transition

        Returns:
            True if the phase was exited (possibly completing the session)
        """
        self._ensure_mutable(session)
        if not can_exit and not forced:
            return False

        now = self._touch(session)
        from_phase = session.current_phase
        next_phase = from_phase.successor()

        session.phases_completed.append(from_phase)
        session.transitions.append(TransitionRecord(
            from_phase=from_phase,
            to_phase=next_phase,
            iteration=session.current_iteration,
            forced=forced,
            reason=reason or ("Forced skip" if forced else "Dual gate passed"),
            timestamp=now,
        ))

        if next_phase is None:
            session.status = SessionStatus.COMPLETED
            session.completed_at = now
            session.pause_reason = None
            logger.info(f"Session {session.session_id} completed after {from_phase.value}")
        else:
            session.current_phase = next_phase
            session.current_iteration = 0
            log = logger.warning if forced else logger.info
            log(
                f"Phase {from_phase.value} -> {next_phase.value}" + (" (forced)" if forced else ""),
                extra={"session": session.session_id}
            )
        return True

    def increment_iteration(self, session: Session) -> int:
        self._ensure_mutable(session)
        session.current_iteration += 1
        self._touch(session)
        return session.current_iteration

    # =========================================================================
    # Status
    # =========================================================================

    def set_status(self, session: Session, status: SessionStatus, reason: Optional[str] = None) -> None:
        """
        Change session status.

        Paused and halted keep phase, iteration and history for later inspection;
        completed is only reachable by exiting the last phase.

        Raises:
            TerminalSessionError: Session is already completed or halted
            InvalidTransitionError: Completion requested before the last phase exited
        """
        self._ensure_mutable(session)

        if status == SessionStatus.COMPLETED and len(session.phases_completed) != len(PHASE_ORDER):
            raise InvalidTransitionError(
                "Session can only complete by exiting the last phase",
                current=session.status.value,
                requested=status.value,
            )

        now = self._touch(session)
        previous = session.status
        session.status = status

        if status == SessionStatus.PAUSED:
            session.pause_reason = reason or "Paused"
            session.paused_at = now
        elif status == SessionStatus.RUNNING:
            session.pause_reason = None
            if previous == SessionStatus.PAUSED:
                session.resumed_at = now
        elif status == SessionStatus.HALTED:
            session.halt_reason = reason or "Halted"
        elif status == SessionStatus.COMPLETED:
            session.completed_at = now

        if previous != status:
            logger.info(
                f"Session {session.session_id} {previous.value} -> {status.value}",
                extra={"reason": reason}
            )

    def pause(self, session: Session, reason: str) -> None:
        self.set_status(session, SessionStatus.PAUSED, reason)

    def resume(self, session: Session, breaker: Optional[CircuitBreakerState] = None) -> None:
        """
        Paused -> running, leaving phase and iteration untouched.

        Raises:
            CircuitOpenError: Breaker is OPEN; reset first
            InvalidTransitionError: Session is not paused
        """
        if breaker is not None and breaker.is_open:
            raise CircuitOpenError(breaker.open_reason)
        self._ensure_mutable(session)
        if session.status != SessionStatus.PAUSED:
            raise InvalidTransitionError(
                f"Only a paused session can be resumed (status is {session.status.value})",
                current=session.status.value,
                requested=SessionStatus.RUNNING.value,
            )
        self.set_status(session, SessionStatus.RUNNING)

    def abort(self, session: Session, reason: str = "Aborted") -> None:
        self.set_status(session, SessionStatus.HALTED, reason)

    # =========================================================================
    # Errors
    # =========================================================================

    def record_error(self, session: Session, message: str, content_hash: str) -> ErrorRecord:
        """Append to error_history, dropping the oldest entries beyond the retention limit."""
        self._ensure_mutable(session)
        record = ErrorRecord(
            phase=session.current_phase,
            iteration=session.current_iteration,
            message=message,
            content_hash=content_hash,
            recorded_at=self._touch(session),
        )
        session.error_history.append(record)
        overflow = len(session.error_history) - self.history.error_history_limit
        if overflow > 0:
            del session.error_history[:overflow]
        return record

    # =========================================================================
    # Manual reset
    # =========================================================================

    def reset(
        self,
        session: Session,
        breaker: CircuitBreaker,
        rate_limiter: RateLimiter,
        reason: str = "Manual reset",
    ) -> None:
        """
        Re-initialize breaker and rate limiter together and return a halted
        session to running. Phase, iteration and history are kept.

        Raises:
            TerminalSessionError: Session is completed
        """
        if session.status == SessionStatus.COMPLETED:
            raise TerminalSessionError(session.session_id, session.status.value)

        now = self._touch(session)
        breaker.reset(reason, now=now)
        rate_limiter.reset(now=now)

        if session.status == SessionStatus.HALTED:
            session.halt_reason = None
            session.status = SessionStatus.RUNNING
            session.resumed_at = now
        logger.info(f"Session {session.session_id} reset: {reason}")
