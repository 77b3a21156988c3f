"""
Circuit Breaker
===============

Three-state machine that halts a session which stopped making progress or
keeps reporting the same error.

    CLOSED --(no progress)--> HALF_OPEN --(threshold reached)--> OPEN
      ^                           |
      +-------(progress)----------+

OPEN is terminal until an explicit reset. Thresholds are a fixed per-phase
table and are not configurable at runtime.
"""

import hashlib
from datetime import datetime
from types import MappingProxyType
from typing import Callable, Mapping, NamedTuple, Optional

from prp_loop.errors import CircuitOpenError
from prp_loop.models import (
    BreakerHistoryEntry,
    CircuitBreakerState,
    CircuitState,
    MetricsSnapshot,
    Phase,
    utc_now,
)
from prp_loop.structured_logging import get_logger

logger = get_logger(__name__)


class Thresholds(NamedTuple):
    no_progress: int
    same_error: int


# GREEN strict, REFACTOR lenient
THRESHOLDS: Mapping[Phase, Thresholds] = MappingProxyType({
    Phase.RED: Thresholds(no_progress=3, same_error=5),
    Phase.GREEN: Thresholds(no_progress=2, same_error=3),
    Phase.REFACTOR: Thresholds(no_progress=5, same_error=5),
    Phase.DOCUMENT: Thresholds(no_progress=3, same_error=5),
    Phase.QA: Thresholds(no_progress=3, same_error=3),
})


def thresholds_for(phase: Phase) -> Thresholds:
    return THRESHOLDS[phase]


def warning_level(no_progress_threshold: int) -> int:
    """No-progress count at which the breaker goes HALF_OPEN."""
    return max(1, min(2, no_progress_threshold - 1))


def error_hash(message: str) -> str:
    """
    Content hash of an error message.

    Whitespace is collapsed so the same error reflowed differently still matches.
    """
    normalized = " ".join(message.split())
    return hashlib.md5(normalized.encode("utf-8")).hexdigest()


class CircuitBreaker:
    """
    Drives a CircuitBreakerState from per-tick progress and error reports.

    The state object is mutated in place so the caller can persist it
    directly after every tick.
    """

    def __init__(
        self,
        state: Optional[CircuitBreakerState] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.state = state or CircuitBreakerState()
        self.clock = clock

    @property
    def is_open(self) -> bool:
        return self.state.is_open

    @property
    def current(self) -> CircuitState:
        return self.state.state

    def _change(self, to_state: CircuitState, phase: Optional[Phase], reason: str, now: datetime) -> None:
        from_state = self.state.state
        if from_state == to_state:
            return
        self.state.state = to_state
        self.state.history.append(BreakerHistoryEntry(
            timestamp=now,
            from_state=from_state,
            to_state=to_state,
            phase=phase,
            reason=reason,
        ))

        if to_state == CircuitState.OPEN:
            logger.error(f"Circuit breaker OPEN: {reason}", extra={"from_state": from_state.value})
        elif to_state == CircuitState.HALF_OPEN:
            logger.warning(f"Circuit breaker HALF_OPEN: {reason}")
        else:
            logger.info(f"Circuit breaker CLOSED: {reason}", extra={"from_state": from_state.value})

    def _open(self, phase: Phase, reason: str, now: datetime) -> None:
        self.state.opened_at = now
        self.state.open_reason = reason
        self._change(CircuitState.OPEN, phase, reason, now)

    def record_tick(
        self,
        phase: Phase,
        progress_made: bool,
        error_message: Optional[str] = None,
        snapshot: Optional[MetricsSnapshot] = None,
        now: Optional[datetime] = None,
    ) -> CircuitState:
        """
        Update the breaker with one tick's outcome.

        Args:
            phase: Phase the tick ran in; selects the thresholds
            progress_made: Progress detector verdict
            error_message: Error reported by the worker, if any
            snapshot: Metrics of this tick, kept as last_progress_snapshot on progress
            now: Tick time

        Returns:
            The breaker state after the update

        Raises:
            CircuitOpenError: If the breaker is already OPEN
        """
        if self.is_open:
            raise CircuitOpenError(self.state.open_reason)

        now = now or self.clock()
        limits = thresholds_for(phase)

        # Error channel
        if error_message:
            digest = error_hash(error_message)
            if digest == self.state.last_error_hash:
                self.state.same_error_count += 1
            else:
                self.state.same_error_count = 1
                self.state.last_error_hash = digest
        else:
            self.state.same_error_count = 0
            self.state.last_error_hash = None

        if self.state.same_error_count >= limits.same_error:
            if not progress_made:
                self.state.no_progress_count += 1
            self._open(
                phase,
                f"Same error repeated {self.state.same_error_count} times in {phase.value} "
                f"(threshold {limits.same_error})",
                now,
            )
            return self.state.state

        # Progress channel
        if progress_made:
            self.state.no_progress_count = 0
            self.state.last_progress_snapshot = snapshot
            self._change(CircuitState.CLOSED, phase, f"Progress detected in {phase.value}", now)
            return self.state.state

        self.state.no_progress_count += 1
        count = self.state.no_progress_count

        if count >= limits.no_progress:
            self._open(
                phase,
                f"No progress for {count} consecutive iterations in {phase.value} "
                f"(threshold {limits.no_progress})",
                now,
            )
        elif count >= warning_level(limits.no_progress):
            self._change(
                CircuitState.HALF_OPEN,
                phase,
                f"No progress for {count} consecutive iterations in {phase.value}",
                now,
            )

        return self.state.state

    def on_phase_transition(self, from_phase: Phase, to_phase: Optional[Phase], now: Optional[datetime] = None) -> None:
        """Start the next phase with clean counters; its thresholds differ."""
        if self.is_open:
            raise CircuitOpenError(self.state.open_reason)

        now = now or self.clock()
        self.state.no_progress_count = 0
        self.state.same_error_count = 0
        self.state.last_error_hash = None
        self.state.last_progress_snapshot = None
        target = to_phase.value if to_phase else "completion"
        self._change(CircuitState.CLOSED, to_phase, f"Phase transition {from_phase.value} -> {target}", now)

    def reset(self, reason: str = "Manual reset", now: Optional[datetime] = None) -> None:
        """Return to CLOSED with counters zeroed and the open record and progress baseline cleared."""
        now = now or self.clock()
        self.state.no_progress_count = 0
        self.state.same_error_count = 0
        self.state.last_error_hash = None
        self.state.opened_at = None
        self.state.open_reason = None
        self.state.last_progress_snapshot = None
        self._change(CircuitState.CLOSED, None, reason, now)
        logger.info(f"Circuit breaker reset: {reason}")
