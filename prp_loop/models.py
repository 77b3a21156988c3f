"""
Loop Data Models
================

Enums and pydantic models for the persisted loop state. Every record that
is written to the session directory is one of these models, so a malformed
file fails validation on load instead of being silently patched.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utc_now() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


# =============================================================================
# Enums
# =============================================================================

class Phase(str, Enum):
    """Ordered workflow phases."""
    RED = "RED"              # generate failing tests
    GREEN = "GREEN"          # implement until tests pass
    REFACTOR = "REFACTOR"    # improve with tests green
    DOCUMENT = "DOCUMENT"    # write docs and ADRs
    QA = "QA"                # validate and approve

    @property
    def position(self) -> int:
        return PHASE_ORDER.index(self)

    def successor(self) -> Optional['Phase']:
        """Next phase in the fixed ordering, or None after the last phase."""
        position = PHASE_ORDER.index(self)
        if position + 1 < len(PHASE_ORDER):
            return PHASE_ORDER[position + 1]
        return None


PHASE_ORDER: List[Phase] = [Phase.RED, Phase.GREEN, Phase.REFACTOR, Phase.DOCUMENT, Phase.QA]


class SessionStatus(str, Enum):
    """Session status values."""
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    HALTED = "halted"


TERMINAL_STATUSES = frozenset({SessionStatus.COMPLETED, SessionStatus.HALTED})


class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "CLOSED"
    HALF_OPEN = "HALF_OPEN"
    OPEN = "OPEN"


class TickDecision(str, Enum):
    """Outcome of one orchestrator tick."""
    CONTINUE = "CONTINUE"
    TRANSITION = "TRANSITION"
    HALT = "HALT"
    PAUSE = "PAUSE"
    COMPLETE = "COMPLETE"


class LimitDecision(str, Enum):
    """Explicit decision required when the hourly call limit is reached."""
    WAIT = "wait"
    OVERRIDE = "override"
    ABORT = "abort"


# =============================================================================
# Metrics
# =============================================================================

CounterValue = Union[bool, int, float]


def check_counter_names(counters: Dict[str, CounterValue]) -> Dict[str, CounterValue]:
    """Names become 'name: value' lines in the status log, so no colons or whitespace."""
    for name in counters:
        if not name or ":" in name or any(c.isspace() for c in name):
            raise ValueError(f"invalid counter name {name!r}: must be non-empty without ':' or whitespace")
    return counters


class MetricsSnapshot(BaseModel):
    """Phase-tagged, iteration-tagged counters reported by one worker invocation."""
    model_config = ConfigDict(frozen=True)

    phase: Phase
    iteration: int = Field(ge=0)
    counters: Dict[str, CounterValue] = Field(default_factory=dict)
    recorded_at: datetime = Field(default_factory=utc_now)

    @field_validator('counters')
    @classmethod
    def copy_counters(cls, v: Dict[str, CounterValue]) -> Dict[str, CounterValue]:
        """Detach from the caller's dict so later mutation can't leak in; names are checked."""
        return check_counter_names(dict(v))

    def get(self, name: str, default: CounterValue = 0) -> CounterValue:
        return self.counters.get(name, default)

    def number(self, name: str) -> float:
        """Counter as a number; booleans count as 0/1 and missing as 0."""
        value = self.counters.get(name, 0)
        if isinstance(value, bool):
            return 1 if value else 0
        return value

    def flag(self, name: str) -> bool:
        return bool(self.counters.get(name, False))


# =============================================================================
# Session
# =============================================================================

class ErrorRecord(BaseModel):
    """One reported worker error."""
    phase: Phase
    iteration: int = Field(ge=0)
    message: str
    content_hash: str
    recorded_at: datetime = Field(default_factory=utc_now)


class TransitionRecord(BaseModel):
    """One phase exit; forced exits came from skip-phase, not the dual gate."""
    from_phase: Phase
    to_phase: Optional[Phase] = None  # None when the run completed
    iteration: int = Field(ge=0)
    forced: bool = False
    reason: str = ""
    timestamp: datetime = Field(default_factory=utc_now)


class Session(BaseModel):
    """The authoritative record of one run against one target."""
    session_id: str
    target: str
    created_at: datetime = Field(default_factory=utc_now)
    current_phase: Phase = Phase.RED
    current_iteration: int = Field(default=0, ge=0)
    status: SessionStatus = SessionStatus.RUNNING
    halt_reason: Optional[str] = None
    pause_reason: Optional[str] = None
    paused_at: Optional[datetime] = None
    resumed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    phases_completed: List[Phase] = Field(default_factory=list)
    error_history: List[ErrorRecord] = Field(default_factory=list)
    transitions: List[TransitionRecord] = Field(default_factory=list)
    last_activity: datetime = Field(default_factory=utc_now)

    @model_validator(mode='after')
    def validate_phase_progression(self):
        """Completed phases form an ordered prefix and the current phase follows it."""
        expected = PHASE_ORDER[:len(self.phases_completed)]
        if self.phases_completed != expected:
            raise ValueError(
                f"phases_completed must be an ordered prefix of {[p.value for p in PHASE_ORDER]}, "
                f"got {[p.value for p in self.phases_completed]}"
            )

        if self.status == SessionStatus.COMPLETED:
            if len(self.phases_completed) != len(PHASE_ORDER):
                raise ValueError("completed session must have every phase in phases_completed")
            return self

        if self.current_phase in self.phases_completed:
            raise ValueError(
                f"current_phase {self.current_phase.value} is already in phases_completed"
            )
        if self.current_phase != PHASE_ORDER[len(self.phases_completed)]:
            raise ValueError(
                f"current_phase {self.current_phase.value} does not follow phases_completed"
            )
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


# =============================================================================
# Circuit breaker
# =============================================================================

class BreakerHistoryEntry(BaseModel):
    """One circuit breaker state change."""
    timestamp: datetime = Field(default_factory=utc_now)
    from_state: CircuitState
    to_state: CircuitState
    phase: Optional[Phase] = None
    reason: str


class CircuitBreakerState(BaseModel):
    """Persisted circuit breaker sub-state of a session."""
    state: CircuitState = CircuitState.CLOSED
    no_progress_count: int = Field(default=0, ge=0)
    same_error_count: int = Field(default=0, ge=0)
    last_error_hash: Optional[str] = None
    opened_at: Optional[datetime] = None
    open_reason: Optional[str] = None
    last_progress_snapshot: Optional[MetricsSnapshot] = None
    history: List[BreakerHistoryEntry] = Field(default_factory=list)

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN


# =============================================================================
# Rate limit
# =============================================================================

class HourlyWindow(BaseModel):
    calls_made: int = Field(default=0, ge=0)
    limit: int = Field(default=100, gt=0)
    window_start: datetime = Field(default_factory=utc_now)
    next_reset: datetime


class CooldownWindow(BaseModel):
    detected: bool = False
    detected_at: Optional[datetime] = None
    resume_at: Optional[datetime] = None
    waiting: bool = False
    reason: Optional[str] = None

    @model_validator(mode='after')
    def validate_waiting(self):
        if self.waiting and self.resume_at is None:
            raise ValueError("cooldown waiting requires resume_at")
        return self


class RateLimitState(BaseModel):
    """Persisted rate limit sub-state of a session."""
    hourly: HourlyWindow
    cooldown: CooldownWindow = Field(default_factory=CooldownWindow)
    paused: bool = False
    pause_reason: Optional[str] = None
    override_active: bool = False  # set by an override decision, cleared on window reset
