"""
Call Rate Limiting for the PRP loop
===================================

Two independent channels gate whether the next phase worker may run:

- Provider cooldown: opened when a worker reports the provider is
  overloaded; the loop waits it out and it clears itself at resume_at.
- Hourly budget: a fixed window of calls; reaching the limit pauses the
  loop until someone decides to wait, override, or abort.

Windows are wall-clock deadlines stored in RateLimitState and checked
lazily, so a session resumed hours later sees the right values.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from prp_loop.config import RateLimitConfig
from prp_loop.models import CooldownWindow, HourlyWindow, RateLimitState, utc_now
from prp_loop.structured_logging import get_logger

logger = get_logger(__name__)


class RateLimitOutcome(str, Enum):
    ALLOWED = "allowed"
    COOLDOWN = "cooldown"
    HOURLY_LIMIT = "hourly_limit"


@dataclass
class RateLimitDecision:
    """Whether a worker invocation may happen now."""
    outcome: RateLimitOutcome
    retry_after_seconds: int = 0
    reason: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.outcome == RateLimitOutcome.ALLOWED

    def to_dict(self):
        return {
            "outcome": self.outcome.value,
            "allowed": self.allowed,
            "retry_after_seconds": self.retry_after_seconds,
            "reason": self.reason,
        }


def initial_state(config: RateLimitConfig, now: datetime) -> RateLimitState:
    return RateLimitState(
        hourly=HourlyWindow(
            calls_made=0,
            limit=config.hourly_limit,
            window_start=now,
            next_reset=now + timedelta(minutes=config.window_minutes),
        ),
        cooldown=CooldownWindow(),
    )


def _seconds_until(deadline: datetime, now: datetime) -> int:
    return max(0, int((deadline - now).total_seconds() + 0.999))


class RateLimiter:
    """
    Hourly call budget plus provider cooldown over a persisted RateLimitState.

    All time-dependent methods take `now` so that decisions depend only on
    stored timestamps.
    """

    def __init__(
        self,
        config: RateLimitConfig,
        state: Optional[RateLimitState] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config
        self.clock = clock
        self.state = state or initial_state(config, clock())
        # Startup configuration wins over the persisted ceiling
        self.state.hourly.limit = config.hourly_limit

    def refresh(self, now: Optional[datetime] = None) -> None:
        """Apply expired deadlines: reset the hourly window, end a finished cooldown."""
        now = now or self.clock()
        hourly = self.state.hourly

        if now >= hourly.next_reset:
            logger.info(
                f"Hourly window reset ({hourly.calls_made}/{hourly.limit} calls used)",
                extra={"window_start": hourly.window_start.isoformat()}
            )
            hourly.calls_made = 0
            hourly.window_start = now
            hourly.next_reset = now + timedelta(minutes=self.config.window_minutes)
            self.state.override_active = False
            if self.state.paused:
                self.state.paused = False
                self.state.pause_reason = None

        cooldown = self.state.cooldown
        if cooldown.waiting and cooldown.resume_at is not None and now >= cooldown.resume_at:
            cooldown.waiting = False
            logger.info(f"Provider cooldown ended at {cooldown.resume_at.isoformat()}")

    def check(self, now: Optional[datetime] = None) -> RateLimitDecision:
        """
        Decide whether the next worker invocation may proceed.

        Returns:
            RateLimitDecision; COOLDOWN must be waited out, HOURLY_LIMIT needs
            an explicit wait/override/abort decision
        """
        now = now or self.clock()
        self.refresh(now)

        cooldown = self.state.cooldown
        if cooldown.waiting:
            wait = _seconds_until(cooldown.resume_at, now)
            return RateLimitDecision(
                outcome=RateLimitOutcome.COOLDOWN,
                retry_after_seconds=wait,
                reason=f"Provider cooldown active until {cooldown.resume_at.isoformat()}",
            )

        hourly = self.state.hourly
        if hourly.calls_made >= hourly.limit and not self.state.override_active:
            reason = (
                f"Hourly call limit reached ({hourly.calls_made}/{hourly.limit}); "
                f"window resets at {hourly.next_reset.isoformat()}"
            )
            if not self.state.paused:
                logger.warning(reason)
            self.state.paused = True
            self.state.pause_reason = reason
            return RateLimitDecision(
                outcome=RateLimitOutcome.HOURLY_LIMIT,
                retry_after_seconds=_seconds_until(hourly.next_reset, now),
                reason=reason,
            )

        return RateLimitDecision(outcome=RateLimitOutcome.ALLOWED)

    def record_call(self, now: Optional[datetime] = None) -> int:
        """Count one completed worker invocation, successful or not."""
        now = now or self.clock()
        self.refresh(now)
        self.state.hourly.calls_made += 1
        return self.state.hourly.calls_made

    def open_cooldown(self, now: Optional[datetime] = None, reason: str = "Provider overloaded") -> None:
        """Start a fixed-length provider cooldown beginning now."""
        now = now or self.clock()
        resume_at = now + timedelta(minutes=self.config.cooldown_minutes)
        self.state.cooldown = CooldownWindow(
            detected=True,
            detected_at=now,
            resume_at=resume_at,
            waiting=True,
            reason=reason,
        )
        logger.warning(f"{reason}: cooldown until {resume_at.isoformat()}")

    def override(self, now: Optional[datetime] = None) -> None:
        """Allow calls past the hourly limit until the window resets."""
        now = now or self.clock()
        self.refresh(now)
        self.state.override_active = True
        self.state.paused = False
        self.state.pause_reason = None
        logger.warning(
            f"Hourly limit overridden at {self.state.hourly.calls_made}/{self.state.hourly.limit} calls"
        )

    def reset(self, now: Optional[datetime] = None) -> None:
        """Fresh window and no cooldown."""
        now = now or self.clock()
        self.state = initial_state(self.config, now)
        logger.info("Rate limit state reset")

    def seconds_until_reset(self, now: Optional[datetime] = None) -> int:
        now = now or self.clock()
        return _seconds_until(self.state.hourly.next_reset, now)

    def seconds_until_cooldown_ends(self, now: Optional[datetime] = None) -> int:
        now = now or self.clock()
        cooldown = self.state.cooldown
        if not cooldown.waiting or cooldown.resume_at is None:
            return 0
        return _seconds_until(cooldown.resume_at, now)
