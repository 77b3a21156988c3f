"""
Loop Orchestrator
=================

Top-level driver of one session. Each tick:

1. Reload the session from disk (external pause/abort/reset/skip are seen here)
2. Ask the rate limiter for permission (wait out a cooldown, or pause at the hourly limit)
3. HALT if the circuit breaker is OPEN
4. Invoke the phase worker, then re-read the session; if it was changed
   externally meanwhile, the worker result is discarded
5. Record metrics, detect progress, update the breaker, evaluate the dual gate
6. Transition or increment the iteration
7. Persist everything and append a status block

States: RUNNING -> {PAUSED, HALTED, COMPLETED}. Stop and abort requests
are honoured between steps, never in the middle of a state mutation, and
always leave a persisted PAUSED or HALTED session behind.
"""

import asyncio
import inspect
import signal
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Union
from uuid import uuid4

from prp_loop import gates
from prp_loop.circuit_breaker import CircuitBreaker, error_hash
from prp_loop.config import Config
from prp_loop.errors import (
    ProviderOverloadedError,
    SessionNotFoundError,
    StateCorruptionError,
    WorkerError,
)
from prp_loop.gates import DualGateEvaluation
from prp_loop.metrics import MetricsStore
from prp_loop.models import (
    CircuitBreakerState,
    LimitDecision,
    MetricsSnapshot,
    Phase,
    Session,
    SessionStatus,
    TickDecision,
    utc_now,
)
from prp_loop.progress import detect_progress, progress_percent
from prp_loop.rate_limiter import RateLimitDecision, RateLimitOutcome, RateLimiter, initial_state
from prp_loop.session_manager import SessionStateManager
from prp_loop.state_store import SessionBundle, StateStore
from prp_loop.status_log import StatusReport, build_recommendation
from prp_loop.structured_logging import PerformanceLogger, clear_tick_context, get_logger, set_tick_context
from prp_loop.worker import IPhaseWorker, WorkerContext, WorkerReport

logger = get_logger(__name__)


LimitHandler = Callable[[RateLimitDecision, Session], Union[LimitDecision, Awaitable[LimitDecision]]]


@dataclass
class TickResult:
    """Outcome of one tick."""
    decision: TickDecision
    phase: Phase
    iteration: int
    reason: Optional[str] = None
    progress_made: bool = False
    evaluation: Optional[DualGateEvaluation] = None
    report: Optional[WorkerReport] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "decision": self.decision.value,
            "phase": self.phase.value,
            "iteration": self.iteration,
            "reason": self.reason,
            "progress_made": self.progress_made,
            "evaluation": self.evaluation.to_dict() if self.evaluation else None,
        }


class LoopOrchestrator:
    """
    Runs phase workers for one session until it completes, halts or pauses.

    Usage:
        orchestrator = LoopOrchestrator(worker, config)
        orchestrator.start("PRPs/feature.md")
        result = await orchestrator.run()
    """

    def __init__(
        self,
        worker: IPhaseWorker,
        config: Optional[Config] = None,
        store: Optional[StateStore] = None,
        clock: Callable[[], datetime] = utc_now,
        limit_handler: Optional[LimitHandler] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        """
        Args:
            worker: Phase worker to invoke each tick
            config: Loop configuration (defaults to Config.load_default())
            store: State store (defaults to one at config.storage.session_dir)
            clock: Source of the current time
            limit_handler: Decides wait/override/abort at the hourly limit; without one the loop pauses
            sleep: Replaces the abortable wall-clock wait, mainly for tests
        """
        self.worker = worker
        self.config = config or Config.load_default()
        self.store = store or StateStore(self.config.storage.session_root)
        self.clock = clock
        self.limit_handler = limit_handler
        self.sleep = sleep
        self.sessions = SessionStateManager(self.config.history, clock)

        self.session_id: Optional[str] = None
        self.bundle: Optional[SessionBundle] = None
        self.breaker: Optional[CircuitBreaker] = None
        self.rate_limiter: Optional[RateLimiter] = None

        # JSON dumps of session, breaker and rate limit as last read from or written to disk
        self._persisted: Optional[Tuple[Dict[str, Any], Dict[str, Any], Dict[str, Any]]] = None

        self.stop_requested = False
        self.abort_requested = False
        self.abort_reason = "Aborted"
        # Created inside _wait so it belongs to the loop that is waiting
        self._wake: Optional[asyncio.Event] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._original_sigint = None
        self._original_sigterm = None

    # =========================================================================
    # Session setup
    # =========================================================================

    def _attach(self, bundle: SessionBundle) -> None:
        self.bundle = bundle
        self.session_id = bundle.session.session_id
        self.breaker = CircuitBreaker(bundle.breaker, clock=self.clock)
        self.rate_limiter = RateLimiter(self.config.rate_limit, bundle.rate_limit, clock=self.clock)
        # Keep the bundle pointing at the live sub-state objects
        bundle.rate_limit = self.rate_limiter.state

    @staticmethod
    def _fingerprint(bundle: SessionBundle) -> Tuple[Dict[str, Any], Dict[str, Any], Dict[str, Any]]:
        return (
            bundle.session.model_dump(mode='json'),
            bundle.breaker.model_dump(mode='json'),
            bundle.rate_limit.model_dump(mode='json'),
        )

    def _save(self, evaluation: Optional[DualGateEvaluation] = None) -> None:
        self.store.save(self.bundle, evaluation)
        self._persisted = self._fingerprint(self.bundle)

    def _create_fresh(self, target: str) -> Session:
        session = self.sessions.create(target)
        bundle = SessionBundle(
            session=session,
            breaker=CircuitBreakerState(),
            rate_limit=initial_state(self.config.rate_limit, self.clock()),
            metrics=MetricsStore(session.session_id),
        )
        self._attach(bundle)
        self._save()
        return session

    def start(self, target: str, session_id: Optional[str] = None) -> Session:
        """
        Attach to a resumable session for `target` or create a fresh one.

        The stored session (the given id, or the most recently active one for
        the target) is resumed only if it passes validate-for-resume and all of
        its records load cleanly; otherwise a new session is created and the
        old one is left untouched on disk. Stop and abort requests left over
        from an earlier run are cleared.
        """
        self.stop_requested = False
        self.abort_requested = False
        self.abort_reason = "Aborted"

        candidate = session_id or self.store.find_session_for_target(target)
        if candidate is None:
            return self._create_fresh(target)

        try:
            bundle = self.store.load(candidate)
        except SessionNotFoundError:
            logger.warning(f"Session {candidate} not found, starting a fresh session")
            return self._create_fresh(target)
        except StateCorruptionError as e:
            logger.warning(f"Session {candidate} is corrupted, starting a fresh session: {e}")
            return self._create_fresh(target)

        valid, reasons = self.sessions.validate_for_resume(bundle.session, target, bundle.breaker)
        if not valid:
            logger.warning(
                f"Not resuming session {candidate}: {'; '.join(reasons)}. Starting a fresh session"
            )
            return self._create_fresh(target)

        self._attach(bundle)
        session = bundle.session
        if session.status == SessionStatus.PAUSED:
            self.sessions.resume(session, bundle.breaker)
        logger.info(
            f"Resuming session {session.session_id} at {session.current_phase.value} "
            f"iteration {session.current_iteration}"
        )
        self._save()
        return session

    def _reload(self) -> SessionBundle:
        """Disk is authoritative; pick up control actions taken by other processes."""
        if self.session_id is None:
            raise RuntimeError("No session attached; call start() first")
        try:
            bundle = self.store.load(self.session_id)
        except StateCorruptionError as e:
            logger.error(f"Session {self.session_id} became unreadable: {e}")
            raise
        # Before _attach: the rate limiter applies the configured limit in place
        self._persisted = self._fingerprint(bundle)
        self._attach(bundle)
        return bundle

    def _check_external(self) -> bool:
        """
        Compare disk with what this orchestrator last read or wrote.

        A rate limit change on its own (an override) is adopted in place.
        Any change to the session or breaker reloads the whole bundle.

        Returns:
            True if the bundle was reloaded and in-flight work must be discarded
        """
        persisted_session, persisted_breaker, persisted_rate_limit = self._persisted
        session = self.store.load_session(self.session_id)
        breaker = self.store.load_breaker(self.session_id)
        if (session.model_dump(mode='json') != persisted_session
                or breaker.model_dump(mode='json') != persisted_breaker):
            logger.warning(
                f"Session {self.session_id} changed externally "
                f"(status {session.status.value}, phase {session.current_phase.value}); reloading"
            )
            self._reload()
            return True

        rate_limit = self.store.load_rate_limit(self.session_id)
        disk_rate_limit = rate_limit.model_dump(mode='json')
        if disk_rate_limit != persisted_rate_limit:
            logger.info("Rate limit state changed externally; adopting it")
            self.rate_limiter = RateLimiter(self.config.rate_limit, rate_limit, clock=self.clock)
            self.bundle.rate_limit = self.rate_limiter.state
            self._persisted = (persisted_session, persisted_breaker, disk_rate_limit)
        return False

    # =========================================================================
    # Stop / abort
    # =========================================================================

    def _wake_waiters(self) -> None:
        wake = self._wake
        if wake is None:
            return
        if self._loop is not None and self._loop.is_running():
            self._loop.call_soon_threadsafe(wake.set)
        else:
            wake.set()

    def request_stop(self) -> None:
        """Pause at the next safe checkpoint."""
        self.stop_requested = True
        logger.info("Stop requested; session will pause at the next checkpoint")
        self._wake_waiters()

    def request_abort(self, reason: str = "Aborted") -> None:
        """Halt at the next safe checkpoint; also cancels cooldown and limit waits."""
        self.abort_requested = True
        self.abort_reason = reason
        logger.warning(f"Abort requested: {reason}")
        self._wake_waiters()

    def setup_signal_handlers(self) -> None:
        """First SIGINT/SIGTERM pauses gracefully, a second one aborts."""
        self._original_sigint = signal.signal(signal.SIGINT, self._handle_signal)
        self._original_sigterm = signal.signal(signal.SIGTERM, self._handle_signal)

    def restore_signal_handlers(self) -> None:
        if self._original_sigint is not None:
            signal.signal(signal.SIGINT, self._original_sigint)
        if self._original_sigterm is not None:
            signal.signal(signal.SIGTERM, self._original_sigterm)

    def _handle_signal(self, signum, frame):
        signal_name = "SIGTERM" if signum == signal.SIGTERM else "SIGINT"
        if self.stop_requested:
            self.request_abort(f"Aborted by second {signal_name}")
        else:
            logger.info(f"Received {signal_name}, pausing after the current step")
            self.request_stop()

    async def _wait(self, seconds: float) -> bool:
        """Wait up to `seconds`; True if interrupted by a stop or abort request."""
        if self.abort_requested or self.stop_requested:
            return True
        if self.sleep is not None:
            await self.sleep(seconds)
            return self.abort_requested or self.stop_requested

        self._loop = asyncio.get_running_loop()
        self._wake = asyncio.Event()
        try:
            # A request that arrived before the event existed found nothing to set
            if not (self.abort_requested or self.stop_requested):
                await asyncio.wait_for(self._wake.wait(), timeout=max(seconds, 0))
        except asyncio.TimeoutError:
            pass
        finally:
            self._wake = None
        return self.abort_requested or self.stop_requested

    # =========================================================================
    # Tick
    # =========================================================================

    def _finish(
        self,
        decision: TickDecision,
        reason: Optional[str] = None,
        evaluation: Optional[DualGateEvaluation] = None,
        snapshot: Optional[MetricsSnapshot] = None,
        report: Optional[WorkerReport] = None,
        progress_made: bool = False,
        phase: Optional[Phase] = None,
        iteration: Optional[int] = None,
    ) -> TickResult:
        """Persist the bundle, append the status block and build the result."""
        bundle = self.bundle
        session = bundle.session
        phase = phase or session.current_phase
        iteration = session.current_iteration if iteration is None else iteration
        if snapshot is None:
            snapshot = bundle.metrics.latest(phase)

        self._save(evaluation)

        breaker = bundle.breaker
        status = StatusReport(
            timestamp=self.clock().isoformat(),
            session_id=session.session_id,
            phase=phase.value,
            status=session.status.value,
            iteration=iteration,
            progress_percent=progress_percent(snapshot) if snapshot and snapshot.phase == phase else 0,
            metrics=dict(snapshot.counters) if snapshot else {},
            breaker_state=breaker.state.value,
            no_progress_count=breaker.no_progress_count,
            same_error_count=breaker.same_error_count,
            gate_1=evaluation.gate_1 if evaluation else False,
            gate_2=evaluation.gate_2 if evaluation else False,
            can_exit=evaluation.can_exit if evaluation else False,
            decision=decision.value,
            reason=reason,
            exit_signal=report.exit_signal if report else False,
            recommendation=build_recommendation(decision, phase, breaker, evaluation, snapshot, reason),
        )
        self.store.append_status(session.session_id, status.to_block())

        log = logger.info if decision in (TickDecision.CONTINUE, TickDecision.TRANSITION, TickDecision.COMPLETE) else logger.warning
        log(
            f"Tick {decision.value}" + (f": {reason}" if reason else ""),
            extra={"progress_made": progress_made, "breaker": breaker.state.value}
        )
        return TickResult(
            decision=decision,
            phase=phase,
            iteration=iteration,
            reason=reason,
            progress_made=progress_made,
            evaluation=evaluation,
            report=report,
        )

    def _halt(self, reason: str) -> TickResult:
        self.sessions.set_status(self.bundle.session, SessionStatus.HALTED, reason)
        return self._finish(TickDecision.HALT, reason)

    def _pause(self, reason: str) -> TickResult:
        self.sessions.set_status(self.bundle.session, SessionStatus.PAUSED, reason)
        return self._finish(TickDecision.PAUSE, reason)

    def _status_result(self, session: Session) -> Optional[TickResult]:
        """End the tick if the session is no longer RUNNING."""
        if session.status == SessionStatus.COMPLETED:
            return self._finish(TickDecision.COMPLETE, "Session already completed")
        if session.status == SessionStatus.HALTED:
            return self._finish(TickDecision.HALT, session.halt_reason)
        if session.status == SessionStatus.PAUSED:
            return self._finish(TickDecision.PAUSE, session.pause_reason)
        return None

    def _interrupted(self) -> Optional[TickResult]:
        """Apply a pending abort or stop request."""
        if self.abort_requested:
            return self._halt(self.abort_reason)
        if self.stop_requested:
            return self._pause("Graceful shutdown")
        return None

    async def _decide_limit(self, decision: RateLimitDecision) -> Optional[LimitDecision]:
        if self.limit_handler is None:
            return None
        choice = self.limit_handler(decision, self.bundle.session)
        if inspect.isawaitable(choice):
            choice = await choice
        return LimitDecision(choice)

    async def _acquire_permission(self) -> Optional[TickResult]:
        """Block on cooldowns and resolve hourly limits. Returns a result if the tick must end."""
        while True:
            decision = self.rate_limiter.check(self.clock())

            if decision.outcome == RateLimitOutcome.ALLOWED:
                return None

            if decision.outcome == RateLimitOutcome.COOLDOWN:
                logger.info(f"{decision.reason}; waiting {decision.retry_after_seconds}s")
                # Persist the waiting flag so observers see the cooldown
                self._save()
                if await self._wait(decision.retry_after_seconds):
                    return self._interrupted()
                if self._check_external():
                    ended = self._status_result(self.bundle.session)
                    if ended:
                        return ended
                continue

            choice = await self._decide_limit(decision)
            if choice is None:
                return self._pause(decision.reason)

            logger.info(f"Hourly limit decision: {choice.value}")
            if choice == LimitDecision.ABORT:
                return self._halt(f"Aborted at hourly limit: {decision.reason}")
            if choice == LimitDecision.OVERRIDE:
                self.rate_limiter.override(self.clock())
                continue
            # WAIT
            self._save()
            if await self._wait(decision.retry_after_seconds):
                return self._interrupted()
            if self._check_external():
                ended = self._status_result(self.bundle.session)
                if ended:
                    return ended

    async def tick(self) -> TickResult:
        """Run one orchestration step. See the module docstring for the order."""
        bundle = self._reload()
        session = bundle.session
        set_tick_context(
            session.session_id,
            session.current_phase.value,
            session.current_iteration,
            correlation_id=uuid4().hex[:8],
        )

        # Status set from outside (dashboard, control script) or earlier ticks
        ended = self._status_result(session)
        if ended:
            return ended

        interrupted = self._interrupted()
        if interrupted:
            return interrupted

        # Rate limiter permission
        blocked = await self._acquire_permission()
        if blocked:
            return blocked
        # Waits may have reloaded the bundle
        bundle = self.bundle
        session = bundle.session

        # Circuit breaker
        if self.breaker.is_open:
            return self._halt(f"Circuit breaker OPEN: {bundle.breaker.open_reason}")

        # Worker
        phase = session.current_phase
        iteration = session.current_iteration
        prior = bundle.metrics.latest(phase)
        context = WorkerContext(
            phase=phase,
            iteration=iteration,
            session_id=session.session_id,
            prior_metrics=dict(prior.counters) if prior else None,
        )

        report: Optional[WorkerReport] = None
        error_message: Optional[str] = None
        overloaded = False
        try:
            with PerformanceLogger("worker_invoke", phase=phase.value, iteration=iteration):
                raw = await self.worker.invoke(context)
                report = WorkerReport.from_raw(raw, phase=phase)
        except ProviderOverloadedError as e:
            error_message = str(e)
            overloaded = True
        except WorkerError as e:
            error_message = str(e)
        except Exception as e:
            # Workers are opaque; any failure is a recorded tick error
            logger.error(f"Worker raised {type(e).__name__}: {e}", exc_info=True)
            error_message = f"{type(e).__name__}: {e}"

        # Control actions taken while the worker ran win over its result
        changed = self._check_external()
        now = self.clock()
        self.rate_limiter.record_call(now)
        if overloaded or (report is not None and report.provider_overloaded):
            self.rate_limiter.open_cooldown(now, reason="Provider overloaded")
        if changed:
            return self._status_result(self.bundle.session) or self._finish(
                TickDecision.CONTINUE,
                "Session changed externally during the tick; worker result discarded",
            )
        if report is not None and report.error:
            error_message = report.error

        # Safe checkpoint after the worker returned
        if self.abort_requested:
            return self._halt(self.abort_reason)

        # Metrics and progress
        snapshot: Optional[MetricsSnapshot] = None
        progress_made = False
        if report is not None:
            snapshot = bundle.metrics.record(MetricsSnapshot(
                phase=phase,
                iteration=iteration,
                counters=report.metrics,
                recorded_at=now,
            ))
            progress_made = detect_progress(phase, snapshot, bundle.metrics.previous(phase))

        if error_message:
            self.sessions.record_error(session, error_message, error_hash(error_message))

        # Circuit breaker
        self.breaker.record_tick(phase, progress_made, error_message, snapshot, now)
        if self.breaker.is_open:
            reason = f"Circuit breaker OPEN: {bundle.breaker.open_reason}"
            self.sessions.set_status(session, SessionStatus.HALTED, reason)
            return self._finish(
                TickDecision.HALT, reason,
                snapshot=snapshot, report=report, progress_made=progress_made,
                phase=phase, iteration=iteration,
            )

        # Dual gate, from this tick's snapshot only
        evaluation: Optional[DualGateEvaluation] = None
        if snapshot is not None:
            evaluation = gates.evaluate(snapshot, report.exit_signal, report.exit_signal_derived)

        if evaluation is not None and evaluation.can_exit:
            self.sessions.transition(session, True)
            next_phase = None if session.status == SessionStatus.COMPLETED else session.current_phase
            self.breaker.on_phase_transition(phase, next_phase, now)
            decision = TickDecision.COMPLETE if next_phase is None else TickDecision.TRANSITION
            reason = (
                f"{phase.value} exit gates passed"
                + (f", entering {next_phase.value}" if next_phase else ", all phases complete")
            )
        else:
            self.sessions.increment_iteration(session)
            decision = TickDecision.CONTINUE
            reason = error_message

        return self._finish(
            decision, reason,
            evaluation=evaluation, snapshot=snapshot, report=report,
            progress_made=progress_made, phase=phase, iteration=iteration,
        )

    async def run(self, max_ticks: Optional[int] = None) -> TickResult:
        """
        Tick until the session completes, halts or pauses.

        Args:
            max_ticks: Optional cap; returns the last CONTINUE/TRANSITION result when reached
        """
        self._loop = asyncio.get_running_loop()
        ticks = 0
        result: Optional[TickResult] = None

        try:
            while max_ticks is None or ticks < max_ticks:
                result = await self.tick()
                ticks += 1
                if result.decision in (TickDecision.HALT, TickDecision.PAUSE, TickDecision.COMPLETE):
                    break
        finally:
            clear_tick_context()

        if result is None:
            raise ValueError("max_ticks must be at least 1")
        return result
