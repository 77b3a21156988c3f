"""
Decision State Dashboard API
============================

Read-only FastAPI view of persisted session state, plus pause and resume.
Intended for status displays and tooling; it renders nothing itself.

Endpoints:
- GET  /api/health
- GET  /api/sessions
- GET  /api/sessions/{session_id}/status
- GET  /api/sessions/{session_id}/circuit-breaker
- GET  /api/sessions/{session_id}/dual-gate
- GET  /api/sessions/{session_id}/metrics
- GET  /api/sessions/{session_id}/rate-limit
- GET  /api/sessions/{session_id}/history
- GET  /api/sessions/{session_id}/all
- POST /api/sessions/{session_id}/pause
- POST /api/sessions/{session_id}/resume   (refused while the breaker is OPEN)
"""

from datetime import datetime
from typing import Any, Callable, Dict, Optional

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from prp_loop.config import Config
from prp_loop.controls import LoopControls
from prp_loop.errors import (
    CircuitOpenError,
    InvalidTransitionError,
    PRPLoopError,
    RateLimitError,
    SessionNotFoundError,
    StateCorruptionError,
    TerminalSessionError,
)
from prp_loop.models import utc_now
from prp_loop.rate_limiter import RateLimiter
from prp_loop.state_store import StateStore
from prp_loop.structured_logging import get_logger

logger = get_logger(__name__)

SECONDS_PER_MINUTE = 60
MINUTES_PER_HOUR = 60
HOURS_PER_DAY = 24


def time_ago(timestamp: Optional[datetime], now: Optional[datetime] = None) -> str:
    """Human-readable age: 'just now', '5m ago', '3h ago', '2d ago', or 'never'."""
    if timestamp is None:
        return "never"
    now = now or utc_now()
    minutes = int((now - timestamp).total_seconds() // SECONDS_PER_MINUTE)

    if minutes < 1:
        return "just now"
    if minutes < MINUTES_PER_HOUR:
        return f"{minutes}m ago"
    hours = minutes // MINUTES_PER_HOUR
    if hours < HOURS_PER_DAY:
        return f"{hours}h ago"
    return f"{hours // HOURS_PER_DAY}d ago"


def format_time_remaining(seconds: int) -> Optional[str]:
    """'12m 5s', or None when nothing is left."""
    if seconds <= 0:
        return None
    return f"{seconds // SECONDS_PER_MINUTE}m {seconds % SECONDS_PER_MINUTE}s"


class PauseRequest(BaseModel):
    """Request model for pausing a session."""
    reason: str = Field("Paused from dashboard", max_length=500)


def create_dashboard_app(
    config: Optional[Config] = None,
    store: Optional[StateStore] = None,
    clock: Callable[[], datetime] = utc_now,
) -> FastAPI:
    """
    Build the dashboard application.

    Args:
        config: Loop configuration (defaults to Config.load_default())
        store: State store (defaults to one at config.storage.session_dir)
        clock: Source of the current time for relative timestamps
    """
    config = config or Config.load_default()
    store = store or StateStore(config.storage.session_root)
    controls = LoopControls(config=config, store=store, clock=clock)

    app = FastAPI(
        title="PRP Loop Dashboard",
        description="Decision state of PRP loop sessions",
        version="1.0.0",
    )

    # =========================================================================
    # Error mapping
    # =========================================================================

    @app.exception_handler(PRPLoopError)
    async def loop_error_handler(request: Request, exc: PRPLoopError):
        if isinstance(exc, SessionNotFoundError):
            status_code = 404
        elif isinstance(exc, (CircuitOpenError, InvalidTransitionError, TerminalSessionError, RateLimitError)):
            status_code = 409
        elif isinstance(exc, StateCorruptionError):
            status_code = 422
        else:
            status_code = 500
        logger.warning(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=status_code, content={"detail": str(exc), "error": exc.to_dict()})

    # =========================================================================
    # Resource builders
    # =========================================================================

    def session_status(session_id: str) -> Dict[str, Any]:
        session = store.load_session(session_id)
        return {
            "session_id": session.session_id,
            "target": session.target,
            "status": session.status.value,
            "current_phase": session.current_phase.value,
            "current_iteration": session.current_iteration,
            "phases_completed": [p.value for p in session.phases_completed],
            "halt_reason": session.halt_reason,
            "pause_reason": session.pause_reason,
            "last_activity": session.last_activity.isoformat(),
            "last_activity_ago": time_ago(session.last_activity, clock()),
        }

    def rate_limit(session_id: str) -> Dict[str, Any]:
        state = store.load_rate_limit(session_id)
        now = clock()
        data = state.model_dump(mode='json')
        limiter = RateLimiter(config.rate_limit, state, clock=clock)
        data["reset_in"] = format_time_remaining(limiter.seconds_until_reset(now))
        data["cooldown_remaining"] = format_time_remaining(limiter.seconds_until_cooldown_ends(now))
        return data

    def history(session_id: str, count: int) -> Dict[str, Any]:
        if not store.exists(session_id):
            raise SessionNotFoundError(session_id)
        entries = store.read_status_history(session_id, count)
        return {"count": len(entries), "entries": entries}

    # =========================================================================
    # Routes
    # =========================================================================

    @app.get("/api/health")
    async def health():
        return {"status": "ok", "session_root": str(store.root)}

    @app.get("/api/sessions")
    async def list_sessions():
        now = clock()
        return [
            {
                "session_id": s.session_id,
                "target": s.target,
                "status": s.status.value,
                "current_phase": s.current_phase.value,
                "current_iteration": s.current_iteration,
                "last_activity_ago": time_ago(s.last_activity, now),
            }
            for s in store.list_sessions()
        ]

    @app.get("/api/sessions/{session_id}/status")
    async def get_status(session_id: str):
        return session_status(session_id)

    @app.get("/api/sessions/{session_id}/circuit-breaker")
    async def get_circuit_breaker(session_id: str):
        store.load_session(session_id)
        return store.load_breaker(session_id).model_dump(mode='json')

    @app.get("/api/sessions/{session_id}/dual-gate")
    async def get_dual_gate(session_id: str):
        store.load_session(session_id)
        evaluation = store.load_dual_gate(session_id)
        if evaluation is None:
            return {"phase": None, "gate_1": False, "gate_2": False, "can_exit": False,
                    "message": "No evaluation yet"}
        return evaluation

    @app.get("/api/sessions/{session_id}/metrics")
    async def get_metrics(session_id: str):
        session = store.load_session(session_id)
        return store.load_metrics(session_id).to_dict(current_phase=session.current_phase)

    @app.get("/api/sessions/{session_id}/rate-limit")
    async def get_rate_limit(session_id: str):
        store.load_session(session_id)
        return rate_limit(session_id)

    @app.get("/api/sessions/{session_id}/history")
    async def get_history(session_id: str, count: int = Query(config.history.status_history_count, ge=1, le=1000)):
        return history(session_id, count)

    @app.get("/api/sessions/{session_id}/all")
    async def get_all(session_id: str):
        status = session_status(session_id)
        return {
            "timestamp": clock().isoformat(),
            "session": status,
            "circuit_breaker": store.load_breaker(session_id).model_dump(mode='json'),
            "dual_gate": store.load_dual_gate(session_id),
            "metrics": store.load_metrics(session_id).to_dict(),
            "rate_limit": rate_limit(session_id),
            "recent_history": history(session_id, 5)["entries"],
        }

    @app.post("/api/sessions/{session_id}/pause")
    async def pause_session(session_id: str, request: Optional[PauseRequest] = None):
        reason = request.reason if request else PauseRequest().reason
        controls.pause(session_id, reason)
        logger.info(f"Session {session_id} paused from dashboard")
        return {"success": True, "message": "Loop paused", "session": session_status(session_id)}

    @app.post("/api/sessions/{session_id}/resume")
    async def resume_session(session_id: str):
        controls.resume(session_id)
        logger.info(f"Session {session_id} resumed from dashboard")
        return {
            "success": True,
            "message": "Loop resumed. The orchestrator must be running to continue execution.",
            "session": session_status(session_id),
        }

    return app
