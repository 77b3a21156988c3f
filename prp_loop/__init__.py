"""
PRP Loop
========

Control core of an autonomous multi-phase execution loop
(RED -> GREEN -> REFACTOR -> DOCUMENT -> QA).

This package provides:
- Progress detection and a per-phase circuit breaker
- Dual-gate phase exit evaluation
- Hourly call budget and provider cooldown handling
- Crash-resumable session state on disk
- The orchestrator that ties them together, plus control actions
"""

from prp_loop.config import Config
from prp_loop.controls import LoopControls
from prp_loop.models import Phase, SessionStatus, TickDecision
from prp_loop.orchestrator import LoopOrchestrator, TickResult
from prp_loop.state_store import StateStore
from prp_loop.worker import CallableWorker, IPhaseWorker, WorkerContext, WorkerReport

__version__ = "1.0.0"

__all__ = [
    "CallableWorker",
    "Config",
    "IPhaseWorker",
    "LoopControls",
    "LoopOrchestrator",
    "Phase",
    "SessionStatus",
    "StateStore",
    "TickDecision",
    "TickResult",
    "WorkerContext",
    "WorkerReport",
]
