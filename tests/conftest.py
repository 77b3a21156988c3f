"""
Pytest configuration and shared fixtures for the PRP loop test suite.

This module provides common test fixtures and configuration for all tests.
"""

import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, List, Optional

import pytest

# Add parent directory to Python path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from prp_loop.config import Config
from prp_loop.models import MetricsSnapshot, Phase
from prp_loop.state_store import StateStore
from prp_loop.worker import IPhaseWorker, WorkerContext, WorkerReport


START_TIME = datetime(2026, 1, 5, 10, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock; call it to read the current time."""

    def __init__(self, start: datetime = START_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class ScriptedWorker(IPhaseWorker):
    """
    Worker that replays a list of steps.

    A step is a WorkerReport, a report dict, or an exception instance to
    raise. After the script runs out the last step repeats.
    """

    def __init__(self, steps: List[Any], on_invoke=None):
        if not steps:
            raise ValueError("ScriptedWorker needs at least one step")
        self.steps = list(steps)
        self.contexts: List[WorkerContext] = []
        self.on_invoke = on_invoke

    @property
    def calls(self) -> int:
        return len(self.contexts)

    async def invoke(self, context: WorkerContext) -> WorkerReport:
        self.contexts.append(context)
        if self.on_invoke is not None:
            self.on_invoke(context)
        step = self.steps[min(len(self.contexts) - 1, len(self.steps) - 1)]
        if isinstance(step, Exception):
            raise step
        return WorkerReport.from_raw(step, phase=context.phase)


def snapshot(phase: Phase, iteration: int = 0, **counters) -> MetricsSnapshot:
    """Shorthand for building a metrics snapshot in tests."""
    return MetricsSnapshot(phase=phase, iteration=iteration, counters=counters, recorded_at=START_TIME)


@pytest.fixture
def clock() -> FakeClock:
    """Provide a clock frozen at START_TIME until advanced."""
    return FakeClock()


@pytest.fixture
def session_root(tmp_path) -> Path:
    """Provide an empty session root directory."""
    root = tmp_path / ".prp-session"
    root.mkdir()
    return root


@pytest.fixture
def test_config(session_root, monkeypatch) -> Config:
    """Provide test configuration isolated from the developer's environment."""
    monkeypatch.delenv("PRP_HOURLY_LIMIT", raising=False)
    monkeypatch.delenv("PRP_SESSION_DIR", raising=False)
    monkeypatch.delenv("LOG_LEVEL", raising=False)
    monkeypatch.delenv("LOG_FORMAT", raising=False)
    config = Config()
    config.storage.session_dir = str(session_root)
    return config


@pytest.fixture
def store(session_root) -> StateStore:
    """Provide a state store over the temporary session root."""
    return StateStore(session_root)


@pytest.fixture
def fake_sleep(clock):
    """Async sleep that advances the fake clock instead of waiting."""
    waits: List[float] = []

    async def _sleep(seconds: float) -> None:
        waits.append(seconds)
        clock.advance(seconds=seconds)

    _sleep.waits = waits
    return _sleep


def red_report(generated: int, criteria: int = 3, exit_signal: bool = False, **extra) -> dict:
    """Report dict for a RED tick where every generated test fails."""
    metrics = {
        "tests_generated": generated,
        "criteria_count": criteria,
        "criteria_covered": min(generated, criteria),
        "tests_failing": generated,
    }
    metrics.update(extra)
    return {"metrics": metrics, "exit_signal": exit_signal}


def green_report(passing: int, total: int, runs: int = 0, exit_signal: bool = False, error: Optional[str] = None) -> dict:
    return {
        "metrics": {
            "tests_passing": passing,
            "tests_total": total,
            "tests_failing": total - passing,
            "consecutive_runs": runs,
        },
        "exit_signal": exit_signal,
        "error": error,
    }


def pytest_configure(config):
    """Register custom pytest markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )
    config.addinivalue_line(
        "markers", "api: marks tests as API tests"
    )
