"""
Tests for the loop control command line script.
"""

import io
import sys
from pathlib import Path
from unittest.mock import patch

import pytest
from rich.console import Console

sys.path.insert(0, str(Path(__file__).parent.parent / "scripts"))

import loop_control
from prp_loop.metrics import MetricsStore
from prp_loop.models import CircuitBreakerState, SessionStatus
from prp_loop.rate_limiter import initial_state
from prp_loop.session_manager import SessionStateManager
from prp_loop.state_store import SessionBundle


@pytest.fixture
def output(monkeypatch, tmp_path):
    """Capture script output and keep it away from real config and logging."""
    buffer = io.StringIO()
    monkeypatch.setattr(loop_control, "console", Console(file=buffer, width=200))
    monkeypatch.setattr(loop_control, "setup_structured_logging", lambda **kwargs: None)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    return buffer


@pytest.fixture
def session_id(test_config, store, clock):
    session = SessionStateManager(clock=clock).create("PRPs/feature.md", session_id="cli-session")
    store.save(SessionBundle(
        session=session,
        breaker=CircuitBreakerState(),
        rate_limit=initial_state(test_config.rate_limit, clock.now),
        metrics=MetricsStore(session.session_id),
    ))
    return session.session_id


def run(session_root, *args) -> int:
    return loop_control.main(["--session-dir", str(session_root), *args])


class TestParser:

    def test_command_required(self):
        with pytest.raises(SystemExit):
            loop_control.build_parser().parse_args([])

    def test_action_reason(self):
        args = loop_control.build_parser().parse_args(["skip", "abc", "--reason", "Done by hand"])
        assert args.command == "skip"
        assert args.session_id == "abc"
        assert args.reason == "Done by hand"

    def test_session_dir_override(self, test_config, output, tmp_path):
        args = loop_control.build_parser().parse_args(["--session-dir", str(tmp_path / "x"), "list"])
        assert loop_control.load_config(args).storage.session_dir == str(tmp_path / "x")


class TestCommands:

    def test_list(self, output, session_root, session_id):
        assert run(session_root, "list") == 0
        assert "cli-sess" in output.getvalue()

    def test_list_empty(self, output, session_root):
        assert run(session_root, "list") == 0
        assert "No sessions" in output.getvalue()

    def test_status(self, output, session_root, session_id):
        assert run(session_root, "status", session_id, "--history", "3") == 0
        text = output.getvalue()
        assert "Session cli-session" in text
        assert "CLOSED" in text
        assert "No status history yet" in text

    def test_pause_then_resume(self, output, session_root, session_id, store):
        assert run(session_root, "pause", session_id, "--reason", "Lunch") == 0
        assert store.load_session(session_id).pause_reason == "Lunch"

        assert run(session_root, "resume", session_id) == 0
        assert store.load_session(session_id).status == SessionStatus.RUNNING
        assert "✓ resume applied" in output.getvalue()

    def test_skip_uses_default_reason(self, output, session_root, session_id, store):
        assert run(session_root, "skip", session_id) == 0
        transition = store.load_session(session_id).transitions[-1]
        assert transition.forced is True
        assert transition.reason == "Skipped by operator"

    def test_abort(self, output, session_root, session_id, store):
        assert run(session_root, "abort", session_id) == 0
        session = store.load_session(session_id)
        assert session.status == SessionStatus.HALTED
        assert session.halt_reason == "Aborted by operator"

    def test_errors_return_one(self, output, session_root):
        assert run(session_root, "status", "missing") == 1
        assert "Error:" in output.getvalue()

    def test_rejected_action_returns_one(self, output, session_root, session_id):
        assert run(session_root, "resume", session_id) == 1

    def test_serve_runs_dashboard(self, output, session_root):
        with patch("uvicorn.run") as mock_run:
            assert run(session_root, "serve", "--port", "9000") == 0

        app = mock_run.call_args.args[0]
        assert app.title == "PRP Loop Dashboard"
        assert mock_run.call_args.kwargs == {"host": "127.0.0.1", "port": 9000}
