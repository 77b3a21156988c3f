"""
Session State Store
===================

File-backed persistence, one directory per session under the session root:

    <session_root>/<session_id>/
        loop-state.json        authoritative Session record
        circuit-breaker.json   CircuitBreakerState
        rate-limit.json        RateLimitState
        metrics.json           per-phase metrics history
        dual-gate.json         last evaluation, display copy only
        phase-status.log       append-only status blocks

Every JSON record is written with write-temp-then-replace. The session
record is written last, so a crash mid-save leaves the previous session
record pointing at sub-state at least as new as itself.
"""

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ValidationError

from prp_loop.errors import SessionNotFoundError, StateCorruptionError
from prp_loop.gates import DualGateEvaluation
from prp_loop.metrics import MetricsStore
from prp_loop.models import CircuitBreakerState, RateLimitState, Session
from prp_loop.status_log import parse_status_log
from prp_loop.structured_logging import get_logger

logger = get_logger(__name__)


SESSION_FILE = "loop-state.json"
BREAKER_FILE = "circuit-breaker.json"
RATE_LIMIT_FILE = "rate-limit.json"
METRICS_FILE = "metrics.json"
DUAL_GATE_FILE = "dual-gate.json"
STATUS_LOG_FILE = "phase-status.log"


def atomic_write(path: Path, content: str, encoding: str = "utf-8") -> None:
    """
    Write file atomically using temp-file + replace pattern.

    Raises:
        OSError: If the temp file cannot be written or replaced
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")

    try:
        with open(tmp_path, "w", encoding=encoding) as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
    except OSError as e:
        tmp_path.unlink(missing_ok=True)
        raise OSError(f"Failed to write temp file {tmp_path}: {e}") from e

    try:
        tmp_path.replace(path)
    except OSError as e:
        tmp_path.unlink(missing_ok=True)
        raise OSError(f"Failed to atomically replace {path}: {e}") from e


def atomic_write_json(path: Path, data: Dict[str, Any]) -> None:
    atomic_write(path, json.dumps(data, indent=2, ensure_ascii=False) + "\n")


@dataclass
class SessionBundle:
    """Everything persisted for one session."""
    session: Session
    breaker: CircuitBreakerState
    rate_limit: RateLimitState
    metrics: MetricsStore


class StateStore:
    """Reads and writes session directories under one session root."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def session_dir(self, session_id: str) -> Path:
        return self.root / session_id

    def exists(self, session_id: str) -> bool:
        return (self.session_dir(session_id) / SESSION_FILE).exists()

    # =========================================================================
    # Writes
    # =========================================================================

    def _write_model(self, session_id: str, filename: str, model: BaseModel) -> None:
        atomic_write_json(self.session_dir(session_id) / filename, model.model_dump(mode='json'))

    def save_session(self, session: Session) -> None:
        self._write_model(session.session_id, SESSION_FILE, session)

    def save_breaker(self, session_id: str, breaker: CircuitBreakerState) -> None:
        self._write_model(session_id, BREAKER_FILE, breaker)

    def save_rate_limit(self, session_id: str, rate_limit: RateLimitState) -> None:
        self._write_model(session_id, RATE_LIMIT_FILE, rate_limit)

    def save_metrics(self, metrics: MetricsStore, session: Session) -> None:
        atomic_write_json(
            self.session_dir(session.session_id) / METRICS_FILE,
            metrics.to_dict(current_phase=session.current_phase),
        )

    def save_dual_gate(self, session_id: str, evaluation: DualGateEvaluation) -> None:
        atomic_write_json(self.session_dir(session_id) / DUAL_GATE_FILE, evaluation.to_dict())

    def save(self, bundle: SessionBundle, evaluation: Optional[DualGateEvaluation] = None) -> None:
        """Persist all sub-state, session record last."""
        session_id = bundle.session.session_id
        self.save_metrics(bundle.metrics, bundle.session)
        self.save_breaker(session_id, bundle.breaker)
        self.save_rate_limit(session_id, bundle.rate_limit)
        if evaluation is not None:
            self.save_dual_gate(session_id, evaluation)
        self.save_session(bundle.session)
        logger.debug(f"Persisted session {session_id}")

    def append_status(self, session_id: str, block: str) -> None:
        """Append one status block to phase-status.log."""
        path = self.session_dir(session_id) / STATUS_LOG_FILE
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(block.rstrip("\n") + "\n\n")
            f.flush()
            os.fsync(f.fileno())

    # =========================================================================
    # Reads
    # =========================================================================

    def _read_json(self, path: Path) -> Dict[str, Any]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            raise StateCorruptionError(str(path), "file is missing")
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise StateCorruptionError(str(path), f"not valid JSON: {e}")
        if not isinstance(data, dict):
            raise StateCorruptionError(str(path), "top level is not an object")
        return data

    def _read_model(self, session_id: str, filename: str, model_cls):
        path = self.session_dir(session_id) / filename
        data = self._read_json(path)
        try:
            return model_cls.model_validate(data)
        except ValidationError as e:
            raise StateCorruptionError(str(path), f"{e.error_count()} validation error(s): {e.errors()[0]['msg']}")

    def load_session(self, session_id: str) -> Session:
        """
        Load only the session record.

        Raises:
            SessionNotFoundError: No loop-state.json for this id
            StateCorruptionError: Record is malformed or violates session invariants
        """
        if not self.exists(session_id):
            raise SessionNotFoundError(session_id)
        session = self._read_model(session_id, SESSION_FILE, Session)
        if session.session_id != session_id:
            raise StateCorruptionError(
                str(self.session_dir(session_id) / SESSION_FILE),
                f"session_id {session.session_id} does not match directory"
            )
        return session

    def load_breaker(self, session_id: str) -> CircuitBreakerState:
        return self._read_model(session_id, BREAKER_FILE, CircuitBreakerState)

    def load_rate_limit(self, session_id: str) -> RateLimitState:
        return self._read_model(session_id, RATE_LIMIT_FILE, RateLimitState)

    def load_metrics(self, session_id: str) -> MetricsStore:
        path = self.session_dir(session_id) / METRICS_FILE
        data = self._read_json(path)
        try:
            metrics = MetricsStore.from_dict(data)
        except (KeyError, ValueError, ValidationError) as e:
            raise StateCorruptionError(str(path), str(e))
        if metrics.session_id != session_id:
            raise StateCorruptionError(str(path), f"belongs to session {metrics.session_id}")
        return metrics

    def load_dual_gate(self, session_id: str) -> Optional[Dict[str, Any]]:
        """Last evaluation for display; never used for decisions."""
        path = self.session_dir(session_id) / DUAL_GATE_FILE
        if not path.exists():
            return None
        return self._read_json(path)

    def load(self, session_id: str) -> SessionBundle:
        """
        Load every record of a session.

        Raises:
            SessionNotFoundError: No session with this id
            StateCorruptionError: Any record is missing or malformed
        """
        session = self.load_session(session_id)
        return SessionBundle(
            session=session,
            breaker=self.load_breaker(session_id),
            rate_limit=self.load_rate_limit(session_id),
            metrics=self.load_metrics(session_id),
        )

    def read_status_log(self, session_id: str) -> str:
        path = self.session_dir(session_id) / STATUS_LOG_FILE
        if not path.exists():
            return ""
        return path.read_text(encoding="utf-8")

    def read_status_history(self, session_id: str, count: int = 10) -> List[Dict[str, Any]]:
        """Most recent `count` status blocks, oldest first."""
        blocks = parse_status_log(self.read_status_log(session_id))
        return blocks[-count:] if count > 0 else []

    # =========================================================================
    # Discovery
    # =========================================================================

    def list_sessions(self) -> List[Session]:
        """All readable sessions, most recently active first. Corrupted ones are skipped."""
        if not self.root.exists():
            return []

        sessions = []
        for entry in sorted(self.root.iterdir()):
            if not entry.is_dir() or not (entry / SESSION_FILE).exists():
                continue
            try:
                sessions.append(self.load_session(entry.name))
            except StateCorruptionError as e:
                logger.warning(f"Skipping unreadable session {entry.name}: {e}")

        sessions.sort(key=lambda s: s.last_activity, reverse=True)
        return sessions

    def find_session_for_target(self, target: str) -> Optional[str]:
        """Id of the most recently active session for this target, if any."""
        for session in self.list_sessions():
            if session.target == target:
                return session.session_id
        return None
