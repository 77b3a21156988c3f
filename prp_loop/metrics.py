"""
Metrics Store
=============

Holds every metrics snapshot recorded for a session, grouped by phase.
History is append-only and never truncated; the progress detector only
looks at the newest snapshot and the one immediately before it.
"""

from typing import Any, Dict, List, Optional

from prp_loop.models import CounterValue, MetricsSnapshot, Phase, PHASE_ORDER
from prp_loop.structured_logging import get_logger

logger = get_logger(__name__)


class MetricsStore:
    """
    Per-phase snapshot history with comparison helpers.

    Persisted as metrics.json:
        {"session_id": ..., "current_phase": ..., "phases": {"RED": [...], ...}}
    """

    def __init__(self, session_id: str):
        self.session_id = session_id
        self._history: Dict[Phase, List[MetricsSnapshot]] = {phase: [] for phase in PHASE_ORDER}

    def record(self, snapshot: MetricsSnapshot) -> MetricsSnapshot:
        """Append a snapshot to its phase history."""
        self._history[snapshot.phase].append(snapshot)
        logger.debug(
            f"Recorded metrics for {snapshot.phase.value} iteration {snapshot.iteration}",
            extra={"counters": dict(snapshot.counters)}
        )
        return snapshot

    def latest(self, phase: Phase) -> Optional[MetricsSnapshot]:
        history = self._history[phase]
        return history[-1] if history else None

    def previous(self, phase: Phase) -> Optional[MetricsSnapshot]:
        """Snapshot recorded immediately before the latest one for this phase."""
        history = self._history[phase]
        return history[-2] if len(history) >= 2 else None

    def history(self, phase: Phase) -> List[MetricsSnapshot]:
        return list(self._history[phase])

    def count(self, phase: Optional[Phase] = None) -> int:
        if phase is not None:
            return len(self._history[phase])
        return sum(len(h) for h in self._history.values())

    def to_dict(self, current_phase: Optional[Phase] = None) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "current_phase": current_phase.value if current_phase else None,
            "phases": {
                phase.value: [snapshot.model_dump(mode='json') for snapshot in history]
                for phase, history in self._history.items()
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MetricsStore':
        """Rebuild from a metrics.json payload; raises pydantic.ValidationError or KeyError on bad data."""
        store = cls(data["session_id"])
        for phase_name, snapshots in (data.get("phases") or {}).items():
            phase = Phase(phase_name)
            for raw in snapshots:
                snapshot = MetricsSnapshot.model_validate(raw)
                if snapshot.phase != phase:
                    raise ValueError(
                        f"snapshot tagged {snapshot.phase.value} stored under {phase.value}"
                    )
                store._history[phase].append(snapshot)
        return store


def make_snapshot(phase: Phase, iteration: int, counters: Dict[str, CounterValue]) -> MetricsSnapshot:
    """Convenience constructor used by the orchestrator and tests."""
    return MetricsSnapshot(phase=phase, iteration=iteration, counters=counters)
