"""
Dual-Gate Evaluation
====================

A phase may exit only when both gates hold in the same evaluation:

- Gate 1: objective, phase-specific predicate over one metrics snapshot
- Gate 2: the phase worker's explicit exit signal (False when absent)

Evaluations are recomputed every tick from the snapshot just recorded and
are never read back from disk to make decisions.
"""

from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from prp_loop.models import MetricsSnapshot, Phase, utc_now
from prp_loop.structured_logging import get_logger

logger = get_logger(__name__)


GREEN_MIN_CONSECUTIVE_RUNS = 2
REFACTOR_MIN_ITERATIONS = 5
DOCUMENT_MIN_DOCS = 3

Check = Tuple[str, bool]


@dataclass
class DualGateEvaluation:
    """Result of one dual-gate evaluation."""
    phase: Phase
    gate_1: bool
    gate_2: bool
    evaluated_at: datetime = field(default_factory=utc_now)
    gate_2_derived: bool = False  # worker computed its exit signal instead of asserting it
    passed_checks: List[str] = field(default_factory=list)
    failed_checks: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def can_exit(self) -> bool:
        return self.gate_1 and self.gate_2

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "phase": self.phase.value,
            "gate_1": self.gate_1,
            "gate_2": self.gate_2,
            "can_exit": self.can_exit,
            "evaluated_at": self.evaluated_at.isoformat(),
            "gate_2_derived": self.gate_2_derived,
            "passed_checks": self.passed_checks,
            "failed_checks": self.failed_checks,
            "warnings": self.warnings,
        }


def _red_checks(s: MetricsSnapshot) -> List[Check]:
    generated = s.number("tests_generated")
    required = max(s.number("criteria_count"), 1)
    return [
        (f"tests_generated >= {required:g}", generated >= required),
        ("tests_failing == tests_generated", s.number("tests_failing") == generated),
    ]


def _green_checks(s: MetricsSnapshot) -> List[Check]:
    total = s.number("tests_total")
    return [
        ("tests_total > 0", total > 0),
        ("tests_passing == tests_total", s.number("tests_passing") == total),
        ("tests_failing == 0", s.number("tests_failing") == 0),
        (f"consecutive_runs >= {GREEN_MIN_CONSECUTIVE_RUNS}",
         s.number("consecutive_runs") >= GREEN_MIN_CONSECUTIVE_RUNS),
    ]


def _refactor_checks(s: MetricsSnapshot) -> List[Check]:
    total = s.number("tests_total")
    return [
        ("tests_total > 0", total > 0),
        ("tests_passing == tests_total", s.number("tests_passing") == total),
        (f"iterations >= {REFACTOR_MIN_ITERATIONS}", s.iteration + 1 >= REFACTOR_MIN_ITERATIONS),
    ]


def _document_checks(s: MetricsSnapshot) -> List[Check]:
    return [
        (f"docs_generated >= {DOCUMENT_MIN_DOCS}", s.number("docs_generated") >= DOCUMENT_MIN_DOCS),
        ("has_adr", s.flag("has_adr")),
    ]


def _qa_checks(s: MetricsSnapshot) -> List[Check]:
    return [
        ("blocking_issues == 0", s.number("blocking_issues") == 0),
        ("approved", s.flag("approved")),
    ]


GATE_1_CHECKS: Mapping[Phase, Callable[[MetricsSnapshot], List[Check]]] = MappingProxyType({
    Phase.RED: _red_checks,
    Phase.GREEN: _green_checks,
    Phase.REFACTOR: _refactor_checks,
    Phase.DOCUMENT: _document_checks,
    Phase.QA: _qa_checks,
})


def evaluate_gate_1(snapshot: MetricsSnapshot) -> bool:
    """Objective exit condition for the snapshot's phase."""
    return all(passed for _, passed in GATE_1_CHECKS[snapshot.phase](snapshot))


def evaluate(
    snapshot: MetricsSnapshot,
    exit_signal: Optional[bool],
    exit_signal_derived: bool = False,
) -> DualGateEvaluation:
    """
    Evaluate both gates against a single snapshot.

    Args:
        snapshot: Metrics recorded this tick
        exit_signal: Worker's asserted completion signal; None counts as False
        exit_signal_derived: Worker reported the signal as computed from metrics

    Returns:
        DualGateEvaluation with can_exit = gate_1 and gate_2
    """
    checks = GATE_1_CHECKS[snapshot.phase](snapshot)
    evaluation = DualGateEvaluation(
        phase=snapshot.phase,
        gate_1=all(passed for _, passed in checks),
        gate_2=exit_signal is True,
        gate_2_derived=exit_signal_derived,
        passed_checks=[name for name, passed in checks if passed],
        failed_checks=[name for name, passed in checks if not passed],
    )

    if evaluation.gate_2 and not evaluation.gate_1:
        message = (
            f"Exit signal asserted for {snapshot.phase.value} but gate 1 failed: "
            f"{', '.join(evaluation.failed_checks)}"
        )
        evaluation.warnings.append(message)
        logger.warning(message)

    if exit_signal_derived:
        message = f"Exit signal for {snapshot.phase.value} was derived from metrics, not asserted"
        evaluation.warnings.append(message)
        logger.warning(message)

    return evaluation
