"""
Progress Detection
==================

Per-phase monotonic-improvement rules comparing the newest metrics snapshot
with the one immediately before it. Pure functions, no side effects.

Also provides the derived figures shown in status blocks: phase progress
percent and the QA verdict / retry action.
"""

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional, Tuple

from prp_loop.gates import DOCUMENT_MIN_DOCS, REFACTOR_MIN_ITERATIONS
from prp_loop.models import MetricsSnapshot, Phase


@dataclass(frozen=True)
class ProgressRule:
    """
    Declarative progress predicate for one phase.

    Progress is made when any `increases` counter went up, any `becomes_true`
    flag flipped on, or any `decreases` counter went down (only while every
    `decrease_guard` counter is unchanged). `must_not_increase` counters veto
    the result. With `zero_baseline`, the first snapshot of a phase is
    compared against all-zero counters instead of returning False.
    """
    increases: Tuple[str, ...] = ()
    decreases: Tuple[str, ...] = ()
    decrease_guard: Tuple[str, ...] = ()
    becomes_true: Tuple[str, ...] = ()
    must_not_increase: Tuple[str, ...] = ()
    zero_baseline: bool = False

    def evaluate(self, current: MetricsSnapshot, previous: Optional[MetricsSnapshot]) -> bool:
        if previous is None:
            if not self.zero_baseline:
                return False
            previous = MetricsSnapshot(phase=current.phase, iteration=0, counters={})

        for name in self.must_not_increase:
            if current.number(name) > previous.number(name):
                return False

        if any(current.number(name) > previous.number(name) for name in self.increases):
            return True

        if any(current.flag(name) and not previous.flag(name) for name in self.becomes_true):
            return True

        guard_holds = all(current.number(name) == previous.number(name) for name in self.decrease_guard)
        if guard_holds and any(current.number(name) < previous.number(name) for name in self.decreases):
            return True

        return False


PROGRESS_RULES: Mapping[Phase, ProgressRule] = MappingProxyType({
    Phase.RED: ProgressRule(
        increases=("tests_generated", "criteria_covered"),
        zero_baseline=True,
    ),
    Phase.GREEN: ProgressRule(
        increases=("tests_passing",),
        decreases=("tests_failing",),
        decrease_guard=("tests_total",),
    ),
    Phase.REFACTOR: ProgressRule(
        increases=("refactorings_applied", "files_modified"),
        must_not_increase=("tests_failing",),
    ),
    Phase.DOCUMENT: ProgressRule(
        increases=("docs_generated",),
        becomes_true=("has_adr",),
        zero_baseline=True,
    ),
    Phase.QA: ProgressRule(
        increases=("checks_passing",),
        decreases=("blocking_issues",),
    ),
})


def detect_progress(phase: Phase, current: MetricsSnapshot, previous: Optional[MetricsSnapshot]) -> bool:
    """
    Return True if `current` shows measurable improvement over `previous`.

    Args:
        phase: Phase whose rule applies
        current: Newest snapshot
        previous: Snapshot immediately before it for the same phase, or None

    Returns:
        Whether progress was made
    """
    return PROGRESS_RULES[phase].evaluate(current, previous)


def _ratio(numerator: float, denominator: float) -> int:
    if denominator <= 0:
        return 0
    return max(0, min(100, int(round(numerator * 100 / denominator))))


def progress_percent(snapshot: Optional[MetricsSnapshot]) -> int:
    """0-100 progress within the snapshot's phase."""
    if snapshot is None:
        return 0

    phase = snapshot.phase
    if phase == Phase.RED:
        return _ratio(snapshot.number("tests_generated"), max(snapshot.number("criteria_count"), 1))
    if phase == Phase.GREEN:
        return _ratio(snapshot.number("tests_passing"), snapshot.number("tests_total"))
    if phase == Phase.REFACTOR:
        return _ratio(snapshot.iteration + 1, REFACTOR_MIN_ITERATIONS)
    if phase == Phase.DOCUMENT:
        docs = min(snapshot.number("docs_generated"), DOCUMENT_MIN_DOCS)
        return _ratio(docs + (1 if snapshot.flag("has_adr") else 0), DOCUMENT_MIN_DOCS + 1)
    if phase == Phase.QA:
        return _ratio(snapshot.number("checks_passing"), snapshot.number("checks_total"))
    return 0


# =============================================================================
# QA verdict
# =============================================================================

QA_MAX_ATTEMPTS = 3


class QAVerdict(str, Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"


class QARetryAction(str, Enum):
    SHIP = "SHIP"
    ESCALATE = "ESCALATE"
    GREEN = "GREEN"  # send back to implementation


def qa_verdict(blocking_issues: int) -> QAVerdict:
    """Any blocking issue rejects; warnings never do."""
    return QAVerdict.REJECT if blocking_issues > 0 else QAVerdict.APPROVE


def qa_retry_action(attempt: int, verdict: QAVerdict) -> QARetryAction:
    """What a rejected QA pass should lead to. Used for recommendations only."""
    if verdict == QAVerdict.APPROVE:
        return QARetryAction.SHIP
    if attempt >= QA_MAX_ATTEMPTS:
        return QARetryAction.ESCALATE
    return QARetryAction.GREEN
