"""
Phase Status Log
================

One status block is appended to phase-status.log per tick. The block is
the machine-parseable observability surface of the loop: fields always
appear in the same order between fixed delimiter lines.

    ---PRP_PHASE_STATUS---
    TIMESTAMP: 2026-01-05T10:30:45+00:00
    SESSION_ID: 7f3c...
    PHASE: GREEN
    STATUS: running
    ITERATION: 2
    PROGRESS_PERCENT: 80

    METRICS:
      tests_passing: 8
      tests_total: 10

    CIRCUIT_BREAKER:
      STATE: CLOSED
      NO_PROGRESS_COUNT: 0
      SAME_ERROR_COUNT: 0

    DUAL_GATE:
      GATE_1: false
      GATE_2: false
      CAN_EXIT: false

    DECISION: CONTINUE
    REASON: none
    EXIT_SIGNAL: false
    RECOMMENDATION: Continue GREEN: tests_passing == tests_total pending
    ---END_PRP_PHASE_STATUS---
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from prp_loop.gates import DualGateEvaluation
from prp_loop.models import (
    CircuitBreakerState,
    CircuitState,
    CounterValue,
    MetricsSnapshot,
    Phase,
    TickDecision,
)
from prp_loop.progress import QARetryAction, qa_retry_action, qa_verdict

BLOCK_START = "---PRP_PHASE_STATUS---"
BLOCK_END = "---END_PRP_PHASE_STATUS---"

SECTIONS = ("METRICS", "CIRCUIT_BREAKER", "DUAL_GATE")
# Kept verbatim
RAW_FIELDS = ("TIMESTAMP", "SESSION_ID")
# Free text; only "none" maps to None
TEXT_FIELDS = ("REASON", "RECOMMENDATION")


@dataclass
class StatusReport:
    """Contents of one status block."""
    timestamp: str
    session_id: str
    phase: str
    status: str
    iteration: int
    progress_percent: int
    metrics: Dict[str, CounterValue] = field(default_factory=dict)
    breaker_state: str = CircuitState.CLOSED.value
    no_progress_count: int = 0
    same_error_count: int = 0
    gate_1: bool = False
    gate_2: bool = False
    can_exit: bool = False
    decision: str = TickDecision.CONTINUE.value
    reason: Optional[str] = None
    exit_signal: bool = False
    recommendation: str = ""

    def to_block(self) -> str:
        return format_status_block(self)


def _fmt(value: Any) -> str:
    if value is None:
        return "none"
    if isinstance(value, bool):
        return "true" if value else "false"
    return " ".join(str(value).split())


def format_status_block(report: StatusReport) -> str:
    """Render a report as a delimited status block."""
    lines = [
        BLOCK_START,
        f"TIMESTAMP: {report.timestamp}",
        f"SESSION_ID: {report.session_id}",
        f"PHASE: {report.phase}",
        f"STATUS: {report.status}",
        f"ITERATION: {report.iteration}",
        f"PROGRESS_PERCENT: {report.progress_percent}",
        "",
        "METRICS:",
    ]
    for name in sorted(report.metrics):
        lines.append(f"  {name}: {_fmt(report.metrics[name])}")
    lines += [
        "",
        "CIRCUIT_BREAKER:",
        f"  STATE: {report.breaker_state}",
        f"  NO_PROGRESS_COUNT: {report.no_progress_count}",
        f"  SAME_ERROR_COUNT: {report.same_error_count}",
        "",
        "DUAL_GATE:",
        f"  GATE_1: {_fmt(report.gate_1)}",
        f"  GATE_2: {_fmt(report.gate_2)}",
        f"  CAN_EXIT: {_fmt(report.can_exit)}",
        "",
        f"DECISION: {report.decision}",
        f"REASON: {_fmt(report.reason)}",
        f"EXIT_SIGNAL: {_fmt(report.exit_signal)}",
        f"RECOMMENDATION: {_fmt(report.recommendation)}",
        BLOCK_END,
    ]
    return "\n".join(lines)


def _coerce(raw: str) -> Any:
    if raw == "true":
        return True
    if raw == "false":
        return False
    if raw == "none":
        return None
    try:
        return int(raw)
    except ValueError:
        pass
    try:
        return float(raw)
    except ValueError:
        return raw


def parse_status_block(text: str) -> Dict[str, Any]:
    """
    Parse one status block back into a dictionary.

    Top-level keys keep their upper-case names; sections become nested dicts.

    Raises:
        ValueError: Delimiters are missing
    """
    lines = text.strip().splitlines()
    if not lines or lines[0].strip() != BLOCK_START or lines[-1].strip() != BLOCK_END:
        raise ValueError("Status block delimiters not found")

    result: Dict[str, Any] = {}
    section: Optional[Dict[str, Any]] = None

    for line in lines[1:-1]:
        if not line.strip():
            section = None
            continue
        key, _, value = line.strip().partition(":")
        value = value.strip()

        if line.startswith("  ") and section is not None:
            section[key] = _coerce(value)
        elif key in SECTIONS and not value:
            section = {}
            result[key] = section
        else:
            section = None
            if key in RAW_FIELDS:
                result[key] = value
            elif key in TEXT_FIELDS:
                result[key] = None if value == "none" else value
            else:
                result[key] = _coerce(value)

    return result


def parse_status_log(text: str) -> List[Dict[str, Any]]:
    """Parse every complete block in a log, oldest first. Partial trailing blocks are ignored."""
    blocks = []
    current: Optional[List[str]] = None

    for line in text.splitlines():
        stripped = line.strip()
        if stripped == BLOCK_START:
            current = [stripped]
        elif stripped == BLOCK_END and current is not None:
            current.append(stripped)
            blocks.append(parse_status_block("\n".join(current)))
            current = None
        elif current is not None:
            current.append(line)

    return blocks


def build_recommendation(
    decision: TickDecision,
    phase: Phase,
    breaker: CircuitBreakerState,
    evaluation: Optional[DualGateEvaluation] = None,
    snapshot: Optional[MetricsSnapshot] = None,
    reason: Optional[str] = None,
) -> str:
    """One-line next action for a human or tool reading the log."""
    if decision == TickDecision.COMPLETE:
        return "All phases complete: ready to ship"

    if decision == TickDecision.TRANSITION:
        next_phase = phase.successor()
        return f"Phase {phase.value} complete: continue with {next_phase.value if next_phase else 'completion'}"

    if decision == TickDecision.HALT:
        if breaker.is_open:
            return "Circuit breaker OPEN: review error history, then reset (optionally skip the phase) or abort"
        return f"Halted: {reason or 'see session record'}"

    if decision == TickDecision.PAUSE:
        return f"Paused: {reason or 'resume when ready'}"

    if evaluation is not None and evaluation.gate_2 and not evaluation.gate_1:
        return f"Exit signal ignored, gate 1 failing: {', '.join(evaluation.failed_checks)}"

    if phase == Phase.QA and snapshot is not None:
        verdict = qa_verdict(int(snapshot.number("blocking_issues")))
        action = qa_retry_action(snapshot.iteration + 1, verdict)
        if action == QARetryAction.ESCALATE:
            return f"QA rejected after {snapshot.iteration + 1} attempts: escalate to a human"
        if action == QARetryAction.GREEN:
            return f"QA rejected ({snapshot.number('blocking_issues'):g} blocking): fix in GREEN and re-run QA"

    if breaker.state == CircuitState.HALF_OPEN:
        return f"No progress for {breaker.no_progress_count} iterations: change approach before the breaker opens"

    if evaluation is not None and evaluation.failed_checks:
        return f"Continue {phase.value}: {', '.join(evaluation.failed_checks)} pending"

    return f"Continue {phase.value}"
