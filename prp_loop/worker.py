"""
Phase Worker Interface
======================

Abstract interface for phase workers. The loop never looks inside the
work; it only hands over a WorkerContext and reads back a WorkerReport.
"""

import inspect
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from pydantic import BaseModel, Field, ValidationError, field_validator

from prp_loop.errors import WorkerReportError
from prp_loop.models import CounterValue, Phase, check_counter_names


@dataclass
class WorkerContext:
    """What a worker is told about the tick it runs in."""
    phase: Phase
    iteration: int
    session_id: str
    prior_metrics: Optional[Dict[str, CounterValue]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "iteration": self.iteration,
            "session_id": self.session_id,
            "prior_metrics": dict(self.prior_metrics) if self.prior_metrics is not None else None,
        }


class WorkerReport(BaseModel):
    """
    Structured envelope returned by a worker.

    exit_signal is gate 2 and is False unless the worker asserts it.
    exit_signal_derived marks a signal the worker computed from the same
    metrics as gate 1 instead of asserting independently.
    """
    metrics: Dict[str, CounterValue] = Field(default_factory=dict)
    exit_signal: bool = False
    exit_signal_derived: bool = False
    error: Optional[str] = None
    provider_overloaded: bool = False

    @field_validator('metrics')
    @classmethod
    def validate_metric_names(cls, v: Dict[str, CounterValue]) -> Dict[str, CounterValue]:
        return check_counter_names(v)

    @classmethod
    def from_raw(cls, data: Any, phase: Optional[Phase] = None) -> 'WorkerReport':
        """
        Validate a raw report.

        Raises:
            WorkerReportError: Report does not match the envelope
        """
        if isinstance(data, cls):
            return data
        if not isinstance(data, dict):
            raise WorkerReportError(
                f"Worker report must be a mapping, got {type(data).__name__}",
                phase=phase.value if phase else None,
            )
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise WorkerReportError(
                f"Invalid worker report: {e.errors()[0]['msg']}",
                phase=phase.value if phase else None,
            )


class IPhaseWorker(ABC):
    """
    Abstract interface for phase workers.

    Implementations may block for as long as the work takes; the loop has
    exactly one invocation in flight per session.
    """

    @abstractmethod
    async def invoke(self, context: WorkerContext) -> WorkerReport:
        """
        Run one iteration of the given phase.

        Args:
            context: Phase, iteration, session id and the previous metrics

        Returns:
            WorkerReport for this iteration
        """
        pass


WorkerFn = Callable[[WorkerContext], Union[WorkerReport, Dict[str, Any], Awaitable[Any]]]


class CallableWorker(IPhaseWorker):
    """Adapts a plain or async function returning a report or a dict."""

    def __init__(self, fn: WorkerFn):
        self.fn = fn

    async def invoke(self, context: WorkerContext) -> WorkerReport:
        result = self.fn(context)
        if inspect.isawaitable(result):
            result = await result
        return WorkerReport.from_raw(result, phase=context.phase)
