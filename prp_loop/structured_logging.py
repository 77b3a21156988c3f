"""
Structured Logging for the PRP loop

Two output modes:
- "json": one JSON object per line, for unattended runs and log files
- "dev": a compact coloured line for terminals

Every record emitted while a tick runs carries that tick's context
(session, phase, iteration and a short correlation id), so all lines of one
tick can be grouped without threading ids through every call.
"""

import json
import logging
import sys
import time
from contextvars import ContextVar
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel


@dataclass(frozen=True)
class TickContext:
    """Identifies the tick a log record belongs to."""
    session_id: str
    phase: str
    iteration: int
    correlation_id: Optional[str] = None

    @property
    def label(self) -> str:
        """Short form for terminals, e.g. 'GREEN#2 7f3c1a2b'."""
        return f"{self.phase}#{self.iteration} {self.session_id[:8]}"


_tick_context: ContextVar[Optional[TickContext]] = ContextVar('prp_tick_context', default=None)

# Attributes every LogRecord has; anything else came in through extra=
_STANDARD_ATTRS = frozenset(logging.LogRecord('', 0, '', 0, '', (), None).__dict__) | {'message', 'asctime'}


def set_tick_context(
    session_id: str,
    phase: str,
    iteration: int,
    correlation_id: Optional[str] = None,
) -> TickContext:
    """Attach a tick context to all records logged from the current task."""
    context = TickContext(session_id, phase, iteration, correlation_id)
    _tick_context.set(context)
    return context


def current_tick_context() -> Optional[TickContext]:
    return _tick_context.get()


def clear_tick_context() -> None:
    _tick_context.set(None)


def to_jsonable(value: Any) -> Any:
    """Convert loop types (enums, models, datetimes, paths) into JSON values."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, BaseModel):
        return value.model_dump(mode='json')
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_jsonable(v) for v in value]
    return str(value)


def record_extras(record: logging.LogRecord) -> Dict[str, Any]:
    """Fields passed through extra= on the logging call."""
    return {
        key: value for key, value in record.__dict__.items()
        if key not in _STANDARD_ATTRS and not key.startswith('_')
    }


class StructuredLogFormatter(logging.Formatter):
    """
    JSON formatter.

    {
        "timestamp": "2026-01-05T10:30:45.123Z",
        "level": "WARNING",
        "logger": "prp_loop.circuit_breaker",
        "message": "Circuit breaker HALF_OPEN ...",
        "location": {"file": "circuit_breaker.py", "line": 120, "function": "record_tick"},
        "tick": {"session_id": "...", "phase": "GREEN", "iteration": 2, "correlation_id": "a1b2c3d4"},
        "extra": {...}
    }
    """

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        entry: Dict[str, Any] = {
            "timestamp": created.strftime('%Y-%m-%dT%H:%M:%S.') + f"{created.microsecond // 1000:03d}Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": {"file": record.filename, "line": record.lineno, "function": record.funcName},
        }

        context = _tick_context.get()
        if context is not None:
            entry["tick"] = {k: v for k, v in asdict(context).items() if v is not None}

        extras = record_extras(record)
        if extras:
            entry["extra"] = to_jsonable(extras)

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "stacktrace": self.formatException(record.exc_info),
            }

        return json.dumps(entry, ensure_ascii=False)


class DevelopmentFormatter(logging.Formatter):
    """
    One line per record for terminals:

    10:30:45.123 WARNING  circuit_breaker  [GREEN#2 7f3c1a2b] No progress for 1 iteration(s) breaker=HALF_OPEN
    """

    LEVEL_COLORS = {
        logging.DEBUG: '\033[2m',
        logging.INFO: '\033[32m',
        logging.WARNING: '\033[33m',
        logging.ERROR: '\033[31m',
        logging.CRITICAL: '\033[1;31m',
    }
    RESET = '\033[0m'

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors and sys.stderr.isatty()

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        level = f"{record.levelname:<8}"
        if self.use_colors:
            level = f"{self.LEVEL_COLORS.get(record.levelno, '')}{level}{self.RESET}"

        # prp_loop.orchestrator -> orchestrator
        source = record.name.rsplit('.', 1)[-1]
        context = _tick_context.get()
        tick = f"[{context.label}] " if context else ""
        extras = " ".join(f"{k}={to_jsonable(v)}" for k, v in record_extras(record).items())

        line = f"{created:%H:%M:%S}.{created.microsecond // 1000:03d} {level} {source:<16} {tick}{record.getMessage()}"
        if extras:
            line += f" {extras}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class PerformanceLogger:
    """
    Times a block and logs the duration under `prp_loop.timing`.

    DEBUG when it finishes in time, WARNING past `slow_after_s`, ERROR when
    the block raises (the exception still propagates).

    Usage:
        with PerformanceLogger("worker_invoke", phase="GREEN", iteration=2):
            report = await worker.invoke(context)
    """

    logger = logging.getLogger("prp_loop.timing")

    def __init__(self, operation: str, slow_after_s: float = 600.0, **context: Any):
        self.operation = operation
        self.slow_after_s = slow_after_s
        self.context = context
        self.elapsed_s = 0.0
        self._started = 0.0

    def __enter__(self) -> 'PerformanceLogger':
        self._started = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.elapsed_s = time.perf_counter() - self._started
        extra = {"operation": self.operation, "elapsed_s": round(self.elapsed_s, 3), **self.context}

        if exc_type is not None:
            extra["error"] = f"{exc_type.__name__}: {exc_val}"
            self.logger.error(f"{self.operation} failed after {self.elapsed_s:.1f}s", extra=extra)
        elif self.elapsed_s > self.slow_after_s:
            self.logger.warning(f"{self.operation} slow: {self.elapsed_s:.1f}s", extra=extra)
        else:
            self.logger.debug(f"{self.operation} took {self.elapsed_s:.3f}s", extra=extra)


def setup_structured_logging(
    level: Union[str, int] = "INFO",
    format_type: str = "json",
    log_file: Optional[Path] = None,
) -> logging.Logger:
    """
    Configure the root logger for a loop process.

    Args:
        level: Level name or number
        format_type: "json" or "dev" for the console; a log file is always JSON
        log_file: Optional path that receives JSON lines as well

    Returns:
        The root logger

    Raises:
        ValueError: Unknown level or format
    """
    if format_type not in ("json", "dev"):
        raise ValueError(f"Unknown log format: {format_type!r} (expected 'json' or 'dev')")
    numeric_level = level if isinstance(level, int) else logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        raise ValueError(f"Unknown log level: {level!r}")

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(StructuredLogFormatter() if format_type == "json" else DevelopmentFormatter())
    handlers = [console]

    if log_file is not None:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(StructuredLogFormatter())
        handlers.append(file_handler)

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(numeric_level)

    # uvicorn access lines only at WARNING and above
    logging.getLogger("uvicorn.access").setLevel(max(numeric_level, logging.WARNING))
    return root


def get_logger(name: str) -> logging.Logger:
    """Module logger; use as `logger = get_logger(__name__)`."""
    return logging.getLogger(name)
