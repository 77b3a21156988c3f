"""
PRP Loop Error Hierarchy

Provides a structured error framework for consistent error handling across the loop core.
All custom exceptions include error categories, recoverability flags, and error codes.
"""

from enum import Enum
from typing import Optional, Dict, Any


class ErrorCategory(str, Enum):
    """Categories of errors for grouping and monitoring"""
    STATE = "state"
    CIRCUIT_BREAKER = "circuit_breaker"
    RATE_LIMIT = "rate_limit"
    WORKER = "worker"
    CONFIGURATION = "configuration"


class PRPLoopError(Exception):
    """
    Base exception for all loop core errors.

    Attributes:
        category: Error category for grouping
        recoverable: Whether the error can be recovered from
        error_code: Unique error code for tracking
        context: Additional context about the error
    """
    category: ErrorCategory = ErrorCategory.STATE
    error_code: str = "UNKNOWN"

    def __init__(
        self,
        message: str,
        recoverable: bool = False,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.recoverable = recoverable
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/status output"""
        return {
            "error_code": self.error_code,
            "category": self.category.value,
            "message": str(self),
            "recoverable": self.recoverable,
            "context": self.context
        }


# ============================================================================
# Session State Errors
# ============================================================================

class StateError(PRPLoopError):
    """Base class for session state errors"""
    category = ErrorCategory.STATE
    error_code = "STATE_ERROR"


class StateCorruptionError(StateError):
    """A persisted record is malformed or violates a session invariant"""
    error_code = "STATE_CORRUPTION"

    def __init__(self, path: str, reason: str, **kwargs):
        super().__init__(f"Corrupted state record {path}: {reason}", **kwargs)
        self.context["path"] = path
        self.context["reason"] = reason


class SessionNotFoundError(StateError):
    """No persisted session with this id"""
    error_code = "SESSION_NOT_FOUND"

    def __init__(self, session_id: str, **kwargs):
        super().__init__(f"Session not found: {session_id}", **kwargs)
        self.context["session_id"] = session_id


class TerminalSessionError(StateError):
    """Mutation attempted on a completed or halted session"""
    error_code = "SESSION_TERMINAL"

    def __init__(self, session_id: str, status: str, **kwargs):
        super().__init__(f"Session {session_id} is {status} and cannot be modified", **kwargs)
        self.context["session_id"] = session_id
        self.context["status"] = status


class InvalidTransitionError(StateError):
    """Requested status or phase change is not allowed"""
    error_code = "INVALID_TRANSITION"

    def __init__(self, message: str, current: Optional[str] = None, requested: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        if current:
            self.context["current"] = current
        if requested:
            self.context["requested"] = requested


# ============================================================================
# Circuit Breaker Errors
# ============================================================================

class CircuitBreakerError(PRPLoopError):
    """Base class for circuit breaker errors"""
    category = ErrorCategory.CIRCUIT_BREAKER
    error_code = "CB_ERROR"


class CircuitOpenError(CircuitBreakerError):
    """Circuit breaker is OPEN; no phase worker may be invoked until reset"""
    error_code = "CB_OPEN"

    def __init__(self, reason: Optional[str] = None, **kwargs):
        super().__init__(f"Circuit breaker is OPEN: {reason or 'no reason recorded'}", **kwargs)
        self.context["open_reason"] = reason


# ============================================================================
# Rate Limit Errors
# ============================================================================

class RateLimitError(PRPLoopError):
    """Base class for rate limit errors"""
    category = ErrorCategory.RATE_LIMIT
    error_code = "RATE_LIMIT"


class HourlyLimitExceededError(RateLimitError):
    """Hourly call budget exhausted; an explicit decision is required"""
    error_code = "HOURLY_LIMIT"

    def __init__(self, calls_made: int, limit: int, next_reset: Optional[str] = None, **kwargs):
        super().__init__(f"Hourly call limit reached ({calls_made}/{limit})", recoverable=True, **kwargs)
        self.context["calls_made"] = calls_made
        self.context["limit"] = limit
        if next_reset:
            self.context["next_reset"] = next_reset


class CooldownActiveError(RateLimitError):
    """Provider cooldown window is active"""
    error_code = "COOLDOWN_ACTIVE"

    def __init__(self, resume_at: str, **kwargs):
        super().__init__(f"Provider cooldown active until {resume_at}", recoverable=True, **kwargs)
        self.context["resume_at"] = resume_at


# ============================================================================
# Phase Worker Errors
# ============================================================================

class WorkerError(PRPLoopError):
    """Base class for phase worker errors"""
    category = ErrorCategory.WORKER
    error_code = "WORKER_ERROR"

    def __init__(self, message: str, phase: Optional[str] = None, **kwargs):
        kwargs.setdefault("recoverable", True)
        super().__init__(message, **kwargs)
        if phase:
            self.context["phase"] = phase


class WorkerReportError(WorkerError):
    """Worker returned a report that does not match the envelope"""
    error_code = "WORKER_REPORT"


class ProviderOverloadedError(WorkerError):
    """Worker signalled that the external provider is overloaded"""
    error_code = "PROVIDER_OVERLOADED"


# ============================================================================
# Configuration Errors
# ============================================================================

class ConfigurationError(PRPLoopError):
    """Base class for configuration errors"""
    category = ErrorCategory.CONFIGURATION
    error_code = "CONFIG_ERROR"

    def __init__(self, message: str, **kwargs):
        super().__init__(message, recoverable=False, **kwargs)


class InvalidConfigError(ConfigurationError):
    """Configuration value is invalid"""
    error_code = "CONFIG_INVALID"

    def __init__(self, config_key: str, value: Any, reason: str, **kwargs):
        super().__init__(
            f"Invalid config '{config_key}' = {value}: {reason}",
            **kwargs
        )
        self.context["config_key"] = config_key
        self.context["value"] = str(value)
        self.context["reason"] = reason
