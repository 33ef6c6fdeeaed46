"""Custom exceptions for rolloutctl."""

from typing import Any


class RolloutError(Exception):
    """Base exception for all rolloutctl errors."""

    cause = "error"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message


class ConfigError(RolloutError):
    """Configuration-related errors."""

    cause = "config"


class PlatformError(RolloutError):
    """Errors reported by the target platform API."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.status_code = status_code


class ValidationFault(RolloutError):
    """Malformed deployment plan or a rejected run request.

    Raised before any side effect and never retried.
    """

    cause = "validation"

    def __init__(
        self,
        message: str,
        errors: list[str] | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.errors = errors or []


class ProbeFailure(RolloutError):
    """A health check gate did not observe a healthy service."""

    cause = "probe"


class GateFailure(RolloutError):
    """Observed metrics violated the analysis thresholds."""

    cause = "gate"

    def __init__(
        self,
        message: str,
        violations: list[str] | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.violations = violations or []


class TransportFault(RolloutError):
    """A traffic or apply call failed after exhausting its retries."""

    cause = "transport"

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        attempts: int = 0,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.operation = operation
        self.attempts = attempts


class TimeoutFault(RolloutError):
    """A stability, hold or run wait exceeded its bound."""

    cause = "timeout"

    def __init__(
        self,
        message: str,
        timeout_seconds: float | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.timeout_seconds = timeout_seconds


class CancelledFault(RolloutError):
    """The run was cancelled by its caller."""

    cause = "cancelled"
