"""Core utilities and shared components for rolloutctl."""

# Note: Import context lazily to avoid circular imports
# Use: from rolloutctl.core.context import RolloutContext, pass_context
from rolloutctl.core.exceptions import (
    CancelledFault,
    ConfigError,
    GateFailure,
    PlatformError,
    ProbeFailure,
    RolloutError,
    TimeoutFault,
    TransportFault,
    ValidationFault,
)
from rolloutctl.core.output import OutputFormatter, console

__all__ = [
    "RolloutError",
    "ConfigError",
    "PlatformError",
    "ValidationFault",
    "ProbeFailure",
    "GateFailure",
    "TransportFault",
    "TimeoutFault",
    "CancelledFault",
    "OutputFormatter",
    "console",
]
