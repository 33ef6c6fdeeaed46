"""Logging setup for rolloutctl.

Rollout engines log through :class:`StructuredLogger`, which carries the
run identity (run id, target, strategy) as bound fields so interleaved
output from concurrent runs can be told apart.
"""

import logging
import sys
from enum import Enum
from typing import Any

from rich.console import Console
from rich.logging import RichHandler

ROOT_LOGGER = "rolloutctl"

# Client libraries that log every request at INFO/DEBUG
CHATTY_LOGGERS = ("urllib3", "httpx", "httpcore", "kubernetes")

# Bound fields rendered first, in this order
RUN_FIELDS = ("run", "target", "strategy")


class LogLevel(str, Enum):
    """Log level enumeration."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"

    @property
    def numeric(self) -> int:
        return getattr(logging, self.value.upper())


def level_for_verbosity(verbose: int, quiet: bool, default: LogLevel) -> LogLevel:
    """Map -v/-q flags onto a log level, falling back to the configured one."""
    if verbose >= 2:
        return LogLevel.DEBUG
    if verbose == 1:
        return LogLevel.INFO
    if quiet:
        return LogLevel.ERROR
    return default


def setup_logging(
    level: LogLevel = LogLevel.INFO,
    rich_output: bool = True,
) -> logging.Logger:
    """Install a single stderr handler on the root logger.

    Args:
        level: The logging level
        rich_output: Render through Rich instead of a plain formatter

    Returns:
        The rolloutctl package logger
    """
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler: logging.Handler
    if rich_output:
        handler = RichHandler(
            console=Console(stderr=True),
            show_path=False,
            rich_tracebacks=True,
            markup=False,
        )
        handler.setFormatter(logging.Formatter("%(message)s"))
    else:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s %(levelname)-7s %(name)s: %(message)s",
                datefmt="%Y-%m-%dT%H:%M:%S",
            )
        )

    root_logger.addHandler(handler)
    root_logger.setLevel(level.numeric)

    for name in CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, level.numeric))

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level.numeric)
    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the rolloutctl namespace.

    Module names that already start with the package name are used as-is,
    so ``get_logger(__name__)`` works from inside the package.
    """
    if name == ROOT_LOGGER or name.startswith(f"{ROOT_LOGGER}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


def format_fields(fields: dict[str, Any]) -> str:
    """Render bound fields as ``key=value`` pairs, run identity first."""
    ordered = [k for k in RUN_FIELDS if k in fields]
    ordered += [k for k in fields if k not in RUN_FIELDS]
    return " ".join(f"{key}={fields[key]}" for key in ordered if fields[key] is not None)


class StructuredLogger:
    """Logger that appends bound context fields to every message."""

    def __init__(self, name: str, fields: dict[str, Any] | None = None):
        self._logger = get_logger(name)
        self._fields: dict[str, Any] = dict(fields or {})

    @classmethod
    def for_run(cls, name: str, run_id: str, **fields: Any) -> "StructuredLogger":
        """Logger bound to a single rollout run."""
        return cls(name, {"run": run_id, **fields})

    @property
    def name(self) -> str:
        return self._logger.name

    @property
    def fields(self) -> dict[str, Any]:
        return dict(self._fields)

    def bind(self, **fields: Any) -> "StructuredLogger":
        """Return a copy with extra fields bound."""
        return StructuredLogger(self._logger.name, {**self._fields, **fields})

    def _log(self, level: int, message: str, fields: dict[str, Any], exc_info: bool = False) -> None:
        if not self._logger.isEnabledFor(level):
            return
        rendered = format_fields({**self._fields, **fields})
        if rendered:
            message = f"{message} [{rendered}]"
        self._logger.log(level, message, exc_info=exc_info)

    def debug(self, message: str, **fields: Any) -> None:
        self._log(logging.DEBUG, message, fields)

    def info(self, message: str, **fields: Any) -> None:
        self._log(logging.INFO, message, fields)

    def warning(self, message: str, **fields: Any) -> None:
        self._log(logging.WARNING, message, fields)

    def error(self, message: str, **fields: Any) -> None:
        self._log(logging.ERROR, message, fields)

    def exception(self, message: str, **fields: Any) -> None:
        """Log at ERROR with the active traceback."""
        self._log(logging.ERROR, message, fields, exc_info=True)
