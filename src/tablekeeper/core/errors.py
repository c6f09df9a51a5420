"""
Error taxonomy for the table provisioning worker.

Every failure the worker can surface maps to one exception type so callers
can decide how far it propagates:

- ConfigurationError: invalid settings, fatal at construction
- LockError: another instance holds the lock, aborts only the current cycle
- ProvisioningError: create/delete/describe failure after local retries
- ValidationError: post-create mismatch that self-heal could not repair
- OperationTimeoutError: a poll, describe or cycle budget ran out

Exit Codes (CLI):
- 0: Success
- 10: Configuration error
- 11: Provisioning error
- 12: Validation error
- 13: Lock held elsewhere
- 14: Timeout
- 127: Unknown/internal error
"""

from __future__ import annotations

import functools
import sys
import traceback
from enum import IntEnum
from typing import Any, Callable, TypeVar

import structlog

logger = structlog.get_logger()


class ExitCode(IntEnum):
    """Standardized exit codes for CLI commands."""

    SUCCESS = 0
    CONFIG_ERROR = 10
    PROVISIONING_ERROR = 11
    VALIDATION_ERROR = 12
    LOCK_ERROR = 13
    TIMEOUT_ERROR = 14
    UNKNOWN_ERROR = 127


class TableKeeperError(Exception):
    """Base exception carrying an exit code and structured details."""

    exit_code: ExitCode = ExitCode.UNKNOWN_ERROR
    show_traceback: bool = False

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(TableKeeperError):
    """Raised for invalid schedule, paths, table lists or flag combinations."""

    exit_code = ExitCode.CONFIG_ERROR


class LockError(TableKeeperError):
    """Raised when the infrastructure lock is held by another owner."""

    exit_code = ExitCode.LOCK_ERROR


class ProvisioningError(TableKeeperError):
    """Raised when a table store call fails beyond the local retry budget."""

    exit_code = ExitCode.PROVISIONING_ERROR


class ResourceNotFoundError(ProvisioningError):
    """Normalized "table does not exist" signal from the table store."""


class ValidationError(TableKeeperError):
    """Raised when a table does not match its descriptor after creation."""

    exit_code = ExitCode.VALIDATION_ERROR


class OperationTimeoutError(TableKeeperError):
    """Raised when a wait budget (poll, describe, cycle) is exhausted."""

    exit_code = ExitCode.TIMEOUT_ERROR


F = TypeVar("F", bound=Callable[..., int])


def main_with_error_handling(
    *,
    show_traceback: bool = False,
    log_errors: bool = True,
) -> Callable[[F], F]:
    """
    Decorator for CLI entry points that converts exceptions to exit codes.

    Args:
        show_traceback: If True, show full traceback for unexpected errors
        log_errors: If True, log errors to structlog

    Exit codes:
        - TableKeeperError subclasses: Uses the error's exit_code
        - KeyboardInterrupt: Returns 130 (standard for SIGINT)
        - Other exceptions: Returns 127 (unknown error)
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> int:
            try:
                return func(*args, **kwargs)
            except TableKeeperError as e:
                if log_errors:
                    logger.error(
                        "command_error",
                        error_type=type(e).__name__,
                        message=e.message,
                        exit_code=int(e.exit_code),
                        **e.details,
                    )
                if e.show_traceback or show_traceback:
                    traceback.print_exc(file=sys.stderr)
                return e.exit_code
            except KeyboardInterrupt:
                if log_errors:
                    logger.info("command_interrupted")
                return 130
            except Exception as e:
                if log_errors:
                    logger.error(
                        "unexpected_error",
                        error_type=type(e).__name__,
                        message=str(e),
                        exit_code=int(ExitCode.UNKNOWN_ERROR),
                    )
                if show_traceback:
                    traceback.print_exc(file=sys.stderr)
                return ExitCode.UNKNOWN_ERROR

        return wrapper  # type: ignore[return-value]

    return decorator


def format_error_message(error: TableKeeperError) -> str:
    """Format an error message for display to users."""
    msg = error.message
    if error.details:
        detail_str = ", ".join(f"{k}={v}" for k, v in error.details.items())
        msg = f"{msg} ({detail_str})"
    return msg
