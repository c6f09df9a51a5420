"""Core definitions shared by every worker component."""

from tablekeeper.core.errors import (
    ConfigurationError,
    ExitCode,
    LockError,
    OperationTimeoutError,
    ProvisioningError,
    ResourceNotFoundError,
    TableKeeperError,
    ValidationError,
    format_error_message,
    main_with_error_handling,
)

__all__ = [
    "ExitCode",
    "TableKeeperError",
    "ConfigurationError",
    "LockError",
    "ProvisioningError",
    "ResourceNotFoundError",
    "ValidationError",
    "OperationTimeoutError",
    "main_with_error_handling",
    "format_error_message",
]
