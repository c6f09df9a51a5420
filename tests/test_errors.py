"""Tests for core/errors.py.

Tests for the exception hierarchy and CLI exit code mapping.
"""

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


class TestExceptions:
    """Tests for exception classes."""

    def test_exit_codes(self):
        """Test each error maps to its exit code."""
        assert ConfigurationError("x").exit_code == ExitCode.CONFIG_ERROR
        assert ProvisioningError("x").exit_code == ExitCode.PROVISIONING_ERROR
        assert ValidationError("x").exit_code == ExitCode.VALIDATION_ERROR
        assert LockError("x").exit_code == ExitCode.LOCK_ERROR
        assert OperationTimeoutError("x").exit_code == ExitCode.TIMEOUT_ERROR
        assert TableKeeperError("x").exit_code == ExitCode.UNKNOWN_ERROR

    def test_not_found_is_provisioning_error(self):
        """Test the not-found sentinel is a provisioning error."""
        error = ResourceNotFoundError("gone")

        assert isinstance(error, ProvisioningError)
        assert error.exit_code == ExitCode.PROVISIONING_ERROR

    def test_details_default_empty(self):
        """Test details default to an empty dict."""
        error = LockError("held")

        assert error.message == "held"
        assert error.details == {}
        assert str(error) == "held"


class TestFormatErrorMessage:
    """Tests for format_error_message."""

    def test_without_details(self):
        """Test message without details is unchanged."""
        assert format_error_message(LockError("held")) == "held"

    def test_with_details(self):
        """Test details are appended."""
        error = LockError("held", details={"owner": "worker-a"})

        assert format_error_message(error) == "held (owner=worker-a)"


class TestMainWithErrorHandling:
    """Tests for main_with_error_handling decorator."""

    def test_success_passthrough(self):
        """Test return value passes through."""

        @main_with_error_handling(log_errors=False)
        def command():
            return 0

        assert command() == 0

    def test_table_keeper_error_exit_code(self):
        """Test known errors return their exit code."""

        @main_with_error_handling(log_errors=False)
        def command():
            raise ValidationError("index mismatch")

        assert command() == ExitCode.VALIDATION_ERROR

    def test_keyboard_interrupt(self):
        """Test Ctrl-C returns 130."""

        @main_with_error_handling(log_errors=False)
        def command():
            raise KeyboardInterrupt

        assert command() == 130

    def test_unexpected_error(self):
        """Test unknown exceptions return 127."""

        @main_with_error_handling(log_errors=False)
        def command():
            raise RuntimeError("boom")

        assert command() == ExitCode.UNKNOWN_ERROR

    def test_logs_by_default(self):
        """Test errors are logged without raising."""

        @main_with_error_handling()
        def command():
            raise LockError("held", details={"owner": "worker-a"})

        assert command() == ExitCode.LOCK_ERROR
