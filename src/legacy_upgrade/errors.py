"""
Error types for the legacy router upgrade tool.

This module defines the UpgradeToolError base class and the subclasses that
make up the error taxonomy of a run. Every error carries an operator-facing
remediation: the exact alternative command or transport to try next.

Fatal vs. recoverable:
- ConnectivityError, AuthError, HelperInstallError, UpgradeExecutionError
  abort the run.
- TransferError and VerificationError advance the transfer strategy chain;
  exhausting the chain is fatal.
- RebootTimeoutError is reported as a warning with manual-check guidance.
"""

from __future__ import annotations

from typing import Any


class UpgradeToolError(Exception):
    """
    Base exception class for upgrade tool errors.

    Attributes:
        error_code: Internal error code string (e.g., "connectivity",
            "auth", "transfer", "verification").
        message: Human-readable error message.
        details: Optional structured details (e.g., paths, sizes, strategy).
        remediation: Operator-actionable next step, if any.

    Example:
        >>> raise UpgradeToolError(
        ...     error_code="connectivity",
        ...     message="Cannot reach 10.13.0.1",
        ...     remediation="ping 10.13.0.1",
        ... )
    """

    def __init__(
        self,
        error_code: str,
        message: str,
        details: dict[str, Any] | None = None,
        remediation: str | None = None,
    ) -> None:
        """
        Initialize an UpgradeToolError.

        Args:
            error_code: Internal error code string identifying the error category.
            message: Human-readable error message.
            details: Optional dictionary with structured error details.
            remediation: Optional operator-facing remediation hint.
        """
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.details = details or {}
        self.remediation = remediation

    def __repr__(self) -> str:
        """Return a detailed string representation."""
        return (
            f"{self.__class__.__name__}("
            f"error_code={self.error_code!r}, "
            f"message={self.message!r}, "
            f"details={self.details!r}, "
            f"remediation={self.remediation!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the error to a dictionary for serialization.

        Returns:
            Dictionary with error_code, message, details and remediation.
        """
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
            "remediation": self.remediation,
        }


class InvalidArgumentError(UpgradeToolError):
    """Error raised for invalid operator input (missing file, bad option)."""

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        remediation: str | None = None,
    ) -> None:
        """Initialize an InvalidArgumentError."""
        super().__init__(
            error_code="invalid_argument",
            message=message,
            details=details,
            remediation=remediation,
        )


class ConnectivityError(UpgradeToolError):
    """
    Error raised when the device cannot be reached.

    Raised before any remote mutation when probing, so the device is
    guaranteed untouched.
    """

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        remediation: str | None = None,
    ) -> None:
        """Initialize a ConnectivityError."""
        super().__init__(
            error_code="connectivity",
            message=message,
            details=details,
            remediation=remediation,
        )


class AuthError(UpgradeToolError):
    """Error raised when the device rejects the credentials."""

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        remediation: str | None = None,
    ) -> None:
        """Initialize an AuthError."""
        super().__init__(
            error_code="auth",
            message=message,
            details=details,
            remediation=remediation,
        )


class TransferError(UpgradeToolError):
    """
    Error raised when one transfer strategy fails.

    Recoverable: the chain advances to the next strategy in the fixed order.
    """

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        remediation: str | None = None,
        error_code: str = "transfer",
    ) -> None:
        """Initialize a TransferError."""
        super().__init__(
            error_code=error_code,
            message=message,
            details=details,
            remediation=remediation,
        )


class VerificationError(TransferError):
    """
    Error raised when transferred content does not match the source.

    A size or hash mismatch invalidates the whole transfer; the destination
    is never trusted partially.
    """

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        remediation: str | None = None,
    ) -> None:
        """Initialize a VerificationError."""
        super().__init__(
            message=message,
            details=details,
            remediation=remediation,
            error_code="verification",
        )


class HelperInstallError(UpgradeToolError):
    """Error raised when the safe-upgrade helper cannot be installed."""

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        remediation: str | None = None,
    ) -> None:
        """Initialize a HelperInstallError."""
        super().__init__(
            error_code="helper_install",
            message=message,
            details=details,
            remediation=remediation,
        )


class UpgradeExecutionError(UpgradeToolError):
    """
    Error raised when the upgrade command fails before the reboot.

    The device is assumed unchanged.
    """

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        remediation: str | None = None,
    ) -> None:
        """Initialize an UpgradeExecutionError."""
        super().__init__(
            error_code="upgrade_execution",
            message=message,
            details=details,
            remediation=remediation,
        )


class RebootTimeoutError(UpgradeToolError):
    """
    Error raised when the device does not come back within the polling ceiling.

    Non-fatal: the device might still be mid-boot.
    """

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        remediation: str | None = None,
    ) -> None:
        """Initialize a RebootTimeoutError."""
        super().__init__(
            error_code="reboot_timeout",
            message=message,
            details=details,
            remediation=remediation,
        )


class InvalidTransitionError(UpgradeToolError):
    """Error raised for a (state, event) pair the upgrade state machine rejects."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InvalidTransitionError."""
        super().__init__(
            error_code="invalid_transition", message=message, details=details
        )


class OperationCancelledError(UpgradeToolError):
    """
    Error raised when the operator declines a prompt.

    Only possible before the upgrade command is issued.
    """

    def __init__(
        self,
        message: str = "Cancelled by operator",
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize an OperationCancelledError."""
        super().__init__(error_code="cancelled", message=message, details=details)


class BackupError(UpgradeToolError):
    """Error raised when the configuration backup cannot be taken. Never fatal."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a BackupError."""
        super().__init__(error_code="backup", message=message, details=details)
