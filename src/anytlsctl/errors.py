"""
Error types for the AnyTLS lifecycle manager.

This module defines the LifecycleError base class and its subclasses. Workflows
raise these instead of returning ad-hoc status codes; the CLI layer maps them
to process exit codes.

Failures are split by where they happen relative to the binary swap:
- Pre-mutation (abort, nothing on disk changed): VersionResolutionError,
  DownloadError, ExtractError, ArtifactLayoutError, InstallError.
- Post-mutation (trigger the rollback path): ServiceStartError,
  HealthCheckFailure.
- Fatal before any workflow runs: LockContentionError, PermissionDeniedError.
"""

from __future__ import annotations

from typing import Any


class LifecycleError(Exception):
    """
    Base exception class for lifecycle errors.

    Attributes:
        error_code: Internal error code string (e.g., "invalid_argument",
            "download_failed", "lock_contention").
        message: Human-readable error message.
        details: Optional structured details (e.g., paths, versions, URLs).

    Example:
        >>> raise LifecycleError(
        ...     error_code="invalid_argument",
        ...     message="Port must be between 1 and 65535",
        ...     details={"port": 70000},
        ... )
    """

    def __init__(
        self,
        error_code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize a LifecycleError.

        Args:
            error_code: Internal error code string identifying the error category.
            message: Human-readable error message.
            details: Optional dictionary with structured error details.
        """
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        """Return a detailed string representation."""
        return (
            f"{self.__class__.__name__}("
            f"error_code={self.error_code!r}, "
            f"message={self.message!r}, "
            f"details={self.details!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the error to a dictionary for serialization.

        Returns:
            Dictionary with error_code, message, and details.
        """
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


# =============================================================================
# Generic errors
# =============================================================================


class InvalidArgumentError(LifecycleError):
    """Error raised when an operator-supplied value is invalid."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InvalidArgumentError."""
        super().__init__(
            error_code="invalid_argument", message=message, details=details
        )


class PermissionDeniedError(LifecycleError):
    """
    Error raised when the tool is not running with elevated privilege.

    Every mutating workflow writes under /etc and talks to systemd, so this
    is checked before any work starts.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a PermissionDeniedError."""
        super().__init__(
            error_code="permission_denied", message=message, details=details
        )


class UnavailableError(LifecycleError):
    """Error raised when a host facility (systemctl, journalctl) is unavailable."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an UnavailableError."""
        super().__init__(error_code="unavailable", message=message, details=details)


class FailedPreconditionError(LifecycleError):
    """
    Error raised when a precondition for the workflow is not met.

    Examples: upgrading a host where nothing is installed, uninstalling
    without confirmation, or running on an unsupported CPU architecture.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a FailedPreconditionError."""
        super().__init__(
            error_code="failed_precondition", message=message, details=details
        )


class InternalError(LifecycleError):
    """Error raised for unexpected internal errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InternalError."""
        super().__init__(error_code="internal", message=message, details=details)


# =============================================================================
# Pre-mutation errors
# =============================================================================


class VersionResolutionError(LifecycleError):
    """Raised when neither the metadata endpoint nor the redirect yields a tag."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a VersionResolutionError."""
        super().__init__(
            error_code="version_resolution_failed", message=message, details=details
        )


class DownloadError(LifecycleError):
    """Raised when the release artifact cannot be downloaded."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a DownloadError."""
        super().__init__(
            error_code="download_failed", message=message, details=details
        )


class ExtractError(LifecycleError):
    """Raised when the downloaded archive is unreadable or corrupt."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an ExtractError."""
        super().__init__(error_code="extract_failed", message=message, details=details)


class ArtifactLayoutError(LifecycleError):
    """Raised when the archive does not contain the expected executable."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an ArtifactLayoutError."""
        super().__init__(
            error_code="artifact_layout_invalid", message=message, details=details
        )


class InstallError(LifecycleError):
    """Raised when placing the new binary on disk fails."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InstallError."""
        super().__init__(error_code="install_failed", message=message, details=details)


# =============================================================================
# Post-mutation errors
# =============================================================================


class ServiceStartError(LifecycleError):
    """Raised when the supervisor refuses to start or restart the service."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a ServiceStartError."""
        super().__init__(
            error_code="service_start_failed", message=message, details=details
        )


class HealthCheckFailure(LifecycleError):
    """
    Raised when the composite health check does not pass.

    Attributes:
        reason: Which check failed ("service_inactive" or "port_not_listening").
    """

    def __init__(
        self,
        reason: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize a HealthCheckFailure."""
        super().__init__(
            error_code="health_check_failed",
            message=message,
            details={"reason": reason, **(details or {})},
        )
        self.reason = reason


# =============================================================================
# Fatal errors
# =============================================================================


class LockContentionError(LifecycleError):
    """Raised when another invocation already holds the management lock."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a LockContentionError."""
        super().__init__(
            error_code="lock_contention", message=message, details=details
        )
