"""
Error types for the SpectraBox update subsystem.

This module defines the UpdaterError base class, its domain-specific
subclasses, and the mapping from raw exceptions to operator-safe error
categories. Observers and API callers only ever see the category messages
defined here, never raw exception text.
"""

from __future__ import annotations

import errno
from enum import Enum
from typing import Any


class UpdaterError(Exception):
    """
    Base exception class for update subsystem errors.

    Attributes:
        error_code: Machine-readable error code (e.g., "invalid_argument",
            "NETWORK_ERROR", "UPDATE_IN_PROGRESS").
        message: Human-readable error message.
        details: Optional structured details (e.g., paths, versions).

    Example:
        >>> raise UpdaterError(
        ...     error_code="invalid_argument",
        ...     message="Version string contains invalid characters",
        ...     details={"version": "1.0;rm"},
        ... )
    """

    def __init__(
        self,
        error_code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize an UpdaterError.

        Args:
            error_code: Error code string identifying the error category.
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


class PermissionDeniedError(UpdaterError):
    """Error raised when the process lacks permission for a file or action."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a PermissionDeniedError."""
        super().__init__(
            error_code="permission_denied", message=message, details=details
        )


class FailedPreconditionError(UpdaterError):
    """
    Error raised when a precondition for the operation is not met.

    Used when an orchestration run is requested without an available update,
    or when the update script fails validation.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a FailedPreconditionError."""
        super().__init__(
            error_code="failed_precondition", message=message, details=details
        )


class ResolverError(UpdaterError):
    """
    Error raised by the GitHub release resolver.

    The error code is one of NETWORK_ERROR, RATE_LIMIT_EXCEEDED,
    REQUEST_TIMEOUT, REPOSITORY_NOT_FOUND, INVALID_RESPONSE, INVALID_REQUEST
    or GITHUB_API_ERROR.

    Attributes:
        retryable: Whether retrying later may succeed.
    """

    def __init__(
        self,
        error_code: str,
        message: str,
        *,
        retryable: bool = False,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize a ResolverError."""
        super().__init__(error_code=error_code, message=message, details=details)
        self.retryable = retryable

    def to_dict(self) -> dict[str, Any]:
        """Convert the error to a dictionary, including retryability."""
        data = super().to_dict()
        data["retryable"] = self.retryable
        return data


class RequestRejectedError(UpdaterError):
    """
    Error raised by the request guard when a request must be refused.

    Attributes:
        status_code: HTTP-like status code for the rejection.
        retry_after: Seconds until the client may retry (rate limiting only).
    """

    def __init__(
        self,
        error_code: str,
        message: str,
        *,
        status_code: int = 400,
        retry_after: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize a RequestRejectedError."""
        super().__init__(error_code=error_code, message=message, details=details)
        self.status_code = status_code
        self.retry_after = retry_after


# =============================================================================
# Error categories
# =============================================================================


class ErrorCategory(str, Enum):
    """Operator-facing categories of update failures."""

    NETWORK = "network"
    PERMISSION = "permission"
    DISK_SPACE = "disk_space"
    SCRIPT = "script"
    PREREQUISITES = "prerequisites"
    BACKUP = "backup"
    TIMEOUT = "timeout"
    GENERIC = "generic"


CATEGORY_MESSAGES: dict[ErrorCategory, str] = {
    ErrorCategory.NETWORK: (
        "Network error during update. Please check your internet connection "
        "and try again."
    ),
    ErrorCategory.PERMISSION: (
        "Permission denied during update. The service may need elevated "
        "privileges to install updates."
    ),
    ErrorCategory.DISK_SPACE: (
        "Insufficient disk space to complete the update. Free up space and "
        "try again."
    ),
    ErrorCategory.SCRIPT: (
        "The update script failed. The previous version remains in place."
    ),
    ErrorCategory.PREREQUISITES: (
        "Update prerequisites are not met. The service continues running "
        "unchanged."
    ),
    ErrorCategory.BACKUP: (
        "Could not record the current version before updating. The update "
        "was aborted for safety."
    ),
    ErrorCategory.TIMEOUT: (
        "The update took too long and was stopped. The service will restart."
    ),
    ErrorCategory.GENERIC: "The update failed due to an unexpected error.",
}

CATEGORY_ACTIONS: dict[ErrorCategory, list[str]] = {
    ErrorCategory.NETWORK: [
        "Check the network connection of the device",
        "Verify that github.com is reachable",
        "Try the update again in a few minutes",
    ],
    ErrorCategory.PERMISSION: [
        "Make sure the service user may run the update script with sudo",
        "Check ownership of the installation directory",
    ],
    ErrorCategory.DISK_SPACE: [
        "Remove old logs or recordings to free disk space",
        "Check available space with 'df -h'",
    ],
    ErrorCategory.SCRIPT: [
        "Review the service logs for the script output",
        "Run the install script manually to see the full error",
    ],
    ErrorCategory.PREREQUISITES: [
        "Verify that the update script exists in the scripts directory",
        "Reinstall the application if the script is missing",
    ],
    ErrorCategory.BACKUP: [
        "Check that the version file is readable",
        "Try the update again",
    ],
    ErrorCategory.TIMEOUT: [
        "Check the network speed of the device",
        "Try the update again when the device is idle",
    ],
    ErrorCategory.GENERIC: [
        "Review the service logs",
        "Try the update again",
    ],
}

_RETRYABLE_CATEGORIES = {
    ErrorCategory.NETWORK,
    ErrorCategory.TIMEOUT,
    ErrorCategory.SCRIPT,
    ErrorCategory.BACKUP,
    ErrorCategory.GENERIC,
}

_KEYWORD_CATEGORIES: list[tuple[tuple[str, ...], ErrorCategory]] = [
    (("enospc", "no space left", "disk full", "disk space"), ErrorCategory.DISK_SPACE),
    (("eacces", "eperm", "permission denied", "not permitted"), ErrorCategory.PERMISSION),
    (
        ("enotfound", "econnrefused", "econnreset", "network", "dns", "unreachable"),
        ErrorCategory.NETWORK,
    ),
    (("timed out", "timeout"), ErrorCategory.TIMEOUT),
    (("backup",), ErrorCategory.BACKUP),
    (("prerequisite", "validation", "not found", "missing"), ErrorCategory.PREREQUISITES),
    (("script", "exit code"), ErrorCategory.SCRIPT),
]


class StepFailedError(UpdaterError):
    """
    Error raised when an orchestration pipeline step fails.

    Attributes:
        step: Name of the pipeline step that failed.
        category: ErrorCategory used for the operator-facing message.
    """

    def __init__(
        self,
        step: str,
        message: str,
        *,
        category: ErrorCategory = ErrorCategory.GENERIC,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize a StepFailedError."""
        super().__init__(error_code="step_failed", message=message, details=details)
        self.step = step
        self.category = category


def categorize_error(exc: BaseException) -> ErrorCategory:
    """
    Map an exception to an operator-facing error category.

    Args:
        exc: The exception raised during an update operation.

    Returns:
        The matching ErrorCategory, GENERIC when nothing matches.
    """
    if isinstance(exc, StepFailedError):
        return exc.category

    if isinstance(exc, ResolverError):
        if exc.error_code == "REQUEST_TIMEOUT":
            return ErrorCategory.TIMEOUT
        return ErrorCategory.NETWORK

    if isinstance(exc, PermissionDeniedError | PermissionError):
        return ErrorCategory.PERMISSION

    if isinstance(exc, TimeoutError):
        return ErrorCategory.TIMEOUT

    if isinstance(exc, OSError) and exc.errno is not None:
        if exc.errno == errno.ENOSPC:
            return ErrorCategory.DISK_SPACE
        if exc.errno in (errno.EACCES, errno.EPERM):
            return ErrorCategory.PERMISSION

    if isinstance(exc, FailedPreconditionError):
        return ErrorCategory.PREREQUISITES

    text = str(exc).lower()
    for keywords, category in _KEYWORD_CATEGORIES:
        if any(keyword in text for keyword in keywords):
            return category

    return ErrorCategory.GENERIC


def user_message_for(category: ErrorCategory) -> str:
    """Return the operator-safe message for a category."""
    return CATEGORY_MESSAGES[category]


def troubleshooting_for(category: ErrorCategory) -> dict[str, Any]:
    """
    Build remediation hints for a category.

    Returns:
        Dictionary with canRetry and suggestedActions keys.
    """
    return {
        "canRetry": category in _RETRYABLE_CATEGORIES,
        "suggestedActions": list(CATEGORY_ACTIONS[category]),
    }
