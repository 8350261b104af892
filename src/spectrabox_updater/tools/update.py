"""
Update endpoint handlers for the SpectraBox server.

This module implements the handlers behind the update API:
- GET  /api/version: installed version
- GET  /api/update/check: compare with the latest upstream version
- POST /api/update/execute: start an update in the background
- GET  /api/update/status: current update status

Every handler runs the request guard first and returns a HandlerResponse
(HTTP-like status code plus JSON body). Error bodies carry a machine-readable
code, an operator-safe message and remediation hints; raw error text is only
included when logging.debug_mode is enabled.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from spectrabox_updater.errors import (
    ErrorCategory,
    FailedPreconditionError,
    RequestRejectedError,
    ResolverError,
    categorize_error,
    troubleshooting_for,
)
from spectrabox_updater.logging import get_logger

if TYPE_CHECKING:
    from spectrabox_updater.context import RequestContext
    from spectrabox_updater.security.request_guard import RequestGuard
    from spectrabox_updater.updates.github import UpdateCheckResult
    from spectrabox_updater.updates.manager import UpdateManager

logger = get_logger(__name__)

EXECUTE_SUCCESS_MESSAGE = "Update process initiated. Server will restart automatically."

# Resolver error code -> (status code, operator-safe message)
RESOLVER_ERROR_RESPONSES: dict[str, tuple[int, str]] = {
    "NETWORK_ERROR": (
        503,
        "Network error connecting to GitHub. Please check your internet connection.",
    ),
    "RATE_LIMIT_EXCEEDED": (
        429,
        "GitHub API rate limit exceeded. Please try again later.",
    ),
    "REQUEST_TIMEOUT": (
        504,
        "Request to GitHub timed out. Please check your internet connection.",
    ),
    "REPOSITORY_NOT_FOUND": (404, "Repository not found or not accessible"),
}


@dataclass
class HandlerResponse:
    """HTTP-like response produced by an update handler."""

    status_code: int
    body: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _debug_enabled(manager: UpdateManager) -> bool:
    return manager.config.logging.debug_mode


def _error_response(
    status_code: int,
    error_code: str,
    message: str,
    *,
    category: ErrorCategory | None = None,
    details: str | None = None,
    **extra: Any,
) -> HandlerResponse:
    body: dict[str, Any] = {"success": False, "error": error_code, "message": message}
    if category is not None:
        body["troubleshooting"] = troubleshooting_for(category)
    if details is not None:
        body["details"] = details
    body.update(extra)
    return HandlerResponse(status_code, body)


def _guard(request: RequestContext, guard: RequestGuard | None) -> HandlerResponse | None:
    """Run the guard; return the rejection response, if any."""
    if guard is None:
        return None
    try:
        guard.check(request)
    except RequestRejectedError as e:
        extra: dict[str, Any] = {}
        if e.retry_after is not None:
            extra["retryAfter"] = e.retry_after
        return _error_response(e.status_code, e.error_code, e.message, **extra)
    return None


def _check_failure(
    result: UpdateCheckResult,
    manager: UpdateManager,
    fallback_code: str,
    fallback_message: str,
) -> HandlerResponse:
    """Build the error response for a failed update check."""
    error_code = result.error_code or fallback_code
    status_code, message = RESOLVER_ERROR_RESPONSES.get(
        error_code, (500, fallback_message)
    )
    if error_code not in RESOLVER_ERROR_RESPONSES:
        error_code = fallback_code
    category = categorize_error(
        ResolverError(result.error_code or error_code, result.error or "")
    )
    return _error_response(
        status_code,
        error_code,
        message,
        category=category,
        details=result.error if _debug_enabled(manager) else None,
        retryable=result.retryable,
        updateAvailable=False,
        currentVersion=result.local_version,
        latestVersion="unknown",
        rateLimitInfo=result.rate_limit_info.model_dump(by_alias=True),
    )


# =============================================================================
# GET /api/version
# =============================================================================


async def handle_version(
    request: RequestContext,
    *,
    manager: UpdateManager,
    guard: RequestGuard | None = None,
) -> HandlerResponse:
    """
    Handle GET /api/version.

    Returns:
        200 with success, version and timestamp.
    """
    rejected = _guard(request, guard)
    if rejected is not None:
        return rejected

    try:
        version = await manager.current_version()
    except Exception as e:
        logger.error("Error getting version information", extra={"error": str(e)})
        return _error_response(
            500,
            "VERSION_ERROR",
            "Failed to get version information",
            category=categorize_error(e),
            details=str(e) if _debug_enabled(manager) else None,
            version="unknown",
        )

    logger.debug("Version information retrieved", extra={"version": version})
    return HandlerResponse(200, {"success": True, "version": version, "timestamp": _now()})


# =============================================================================
# GET /api/update/check
# =============================================================================


async def handle_update_check(
    request: RequestContext,
    *,
    manager: UpdateManager,
    guard: RequestGuard | None = None,
) -> HandlerResponse:
    """
    Handle GET /api/update/check.

    Returns:
        200 with updateAvailable, currentVersion, latestVersion and the
        comparison details; resolver failures map to 404/429/503/504/500.
    """
    rejected = _guard(request, guard)
    if rejected is not None:
        return rejected

    result = await manager.check_for_updates()

    if result.error is not None:
        return _check_failure(
            result, manager, "UPDATE_CHECK_ERROR", "Failed to check for updates"
        )

    body: dict[str, Any] = {
        "success": True,
        "updateAvailable": result.update_available,
        "currentVersion": result.local_version,
        "latestVersion": result.remote_version,
        "comparisonMethod": result.comparison_method,
        "lastChecked": result.last_checked,
        "repositoryUrl": result.repository_url,
        "remoteInfo": (
            result.remote_info.model_dump(by_alias=True) if result.remote_info else None
        ),
        "rateLimit": result.rate_limit_info.model_dump(by_alias=True),
    }
    if result.message:
        body["message"] = result.message
    return HandlerResponse(200, body)


# =============================================================================
# POST /api/update/execute
# =============================================================================


async def handle_update_execute(
    request: RequestContext,
    *,
    manager: UpdateManager,
    guard: RequestGuard | None = None,
) -> HandlerResponse:
    """
    Handle POST /api/update/execute.

    The update runs in a background task; this response is sent before its
    outcome is known. Progress is reported through the status broadcaster.

    Returns:
        200 when the update was started; 400 NO_UPDATE_AVAILABLE, 409
        UPDATE_IN_PROGRESS, resolver failures, or 500 UPDATE_INITIATION_ERROR.
    """
    rejected = _guard(request, guard)
    if rejected is not None:
        return rejected

    if manager.is_update_in_progress:
        return _error_response(
            409,
            "UPDATE_IN_PROGRESS",
            "An update is already in progress.",
            category=ErrorCategory.GENERIC,
        )

    result = await manager.check_for_updates()
    if result.error is not None:
        return _check_failure(
            result, manager, "UPDATE_INITIATION_ERROR", "Failed to initiate update process"
        )

    if not result.update_available:
        return _error_response(
            400,
            "NO_UPDATE_AVAILABLE",
            "No update is available. Current version is up to date.",
            currentVersion=result.local_version,
            latestVersion=result.remote_version,
        )

    try:
        manager.begin_orchestration(result)
    except FailedPreconditionError as e:
        logger.warning("Update not started", extra={"reason": e.message})
        return _error_response(
            409,
            "UPDATE_IN_PROGRESS",
            "An update is already in progress.",
            category=ErrorCategory.GENERIC,
        )
    except Exception as e:
        logger.exception("Failed to initiate update process")
        return _error_response(
            500,
            "UPDATE_INITIATION_ERROR",
            "Failed to initiate update process",
            category=categorize_error(e),
            details=str(e) if _debug_enabled(manager) else None,
        )

    logger.info(
        "Update process initiated",
        extra={
            "current_version": result.local_version,
            "target_version": result.remote_version,
            **request.to_dict(),
        },
    )
    return HandlerResponse(
        200,
        {
            "success": True,
            "message": EXECUTE_SUCCESS_MESSAGE,
            "currentVersion": result.local_version,
            "latestVersion": result.remote_version,
            "updateInfo": {
                "comparisonMethod": result.comparison_method,
                "repositoryUrl": result.repository_url,
                "remoteInfo": (
                    result.remote_info.model_dump(by_alias=True)
                    if result.remote_info
                    else None
                ),
            },
        },
    )


# =============================================================================
# GET /api/update/status
# =============================================================================


async def handle_update_status(
    request: RequestContext,
    *,
    manager: UpdateManager,
    guard: RequestGuard | None = None,
) -> HandlerResponse:
    """
    Handle GET /api/update/status.

    Returns:
        200 with status, message, progress and timestamp. The error field is
        included only when diagnostics are enabled.
    """
    rejected = _guard(request, guard)
    if rejected is not None:
        return rejected

    state = manager.current_status()
    body: dict[str, Any] = {
        "success": True,
        "status": state.status.value,
        "message": state.message,
        "progress": state.progress,
        "timestamp": state.timestamp,
    }
    if _debug_enabled(manager):
        body["error"] = state.error
    return HandlerResponse(200, body)


def get_update_handlers() -> dict[str, Any]:
    """
    Get all update endpoint handlers.

    Returns:
        Dictionary mapping "METHOD path" to handler functions.
    """
    return {
        "GET /api/version": handle_version,
        "GET /api/update/check": handle_update_check,
        "POST /api/update/execute": handle_update_execute,
        "GET /api/update/status": handle_update_status,
    }
