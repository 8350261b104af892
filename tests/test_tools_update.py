"""
Tests for the update endpoint handlers.

Tests cover:
- GET /api/version
- GET /api/update/check and resolver error mapping
- POST /api/update/execute outcomes
- GET /api/update/status
- Request guard rejections and diagnostic detail gating
"""

from __future__ import annotations

from pathlib import Path
from unittest import mock

import pytest
from conftest import FakeOrchestrator, FakeResolver, make_check_result

from spectrabox_updater.config import AppConfig
from spectrabox_updater.context import RequestContext
from spectrabox_updater.security.request_guard import RequestGuard, SlidingWindowRateLimiter
from spectrabox_updater.tools.update import (
    EXECUTE_SUCCESS_MESSAGE,
    get_update_handlers,
    handle_update_check,
    handle_update_execute,
    handle_update_status,
    handle_version,
)
from spectrabox_updater.updates.github import UpdateCheckResult
from spectrabox_updater.updates.manager import UpdateManager

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def app_root(tmp_path: Path) -> Path:
    """Application root with a version file."""
    (tmp_path / "Version.txt").write_text("1.2.0")
    return tmp_path


@pytest.fixture
def request_context() -> RequestContext:
    """A well-formed browser request."""
    return RequestContext(
        client_id="192.168.1.20",
        headers={"User-Agent": "Mozilla/5.0 (X11; Linux aarch64)"},
    )


def make_manager(
    app_root: Path,
    *,
    result: UpdateCheckResult | None = None,
    debug_mode: bool = False,
    orchestrator: FakeOrchestrator | None = None,
) -> UpdateManager:
    config = AppConfig.model_validate({"logging": {"debug_mode": debug_mode}})
    return UpdateManager(
        config,
        app_root=app_root,
        resolver=FakeResolver(result),
        orchestrator=orchestrator or FakeOrchestrator(),
    )


def failed_check(error_code: str, error: str = "socket hang up") -> UpdateCheckResult:
    return UpdateCheckResult(
        local_version="1.2.0",
        remote_version="unknown",
        repository_url="https://github.com/mattstegner/SpectraBox",
        error=error,
        error_code=error_code,
        retryable=True,
    )


# =============================================================================
# GET /api/version
# =============================================================================


class TestHandleVersion:
    """Tests for handle_version."""

    @pytest.mark.asyncio
    async def test_returns_version(
        self, app_root: Path, request_context: RequestContext
    ) -> None:
        """Test the installed version is returned."""
        response = await handle_version(request_context, manager=make_manager(app_root))

        assert response.status_code == 200
        assert response.ok is True
        assert response.body["success"] is True
        assert response.body["version"] == "1.2.0"
        assert "timestamp" in response.body

    @pytest.mark.asyncio
    async def test_read_failure(
        self, app_root: Path, request_context: RequestContext
    ) -> None:
        """Test unexpected failures produce VERSION_ERROR."""
        manager = make_manager(app_root)

        with mock.patch.object(
            manager, "current_version", mock.AsyncMock(side_effect=RuntimeError("boom"))
        ):
            response = await handle_version(request_context, manager=manager)

        assert response.status_code == 500
        assert response.body["error"] == "VERSION_ERROR"
        assert response.body["version"] == "unknown"
        assert "details" not in response.body

    @pytest.mark.asyncio
    async def test_read_failure_debug_details(
        self, app_root: Path, request_context: RequestContext
    ) -> None:
        """Test raw error text appears only in debug mode."""
        manager = make_manager(app_root, debug_mode=True)

        with mock.patch.object(
            manager, "current_version", mock.AsyncMock(side_effect=RuntimeError("boom"))
        ):
            response = await handle_version(request_context, manager=manager)

        assert response.body["details"] == "boom"

    @pytest.mark.asyncio
    async def test_guard_rejection(
        self, app_root: Path, request_context: RequestContext
    ) -> None:
        """Test guard rejections are returned as responses."""
        guard = RequestGuard(SlidingWindowRateLimiter(1, 60))
        manager = make_manager(app_root)

        await handle_version(request_context, manager=manager, guard=guard)
        response = await handle_version(request_context, manager=manager, guard=guard)

        assert response.status_code == 429
        assert response.body["error"] == "RATE_LIMIT_EXCEEDED"
        assert response.body["retryAfter"] == 60


# =============================================================================
# GET /api/update/check
# =============================================================================


class TestHandleUpdateCheck:
    """Tests for handle_update_check."""

    @pytest.mark.asyncio
    async def test_update_available(
        self, app_root: Path, request_context: RequestContext
    ) -> None:
        """Test the success body."""
        response = await handle_update_check(request_context, manager=make_manager(app_root))

        body = response.body
        assert response.status_code == 200
        assert body["updateAvailable"] is True
        assert body["currentVersion"] == "1.2.0"
        assert body["latestVersion"] == "1.3.0"
        assert body["comparisonMethod"] == "release"
        assert body["repositoryUrl"] == "https://github.com/mattstegner/SpectraBox"
        assert body["remoteInfo"]["kind"] == "release"
        assert body["remoteInfo"]["version"] == "1.3.0"
        assert set(body["rateLimit"]) == {"remaining", "resetTime"}
        assert "lastChecked" in body
        assert "message" not in body

    @pytest.mark.asyncio
    async def test_message_passed_through(
        self, app_root: Path, request_context: RequestContext
    ) -> None:
        """Test explanatory messages are included."""
        result = make_check_result(update_available=False)
        result.message = "No GitHub releases found."
        response = await handle_update_check(
            request_context, manager=make_manager(app_root, result=result)
        )

        assert response.body["message"] == "No GitHub releases found."
        assert response.body["remoteInfo"] is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("error_code", "status_code", "expected_code"),
        [
            ("NETWORK_ERROR", 503, "NETWORK_ERROR"),
            ("RATE_LIMIT_EXCEEDED", 429, "RATE_LIMIT_EXCEEDED"),
            ("REQUEST_TIMEOUT", 504, "REQUEST_TIMEOUT"),
            ("REPOSITORY_NOT_FOUND", 404, "REPOSITORY_NOT_FOUND"),
            ("INVALID_RESPONSE", 500, "UPDATE_CHECK_ERROR"),
        ],
    )
    async def test_resolver_errors(
        self,
        app_root: Path,
        request_context: RequestContext,
        error_code: str,
        status_code: int,
        expected_code: str,
    ) -> None:
        """Test resolver failures map to status codes."""
        manager = make_manager(app_root, result=failed_check(error_code))

        response = await handle_update_check(request_context, manager=manager)

        assert response.status_code == status_code
        assert response.body["success"] is False
        assert response.body["error"] == expected_code
        assert response.body["updateAvailable"] is False
        assert "troubleshooting" in response.body
        assert "details" not in response.body

    @pytest.mark.asyncio
    async def test_error_details_in_debug_mode(
        self, app_root: Path, request_context: RequestContext
    ) -> None:
        """Test raw error text appears only in debug mode."""
        manager = make_manager(
            app_root, result=failed_check("NETWORK_ERROR"), debug_mode=True
        )

        response = await handle_update_check(request_context, manager=manager)

        assert response.body["details"] == "socket hang up"


# =============================================================================
# POST /api/update/execute
# =============================================================================


class TestHandleUpdateExecute:
    """Tests for handle_update_execute."""

    @pytest.mark.asyncio
    async def test_update_started(
        self, app_root: Path, request_context: RequestContext
    ) -> None:
        """Test an available update is started in the background."""
        orchestrator = FakeOrchestrator()
        manager = make_manager(app_root, orchestrator=orchestrator)

        response = await handle_update_execute(request_context, manager=manager)

        assert response.status_code == 200
        assert response.body["message"] == EXECUTE_SUCCESS_MESSAGE
        assert response.body["currentVersion"] == "1.2.0"
        assert response.body["latestVersion"] == "1.3.0"
        assert response.body["updateInfo"]["comparisonMethod"] == "release"
        assert len(orchestrator.started) == 1

    @pytest.mark.asyncio
    async def test_no_update_available(
        self, app_root: Path, request_context: RequestContext
    ) -> None:
        """Test an up-to-date install is refused."""
        orchestrator = FakeOrchestrator()
        manager = make_manager(
            app_root,
            result=make_check_result(update_available=False, remote_version="1.2.0"),
            orchestrator=orchestrator,
        )

        response = await handle_update_execute(request_context, manager=manager)

        assert response.status_code == 400
        assert response.body["error"] == "NO_UPDATE_AVAILABLE"
        assert response.body["message"] == (
            "No update is available. Current version is up to date."
        )
        assert orchestrator.started == []

    @pytest.mark.asyncio
    async def test_update_in_progress(
        self, app_root: Path, request_context: RequestContext
    ) -> None:
        """Test a second update request is refused while one runs."""
        orchestrator = FakeOrchestrator()
        manager = make_manager(app_root, orchestrator=orchestrator)
        await manager.broadcaster.set_state("updating", "Working", 40)

        response = await handle_update_execute(request_context, manager=manager)

        assert response.status_code == 409
        assert response.body["error"] == "UPDATE_IN_PROGRESS"
        assert orchestrator.started == []

    @pytest.mark.asyncio
    async def test_check_failure(
        self, app_root: Path, request_context: RequestContext
    ) -> None:
        """Test a failed fresh check maps like the check endpoint."""
        manager = make_manager(app_root, result=failed_check("RATE_LIMIT_EXCEEDED"))

        response = await handle_update_execute(request_context, manager=manager)

        assert response.status_code == 429
        assert response.body["error"] == "RATE_LIMIT_EXCEEDED"

    @pytest.mark.asyncio
    async def test_unmapped_check_failure(
        self, app_root: Path, request_context: RequestContext
    ) -> None:
        """Test other check failures become UPDATE_INITIATION_ERROR."""
        manager = make_manager(app_root, result=failed_check("INVALID_RESPONSE"))

        response = await handle_update_execute(request_context, manager=manager)

        assert response.status_code == 500
        assert response.body["error"] == "UPDATE_INITIATION_ERROR"

    @pytest.mark.asyncio
    async def test_orchestration_start_failure(
        self, app_root: Path, request_context: RequestContext
    ) -> None:
        """Test unexpected errors while starting are reported."""
        manager = make_manager(app_root)

        with mock.patch.object(
            manager, "begin_orchestration", side_effect=RuntimeError("no event loop")
        ):
            response = await handle_update_execute(request_context, manager=manager)

        assert response.status_code == 500
        assert response.body["error"] == "UPDATE_INITIATION_ERROR"
        assert "details" not in response.body

    @pytest.mark.asyncio
    async def test_guard_rejects_bad_body(self, app_root: Path) -> None:
        """Test the guard runs before any work."""
        orchestrator = FakeOrchestrator()
        manager = make_manager(app_root, orchestrator=orchestrator)
        request = RequestContext(
            client_id="192.168.1.20",
            method="POST",
            path="/api/update/execute",
            headers={"User-Agent": "Mozilla/5.0", "Content-Type": "text/plain"},
            body_size=12,
        )

        response = await handle_update_execute(
            request, manager=manager, guard=RequestGuard()
        )

        assert response.status_code == 400
        assert response.body["error"] == "INVALID_CONTENT_TYPE"
        assert orchestrator.started == []


# =============================================================================
# GET /api/update/status
# =============================================================================


class TestHandleUpdateStatus:
    """Tests for handle_update_status."""

    @pytest.mark.asyncio
    async def test_idle_status(
        self, app_root: Path, request_context: RequestContext
    ) -> None:
        """Test the initial status."""
        response = await handle_update_status(request_context, manager=make_manager(app_root))

        assert response.status_code == 200
        assert response.body["status"] == "idle"
        assert response.body["progress"] == 0
        assert "error" not in response.body

    @pytest.mark.asyncio
    async def test_error_hidden_without_debug(
        self, app_root: Path, request_context: RequestContext
    ) -> None:
        """Test the error field is omitted outside debug mode."""
        manager = make_manager(app_root)
        await manager.broadcaster.set_state("error", "Update failed", 0, "Script failed")

        response = await handle_update_status(request_context, manager=manager)

        assert response.body["status"] == "error"
        assert "error" not in response.body

    @pytest.mark.asyncio
    async def test_error_shown_in_debug(
        self, app_root: Path, request_context: RequestContext
    ) -> None:
        """Test the error field is included in debug mode."""
        manager = make_manager(app_root, debug_mode=True)
        await manager.broadcaster.set_state("error", "Update failed", 0, "Script failed")

        response = await handle_update_status(request_context, manager=manager)

        assert response.body["error"] == "Script failed"


class TestHandlerRegistry:
    """Tests for get_update_handlers."""

    def test_routes(self) -> None:
        """Test every endpoint is registered."""
        handlers = get_update_handlers()

        assert handlers == {
            "GET /api/version": handle_version,
            "GET /api/update/check": handle_update_check,
            "POST /api/update/execute": handle_update_execute,
            "GET /api/update/status": handle_update_status,
        }
