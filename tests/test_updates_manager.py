"""
Tests for the update manager.

Tests cover:
- Wiring from configuration
- Disabled update checks
- In-progress detection
- Failed attempt bookkeeping
- Automatic updates and periodic checks
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from unittest import mock

import pytest
from conftest import FakeOrchestrator, FakeResolver, make_check_result

from spectrabox_updater.config import AppConfig
from spectrabox_updater.errors import FailedPreconditionError
from spectrabox_updater.updates.github import GitHubResolver
from spectrabox_updater.updates.manager import UPDATES_DISABLED_MESSAGE, UpdateManager
from spectrabox_updater.updates.orchestrator import UpdateOrchestrator
from spectrabox_updater.updates.status import UpdateStatusBroadcaster
from spectrabox_updater.updates.version import VersionStore

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def app_root(tmp_path: Path) -> Path:
    """Application root with a version file."""
    (tmp_path / "Version.txt").write_text("1.2.0")
    return tmp_path


def make_manager(
    app_root: Path,
    *,
    config: AppConfig | None = None,
    resolver: FakeResolver | None = None,
    orchestrator: FakeOrchestrator | None = None,
) -> UpdateManager:
    return UpdateManager(
        config or AppConfig(),
        app_root=app_root,
        resolver=resolver or FakeResolver(),
        orchestrator=orchestrator or FakeOrchestrator(),
    )


def auto_update_config(**update: object) -> AppConfig:
    return AppConfig.model_validate({"update": {"auto_update": True, **update}})


async def drain() -> None:
    """Let finished tasks run their done callbacks."""
    await asyncio.sleep(0.01)


# =============================================================================
# Construction Tests
# =============================================================================


class TestConstruction:
    """Tests for wiring collaborators from configuration."""

    def test_defaults_built_from_config(self, app_root: Path) -> None:
        """Test every collaborator is built when not given."""
        manager = UpdateManager(AppConfig(), app_root=app_root)

        assert isinstance(manager.broadcaster, UpdateStatusBroadcaster)
        assert isinstance(manager.version_store, VersionStore)
        assert isinstance(manager.resolver, GitHubResolver)
        assert isinstance(manager.orchestrator, UpdateOrchestrator)
        assert manager.version_store.version_file == app_root / "Version.txt"

    @pytest.mark.asyncio
    async def test_current_version(self, app_root: Path) -> None:
        """Test the installed version is read from the store."""
        assert await make_manager(app_root).current_version() == "1.2.0"

    @pytest.mark.asyncio
    async def test_current_status(self, app_root: Path) -> None:
        """Test the status snapshot comes from the broadcaster."""
        manager = make_manager(app_root)
        await manager.broadcaster.set_state("updating", "Working", 40)

        assert manager.current_status().progress == 40


# =============================================================================
# Update Check Tests
# =============================================================================


class TestCheckForUpdates:
    """Tests for UpdateManager.check_for_updates."""

    @pytest.mark.asyncio
    async def test_delegates_with_local_version(self, app_root: Path) -> None:
        """Test the resolver receives the installed version."""
        resolver = FakeResolver()
        manager = make_manager(app_root, resolver=resolver)

        result = await manager.check_for_updates()

        assert resolver.calls == ["1.2.0"]
        assert result.update_available is True

    @pytest.mark.asyncio
    async def test_disabled_makes_no_request(self, app_root: Path) -> None:
        """Test disabled checks report no update without contacting GitHub."""
        resolver = FakeResolver()
        config = AppConfig.model_validate({"update": {"enabled": False}})
        manager = make_manager(app_root, config=config, resolver=resolver)

        result = await manager.check_for_updates()

        assert resolver.calls == []
        assert result.update_available is False
        assert result.local_version == "1.2.0"
        assert result.message == UPDATES_DISABLED_MESSAGE


# =============================================================================
# Orchestration Tests
# =============================================================================


class TestBeginOrchestration:
    """Tests for UpdateManager.begin_orchestration."""

    @pytest.mark.asyncio
    async def test_in_progress_while_updating(self, app_root: Path) -> None:
        """Test the updating status counts as in progress."""
        manager = make_manager(app_root)
        await manager.broadcaster.set_state("updating", "Working", 10)

        assert manager.is_update_in_progress is True
        with pytest.raises(FailedPreconditionError, match="already in progress"):
            manager.begin_orchestration(make_check_result())

    @pytest.mark.asyncio
    async def test_in_progress_while_task_running(self, app_root: Path) -> None:
        """Test a running orchestration task counts as in progress."""
        orchestrator = FakeOrchestrator()
        manager = make_manager(app_root, orchestrator=orchestrator)

        task = manager.begin_orchestration(make_check_result())

        assert manager.is_update_in_progress is True
        await task
        assert manager.is_update_in_progress is False

    @pytest.mark.asyncio
    async def test_failed_attempts_counted(self, app_root: Path) -> None:
        """Test failed runs are counted per target version."""
        manager = make_manager(app_root, orchestrator=FakeOrchestrator(succeed=False))

        await manager.begin_orchestration(make_check_result(remote_version="1.3.0"))
        await drain()
        await manager.begin_orchestration(make_check_result(remote_version="1.3.0"))
        await drain()

        assert manager.failed_attempts("1.3.0") == 2
        assert manager.failed_attempts("1.4.0") == 0

    @pytest.mark.asyncio
    async def test_success_clears_failures(self, app_root: Path) -> None:
        """Test a successful run resets the failure count."""
        orchestrator = FakeOrchestrator(succeed=False)
        manager = make_manager(app_root, orchestrator=orchestrator)

        await manager.begin_orchestration(make_check_result())
        await drain()
        orchestrator.succeed = True
        await manager.begin_orchestration(make_check_result())
        await drain()

        assert manager.failed_attempts("1.3.0") == 0


# =============================================================================
# Automatic Update Tests
# =============================================================================


class TestAutomaticUpdates:
    """Tests for check_once and run_periodic_checks."""

    @pytest.mark.asyncio
    async def test_no_auto_update_by_default(self, app_root: Path) -> None:
        """Test an available update is not applied without auto_update."""
        orchestrator = FakeOrchestrator()
        manager = make_manager(app_root, orchestrator=orchestrator)

        result = await manager.check_once()

        assert result.update_available is True
        assert orchestrator.started == []

    @pytest.mark.asyncio
    async def test_auto_update_starts_orchestration(self, app_root: Path) -> None:
        """Test auto_update applies an available update."""
        orchestrator = FakeOrchestrator()
        manager = make_manager(
            app_root, config=auto_update_config(), orchestrator=orchestrator
        )

        await manager.check_once()

        assert len(orchestrator.started) == 1

    @pytest.mark.asyncio
    async def test_auto_update_skips_without_update(self, app_root: Path) -> None:
        """Test nothing starts when already up to date."""
        orchestrator = FakeOrchestrator()
        resolver = FakeResolver(make_check_result(update_available=False))
        manager = make_manager(
            app_root,
            config=auto_update_config(),
            resolver=resolver,
            orchestrator=orchestrator,
        )

        await manager.check_once()

        assert orchestrator.started == []

    @pytest.mark.asyncio
    async def test_auto_update_attempt_limit(self, app_root: Path) -> None:
        """Test auto_update stops after max_update_attempts failures."""
        orchestrator = FakeOrchestrator(succeed=False)
        manager = make_manager(
            app_root,
            config=auto_update_config(max_update_attempts=2),
            orchestrator=orchestrator,
        )

        for _ in range(4):
            await manager.check_once()
            await drain()

        assert len(orchestrator.started) == 2
        assert manager.failed_attempts("1.3.0") == 2

    @pytest.mark.asyncio
    async def test_auto_update_skipped_while_updating(self, app_root: Path) -> None:
        """Test no second run starts while one is active."""
        orchestrator = FakeOrchestrator()
        manager = make_manager(
            app_root, config=auto_update_config(), orchestrator=orchestrator
        )
        await manager.broadcaster.set_state("updating", "Working", 10)

        await manager.check_once()

        assert orchestrator.started == []

    @pytest.mark.asyncio
    async def test_periodic_checks_use_interval(self, app_root: Path) -> None:
        """Test the loop sleeps for check_interval between checks."""
        manager = make_manager(app_root)
        sleep = mock.AsyncMock(side_effect=[None, None, asyncio.CancelledError()])

        with (
            mock.patch("spectrabox_updater.updates.manager.asyncio.sleep", sleep),
            mock.patch.object(manager, "check_once", mock.AsyncMock()) as check_once,
        ):
            with pytest.raises(asyncio.CancelledError):
                await manager.run_periodic_checks()

        assert check_once.await_count == 2
        sleep.assert_awaited_with(3600.0)

    @pytest.mark.asyncio
    async def test_periodic_checks_survive_refusal(self, app_root: Path) -> None:
        """Test a refused automatic update does not stop the loop."""
        manager = make_manager(app_root)
        sleep = mock.AsyncMock(side_effect=[None, None, asyncio.CancelledError()])
        check_once = mock.AsyncMock(side_effect=FailedPreconditionError("busy"))

        with (
            mock.patch("spectrabox_updater.updates.manager.asyncio.sleep", sleep),
            mock.patch.object(manager, "check_once", check_once),
        ):
            with pytest.raises(asyncio.CancelledError):
                await manager.run_periodic_checks()

        assert check_once.await_count == 2
