"""
Update manager: the call surface used by request handlers.

UpdateManager wires the version store, GitHub resolver, status broadcaster and
orchestrator together from one AppConfig and exposes:
- current_version(): installed version
- check_for_updates(): compare with upstream
- begin_orchestration(): start an update in the background
- current_status(): snapshot of the update status
- run_periodic_checks(): background checks, applying updates when
  update.auto_update is set
"""

from __future__ import annotations

import asyncio
from pathlib import Path

from spectrabox_updater.config import AppConfig
from spectrabox_updater.errors import FailedPreconditionError
from spectrabox_updater.logging import get_logger
from spectrabox_updater.updates.github import GitHubResolver, UpdateCheckResult
from spectrabox_updater.updates.orchestrator import Listener, UpdateAttempt, UpdateOrchestrator
from spectrabox_updater.updates.status import (
    UpdateStatus,
    UpdateStatusBroadcaster,
    UpdateStatusValue,
)
from spectrabox_updater.updates.version import VersionStore

logger = get_logger(__name__)

UPDATES_DISABLED_MESSAGE = "Update checks are disabled in the configuration."


class UpdateManager:
    """
    Facade over the update subsystem.

    Attributes:
        config: Active configuration.
        app_root: Application root directory.

    Example:
        >>> manager = UpdateManager(config, app_root=Path("/opt/spectrabox"))
        >>> result = await manager.check_for_updates()
        >>> if result.update_available:
        ...     manager.begin_orchestration(result)
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        app_root: Path | str,
        broadcaster: UpdateStatusBroadcaster | None = None,
        version_store: VersionStore | None = None,
        resolver: GitHubResolver | None = None,
        orchestrator: UpdateOrchestrator | None = None,
        listener: Listener | None = None,
    ) -> None:
        """
        Initialize the manager. Collaborators not given are built from config.

        Args:
            config: Active configuration.
            app_root: Application root directory.
            broadcaster: Status broadcaster shared with the websocket layer.
            version_store: Version store.
            resolver: GitHub resolver.
            orchestrator: Update orchestrator.
            listener: Inbound listener closed during updates.
        """
        self.config = config
        self.app_root = Path(app_root)
        self._broadcaster = broadcaster or UpdateStatusBroadcaster()
        self._version_store = version_store or VersionStore.from_config(config, self.app_root)
        self._resolver = resolver or GitHubResolver.from_config(config)
        self._orchestrator = orchestrator or UpdateOrchestrator.from_config(
            config,
            self._broadcaster,
            self._version_store,
            self.app_root,
            listener=listener,
        )
        self._failed_attempts: dict[str, int] = {}

    @property
    def broadcaster(self) -> UpdateStatusBroadcaster:
        """Status broadcaster observers subscribe to."""
        return self._broadcaster

    @property
    def version_store(self) -> VersionStore:
        return self._version_store

    @property
    def resolver(self) -> GitHubResolver:
        return self._resolver

    @property
    def orchestrator(self) -> UpdateOrchestrator:
        return self._orchestrator

    @property
    def is_update_in_progress(self) -> bool:
        """Whether an orchestration run is active."""
        return (
            self._broadcaster.current_state().status is UpdateStatusValue.UPDATING
            or self._orchestrator.is_running
        )

    async def current_version(self) -> str:
        """Return the installed version ("unknown" when unavailable)."""
        return await self._version_store.read()

    def current_status(self) -> UpdateStatus:
        """Return a snapshot of the update status."""
        return self._broadcaster.current_state()

    async def check_for_updates(self) -> UpdateCheckResult:
        """
        Check upstream for a newer version.

        Returns:
            UpdateCheckResult. When update.enabled is off, no request is made
            and the result reports no update.
        """
        local_version = await self._version_store.read()

        if not self.config.update.enabled:
            logger.info("Update check skipped, updates disabled")
            return UpdateCheckResult(
                update_available=False,
                local_version=local_version,
                remote_version="unknown",
                comparison_method="none",
                repository_url=self._resolver.repository_url,
                rate_limit_info=self._resolver.rate_limit_info,
                message=UPDATES_DISABLED_MESSAGE,
            )

        return await self._resolver.check_for_updates(local_version)

    def begin_orchestration(self, check_result: UpdateCheckResult) -> asyncio.Task[UpdateAttempt]:
        """
        Start an update in the background.

        Args:
            check_result: Check result with an update available.

        Returns:
            The orchestration task.

        Raises:
            FailedPreconditionError: If no update is available or an update is
                already running.
        """
        if self.is_update_in_progress:
            raise FailedPreconditionError(
                "Update already in progress",
                details={"status": self._broadcaster.current_state().status.value},
            )

        task = self._orchestrator.begin_orchestration(check_result)
        target = check_result.remote_version
        task.add_done_callback(lambda t: self._record_outcome(target, t))
        return task

    def _record_outcome(self, target: str, task: asyncio.Task[UpdateAttempt]) -> None:
        if task.cancelled() or task.exception() is not None:
            self._failed_attempts[target] = self._failed_attempts.get(target, 0) + 1
            return
        if task.result().succeeded:
            self._failed_attempts.pop(target, None)
        else:
            self._failed_attempts[target] = self._failed_attempts.get(target, 0) + 1

    def failed_attempts(self, target_version: str) -> int:
        """Number of failed runs towards a target version."""
        return self._failed_attempts.get(target_version, 0)

    async def check_once(self) -> UpdateCheckResult:
        """
        Run one scheduled check, starting an update when auto_update allows it.

        Auto-update stops for a target version once it has failed
        update.max_update_attempts times.
        """
        result = await self.check_for_updates()
        if not (result.update_available and self.config.update.auto_update):
            return result

        attempts = self.failed_attempts(result.remote_version)
        if attempts >= self.config.update.max_update_attempts:
            logger.warning(
                "Automatic update skipped, attempt limit reached",
                extra={"target_version": result.remote_version, "attempts": attempts},
            )
            return result

        if self.is_update_in_progress:
            logger.info("Automatic update skipped, update already in progress")
            return result

        logger.info(
            "Starting automatic update",
            extra={"target_version": result.remote_version, "attempt": attempts + 1},
        )
        self.begin_orchestration(result)
        return result

    async def run_periodic_checks(self) -> None:
        """Check for updates every update.check_interval until cancelled."""
        interval = self.config.update.check_interval / 1000.0
        logger.info("Periodic update checks started", extra={"interval_seconds": interval})
        while True:
            await asyncio.sleep(interval)
            try:
                await self.check_once()
            except FailedPreconditionError as e:
                logger.info("Automatic update not started", extra={"reason": e.message})
