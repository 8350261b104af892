"""
Update orchestration for the SpectraBox update subsystem.

The UpdateOrchestrator drives one orchestration run through a fixed
pipeline:

- validation: check the install script (location, name, size, content)
- backup: record the installed version for recovery
- shutdown_prep: tell connected observers the server is going down
- shutdown: stop accepting connections and let in-flight ones drain
- update_execution: run the install script, estimating progress from its
  output, under a hard ceiling and a stall detector

A failed step is routed to the recovery action mapped to it (continue,
rollback or restart). Every failure ends with a final error status carrying
an operator-safe message. A successful run schedules process exit so the
service supervisor relaunches the new code.

Only one run may be active at a time. The orchestrator does not enforce this;
callers reject a second request while the status is "updating".
"""

from __future__ import annotations

import asyncio
import os
from collections import deque
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal, Protocol

from pydantic import BaseModel, Field

from spectrabox_updater.config import resolve_app_path
from spectrabox_updater.errors import (
    ErrorCategory,
    FailedPreconditionError,
    StepFailedError,
    categorize_error,
    user_message_for,
)
from spectrabox_updater.logging import get_logger
from spectrabox_updater.updates.progress import ProgressEstimator
from spectrabox_updater.updates.recovery import (
    PipelineStep,
    RecoveryAction,
    recovery_action_for,
)
from spectrabox_updater.updates.script import (
    ALLOWED_SCRIPT_NAME,
    OUTPUT_TAIL_LINES,
    ScriptProcess,
    ScriptResult,
    ScriptRunner,
    validate_update_script,
)
from spectrabox_updater.updates.status import UpdateStatusBroadcaster, UpdateStatusValue
from spectrabox_updater.updates.version import UNKNOWN_VERSION

if TYPE_CHECKING:
    from spectrabox_updater.config import AppConfig
    from spectrabox_updater.updates.github import UpdateCheckResult
    from spectrabox_updater.updates.version import VersionStore

logger = get_logger(__name__)

EXPECTED_DOWNTIME = "2-5 minutes"
RECONNECT_INSTRUCTIONS = (
    "The page will reconnect automatically when the server is back. "
    "If it does not, refresh the page after a few minutes."
)
SHUTDOWN_NOTICE = "Server is shutting down to install an update."
STALL_MESSAGE = (
    "Update script has not produced output for a while. "
    "It may still be working; please wait."
)
SUCCESS_MESSAGE = "Update completed successfully. Restarting server..."

# Longest script output line shown as the status message
_STATUS_LINE_MAX = 200


class Listener(Protocol):
    """Inbound connection listener (e.g. asyncio.Server)."""

    def close(self) -> Any: ...


class StepRecord(BaseModel):
    """One step transition within an UpdateAttempt."""

    step: PipelineStep
    status: Literal["started", "completed", "failed"]
    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())


class BackupRecord(BaseModel):
    """Installed version recorded before the update."""

    version: str
    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())


class UpdateAttempt(BaseModel):
    """
    Diagnostic record of one orchestration run.

    Attributes:
        start_time: ISO 8601 timestamp of the run start.
        current_version: Version installed when the run began.
        target_version: Version the run is moving to.
        steps: Step transitions in order.
        backup: Recorded pre-update version.
        script_result: Outcome of the install script.
        errors: Internal error messages (never shown to observers).
        failed_step: Step that failed, if any.
        recovery_action: Recovery applied after a failure.
        succeeded: Whether the run completed.
    """

    start_time: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    current_version: str
    target_version: str
    steps: list[StepRecord] = Field(default_factory=list)
    backup: BackupRecord | None = None
    script_result: ScriptResult | None = None
    errors: list[str] = Field(default_factory=list)
    failed_step: PipelineStep | None = None
    recovery_action: RecoveryAction | None = None
    succeeded: bool = False


class UpdateOrchestrator:
    """
    Runs the update pipeline.

    Attributes:
        scripts_dir: Directory the install script must live in.
        script_path: Install script path.
        hard_timeout: Ceiling for script execution, in seconds.
        stall_timeout: Silence after which a stall warning is shown, in seconds.

    Example:
        >>> orchestrator = UpdateOrchestrator(
        ...     broadcaster, version_store, Path("/opt/spectrabox/scripts"),
        ...     listener=server,
        ... )
        >>> task = orchestrator.begin_orchestration(check_result)
    """

    DEFAULT_SHUTDOWN_GRACE = 2.0
    DEFAULT_HARD_TIMEOUT = 15 * 60.0
    DEFAULT_STALL_TIMEOUT = 5 * 60.0
    DEFAULT_KILL_GRACE = 5.0
    DEFAULT_SUCCESS_EXIT_DELAY = 3.0
    DEFAULT_RESTART_DELAY = 3.0
    DEFAULT_EXECUTION_START_PROGRESS = 50

    def __init__(
        self,
        broadcaster: UpdateStatusBroadcaster,
        version_store: VersionStore,
        scripts_dir: Path | str,
        *,
        script_path: Path | str | None = None,
        script_name: str = ALLOWED_SCRIPT_NAME,
        runner: ScriptRunner | None = None,
        listener: Listener | None = None,
        exit_process: Callable[[int], Any] = os._exit,
        backup_before_update: bool = True,
        shutdown_grace: float = DEFAULT_SHUTDOWN_GRACE,
        hard_timeout: float = DEFAULT_HARD_TIMEOUT,
        stall_timeout: float = DEFAULT_STALL_TIMEOUT,
        kill_grace: float = DEFAULT_KILL_GRACE,
        success_exit_delay: float = DEFAULT_SUCCESS_EXIT_DELAY,
        restart_delay: float = DEFAULT_RESTART_DELAY,
        execution_start_progress: int = DEFAULT_EXECUTION_START_PROGRESS,
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            broadcaster: Status holder every step reports to.
            version_store: Source of the installed version.
            scripts_dir: Directory the install script must live in.
            script_path: Install script path. Defaults to scripts_dir / script_name.
            script_name: The only accepted script file name.
            runner: ScriptRunner used to launch the script.
            listener: Inbound connection listener closed before the script runs.
            exit_process: Called with an exit code to terminate the process.
            backup_before_update: Record the installed version before updating.
            shutdown_grace: Seconds to let in-flight connections drain.
            hard_timeout: Script execution ceiling in seconds.
            stall_timeout: Script silence before a stall warning, in seconds.
            kill_grace: Seconds between SIGTERM and SIGKILL on timeout.
            success_exit_delay: Seconds between success and process exit.
            restart_delay: Seconds between a failure and a restart exit.
            execution_start_progress: Progress shown when the script starts.
        """
        self._broadcaster = broadcaster
        self._version_store = version_store
        self.scripts_dir = Path(scripts_dir)
        self.script_name = script_name
        self.script_path = (
            Path(script_path) if script_path is not None else self.scripts_dir / script_name
        )
        self._runner = runner or ScriptRunner()
        self._listener = listener
        self._exit_process = exit_process
        self.backup_before_update = backup_before_update
        self.shutdown_grace = shutdown_grace
        self.hard_timeout = hard_timeout
        self.stall_timeout = stall_timeout
        self.kill_grace = kill_grace
        self.success_exit_delay = success_exit_delay
        self.restart_delay = restart_delay
        self.execution_start_progress = execution_start_progress

        self._tasks: set[asyncio.Task[UpdateAttempt]] = set()
        self._exit_handle: asyncio.TimerHandle | None = None
        self._scheduled_exit_code: int | None = None
        self._last_attempt: UpdateAttempt | None = None
        self._validated_script: Path | None = None

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        broadcaster: UpdateStatusBroadcaster,
        version_store: VersionStore,
        app_root: Path | str,
        *,
        listener: Listener | None = None,
        **kwargs: Any,
    ) -> UpdateOrchestrator:
        """
        Create an UpdateOrchestrator from configuration.

        The install script must live in <app_root>/scripts. The hard ceiling is
        the larger of 15 minutes and update.update_timeout.

        Args:
            config: AppConfig with the update section.
            broadcaster: Status holder.
            version_store: Version store.
            app_root: Application root directory.
            listener: Inbound connection listener.
            **kwargs: Overrides for the remaining constructor arguments.
        """
        root = Path(app_root)
        options: dict[str, Any] = {
            "script_path": resolve_app_path(root, config.update.update_script),
            "runner": ScriptRunner(config.update.command_prefix, cwd=root),
            "listener": listener,
            "backup_before_update": config.update.backup_before_update,
            "hard_timeout": max(cls.DEFAULT_HARD_TIMEOUT, config.update.update_timeout / 1000.0),
        }
        options.update(kwargs)
        return cls(broadcaster, version_store, root / "scripts", **options)

    @property
    def is_running(self) -> bool:
        """Whether an orchestration task is still active."""
        return any(not task.done() for task in self._tasks)

    @property
    def last_attempt(self) -> UpdateAttempt | None:
        """Record of the most recent run."""
        return self._last_attempt

    @property
    def scheduled_exit_code(self) -> int | None:
        """Exit code of a pending process exit, if one was scheduled."""
        return self._scheduled_exit_code

    def set_listener(self, listener: Listener | None) -> None:
        """Set the listener closed during the shutdown step."""
        self._listener = listener

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    def begin_orchestration(self, check_result: UpdateCheckResult) -> asyncio.Task[UpdateAttempt]:
        """
        Start an orchestration run in a detached task.

        The caller can respond to its own client before the run's outcome is
        known; progress is observable only through the broadcaster. A
        reference to the task is kept until it finishes.

        Args:
            check_result: Result of an update check with an update available.

        Returns:
            The orchestration task.

        Raises:
            FailedPreconditionError: If no update is available.
        """
        self._require_update(check_result)
        task = asyncio.create_task(self.run(check_result), name="spectrabox-update")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info(
            "Update orchestration started",
            extra={
                "current_version": check_result.local_version,
                "target_version": check_result.remote_version,
            },
        )
        return task

    async def run(self, check_result: UpdateCheckResult) -> UpdateAttempt:
        """
        Run the full pipeline.

        Step failures are handled by recovery; nothing raises past this
        method except the precondition check.

        Args:
            check_result: Result of an update check with an update available.

        Returns:
            UpdateAttempt describing the run.

        Raises:
            FailedPreconditionError: If no update is available.
        """
        self._require_update(check_result)

        attempt = UpdateAttempt(
            current_version=check_result.local_version,
            target_version=check_result.remote_version,
        )
        self._last_attempt = attempt
        self._validated_script = None

        try:
            await self._broadcaster.set_state(
                UpdateStatusValue.UPDATING, "Starting update process...", 0
            )
            await self._run_step(attempt, PipelineStep.VALIDATION, self._validate)
            await self._run_step(attempt, PipelineStep.BACKUP, self._backup)
            await self._run_step(attempt, PipelineStep.SHUTDOWN_PREP, self._prepare_shutdown)
            await self._run_step(attempt, PipelineStep.SHUTDOWN, self._shutdown)
            await self._run_step(attempt, PipelineStep.UPDATE_EXECUTION, self._execute)
        except StepFailedError as e:
            await self._recover(attempt, e)
        except Exception as e:
            logger.exception("Unhandled error during update orchestration")
            attempt.errors.append(str(e))
            attempt.recovery_action = RecoveryAction.RESTART
            await self._broadcast_failure(categorize_error(e))
            self._schedule_exit(1, self.restart_delay)

        return attempt

    def _require_update(self, check_result: UpdateCheckResult) -> None:
        if not check_result.update_available:
            raise FailedPreconditionError(
                "No update available",
                details={
                    "current_version": check_result.local_version,
                    "remote_version": check_result.remote_version,
                },
            )

    # -------------------------------------------------------------------------
    # Pipeline steps
    # -------------------------------------------------------------------------

    async def _run_step(
        self,
        attempt: UpdateAttempt,
        step: PipelineStep,
        action: Callable[[UpdateAttempt], Any],
    ) -> None:
        logger.info(f"Update step started: {step.value}")
        attempt.steps.append(StepRecord(step=step, status="started"))
        try:
            await action(attempt)
        except StepFailedError:
            attempt.steps.append(StepRecord(step=step, status="failed"))
            raise
        except Exception as e:
            attempt.steps.append(StepRecord(step=step, status="failed"))
            raise StepFailedError(
                step.value,
                str(e) or e.__class__.__name__,
                category=categorize_error(e),
            ) from e
        attempt.steps.append(StepRecord(step=step, status="completed"))
        logger.info(f"Update step completed: {step.value}")

    async def _validate(self, attempt: UpdateAttempt) -> None:
        await self._broadcaster.set_state(
            UpdateStatusValue.UPDATING, "Validating update prerequisites...", 10
        )
        validation = await validate_update_script(
            self.scripts_dir, self.script_path, allowed_name=self.script_name
        )
        self._validated_script = validation.path

    async def _backup(self, attempt: UpdateAttempt) -> None:
        await self._broadcaster.set_state(
            UpdateStatusValue.UPDATING, "Recording current version...", 20
        )
        if not self.backup_before_update:
            logger.info("Version backup disabled, skipping")
            return

        try:
            version = await self._version_store.read()
        except Exception as e:
            raise StepFailedError(
                PipelineStep.BACKUP.value,
                f"Could not read current version: {e}",
                category=ErrorCategory.BACKUP,
            ) from e

        attempt.backup = BackupRecord(version=version)
        if version == UNKNOWN_VERSION:
            logger.warning("Current version is unknown, backup records 'unknown'")
        logger.info("Recorded pre-update version", extra={"version": version})

    async def _prepare_shutdown(self, attempt: UpdateAttempt) -> None:
        await self._broadcaster.set_state(
            UpdateStatusValue.UPDATING, "Notifying connected clients...", 30
        )
        try:
            await self._broadcaster.broadcast_shutdown_notice(
                SHUTDOWN_NOTICE, EXPECTED_DOWNTIME, RECONNECT_INSTRUCTIONS
            )
        except Exception as e:
            logger.warning("Failed to broadcast shutdown notice", extra={"error": str(e)})

    async def _shutdown(self, attempt: UpdateAttempt) -> None:
        await self._broadcaster.set_state(
            UpdateStatusValue.UPDATING, "Stopping server for update...", 40
        )
        if self._listener is None:
            logger.warning("No listener to close, continuing update")
            return

        self._listener.close()
        logger.info(
            "Listener closed, waiting for in-flight connections",
            extra={"grace_seconds": self.shutdown_grace},
        )
        await asyncio.sleep(self.shutdown_grace)

    async def _execute(self, attempt: UpdateAttempt) -> None:
        script = self._validated_script or self.script_path
        estimator = ProgressEstimator(start=self.execution_start_progress)
        await self._broadcaster.set_state(
            UpdateStatusValue.UPDATING, "Running update script...", estimator.progress
        )

        loop = asyncio.get_running_loop()
        started = loop.time()
        result = ScriptResult()
        attempt.script_result = result
        tail: deque[str] = deque(maxlen=OUTPUT_TAIL_LINES)

        try:
            process = await self._runner.start(script)
        except OSError as e:
            raise StepFailedError(
                PipelineStep.UPDATE_EXECUTION.value,
                f"Failed to start update script: {e}",
                category=categorize_error(e),
            ) from e

        try:
            await self._monitor(process, estimator, tail, result, started + self.hard_timeout)
        finally:
            result.output_tail = list(tail)
            result.duration_seconds = round(loop.time() - started, 3)

        if result.timed_out:
            raise StepFailedError(
                PipelineStep.UPDATE_EXECUTION.value,
                f"Update script timed out after {self.hard_timeout:.0f}s",
                category=ErrorCategory.TIMEOUT,
            )

        if result.exit_code != 0:
            category = categorize_error(Exception("\n".join(result.output_tail)))
            if category is ErrorCategory.GENERIC:
                category = ErrorCategory.SCRIPT
            raise StepFailedError(
                PipelineStep.UPDATE_EXECUTION.value,
                f"Update script failed with exit code {result.exit_code}",
                category=category,
                details={"exit_code": result.exit_code},
            )

        await self._finish_success(attempt)

    async def _monitor(
        self,
        process: ScriptProcess,
        estimator: ProgressEstimator,
        tail: deque[str],
        result: ScriptResult,
        deadline: float,
    ) -> None:
        """Consume script output until exit, enforcing both timers."""
        loop = asyncio.get_running_loop()
        last_output = loop.time()

        while True:
            now = loop.time()
            remaining = deadline - now
            if remaining <= 0:
                await self._stop_timed_out(process, result)
                return

            stall_in = last_output + self.stall_timeout - now
            if stall_in <= 0:
                result.stall_warnings += 1
                logger.warning(
                    "Update script produced no output",
                    extra={"silence_seconds": self.stall_timeout, "pid": process.pid},
                )
                await self._broadcaster.set_state(
                    UpdateStatusValue.UPDATING, STALL_MESSAGE, estimator.progress
                )
                last_output = now
                continue

            try:
                line = await asyncio.wait_for(
                    process.read_line(), timeout=min(remaining, stall_in)
                )
            except TimeoutError:
                continue

            if line is None:
                break

            last_output = loop.time()
            tail.append(line.text)
            logger.debug(
                "Update script output",
                extra={"stream": line.stream, "line": line.text},
            )
            if not line.text.strip():
                continue

            progress = estimator.feed(line.text)
            await self._broadcaster.set_state(
                UpdateStatusValue.UPDATING, line.text.strip()[:_STATUS_LINE_MAX], progress
            )

        remaining = deadline - loop.time()
        try:
            result.exit_code = await asyncio.wait_for(
                process.wait(), timeout=max(remaining, 0.001)
            )
        except TimeoutError:
            await self._stop_timed_out(process, result)
            return

        logger.info(
            "Update script exited",
            extra={"exit_code": result.exit_code, "pid": process.pid},
        )

    async def _stop_timed_out(self, process: ScriptProcess, result: ScriptResult) -> None:
        logger.error(
            "Update script exceeded time limit, terminating",
            extra={"timeout_seconds": self.hard_timeout, "pid": process.pid},
        )
        result.timed_out = True
        result.exit_code = await process.terminate(kill_after=self.kill_grace)

    async def _finish_success(self, attempt: UpdateAttempt) -> None:
        attempt.succeeded = True
        await self._record_target_version(attempt.target_version)
        await self._broadcaster.set_state(UpdateStatusValue.SUCCESS, SUCCESS_MESSAGE, 100)
        logger.info(
            "Update completed successfully",
            extra={
                "from_version": attempt.current_version,
                "to_version": attempt.target_version,
            },
        )
        self._schedule_exit(0, self.success_exit_delay)

    async def _record_target_version(self, target_version: str) -> None:
        """Store the target version unless the script already changed it."""
        self._version_store.clear_cache()
        installed = await self._version_store.read()
        backup = self._last_attempt.backup if self._last_attempt else None
        if backup is not None and installed != backup.version:
            return
        if not await self._version_store.write(target_version):
            logger.warning(
                "Could not record new version after update",
                extra={"version": target_version},
            )

    # -------------------------------------------------------------------------
    # Recovery
    # -------------------------------------------------------------------------

    async def _recover(self, attempt: UpdateAttempt, error: StepFailedError) -> None:
        try:
            step = PipelineStep(error.step)
        except ValueError:
            step = PipelineStep.UNCLASSIFIED
        action = recovery_action_for(step)
        attempt.failed_step = step
        attempt.recovery_action = action
        attempt.errors.append(error.message)

        logger.error(
            f"Update failed at step {step.value}",
            extra={
                "step": step.value,
                "category": error.category.value,
                "error": error.message,
                "recovery_action": action.value,
                "details": error.details or None,
            },
        )

        if action is RecoveryAction.ROLLBACK:
            prior = attempt.backup.version if attempt.backup else UNKNOWN_VERSION
            logger.warning("Rolling back update", extra={"prior_version": prior})
            await self._broadcaster.set_state(
                UpdateStatusValue.ERROR,
                f"Update failed. Restoring version {prior} and restarting...",
                error=user_message_for(error.category),
            )

        await self._broadcast_failure(error.category)

        if action in (RecoveryAction.ROLLBACK, RecoveryAction.RESTART):
            self._schedule_exit(1, self.restart_delay)
        else:
            logger.info("Service continues running after failed update")

    async def _broadcast_failure(self, category: ErrorCategory) -> None:
        message = user_message_for(category)
        await self._broadcaster.set_state(UpdateStatusValue.ERROR, message, error=message)

    def _schedule_exit(self, code: int, delay: float) -> None:
        """Exit the process after `delay` seconds so the supervisor restarts it."""
        if self._exit_handle is not None:
            self._exit_handle.cancel()
        self._scheduled_exit_code = code
        logger.info(
            "Process exit scheduled",
            extra={"exit_code": code, "delay_seconds": delay},
        )
        self._exit_handle = asyncio.get_running_loop().call_later(
            delay, self._exit_process, code
        )
