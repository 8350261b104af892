"""
Install script validation and execution.

The update is applied by a single shell script shipped with the application
(scripts/spectrabox-kiosk-install.sh). This module:
- Validates the script location, name, size and readability
- Scans the content for destructive commands (warn only)
- Launches the script detached from the service, with a sanitized environment
- Exposes the merged stdout/stderr as a sequence of output lines
"""

from __future__ import annotations

import asyncio
import os
import re
import stat
from collections.abc import AsyncIterator, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from pydantic import BaseModel, Field

from spectrabox_updater.errors import FailedPreconditionError, PermissionDeniedError
from spectrabox_updater.logging import get_logger

logger = get_logger(__name__)

ALLOWED_SCRIPT_NAME = "spectrabox-kiosk-install.sh"
MAX_SCRIPT_BYTES = 1024 * 1024

DEFAULT_COMMAND_PREFIX: tuple[str, ...] = ("sudo", "bash")

# Environment variables passed through from the service to the script
PASSTHROUGH_ENV_VARS: tuple[str, ...] = ("PATH", "HOME", "LANG", "USER")

DESTRUCTIVE_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    ("recursive root delete", re.compile(r"\brm\s+-rf\s+/(?:\s|$|\*)", re.MULTILINE)),
    ("raw disk write", re.compile(r"\bdd\s+if=")),
    ("filesystem creation", re.compile(r"\bmkfs\b")),
    ("dynamic eval", re.compile(r"\beval\b")),
]

# Lines kept from the script output for diagnostics
OUTPUT_TAIL_LINES = 20

_READ_LIMIT = 1024 * 1024

# Seconds to keep reading output after the script exits. Background jobs
# started by the script may hold the pipes open indefinitely.
OUTPUT_DRAIN_GRACE = 2.0

_EXIT_POLL_INTERVAL = 0.1


class ScriptValidation(BaseModel):
    """
    Result of a successful script validation.

    Attributes:
        path: Resolved script path.
        size: Script size in bytes.
        warnings: Destructive patterns found in the content.
        made_executable: Whether the execute bit had to be set.
    """

    path: Path
    size: int
    warnings: list[str] = Field(default_factory=list)
    made_executable: bool = False


class ScriptResult(BaseModel):
    """
    Outcome of one script execution.

    Attributes:
        exit_code: Process exit code; None when the process never exited.
        output_tail: Last output lines.
        timed_out: Whether the hard ceiling stopped the script.
        stall_warnings: How often the stall detector fired.
        duration_seconds: Wall time from launch to exit.
    """

    exit_code: int | None = None
    output_tail: list[str] = Field(default_factory=list)
    timed_out: bool = False
    stall_warnings: int = 0
    duration_seconds: float = 0.0


def scan_destructive_commands(content: str) -> list[str]:
    """
    Find destructive command patterns in script content.

    Args:
        content: Script text.

    Returns:
        Names of the patterns that matched.
    """
    return [name for name, pattern in DESTRUCTIVE_PATTERNS if pattern.search(content)]


def _inspect_script(
    scripts_dir: Path,
    script_path: Path,
    allowed_name: str,
    max_bytes: int,
) -> ScriptValidation:
    expected_dir = scripts_dir.resolve()
    resolved = script_path.resolve()

    if resolved.parent != expected_dir:
        raise FailedPreconditionError(
            "Update script is outside the scripts directory",
            details={"path": str(resolved), "expected_dir": str(expected_dir)},
        )
    if resolved.name != allowed_name:
        raise FailedPreconditionError(
            "Update script name is not allowed",
            details={"name": resolved.name, "allowed": allowed_name},
        )

    try:
        info = resolved.stat()
    except FileNotFoundError as e:
        raise FailedPreconditionError(
            "Update script not found", details={"path": str(resolved)}
        ) from e

    if not stat.S_ISREG(info.st_mode):
        raise FailedPreconditionError(
            "Update script is not a regular file", details={"path": str(resolved)}
        )
    if info.st_size == 0:
        raise FailedPreconditionError(
            "Update script is empty", details={"path": str(resolved)}
        )
    if info.st_size > max_bytes:
        raise FailedPreconditionError(
            "Update script is too large",
            details={"size": info.st_size, "max_size": max_bytes},
        )

    try:
        content = resolved.read_text(encoding="utf-8", errors="replace")
    except PermissionError as e:
        raise PermissionDeniedError(
            "Update script is not readable", details={"path": str(resolved)}
        ) from e

    warnings = scan_destructive_commands(content)

    made_executable = False
    if not info.st_mode & stat.S_IXUSR:
        try:
            os.chmod(resolved, info.st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        except PermissionError as e:
            raise PermissionDeniedError(
                "Cannot make update script executable",
                details={"path": str(resolved)},
            ) from e
        made_executable = True

    return ScriptValidation(
        path=resolved,
        size=info.st_size,
        warnings=warnings,
        made_executable=made_executable,
    )


async def validate_update_script(
    scripts_dir: Path | str,
    script_path: Path | str | None = None,
    *,
    allowed_name: str = ALLOWED_SCRIPT_NAME,
    max_bytes: int = MAX_SCRIPT_BYTES,
) -> ScriptValidation:
    """
    Validate the update script before anything destructive happens.

    The script must resolve directly inside `scripts_dir` and carry exactly
    the allowed name, even when another readable file exists at the given
    path. Destructive command patterns are logged but do not fail validation.

    Args:
        scripts_dir: Directory the script must live in.
        script_path: Script path. Defaults to scripts_dir / allowed_name.
        allowed_name: The only accepted file name.
        max_bytes: Maximum script size.

    Returns:
        ScriptValidation for the resolved script.

    Raises:
        FailedPreconditionError: If the script is misplaced, misnamed,
            missing, empty, oversized or not a regular file.
        PermissionDeniedError: If the script cannot be read or made executable.
    """
    scripts_dir = Path(scripts_dir)
    path = Path(script_path) if script_path is not None else scripts_dir / allowed_name

    validation = await asyncio.get_event_loop().run_in_executor(
        None, _inspect_script, scripts_dir, path, allowed_name, max_bytes
    )

    for warning in validation.warnings:
        logger.warning(
            "Update script contains a potentially destructive command",
            extra={"path": str(validation.path), "pattern": warning},
        )
    if validation.made_executable:
        logger.info("Made update script executable", extra={"path": str(validation.path)})

    logger.info(
        "Update script validated",
        extra={"path": str(validation.path), "size": validation.size},
    )
    return validation


# =============================================================================
# Script execution
# =============================================================================


@dataclass(frozen=True)
class OutputLine:
    """One line of script output."""

    stream: str
    text: str


@dataclass
class ScriptProcess:
    """
    A running install script.

    Output from stdout and stderr is merged in arrival order. `read_line()`
    may be cancelled (for example by a timeout) without losing output.

    Output ends when both streams close or, once the script has exited,
    after `drain_grace` seconds, whichever comes first. The exit code is
    taken from the script itself, so a background job that keeps the pipes
    open does not hold up the result.
    """

    process: asyncio.subprocess.Process
    drain_grace: float = OUTPUT_DRAIN_GRACE
    _queue: asyncio.Queue[OutputLine | None] = field(default_factory=asyncio.Queue)
    _open_streams: int = 0
    _readers: list[asyncio.Task[None]] = field(default_factory=list)
    _exited: asyncio.Event = field(default_factory=asyncio.Event)
    _watcher: asyncio.Task[None] | None = None

    def __post_init__(self) -> None:
        streams = [("stdout", self.process.stdout), ("stderr", self.process.stderr)]
        for name, stream in streams:
            if stream is None:
                continue
            self._open_streams += 1
            self._readers.append(asyncio.create_task(self._pump(name, stream)))
        self._watcher = asyncio.create_task(self._watch_exit())

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    async def _pump(self, name: str, stream: asyncio.StreamReader) -> None:
        try:
            while True:
                try:
                    raw = await stream.readline()
                except ValueError:
                    logger.warning(
                        "Update script output line too long, skipping rest of stream",
                        extra={"stream": name},
                    )
                    break
                if not raw:
                    break
                text = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                self._queue.put_nowait(OutputLine(stream=name, text=text))
        finally:
            self._queue.put_nowait(None)

    async def _watch_exit(self) -> None:
        # returncode is set as soon as the child is reaped; process.wait()
        # also waits for the pipes to close
        while self.process.returncode is None:
            await asyncio.sleep(_EXIT_POLL_INTERVAL)
        self._exited.set()

        if not self._readers:
            return
        _, pending = await asyncio.wait(self._readers, timeout=self.drain_grace)
        if pending:
            logger.warning(
                "Update script exited but its output is still open, "
                "probably held by a background process",
                extra={"pid": self.pid, "exit_code": self.process.returncode},
            )
            self._stop_readers()

    def _stop_readers(self) -> None:
        for reader in self._readers:
            reader.cancel()

    async def read_line(self) -> OutputLine | None:
        """
        Wait for the next output line.

        Returns:
            The next line, or None once output has ended.
        """
        while self._open_streams:
            item = await self._queue.get()
            if item is None:
                self._open_streams -= 1
                continue
            return item
        return None

    async def lines(self) -> AsyncIterator[OutputLine]:
        """Iterate over output lines until output ends."""
        while True:
            line = await self.read_line()
            if line is None:
                return
            yield line

    async def wait(self) -> int:
        """Wait for the process to exit and return its exit code."""
        await self._exited.wait()
        returncode = self.process.returncode
        return returncode if returncode is not None else await self.process.wait()

    async def terminate(self, kill_after: float = 5.0) -> int | None:
        """
        Stop the script: SIGTERM, then SIGKILL when it does not exit in time.

        Output reading stops on every path.

        Args:
            kill_after: Seconds between SIGTERM and SIGKILL.

        Returns:
            Exit code, or None if it could not be collected.
        """
        try:
            try:
                return await self._signal_and_wait(self.process.terminate, kill_after)
            except TimeoutError:
                logger.warning(
                    "Update script ignored SIGTERM, sending SIGKILL",
                    extra={"pid": self.pid},
                )

            try:
                return await self._signal_and_wait(self.process.kill, kill_after)
            except TimeoutError:
                logger.error(
                    "Update script did not exit after SIGKILL", extra={"pid": self.pid}
                )
                if self._watcher is not None:
                    self._watcher.cancel()
                return None
        finally:
            self._stop_readers()

    async def _signal_and_wait(self, send_signal: Callable[[], None], timeout: float) -> int:
        if self.process.returncode is not None:
            return self.process.returncode
        try:
            send_signal()
        except ProcessLookupError:
            logger.debug("Update script already exited", extra={"pid": self.pid})
        return await asyncio.wait_for(self.wait(), timeout=timeout)


class ScriptRunner:
    """
    Launches the install script as a detached child process.

    The child runs in its own session so it survives the service exiting,
    and it never goes through a shell: the command is
    ``<command_prefix...> <script_path>``.

    Example:
        >>> runner = ScriptRunner()
        >>> process = await runner.start(Path("/opt/spectrabox/scripts/spectrabox-kiosk-install.sh"))
        >>> async for line in process.lines():
        ...     print(line.text)
    """

    def __init__(
        self,
        command_prefix: Sequence[str] = DEFAULT_COMMAND_PREFIX,
        *,
        base_env: Mapping[str, str] | None = None,
        extra_env: Mapping[str, str] | None = None,
        cwd: Path | str | None = None,
        drain_grace: float = OUTPUT_DRAIN_GRACE,
    ) -> None:
        """
        Initialize the runner.

        Args:
            command_prefix: Privilege escalation command and interpreter.
            base_env: Environment to take pass-through variables from.
                Defaults to os.environ.
            extra_env: Additional variables for the script.
            cwd: Working directory for the script.
            drain_grace: Seconds to keep reading output after the script
                exits.
        """
        self.command_prefix = tuple(command_prefix)
        self._base_env = base_env
        self._extra_env = dict(extra_env or {})
        self.cwd = Path(cwd) if cwd else None
        self.drain_grace = drain_grace

    def build_command(self, script_path: Path | str) -> list[str]:
        """Return the argv used to run the script."""
        return [*self.command_prefix, str(script_path)]

    def build_environment(self) -> dict[str, str]:
        """
        Build the sanitized environment for the script.

        Returns:
            Pass-through variables, SUDO_USER and UPDATE_MODE=true.
        """
        source = os.environ if self._base_env is None else self._base_env
        env = {key: source[key] for key in PASSTHROUGH_ENV_VARS if key in source}
        user = source.get("USER") or source.get("LOGNAME")
        if user:
            env["SUDO_USER"] = user
        env["UPDATE_MODE"] = "true"
        env.update(self._extra_env)
        return env

    async def start(self, script_path: Path | str) -> ScriptProcess:
        """
        Launch the script.

        Args:
            script_path: Validated script path.

        Returns:
            ScriptProcess streaming the script output.

        Raises:
            OSError: If the process cannot be spawned.
        """
        command = self.build_command(script_path)
        logger.info("Launching update script", extra={"command": command})

        process = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            stdin=asyncio.subprocess.DEVNULL,
            env=self.build_environment(),
            cwd=str(self.cwd) if self.cwd else None,
            start_new_session=True,
            limit=_READ_LIMIT,
        )

        logger.info("Update script started", extra={"pid": process.pid})
        return ScriptProcess(process, drain_grace=self.drain_grace)
