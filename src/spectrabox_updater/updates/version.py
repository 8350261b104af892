"""
Version management for the SpectraBox update subsystem.

This module implements the single-line version descriptor (Version.txt):
- Version string validation against configurable patterns
- Rejection of shell metacharacters, path separators and control characters
- Version comparison used by the update check
- VersionStore with a short read cache and atomic writes
"""

from __future__ import annotations

import asyncio
import os
import re
import time
from collections.abc import Callable
from pathlib import Path

from pydantic import BaseModel, Field

from spectrabox_updater.config import SecurityConfig, resolve_app_path
from spectrabox_updater.logging import get_logger

logger = get_logger(__name__)

UNKNOWN_VERSION = "unknown"

# Version.txt is a single short line
VERSION_FILE_MAX_BYTES = 1024

# Semantic versions as used for comparison: MAJOR.MINOR[.PATCH][-PRERELEASE]
SEMVER_PATTERN = re.compile(r"^\d+\.\d+(\.\d+)?(-[a-zA-Z0-9.-]+)?$")

COMMIT_HASH_PATTERN = re.compile(r"^[a-f0-9]{7,40}$")

_DANGEROUS_CHARS = re.compile(r"[<>\"'&;|`$(){}\[\]\\]")
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f-\x9f]")


class VersionValidation(BaseModel):
    """
    Result of validating a version string.

    Attributes:
        valid: Whether the string is an acceptable version.
        version: The trimmed version when valid.
        error: Reason for rejection when invalid.
    """

    valid: bool = Field(..., description="Whether the version is acceptable")
    version: str | None = Field(default=None, description="Trimmed version")
    error: str | None = Field(default=None, description="Rejection reason")


def validate_version_string(
    value: object,
    security: SecurityConfig | None = None,
) -> VersionValidation:
    """
    Validate a version string.

    The length limit always applies. The character and pattern checks apply
    unless `security.validate_version_strings` is disabled.

    Args:
        value: Candidate version (any type; non-strings are rejected).
        security: Security settings. Defaults to SecurityConfig().

    Returns:
        VersionValidation describing the outcome.

    Example:
        >>> validate_version_string("v1.2.3").valid
        True
        >>> validate_version_string("1.0; rm -rf /").error
        'Version string contains invalid characters'
    """
    security = security or SecurityConfig()

    if not isinstance(value, str) or not value:
        return VersionValidation(valid=False, error="Version must be a non-empty string")

    trimmed = value.strip()
    max_length = security.max_version_length

    if not trimmed or len(trimmed) > max_length:
        return VersionValidation(
            valid=False,
            error=f"Version string length must be between 1 and {max_length} characters",
        )

    if not security.validate_version_strings:
        return VersionValidation(valid=True, version=trimmed)

    if _DANGEROUS_CHARS.search(trimmed):
        return VersionValidation(
            valid=False, error="Version string contains invalid characters"
        )

    if ".." in trimmed or "/" in trimmed:
        return VersionValidation(
            valid=False, error="Version string contains path traversal characters"
        )

    if _CONTROL_CHARS.search(trimmed):
        return VersionValidation(
            valid=False, error="Version string contains control characters"
        )

    if not any(re.search(pattern, trimmed) for pattern in security.allowed_version_patterns):
        return VersionValidation(
            valid=False, error="Version string format is not recognized"
        )

    return VersionValidation(valid=True, version=trimmed)


def is_semantic_version(version: str) -> bool:
    """Return True when the version (optional leading 'v') is semantic."""
    if version.startswith("v"):
        version = version[1:]
    return SEMVER_PATTERN.match(version) is not None


def is_commit_hash(version: str) -> bool:
    """Return True when the version looks like a git commit hash."""
    return COMMIT_HASH_PATTERN.match(version) is not None


def _numeric_parts(version: str) -> list[int]:
    core = version.split("-", 1)[0]
    return [int(part) for part in core.split(".")]


def compare_versions(local_version: str, remote_version: str) -> bool:
    """
    Decide whether the remote version is newer than the local one.

    Args:
        local_version: Installed version (may be "unknown").
        remote_version: Version published upstream.

    Returns:
        True when an update is available. An unknown local version always
        counts as outdated. Semantic versions are compared numerically,
        component by component, with missing components treated as 0 and
        pre-release suffixes ignored. Anything else compares by inequality.
    """
    if local_version == UNKNOWN_VERSION:
        return True

    local = local_version[1:] if local_version.startswith("v") else local_version
    remote = remote_version[1:] if remote_version.startswith("v") else remote_version

    if local == remote:
        return False

    if SEMVER_PATTERN.match(local) and SEMVER_PATTERN.match(remote):
        local_parts = _numeric_parts(local)
        remote_parts = _numeric_parts(remote)
        for i in range(max(len(local_parts), len(remote_parts))):
            local_part = local_parts[i] if i < len(local_parts) else 0
            remote_part = remote_parts[i] if i < len(remote_parts) else 0
            if remote_part > local_part:
                return True
            if remote_part < local_part:
                return False
        return False

    return local != remote


# =============================================================================
# Version Store
# =============================================================================


class VersionStore:
    """
    Reads and writes the single-line version descriptor.

    Reads never raise: any problem (missing file, oversized file, invalid
    content, path outside the expected directory) yields "unknown" and is
    logged. Writes replace the file atomically through a ".tmp" sibling and
    keep the previous content in a ".backup" sibling.

    Attributes:
        version_file: Path to Version.txt.
        expected_dir: Directory the version file must resolve into.
        cache_ttl: Seconds a successful read is reused.
    """

    DEFAULT_CACHE_TTL = 60.0

    def __init__(
        self,
        version_file: Path | str,
        *,
        expected_dir: Path | str | None = None,
        security: SecurityConfig | None = None,
        cache_ttl: float = DEFAULT_CACHE_TTL,
        fallback_value: str = UNKNOWN_VERSION,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the VersionStore.

        Args:
            version_file: Path to the version file.
            expected_dir: When set, the version file must resolve inside it.
            security: Version validation settings.
            cache_ttl: Read cache TTL in seconds.
            fallback_value: Value reported when no valid version is available.
            clock: Monotonic clock used for cache expiry.
        """
        self.version_file = Path(version_file)
        self.expected_dir = Path(expected_dir) if expected_dir else None
        self.security = security or SecurityConfig()
        self.cache_ttl = cache_ttl
        self.fallback_value = fallback_value
        self._clock = clock
        self._cached_version: str | None = None
        self._cached_at: float | None = None

    @classmethod
    def from_config(cls, config, app_root: Path | str) -> VersionStore:
        """
        Build a VersionStore from an AppConfig.

        Args:
            config: AppConfig instance.
            app_root: Application root the configured path is relative to.
        """
        root = Path(app_root)
        return cls(
            resolve_app_path(root, config.version.file_path),
            expected_dir=root,
            security=config.security,
            fallback_value=config.version.fallback_value,
        )

    @property
    def backup_file(self) -> Path:
        """Path of the ".backup" sibling."""
        return self.version_file.with_name(self.version_file.name + ".backup")

    @property
    def temp_file(self) -> Path:
        """Path of the ".tmp" staging sibling."""
        return self.version_file.with_name(self.version_file.name + ".tmp")

    def clear_cache(self) -> None:
        """Drop the cached version."""
        self._cached_version = None
        self._cached_at = None

    def _path_allowed(self) -> bool:
        if self.expected_dir is None:
            return True
        resolved = self.version_file.resolve()
        expected = self.expected_dir.resolve()
        if resolved == expected or expected not in resolved.parents:
            logger.error(
                "Version file path validation failed",
                extra={"resolved": str(resolved), "expected_dir": str(expected)},
            )
            return False
        return True

    def validate(self, value: object) -> VersionValidation:
        """Validate a version string with this store's security settings."""
        return validate_version_string(value, self.security)

    async def read(self) -> str:
        """
        Read the current version.

        Returns:
            The validated version, or the fallback value ("unknown").
        """
        if (
            self._cached_version is not None
            and self._cached_at is not None
            and (self._clock() - self._cached_at) < self.cache_ttl
        ):
            return self._cached_version

        if not self._path_allowed():
            return self.fallback_value

        path = self.version_file

        def _read() -> str | None:
            size = path.stat().st_size
            if size > VERSION_FILE_MAX_BYTES:
                logger.warning(
                    "Version file is too large",
                    extra={"size": size, "max_size": VERSION_FILE_MAX_BYTES},
                )
                return None
            if size == 0:
                logger.warning("Version file is empty", extra={"path": str(path)})
                return None
            return path.read_text(encoding="utf-8")

        try:
            content = await asyncio.get_event_loop().run_in_executor(None, _read)
        except FileNotFoundError:
            logger.warning("Version file not found", extra={"path": str(path)})
            return self.fallback_value
        except PermissionError as e:
            logger.error(
                "Permission denied reading version file",
                extra={"path": str(path), "error": str(e)},
            )
            return self.fallback_value
        except (OSError, UnicodeDecodeError) as e:
            logger.error(
                "Error reading version file",
                extra={"path": str(path), "error": str(e)},
            )
            return self.fallback_value

        if content is None:
            return self.fallback_value

        validation = self.validate(content)
        if not validation.valid or validation.version is None:
            logger.warning(
                "Version file contains invalid version string",
                extra={"version": content.strip()[:50], "error": validation.error},
            )
            return self.fallback_value

        self._cached_version = validation.version
        self._cached_at = self._clock()

        logger.debug(f"Version read from file: {validation.version}")
        return validation.version

    async def write(self, candidate: object) -> bool:
        """
        Replace the stored version.

        Args:
            candidate: New version string.

        Returns:
            True on success. Invalid input and I/O errors return False and
            leave the file unchanged.
        """
        validation = self.validate(candidate)
        if not validation.valid or validation.version is None:
            logger.error(
                "Invalid version string provided for update",
                extra={
                    "version": str(candidate)[:50] if candidate is not None else None,
                    "error": validation.error,
                },
            )
            return False

        if not self._path_allowed():
            return False

        clean_version = validation.version
        path = self.version_file
        backup_path = self.backup_file
        temp_path = self.temp_file

        def _backup() -> bool:
            if not path.is_file():
                return False
            backup_path.write_bytes(path.read_bytes())
            return True

        def _write() -> None:
            with open(temp_path, "w", encoding="utf-8") as f:
                f.write(clean_version)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, path)

        loop = asyncio.get_event_loop()

        backup_created = False
        try:
            backup_created = await loop.run_in_executor(None, _backup)
        except OSError as e:
            logger.warning(
                "Could not create version file backup",
                extra={"path": str(backup_path), "error": str(e)},
            )

        try:
            await loop.run_in_executor(None, _write)
        except OSError as e:
            logger.error(
                "Error updating version file",
                extra={"path": str(path), "version": clean_version, "error": str(e)},
            )
            try:
                temp_path.unlink(missing_ok=True)
            except OSError as cleanup_error:
                logger.debug(
                    "Could not remove staging file",
                    extra={"path": str(temp_path), "error": str(cleanup_error)},
                )
            return False

        self._cached_version = clean_version
        self._cached_at = self._clock()

        logger.info(
            f"Version updated to: {clean_version}",
            extra={"backup_created": backup_created},
        )
        return True
