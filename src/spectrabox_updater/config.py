"""
Configuration management for the SpectraBox update subsystem.

The persisted update configuration document (JSON or YAML, camelCase keys)
is merged over built-in defaults. Unlike a whole-document validation, every
field is validated on its own: an invalid value is logged and replaced by its
default, so one bad entry never discards the rest of the document.

Configuration sources, lowest precedence first:
1. Built-in defaults (Pydantic model defaults)
2. Configuration document (config/update-config.json by default)
3. Environment variables (SPECTRABOX_* prefix, __ for nesting)
"""

from __future__ import annotations

import os
import re
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictInt,
    StrictStr,
    ValidationError,
    field_validator,
)
from pydantic.alias_generators import to_camel

from spectrabox_updater.logging import get_logger

logger = get_logger(__name__)

DEFAULT_VERSION_PATTERNS: list[str] = [
    r"^\d+\.\d+\.\d+(-[a-zA-Z0-9.-]+)?$",  # Semantic versioning
    r"^v?\d+\.\d+(\.\d+)?$",  # Simple version numbers
    r"^[a-f0-9]{7,40}$",  # Git commit hashes
    r"^\d{4}\.\d{2}\.\d{2}$",  # Date-based versions
    r"^[a-zA-Z0-9.-]+$",  # Generic alphanumeric with dots and dashes
]


class _Section(BaseModel):
    """Base for configuration sections: camelCase on disk, snake_case in code."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _non_empty(value: str) -> str:
    stripped = value.strip()
    if not stripped:
        raise ValueError("Value must be a non-empty string")
    return stripped


# =============================================================================
# GitHub Configuration
# =============================================================================


class GitHubConfig(_Section):
    """GitHub repository settings.

    Attributes:
        owner: Repository owner.
        repository: Repository name.
        api_url: GitHub API base URL.
        rate_limit_cache_timeout: Cache TTL for API lookups, in milliseconds.
    """

    owner: StrictStr = Field(default="mattstegner", description="Repository owner")
    repository: StrictStr = Field(default="SpectraBox", description="Repository name")
    api_url: StrictStr = Field(
        default="https://api.github.com",
        description="GitHub API base URL",
    )
    rate_limit_cache_timeout: StrictInt = Field(
        default=300000,
        gt=0,
        description="Cache TTL for GitHub API lookups in milliseconds",
    )

    @field_validator("owner", "repository")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Require a non-empty repository identity."""
        return _non_empty(v)

    @field_validator("api_url")
    @classmethod
    def validate_api_url(cls, v: str) -> str:
        """Accept only http(s) URLs with a hostname."""
        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            raise ValueError(f"Invalid API URL: {v}")
        return v

    @property
    def api_host(self) -> str:
        """Hostname extracted from api_url."""
        return urlparse(self.api_url).hostname or ""

    @property
    def cache_ttl_seconds(self) -> float:
        """Cache TTL in seconds."""
        return self.rate_limit_cache_timeout / 1000.0


# =============================================================================
# Update Configuration
# =============================================================================


class UpdateConfig(_Section):
    """Update behaviour settings.

    Attributes:
        enabled: Whether update checks are enabled.
        check_interval: Interval between automatic checks, in milliseconds.
        auto_update: Whether updates are applied without user action.
        update_script: Path of the install script, relative to the app root.
        backup_before_update: Record the current version before updating.
        max_update_attempts: Maximum attempts for one update.
        update_timeout: Hard ceiling for script execution, in milliseconds.
        command_prefix: Privilege escalation and interpreter used to run the script.
    """

    enabled: StrictBool = Field(default=True, description="Enable update checks")
    check_interval: StrictInt = Field(
        default=3600000,
        ge=60000,
        description="Interval between update checks in milliseconds",
    )
    auto_update: StrictBool = Field(
        default=False,
        description="Apply updates automatically",
    )
    update_script: StrictStr = Field(
        default="./scripts/spectrabox-kiosk-install.sh",
        description="Install script path relative to the application root",
    )
    backup_before_update: StrictBool = Field(
        default=True,
        description="Record the current version before updating",
    )
    max_update_attempts: StrictInt = Field(
        default=3,
        ge=1,
        le=10,
        description="Maximum attempts for one update",
    )
    update_timeout: StrictInt = Field(
        default=600000,
        ge=60000,
        description="Script execution ceiling in milliseconds",
    )
    command_prefix: list[StrictStr] = Field(
        default_factory=lambda: ["sudo", "bash"],
        min_length=1,
        description="Privilege escalation command and interpreter",
    )

    @field_validator("update_script")
    @classmethod
    def validate_update_script(cls, v: str) -> str:
        """Require a non-empty script path."""
        return _non_empty(v)


# =============================================================================
# Version Configuration
# =============================================================================


class VersionConfig(_Section):
    """Version file settings.

    Attributes:
        file_path: Version file path relative to the app root.
        format: Expected version format.
        fallback_value: Value reported when the version cannot be read.
    """

    file_path: StrictStr = Field(
        default="./Version.txt",
        description="Version file path relative to the application root",
    )
    format: StrictStr = Field(
        default="semantic",
        description="Version format: semantic, commit, date, custom",
    )
    fallback_value: StrictStr = Field(
        default="unknown",
        description="Value reported when no valid version is available",
    )

    @field_validator("file_path")
    @classmethod
    def validate_file_path(cls, v: str) -> str:
        """Require a non-empty file path."""
        return _non_empty(v)

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        """Validate the version format name."""
        valid_formats = {"semantic", "commit", "date", "custom"}
        if v not in valid_formats:
            raise ValueError(
                f"Invalid version format: {v}. Must be one of: {', '.join(sorted(valid_formats))}"
            )
        return v


# =============================================================================
# Security Configuration
# =============================================================================


class SecurityConfig(_Section):
    """Version string validation settings.

    Attributes:
        validate_version_strings: Apply pattern and character checks.
        max_version_length: Maximum accepted version length.
        allowed_version_patterns: Regular expressions a version must match.
    """

    validate_version_strings: StrictBool = Field(
        default=True,
        description="Validate version strings against the allowed patterns",
    )
    max_version_length: StrictInt = Field(
        default=50,
        gt=0,
        le=100,
        description="Maximum version string length",
    )
    allowed_version_patterns: list[StrictStr] = Field(
        default_factory=lambda: list(DEFAULT_VERSION_PATTERNS),
        description="Accepted version string patterns",
    )

    @field_validator("allowed_version_patterns")
    @classmethod
    def validate_patterns(cls, v: list[str]) -> list[str]:
        """Drop patterns that do not compile; reject the list if none remain."""
        valid: list[str] = []
        for pattern in v:
            if not pattern:
                continue
            try:
                re.compile(pattern)
            except re.error:
                logger.warning(
                    "Invalid regex pattern in configuration",
                    extra={"pattern": pattern},
                )
                continue
            valid.append(pattern)
        if not valid:
            raise ValueError("No valid version patterns configured")
        return valid


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(_Section):
    """Logging configuration.

    Attributes:
        level: Log level.
        log_to_stdout: Whether to log to stdout.
        json_format: Whether to emit JSON log lines.
        debug_mode: Include diagnostic details in error responses.
    """

    level: StrictStr = Field(default="info", description="Log level")
    log_to_stdout: StrictBool = Field(default=True, description="Log to stdout")
    json_format: StrictBool = Field(default=True, description="Emit JSON log lines")
    debug_mode: StrictBool = Field(
        default=False,
        description="Expose diagnostic details in error responses",
    )

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        valid_levels = {"debug", "info", "warn", "warning", "error", "critical"}
        v_lower = v.lower()
        if v_lower not in valid_levels:
            raise ValueError(
                f"Invalid log level: {v}. Must be one of: {', '.join(sorted(valid_levels))}"
            )
        if v_lower == "warn":
            return "warning"
        return v_lower


# =============================================================================
# Request Guard Configuration
# =============================================================================


class GuardConfig(_Section):
    """Request guard limits for the update endpoints.

    Attributes:
        max_requests: Requests allowed per client within the window.
        window_seconds: Sliding window length.
        max_body_bytes: Body ceiling for update endpoints.
        max_preference_body_bytes: Body ceiling for preference endpoints.
        max_user_agent_length: User agents must be shorter than this.
        test_mode: Bypass every check.
    """

    max_requests: StrictInt = Field(default=10, gt=0, le=10000)
    window_seconds: StrictInt = Field(default=60, gt=0, le=3600)
    max_body_bytes: StrictInt = Field(default=1024, gt=0)
    max_preference_body_bytes: StrictInt = Field(default=10240, gt=0)
    max_user_agent_length: StrictInt = Field(default=500, gt=0)
    test_mode: StrictBool = Field(default=False)


# =============================================================================
# Main Application Configuration
# =============================================================================


class AppConfig(BaseModel):
    """
    Complete update subsystem configuration.

    Attributes:
        github: GitHub repository settings.
        update: Update behaviour settings.
        version: Version file settings.
        security: Version validation settings.
        logging: Logging configuration.
        guard: Request guard limits.
    """

    github: GitHubConfig = Field(default_factory=GitHubConfig)
    update: UpdateConfig = Field(default_factory=UpdateConfig)
    version: VersionConfig = Field(default_factory=VersionConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    guard: GuardConfig = Field(default_factory=GuardConfig)


_SECTIONS: dict[str, type[_Section]] = {
    "github": GitHubConfig,
    "update": UpdateConfig,
    "version": VersionConfig,
    "security": SecurityConfig,
    "logging": LoggingConfig,
    "guard": GuardConfig,
}


# =============================================================================
# Configuration Loading Functions
# =============================================================================


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Args:
        base: The base dictionary.
        override: The dictionary with values to override.

    Returns:
        A new dictionary with merged values.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_document(config_path: Path) -> dict[str, Any]:
    """
    Load the configuration document.

    JSON documents are valid YAML, so both formats go through yaml.safe_load.

    Raises:
        FileNotFoundError: If the file doesn't exist.
        yaml.YAMLError: If the document cannot be parsed.
        ValueError: If the document is not a mapping.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError("Configuration document must be a mapping")
    return data


def _parse_env_value(value: str) -> Any:
    """
    Parse an environment variable value to an appropriate Python type.

    Args:
        value: String value from environment variable.

    Returns:
        Parsed value (bool, int, list, or string).
    """
    if value.lower() in ("true", "yes", "on"):
        return True
    if value.lower() in ("false", "no", "off"):
        return False

    try:
        return int(value)
    except ValueError:
        pass

    if "," in value:
        return [_parse_env_value(item.strip()) for item in value.split(",")]

    return value


def _load_env_config(prefix: str = "SPECTRABOX_") -> dict[str, Any]:
    """
    Load configuration overrides from environment variables.

    Example: SPECTRABOX_GITHUB__OWNER=someone sets github.owner.

    Args:
        prefix: Environment variable prefix.

    Returns:
        Nested dictionary of overrides.
    """
    result: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue

        parts = key[len(prefix) :].lower().split("__")

        current = result
        for part in parts[:-1]:
            current = current.setdefault(part, {})
            if not isinstance(current, dict):
                break
        else:
            current[parts[-1]] = _parse_env_value(value)

    return result


def _field_name_for(section_cls: type[_Section], key: str) -> str | None:
    """Return the model field a document key refers to (snake_case or camelCase)."""
    for name, info in section_cls.model_fields.items():
        if key in (name, info.alias):
            return name
    return None


def _validate_section(
    section_name: str,
    section_cls: type[_Section],
    raw: Any,
) -> _Section:
    """
    Validate one configuration section field by field.

    Args:
        section_name: Section key in the document.
        section_cls: Model class for the section.
        raw: Raw section value from the merged document.

    Returns:
        The section model with invalid fields reset to their defaults.
    """
    if raw is None:
        return section_cls()
    if not isinstance(raw, dict):
        logger.warning(
            "Configuration section is not a mapping, using defaults",
            extra={"section": section_name},
        )
        return section_cls()

    accepted: dict[str, Any] = {}
    for key, value in raw.items():
        field_name = _field_name_for(section_cls, key)
        if field_name is None:
            logger.debug(
                "Ignoring unknown configuration field",
                extra={"section": section_name, "field": key},
            )
            continue
        try:
            section_cls.model_validate({field_name: value})
        except ValidationError as e:
            logger.warning(
                "Invalid configuration value, using default",
                extra={
                    "section": section_name,
                    "field": key,
                    "error": e.errors()[0].get("msg") if e.errors() else str(e),
                },
            )
            continue
        accepted[field_name] = value

    return section_cls.model_validate(accepted)


def build_config(document: dict[str, Any]) -> AppConfig:
    """
    Build an AppConfig from a raw document, validating every field on its own.

    Args:
        document: Raw configuration mapping.

    Returns:
        AppConfig where every invalid field holds its default value.
    """
    sections = {
        name: _validate_section(name, section_cls, document.get(name))
        for name, section_cls in _SECTIONS.items()
    }
    return AppConfig(**sections)


def resolve_app_path(app_root: Path, value: str) -> Path:
    """
    Resolve a configured path against the application root.

    Args:
        app_root: Application root directory.
        value: Configured path, relative ("./x", "x") or absolute.

    Returns:
        Absolute, normalized path.
    """
    path = Path(value)
    if not path.is_absolute():
        path = app_root / path
    return Path(os.path.normpath(path.absolute()))


class ConfigLoader:
    """
    Loads the update configuration with a short-lived cache.

    Attributes:
        config_path: Path to the configuration document.
        cache_ttl_seconds: How long a loaded configuration is reused.

    Example:
        >>> loader = ConfigLoader("/opt/spectrabox/config/update-config.json")
        >>> config = loader.load()
        >>> config.github.repository
        'SpectraBox'
    """

    DEFAULT_CONFIG_PATH = Path("config/update-config.json")

    def __init__(
        self,
        config_path: Path | str | None = None,
        *,
        cache_ttl_seconds: float = 60.0,
        env_prefix: str = "SPECTRABOX_",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the ConfigLoader.

        Args:
            config_path: Path to the configuration document.
            cache_ttl_seconds: Cache TTL in seconds.
            env_prefix: Prefix for environment variable overrides.
            clock: Monotonic clock used for cache expiry.
        """
        self.config_path = Path(config_path) if config_path else self.DEFAULT_CONFIG_PATH
        self.cache_ttl_seconds = cache_ttl_seconds
        self._env_prefix = env_prefix
        self._clock = clock
        self._config: AppConfig | None = None
        self._loaded_at: float | None = None

    def _fresh_cached_config(self) -> AppConfig | None:
        if self._config is None or self._loaded_at is None:
            return None
        if self._clock() - self._loaded_at >= self.cache_ttl_seconds:
            return None
        return self._config

    def load(self, *, force_refresh: bool = False) -> AppConfig:
        """
        Load the configuration, reusing the cached copy while it is fresh.

        A missing or unparsable document yields the defaults (plus any
        environment overrides); this method never raises for bad input.

        Args:
            force_refresh: Bypass the cache.

        Returns:
            Validated AppConfig.
        """
        cached = None if force_refresh else self._fresh_cached_config()
        if cached is not None:
            return cached

        document: dict[str, Any] = {}
        try:
            document = _load_document(self.config_path)
        except FileNotFoundError:
            logger.warning(
                "Configuration file not found, using defaults",
                extra={"path": str(self.config_path)},
            )
        except (OSError, yaml.YAMLError, ValueError) as e:
            logger.error(
                "Error loading configuration, using defaults",
                extra={"path": str(self.config_path), "error": str(e)},
            )

        document = _deep_merge(document, _load_env_config(self._env_prefix))
        config = build_config(document)

        self._config = config
        self._loaded_at = self._clock()

        logger.debug(
            "Configuration loaded",
            extra={
                "path": str(self.config_path),
                "owner": config.github.owner,
                "repository": config.github.repository,
                "update_enabled": config.update.enabled,
            },
        )
        return config

    def clear_cache(self) -> None:
        """Drop the cached configuration."""
        self._config = None
        self._loaded_at = None


def load_config(config_path: Path | str | None = None) -> AppConfig:
    """
    Load configuration once, without caching.

    Args:
        config_path: Path to the configuration document.

    Returns:
        Validated AppConfig.
    """
    return ConfigLoader(config_path).load()
