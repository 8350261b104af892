"""
GitHub release resolver for the SpectraBox update subsystem.

This module queries the GitHub REST API for the latest tagged release or the
latest commit of the configured repository and decides whether the installed
version is out of date.

Every response is treated as untrusted:
- Request paths are validated before use and only api.github.com is contacted
- Response bodies are capped at 1 MiB while streaming
- Payload fields are sanitized and length-capped into typed models
- URLs are kept only when they point at https://*github.com

Lookups are cached per repository for a short TTL so that repeated checks do
not consume the unauthenticated API rate limit.
"""

from __future__ import annotations

import asyncio
import json
import re
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Annotated, Any, Literal
from urllib.parse import urlparse

import httpx
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from spectrabox_updater.errors import ResolverError
from spectrabox_updater.logging import get_logger
from spectrabox_updater.updates.version import compare_versions, is_commit_hash

if TYPE_CHECKING:
    from spectrabox_updater.config import AppConfig

logger = get_logger(__name__)

GITHUB_API_HOST = "api.github.com"
USER_AGENT = "SpectraBox-Update-Checker/1.0"
ACCEPT_HEADER = "application/vnd.github.v3+json"

MAX_RESPONSE_BYTES = 1024 * 1024
MAX_PATH_LENGTH = 500

NO_RELEASES_VERSION = "no-releases"
UNKNOWN_REMOTE_VERSION = "unknown"
NO_RELEASES_MESSAGE = "No GitHub releases found. Update checks require tagged releases."

_UNSAFE_CHARS = re.compile(r"[<>\"'&;|`$(){}\[\]\\]")
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f-\x9f]")


class _WireModel(BaseModel):
    """Models serialized with camelCase keys for API responses."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# Remote payload models
# =============================================================================


class ReleaseInfo(_WireModel):
    """Latest tagged release of the repository."""

    kind: Literal["release"] = "release"
    version: str
    name: str = ""
    published_at: str = ""
    url: str = ""
    body: str = ""
    prerelease: bool = False
    draft: bool = False


class CommitInfo(_WireModel):
    """Head commit of the default branch."""

    kind: Literal["commit"] = "commit"
    sha: str
    short_sha: str
    message: str = ""
    author: str = ""
    date: str = ""
    url: str = ""


RemoteInfo = Annotated[ReleaseInfo | CommitInfo, Field(discriminator="kind")]


class RateLimitInfo(_WireModel):
    """Rate-limit budget reported by the last GitHub response."""

    remaining: int | None = None
    reset_time: str | None = None


class UpdateCheckResult(_WireModel):
    """
    Outcome of one update check. Produced fresh for each check.

    Attributes:
        update_available: Whether the remote version is newer.
        local_version: Installed version.
        remote_version: Remote version, "no-releases" or "unknown".
        remote_info: Release or commit the comparison used.
        comparison_method: "release", "commit" or "none".
        last_checked: ISO 8601 timestamp of the check.
        repository_url: Browser URL of the repository.
        rate_limit_info: Rate-limit budget after the check.
        message: Explanation for results without a comparison.
        error: Error message when the check failed.
        error_code: Machine-readable error code when the check failed.
        retryable: Whether a failed check may succeed later.
    """

    update_available: bool = False
    local_version: str
    remote_version: str
    remote_info: RemoteInfo | None = None
    comparison_method: Literal["release", "commit", "none"] = "none"
    last_checked: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    repository_url: str
    rate_limit_info: RateLimitInfo = Field(default_factory=RateLimitInfo)
    message: str | None = None
    error: str | None = None
    error_code: str | None = None
    retryable: bool = False


# =============================================================================
# Sanitization
# =============================================================================


def sanitize_string(value: Any, max_length: int = 100) -> str:
    """
    Strip shell/HTML metacharacters and control characters, then cap length.

    Args:
        value: Raw payload value. Non-strings become "".
        max_length: Maximum length of the result.

    Returns:
        Sanitized string.
    """
    if not isinstance(value, str):
        return ""
    cleaned = _CONTROL_CHARS.sub("", _UNSAFE_CHARS.sub("", value)).strip()
    return cleaned[:max_length]


def sanitize_url(value: Any) -> str:
    """Return the URL when it is https on a github.com host, else ""."""
    if not isinstance(value, str):
        return ""
    try:
        parsed = urlparse(value.strip())
    except ValueError:
        return ""
    hostname = parsed.hostname or ""
    if parsed.scheme != "https" or not (
        hostname == "github.com" or hostname.endswith(".github.com")
    ):
        return ""
    if _CONTROL_CHARS.search(value):
        return ""
    return value.strip()


def parse_release(data: dict[str, Any]) -> ReleaseInfo:
    """
    Build a ReleaseInfo from a raw releases/latest payload.

    Raises:
        ResolverError: INVALID_RESPONSE when the payload has no usable tag.
    """
    version = sanitize_string(data.get("tag_name"), 50)
    if not version:
        raise ResolverError(
            "INVALID_RESPONSE",
            "GitHub release payload has no tag name",
            retryable=False,
        )
    return ReleaseInfo(
        version=version,
        name=sanitize_string(data.get("name"), 100),
        published_at=sanitize_string(data.get("published_at"), 30),
        url=sanitize_url(data.get("html_url")),
        body=sanitize_string(data.get("body"), 5000),
        prerelease=bool(data.get("prerelease")),
        draft=bool(data.get("draft")),
    )


def parse_commit(data: dict[str, Any]) -> CommitInfo:
    """
    Build a CommitInfo from a raw commits/HEAD payload.

    Raises:
        ResolverError: INVALID_RESPONSE when the payload has no usable SHA.
    """
    sha = sanitize_string(data.get("sha"), 40)
    if not sha:
        raise ResolverError(
            "INVALID_RESPONSE",
            "GitHub commit payload has no SHA",
            retryable=False,
        )
    commit = data.get("commit")
    commit = commit if isinstance(commit, dict) else {}
    author = commit.get("author")
    author = author if isinstance(author, dict) else {}
    return CommitInfo(
        sha=sha,
        short_sha=sha[:7],
        message=sanitize_string(commit.get("message"), 500),
        author=sanitize_string(author.get("name"), 100),
        date=sanitize_string(author.get("date"), 30),
        url=sanitize_url(data.get("html_url")),
    )


def validate_api_path(path: str) -> None:
    """
    Validate a GitHub API request path.

    Raises:
        ResolverError: INVALID_REQUEST when the path is unsafe.
    """
    if not path or not isinstance(path, str):
        raise ResolverError("INVALID_REQUEST", "Invalid API path provided")
    if not path.startswith("/") or ".." in path or "\\" in path:
        raise ResolverError("INVALID_REQUEST", "Invalid API path format")
    if len(path) > MAX_PATH_LENGTH:
        raise ResolverError("INVALID_REQUEST", "API path too long")


# =============================================================================
# Resolver
# =============================================================================


class GitHubResolver:
    """
    Resolves the latest upstream version of a GitHub repository.

    Attributes:
        owner: Repository owner.
        repository: Repository name.
        api_host: API hostname; only api.github.com is accepted.
        cache_ttl_seconds: Lookup cache TTL.

    Example:
        >>> resolver = GitHubResolver("mattstegner", "SpectraBox")
        >>> result = await resolver.check_for_updates("1.0.0")
        >>> result.update_available
        False
    """

    DEFAULT_CACHE_TTL = 300.0
    DEFAULT_TIMEOUT = 10.0

    def __init__(
        self,
        owner: str,
        repository: str,
        *,
        api_host: str = GITHUB_API_HOST,
        cache_ttl_seconds: float = DEFAULT_CACHE_TTL,
        timeout: float = DEFAULT_TIMEOUT,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the resolver.

        Args:
            owner: Repository owner.
            repository: Repository name.
            api_host: API hostname.
            cache_ttl_seconds: Lookup cache TTL in seconds.
            timeout: Per-request timeout in seconds.
            client: Shared httpx client. A short-lived client is created per
                request when omitted.
            clock: Monotonic clock used for cache expiry.
        """
        self.owner = owner
        self.repository = repository
        self.api_host = api_host
        self.cache_ttl_seconds = cache_ttl_seconds
        self.timeout = timeout
        self._client = client
        self._clock = clock
        self._cache: dict[str, tuple[float, ReleaseInfo | CommitInfo]] = {}
        self._lock = asyncio.Lock()
        self._rate_limit = RateLimitInfo()

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        client: httpx.AsyncClient | None = None,
    ) -> GitHubResolver:
        """
        Create a GitHubResolver from configuration.

        Args:
            config: AppConfig with the github section.
            client: Optional shared httpx client.

        Returns:
            Configured GitHubResolver instance.
        """
        return cls(
            owner=config.github.owner,
            repository=config.github.repository,
            api_host=config.github.api_host,
            cache_ttl_seconds=config.github.cache_ttl_seconds,
            client=client,
        )

    @property
    def repository_url(self) -> str:
        """Browser URL of the repository."""
        return f"https://github.com/{self.owner}/{self.repository}"

    @property
    def rate_limit_info(self) -> RateLimitInfo:
        """Rate-limit budget reported by the most recent response."""
        return self._rate_limit.model_copy()

    def clear_cache(self) -> None:
        """Clear cached lookups."""
        self._cache.clear()

    def _cache_key(self, kind: str) -> str:
        return f"latest-{kind}-{self.owner}-{self.repository}"

    def _get_cached(self, key: str) -> ReleaseInfo | CommitInfo | None:
        entry = self._cache.get(key)
        if entry is None:
            return None
        stored_at, value = entry
        if self._clock() - stored_at >= self.cache_ttl_seconds:
            del self._cache[key]
            return None
        return value

    def _capture_rate_limit(self, headers: httpx.Headers) -> None:
        remaining: int | None = None
        reset_time: str | None = None

        raw_remaining = headers.get("x-ratelimit-remaining")
        if raw_remaining is not None:
            try:
                remaining = int(raw_remaining)
            except ValueError:
                remaining = None

        raw_reset = headers.get("x-ratelimit-reset")
        if raw_reset is not None:
            try:
                reset_time = datetime.fromtimestamp(int(raw_reset), UTC).isoformat()
            except (ValueError, OverflowError, OSError):
                reset_time = None

        self._rate_limit = RateLimitInfo(remaining=remaining, reset_time=reset_time)

    async def _request(self, path: str) -> dict[str, Any]:
        """
        Perform a GET request against the GitHub API.

        Args:
            path: API path, e.g. /repos/{owner}/{repo}/releases/latest.

        Returns:
            Parsed JSON object.

        Raises:
            ResolverError: On invalid input, transport failure, non-200 status
                or an unusable body.
        """
        validate_api_path(path)
        if self.api_host != GITHUB_API_HOST:
            raise ResolverError("INVALID_REQUEST", "Invalid API hostname")

        url = f"https://{self.api_host}{path}"
        headers = {"User-Agent": USER_AGENT, "Accept": ACCEPT_HEADER}

        logger.debug("GitHub API request", extra={"path": path})

        try:
            if self._client is not None:
                status_code, body = await self._fetch(self._client, url, headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    status_code, body = await self._fetch(client, url, headers)
        except httpx.TimeoutException as e:
            raise ResolverError(
                "REQUEST_TIMEOUT",
                "GitHub API request timed out",
                retryable=True,
            ) from e
        except httpx.HTTPError as e:
            raise ResolverError(
                "NETWORK_ERROR",
                f"GitHub API request failed: {e}",
                retryable=True,
            ) from e

        if status_code == 404:
            raise ResolverError(
                "REPOSITORY_NOT_FOUND",
                f"Repository or resource not found: {path}",
                details={"status_code": status_code},
            )
        if status_code in (403, 429):
            raise ResolverError(
                "RATE_LIMIT_EXCEEDED",
                "GitHub API rate limit exceeded or access forbidden",
                retryable=True,
                details={
                    "status_code": status_code,
                    "reset_time": self._rate_limit.reset_time,
                },
            )
        if status_code != 200:
            raise ResolverError(
                "GITHUB_API_ERROR",
                f"GitHub API request failed with status {status_code}",
                retryable=status_code >= 500,
                details={"status_code": status_code},
            )

        if not body:
            raise ResolverError("INVALID_RESPONSE", "Empty response from GitHub API")

        try:
            data = json.loads(body)
        except (ValueError, UnicodeDecodeError) as e:
            raise ResolverError(
                "INVALID_RESPONSE",
                f"Failed to parse GitHub API response: {e}",
            ) from e

        if not isinstance(data, dict):
            raise ResolverError(
                "INVALID_RESPONSE", "Invalid response format from GitHub API"
            )

        return data

    async def _fetch(
        self,
        client: httpx.AsyncClient,
        url: str,
        headers: dict[str, str],
    ) -> tuple[int, bytes]:
        """Stream a response body, aborting once it exceeds the size cap."""
        async with client.stream(
            "GET", url, headers=headers, timeout=self.timeout
        ) as response:
            self._capture_rate_limit(response.headers)

            chunks: list[bytes] = []
            size = 0
            async for chunk in response.aiter_bytes():
                size += len(chunk)
                if size > MAX_RESPONSE_BYTES:
                    raise ResolverError(
                        "INVALID_RESPONSE",
                        "GitHub API response too large",
                        details={"max_bytes": MAX_RESPONSE_BYTES},
                    )
                chunks.append(chunk)

            return response.status_code, b"".join(chunks)

    async def get_latest_release(self) -> ReleaseInfo:
        """
        Get the latest release, from cache when fresh.

        Raises:
            ResolverError: If the lookup fails. REPOSITORY_NOT_FOUND also
                means the repository has no published release.
        """
        key = self._cache_key("release")
        async with self._lock:
            cached = self._get_cached(key)
            if isinstance(cached, ReleaseInfo):
                logger.debug("Returning cached latest release data")
                return cached

            path = f"/repos/{self.owner}/{self.repository}/releases/latest"
            release = parse_release(await self._request(path))
            self._cache[key] = (self._clock(), release)

        logger.info(
            "Latest release retrieved from GitHub",
            extra={"version": release.version, "published_at": release.published_at},
        )
        return release

    async def get_latest_commit(self) -> CommitInfo:
        """
        Get the head commit of the default branch, from cache when fresh.

        Raises:
            ResolverError: If the lookup fails.
        """
        key = self._cache_key("commit")
        async with self._lock:
            cached = self._get_cached(key)
            if isinstance(cached, CommitInfo):
                logger.debug("Returning cached latest commit data")
                return cached

            path = f"/repos/{self.owner}/{self.repository}/commits/HEAD"
            commit = parse_commit(await self._request(path))
            self._cache[key] = (self._clock(), commit)

        logger.info(
            "Latest commit retrieved from GitHub",
            extra={"sha": commit.short_sha, "date": commit.date},
        )
        return commit

    async def check_for_updates(self, local_version: str) -> UpdateCheckResult:
        """
        Compare the installed version with the latest upstream version.

        The latest release is preferred. Without a release, the head commit is
        used only when the local version is itself a commit hash; a semantic
        local version with no tagged releases is never reported as outdated.

        Args:
            local_version: Installed version.

        Returns:
            UpdateCheckResult. Failures are reported in the result, never raised.
        """
        logger.info("Checking for updates", extra={"local_version": local_version})

        try:
            try:
                release = await self.get_latest_release()
            except ResolverError as e:
                if e.error_code != "REPOSITORY_NOT_FOUND":
                    raise
                logger.warning(
                    "Could not get latest release", extra={"error": e.message}
                )
            else:
                return self._completed(
                    local_version,
                    remote_info=release,
                    remote_version=release.version,
                    update_available=compare_versions(local_version, release.version),
                    comparison_method="release",
                )

            if not is_commit_hash(local_version):
                logger.info(
                    "No GitHub releases found and local version is not a commit "
                    "hash - no update available"
                )
                return UpdateCheckResult(
                    update_available=False,
                    local_version=local_version,
                    remote_version=NO_RELEASES_VERSION,
                    comparison_method="none",
                    repository_url=self.repository_url,
                    rate_limit_info=self.rate_limit_info,
                    message=NO_RELEASES_MESSAGE,
                )

            logger.info("Local version is a commit hash, checking latest commit")
            commit = await self.get_latest_commit()
            return self._completed(
                local_version,
                remote_info=commit,
                remote_version=commit.short_sha,
                update_available=local_version not in (commit.sha, commit.short_sha),
                comparison_method="commit",
            )
        except ResolverError as e:
            logger.error(
                "Error checking for updates",
                extra={"error_code": e.error_code, "error": e.message},
            )
            return self._failed(local_version, e.message, e.error_code, e.retryable)
        except Exception as e:
            logger.exception("Unexpected error checking for updates")
            return self._failed(local_version, str(e), "UPDATE_CHECK_ERROR", False)

    def _completed(
        self,
        local_version: str,
        *,
        remote_info: ReleaseInfo | CommitInfo,
        remote_version: str,
        update_available: bool,
        comparison_method: Literal["release", "commit"],
    ) -> UpdateCheckResult:
        result = UpdateCheckResult(
            update_available=update_available,
            local_version=local_version,
            remote_version=remote_version,
            remote_info=remote_info,
            comparison_method=comparison_method,
            repository_url=self.repository_url,
            rate_limit_info=self.rate_limit_info,
        )
        logger.info(
            "Update check completed",
            extra={
                "update_available": update_available,
                "local_version": local_version,
                "remote_version": remote_version,
                "method": comparison_method,
            },
        )
        return result

    def _failed(
        self,
        local_version: str,
        error: str,
        error_code: str,
        retryable: bool,
    ) -> UpdateCheckResult:
        return UpdateCheckResult(
            update_available=False,
            local_version=local_version,
            remote_version=UNKNOWN_REMOTE_VERSION,
            comparison_method="none",
            repository_url=self.repository_url,
            rate_limit_info=self.rate_limit_info,
            error=error,
            error_code=error_code,
            retryable=retryable,
        )
