"""
Request guard for the update endpoints.

Every update endpoint runs the guard before doing any work:
- Per-client sliding-window rate limiting (default 10 requests / 60 s)
- User-Agent header present and shorter than 500 characters
- Body-bearing requests must declare application/json
- Body size ceiling (1 KiB for update endpoints, 10 KiB for preferences)

Test mode bypasses every check.
"""

from __future__ import annotations

import math
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from threading import Lock
from typing import TYPE_CHECKING

from spectrabox_updater.errors import RequestRejectedError
from spectrabox_updater.logging import get_logger

if TYPE_CHECKING:
    from spectrabox_updater.config import GuardConfig
    from spectrabox_updater.context import RequestContext

logger = get_logger(__name__)

DEFAULT_MAX_REQUESTS = 10
DEFAULT_WINDOW_SECONDS = 60.0


@dataclass(frozen=True)
class RateLimitDecision:
    """
    Outcome of one rate-limit check.

    Attributes:
        allowed: Whether the request may proceed.
        remaining: Requests left in the current window.
        retry_after: Seconds until the client may retry (rejections only).
    """

    allowed: bool
    remaining: int
    retry_after: float | None = None


# =============================================================================
# Rate Limiting
# =============================================================================


class SlidingWindowRateLimiter:
    """
    Per-client sliding-window rate limiter.

    Each client's request timestamps are kept for one window. Every hit
    prunes stale timestamps and forgets clients idle for a whole window.
    Rejected requests are not recorded.
    """

    def __init__(
        self,
        max_requests: int = DEFAULT_MAX_REQUESTS,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the rate limiter.

        Args:
            max_requests: Requests allowed per client within the window.
            window_seconds: Window length in seconds.
            clock: Monotonic clock.
        """
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._lock = Lock()

    def hit(self, client_id: str) -> RateLimitDecision:
        """
        Check whether a client may make a request and record it if so.

        Args:
            client_id: Client identifier.

        Returns:
            RateLimitDecision for this request.
        """
        with self._lock:
            now = self._clock()
            cutoff = now - self.window_seconds

            self._drop_stale(cutoff)
            hits = self._hits.setdefault(client_id, deque())
            while hits and hits[0] <= cutoff:
                hits.popleft()

            if len(hits) >= self.max_requests:
                retry_after = hits[0] + self.window_seconds - now
                return RateLimitDecision(
                    allowed=False,
                    remaining=0,
                    retry_after=max(retry_after, 0.1),
                )

            hits.append(now)
            return RateLimitDecision(
                allowed=True,
                remaining=self.max_requests - len(hits),
            )

    def prune(self) -> int:
        """
        Drop clients with no requests in the current window.

        Returns:
            Number of clients removed.
        """
        with self._lock:
            return self._drop_stale(self._clock() - self.window_seconds)

    @property
    def client_count(self) -> int:
        """Number of clients currently tracked."""
        return len(self._hits)

    def _drop_stale(self, cutoff: float) -> int:
        # Caller holds the lock
        stale = [
            client_id
            for client_id, hits in self._hits.items()
            if not hits or hits[-1] <= cutoff
        ]
        for client_id in stale:
            del self._hits[client_id]
        return len(stale)

    def reset(self) -> None:
        """Forget all recorded requests."""
        with self._lock:
            self._hits.clear()


# =============================================================================
# Request Guard
# =============================================================================


class RequestGuard:
    """
    Validates inbound requests to update endpoints.

    Example:
        >>> guard = RequestGuard.from_config(config.guard)
        >>> guard.check(RequestContext(client_id="192.168.1.20", headers={...}))
    """

    DEFAULT_MAX_BODY_BYTES = 1024
    DEFAULT_MAX_PREFERENCE_BODY_BYTES = 10 * 1024
    DEFAULT_MAX_USER_AGENT_LENGTH = 500

    def __init__(
        self,
        limiter: SlidingWindowRateLimiter | None = None,
        *,
        max_body_bytes: int = DEFAULT_MAX_BODY_BYTES,
        max_preference_body_bytes: int = DEFAULT_MAX_PREFERENCE_BODY_BYTES,
        max_user_agent_length: int = DEFAULT_MAX_USER_AGENT_LENGTH,
        test_mode: bool = False,
    ) -> None:
        """
        Initialize the guard.

        Args:
            limiter: Rate limiter shared by all guarded endpoints.
            max_body_bytes: Body ceiling for update endpoints.
            max_preference_body_bytes: Body ceiling for preference endpoints.
            max_user_agent_length: User agents must be shorter than this.
            test_mode: Bypass every check.
        """
        self.limiter = limiter or SlidingWindowRateLimiter()
        self.max_body_bytes = max_body_bytes
        self.max_preference_body_bytes = max_preference_body_bytes
        self.max_user_agent_length = max_user_agent_length
        self.test_mode = test_mode

    @classmethod
    def from_config(cls, config: GuardConfig) -> RequestGuard:
        """
        Create a RequestGuard from configuration.

        Args:
            config: GuardConfig with limits.

        Returns:
            Configured RequestGuard instance.
        """
        return cls(
            SlidingWindowRateLimiter(
                max_requests=config.max_requests,
                window_seconds=config.window_seconds,
            ),
            max_body_bytes=config.max_body_bytes,
            max_preference_body_bytes=config.max_preference_body_bytes,
            max_user_agent_length=config.max_user_agent_length,
            test_mode=config.test_mode,
        )

    def check(self, request: RequestContext) -> None:
        """
        Run every check against a request.

        Args:
            request: Inbound request context.

        Raises:
            RequestRejectedError: RATE_LIMIT_EXCEEDED (429), INVALID_REQUEST
                (400), INVALID_CONTENT_TYPE (400) or REQUEST_TOO_LARGE (413).
        """
        if self.test_mode:
            return

        self._check_rate_limit(request)
        self._check_headers(request)
        self._check_body(request)

    def _check_rate_limit(self, request: RequestContext) -> None:
        decision = self.limiter.hit(request.client_id)
        if decision.allowed:
            return

        retry_after = math.ceil(decision.retry_after or self.limiter.window_seconds)
        logger.warning(
            "Rate limit exceeded for update endpoint",
            extra={**request.to_dict(), "retry_after": retry_after},
        )
        raise RequestRejectedError(
            "RATE_LIMIT_EXCEEDED",
            "Too many requests. Please wait before trying again.",
            status_code=429,
            retry_after=retry_after,
        )

    def _check_headers(self, request: RequestContext) -> None:
        user_agent = request.user_agent
        if not user_agent or len(user_agent) >= self.max_user_agent_length:
            logger.warning(
                "Invalid or missing User-Agent header",
                extra={
                    **request.to_dict(),
                    "user_agent_length": len(user_agent) if user_agent else 0,
                },
            )
            raise RequestRejectedError(
                "INVALID_REQUEST",
                "Invalid request headers",
                status_code=400,
            )

    def _check_body(self, request: RequestContext) -> None:
        if not request.has_body:
            return

        content_type = (request.content_type or "").lower()
        if "application/json" not in content_type:
            logger.warning(
                "Invalid content type for update endpoint",
                extra={**request.to_dict(), "content_type": request.content_type},
            )
            raise RequestRejectedError(
                "INVALID_CONTENT_TYPE",
                "Content-Type must be application/json",
                status_code=400,
            )

        limit = (
            self.max_preference_body_bytes
            if request.is_preference_endpoint
            else self.max_body_bytes
        )
        if request.body_size > limit:
            logger.warning(
                "Request body too large",
                extra={**request.to_dict(), "limit": limit},
            )
            raise RequestRejectedError(
                "REQUEST_TOO_LARGE",
                "Request body too large",
                status_code=413,
                details={"max_bytes": limit},
            )
