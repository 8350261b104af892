"""
Security module for the SpectraBox update endpoints.

Components:
- SlidingWindowRateLimiter: Per-client request rate limiting
- RequestGuard: Header, content type and body size validation
"""

from spectrabox_updater.security.request_guard import (
    RateLimitDecision,
    RequestGuard,
    SlidingWindowRateLimiter,
)

__all__ = [
    "RateLimitDecision",
    "RequestGuard",
    "SlidingWindowRateLimiter",
]
