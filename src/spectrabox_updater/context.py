"""
Request context for the update endpoints.

RequestContext carries what the request guard and the update handlers need
to know about one inbound request, independent of the web framework serving
it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any


@dataclass
class RequestContext:
    """
    Encapsulates one inbound request to an update or preference endpoint.

    Attributes:
        client_id: Client identifier for rate limiting (usually the IP address).
        method: HTTP method.
        path: Request path (e.g. "/api/update/execute").
        headers: Request headers; lookups are case-insensitive.
        body_size: Size of the request body in bytes.
        timestamp: When the request was received (UTC).
        metadata: Additional context from the serving layer.
    """

    client_id: str
    method: str = "GET"
    path: str = "/"
    headers: dict[str, str] = field(default_factory=dict)
    body_size: int = 0
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.method = self.method.upper()
        self.headers = {key.lower(): value for key, value in self.headers.items()}

    def header(self, name: str) -> str | None:
        """Return a header value by case-insensitive name."""
        return self.headers.get(name.lower())

    @property
    def user_agent(self) -> str | None:
        return self.header("user-agent")

    @property
    def content_type(self) -> str | None:
        return self.header("content-type")

    @property
    def has_body(self) -> bool:
        """Whether the request carries a body."""
        return self.body_size > 0

    @property
    def is_preference_endpoint(self) -> bool:
        return self.path.startswith("/api/preferences")

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the context to a dictionary for logging.

        Returns:
            Dictionary with request information.
        """
        return {
            "client_id": self.client_id,
            "method": self.method,
            "path": self.path,
            "body_size": self.body_size,
            "timestamp": self.timestamp.isoformat(),
        }
