"""
Update status broadcasting for the SpectraBox update subsystem.

The UpdateStatusBroadcaster holds the current UpdateStatus and pushes every
transition to subscribed observers (typically websocket connections). An
observer is any object with an ``async send(message: str)`` method.

Pushes happen inside the state-changing call, in order, so observers never
see transitions out of order. A failing observer is dropped without
affecting delivery to the others.
"""

from __future__ import annotations

import json
import time
from collections.abc import Callable
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol

from pydantic import BaseModel, Field

from spectrabox_updater.logging import get_logger

logger = get_logger(__name__)


class UpdateStatusValue(str, Enum):
    """States reported to observers."""

    IDLE = "idle"
    UPDATING = "updating"
    SUCCESS = "success"
    ERROR = "error"


class UpdateStatus(BaseModel):
    """
    Snapshot of the update status.

    Attributes:
        status: Current state.
        message: Human-readable status message.
        progress: Progress percentage (0-100).
        error: Operator-safe error message in the error state.
        timestamp: ISO 8601 timestamp of the last transition.
    """

    status: UpdateStatusValue = Field(default=UpdateStatusValue.IDLE)
    message: str = Field(default="")
    progress: int = Field(default=0, ge=0, le=100)
    error: str | None = Field(default=None)
    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())

    def to_message(self) -> dict[str, Any]:
        """Build the updateStatus push message."""
        return {
            "type": "updateStatus",
            "status": self.status.value,
            "message": self.message,
            "progress": self.progress,
            "error": self.error,
            "timestamp": self.timestamp,
        }


class Observer(Protocol):
    """A live subscriber receiving pushed status messages."""

    async def send(self, message: str) -> None: ...


class UpdateStatusBroadcaster:
    """
    Owns the update status and the set of observers.

    One instance is created per service and passed to every component that
    reports or reads update status.

    Example:
        >>> broadcaster = UpdateStatusBroadcaster()
        >>> await broadcaster.subscribe(websocket)
        >>> await broadcaster.set_state("updating", "Validating update script", 5)
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        """
        Initialize the broadcaster in the idle state.

        Args:
            clock: Monotonic clock used for elapsed-time logging.
        """
        self._state = UpdateStatus()
        self._observers: list[Observer] = []
        self._clock = clock
        self._updating_since: float | None = None

    @property
    def observer_count(self) -> int:
        """Number of subscribed observers."""
        return len(self._observers)

    def current_state(self) -> UpdateStatus:
        """Return a copy of the current status."""
        return self._state.model_copy()

    async def set_state(
        self,
        status: UpdateStatusValue | str,
        message: str,
        progress: int | float | None = None,
        error: str | None = None,
    ) -> UpdateStatus:
        """
        Record a status transition and push it to every observer.

        Args:
            status: New state.
            message: Status message.
            progress: Progress percentage; clamped to 0-100. Keeps the
                previous value when omitted.
            error: Operator-safe error message.

        Returns:
            The new status snapshot.
        """
        status = UpdateStatusValue(status)
        previous = self._state.status

        if progress is None:
            progress = self._state.progress
        progress = max(0, min(100, int(progress)))

        now = self._clock()
        if status is UpdateStatusValue.UPDATING and previous is not UpdateStatusValue.UPDATING:
            self._updating_since = now
        elapsed = (
            round(now - self._updating_since, 3)
            if self._updating_since is not None
            else None
        )

        self._state = UpdateStatus(
            status=status,
            message=message,
            progress=progress,
            error=error,
        )

        logger.info(
            f"Update status transition: {previous.value} -> {status.value}",
            extra={
                "status": status.value,
                "status_message": message,
                "progress": progress,
                "elapsed_seconds": elapsed,
                "observers": len(self._observers),
            },
        )

        await self._broadcast(self._state.to_message())
        return self.current_state()

    async def subscribe(self, observer: Observer) -> None:
        """
        Add an observer and replay the current status to it.

        Args:
            observer: Object with an async send(message) method.
        """
        if observer not in self._observers:
            self._observers.append(observer)
        logger.debug(
            "Observer subscribed to update status",
            extra={"observer_id": getattr(observer, "id", None)},
        )
        if not await self._send(observer, json.dumps(self._state.to_message())):
            self._remove(observer)

    def unsubscribe(self, observer: Observer) -> None:
        """Remove an observer. Unknown observers are ignored."""
        self._remove(observer)

    async def broadcast_shutdown_notice(
        self,
        message: str,
        expected_downtime: str,
        reconnect_instructions: str,
    ) -> int:
        """
        Push a serverShutdown notice to every observer.

        Args:
            message: Notice text.
            expected_downtime: Human-readable downtime estimate.
            reconnect_instructions: Guidance for reconnecting clients.

        Returns:
            Number of observers the notice was delivered to.
        """
        payload = {
            "type": "serverShutdown",
            "message": message,
            "timestamp": datetime.now(UTC).isoformat(),
            "expectedDowntime": expected_downtime,
            "reconnectInstructions": reconnect_instructions,
        }
        delivered = await self._broadcast(payload)
        logger.info(
            "Shutdown notice broadcast",
            extra={"delivered": delivered, "expected_downtime": expected_downtime},
        )
        return delivered

    async def _broadcast(self, payload: dict[str, Any]) -> int:
        message = json.dumps(payload)
        delivered = 0
        for observer in list(self._observers):
            if await self._send(observer, message):
                delivered += 1
            else:
                self._remove(observer)
        return delivered

    async def _send(self, observer: Observer, message: str) -> bool:
        try:
            await observer.send(message)
        except Exception as e:
            logger.warning(
                "Failed to push update status to observer",
                extra={"observer_id": getattr(observer, "id", None), "error": str(e)},
            )
            return False
        return True

    def _remove(self, observer: Observer) -> None:
        if observer in self._observers:
            self._observers.remove(observer)
            logger.debug(
                "Observer removed from update status",
                extra={"observer_id": getattr(observer, "id", None)},
            )
