"""
Progress estimation from install script output.

The install script does not report progress itself, so progress is inferred
from keywords in its output lines. The estimate never decreases and stays
below 100 until the script has exited successfully.
"""

from __future__ import annotations

from collections.abc import AsyncIterable, Iterable

# Ordered: the first keyword found in a line decides the increment
KEYWORD_INCREMENTS: list[tuple[str, int]] = [
    ("error", 0),
    ("failed", 0),
    ("downloading", 3),
    ("installing", 2),
    ("restarting", 4),
    ("complete", 5),
]

DEFAULT_INCREMENT = 1


class ProgressEstimator:
    """
    Monotonic progress estimate driven by script output.

    Attributes:
        progress: Current estimate.
        ceiling: Highest value reachable before the script exits.

    Example:
        >>> estimator = ProgressEstimator(start=50)
        >>> estimator.feed("Downloading packages...")
        53
    """

    DEFAULT_START = 50
    DEFAULT_CEILING = 90

    def __init__(self, start: int = DEFAULT_START, ceiling: int = DEFAULT_CEILING) -> None:
        self.ceiling = ceiling
        self.progress = min(start, ceiling)

    @staticmethod
    def increment_for(line: str) -> int:
        """Return the progress increment a single output line is worth."""
        lowered = line.lower()
        for keyword, increment in KEYWORD_INCREMENTS:
            if keyword in lowered:
                return increment
        return DEFAULT_INCREMENT

    def feed(self, line: str) -> int:
        """
        Account for one output line.

        Args:
            line: Output line (blank lines are ignored).

        Returns:
            Updated progress estimate.
        """
        if line.strip():
            self.progress = min(self.ceiling, self.progress + self.increment_for(line))
        return self.progress

    def feed_all(self, lines: Iterable[str]) -> int:
        """Account for every line of a synchronous sequence."""
        for line in lines:
            self.feed(line)
        return self.progress

    async def afeed_all(self, lines: AsyncIterable[str]) -> int:
        """Account for every line of an asynchronous sequence."""
        async for line in lines:
            self.feed(line)
        return self.progress
