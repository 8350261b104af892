"""
Tests for progress estimation from script output.
"""

from __future__ import annotations

import pytest

from spectrabox_updater.updates.progress import DEFAULT_INCREMENT, ProgressEstimator


class TestIncrements:
    """Tests for keyword increments."""

    @pytest.mark.parametrize(
        ("line", "increment"),
        [
            ("Downloading packages...", 3),
            ("Installing dependencies", 2),
            ("Restarting kiosk", 4),
            ("Update complete", 5),
            ("npm ERROR while installing", 0),
            ("Download FAILED", 0),
            ("Reading package lists", DEFAULT_INCREMENT),
        ],
    )
    def test_increment_for(self, line: str, increment: int) -> None:
        """Test each keyword's increment."""
        assert ProgressEstimator.increment_for(line) == increment


class TestProgressEstimator:
    """Tests for ProgressEstimator."""

    def test_starts_at_start(self) -> None:
        """Test the initial estimate."""
        assert ProgressEstimator().progress == 50

    def test_feed(self) -> None:
        """Test feeding lines raises the estimate."""
        estimator = ProgressEstimator(start=50)

        assert estimator.feed("Downloading packages...") == 53
        assert estimator.feed("Installing dependencies") == 55
        assert estimator.feed("some output") == 56

    def test_blank_lines_ignored(self) -> None:
        """Test blank lines do not move the estimate."""
        estimator = ProgressEstimator(start=50)
        assert estimator.feed("   ") == 50

    def test_ceiling(self) -> None:
        """Test the estimate never passes the ceiling."""
        estimator = ProgressEstimator(start=50, ceiling=90)

        result = estimator.feed_all(["Update complete"] * 20)

        assert result == 90

    def test_never_decreases(self) -> None:
        """Test the estimate is monotonic."""
        estimator = ProgressEstimator(start=50)
        seen = [estimator.feed(line) for line in ["a", "error", "b", "failed", "c"]]
        assert seen == sorted(seen)

    def test_start_above_ceiling(self) -> None:
        """Test the start value is capped."""
        assert ProgressEstimator(start=95, ceiling=90).progress == 90

    @pytest.mark.asyncio
    async def test_afeed_all(self) -> None:
        """Test the async variant."""

        async def lines():
            for line in ["Downloading", "Installing", "complete"]:
                yield line

        assert await ProgressEstimator(start=50).afeed_all(lines()) == 60
