"""
Pytest configuration for the SpectraBox update subsystem tests.
"""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from spectrabox_updater.updates.github import RateLimitInfo, ReleaseInfo, UpdateCheckResult
from spectrabox_updater.updates.orchestrator import UpdateAttempt

# Configure pytest-asyncio mode
pytest_plugins = ["pytest_asyncio"]


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests that spawn real subprocesses (deselect with '-m \"not integration\"')",
    )


class FakeObserver:
    """Observer that records every pushed message."""

    def __init__(self, observer_id: str = "observer", *, fail: bool = False) -> None:
        self.id = observer_id
        self.fail = fail
        self.messages: list[str] = []

    async def send(self, message: str) -> None:
        if self.fail:
            raise ConnectionResetError("socket closed")
        self.messages.append(message)


@pytest.fixture
def observer() -> FakeObserver:
    """A healthy observer."""
    return FakeObserver()


@pytest.fixture
def release_payload() -> dict[str, Any]:
    """Raw GitHub releases/latest payload."""
    return {
        "tag_name": "v1.3.0",
        "name": "SpectraBox 1.3.0",
        "published_at": "2024-05-01T12:00:00Z",
        "html_url": "https://github.com/mattstegner/SpectraBox/releases/tag/v1.3.0",
        "body": "Bug fixes and improvements",
        "prerelease": False,
        "draft": False,
    }


@pytest.fixture
def commit_payload() -> dict[str, Any]:
    """Raw GitHub commits/HEAD payload."""
    return {
        "sha": "0123456789abcdef0123456789abcdef01234567",
        "html_url": "https://github.com/mattstegner/SpectraBox/commit/0123456",
        "commit": {
            "message": "Fix meter scaling",
            "author": {"name": "Matt", "date": "2024-05-02T08:00:00Z"},
        },
    }


def make_check_result(
    *,
    update_available: bool = True,
    local_version: str = "1.2.0",
    remote_version: str = "1.3.0",
) -> UpdateCheckResult:
    """Build an UpdateCheckResult for orchestration tests."""
    return UpdateCheckResult(
        update_available=update_available,
        local_version=local_version,
        remote_version=remote_version,
        remote_info=ReleaseInfo(version=remote_version) if update_available else None,
        comparison_method="release",
        repository_url="https://github.com/mattstegner/SpectraBox",
    )


@pytest.fixture
def check_result_factory():
    """Factory for UpdateCheckResult instances."""
    return make_check_result


class FakeResolver:
    """Returns a canned check result instead of contacting GitHub."""

    repository_url = "https://github.com/mattstegner/SpectraBox"

    def __init__(self, result: UpdateCheckResult | None = None) -> None:
        self.result = result or make_check_result()
        self.calls: list[str] = []

    @property
    def rate_limit_info(self) -> RateLimitInfo:
        return RateLimitInfo()

    async def check_for_updates(self, local_version: str) -> UpdateCheckResult:
        self.calls.append(local_version)
        return self.result


class FakeOrchestrator:
    """Records orchestration requests and finishes them immediately."""

    def __init__(self, *, succeed: bool = True) -> None:
        self.succeed = succeed
        self.started: list[UpdateCheckResult] = []
        self._tasks: set[asyncio.Task[UpdateAttempt]] = set()

    @property
    def is_running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def begin_orchestration(self, check_result: UpdateCheckResult) -> asyncio.Task[UpdateAttempt]:
        self.started.append(check_result)
        task = asyncio.create_task(self._run(check_result))
        self._tasks.add(task)
        return task

    async def _run(self, check_result: UpdateCheckResult) -> UpdateAttempt:
        return UpdateAttempt(
            current_version=check_result.local_version,
            target_version=check_result.remote_version,
            succeeded=self.succeed,
        )
