"""
Pytest configuration and shared fixtures.

Base fixtures:
  - Mocked clock at a fixed UTC time, advanced manually
  - Recording alert sink
  - Environment isolated from the developer's .env
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

import pytest


# Fixed time for deterministic tests
FIXED_DATETIME = datetime(2026, 1, 1, 0, 0, 0, tzinfo=timezone.utc)

PIPELINE_ENV_VARS = (
    "LOG_LEVEL",
    "LOG_DIR",
    "QUEUE_PERSIST_PATH",
    "QUEUE_WORKERS",
    "QUEUE_POLL_INTERVAL",
    "QUEUE_RATE_LIMIT_PER_MINUTE",
    "DISCOVERY_QUERIES",
    "DISCOVERY_SCHEDULE",
    "FOLLOWUP_SCHEDULE",
    "LEADS_PER_QUERY",
    "SCORE_THRESHOLD",
    "PIPELINE_AUTO_DEPLOY",
    "PIPELINE_AUTO_EMAIL",
    "MAX_LEADS_PER_DAY",
    "MAX_EMAILS_PER_DAY",
    "GALLERY_ROOT",
    "PIPELINE_COLLABORATORS",
    "ALERT_WEBHOOK_URL",
    "ALERT_WEBHOOK_SECRET",
    "SLACK_WEBHOOK_URL",
    "DISCORD_WEBHOOK_URL",
    "ALERT_MIN_SEVERITY",
)


class MockClock:
    """
    Mock clock for deterministic time control.

    - Starts at a fixed epoch
    - Advances only when explicitly ticked
    - sleep() parks the caller until advance() moves time past its deadline
    """

    def __init__(self, start_time: datetime = FIXED_DATETIME):
        self._current = start_time
        self._sleepers: list[tuple[datetime, asyncio.Future]] = []
        self.sleep_calls: list[float] = []

    def now(self) -> datetime:
        return self._current

    def now_iso(self) -> str:
        return self._current.isoformat()

    def tick(self, seconds: float = 1) -> None:
        """Advance time without waking sleepers (for sync tests)."""
        self._current += timedelta(seconds=seconds)

    def set(self, time: datetime) -> None:
        """Set time to specific value."""
        self._current = time

    async def sleep(self, seconds: float) -> None:
        self.sleep_calls.append(seconds)
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        future = asyncio.get_running_loop().create_future()
        self._sleepers.append((self._current + timedelta(seconds=seconds), future))
        await future

    async def advance(self, seconds: float) -> None:
        """Advance time, wake every sleeper whose deadline passed, let tasks run."""
        self._current += timedelta(seconds=seconds)
        due = [(d, f) for d, f in self._sleepers if d <= self._current]
        self._sleepers = [(d, f) for d, f in self._sleepers if d > self._current]
        for _, future in sorted(due, key=lambda item: item[0]):
            if not future.done():
                future.set_result(None)
        await self.settle()

    async def settle(self, rounds: int = 50) -> None:
        """Yield to the event loop so woken tasks run to their next await."""
        for _ in range(rounds):
            await asyncio.sleep(0)

    @property
    def sleeper_count(self) -> int:
        return sum(1 for _, f in self._sleepers if not f.done())


class RecordingAlertSink:
    """Alert sink that records every notify() call."""

    def __init__(self, fail: bool = False):
        self.calls: list[tuple] = []
        self.fail = fail

    async def notify(self, kind, severity, title, detail=None):
        self.calls.append((kind, severity, title, detail))
        if self.fail:
            raise RuntimeError("alert channel down")


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch):
    """Clear pipeline environment variables so a local .env never leaks in."""
    for name in PIPELINE_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    yield


@pytest.fixture(autouse=True)
def reset_package_logger():
    """Undo setup_logging() so caplog keeps seeing records in later tests."""
    yield
    package_logger = logging.getLogger("src")
    for handler in list(package_logger.handlers):
        handler.close()
    package_logger.handlers.clear()
    package_logger.propagate = True
    package_logger.setLevel(logging.NOTSET)


@pytest.fixture
def mock_clock() -> MockClock:
    """Create a mock clock at fixed time."""
    return MockClock()


@pytest.fixture
def alert_sink() -> RecordingAlertSink:
    return RecordingAlertSink()
