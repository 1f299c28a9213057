"""
Scheduler Test Fixtures.

Base fixtures:
  - Mocked clock at fixed time (tests/conftest.py)
  - Recording alert sink
  - Empty in-memory queue with seeded jitter

Per-test fixtures:
  - Scripted handlers that fail with chosen errors on chosen attempts
  - JSON snapshot store in a temp directory
"""

import random
from typing import Callable

import pytest

from src.scheduler import JobQueue, JsonQueueStore


class ScriptedHandler:
    """
    Mock job handler for testing.

    Each call pops the next scripted outcome: an Exception instance is
    raised, anything else is returned. When the script runs out the
    default result is returned.
    """

    def __init__(self, *script, default=None):
        self.script = list(script)
        self.default = default if default is not None else {"ok": True}
        self.payloads: list[dict] = []

    async def __call__(self, payload: dict):
        self.payloads.append(payload)
        outcome = self.script.pop(0) if self.script else self.default
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    @property
    def calls(self) -> int:
        return len(self.payloads)


# =============================================================================
# Component Fixtures
# =============================================================================


@pytest.fixture
def rng() -> random.Random:
    """Seeded random source for retry jitter."""
    return random.Random(1234)


@pytest.fixture
def queue(mock_clock, alert_sink, rng) -> JobQueue:
    """Create an in-memory JobQueue on the mock clock."""
    return JobQueue(clock=mock_clock, alert_sink=alert_sink, rng=rng)


@pytest.fixture
def make_queue(mock_clock, alert_sink, rng) -> Callable[..., JobQueue]:
    """Factory for queues with non-default options."""

    def _make(**kwargs) -> JobQueue:
        kwargs.setdefault("clock", mock_clock)
        kwargs.setdefault("alert_sink", alert_sink)
        kwargs.setdefault("rng", rng)
        return JobQueue(**kwargs)

    return _make


@pytest.fixture
def store_path(tmp_path):
    return tmp_path / "state" / "queue.json"


@pytest.fixture
def store(store_path) -> JsonQueueStore:
    """Snapshot store in a fresh temp directory."""
    return JsonQueueStore(store_path)
