"""
Clock abstraction for the scheduler.

Every time read (job timestamps, retry deadlines, rate-limit windows) and
every wait (poll interval, periodic sweeps) goes through a Clock so that
tests can advance time manually instead of sleeping.
"""

import asyncio
from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    """Source of the current time and of awaitable delays."""

    def now(self) -> datetime:
        """Current time as a timezone-aware UTC datetime."""
        ...

    async def sleep(self, seconds: float) -> None:
        """Suspend the calling task for the given number of seconds."""
        ...


class SystemClock:
    """Wall clock backed by datetime.now and asyncio.sleep."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))
