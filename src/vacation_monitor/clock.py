"""
Time source used by the lock, scheduler and consumer.

Every component reads the current time and waits through a Clock so that
tests can drive tick cadence and lock expiry without wall-clock delays.
"""

import asyncio
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class Clock:
    """Source of the current time and of timed waits."""

    def now(self) -> datetime:
        raise NotImplementedError

    async def sleep(self, seconds: float) -> None:
        raise NotImplementedError


class SystemClock(Clock):
    """Wall-clock time backed by asyncio.sleep."""

    def now(self) -> datetime:
        return utcnow()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)
