"""
Shared fixtures: a manually advanced clock and in-memory backends.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from vacation_monitor.clock import Clock
from vacation_monitor.coordination.lock_store import MemoryLockStore
from vacation_monitor.queue.consumer import JobQueueConsumer
from vacation_monitor.queue.transport import MemoryQueueTransport
from vacation_monitor.scheduler.search_store import MemorySearchStore

START_TIME = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


async def settle(rounds: int = 50) -> None:
    """Let every ready task run until it blocks again."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class ManualClock(Clock):
    """
    Clock that only moves when a test calls ``advance``.

    Tasks sleeping on it wake in deadline order as time passes their
    deadline, so timers and lock expiry run without real delays.
    """

    def __init__(self, start: datetime = START_TIME):
        self.current = start
        self._sleepers: List[list] = []

    def now(self) -> datetime:
        return self.current

    async def sleep(self, seconds: float) -> None:
        future = asyncio.get_running_loop().create_future()
        entry = [self.current + timedelta(seconds=seconds), future]
        self._sleepers.append(entry)
        try:
            await future
        finally:
            if entry in self._sleepers:
                self._sleepers.remove(entry)

    @property
    def sleeper_count(self) -> int:
        return sum(1 for _, future in self._sleepers if not future.done())

    async def advance(self, seconds: float) -> None:
        target = self.current + timedelta(seconds=seconds)
        while True:
            await settle()
            ready = [s for s in self._sleepers if s[0] <= target and not s[1].done()]
            if not ready:
                break
            wake_at, future = min(ready, key=lambda s: s[0])
            self.current = max(self.current, wake_at)
            future.set_result(None)
        self.current = target
        await settle()


def make_search(search_id: str = "search-1", user_id: str = "user-1",
                next_run: Optional[datetime] = START_TIME - timedelta(minutes=1),
                interval_hours: Optional[float] = 6, active: bool = True,
                schedule_enabled: bool = True, **extra) -> Dict[str, Any]:
    """Build a monitored search document."""
    schedule: Dict[str, Any] = {'enabled': schedule_enabled}
    if interval_hours is not None:
        schedule['intervalHours'] = interval_hours
    if next_run is not None:
        schedule['nextRun'] = next_run

    search = {
        'id': search_id,
        'userId': user_id,
        'searchName': f"Trip {search_id}",
        'isActive': active,
        'criteria': {'cityName': 'Lisbon', 'currency': 'EUR'},
        'schedule': schedule,
        'emailRecipients': ['traveller@example.com'],
    }
    search.update(extra)
    return search


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def lock_store():
    return MemoryLockStore()


@pytest.fixture
def transport(clock):
    return MemoryQueueTransport(max_delivery_count=3, retry_backoff_seconds=60, clock=clock)


@pytest.fixture
def consumer(transport, clock):
    return JobQueueConsumer(transport, lock_duration=60, max_auto_lock_renewal=300,
                            poll_interval=1.0, clock=clock)


@pytest.fixture
def search_store():
    return MemorySearchStore()
