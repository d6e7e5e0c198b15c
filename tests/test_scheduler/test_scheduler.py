"""
Unit tests for the polling scheduler: scheduling scenarios, multi-instance
exclusion and the circuit breaker.
"""

import asyncio
import logging
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from conftest import START_TIME, make_search, settle
from vacation_monitor.coordination.distributed_lock import DistributedLock
from vacation_monitor.queue.consumer import JobQueueConsumer
from vacation_monitor.scheduler.scheduler import Scheduler, SchedulerState


def make_scheduler(search_store, transport, lock_store, clock, holder_id="instance-a",
                   **kwargs):
    queue = JobQueueConsumer(transport, clock=clock)
    lock = DistributedLock(lock_store, holder_id=holder_id, lock_duration=90,
                           renewal_interval=30, clock=clock, auto_renew=False)
    kwargs.setdefault('poll_interval_minutes', 5)
    kwargs.setdefault('max_consecutive_errors', 3)
    return Scheduler(search_store, queue, lock, clock=clock, **kwargs)


async def queued_jobs(transport):
    messages = await transport.receive(100, lock_duration=60)
    for message in messages:
        await transport.abandon(message)
    return [m.body for m in messages]


@pytest.fixture
def scheduler(search_store, transport, lock_store, clock):
    return make_scheduler(search_store, transport, lock_store, clock)


@pytest.mark.unit
class TestSchedulingScenarios:

    @pytest.mark.asyncio
    async def test_due_search_is_enqueued_and_rescheduled(self, scheduler, search_store, transport, clock):
        search_store.put(make_search("search-1", interval_hours=6))

        await scheduler.start()
        try:
            [body] = await queued_jobs(transport)
            assert body == {'searchId': 'search-1', 'userId': 'user-1', 'scheduleType': 'scheduled'}

            [stored] = search_store.all()
            assert stored['schedule']['nextRun'] == START_TIME + timedelta(hours=6)
            assert stored['lastRunAt'] == START_TIME
            assert scheduler.last_tick_time == START_TIME
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_search_enqueued_once_per_due_period(self, scheduler, search_store, transport):
        search_store.put(make_search("search-1"))

        await scheduler.start()
        try:
            await scheduler.tick()
            await scheduler.tick()
            assert (await transport.get_queue_status())['total'] == 1
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_legacy_search_gets_next_run(self, scheduler, search_store, transport, caplog):
        search_store.put(make_search("legacy", next_run=None, interval_hours=12))

        with caplog.at_level(logging.INFO):
            await scheduler.start()
        try:
            assert len(await queued_jobs(transport)) == 1
            [stored] = search_store.all()
            assert stored['schedule']['nextRun'] == START_TIME + timedelta(hours=12)
            assert "Initializing nextRun for legacy search legacy" in caplog.text
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_missing_interval_defaults_to_a_day(self, scheduler, search_store):
        search_store.put(make_search("search-1", interval_hours=None))

        await scheduler.start()
        try:
            [stored] = search_store.all()
            assert stored['schedule']['nextRun'] == START_TIME + timedelta(hours=24)
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_inactive_and_disabled_searches_are_skipped(self, scheduler, search_store, transport):
        search_store.put(make_search("inactive", active=False))
        search_store.put(make_search("paused", schedule_enabled=False))
        search_store.put(make_search("future", next_run=START_TIME + timedelta(hours=1)))

        await scheduler.start()
        try:
            assert (await transport.get_queue_status())['total'] == 0
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_batch_size_limits_one_tick(self, search_store, transport, lock_store, clock):
        scheduler = make_scheduler(search_store, transport, lock_store, clock, batch_size=2)
        for i in range(3):
            search_store.put(make_search(f"search-{i}",
                                         next_run=START_TIME - timedelta(minutes=10 - i)))

        await scheduler.start()
        try:
            ids = [body['searchId'] for body in await queued_jobs(transport)]
            assert ids == ["search-0", "search-1"]

            await scheduler.tick()
            assert (await transport.get_queue_status())['total'] == 3
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_timer_runs_ticks(self, scheduler, search_store, transport, clock):
        search_store.put(make_search("search-1", next_run=START_TIME + timedelta(minutes=3)))

        await scheduler.start()
        try:
            assert (await transport.get_queue_status())['total'] == 0

            await clock.advance(5 * 60)

            assert (await transport.get_queue_status())['total'] == 1
            assert scheduler.last_tick_time == START_TIME + timedelta(minutes=5)
        finally:
            await scheduler.stop()


@pytest.mark.unit
class TestMultipleInstances:

    @pytest.mark.asyncio
    async def test_only_lock_holder_enqueues(self, search_store, transport, lock_store, clock):
        for i in range(4):
            search_store.put(make_search(f"search-{i}"))

        a = make_scheduler(search_store, transport, lock_store, clock, holder_id="instance-a")
        b = make_scheduler(search_store, transport, lock_store, clock, holder_id="instance-b")

        await a.start()
        await b.start()
        try:
            await b.tick()
            await a.tick()
            assert (await transport.get_queue_status())['total'] == 4
            assert a.lock.is_held()
            assert not b.lock.is_held()
        finally:
            await a.stop()
            await b.stop()

    @pytest.mark.asyncio
    async def test_standby_takes_over_after_leader_stops(self, search_store, transport, lock_store, clock):
        a = make_scheduler(search_store, transport, lock_store, clock, holder_id="instance-a")
        b = make_scheduler(search_store, transport, lock_store, clock, holder_id="instance-b")
        await a.start()
        await b.start()

        await a.stop()
        search_store.put(make_search("search-1"))
        await b.tick()

        assert b.lock.is_held()
        assert (await transport.get_queue_status())['total'] == 1
        await b.stop()

    @pytest.mark.asyncio
    async def test_standby_takes_over_after_leader_crash(self, search_store, transport, lock_store, clock):
        a = make_scheduler(search_store, transport, lock_store, clock, holder_id="instance-a")
        await a.start()
        # Leader disappears without releasing: its timer stops, the record stays
        a._cancel_timer()
        a.state = SchedulerState.STOPPED

        b = make_scheduler(search_store, transport, lock_store, clock, holder_id="instance-b")
        await b.start()
        assert not b.lock.is_held()

        await clock.advance(91)
        await b.tick()
        assert b.lock.is_held()
        await b.stop()


@pytest.mark.unit
class TestCircuitBreaker:

    @pytest.mark.asyncio
    async def test_trips_at_max_consecutive_errors(self, scheduler, search_store, lock_store):
        search_store.find_due = AsyncMock(side_effect=ConnectionError("mongo unavailable"))

        await scheduler.start()
        assert scheduler.consecutive_errors == 1

        await scheduler.tick()
        assert scheduler.consecutive_errors == 2
        assert scheduler.is_running

        await scheduler.tick()
        assert scheduler.consecutive_errors == 3
        assert scheduler.state == SchedulerState.STOPPED
        assert await lock_store.read("scheduler-lock") is None

        await scheduler.tick()
        assert scheduler.consecutive_errors == 3
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_success_resets_error_count(self, scheduler, search_store):
        search_store.find_due = AsyncMock(side_effect=[ConnectionError("flaky"), ConnectionError("flaky"), []])

        await scheduler.start()
        await scheduler.tick()
        assert scheduler.consecutive_errors == 2

        await scheduler.tick()
        assert scheduler.consecutive_errors == 0
        assert scheduler.is_running
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_publish_failure_counts_and_leaves_search_due(self, scheduler, search_store, clock):
        search_store.put(make_search("search-1"))
        scheduler.queue.publish_batch = AsyncMock(side_effect=RuntimeError("queue down"))

        await scheduler.start()
        try:
            assert scheduler.consecutive_errors == 1
            [stored] = search_store.all()
            assert stored['schedule']['nextRun'] < clock.now()
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_tripped_timer_stops_ticking(self, scheduler, search_store, clock):
        search_store.find_due = AsyncMock(side_effect=ConnectionError("mongo unavailable"))

        await scheduler.start()
        await clock.advance(30 * 60)

        assert scheduler.state == SchedulerState.STOPPED
        assert search_store.find_due.await_count == 3
        await settle()
        assert clock.sleeper_count == 0
        await scheduler.stop()


@pytest.mark.unit
class TestLifecycle:

    @pytest.mark.asyncio
    async def test_disabled_scheduler_does_nothing(self, search_store, transport, lock_store, clock):
        scheduler = make_scheduler(search_store, transport, lock_store, clock, enabled=False)
        search_store.put(make_search("search-1"))

        await scheduler.start()

        assert scheduler.state == SchedulerState.STOPPED
        assert scheduler.get_status()['is_disabled'] is True
        assert (await transport.get_queue_status())['total'] == 0
        assert await lock_store.read("scheduler-lock") is None

    @pytest.mark.asyncio
    async def test_start_failure_leaves_stopped(self, scheduler, search_store):
        search_store.initialize = AsyncMock(side_effect=ConnectionError("no mongo"))

        with pytest.raises(ConnectionError):
            await scheduler.start()
        assert scheduler.state == SchedulerState.STOPPED

    @pytest.mark.asyncio
    async def test_start_twice_warns(self, scheduler, caplog):
        await scheduler.start()
        with caplog.at_level(logging.WARNING):
            await scheduler.start()
        assert "already running" in caplog.text
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, scheduler, lock_store, transport, clock):
        await scheduler.start()

        await scheduler.stop()
        await scheduler.stop()

        assert scheduler.state == SchedulerState.STOPPED
        assert await lock_store.read("scheduler-lock") is None
        assert transport.closed
        await settle()
        assert clock.sleeper_count == 0

    @pytest.mark.asyncio
    async def test_get_status(self, scheduler):
        await scheduler.start()
        try:
            status = scheduler.get_status()
            assert status == {
                'is_running': True,
                'state': 'running',
                'last_tick_time': START_TIME.isoformat(),
                'consecutive_errors': 0,
                'max_consecutive_errors': 3,
                'poll_interval_minutes': 5,
                'is_disabled': False,
                'lock': {'holder_id': 'instance-a', 'is_held': True}
            }
        finally:
            await scheduler.stop()


@pytest.mark.unit
class TestSchedulerWithLockRenewal:
    """Production wiring: the lock renews itself while ticks renew it too."""

    @pytest.mark.asyncio
    async def test_leadership_survives_overlapping_renewals(self, search_store, transport,
                                                            lock_store, clock, caplog):
        queue = JobQueueConsumer(transport, clock=clock)
        lock = DistributedLock(lock_store, holder_id="instance-a", lock_duration=90,
                               renewal_interval=30, clock=clock)
        other = DistributedLock(lock_store, holder_id="instance-b", lock_duration=90,
                                renewal_interval=30, clock=clock, auto_renew=False)
        scheduler = Scheduler(search_store, queue, lock, poll_interval_minutes=1, clock=clock)
        search_store.put(make_search("search-1"))

        await scheduler.start()
        try:
            for _ in range(5):
                await asyncio.gather(scheduler.tick(), lock.renew())
                await clock.advance(60)
                assert await other.acquire() is False

            assert scheduler.is_running
            assert scheduler.consecutive_errors == 0
            assert lock.is_held()
            stored = await lock_store.read("scheduler-lock")
            assert stored.value.holder_id == "instance-a"
            assert stored.version == lock.current_lock.version
            assert stored.value.expires_at > clock.now()
            assert "taken over" not in caplog.text
        finally:
            await scheduler.stop()

        assert await lock_store.read("scheduler-lock") is None
        assert (await transport.get_queue_status())['total'] == 1
