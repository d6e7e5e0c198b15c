"""
Polling scheduler that enqueues due searches on the leader instance.
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

from ..clock import Clock, SystemClock
from ..coordination.distributed_lock import DistributedLock
from ..queue.consumer import JobQueueConsumer
from ..queue.messages import JobMessage, ScheduleType
from .search_store import DEFAULT_BATCH_SIZE, SearchStore, get_path

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_MINUTES = 5
DEFAULT_MAX_CONSECUTIVE_ERRORS = 10
DEFAULT_INTERVAL_HOURS = 24


class SchedulerState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"


class Scheduler:
    """
    Finds due searches and publishes one job per search.

    Every instance runs a scheduler, but a tick only does work on the
    instance holding the distributed lock. After ``max_consecutive_errors``
    failed ticks the scheduler stops itself and releases the lock so a
    healthier instance can take over; queue consumption is unaffected.
    """

    def __init__(self, search_store: SearchStore, queue: JobQueueConsumer,
                 lock: DistributedLock,
                 poll_interval_minutes: float = DEFAULT_POLL_INTERVAL_MINUTES,
                 max_consecutive_errors: int = DEFAULT_MAX_CONSECUTIVE_ERRORS,
                 batch_size: int = DEFAULT_BATCH_SIZE,
                 enabled: bool = True,
                 clock: Optional[Clock] = None):
        """
        Initialize the scheduler.

        Args:
            search_store: Store queried for due searches
            queue: Consumer used to publish job messages
            lock: Distributed lock deciding which instance schedules
            poll_interval_minutes: Minutes between ticks
            max_consecutive_errors: Failed ticks before the scheduler stops itself
            batch_size: Maximum searches scheduled per tick
            enabled: When False, start() does nothing
            clock: Time source
        """
        self.search_store = search_store
        self.queue = queue
        self.lock = lock
        self.poll_interval_minutes = poll_interval_minutes
        self.max_consecutive_errors = max_consecutive_errors
        self.batch_size = batch_size
        self.enabled = enabled
        self.clock = clock or SystemClock()

        self.state = SchedulerState.STOPPED
        self.consecutive_errors = 0
        self.last_tick_time: Optional[datetime] = None
        self._timer_task: Optional[asyncio.Task] = None
        self._closed = True

    @property
    def is_running(self) -> bool:
        return self.state == SchedulerState.RUNNING

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval_minutes * 60

    async def start(self) -> None:
        """
        Initialize collaborators, run the first tick and start the timer.

        Raises:
            Exception: Any initialization failure; the scheduler is left STOPPED
        """
        if self.state != SchedulerState.STOPPED:
            logger.warning("Scheduler is already running")
            return

        if not self.enabled:
            logger.info("Scheduler is disabled via configuration (SCHEDULER_ENABLED=false)")
            return

        logger.info(f"Starting job scheduler (interval={self.poll_interval_minutes} minutes)...")
        self.state = SchedulerState.STARTING
        self._closed = False

        try:
            logger.info("Initializing search store for scheduler...")
            await self.search_store.initialize()

            logger.info("Initializing job queue publisher for scheduler...")
            await self.queue.initialize()

            logger.info("Initializing distributed lock for multi-instance support...")
            await self.lock.initialize()
        except Exception as e:
            logger.error(f"Failed to start scheduler: {str(e)}")
            self.state = SchedulerState.STOPPED
            raise

        self.state = SchedulerState.RUNNING
        self.consecutive_errors = 0

        await self.tick()

        if self.is_running:
            self._timer_task = asyncio.create_task(self._run_timer())
            logger.info(f"Job scheduler started (poll_interval_minutes={self.poll_interval_minutes})")

    async def _run_timer(self) -> None:
        while self.is_running:
            await self.clock.sleep(self.poll_interval_seconds)
            if not self.is_running:
                break
            await self.tick()

    async def tick(self) -> None:
        """
        Run one scheduling round. Never raises.

        Does nothing unless the scheduler is running and this instance can
        acquire the lock.
        """
        if not self.is_running:
            return

        started = time.monotonic()

        try:
            if not await self.lock.acquire():
                logger.debug("Another instance holds the scheduler lock, skipping this tick")
                return

            logger.info("Scheduler tick: checking for due searches...")
            due = await self.search_store.find_due(self.batch_size, self.clock.now())

            if not due:
                logger.debug("No due searches found")
                self.last_tick_time = self.clock.now()
                self.consecutive_errors = 0
                await self.lock.renew()
                return

            logger.info(f"Found {len(due)} due searches")

            jobs = [
                JobMessage(search_id=search['id'], user_id=search['userId'],
                           schedule_type=ScheduleType.SCHEDULED)
                for search in due
            ]
            message_ids = await self.queue.publish_batch(jobs)

            now = self.clock.now()
            await asyncio.gather(*(self._reschedule(search, now) for search in due))

            logger.info(
                f"Scheduler tick completed: enqueued={len(message_ids)}, updated={len(due)}, "
                f"duration_ms={int((time.monotonic() - started) * 1000)}"
            )

            self.consecutive_errors = 0
            self.last_tick_time = now
            await self.lock.renew()

        except Exception as e:
            self.consecutive_errors += 1
            logger.error(
                f"Scheduler tick error: {str(e)} "
                f"(consecutive_errors={self.consecutive_errors}, "
                f"max_consecutive_errors={self.max_consecutive_errors}, "
                f"duration_ms={int((time.monotonic() - started) * 1000)})"
            )

            if self.consecutive_errors >= self.max_consecutive_errors:
                await self._trip_circuit_breaker()

    async def _reschedule(self, search: Dict[str, Any], now: datetime) -> None:
        interval_hours = get_path(search, 'schedule.intervalHours')
        if interval_hours is None:
            logger.warning(
                f"Search {search['id']} has no schedule.intervalHours, "
                f"using {DEFAULT_INTERVAL_HOURS} hours"
            )
            interval_hours = DEFAULT_INTERVAL_HOURS

        next_run = now + timedelta(hours=float(interval_hours))

        if get_path(search, 'schedule.nextRun') is None:
            logger.info(
                f"Initializing nextRun for legacy search {search['id']} "
                f"({search.get('searchName', 'unnamed')}): next_run={next_run.isoformat()}"
            )

        await self.search_store.update(search['id'], search['userId'], {
            'schedule.nextRun': next_run,
            'lastRunAt': now
        })

    def _cancel_timer(self) -> Optional[asyncio.Task]:
        task = self._timer_task
        self._timer_task = None
        if task is None or task.done() or task is asyncio.current_task():
            return None
        task.cancel()
        return task

    async def _trip_circuit_breaker(self) -> None:
        logger.error(
            f"Scheduler stopping due to too many consecutive failures "
            f"(consecutive_errors={self.consecutive_errors})"
        )
        self.state = SchedulerState.STOPPED
        self._cancel_timer()

        try:
            await self.lock.release()
        except Exception as e:
            logger.warning(f"Error releasing lock during circuit breaker shutdown: {str(e)}")

    async def stop(self) -> None:
        """Stop the timer, release the lock and close the publisher. Idempotent."""
        if self._closed:
            logger.info("Scheduler is not running, skipping stop")
            return
        self._closed = True

        logger.info("Stopping job scheduler...")
        self.state = SchedulerState.STOPPED

        task = self._cancel_timer()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
            logger.info("Cleared scheduler timer")

        try:
            await self.lock.release()
            logger.info("Released distributed lock")
        except Exception as e:
            logger.warning(f"Error releasing distributed lock: {str(e)}")

        try:
            await self.queue.close()
            logger.info("Closed job queue publisher")
        except Exception as e:
            logger.warning(f"Error closing job queue publisher: {str(e)}")

        logger.info("Job scheduler stopped gracefully")

    def get_status(self) -> Dict[str, Any]:
        """Get scheduler status for monitoring."""
        lock_status = self.lock.get_status()
        return {
            'is_running': self.is_running,
            'state': self.state.value,
            'last_tick_time': self.last_tick_time.isoformat() if self.last_tick_time else None,
            'consecutive_errors': self.consecutive_errors,
            'max_consecutive_errors': self.max_consecutive_errors,
            'poll_interval_minutes': self.poll_interval_minutes,
            'is_disabled': not self.enabled,
            'lock': {
                'holder_id': lock_status['holder_id'],
                'is_held': lock_status['is_held']
            }
        }
