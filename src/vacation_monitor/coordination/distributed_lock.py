"""
Leader election over a single named lock record.
"""

import asyncio
import logging
import uuid
from typing import Any, Dict, Optional

from ..clock import Clock, SystemClock
from ..errors import (
    ConfigurationError, LockConflictError, LockNotFoundError, VersionMismatchError
)
from .lock_store import LockStore
from .models import LockRecord, Versioned

logger = logging.getLogger(__name__)

DEFAULT_LOCK_NAME = "scheduler-lock"
DEFAULT_LOCK_DURATION = 90
DEFAULT_RENEWAL_INTERVAL = 30


def new_instance_id() -> str:
    """Generate an opaque identifier for this worker instance."""
    return f"instance_{uuid.uuid4().hex[:12]}"


class DistributedLock:
    """
    Mutual-exclusion lock shared by all worker instances.

    Correctness rests on the store's conditional writes: every create,
    update and delete presents the version this instance last saw, so two
    instances can never both win the same transition. A crashed holder
    stops renewing and its record expires after ``lock_duration`` seconds,
    at which point any instance may take it over.

    The locally cached record only answers ``is_held()`` for status
    reporting; acquire always re-reads the store.
    """

    def __init__(self, store: LockStore, lock_name: str = DEFAULT_LOCK_NAME,
                 holder_id: Optional[str] = None,
                 lock_duration: float = DEFAULT_LOCK_DURATION,
                 renewal_interval: float = DEFAULT_RENEWAL_INTERVAL,
                 clock: Optional[Clock] = None,
                 auto_renew: bool = True):
        """
        Initialize the lock.

        Args:
            store: Lock store shared by all instances
            lock_name: Key of the lock record
            holder_id: Identifier of this instance (generated if not provided)
            lock_duration: Seconds a lock stays live without renewal
            renewal_interval: Seconds between automatic renewals
            clock: Time source (defaults to wall clock)
            auto_renew: Start a renewal task whenever the lock is acquired
        """
        if lock_duration <= renewal_interval:
            raise ConfigurationError(
                f"Lock duration ({lock_duration}s) must exceed renewal interval ({renewal_interval}s)"
            )

        self.store = store
        self.lock_name = lock_name
        self.holder_id = holder_id or new_instance_id()
        self.lock_duration = lock_duration
        self.renewal_interval = renewal_interval
        self.clock = clock or SystemClock()
        self.auto_renew = auto_renew

        self.current_lock: Optional[Versioned[LockRecord]] = None
        self._renewal_task: Optional[asyncio.Task] = None
        self._operation_lock: Optional[asyncio.Lock] = None

    def _serialized(self) -> asyncio.Lock:
        # Store operations of one instance run one at a time, so a renewal
        # never presents a version replaced by its own concurrent write
        if self._operation_lock is None:
            self._operation_lock = asyncio.Lock()
        return self._operation_lock

    async def initialize(self) -> None:
        await self.store.initialize()
        logger.info(
            f"Distributed lock initialized: lock={self.lock_name}, holder={self.holder_id}, "
            f"duration={self.lock_duration}s, renewal={self.renewal_interval}s"
        )

    async def acquire(self) -> bool:
        """
        Try to become the holder of the lock.

        Returns:
            True if this instance holds the lock afterwards. Contention,
            lost races and store failures all return False.
        """
        async with self._serialized():
            return await self._acquire()

    async def _acquire(self) -> bool:
        try:
            now = self.clock.now()
            existing = await self.store.read(self.lock_name)

            if existing is None:
                return await self._create(now)

            record = existing.value
            if not record.is_expired(now):
                if record.holder_id == self.holder_id:
                    self.current_lock = existing
                    self.start_renewal()
                    return True

                logger.debug(
                    f"Lock {self.lock_name} is held by {record.holder_id} "
                    f"until {record.expires_at.isoformat()}"
                )
                return False

            return await self._take_over(existing, now)

        except Exception as e:
            logger.error(f"Error acquiring lock {self.lock_name} for {self.holder_id}: {str(e)}")
            return False

    async def _create(self, now) -> bool:
        record = LockRecord.fresh(self.lock_name, self.holder_id, now, self.lock_duration)
        try:
            self.current_lock = await self.store.create_if_absent(record)
        except LockConflictError:
            logger.debug(f"Lock {self.lock_name} created by another instance during race")
            return False

        logger.info(
            f"Distributed lock acquired (new): holder={self.holder_id}, "
            f"expires_at={record.expires_at.isoformat()}"
        )
        self.start_renewal()
        return True

    async def _take_over(self, existing: Versioned[LockRecord], now) -> bool:
        record = LockRecord.fresh(self.lock_name, self.holder_id, now, self.lock_duration)
        try:
            self.current_lock = await self.store.update_if_version_matches(record, existing.version)
        except (VersionMismatchError, LockNotFoundError):
            logger.debug(f"Lock {self.lock_name} changed by another instance during takeover")
            return False

        logger.info(
            f"Distributed lock acquired (takeover): holder={self.holder_id}, "
            f"previous_holder={existing.value.holder_id}, expires_at={record.expires_at.isoformat()}"
        )
        self.start_renewal()
        return True

    async def renew(self) -> bool:
        """
        Extend the lock held by this instance.

        Returns:
            True if the expiry was extended. False if the lock is not held,
            was taken over (local state is cleared and renewal stops), or
            the store failed.
        """
        async with self._serialized():
            return await self._renew()

    async def _renew(self) -> bool:
        if self.current_lock is None:
            return False

        now = self.clock.now()
        record = self.current_lock.value.renewed(now, self.lock_duration)

        try:
            self.current_lock = await self.store.update_if_version_matches(
                record, self.current_lock.version
            )
        except (VersionMismatchError, LockNotFoundError):
            return await self._recover_after_mismatch(now)
        except Exception as e:
            logger.error(f"Error renewing lock {self.lock_name} for {self.holder_id}: {str(e)}")
            return False

        logger.debug(f"Lock renewed: holder={self.holder_id}, expires_at={record.expires_at.isoformat()}")
        return True

    async def _recover_after_mismatch(self, now) -> bool:
        # A cancelled renewal may have written a newer version of our own record
        try:
            stored = await self.store.read(self.lock_name)
        except Exception as e:
            logger.error(f"Error re-reading lock {self.lock_name} for {self.holder_id}: {str(e)}")
            return False

        if stored is not None and stored.value.holder_id == self.holder_id \
                and not stored.value.is_expired(now):
            logger.debug(f"Lock {self.lock_name} version refreshed for {self.holder_id}")
            self.current_lock = stored
            return True

        logger.warning(f"Lock {self.lock_name} was taken over by another instance ({self.holder_id})")
        self.current_lock = None
        self.stop_renewal()
        return False

    async def release(self) -> None:
        """Give up the lock. Losing a race with a newer holder is not an error."""
        if self.current_lock is None:
            return

        self.stop_renewal()
        async with self._serialized():
            if self.current_lock is None:
                return
            try:
                await self.store.delete_if_version_matches(self.lock_name, self.current_lock.version)
                logger.info(f"Distributed lock released by {self.holder_id}")
            except (VersionMismatchError, LockNotFoundError):
                logger.debug(f"Lock {self.lock_name} already released or taken over")
            except Exception as e:
                logger.error(f"Error releasing lock {self.lock_name} for {self.holder_id}: {str(e)}")
            finally:
                self.current_lock = None

    def is_held(self) -> bool:
        """Whether the cached record is unexpired. For status reporting only."""
        if self.current_lock is None:
            return False
        return self.current_lock.value.is_live(self.clock.now())

    def start_renewal(self) -> None:
        """Start the background renewal task if enabled and not running."""
        if not self.auto_renew:
            return
        if self._renewal_task is not None and not self._renewal_task.done():
            return
        self._renewal_task = asyncio.get_running_loop().create_task(self._renewal_loop())
        logger.debug(f"Lock renewal started for {self.holder_id} every {self.renewal_interval}s")

    def stop_renewal(self) -> None:
        """Cancel the background renewal task."""
        task = self._renewal_task
        self._renewal_task = None
        if task is None or task.done():
            return
        if task is not asyncio.current_task():
            task.cancel()
        logger.debug(f"Lock renewal stopped for {self.holder_id}")

    async def _renewal_loop(self) -> None:
        while True:
            await self.clock.sleep(self.renewal_interval)
            if not await self.renew():
                if self.current_lock is None:
                    return
                # Transient store failure: keep trying until the lock expires.
                if not self.is_held():
                    logger.warning(f"Lock {self.lock_name} expired before it could be renewed")
                    self.current_lock = None
                    self._renewal_task = None
                    return

    def get_status(self) -> Dict[str, Any]:
        """Get lock status for monitoring."""
        expires_at = self.current_lock.value.expires_at if self.current_lock else None
        return {
            'holder_id': self.holder_id,
            'lock_name': self.lock_name,
            'is_held': self.is_held(),
            'expires_at': expires_at.isoformat() if expires_at else None
        }
