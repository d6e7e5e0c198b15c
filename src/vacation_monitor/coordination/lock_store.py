"""
Lock store interface and in-memory implementation.

A lock store offers exactly four operations over named lock records. The
three writes are conditional: create only if absent, update and delete only
if the caller presents the version token it last read. These act as the
compare-and-swap primitive that leader election is built on.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Dict, Optional

from ..errors import LockConflictError, LockNotFoundError, VersionMismatchError
from .models import LockRecord, Versioned

logger = logging.getLogger(__name__)


def new_version_token() -> str:
    """Generate an opaque version token for a stored record."""
    return uuid.uuid4().hex


class LockStore(ABC):
    """Abstract conditional-write store for lock records."""

    async def initialize(self) -> None:
        """Connect to the backing store. Default is a no-op."""
        return None

    async def close(self) -> None:
        """Release backing store resources. Default is a no-op."""
        return None

    @abstractmethod
    async def read(self, lock_name: str) -> Optional[Versioned[LockRecord]]:
        """
        Read a lock record by key.

        Returns:
            The record with its current version, or None if absent
        """
        pass

    @abstractmethod
    async def create_if_absent(self, record: LockRecord) -> Versioned[LockRecord]:
        """
        Create a record only if none exists for its key.

        Raises:
            LockConflictError: If a record already exists
        """
        pass

    @abstractmethod
    async def update_if_version_matches(self, record: LockRecord,
                                        expected_version: str) -> Versioned[LockRecord]:
        """
        Overwrite a record only if its stored version equals ``expected_version``.

        Raises:
            VersionMismatchError: If another writer changed the record first
            LockNotFoundError: If the record no longer exists
        """
        pass

    @abstractmethod
    async def delete_if_version_matches(self, lock_name: str, expected_version: str) -> None:
        """
        Delete a record only if its stored version equals ``expected_version``.

        Raises:
            VersionMismatchError: If another writer changed the record first
            LockNotFoundError: If the record no longer exists
        """
        pass


class MemoryLockStore(LockStore):
    """
    Process-local lock store.

    Shared by several DistributedLock instances it behaves like the real
    store: every operation suspends once before touching state, so
    concurrent callers interleave between their read and their write, and
    each check-and-write runs without a suspension point in the middle.
    """

    def __init__(self):
        self._records: Dict[str, Versioned[LockRecord]] = {}

    async def read(self, lock_name: str) -> Optional[Versioned[LockRecord]]:
        await asyncio.sleep(0)
        return self._records.get(lock_name)

    async def create_if_absent(self, record: LockRecord) -> Versioned[LockRecord]:
        await asyncio.sleep(0)
        if record.lock_name in self._records:
            raise LockConflictError(f"Lock {record.lock_name} already exists", record.lock_name)
        stored = Versioned(record, new_version_token())
        self._records[record.lock_name] = stored
        return stored

    async def update_if_version_matches(self, record: LockRecord,
                                        expected_version: str) -> Versioned[LockRecord]:
        await asyncio.sleep(0)
        current = self._records.get(record.lock_name)
        if current is None:
            raise LockNotFoundError(f"Lock {record.lock_name} not found")
        if not current.matches(expected_version):
            raise VersionMismatchError(
                f"Lock {record.lock_name} was modified by another instance",
                current.version,
                expected_version
            )
        stored = Versioned(record, new_version_token())
        self._records[record.lock_name] = stored
        return stored

    async def delete_if_version_matches(self, lock_name: str, expected_version: str) -> None:
        await asyncio.sleep(0)
        current = self._records.get(lock_name)
        if current is None:
            raise LockNotFoundError(f"Lock {lock_name} not found")
        if not current.matches(expected_version):
            raise VersionMismatchError(
                f"Lock {lock_name} was modified by another instance",
                current.version,
                expected_version
            )
        del self._records[lock_name]
