"""
MongoDB implementation of the lock store.

Each lock is one document keyed by its name. A random ``version`` field is
regenerated on every write and every conditional write filters on it, so
the filter-and-write done server-side by a single pymongo call is the
compare-and-swap.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from pymongo import MongoClient
from pymongo.collection import Collection
from pymongo.errors import DuplicateKeyError

from ..errors import LockConflictError, LockNotFoundError, VersionMismatchError
from ..storage.mongodb import connect
from .lock_store import LockStore, new_version_token
from .models import LockRecord, Versioned

logger = logging.getLogger(__name__)

DEFAULT_LOCK_COLLECTION = "locks"


class MongoLockStore(LockStore):
    """Lock store backed by a MongoDB collection."""

    def __init__(self, conn_params: Optional[Dict[str, Any]] = None,
                 collection: Optional[Collection] = None):
        """
        Initialize the MongoDB lock store.

        Args:
            conn_params: Connection parameters (uri or host/port/db_name, collection)
            collection: Pre-built collection, used instead of connecting
        """
        self.conn_params = conn_params or {}
        self.collection_name = self.conn_params.get('lock_collection', DEFAULT_LOCK_COLLECTION)
        self.client: Optional[MongoClient] = None
        self.collection: Optional[Collection] = collection

    async def initialize(self) -> None:
        if self.collection is not None:
            return
        self.client, db = await asyncio.to_thread(connect, self.conn_params)
        self.collection = db[self.collection_name]
        logger.info(f"MongoDB lock store ready (collection={self.collection_name})")

    async def close(self) -> None:
        if self.client:
            await asyncio.to_thread(self.client.close)
            self.client = None
            self.collection = None

    def _collection(self) -> Collection:
        if self.collection is None:
            raise RuntimeError("MongoLockStore used before initialize()")
        return self.collection

    @staticmethod
    def _to_versioned(doc: Dict[str, Any]) -> Versioned[LockRecord]:
        return Versioned(LockRecord.from_document(doc), doc['version'])

    @staticmethod
    def _document(record: LockRecord, version: str) -> Dict[str, Any]:
        doc = record.to_document()
        doc['_id'] = record.lock_name
        doc['version'] = version
        return doc

    async def read(self, lock_name: str) -> Optional[Versioned[LockRecord]]:
        doc = await asyncio.to_thread(self._collection().find_one, {'_id': lock_name})
        if doc is None:
            return None
        return self._to_versioned(doc)

    async def create_if_absent(self, record: LockRecord) -> Versioned[LockRecord]:
        version = new_version_token()
        try:
            await asyncio.to_thread(self._collection().insert_one, self._document(record, version))
        except DuplicateKeyError:
            raise LockConflictError(f"Lock {record.lock_name} already exists", record.lock_name)
        return Versioned(record, version)

    async def update_if_version_matches(self, record: LockRecord,
                                        expected_version: str) -> Versioned[LockRecord]:
        version = new_version_token()
        result = await asyncio.to_thread(
            self._collection().replace_one,
            {'_id': record.lock_name, 'version': expected_version},
            self._document(record, version)
        )
        if result.matched_count == 0:
            await self._raise_write_conflict(record.lock_name, expected_version)
        return Versioned(record, version)

    async def delete_if_version_matches(self, lock_name: str, expected_version: str) -> None:
        result = await asyncio.to_thread(
            self._collection().delete_one,
            {'_id': lock_name, 'version': expected_version}
        )
        if result.deleted_count == 0:
            await self._raise_write_conflict(lock_name, expected_version)

    async def _raise_write_conflict(self, lock_name: str, expected_version: str) -> None:
        """Tell a missing record apart from one written by someone else."""
        current = await self.read(lock_name)
        if current is None:
            raise LockNotFoundError(f"Lock {lock_name} not found")
        raise VersionMismatchError(
            f"Lock {lock_name} was modified by another instance",
            current.version,
            expected_version
        )
