"""
MongoDB implementation of the search store.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING, MongoClient, ReturnDocument
from pymongo.collection import Collection

from ..clock import utcnow
from ..errors import SearchNotFoundError
from ..storage.mongodb import connect
from .search_store import DEFAULT_BATCH_SIZE, SearchStore

logger = logging.getLogger(__name__)

DEFAULT_SEARCH_COLLECTION = "searches"

# Search documents are addressed by their API id; Mongo's _id stays internal
_PROJECTION = {'_id': 0}


class MongoSearchStore(SearchStore):
    """Search store backed by a MongoDB collection."""

    def __init__(self, conn_params: Optional[Dict[str, Any]] = None,
                 collection: Optional[Collection] = None):
        self.conn_params = conn_params or {}
        self.collection_name = self.conn_params.get('search_collection', DEFAULT_SEARCH_COLLECTION)
        self.client: Optional[MongoClient] = None
        self.collection: Optional[Collection] = collection

    async def initialize(self) -> None:
        if self.collection is not None:
            return
        self.client, db = await asyncio.to_thread(connect, self.conn_params)
        self.collection = db[self.collection_name]
        await asyncio.to_thread(self._create_indexes)
        logger.info(f"MongoDB search store ready (collection={self.collection_name})")

    def _create_indexes(self) -> None:
        self.collection.create_index([('id', ASCENDING), ('userId', ASCENDING)], unique=True)
        self.collection.create_index([
            ('isActive', ASCENDING),
            ('schedule.enabled', ASCENDING),
            ('schedule.nextRun', ASCENDING)
        ])

    async def close(self) -> None:
        if self.client:
            await asyncio.to_thread(self.client.close)
            self.client = None
            self.collection = None

    def _collection(self) -> Collection:
        if self.collection is None:
            raise RuntimeError("MongoSearchStore used before initialize()")
        return self.collection

    @staticmethod
    def due_query(now: datetime) -> Dict[str, Any]:
        return {
            'isActive': True,
            'schedule.enabled': True,
            '$or': [
                {'schedule.nextRun': {'$lte': now}},
                {'schedule.nextRun': None}
            ]
        }

    def _find_due_sync(self, limit: int, now: datetime) -> List[Dict[str, Any]]:
        cursor = (self._collection()
                  .find(self.due_query(now), _PROJECTION)
                  .sort('schedule.nextRun', ASCENDING)
                  .limit(limit))
        return list(cursor)

    async def find_due(self, limit: int = DEFAULT_BATCH_SIZE,
                       now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        try:
            return await asyncio.to_thread(self._find_due_sync, limit, now or utcnow())
        except Exception as e:
            logger.error(f"Failed to get due searches: {str(e)}")
            raise

    async def get(self, search_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(
            self._collection().find_one,
            {'id': search_id, 'userId': user_id},
            _PROJECTION
        )

    async def update(self, search_id: str, user_id: str,
                     fields: Dict[str, Any]) -> Dict[str, Any]:
        updates = dict(fields)
        updates['updatedAt'] = utcnow()
        try:
            updated = await asyncio.to_thread(
                self._collection().find_one_and_update,
                {'id': search_id, 'userId': user_id},
                {'$set': updates},
                projection=_PROJECTION,
                return_document=ReturnDocument.AFTER
            )
        except Exception as e:
            logger.error(f"Failed to update search {search_id} (user {user_id}): {str(e)}")
            raise

        if updated is None:
            raise SearchNotFoundError(search_id)
        logger.debug(f"Search {search_id} updated")
        return updated
