"""
Access to monitored searches: the due-item queries and partial updates the
scheduler and job processor need.

Search documents keep the camelCase field names shared with the web API
(``userId``, ``isActive``, ``schedule.nextRun``, ``lastRunAt``).
"""

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..clock import utcnow
from ..errors import SearchNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 50


def get_path(doc: Dict[str, Any], path: str, default: Any = None) -> Any:
    """Read a dotted path such as ``schedule.nextRun``."""
    current = doc
    for part in path.split('.'):
        if not isinstance(current, dict) or part not in current:
            return default
        current = current[part]
    return current


def set_path(doc: Dict[str, Any], path: str, value: Any) -> None:
    """Write a dotted path, creating intermediate objects as needed."""
    parts = path.split('.')
    current = doc
    for part in parts[:-1]:
        if not isinstance(current.get(part), dict):
            current[part] = {}
        current = current[part]
    current[parts[-1]] = value


def is_due(search: Dict[str, Any], now: datetime) -> bool:
    """
    A search is due when it is active, its schedule is enabled and its
    ``nextRun`` has passed. A legacy search without ``nextRun`` is due too.
    """
    if not search.get('isActive') or not get_path(search, 'schedule.enabled'):
        return False
    next_run = get_path(search, 'schedule.nextRun')
    return next_run is None or next_run <= now


class SearchStore(ABC):
    """Document-store operations on monitored searches."""

    async def initialize(self) -> None:
        """Connect to the store. Default is a no-op."""
        return None

    async def close(self) -> None:
        """Release connections. Default is a no-op."""
        return None

    @abstractmethod
    async def find_due(self, limit: int = DEFAULT_BATCH_SIZE,
                       now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """
        Find due searches, most overdue first.

        Args:
            limit: Maximum number of searches to return
            now: Reference time (defaults to the current time)

        Returns:
            Searches ordered by ascending ``schedule.nextRun``; searches without
            a ``nextRun`` come first
        """
        pass

    @abstractmethod
    async def get(self, search_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        """Get a search by id within its owner's partition."""
        pass

    @abstractmethod
    async def update(self, search_id: str, user_id: str,
                     fields: Dict[str, Any]) -> Dict[str, Any]:
        """
        Apply a partial update. Keys may be dotted paths.

        Returns:
            The updated search

        Raises:
            SearchNotFoundError: If the search does not exist
        """
        pass


class MemorySearchStore(SearchStore):
    """In-process search store for tests and local runs."""

    def __init__(self, searches: Optional[List[Dict[str, Any]]] = None):
        self._searches: Dict[str, Dict[str, Any]] = {}
        for search in searches or []:
            self.put(search)

    def put(self, search: Dict[str, Any]) -> None:
        """Insert or replace a search."""
        self._searches[search['id']] = copy.deepcopy(search)

    def all(self) -> List[Dict[str, Any]]:
        return [copy.deepcopy(s) for s in self._searches.values()]

    async def find_due(self, limit: int = DEFAULT_BATCH_SIZE,
                       now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        await asyncio.sleep(0)
        now = now or utcnow()
        due = [s for s in self._searches.values() if is_due(s, now)]

        # Legacy searches without nextRun sort first
        due.sort(key=lambda s: (
            get_path(s, 'schedule.nextRun') is not None,
            get_path(s, 'schedule.nextRun') or now
        ))
        return [copy.deepcopy(s) for s in due[:limit]]

    async def get(self, search_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        await asyncio.sleep(0)
        search = self._searches.get(search_id)
        if search is None or search.get('userId') != user_id:
            return None
        return copy.deepcopy(search)

    async def update(self, search_id: str, user_id: str,
                     fields: Dict[str, Any]) -> Dict[str, Any]:
        await asyncio.sleep(0)
        search = self._searches.get(search_id)
        if search is None or search.get('userId') != user_id:
            raise SearchNotFoundError(search_id)

        for path, value in fields.items():
            set_path(search, path, value)
        search['updatedAt'] = utcnow()
        return copy.deepcopy(search)
