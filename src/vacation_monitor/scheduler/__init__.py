"""
Scheduling of due price-monitor searches.

Key Features:
- Leader-only ticks guarded by the distributed lock
- Oldest-first batches of due searches, one job message per search
- Legacy searches without a next run are scheduled and initialized
- Circuit breaker that hands leadership to another instance after repeated failures
"""

from .scheduler import Scheduler, SchedulerState
from .search_store import MemorySearchStore, SearchStore

__all__ = ['Scheduler', 'SchedulerState', 'MemorySearchStore', 'SearchStore']
