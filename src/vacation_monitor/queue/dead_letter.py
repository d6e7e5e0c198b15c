"""
Dead letter handling for job messages that can never be processed.
"""

import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from ..clock import utcnow

logger = logging.getLogger(__name__)


@dataclass
class DeadLetterItem:
    """Represents a message in the dead-letter state."""
    message_id: str
    group_key: Optional[str]
    body: Dict[str, Any]
    delivery_count: int
    enqueued_at: Optional[datetime]
    dead_lettered_at: Optional[datetime]
    dead_letter_reason: str
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            'message_id': self.message_id,
            'group_key': self.group_key,
            'body': self.body,
            'delivery_count': self.delivery_count,
            'enqueued_at': self.enqueued_at.isoformat() if self.enqueued_at else None,
            'dead_lettered_at': self.dead_lettered_at.isoformat() if self.dead_lettered_at else None,
            'dead_letter_reason': self.dead_letter_reason,
            'last_error': self.last_error
        }


class DeadLetterQueue:
    """Inspects, retries and purges dead-lettered messages of a queue transport."""

    def __init__(self, transport, clock=None):
        """
        Initialize dead letter queue manager.

        Args:
            transport: QueueTransport instance
            clock: Clock used for purge cutoffs (defaults to the transport's clock)
        """
        self.transport = transport
        self.clock = clock or getattr(transport, 'clock', None)

    def _now(self) -> datetime:
        if self.clock is not None:
            return self.clock.now()
        return utcnow()

    async def get_items(self, limit: int = 100) -> List[DeadLetterItem]:
        """
        Get items from the dead letter queue, most recent first.

        Args:
            limit: Maximum number of items to return

        Returns:
            List of dead letter items
        """
        items = await self.transport.list_dead_letters(limit)
        logger.debug(f"Retrieved {len(items)} dead letter items")
        return items

    async def retry_item(self, message_id: str) -> bool:
        """
        Move a message back to the queue with its delivery count reset.

        Args:
            message_id: Message to retry

        Returns:
            True if the message was found in the dead-letter state and requeued
        """
        requeued = await self.transport.requeue_dead_letter(message_id)
        if requeued:
            logger.info(f"Moved dead letter item {message_id} back to the queue")
        else:
            logger.warning(f"No dead letter item found with message_id {message_id}")
        return requeued

    async def purge(self, older_than_days: int = 30) -> int:
        """
        Purge old dead letter items to prevent unbounded growth.

        Args:
            older_than_days: Remove items dead-lettered more than this many days ago

        Returns:
            Number of items purged
        """
        cutoff = self._now() - timedelta(days=older_than_days)
        purged = await self.transport.purge_dead_letters(cutoff)
        if purged:
            logger.info(f"Purged {purged} dead letter items older than {older_than_days} days")
        else:
            logger.debug(f"No dead letter items older than {older_than_days} days to purge")
        return purged

    async def get_statistics(self, sample_size: int = 1000) -> Dict[str, Any]:
        """
        Get statistics about the dead letter queue.

        Returns:
            Dictionary with the total count, failure reasons and age range
        """
        status = await self.transport.get_queue_status()
        items = await self.transport.list_dead_letters(sample_size)

        reasons = Counter(item.dead_letter_reason or 'Unknown' for item in items)
        timestamps = [item.dead_lettered_at for item in items if item.dead_lettered_at]

        return {
            'total_dead_letters': status.get('dead_letter', len(items)),
            'affected_searches': len({item.group_key for item in items if item.group_key}),
            'oldest_dead_letter': min(timestamps).isoformat() if timestamps else None,
            'newest_dead_letter': max(timestamps).isoformat() if timestamps else None,
            'avg_delivery_count': (
                sum(item.delivery_count for item in items) / len(items) if items else 0.0
            ),
            'failure_reasons': dict(reasons.most_common(10))
        }
