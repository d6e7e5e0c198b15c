"""
Queue transport interface and in-memory implementation.

Transports deliver messages in peek-lock mode: a received message stays in
the queue, invisible to other consumers, until it is completed, abandoned,
dead-lettered, or its lock lapses.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from ..clock import Clock, SystemClock
from ..errors import MessageLockLostError
from .dead_letter import DeadLetterItem
from .messages import OutboundMessage, ReceivedMessage

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_NAME = "price-monitor-jobs"
DEFAULT_MAX_DELIVERY_COUNT = 10
DEFAULT_RETRY_BACKOFF_SECONDS = 60
MAX_DELIVERY_COUNT_EXCEEDED = "MaxDeliveryCountExceeded"


def retry_delay(delivery_count: int, backoff_seconds: float) -> float:
    """Exponential backoff before an abandoned message is redelivered: base, 2x, 4x..."""
    if backoff_seconds <= 0:
        return 0.0
    return backoff_seconds * 2 ** max(0, delivery_count - 1)


class QueueTransport(ABC):
    """Abstract peek-lock message queue."""

    def __init__(self, queue_name: str = DEFAULT_QUEUE_NAME,
                 max_delivery_count: int = DEFAULT_MAX_DELIVERY_COUNT,
                 retry_backoff_seconds: float = DEFAULT_RETRY_BACKOFF_SECONDS):
        self.queue_name = queue_name
        self.max_delivery_count = max_delivery_count
        self.retry_backoff_seconds = retry_backoff_seconds

    async def initialize(self) -> None:
        """Connect to the backing queue. Default is a no-op."""
        return None

    async def close(self) -> None:
        """Release connections. Default is a no-op."""
        return None

    @abstractmethod
    async def send_batch(self, messages: List[OutboundMessage]) -> None:
        """Send messages atomically as one batch."""
        pass

    @abstractmethod
    async def receive(self, max_messages: int, lock_duration: float) -> List[ReceivedMessage]:
        """
        Lock and return up to ``max_messages`` available messages.

        Only the oldest unsettled message of a group is available, and none
        while another message of that group is locked.
        """
        pass

    @abstractmethod
    async def complete(self, message: ReceivedMessage) -> None:
        """
        Remove a locked message permanently.

        Raises:
            MessageLockLostError: If the lock expired or belongs to another delivery
        """
        pass

    @abstractmethod
    async def abandon(self, message: ReceivedMessage, error: Optional[str] = None) -> None:
        """
        Release a locked message for redelivery after the retry backoff.

        A message already delivered ``max_delivery_count`` times is
        dead-lettered instead.

        Raises:
            MessageLockLostError: If the lock expired or belongs to another delivery
        """
        pass

    @abstractmethod
    async def renew_lock(self, message: ReceivedMessage, lock_duration: float) -> datetime:
        """
        Extend a message lock.

        Returns:
            The new lock expiry

        Raises:
            MessageLockLostError: If the lock expired or belongs to another delivery
        """
        pass

    @abstractmethod
    async def dead_letter(self, message: ReceivedMessage, reason: str,
                          description: Optional[str] = None) -> None:
        """Move a locked message to the dead-letter state."""
        pass

    @abstractmethod
    async def get_queue_status(self) -> Dict[str, Any]:
        """Counts of pending, locked and dead-lettered messages."""
        pass

    @abstractmethod
    async def list_dead_letters(self, limit: int = 100) -> List[DeadLetterItem]:
        """Dead-lettered messages, most recent first."""
        pass

    @abstractmethod
    async def requeue_dead_letter(self, message_id: str) -> bool:
        """Make a dead-lettered message receivable again with a reset delivery count."""
        pass

    @abstractmethod
    async def purge_dead_letters(self, older_than: datetime) -> int:
        """Delete dead-lettered messages dead-lettered before ``older_than``."""
        pass


@dataclass
class _StoredMessage:
    sequence_number: int
    message_id: str
    body: Dict[str, Any]
    group_key: Optional[str]
    content_type: str
    enqueued_at: datetime
    visible_at: datetime
    status: str = 'pending'
    delivery_count: int = 0
    lock_token: Optional[str] = None
    locked_until: Optional[datetime] = None
    dead_lettered_at: Optional[datetime] = None
    dead_letter_reason: Optional[str] = None
    last_error: Optional[str] = None

    def to_received(self) -> ReceivedMessage:
        return ReceivedMessage(
            message_id=self.message_id,
            body=dict(self.body),
            group_key=self.group_key,
            delivery_count=self.delivery_count,
            lock_token=self.lock_token,
            locked_until=self.locked_until,
            enqueued_at=self.enqueued_at,
            sequence_number=self.sequence_number,
            content_type=self.content_type
        )

    def to_dead_letter_item(self) -> DeadLetterItem:
        return DeadLetterItem(
            message_id=self.message_id,
            group_key=self.group_key,
            body=dict(self.body),
            delivery_count=self.delivery_count,
            enqueued_at=self.enqueued_at,
            dead_lettered_at=self.dead_lettered_at,
            dead_letter_reason=self.dead_letter_reason or '',
            last_error=self.last_error
        )


class MemoryQueueTransport(QueueTransport):
    """
    Single-process queue with the same delivery semantics as the
    PostgreSQL transport. Used for local runs and tests.
    """

    def __init__(self, queue_name: str = DEFAULT_QUEUE_NAME,
                 max_delivery_count: int = DEFAULT_MAX_DELIVERY_COUNT,
                 retry_backoff_seconds: float = DEFAULT_RETRY_BACKOFF_SECONDS,
                 clock: Optional[Clock] = None):
        super().__init__(queue_name, max_delivery_count, retry_backoff_seconds)
        self.clock = clock or SystemClock()
        self._messages: Dict[str, _StoredMessage] = {}
        self._next_sequence = 1
        self.closed = False

    async def close(self) -> None:
        self.closed = True

    async def send_batch(self, messages: List[OutboundMessage]) -> None:
        await asyncio.sleep(0)
        now = self.clock.now()
        for message in messages:
            if message.message_id in self._messages:
                logger.debug(f"Duplicate message id {message.message_id} ignored")
                continue
            self._messages[message.message_id] = _StoredMessage(
                sequence_number=self._next_sequence,
                message_id=message.message_id,
                body=dict(message.body),
                group_key=message.group_key,
                content_type=message.content_type,
                enqueued_at=now,
                visible_at=now
            )
            self._next_sequence += 1

    def _ordered(self) -> List[_StoredMessage]:
        return sorted(self._messages.values(), key=lambda m: m.sequence_number)

    def _expire_locks(self, now: datetime) -> None:
        for stored in self._messages.values():
            if stored.status == 'locked' and stored.locked_until < now:
                stored.lock_token = None
                stored.locked_until = None
                if stored.delivery_count >= self.max_delivery_count:
                    self._mark_dead_letter(stored, now, MAX_DELIVERY_COUNT_EXCEEDED)
                else:
                    stored.status = 'pending'
                    stored.visible_at = now

    def _mark_dead_letter(self, stored: _StoredMessage, now: datetime, reason: str) -> None:
        stored.status = 'dead_letter'
        stored.dead_lettered_at = now
        stored.dead_letter_reason = reason
        stored.lock_token = None
        stored.locked_until = None
        logger.warning(
            f"Message {stored.message_id} dead-lettered: {reason} "
            f"(delivery_count={stored.delivery_count})"
        )

    async def receive(self, max_messages: int, lock_duration: float) -> List[ReceivedMessage]:
        await asyncio.sleep(0)
        now = self.clock.now()
        self._expire_locks(now)

        busy_groups = {m.group_key for m in self._messages.values()
                       if m.status == 'locked' and m.group_key is not None}
        seen_groups = set()
        received = []

        for stored in self._ordered():
            if len(received) >= max_messages:
                break
            if stored.status != 'pending':
                continue
            group = stored.group_key
            if group is not None:
                if group in busy_groups or group in seen_groups:
                    continue
                seen_groups.add(group)
            if stored.visible_at > now:
                continue

            stored.status = 'locked'
            stored.lock_token = uuid.uuid4().hex
            stored.locked_until = now + timedelta(seconds=lock_duration)
            stored.delivery_count += 1
            if group is not None:
                busy_groups.add(group)
            received.append(stored.to_received())

        return received

    def _locked(self, message: ReceivedMessage) -> _StoredMessage:
        stored = self._messages.get(message.message_id)
        if (stored is None or stored.status != 'locked'
                or stored.lock_token != message.lock_token):
            raise MessageLockLostError(
                f"Lock for message {message.message_id} was lost", message.message_id
            )
        if stored.locked_until < self.clock.now():
            self._expire_locks(self.clock.now())
            raise MessageLockLostError(
                f"Lock for message {message.message_id} expired", message.message_id
            )
        return stored

    async def complete(self, message: ReceivedMessage) -> None:
        await asyncio.sleep(0)
        stored = self._locked(message)
        del self._messages[stored.message_id]

    async def abandon(self, message: ReceivedMessage, error: Optional[str] = None) -> None:
        await asyncio.sleep(0)
        stored = self._locked(message)
        now = self.clock.now()
        stored.last_error = error
        if stored.delivery_count >= self.max_delivery_count:
            self._mark_dead_letter(stored, now, MAX_DELIVERY_COUNT_EXCEEDED)
            return
        stored.status = 'pending'
        stored.lock_token = None
        stored.locked_until = None
        stored.visible_at = now + timedelta(
            seconds=retry_delay(stored.delivery_count, self.retry_backoff_seconds)
        )

    async def renew_lock(self, message: ReceivedMessage, lock_duration: float) -> datetime:
        await asyncio.sleep(0)
        stored = self._locked(message)
        stored.locked_until = self.clock.now() + timedelta(seconds=lock_duration)
        message.locked_until = stored.locked_until
        return stored.locked_until

    async def dead_letter(self, message: ReceivedMessage, reason: str,
                          description: Optional[str] = None) -> None:
        await asyncio.sleep(0)
        stored = self._locked(message)
        stored.last_error = description
        self._mark_dead_letter(stored, self.clock.now(), reason)

    async def get_queue_status(self) -> Dict[str, Any]:
        await asyncio.sleep(0)
        now = self.clock.now()
        counts = {'pending': 0, 'locked': 0, 'dead_letter': 0}
        oldest_pending = None
        for stored in self._messages.values():
            counts[stored.status] += 1
            if stored.status == 'pending' and (oldest_pending is None or stored.enqueued_at < oldest_pending):
                oldest_pending = stored.enqueued_at
        counts['total'] = len(self._messages)
        counts['oldest_pending_age_seconds'] = (
            (now - oldest_pending).total_seconds() if oldest_pending else 0.0
        )
        return counts

    async def list_dead_letters(self, limit: int = 100) -> List[DeadLetterItem]:
        await asyncio.sleep(0)
        dead = [m for m in self._messages.values() if m.status == 'dead_letter']
        dead.sort(key=lambda m: m.dead_lettered_at, reverse=True)
        return [m.to_dead_letter_item() for m in dead[:limit]]

    async def requeue_dead_letter(self, message_id: str) -> bool:
        await asyncio.sleep(0)
        stored = self._messages.get(message_id)
        if stored is None or stored.status != 'dead_letter':
            return False
        stored.status = 'pending'
        stored.delivery_count = 0
        stored.visible_at = self.clock.now()
        stored.dead_lettered_at = None
        stored.dead_letter_reason = None
        return True

    async def purge_dead_letters(self, older_than: datetime) -> int:
        await asyncio.sleep(0)
        doomed = [m.message_id for m in self._messages.values()
                  if m.status == 'dead_letter' and m.dead_lettered_at < older_than]
        for message_id in doomed:
            del self._messages[message_id]
        return len(doomed)
