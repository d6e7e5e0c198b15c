"""
Job queue for price-monitor jobs.

The scheduler publishes one job message per due search; every worker
instance consumes them. Messages are delivered under a peek-lock and
settled explicitly once the job has run.

Key Features:
- Peek-lock delivery with automatic lock renewal during long jobs
- Per-search message groups, so one search is never processed twice at once
- Retry/drop classification of job failures
- Exponential backoff on redelivery and a dead-letter state
- In-memory and PostgreSQL transports
"""

from .consumer import Delivery, JobQueueConsumer, Subscription
from .dead_letter import DeadLetterItem, DeadLetterQueue
from .errors import is_non_retryable
from .messages import JobMessage, OutboundMessage, Outcome, ReceivedMessage, ScheduleType
from .transport import MemoryQueueTransport, QueueTransport

__all__ = [
    'Delivery',
    'JobQueueConsumer',
    'Subscription',
    'DeadLetterItem',
    'DeadLetterQueue',
    'is_non_retryable',
    'JobMessage',
    'OutboundMessage',
    'Outcome',
    'ReceivedMessage',
    'ScheduleType',
    'MemoryQueueTransport',
    'QueueTransport',
]
