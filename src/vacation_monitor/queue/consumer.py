"""
Job queue consumer.

Publishes job messages and turns received messages into handler calls with
an explicit settlement outcome:

- handler succeeds: message completed
- handler fails permanently (see ``queue.errors``): message completed and dropped
- handler fails otherwise: message abandoned for redelivery
- body cannot be decoded: message dead-lettered

Transport failures (receive, settle, lock renewal) never reach the
classification path; they go to the subscriber's error handler.
"""

import asyncio
import inspect
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, List, Optional

from ..clock import Clock, SystemClock
from ..errors import MessageFormatError, MessageLockLostError
from .errors import is_non_retryable
from .messages import JobMessage, OutboundMessage, Outcome, ReceivedMessage
from .transport import QueueTransport

logger = logging.getLogger(__name__)

JobHandler = Callable[[JobMessage], Awaitable[None]]
ErrorHandler = Callable[[BaseException], object]

MALFORMED_MESSAGE = "MalformedMessage"


class Delivery:
    """A received message and its decoded job, settled exactly once."""

    def __init__(self, transport: QueueTransport, message: ReceivedMessage,
                 job: Optional[JobMessage], format_error: Optional[MessageFormatError],
                 received_at: datetime):
        self.transport = transport
        self.message = message
        self.job = job
        self.format_error = format_error
        self.received_at = received_at
        self.outcome: Optional[Outcome] = None

    @property
    def message_id(self) -> str:
        return self.message.message_id

    @property
    def delivery_count(self) -> int:
        return self.message.delivery_count

    @property
    def settled(self) -> bool:
        return self.outcome is not None

    async def settle(self, outcome: Outcome, error: Optional[BaseException] = None) -> None:
        """
        Settle the message with the transport.

        Raises:
            MessageLockLostError: If the message lock was lost before settling
        """
        if self.settled:
            logger.warning(f"Message {self.message_id} already settled as {self.outcome.value}")
            return

        if outcome in (Outcome.COMPLETED, Outcome.DROPPED):
            await self.transport.complete(self.message)
        elif outcome == Outcome.ABANDONED:
            await self.transport.abandon(self.message, str(error) if error else None)
        elif outcome == Outcome.DEAD_LETTERED:
            await self.transport.dead_letter(
                self.message, MALFORMED_MESSAGE, str(error) if error else None
            )
        else:
            raise ValueError(f"Unknown outcome: {outcome}")

        self.outcome = outcome


class JobQueueConsumer:
    """Publishes job messages and consumes them with peek-lock semantics."""

    def __init__(self, transport: QueueTransport, lock_duration: float = 60,
                 max_auto_lock_renewal: float = 300, poll_interval: float = 1.0,
                 clock: Optional[Clock] = None):
        """
        Initialize the consumer.

        Args:
            transport: Queue transport to publish to and receive from
            lock_duration: Seconds a received message stays locked
            max_auto_lock_renewal: Seconds after receipt during which the lock is renewed
            poll_interval: Seconds to wait when the queue is empty or after a transport error
            clock: Time source
        """
        self.transport = transport
        self.lock_duration = lock_duration
        self.max_auto_lock_renewal = max_auto_lock_renewal
        self.poll_interval = poll_interval
        self.clock = clock or SystemClock()

        self._subscriptions: List['Subscription'] = []
        self._initialized = False
        self._closed = False

    async def initialize(self) -> None:
        if self._initialized:
            return
        await self.transport.initialize()
        self._initialized = True
        self._closed = False
        logger.info(f"Job queue consumer initialized for queue {self.transport.queue_name}")

    # Publishing

    async def publish(self, job: JobMessage) -> str:
        """Publish one job and return its message id."""
        message_ids = await self.publish_batch([job])
        return message_ids[0]

    async def publish_batch(self, jobs: List[JobMessage]) -> List[str]:
        """
        Publish jobs as one atomic batch.

        Returns:
            Message ids in the order of ``jobs``
        """
        if not jobs:
            return []

        messages = [OutboundMessage.for_job(job) for job in jobs]
        await self.transport.send_batch(messages)
        logger.info(f"Published {len(messages)} job message(s) to {self.transport.queue_name}")
        return [message.message_id for message in messages]

    # Consuming

    def _delivery(self, message: ReceivedMessage) -> Delivery:
        job = None
        format_error = None
        try:
            job = JobMessage.from_body(message.body)
        except MessageFormatError as e:
            format_error = e
        return Delivery(self.transport, message, job, format_error, self.clock.now())

    async def receive(self, max_messages: int = 1) -> List[Delivery]:
        """Lock and return up to ``max_messages`` deliveries."""
        messages = await self.transport.receive(max_messages, self.lock_duration)
        return [self._delivery(message) for message in messages]

    async def deliveries(self):
        """Yield deliveries one at a time until the consumer is closed."""
        while not self._closed:
            batch = await self.receive(1)
            if not batch:
                await self.clock.sleep(self.poll_interval)
                continue
            for delivery in batch:
                yield delivery

    async def handle(self, delivery: Delivery, handler: JobHandler,
                     error_handler: Optional[ErrorHandler] = None) -> Outcome:
        """
        Run ``handler`` for a delivery and settle it according to the result.

        Raises:
            MessageLockLostError: If the lock was lost before settling
        """
        if delivery.job is None:
            logger.error(
                f"Dead-lettering malformed message {delivery.message_id}: {delivery.format_error}"
            )
            await delivery.settle(Outcome.DEAD_LETTERED, delivery.format_error)
            return Outcome.DEAD_LETTERED

        job = delivery.job
        renewal = asyncio.create_task(self._renew_lock_loop(delivery, error_handler))
        error = None
        try:
            await handler(job)
        except Exception as e:
            error = e
        finally:
            renewal.cancel()
            await asyncio.gather(renewal, return_exceptions=True)

        if error is None:
            outcome = Outcome.COMPLETED
            logger.info(f"Job completed for search {job.search_id} (message {delivery.message_id})")
        elif is_non_retryable(error):
            outcome = Outcome.DROPPED
            logger.warning(
                f"Dropping job for search {job.search_id} (message {delivery.message_id}): "
                f"non-retryable error: {error}"
            )
        else:
            outcome = Outcome.ABANDONED
            logger.error(
                f"Job failed for search {job.search_id} (message {delivery.message_id}, "
                f"delivery {delivery.delivery_count}): {error}"
            )

        await delivery.settle(outcome, error)
        return outcome

    async def _renew_lock_loop(self, delivery: Delivery,
                               error_handler: Optional[ErrorHandler]) -> None:
        deadline = delivery.received_at + timedelta(seconds=self.max_auto_lock_renewal)
        interval = self.lock_duration / 2

        while True:
            await self.clock.sleep(interval)
            if self.clock.now() >= deadline:
                logger.debug(f"Stopped renewing lock for message {delivery.message_id}")
                return
            try:
                await self.transport.renew_lock(delivery.message, self.lock_duration)
            except MessageLockLostError as e:
                await self.report_error(e, error_handler)
                return
            except Exception as e:
                await self.report_error(e, error_handler)

    async def report_error(self, error: BaseException,
                           error_handler: Optional[ErrorHandler] = None) -> None:
        """Pass a transport-level error to ``error_handler``, or log it."""
        if error_handler is None:
            logger.error(f"Queue transport error: {error}")
            return
        try:
            result = error_handler(error)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.exception(f"Error handler failed while handling {error!r}: {e}")

    async def subscribe(self, handler: JobHandler,
                        error_handler: Optional[ErrorHandler] = None) -> 'Subscription':
        """Start a loop task that handles one message at a time."""
        subscription = Subscription(self, handler, error_handler)
        subscription.start()
        self._subscriptions.append(subscription)
        logger.info(f"Subscribed to queue {self.transport.queue_name}")
        return subscription

    async def close(self) -> None:
        """Stop subscriptions, waiting for in-flight handlers, and close the transport."""
        if self._closed:
            return
        self._closed = True

        subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            await subscription.close()

        try:
            await self.transport.close()
        except Exception as e:
            logger.warning(f"Error closing queue transport: {e}")
        self._initialized = False
        logger.info("Job queue consumer closed")


class Subscription:
    """A running receive-and-handle loop."""

    def __init__(self, consumer: JobQueueConsumer, handler: JobHandler,
                 error_handler: Optional[ErrorHandler] = None):
        self.consumer = consumer
        self.handler = handler
        self.error_handler = error_handler
        self.handled = 0
        self._task: Optional[asyncio.Task] = None
        self._stopping = False
        self._in_flight = False

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        consumer = self.consumer
        while not self._stopping:
            try:
                batch = await consumer.receive(1)
            except Exception as e:
                await consumer.report_error(e, self.error_handler)
                await consumer.clock.sleep(consumer.poll_interval)
                continue

            if not batch:
                await consumer.clock.sleep(consumer.poll_interval)
                continue

            for delivery in batch:
                self._in_flight = True
                try:
                    await consumer.handle(delivery, self.handler, self.error_handler)
                    self.handled += 1
                except Exception as e:
                    await consumer.report_error(e, self.error_handler)
                    await consumer.clock.sleep(consumer.poll_interval)
                finally:
                    self._in_flight = False

    async def close(self) -> None:
        """Stop the loop, letting a message being handled finish and settle."""
        self._stopping = True
        if self._task is None or self._task.done():
            return
        if not self._in_flight:
            self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
