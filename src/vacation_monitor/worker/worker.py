"""
Price monitor worker process: job consumption plus the leader-elected scheduler.
"""

import asyncio
import logging
import os
import signal
from typing import Any, Dict, Optional

from ..coordination.distributed_lock import new_instance_id
from ..queue.messages import JobMessage
from .processor import JobProcessor

logger = logging.getLogger(__name__)


class PriceMonitorWorker:
    """
    One worker instance. Every instance consumes jobs; the scheduler runs on
    all of them but only the lock holder enqueues work.
    """

    def __init__(self, config, processor: Optional[JobProcessor] = None,
                 instance_id: Optional[str] = None, enable_scheduler: bool = True):
        """
        Initialize the worker.

        Args:
            config: Config used to build stores, queue, lock and scheduler
            processor: Job processor (built from ``processor.collaborators`` if not provided)
            instance_id: Identifier used as the lock holder id
            enable_scheduler: Start the scheduler alongside consumption
        """
        self.config = config
        self.instance_id = instance_id or config.instance_id or new_instance_id()
        self.processor = processor
        self.enable_scheduler = enable_scheduler

        self.search_store = None
        self.consumer = None
        self.subscription = None
        self.scheduler = None
        self.running = False

    async def start(self) -> None:
        """
        Start consuming jobs, then start the scheduler.

        Raises:
            Exception: Any failure before the subscription is running
        """
        if self.running:
            logger.warning("Worker is already running")
            return

        logger.info("=" * 60)
        logger.info(f"Vacation Monitor Worker {self.instance_id}: job processor + scheduler")
        logger.info("=" * 60)

        try:
            self.search_store = self.search_store or self.config.get_search_store()
            if self.processor is None:
                self.processor = self.config.create_processor(self.search_store)

            await self.search_store.initialize()
            self.consumer = self.config.create_consumer()
            await self.consumer.initialize()

            self.subscription = await self.consumer.subscribe(self.handle_job, self.handle_error)
            self.running = True
        except Exception as e:
            logger.error(f"Failed to start worker: {str(e)}")
            await self._close_resources()
            raise

        logger.info("Price Monitor Worker started and listening for jobs")

        if not self.enable_scheduler:
            logger.info("Scheduler not started for this instance (--no-scheduler)")
            return

        try:
            self.scheduler = self.config.create_scheduler(
                search_store=self.search_store, holder_id=self.instance_id
            )
            await self.scheduler.start()
            if self.scheduler.is_running:
                logger.info("Scheduler started successfully")
        except Exception as e:
            logger.warning(f"Scheduler failed to start: {str(e)}")
            logger.info("Worker is processing jobs but scheduler is offline")

    async def handle_job(self, job: JobMessage) -> None:
        await self.processor.process_job(job)

    async def handle_error(self, error: BaseException) -> None:
        """Log queue transport errors that are not tied to a job outcome."""
        logger.error(f"Queue transport error on worker {self.instance_id}: {error!r}")

    async def stop(self) -> None:
        """Stop the scheduler, then stop consuming."""
        if not self.running:
            return

        logger.info("Stopping Price Monitor Worker...")
        self.running = False

        if self.scheduler is not None:
            try:
                await self.scheduler.stop()
                logger.info("Scheduler stopped")
            except Exception as e:
                logger.warning(f"Error stopping scheduler: {str(e)}")

        await self._close_resources()
        logger.info("Price Monitor Worker stopped gracefully")

    async def _close_resources(self) -> None:
        if self.consumer is not None:
            await self.consumer.close()
        if self.search_store is not None:
            try:
                await self.search_store.close()
            except Exception as e:
                logger.warning(f"Error closing search store: {str(e)}")

    def get_status(self) -> Dict[str, Any]:
        return {
            'instance_id': self.instance_id,
            'running': self.running,
            'jobs_handled': self.subscription.handled if self.subscription else 0,
            'scheduler': self.scheduler.get_status() if self.scheduler else None
        }


def force_exit(status: int) -> None:
    """Flush log handlers and terminate the process immediately."""
    for handler in logging.getLogger().handlers:
        handler.flush()
    os._exit(status)


async def run_worker(config, instance_id: Optional[str] = None, enable_scheduler: bool = True,
                     worker: Optional[PriceMonitorWorker] = None,
                     stop_event: Optional[asyncio.Event] = None) -> int:
    """
    Run a worker until SIGINT or SIGTERM.

    A graceful stop is bounded by ``worker.shutdown_timeout_seconds``. When
    it times out, or on a second signal, the process exits at once without
    waiting for driver calls still running in executor threads.

    Returns:
        Process exit status
    """
    worker = worker or PriceMonitorWorker(
        config, instance_id=instance_id, enable_scheduler=enable_scheduler
    )
    stop_event = stop_event or asyncio.Event()
    loop = asyncio.get_running_loop()
    signals_received = []

    def on_signal(sig: signal.Signals) -> None:
        if signals_received:
            logger.warning(f"{sig.name} received again, forcing exit")
            force_exit(1)
        signals_received.append(sig)
        logger.info(f"{sig.name} received, initiating graceful shutdown...")
        stop_event.set()

    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, on_signal, sig)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            logger.debug(f"Cannot install handler for {sig.name} on this event loop")

    try:
        try:
            await worker.start()
        except Exception as e:
            logger.error(f"Fatal error starting worker: {str(e)}")
            return 1

        await stop_event.wait()

        timeout = config.shutdown_timeout
        try:
            await asyncio.wait_for(worker.stop(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.error(f"Graceful shutdown timeout exceeded ({timeout}s), forcing exit")
            force_exit(1)
            return 1
        except Exception as e:
            logger.error(f"Error during graceful shutdown: {str(e)}")
            return 1

        logger.info("Graceful shutdown completed")
        return 0
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
