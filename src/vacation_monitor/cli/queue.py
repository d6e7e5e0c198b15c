#!/usr/bin/env python3
"""
Command-line interface for managing the job queue.
"""

import argparse
import asyncio
import logging
import sys

from ..config import Config
from ..queue.messages import JobMessage, ScheduleType
from ..queue.migrations import check_schema_exists, create_schema, validate_schema
from ..queue.postgres import QueueDatabase
from . import LOG_LEVELS, configure_logging

logger = logging.getLogger(__name__)


def cmd_init_schema(args) -> int:
    """Initialize the job queue schema."""
    config = Config(args.config)
    dsn = config.get('queue.database_url')
    if not dsn:
        logger.error("queue.database_url (QUEUE_DATABASE_URL) is not configured")
        return 1

    db = QueueDatabase(dsn)
    try:
        if check_schema_exists(db):
            if args.force:
                logger.warning("Dropping and recreating schema...")
                create_schema(db, force=True)
            else:
                logger.info("Schema already exists. Use --force to recreate.")
                return 1
        else:
            create_schema(db)

        if validate_schema(db):
            logger.info("Schema initialized successfully")
            return 0
        logger.error("Schema validation failed")
        return 1
    finally:
        db.close()


async def _queue_status(config: Config):
    transport = config.get_queue_transport()
    await transport.initialize()
    try:
        return await transport.get_queue_status()
    finally:
        await transport.close()


def cmd_status(args) -> int:
    """Show queue status."""
    config = Config(args.config)
    status = asyncio.run(_queue_status(config))

    print(f"\nQueue: {config.queue_name}")
    print("=" * 40)
    print(f"⏳ Pending: {status['pending']}")
    print(f"🔄 Locked: {status['locked']}")
    print(f"💀 Dead letter: {status['dead_letter']}")
    print(f"   Total: {status['total']}")
    print(f"   Oldest pending age: {status['oldest_pending_age_seconds']:.0f}s")
    return 0


async def _enqueue(config: Config, job: JobMessage) -> str:
    consumer = config.create_consumer()
    await consumer.initialize()
    try:
        return await consumer.publish(job)
    finally:
        await consumer.close()


def cmd_enqueue(args) -> int:
    """Enqueue a job for one search."""
    config = Config(args.config)
    job = JobMessage(
        search_id=args.search_id,
        user_id=args.user_id,
        schedule_type=ScheduleType.SCHEDULED if args.scheduled else ScheduleType.MANUAL
    )
    message_id = asyncio.run(_enqueue(config, job))
    print(f"✅ Enqueued {job.schedule_type.value} job for search {job.search_id} (message_id: {message_id})")
    return 0


def main(argv=None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(description="Job Queue Management")
    parser.add_argument('--config', '-c', default=None,
                        help='Configuration file path')
    parser.add_argument('--log-level', '-l', choices=LOG_LEVELS,
                        help='Logging level (default: LOG_LEVEL or INFO)')

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    init_parser = subparsers.add_parser('init-schema', help='Initialize the PostgreSQL queue schema')
    init_parser.add_argument('--force', action='store_true',
                             help='Drop and recreate schema')

    subparsers.add_parser('status', help='Show queue status')

    enqueue_parser = subparsers.add_parser('enqueue', help='Enqueue a job for a search')
    enqueue_parser.add_argument('--search-id', required=True, help='Search id')
    enqueue_parser.add_argument('--user-id', required=True, help='Owner user id')
    enqueue_parser.add_argument('--scheduled', action='store_true',
                                help="Mark the job as 'scheduled' instead of 'manual'")

    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    if not args.command:
        parser.print_help()
        return 1

    commands = {
        'init-schema': cmd_init_schema,
        'status': cmd_status,
        'enqueue': cmd_enqueue,
    }

    try:
        return commands[args.command](args)
    except Exception as e:
        logger.error(f"Command failed: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
