#!/usr/bin/env python3
"""
CLI interface for managing dead-lettered job messages.
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import List

from ..config import Config
from ..queue.dead_letter import DeadLetterItem, DeadLetterQueue
from . import LOG_LEVELS, configure_logging, format_timestamp

logger = logging.getLogger(__name__)


def display_dead_letter_items(items: List[DeadLetterItem], show_details: bool = False):
    """Display dead letter items in a formatted table."""
    if not items:
        print("✅ No items in dead letter queue")
        return

    print(f"\n📋 DEAD LETTER QUEUE ({len(items)} items)")
    print("=" * 100)

    if show_details:
        for i, item in enumerate(items, 1):
            print(f"\n[{i}] ✉️  {item.message_id}")
            print(f"    Search: {item.group_key}")
            print(f"    Enqueued At: {format_timestamp(item.enqueued_at)}")
            print(f"    Dead-lettered At: {format_timestamp(item.dead_lettered_at)}")
            print(f"    Deliveries: {item.delivery_count}")
            print(f"    Reason: {item.dead_letter_reason}")
            if item.last_error:
                print(f"    Last Error: {item.last_error[:200]}")
            print(f"    Body: {json.dumps(item.body)}")
    else:
        print(f"{'Message ID':<32} {'Search':<20} {'Dead-lettered At':<19} {'Tries':<6} {'Reason':<25}")
        print("-" * 100)

        for item in items:
            message_short = (item.message_id[:29] + "...") if len(item.message_id) > 32 else item.message_id
            search = item.group_key or '-'
            search_short = (search[:17] + "...") if len(search) > 20 else search
            reason = item.dead_letter_reason or ''
            reason_short = (reason[:22] + "...") if len(reason) > 25 else reason

            print(f"{message_short:<32} {search_short:<20} "
                  f"{format_timestamp(item.dead_lettered_at):<19} "
                  f"{item.delivery_count:<6} {reason_short:<25}")


async def list_items(dlq: DeadLetterQueue, limit: int, show_details: bool) -> int:
    print("🔍 Listing dead letter queue items...")
    items = await dlq.get_items(limit)
    display_dead_letter_items(items, show_details)
    if len(items) == limit:
        print(f"\n⚠️  Showing first {limit} items. Use --limit to see more.")
    return 0


async def retry_item(dlq: DeadLetterQueue, message_id: str) -> int:
    print(f"🔄 Attempting to retry message {message_id}...")
    if await dlq.retry_item(message_id):
        print(f"✅ Moved message {message_id} back to the queue")
        return 0
    print(f"❌ Failed to retry message {message_id} - it may not exist or not be dead-lettered")
    return 1


async def purge_items(dlq: DeadLetterQueue, days: int, assume_yes: bool) -> int:
    print(f"🗑️  Purging dead letter items older than {days} days...")
    if not assume_yes:
        response = input(f"This will permanently delete dead letter items older than {days} days. Continue? (y/N): ")
        if response.lower() not in ['y', 'yes']:
            print("❌ Operation cancelled")
            return 1

    purged = await dlq.purge(days)
    print(f"✅ Purged {purged} old dead letter items")
    return 0


async def show_statistics(dlq: DeadLetterQueue) -> int:
    stats = await dlq.get_statistics()

    print(f"\n📊 DEAD LETTER STATISTICS")
    print("=" * 60)
    print(f"   Total: {stats['total_dead_letters']}")
    print(f"   Affected Searches: {stats['affected_searches']}")
    print(f"   Oldest: {format_timestamp(stats['oldest_dead_letter'])}")
    print(f"   Newest: {format_timestamp(stats['newest_dead_letter'])}")
    print(f"   Avg Deliveries: {stats['avg_delivery_count']:.1f}")

    if stats['failure_reasons']:
        print("\n🚨 FAILURE REASONS:")
        for reason, count in stats['failure_reasons'].items():
            print(f"   {count:>5}  {reason}")
    return 0


async def run_command(config: Config, args) -> int:
    transport = config.get_queue_transport()
    await transport.initialize()
    dlq = DeadLetterQueue(transport)
    try:
        if args.command == 'list':
            return await list_items(dlq, args.limit, args.details)
        if args.command == 'retry':
            return await retry_item(dlq, args.message_id)
        if args.command == 'purge':
            return await purge_items(dlq, args.older_than_days, args.yes)
        return await show_statistics(dlq)
    finally:
        await transport.close()


def main(argv=None) -> int:
    """Main CLI entry point for dead letter management."""
    parser = argparse.ArgumentParser(
        description="Manage dead-lettered job messages",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # List dead letter items
  vacation-monitor-deadletter list --details

  # Retry one message
  vacation-monitor-deadletter retry job_1700000000000_abc123def

  # Purge items older than 30 days
  vacation-monitor-deadletter purge --older-than-days 30
        """
    )
    parser.add_argument('--config', '-c', default=None, help='Path to configuration file')
    parser.add_argument('--log-level', '-l', choices=LOG_LEVELS,
                        help='Logging level (default: LOG_LEVEL or INFO)')

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    list_parser = subparsers.add_parser('list', help='List dead letter items')
    list_parser.add_argument('--limit', type=int, default=50,
                             help='Maximum number of items to display (default: 50)')
    list_parser.add_argument('--details', action='store_true',
                             help='Show detailed information for each item')

    retry_parser = subparsers.add_parser('retry', help='Move a message back to the queue')
    retry_parser.add_argument('message_id', help='Message id')

    purge_parser = subparsers.add_parser('purge', help='Delete old dead letter items')
    purge_parser.add_argument('--older-than-days', type=int, default=30,
                              help='Age threshold in days (default: 30)')
    purge_parser.add_argument('--yes', '-y', action='store_true', help='Skip confirmation')

    subparsers.add_parser('stats', help='Show dead letter statistics')

    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    if not args.command:
        parser.print_help()
        return 1

    try:
        config = Config(args.config)
        return asyncio.run(run_command(config, args))
    except Exception as e:
        print(f"❌ Error: {str(e)}", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
