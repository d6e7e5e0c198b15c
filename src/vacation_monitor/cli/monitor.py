#!/usr/bin/env python3
"""
Monitoring CLI: scheduler leadership and queue health.
"""

import argparse
import asyncio
import logging
import sys
import time
from datetime import datetime
from typing import Any, Dict

from ..clock import utcnow
from ..config import Config
from . import LOG_LEVELS, configure_logging, format_timestamp

logger = logging.getLogger(__name__)


async def collect_status(config: Config) -> Dict[str, Any]:
    """Read the stored lock record and the queue counts."""
    lock_store = config.get_lock_store()
    transport = config.get_queue_transport()
    await lock_store.initialize()
    await transport.initialize()
    try:
        lock = await lock_store.read(config.get('lock.name'))
        queue_status = await transport.get_queue_status()
    finally:
        await lock_store.close()
        await transport.close()

    return {
        'lock': lock.value if lock else None,
        'queue': queue_status,
        'checked_at': utcnow()
    }


def display_status(config: Config, status: Dict[str, Any]) -> None:
    print(f"\n{'='*60}")
    print(f"SCHEDULER LEADERSHIP: {config.get('lock.name')}")
    print(f"{'='*60}")

    record = status['lock']
    if record is None:
        print("❓ No lock record: no instance is scheduling")
    elif record.is_live(status['checked_at']):
        remaining = (record.expires_at - status['checked_at']).total_seconds()
        print(f"👑 Holder: {record.holder_id}")
        print(f"📅 Acquired: {format_timestamp(record.acquired_at)}")
        print(f"🔄 Renewed: {format_timestamp(record.renewed_at)}")
        print(f"⏱️  Expires in: {remaining:.0f}s")
    else:
        print(f"⚠️  Lock expired at {format_timestamp(record.expires_at)} "
              f"(last holder {record.holder_id}); next tick on any instance takes over")

    queue = status['queue']
    print(f"\n{'='*60}")
    print(f"QUEUE HEALTH: {config.queue_name}")
    print(f"{'='*60}")
    print(f"   ⏳ Pending: {queue['pending']}")
    print(f"   🔄 Locked: {queue['locked']}")
    print(f"   💀 Dead letter: {queue['dead_letter']}")
    print(f"   Oldest pending age: {queue['oldest_pending_age_seconds']:.0f}s")


def main(argv=None) -> int:
    """Main entry point for monitoring."""
    parser = argparse.ArgumentParser(description="Vacation Monitor worker monitoring")
    parser.add_argument('--config', '-c', default=None, help='Path to configuration file')
    parser.add_argument('--watch', type=int, metavar='SECONDS',
                        help='Refresh every SECONDS until interrupted')
    parser.add_argument('--log-level', '-l', choices=LOG_LEVELS, default='WARNING',
                        help='Logging level (default: WARNING)')
    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    try:
        config = Config(args.config)
        if not args.watch:
            display_status(config, asyncio.run(collect_status(config)))
            return 0

        print(f"🔴 LIVE MONITORING. Refreshing every {args.watch} seconds. Press Ctrl+C to stop.")
        while True:
            status = asyncio.run(collect_status(config))
            print("\033[2J\033[H")
            print(f"🕒 Last updated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
            display_status(config, status)
            time.sleep(args.watch)

    except KeyboardInterrupt:
        print("\n\n👋 Live monitoring stopped.")
        return 0
    except Exception as e:
        print(f"❌ Error: {str(e)}", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
