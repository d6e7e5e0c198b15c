#!/usr/bin/env python3
"""
Command-line interface for running a price monitor worker.
"""

import argparse
import asyncio
import logging
import os
import sys

from ..config import CONFIG_PATH_ENV, DEFAULT_CONFIG_PATH, Config
from ..errors import ConfigurationError
from ..worker.worker import run_worker
from . import LOG_LEVELS, configure_logging


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Vacation Monitor price monitor worker",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run a worker with the default config
  vacation-monitor-worker

  # Run with a custom config file and instance id
  vacation-monitor-worker --config /path/to/config.yaml --instance-id worker-prod-01

  # Consume jobs only, never schedule
  vacation-monitor-worker --no-scheduler

Environment Variables:
  VACATION_MONITOR_CONFIG_PATH: Path to configuration file (default: ./config.yaml)
  SCHEDULER_ENABLED: Set to false to disable the scheduler on every instance
  LOG_LEVEL: Default logging level
        """
    )

    parser.add_argument(
        "--config", "-c",
        help="Path to configuration file (overrides VACATION_MONITOR_CONFIG_PATH)"
    )
    parser.add_argument(
        "--instance-id",
        help="Instance id used as the scheduler lock holder (auto-generated if not provided)"
    )
    parser.add_argument(
        "--no-scheduler",
        action="store_true",
        help="Only consume jobs on this instance"
    )
    parser.add_argument(
        "--log-level", "-l",
        choices=LOG_LEVELS,
        help="Logging level (default: LOG_LEVEL or INFO)"
    )
    parser.add_argument(
        "--log-file",
        help="Log to file instead of stdout"
    )
    return parser


def main(argv=None) -> int:
    """Main entry point for the worker."""
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level, args.log_file)
    logger = logging.getLogger(__name__)

    config_path = args.config or os.environ.get(CONFIG_PATH_ENV, DEFAULT_CONFIG_PATH)
    logger.info(f"Config file: {config_path}")

    try:
        config = Config(config_path)
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    if args.log_level is None:
        logging.getLogger().setLevel(config.log_level)

    return asyncio.run(run_worker(
        config,
        instance_id=args.instance_id,
        enable_scheduler=not args.no_scheduler
    ))


if __name__ == "__main__":
    sys.exit(main())
