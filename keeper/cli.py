"""Command-line interface for the collateral keeper."""
from __future__ import annotations

import argparse
import asyncio
import dataclasses
import logging
import sys

from .config import AppConfig, load_config
from .errors import ConfigurationError, RetriesExhaustedError
from .logging_setup import configure_logging
from .services import Keeper, RetryingScheduler

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse CLI parser."""
    parser = argparse.ArgumentParser(
        prog="collateral-keeper",
        description="Liquidation and dispute keeper for collateralized synthetic positions",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: config.yaml in project root)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    sub = parser.add_subparsers(dest="command")

    run_parser = sub.add_parser("run", help="Run the keeper loop")
    run_parser.add_argument(
        "--polling-interval",
        type=int,
        default=None,
        help="Seconds between cycles, 0 for a single cycle (overrides config)",
    )
    sub.add_parser("once", help="Run a single cycle and exit")

    return parser


def _apply_overrides(config: AppConfig, args: argparse.Namespace) -> AppConfig:
    interval = getattr(args, "polling_interval", None)
    if args.command == "once":
        interval = 0
    if interval is None:
        return config
    return dataclasses.replace(
        config, keeper=dataclasses.replace(config.keeper, polling_interval=interval)
    )


async def _run(args: argparse.Namespace) -> None:
    """Build the keeper from configuration and run it."""
    config = _apply_overrides(load_config(args.config), args)
    keeper = Keeper(config)
    scheduler = RetryingScheduler(
        keeper.run_cycle,
        polling_interval=config.keeper.polling_interval,
        error_retries=config.keeper.error_retries,
        error_retries_timeout=config.keeper.error_retries_timeout,
        on_finish=keeper.drain_notifications,
    )
    try:
        await scheduler.run()
    except RetriesExhaustedError as e:
        await keeper.alert(str(e), subject="🚨 Keeper stopped")
        raise


def main() -> None:
    """Entry point."""
    parser = build_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(EXIT_USAGE)

    configure_logging(args.log_level)
    try:
        asyncio.run(_run(args))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    except (ConfigurationError, FileNotFoundError) as e:
        logger.error("Configuration error: %s", e)
        sys.exit(EXIT_FAILURE)
    except RetriesExhaustedError as e:
        logger.error("%s", e)
        sys.exit(EXIT_FAILURE)
    sys.exit(EXIT_OK)
