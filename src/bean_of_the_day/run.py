"""
CLI runner for the Bean of the Day service.

Usage:
    python -m bean_of_the_day.run [OPTIONS]

    # Pick a new Bean of the Day now and exit
    python -m bean_of_the_day.run --once

    # Run as daemon, selecting every night at midnight
    python -m bean_of_the_day.run --daemon

    # Ask a running inventory service to pick a new bean
    python -m bean_of_the_day.run --trigger-url http://localhost:8001 --username admin
"""

import argparse
import asyncio
import logging
import os
import random
import signal
import sys
from pathlib import Path

from datasette_coffee_beans.migrations import SchemaError, require_current_schema

from .config import BotdConfig
from .models import BeanStore, PersistenceError
from .remote import TriggerError, trigger_remote
from .scheduler import BeanOfTheDayScheduler, compute_delay, local_clock, next_midnight
from .selector import run_selection_cycle

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("bean-of-the-day")


def make_store_factory(config: BotdConfig):
    """Factory giving each scheduler cycle its own store handle."""

    def _factory() -> BeanStore:
        return BeanStore(config.db_path, timeout=config.busy_timeout_seconds)

    return _factory


def make_rng(config: BotdConfig) -> random.Random:
    return random.Random(config.scheduler.random_seed)


def run_once(config: BotdConfig) -> bool:
    """Run a single selection cycle. Returns False on persistence failure."""
    store = BeanStore(config.db_path, timeout=config.busy_timeout_seconds)
    clock = local_clock(config.scheduler.get_timezone())

    try:
        outcome = run_selection_cycle(store, rng=make_rng(config), clock=clock)
    except PersistenceError as e:
        logger.error(f"Selection failed: {e}")
        return False

    if outcome.changed:
        logger.info(f"New Bean of the Day: {outcome.featured_name} (id {outcome.featured_id})")
    else:
        logger.info("No eligible beans; Bean of the Day unchanged")
    return True


async def run_daemon(config: BotdConfig) -> None:
    """Run the nightly scheduler until SIGINT or SIGTERM."""
    logger.info("Starting Bean of the Day daemon")
    logger.info(f"Database: {config.db_path}")
    logger.info(f"Timezone: {config.scheduler.timezone or 'system local'}")

    scheduler = BeanOfTheDayScheduler(
        make_store_factory(config),
        rng=make_rng(config),
        clock=local_clock(config.scheduler.get_timezone()),
        run_on_startup=config.scheduler.run_on_startup,
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:  # pragma: no cover - Windows event loops
            pass

    await scheduler.run(stop_event)


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="bean-of-the-day: Daily featured coffee bean selection",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Pick a new Bean of the Day once
    python -m bean_of_the_day.run --once

    # Run as daemon
    python -m bean_of_the_day.run --daemon

    # Show when the next selection would run
    python -m bean_of_the_day.run --next-run

    # Use a specific config file
    python -m bean_of_the_day.run --config datasette.yaml --once
        """,
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=Path("datasette.yaml"),
        help="Path to config file (default: datasette.yaml)",
    )
    parser.add_argument(
        "--db",
        type=Path,
        help="Override database path from config",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run one selection cycle and exit",
    )
    parser.add_argument(
        "--daemon",
        action="store_true",
        help="Run as a daemon, selecting every night at midnight",
    )
    parser.add_argument(
        "--next-run",
        action="store_true",
        help="Print the time until the next scheduled selection",
    )
    parser.add_argument(
        "--trigger-url",
        type=str,
        help="Base URL of a running inventory service to trigger remotely",
    )
    parser.add_argument(
        "--username",
        type=str,
        default=os.environ.get("BOTD_TRIGGER_USERNAME", "admin"),
        help="Staff username for --trigger-url (default: $BOTD_TRIGGER_USERNAME or admin)",
    )
    parser.add_argument(
        "--password",
        type=str,
        default=os.environ.get("BOTD_TRIGGER_PASSWORD"),
        help="Staff password for --trigger-url (default: $BOTD_TRIGGER_PASSWORD)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    config = BotdConfig.from_yaml(args.config)
    if args.db:
        config.db_path = args.db

    logger.info(f"Config loaded from {args.config}")

    if args.next_run:
        now = local_clock(config.scheduler.get_timezone())()
        print(f"Next selection at {next_midnight(now).isoformat()} (in {compute_delay(now)})")
        return 0

    if args.trigger_url:
        if not args.password:
            logger.error("A password is required for --trigger-url (or set BOTD_TRIGGER_PASSWORD)")
            return 1
        try:
            result = asyncio.run(trigger_remote(args.trigger_url, args.username, args.password))
        except TriggerError as e:
            logger.error(str(e))
            return 1
        featured = result.get("coffee_bean") or {}
        logger.info(f"Bean of the Day is now: {featured.get('name', 'none')}")
        return 0

    try:
        require_current_schema(config.db_path)
    except SchemaError as e:
        logger.error(str(e))
        logger.error("Run 'python scripts/init_db.py' first to create or migrate the database.")
        return 1

    if args.daemon:
        try:
            asyncio.run(run_daemon(config))
        except KeyboardInterrupt:
            logger.info("Daemon stopped by user")
        return 0

    if args.once:
        return 0 if run_once(config) else 1

    # Default: show help
    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
