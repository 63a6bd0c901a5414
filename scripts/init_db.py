#!/usr/bin/env python3
"""Initialize the coffee bean database and optionally seed it from JSON."""

import argparse
import logging
from pathlib import Path

from bean_of_the_day.importer import load_beans_from_file, load_initial_data
from bean_of_the_day.models import BeanStore
from datasette_coffee_beans.migrations import get_schema_status, run_migrations

logging.basicConfig(level=logging.INFO, format="%(message)s")
logger = logging.getLogger("init_db")


def init_db(db_path: Path, seed_path: Path | None = None, append: bool = False) -> None:
    """
    Create/migrate the database, then import seed_path.

    The seed file only goes into an empty store unless append is set.
    """
    logger.info(f"Initializing database: {db_path}")

    applied = run_migrations(db_path, verbose=True)
    if applied:
        logger.info(f"Applied {len(applied)} migration(s).")

    store = BeanStore(db_path)
    if seed_path and append:
        load_beans_from_file(store, seed_path)
    elif seed_path:
        if store.count():
            logger.info(f"Database already has {store.count()} bean(s); skipping {seed_path}")
        else:
            load_initial_data(store, seed_path)

    status = get_schema_status(db_path)
    logger.info(f"Schema version: {status.current_version} (applied: {status.applied})")
    logger.info(f"Coffee beans: {store.count()}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Initialize the coffee bean database")
    parser.add_argument(
        "--db",
        type=Path,
        default=Path("coffee_beans.db"),
        help="Path to the SQLite database file (default: coffee_beans.db)",
    )
    parser.add_argument(
        "--seed",
        type=Path,
        help="JSON file of coffee beans to import into an empty database",
    )
    parser.add_argument(
        "--append",
        action="store_true",
        help="Import --seed even if the database already has beans",
    )
    args = parser.parse_args()

    init_db(args.db, seed_path=args.seed, append=args.append)


if __name__ == "__main__":
    main()
