"""
Bulk import of coffee beans from a JSON file.
"""

import json
import logging
from pathlib import Path
from typing import Any

from .models import BeanStore

logger = logging.getLogger(__name__)

# Lower-cased JSON key -> bean field
FIELD_ALIASES = {
    "name": "name",
    "image": "image",
    "cost": "cost",
    "colour": "colour",
    "color": "colour",
    "description": "description",
    "index": "index",
    "isbotd": "is_botd",
    "is_botd": "is_botd",
}

REQUIRED_FIELDS = ("name", "cost", "colour")


def normalize_bean(record: dict[str, Any]) -> dict[str, Any]:
    """Map a JSON record onto bean fields, matching keys case-insensitively."""
    if not isinstance(record, dict):
        raise ValueError(f"Bean record must be a JSON object, got {type(record).__name__}")

    bean: dict[str, Any] = {}
    for key, value in record.items():
        target = FIELD_ALIASES.get(key.lower())
        if target:
            bean[target] = value

    missing = [f for f in REQUIRED_FIELDS if not bean.get(f)]
    if missing:
        raise ValueError(f"Bean record missing required fields: {missing}")

    if "index" in bean:
        try:
            bean["index"] = int(bean["index"])
        except (TypeError, ValueError) as e:
            raise ValueError(f"Bean index must be an integer, got {bean['index']!r}") from e
    bean["is_botd"] = bool(bean.get("is_botd", False))
    return bean


def parse_beans(text: str) -> list[dict[str, Any]]:
    """
    Parse a JSON array of bean records.

    Only the first record flagged as Bean of the Day keeps its flag.
    """
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON: {e}") from e

    if not isinstance(data, list):
        raise ValueError("Expected a JSON array of coffee beans")

    beans = [normalize_bean(record) for record in data]

    flagged = [bean for bean in beans if bean["is_botd"]]
    if len(flagged) > 1:
        logger.warning(
            f"{len(flagged)} imported beans flagged as Bean of the Day; keeping only the first"
        )
        for bean in flagged[1:]:
            bean["is_botd"] = False

    return beans


def read_beans_file(path: Path) -> list[dict[str, Any]]:
    """Parse a JSON bean file. Raises FileNotFoundError or ValueError."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"JSON file not found: {path}")
    return parse_beans(path.read_text(encoding="utf-8"))


def import_beans(store: BeanStore, beans: list[dict[str, Any]], only_if_empty: bool = False) -> int:
    """
    Insert parsed beans in one write transaction.

    Incoming flags are dropped if a bean is already featured. With
    only_if_empty=True nothing is inserted unless the store is empty.
    Returns the number of beans inserted.
    """
    with store.transaction() as txn:
        if only_if_empty and txn.count() > 0:
            return 0
        if txn.featured_ids():
            beans = [{**bean, "is_botd": False} for bean in beans]
        return txn.insert_many(beans)


def load_beans_from_file(store: BeanStore, path: Path) -> int:
    """
    Import beans from a JSON file into the store.

    Returns the number of beans inserted. Raises FileNotFoundError if the file
    is missing, ValueError if it is not a valid bean list and PersistenceError
    if the insert fails.
    """
    beans = read_beans_file(path)
    if not beans:
        logger.info(f"No data found in {path}")
        return 0

    inserted = import_beans(store, beans)
    logger.info(f"Imported {inserted} coffee bean(s) from {path}")
    return inserted


def load_initial_data(store: BeanStore, path: Path) -> bool:
    """
    Seed an empty store from the JSON file.

    Does nothing if the store already has beans. Returns True if the store
    has beans afterwards.
    """
    if store.count() > 0:
        return True

    beans = read_beans_file(path)
    if not beans:
        logger.info(f"No data found in {path}")
        return False

    inserted = import_beans(store, beans, only_if_empty=True)
    if inserted:
        logger.info(f"Seeded {inserted} coffee bean(s) from {path}")
    else:
        logger.info("Store was filled by another writer; skipped initial data")
    return True
