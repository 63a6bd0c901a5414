"""Shared pytest fixtures for coffee bean tests."""

import base64

import pytest
from datasette.app import Datasette

from bean_of_the_day.models import BeanStore
from datasette_coffee_beans.basic_auth import hash_password, upsert_staff_account
from datasette_coffee_beans.migrations import run_migrations

STAFF_USERNAME = "barista"
STAFF_PASSWORD = "flat-white"


def basic_auth_header(username: str, password: str) -> dict[str, str]:
    token = base64.b64encode(f"{username}:{password}".encode()).decode()
    return {"Authorization": f"Basic {token}"}


@pytest.fixture
def db_path(tmp_path):
    """Create a temporary database with full schema via migrations.

    Uses the same migration system as production.
    """
    db_file = tmp_path / "test_coffee.db"
    run_migrations(db_file, verbose=False)
    return db_file


@pytest.fixture
def store(db_path):
    return BeanStore(db_path, timeout=5.0)


@pytest.fixture
def seed_beans(store):
    """Insert Arabica, Robusta and Liberica; returns them in id order."""

    def _seed(featured: str | None = None):
        beans = [
            store.insert_bean("Arabica", "$12.99", "Brown", "Smooth coffee bean"),
            store.insert_bean("Robusta", "£10.00", "Dark Brown", "Strong coffee bean"),
            store.insert_bean("Liberica", "£5.99", "Light Brown", "Unique flavor coffee bean"),
        ]
        if featured:
            target = next(b for b in beans if b.name == featured)
            with store.transaction() as txn:
                txn.apply_featured_transition(clear_all=True, new_featured_id=target.id)
        return store.list_all()

    return _seed


@pytest.fixture
def staff_account(db_path):
    """A staff account with a cheap hash so tests stay fast."""
    upsert_staff_account(
        db_path,
        STAFF_USERNAME,
        hash_password(STAFF_PASSWORD, iterations=1000),
        "Test Barista",
    )
    return STAFF_USERNAME


@pytest.fixture
def auth_headers(staff_account):
    return basic_auth_header(STAFF_USERNAME, STAFF_PASSWORD)


@pytest.fixture
def seed_file(tmp_path):
    """Write a small JSON catalogue and return its path."""
    path = tmp_path / "coffeebeans.json"
    path.write_text(
        """[
            {"Name": "TURNABOUT", "Cost": "£39.26", "colour": "dark roast",
             "Description": "Full bodied", "index": 0, "isBOTD": false},
            {"Name": "ISONUS", "Cost": "£18.57", "colour": "golden",
             "Description": "Bright", "index": 1, "isBOTD": false}
        ]""",
        encoding="utf-8",
    )
    return path


@pytest.fixture
def datasette(db_path, seed_file):
    """Create a Datasette instance with the plugin configured.

    Uses config= (not metadata=) for Datasette v1 compatibility.
    """
    return Datasette(
        [str(db_path)],
        config={
            "plugins": {
                "datasette-coffee-beans": {
                    "coffee_db_path": str(db_path),
                    "initial_data_path": str(seed_file),
                    "busy_timeout_seconds": 5,
                    "scheduler": {"enabled": False, "random_seed": 42},
                }
            },
        },
    )


@pytest.fixture
def make_auth_headers():
    """Build Basic auth headers for arbitrary credentials."""
    return basic_auth_header
