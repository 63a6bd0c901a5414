"""
Database migrations for datasette-coffee-beans.

Migrations are numbered SQL files in this directory (e.g., 0002_staff_accounts.sql),
applied in order of their numeric prefix and recorded in schema_migrations.

The Datasette plugin, scripts/init_db.py and the bean-of-the-day daemon may all
open the same database, so each migration runs inside a BEGIN IMMEDIATE
transaction together with its schema_migrations row. A second process waits for
the lock, sees the version already recorded and skips it.
"""

import logging
import re
import sqlite3
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent

# Tables the bean-of-the-day service reads and writes
REQUIRED_TABLES = ("coffee_beans", "staff_accounts")


class SchemaError(Exception):
    """The database is missing or its schema is not up to date."""


@dataclass
class SchemaStatus:
    """Applied and pending migration versions for one database."""

    exists: bool
    applied: list[int]
    pending: list[int]
    missing_tables: list[str]

    @property
    def current_version(self) -> int:
        return max(self.applied) if self.applied else 0

    @property
    def is_current(self) -> bool:
        return self.exists and not self.pending and not self.missing_tables


def get_migration_files() -> list[tuple[int, Path]]:
    """All migration files as (version, path), sorted by version."""
    migrations = []
    for path in MIGRATIONS_DIR.glob("*.sql"):
        match = re.match(r"^(\d+)_", path.name)
        if match:
            migrations.append((int(match.group(1)), path))
    return sorted(migrations, key=lambda x: x[0])


def split_statements(sql: str) -> list[str]:
    """Split a migration script into complete SQL statements."""
    statements = []
    buffer = ""
    for line in sql.splitlines(keepends=True):
        buffer += line
        if sqlite3.complete_statement(buffer):
            statements.append(buffer.strip())
            buffer = ""

    leftover = [
        line for line in buffer.splitlines() if line.strip() and not line.strip().startswith("--")
    ]
    if leftover:
        raise ValueError(f"Incomplete SQL statement: {' '.join(leftover)[:80]}")
    return statements


def get_applied_versions(conn: sqlite3.Connection) -> set[int]:
    """Versions already recorded in schema_migrations."""
    try:
        cursor = conn.execute("SELECT version FROM schema_migrations")
        return {row[0] for row in cursor.fetchall()}
    except sqlite3.OperationalError:
        # Table doesn't exist yet
        return set()


def get_table_names(conn: sqlite3.Connection) -> set[str]:
    cursor = conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
    return {row[0] for row in cursor.fetchall()}


def apply_migration(conn: sqlite3.Connection, version: int, path: Path) -> bool:
    """
    Apply one migration file and record it, all in one transaction.

    Returns False if another connection applied it first. The connection must
    be in autocommit mode (isolation_level=None).
    """
    statements = split_statements(path.read_text())

    conn.execute("BEGIN IMMEDIATE")
    try:
        if version in get_applied_versions(conn):
            conn.execute("ROLLBACK")
            return False
        for statement in statements:
            conn.execute(statement)
        conn.execute(
            "INSERT INTO schema_migrations (version, applied_ts) VALUES (?, ?)",
            (version, datetime.now(UTC).isoformat()),
        )
        conn.execute("COMMIT")
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    return True


def run_migrations(db_path: Path, verbose: bool = True, timeout: float = 30.0) -> list[int]:
    """
    Apply pending migrations to the database, creating it if needed.

    Safe to call repeatedly and from several processes. Returns the versions
    applied by this call. A failing migration is rolled back and re-raised;
    versions before it stay applied.
    """
    log = logger.info if verbose else logger.debug
    conn = sqlite3.connect(db_path, timeout=timeout, isolation_level=None)
    applied = []

    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version INTEGER PRIMARY KEY,
                applied_ts TEXT NOT NULL
            )
        """)

        already_applied = get_applied_versions(conn)
        for version, path in get_migration_files():
            if version in already_applied:
                continue
            log(f"Applying migration {version}: {path.name}")
            try:
                if apply_migration(conn, version, path):
                    applied.append(version)
            except (sqlite3.Error, ValueError):
                logger.exception(f"Migration {version} ({path.name}) failed and was rolled back")
                raise

        if not applied:
            log(f"Schema for {db_path} is up to date")
    finally:
        conn.close()

    return applied


def get_schema_status(db_path: Path) -> SchemaStatus:
    """Compare a database against the migration files without changing it."""
    known = [version for version, _ in get_migration_files()]
    db_path = Path(db_path)
    if not db_path.exists():
        return SchemaStatus(
            exists=False,
            applied=[],
            pending=known,
            missing_tables=list(REQUIRED_TABLES),
        )

    conn = sqlite3.connect(f"{db_path.resolve().as_uri()}?mode=ro", uri=True)
    try:
        applied = get_applied_versions(conn)
        tables = get_table_names(conn)
    finally:
        conn.close()

    return SchemaStatus(
        exists=True,
        applied=sorted(applied),
        pending=[version for version in known if version not in applied],
        missing_tables=[table for table in REQUIRED_TABLES if table not in tables],
    )


def get_current_version(db_path: Path) -> int:
    """Highest applied schema version, or 0 for a missing/empty database."""
    return get_schema_status(db_path).current_version


def require_current_schema(db_path: Path) -> SchemaStatus:
    """Raise SchemaError unless db_path exists with every migration applied."""
    status = get_schema_status(db_path)
    if not status.exists:
        raise SchemaError(f"Database not found: {db_path}")
    if status.missing_tables:
        raise SchemaError(f"Database {db_path} is missing tables: {status.missing_tables}")
    if status.pending:
        raise SchemaError(
            f"Database {db_path} is at schema version {status.current_version}; "
            f"pending migrations: {status.pending}"
        )
    return status
