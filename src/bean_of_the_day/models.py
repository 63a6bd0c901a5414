"""
Data models and database operations for the coffee bean inventory.
"""

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

PLACEHOLDER_IMAGE = "https://archive.org/download/placeholder-image/placeholder-image.jpg"

# Columns a caller may change through update_bean(); is_botd is owned by the selector
EDITABLE_FIELDS = ("name", "image", "cost", "colour", "description")


class PersistenceError(Exception):
    """A store operation failed and was rolled back."""


@dataclass
class CoffeeBean:
    """A coffee bean in the inventory."""

    id: int
    name: str
    cost: str
    colour: str
    description: str = ""
    image: str | None = None
    is_botd: bool = False
    index: int = 0
    created_ts: str | None = None
    updated_ts: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "CoffeeBean":
        """Build a bean from a coffee_beans row."""
        data = dict(row)
        return cls(
            id=data["id"],
            name=data["name"],
            cost=data["cost"],
            colour=data["colour"],
            description=data["description"] or "",
            image=data["image"],
            is_botd=bool(data["is_botd"]),
            index=data["bean_index"],
            created_ts=data["created_ts"],
            updated_ts=data["updated_ts"],
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return asdict(self)


class BeanTransaction:
    """View of the store bound to one open write transaction."""

    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    def list_all(self) -> list[CoffeeBean]:
        """All beans ordered by id, read inside the transaction."""
        cursor = self._conn.execute("SELECT * FROM coffee_beans ORDER BY id ASC")
        return [CoffeeBean.from_row(row) for row in cursor.fetchall()]

    def apply_featured_transition(self, clear_all: bool, new_featured_id: int | None) -> bool:
        """
        Clear featured flags and/or flag a new bean.

        Returns False if new_featured_id no longer exists. Nothing is committed
        until the surrounding transaction ends.
        """
        now = datetime.now(UTC).isoformat()
        if clear_all:
            self._conn.execute(
                "UPDATE coffee_beans SET is_botd = 0, updated_ts = ? WHERE is_botd = 1",
                (now,),
            )
        if new_featured_id is None:
            return True

        cursor = self._conn.execute(
            "UPDATE coffee_beans SET is_botd = 1, updated_ts = ? WHERE id = ?",
            (now, new_featured_id),
        )
        return cursor.rowcount == 1

    def count(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM coffee_beans").fetchone()[0]

    def featured_ids(self) -> list[int]:
        cursor = self._conn.execute("SELECT id FROM coffee_beans WHERE is_botd = 1 ORDER BY id")
        return [row[0] for row in cursor.fetchall()]

    def insert_many(self, beans: list[dict[str, Any]]) -> int:
        """Insert a batch of beans. Returns rows inserted."""
        rows = bean_rows(beans)
        self._conn.executemany(INSERT_BEAN_SQL, rows)
        return len(rows)


INSERT_BEAN_SQL = """
    INSERT INTO coffee_beans
        (name, image, cost, is_botd, bean_index, colour, description, created_ts)
    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
"""


def bean_rows(beans: list[dict[str, Any]]) -> list[tuple]:
    """Parameter tuples for INSERT_BEAN_SQL. Missing indexes follow list position."""
    now = datetime.now(UTC).isoformat()
    return [
        (
            bean["name"],
            bean.get("image") or PLACEHOLDER_IMAGE,
            bean["cost"],
            1 if bean.get("is_botd") else 0,
            bean.get("index", position),
            bean["colour"],
            bean.get("description") or "",
            now,
        )
        for position, bean in enumerate(beans)
    ]


class BeanStore:
    """Database operations for the coffee bean inventory."""

    def __init__(self, db_path: Path, timeout: float = 30.0):
        self.db_path = Path(db_path)
        self.timeout = timeout

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def transaction(self) -> Iterator[BeanTransaction]:
        """
        Open an immediate write transaction.

        BEGIN IMMEDIATE takes the database write lock before anything is read,
        so two callers can never interleave a read-modify-write of the flags.
        Any failure rolls back and surfaces as PersistenceError.
        """
        try:
            conn = self._connect()
        except sqlite3.Error as e:
            raise PersistenceError(f"Unable to open {self.db_path}: {e}") from e

        conn.isolation_level = None
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield BeanTransaction(conn)
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise PersistenceError(str(e)) from e
        finally:
            conn.close()

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def list_all(self) -> list[CoffeeBean]:
        """Return all beans ordered by id."""
        conn = self._connect()
        try:
            cursor = conn.execute("SELECT * FROM coffee_beans ORDER BY id ASC")
            return [CoffeeBean.from_row(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def count(self) -> int:
        """Number of beans in the store."""
        conn = self._connect()
        try:
            return conn.execute("SELECT COUNT(*) FROM coffee_beans").fetchone()[0]
        finally:
            conn.close()

    def get_bean(self, bean_id: int) -> CoffeeBean | None:
        """Get a single bean by id."""
        conn = self._connect()
        try:
            cursor = conn.execute("SELECT * FROM coffee_beans WHERE id = ?", (bean_id,))
            row = cursor.fetchone()
            return CoffeeBean.from_row(row) if row else None
        finally:
            conn.close()

    def get_featured(self) -> CoffeeBean | None:
        """Get the current Bean of the Day, if any."""
        conn = self._connect()
        try:
            cursor = conn.execute(
                "SELECT * FROM coffee_beans WHERE is_botd = 1 ORDER BY id ASC LIMIT 1"
            )
            row = cursor.fetchone()
            return CoffeeBean.from_row(row) if row else None
        finally:
            conn.close()

    def search(
        self,
        name: str | None = None,
        colour: str | None = None,
        cost: str | None = None,
    ) -> list[CoffeeBean]:
        """Substring search on name, colour and cost. Empty filters are ignored."""
        clauses = []
        params: list[str] = []
        for column, value in (("name", name), ("colour", colour), ("cost", cost)):
            if value:
                clauses.append(f"instr(lower({column}), lower(?)) > 0")
                params.append(value)

        sql = "SELECT * FROM coffee_beans"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY id ASC"

        conn = self._connect()
        try:
            cursor = conn.execute(sql, params)
            return [CoffeeBean.from_row(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def insert_bean(
        self,
        name: str,
        cost: str,
        colour: str,
        description: str = "",
        image: str | None = None,
        index: int | None = None,
        is_botd: bool = False,
    ) -> CoffeeBean:
        """Insert a new bean and return it with its assigned id."""
        now = datetime.now(UTC).isoformat()
        conn = self._connect()
        try:
            if index is None:
                index = conn.execute(
                    "SELECT COALESCE(MAX(bean_index) + 1, 0) FROM coffee_beans"
                ).fetchone()[0]
            cursor = conn.execute(
                INSERT_BEAN_SQL,
                (
                    name,
                    image or PLACEHOLDER_IMAGE,
                    cost,
                    1 if is_botd else 0,
                    index,
                    colour,
                    description or "",
                    now,
                ),
            )
            conn.commit()
            bean_id = cursor.lastrowid
        finally:
            conn.close()

        return self.get_bean(bean_id)

    def update_bean(self, bean_id: int, **fields) -> CoffeeBean | None:
        """
        Update editable fields on a bean.

        Empty or None values keep the existing value. Returns the updated bean,
        or None if it does not exist.
        """
        unknown = set(fields) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}")

        changes = {k: v for k, v in fields.items() if v}
        conn = self._connect()
        try:
            exists = conn.execute("SELECT 1 FROM coffee_beans WHERE id = ?", (bean_id,)).fetchone()
            if not exists:
                return None

            if changes:
                changes["updated_ts"] = datetime.now(UTC).isoformat()
                set_clause = ", ".join(f"{k} = ?" for k in changes)
                values = list(changes.values()) + [bean_id]
                conn.execute(f"UPDATE coffee_beans SET {set_clause} WHERE id = ?", values)
                conn.commit()
        finally:
            conn.close()

        return self.get_bean(bean_id)

    def delete_bean(self, bean_id: int) -> bool:
        """Delete one bean. Returns False if it did not exist."""
        conn = self._connect()
        try:
            cursor = conn.execute("DELETE FROM coffee_beans WHERE id = ?", (bean_id,))
            conn.commit()
            return cursor.rowcount == 1
        finally:
            conn.close()

    def delete_all(self) -> int:
        """Delete every bean. Returns the number of rows removed."""
        conn = self._connect()
        try:
            cursor = conn.execute("DELETE FROM coffee_beans")
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    def insert_many(self, beans: list[dict[str, Any]]) -> int:
        """Insert a batch of beans in one transaction. Returns rows inserted."""
        with self.transaction() as txn:
            return txn.insert_many(beans)
