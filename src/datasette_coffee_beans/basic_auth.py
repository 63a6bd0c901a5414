"""
Staff authentication for the coffee bean API.

API clients send HTTP Basic credentials, checked against staff_accounts.
Passwords are stored as PBKDF2-SHA256 hashes in the datasette-auth-passwords
format. An admin account can be synced from environment variables on startup.
"""

import base64
import binascii
import hashlib
import logging
import os
import secrets
import sqlite3
from datetime import UTC, datetime
from pathlib import Path

logger = logging.getLogger(__name__)

HASH_ALGORITHM = "sha256"
HASH_ITERATIONS = 260000
HASH_SALT_LENGTH = 16
HASH_KEY_LENGTH = 32


def hash_password(password: str, iterations: int = HASH_ITERATIONS) -> str:
    """
    Hash a password using PBKDF2-SHA256.

    Returns a string in the format: pbkdf2_sha256$iterations$salt$hash
    """
    salt = secrets.token_hex(HASH_SALT_LENGTH)
    key = hashlib.pbkdf2_hmac(
        HASH_ALGORITHM,
        password.encode("utf-8"),
        salt.encode("utf-8"),
        iterations,
        dklen=HASH_KEY_LENGTH,
    )
    return f"pbkdf2_{HASH_ALGORITHM}${iterations}${salt}${key.hex()}"


def verify_password(password: str, password_hash: str) -> bool:
    """Check a password against a stored hash. Malformed hashes never match."""
    try:
        algorithm_part, iterations_str, salt, stored_hash = password_hash.split("$")
        if not algorithm_part.startswith("pbkdf2_"):
            return False

        key = hashlib.pbkdf2_hmac(
            algorithm_part.removeprefix("pbkdf2_"),
            password.encode("utf-8"),
            salt.encode("utf-8"),
            int(iterations_str),
            dklen=len(bytes.fromhex(stored_hash)),
        )
        return secrets.compare_digest(key.hex(), stored_hash)
    except (ValueError, AttributeError):
        return False


def parse_basic_auth(header: str | None) -> tuple[str, str] | None:
    """Decode an "Authorization: Basic ..." header into (username, password)."""
    if not header:
        return None

    scheme, _, encoded = header.partition(" ")
    if scheme.lower() != "basic" or not encoded:
        return None

    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None

    username, sep, password = decoded.partition(":")
    if not sep or not username:
        return None
    return username, password


def get_staff_account(db_path: Path, username: str) -> dict | None:
    """Staff account by username, or None."""
    if not db_path.exists():
        return None

    conn = sqlite3.connect(db_path)
    try:
        row = conn.execute(
            "SELECT username, password_hash, display_name FROM staff_accounts WHERE username = ?",
            (username,),
        ).fetchone()
    finally:
        conn.close()

    if row is None:
        return None
    return {"username": row[0], "password_hash": row[1], "display_name": row[2]}


def upsert_staff_account(
    db_path: Path,
    username: str,
    password_hash: str,
    display_name: str | None = None,
) -> None:
    """Create a staff account, or replace the password and display name of an existing one."""
    now = datetime.now(UTC).isoformat()
    conn = sqlite3.connect(db_path)
    try:
        conn.execute(
            """
            INSERT INTO staff_accounts (username, password_hash, display_name, created_ts)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(username) DO UPDATE SET
                password_hash = excluded.password_hash,
                display_name = excluded.display_name,
                updated_ts = ?
            """,
            (username, password_hash, display_name, now, now),
        )
        conn.commit()
    finally:
        conn.close()


def sync_admin_from_env(db_path: Path) -> bool:
    """
    Sync the admin account from STAFF_ADMIN_USERNAME / STAFF_ADMIN_PASSWORD.

    Returns True if an account was written.
    """
    username = os.environ.get("STAFF_ADMIN_USERNAME", "admin")
    password = os.environ.get("STAFF_ADMIN_PASSWORD")
    display_name = os.environ.get("STAFF_ADMIN_DISPLAY_NAME", "Administrator")

    if not password:
        logger.debug("STAFF_ADMIN_PASSWORD not set, skipping admin account sync")
        return False

    upsert_staff_account(db_path, username, hash_password(password), display_name)
    logger.info(f"Synced staff admin account: {username}")
    return True


def authenticate_staff(db_path: Path, username: str, password: str) -> dict | None:
    """Staff account dict if the credentials are valid, else None."""
    account = get_staff_account(db_path, username)
    if account and verify_password(password, account["password_hash"]):
        return account
    return None


def actor_for_account(account: dict) -> dict:
    """Datasette actor for an authenticated staff account."""
    username = account["username"]
    return {
        "id": f"staff:{username}",
        "principal_type": "staff",
        "principal_id": username,
        "display": account.get("display_name") or username,
    }
