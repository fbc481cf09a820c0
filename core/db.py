"""
Database connection factory (DB-API 2.0, SQLite).

NOT an ORM - just connection management for the refresh token ledger.

Usage:
    from core.db import connect

    # Context manager (auto commit/rollback/close)
    with connect(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute("SELECT * FROM refresh_tokens WHERE user_id = ?", ("u1",))
        rows = cursor.fetchall()
"""

import logging
import re
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Union

logger = logging.getLogger(__name__)

# Seconds a writer waits for the database lock before raising
BUSY_TIMEOUT = 10.0


def get_connection(db_path: Union[str, Path]) -> sqlite3.Connection:
    """
    Get a SQLite connection with dict-like rows.

    Args:
        db_path: SQLite file path

    Returns:
        DB-API 2.0 connection with row_factory set.
    """
    conn = sqlite3.connect(str(db_path), timeout=BUSY_TIMEOUT, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def connect(db_path: Union[str, Path], immediate: bool = False):
    """
    Context manager that yields a connection with auto commit/rollback.

    On success: commits and closes.
    On exception: rolls back and closes.

    Args:
        db_path: SQLite file path
        immediate: Take the write lock up front (BEGIN IMMEDIATE) so a
            read-then-write sequence cannot interleave with another writer.
    """
    conn = get_connection(db_path)
    try:
        if immediate:
            conn.execute("BEGIN IMMEDIATE")
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


_IDENTIFIER_RE = re.compile(r'^[a-zA-Z_][a-zA-Z0-9_]*$')


def _validate_identifier(name: str, label: str) -> None:
    """Validate a SQL identifier (table or column name) against injection.

    Raises ValueError if the identifier contains invalid characters.
    """
    if not _IDENTIFIER_RE.match(name):
        raise ValueError(f"Invalid {label} name: {name!r}")


def table_exists(conn, table: str) -> bool:
    """Check if a table exists.

    Raises:
        ValueError: If the table name contains invalid characters
    """
    _validate_identifier(table, "table")
    cursor = conn.cursor()
    cursor.execute(
        "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?",
        (table,),
    )
    return cursor.fetchone() is not None
