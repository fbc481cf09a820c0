"""
SQLite-backed refresh token repository.

Every write runs in its own short transaction. exchange() takes the write
lock up front (BEGIN IMMEDIATE) and relies on a conditional UPDATE, so two
concurrent rotations of the same record cannot both succeed, even across
processes sharing the database file.
"""
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

from core.db import connect
from core.timestamps import parse_timestamp, to_iso
from .schema import init_refresh_token_schema
from .types import RefreshTokenRecord

logger = logging.getLogger(__name__)

_COLUMNS = (
    "id, user_id, token_hash, created_at, expires_at, used_at, revoked_at, "
    "replaced_by, ip_address, user_agent"
)


def _row_to_record(row) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        id=row["id"],
        user_id=row["user_id"],
        token_hash=row["token_hash"],
        created_at=parse_timestamp(row["created_at"]),
        expires_at=parse_timestamp(row["expires_at"]),
        used_at=parse_timestamp(row["used_at"]),
        revoked_at=parse_timestamp(row["revoked_at"]),
        replaced_by=row["replaced_by"],
        ip_address=row["ip_address"],
        user_agent=row["user_agent"],
    )


def _insert(cursor, record: RefreshTokenRecord) -> None:
    cursor.execute(
        f"INSERT INTO refresh_tokens ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
        (
            record.id,
            record.user_id,
            record.token_hash,
            to_iso(record.created_at),
            to_iso(record.expires_at),
            to_iso(record.used_at),
            to_iso(record.revoked_at),
            record.replaced_by,
            record.ip_address,
            record.user_agent,
        ),
    )


class SqliteRefreshTokenRepository:
    """RefreshTokenRepository stored in a SQLite file.

    Args:
        db_path: SQLite file path. Must be a file: each connection to
            ":memory:" would see its own empty database.
    """

    def __init__(self, db_path: Union[str, Path]):
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        with connect(self._db_path) as conn:
            init_refresh_token_schema(conn)

    def save(self, record: RefreshTokenRecord) -> None:
        with connect(self._db_path) as conn:
            _insert(conn.cursor(), record)

    def get(self, record_id: str) -> Optional[RefreshTokenRecord]:
        with connect(self._db_path) as conn:
            cursor = conn.cursor()
            cursor.execute(f"SELECT {_COLUMNS} FROM refresh_tokens WHERE id = ?", (record_id,))
            row = cursor.fetchone()
        return _row_to_record(row) if row else None

    def exchange(self, old_id: str, successor: RefreshTokenRecord, at: datetime) -> bool:
        with connect(self._db_path, immediate=True) as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                UPDATE refresh_tokens
                SET used_at = ?, replaced_by = ?
                WHERE id = ?
                  AND used_at IS NULL
                  AND revoked_at IS NULL
                  AND expires_at > ?
                """,
                (to_iso(at), successor.id, old_id, to_iso(at)),
            )
            if cursor.rowcount != 1:
                return False
            _insert(cursor, successor)
            return True

    def revoke(self, record_id: str, at: datetime) -> bool:
        with connect(self._db_path) as conn:
            cursor = conn.cursor()
            cursor.execute(
                "UPDATE refresh_tokens SET revoked_at = ? WHERE id = ? AND revoked_at IS NULL",
                (to_iso(at), record_id),
            )
            return cursor.rowcount == 1

    def revoke_all(self, user_id: str, at: datetime) -> int:
        with connect(self._db_path, immediate=True) as conn:
            cursor = conn.cursor()
            cursor.execute(
                "UPDATE refresh_tokens SET revoked_at = ? WHERE user_id = ? AND revoked_at IS NULL",
                (to_iso(at), user_id),
            )
            return cursor.rowcount

    def find_candidates(self, at: datetime) -> list[RefreshTokenRecord]:
        with connect(self._db_path) as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"SELECT {_COLUMNS} FROM refresh_tokens "
                "WHERE revoked_at IS NULL AND expires_at > ? ORDER BY created_at DESC",
                (to_iso(at),),
            )
            rows = cursor.fetchall()
        return [_row_to_record(r) for r in rows]

    def find_by_user(self, user_id: str) -> list[RefreshTokenRecord]:
        with connect(self._db_path) as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"SELECT {_COLUMNS} FROM refresh_tokens WHERE user_id = ? ORDER BY created_at",
                (user_id,),
            )
            rows = cursor.fetchall()
        return [_row_to_record(r) for r in rows]

    def purge_expired(self, at: datetime) -> int:
        """Delete records that expired before `at` (call periodically)."""
        with connect(self._db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("DELETE FROM refresh_tokens WHERE expires_at < ?", (to_iso(at),))
            deleted = cursor.rowcount
        if deleted:
            logger.info(f"Purged {deleted} expired refresh tokens")
        return deleted
