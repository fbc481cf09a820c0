"""
Refresh token schema initialization.

init_refresh_token_schema() should ONLY be called by:
- SqliteRefreshTokenRepository on construction
- Test fixtures

The identity tables (users, roles, departments) belong to the host
application and are not created here.
"""
import logging

from core.db import table_exists

logger = logging.getLogger(__name__)

REFRESH_TOKENS_TABLE = "refresh_tokens"


def init_refresh_token_schema(conn) -> None:
    """Create the refresh_tokens table and its indexes if missing.

    Timestamps are stored as fixed-width UTC ISO 8601 text (core.timestamps.to_iso)
    so they compare correctly as strings.
    """
    if table_exists(conn, REFRESH_TOKENS_TABLE):
        return

    cursor = conn.cursor()
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS refresh_tokens (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            token_hash TEXT NOT NULL,
            created_at TEXT NOT NULL,
            expires_at TEXT NOT NULL,
            used_at TEXT,
            revoked_at TEXT,
            replaced_by TEXT,
            ip_address TEXT,
            user_agent TEXT
        )
    """)

    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_refresh_tokens_user ON refresh_tokens(user_id)"
    )
    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_refresh_tokens_active "
        "ON refresh_tokens(revoked_at, expires_at)"
    )

    logger.info("Created refresh_tokens table")
