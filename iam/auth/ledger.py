"""
Refresh token ledger: issue, validate, rotate and revoke refresh tokens.

Refresh tokens are opaque random strings. Only a salted werkzeug hash is
persisted, so lookups scan the unexpired candidates and verify each hash.

Record states:
    active  -> used      exactly once, by rotate()
    active  -> revoked   logout, password reset, MFA change, security action
    used    -> revoked   revoke_all()
    active  -> expired   implicitly, by time

A record never becomes valid again once it leaves the active state.
"""
import logging
import secrets
import uuid
from datetime import timedelta
from typing import Callable, Optional

from werkzeug.security import check_password_hash, generate_password_hash

from core.errors import InvalidRefreshTokenError
from core.event_logger import AuditSink
from core.timestamps import now as utc_now
from .config import AuditEvents
from .repositories import RefreshTokenRepository
from .types import RefreshTokenRecord, TokenState, User

logger = logging.getLogger(__name__)

# 48 random bytes -> 64 url-safe characters
TOKEN_BYTES = 48


class RefreshTokenLedger:
    """Session-security state machine for refresh tokens.

    Args:
        repository: Persistence for RefreshTokenRecord
        ttl_days: Lifetime of an issued token
        hash_method: werkzeug hash method used for token hashes
        audit: Audit sink receiving reuse detections
        revoke_all_on_reuse: Revoke every session of the owner when a
            rotated token is presented again
        clock: Returns the current UTC datetime
    """

    def __init__(
        self,
        repository: RefreshTokenRepository,
        ttl_days: int = 7,
        hash_method: str = "scrypt",
        audit: Optional[AuditSink] = None,
        revoke_all_on_reuse: bool = True,
        clock: Callable = utc_now,
    ):
        self._repo = repository
        self._ttl = timedelta(days=ttl_days)
        self._hash_method = hash_method
        self._audit = audit
        self._revoke_all_on_reuse = revoke_all_on_reuse
        self._clock = clock

    def _new_record(
        self,
        user_id: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> tuple[str, RefreshTokenRecord]:
        plaintext = secrets.token_urlsafe(TOKEN_BYTES)
        issued_at = self._clock()
        record = RefreshTokenRecord(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_hash=generate_password_hash(plaintext, method=self._hash_method),
            created_at=issued_at,
            expires_at=issued_at + self._ttl,
            ip_address=ip_address,
            user_agent=user_agent[:500] if user_agent else None,
        )
        return plaintext, record

    def issue(
        self,
        user: User,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        """Create a new active record and return its plaintext token.

        The plaintext is returned exactly once and cannot be recovered.
        """
        plaintext, record = self._new_record(user.id, ip_address, user_agent)
        self._repo.save(record)
        logger.debug(f"Issued refresh token {record.id} for user={user.id}",
                     extra={"user_id": user.id})
        return plaintext

    def find_valid(self, token: str) -> Optional[RefreshTokenRecord]:
        """Return the active record matching `token`, or None.

        Unknown, used, revoked and expired tokens all return None. A match
        on a used record means a rotated token was replayed: it is logged
        and audited as possible theft before returning None.
        """
        if not token:
            return None

        at = self._clock()
        for record in self._repo.find_candidates(at):
            if not check_password_hash(record.token_hash, token):
                continue
            state = record.state(at)
            if state == TokenState.ACTIVE:
                return record
            if state == TokenState.USED:
                self._handle_reuse(record)
            return None
        return None

    def _handle_reuse(self, record: RefreshTokenRecord) -> None:
        logger.warning(
            f"Refresh token reuse detected: token={record.id} user={record.user_id} "
            f"replaced_by={record.replaced_by} - possible token theft",
            extra={"user_id": record.user_id, "event": AuditEvents.REFRESH_REUSE},
        )
        revoked = 0
        if self._revoke_all_on_reuse:
            revoked = self.revoke_all(record.user_id, reason="refresh token reuse")
        if self._audit:
            self._audit.log(
                AuditEvents.REFRESH_REUSE,
                user_id=record.user_id,
                status="warning",
                details=f"token_id={record.id} sessions_revoked={revoked}",
                ip_address=record.ip_address,
            )

    def rotate(
        self,
        old: RefreshTokenRecord,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> tuple[str, RefreshTokenRecord]:
        """Exchange an active record for a new one belonging to the same user.

        The old record is marked used (replaced_by = new record id) and the
        successor persisted in one atomic repository call. If another
        request already used or revoked the old record, nothing is issued.

        Args:
            old: Record returned by find_valid()
            ip_address: Requester address (defaults to the old record's)
            user_agent: Requester user agent (defaults to the old record's)

        Raises:
            InvalidRefreshTokenError: The old record is no longer active
        """
        plaintext, successor = self._new_record(
            old.user_id,
            ip_address or old.ip_address,
            user_agent or old.user_agent,
        )
        if not self._repo.exchange(old.id, successor, self._clock()):
            logger.warning(
                f"Refresh token {old.id} lost rotation race or is no longer active",
                extra={"user_id": old.user_id},
            )
            raise InvalidRefreshTokenError()
        logger.debug(f"Rotated refresh token {old.id} -> {successor.id}",
                     extra={"user_id": old.user_id})
        return plaintext, successor

    def revoke(self, record_id: str, reason: Optional[str] = None) -> bool:
        revoked = self._repo.revoke(record_id, self._clock())
        if revoked:
            logger.info(f"Revoked refresh token {record_id}" + (f": {reason}" if reason else ""))
        return revoked

    def revoke_all(self, user_id: str, reason: Optional[str] = None) -> int:
        """Revoke every unrevoked record for a user.

        Returns:
            Number of records revoked
        """
        count = self._repo.revoke_all(user_id, self._clock())
        logger.info(
            f"Revoked {count} refresh tokens for user={user_id}" + (f": {reason}" if reason else ""),
            extra={"user_id": user_id},
        )
        return count

    def sessions(self, user_id: str) -> list[RefreshTokenRecord]:
        """Records still valid for a user (active sessions)."""
        at = self._clock()
        return [r for r in self._repo.find_by_user(user_id) if r.is_valid(at)]
