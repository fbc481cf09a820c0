"""
Persistence contracts for the auth core, plus in-memory implementations.

The identity store (users, roles, departments) is owned by the host
application; the core only needs the UserRepository operations below.
Refresh token records go through RefreshTokenRepository, whose
exchange() must be an atomic compare-and-set.

SqliteRefreshTokenRepository lives in iam.auth.database.
"""
import copy
import logging
import threading
from datetime import datetime
from typing import Optional, Protocol

from .types import RefreshTokenRecord, User

logger = logging.getLogger(__name__)


# =============================================================================
# Protocols
# =============================================================================


class UserRepository(Protocol):
    def find_by_id(self, user_id: str) -> Optional[User]: ...

    def find_by_email(self, email: str) -> Optional[User]: ...

    def update(self, user: User) -> User: ...

    def delete(self, user_id: str) -> None: ...


class RefreshTokenRepository(Protocol):
    def save(self, record: RefreshTokenRecord) -> None: ...

    def get(self, record_id: str) -> Optional[RefreshTokenRecord]: ...

    def exchange(self, old_id: str, successor: RefreshTokenRecord, at: datetime) -> bool:
        """Mark old_id used and persist successor, only if old_id is still active.

        Both writes happen together or not at all. Returns False (and
        writes nothing) when the record was already used, revoked or
        expired at `at`.
        """
        ...

    def revoke(self, record_id: str, at: datetime) -> bool: ...

    def revoke_all(self, user_id: str, at: datetime) -> int: ...

    def find_candidates(self, at: datetime) -> list[RefreshTokenRecord]:
        """Unrevoked, unexpired records (used ones included, for reuse detection)."""
        ...

    def find_by_user(self, user_id: str) -> list[RefreshTokenRecord]: ...


# =============================================================================
# In-Memory Implementations
# =============================================================================


class InMemoryUserRepository:
    """Dict-backed identity store. Hands out copies so no instance is shared."""

    def __init__(self, users: Optional[list[User]] = None):
        self._lock = threading.Lock()
        self._users: dict[str, User] = {}
        for user in users or []:
            self.add(user)

    def add(self, user: User) -> User:
        with self._lock:
            self._users[user.id] = copy.deepcopy(user)
        return user

    def find_by_id(self, user_id: str) -> Optional[User]:
        with self._lock:
            user = self._users.get(user_id)
            return copy.deepcopy(user) if user else None

    def find_by_email(self, email: str) -> Optional[User]:
        if not email:
            return None
        wanted = email.strip().lower()
        with self._lock:
            for user in self._users.values():
                if user.email.lower() == wanted:
                    return copy.deepcopy(user)
        return None

    def update(self, user: User) -> User:
        with self._lock:
            if user.id not in self._users:
                raise KeyError(user.id)
            self._users[user.id] = copy.deepcopy(user)
        return user

    def delete(self, user_id: str) -> None:
        with self._lock:
            self._users.pop(user_id, None)


class InMemoryRefreshTokenRepository:
    """Thread-safe refresh token store. One lock serializes every write."""

    def __init__(self):
        self._lock = threading.Lock()
        self._records: dict[str, RefreshTokenRecord] = {}

    def save(self, record: RefreshTokenRecord) -> None:
        with self._lock:
            self._records[record.id] = copy.copy(record)

    def get(self, record_id: str) -> Optional[RefreshTokenRecord]:
        with self._lock:
            record = self._records.get(record_id)
            return copy.copy(record) if record else None

    def exchange(self, old_id: str, successor: RefreshTokenRecord, at: datetime) -> bool:
        with self._lock:
            old = self._records.get(old_id)
            if old is None or not old.is_valid(at):
                return False
            old.used_at = at
            old.replaced_by = successor.id
            self._records[successor.id] = copy.copy(successor)
            return True

    def revoke(self, record_id: str, at: datetime) -> bool:
        with self._lock:
            record = self._records.get(record_id)
            if record is None or record.revoked_at is not None:
                return False
            record.revoked_at = at
            return True

    def revoke_all(self, user_id: str, at: datetime) -> int:
        count = 0
        with self._lock:
            for record in self._records.values():
                if record.user_id == user_id and record.revoked_at is None:
                    record.revoked_at = at
                    count += 1
        return count

    def find_candidates(self, at: datetime) -> list[RefreshTokenRecord]:
        with self._lock:
            return [
                copy.copy(r) for r in self._records.values()
                if r.revoked_at is None and r.expires_at > at
            ]

    def find_by_user(self, user_id: str) -> list[RefreshTokenRecord]:
        with self._lock:
            records = [copy.copy(r) for r in self._records.values() if r.user_id == user_id]
        return sorted(records, key=lambda r: r.created_at)
