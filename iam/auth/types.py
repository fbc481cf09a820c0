"""
Auth domain types - no dependencies on other auth modules.

User is deliberately mutable: use cases receive a fresh instance from the
identity repository, update timestamps and MFA fields in place, then hand
it back through UserRepository.update(). Never keep one across requests.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class UserStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    ARCHIVED = "archived"


class MfaType(str, Enum):
    TOTP = "totp"
    EMAIL = "email"


class TokenState(str, Enum):
    ACTIVE = "active"
    USED = "used"
    REVOKED = "revoked"
    EXPIRED = "expired"


@dataclass(frozen=True)
class Permission:
    id: str
    key: str
    description: str = ""


@dataclass(frozen=True)
class PermissionGrant:
    """A permission assigned to a role or user, optionally narrowed to one scope.

    scope_id None means the grant applies to every scope. deny is only
    honoured on direct user grants.
    """
    permission: Permission
    scope_id: Optional[str] = None
    deny: bool = False

    @property
    def key(self) -> str:
        return self.permission.key


@dataclass(frozen=True)
class Role:
    id: str
    label: str
    permissions: tuple[PermissionGrant, ...] = ()


@dataclass
class User:
    """Snapshot of an account as loaded from the identity repository."""
    id: str
    email: str
    status: UserStatus = UserStatus.ACTIVE
    roles: list[Role] = field(default_factory=list)
    permissions: list[PermissionGrant] = field(default_factory=list)
    department_id: Optional[str] = None
    password_hash: Optional[str] = field(default=None, repr=False)
    mfa_enabled: bool = False
    mfa_type: Optional[MfaType] = None
    mfa_secret: Optional[str] = field(default=None, repr=False)  # Fernet token
    mfa_recovery_codes: list[str] = field(default_factory=list, repr=False)  # sha256 hex
    password_changed_at: Optional[datetime] = None
    last_login: Optional[datetime] = None
    last_activity: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE


@dataclass
class RefreshTokenRecord:
    """Persisted refresh token. Only the hash of the secret is ever stored."""
    id: str
    user_id: str
    token_hash: str = field(repr=False)
    expires_at: datetime
    created_at: datetime
    used_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    replaced_by: Optional[str] = None  # id of the successor record
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    def state(self, now: datetime) -> TokenState:
        if self.revoked_at is not None:
            return TokenState.REVOKED
        if self.used_at is not None:
            return TokenState.USED
        if self.expires_at <= now:
            return TokenState.EXPIRED
        return TokenState.ACTIVE

    def is_valid(self, now: datetime) -> bool:
        return self.state(now) == TokenState.ACTIVE


@dataclass(frozen=True)
class TokenPair:
    """Result of a completed login or refresh."""
    access_token: str
    refresh_token: str
    user: User


@dataclass(frozen=True)
class MfaChallenge:
    """Result of a password login when a second factor is still required."""
    mfa_token: str
    mfa_type: Optional[MfaType]
    user_id: str
