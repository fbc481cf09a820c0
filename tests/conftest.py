"""Shared pytest fixtures for the identity core tests."""
import os
import sys
from unittest.mock import MagicMock

import pytest

# Add project root to path
_PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _PROJECT_ROOT)

# ---------------------------------------------------------------------------
# Deterministic test environment, set BEFORE any iam/config module imports.
# TOKEN_HASH_METHOD keeps refresh token hashing fast; scrypt would make
# every find_valid() scan take seconds.
# ---------------------------------------------------------------------------
os.environ.setdefault('TESTING', 'true')
os.environ.setdefault('JWT_SECRET', 'test-jwt-secret-for-pytest-32chars!')
os.environ.setdefault('TOKEN_HASH_METHOD', 'pbkdf2:sha256:1000')
os.environ.setdefault('MFA_ENCRYPTION_KEY', 'MDEyMzQ1Njc4OWFiY2RlZjAxMjM0NTY3ODlhYmNkZWY=')
os.environ.setdefault('USE_REDIS_CACHE', 'false')

FAST_HASH = 'pbkdf2:sha256:1000'
TEST_PASSWORD = 'Str0ng!Passw0rd'


class FakeClock:
    """Monotonic clock for InMemoryCache that tests advance by hand."""

    def __init__(self, start: float = 1000.0):
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


# =============================================================================
# Settings / Singletons
# =============================================================================

@pytest.fixture(autouse=True)
def _reset_singletons():
    """Reset settings and cache singletons between tests for isolation."""
    from config.settings import get_settings
    from core.cache import reset_cache
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
    reset_cache()
    from iam.services import reset_session_service
    reset_session_service()


@pytest.fixture
def settings():
    from config.settings import get_settings
    return get_settings()


# =============================================================================
# Domain Factories
# =============================================================================

@pytest.fixture
def grant():
    """Factory: grant('read-users', scope_id='dept-1', deny=False)."""
    from iam.auth.types import Permission, PermissionGrant

    def _grant(key, scope_id=None, deny=False):
        return PermissionGrant(Permission(id=f"perm-{key}", key=key), scope_id=scope_id, deny=deny)
    return _grant


@pytest.fixture
def role(grant):
    """Factory: role('Editors', grant(...), ...)."""
    from iam.auth.types import Role

    def _role(label, *grants):
        return Role(id=f"role-{label.lower()}", label=label, permissions=tuple(grants))
    return _role


@pytest.fixture
def users():
    from iam.auth.repositories import InMemoryUserRepository
    return InMemoryUserRepository()


@pytest.fixture
def make_user(users):
    """Factory creating a user (password TEST_PASSWORD) and storing it in `users`."""
    from iam.auth.passwords import hash_password
    from iam.auth.types import User

    def _make_user(user_id="u1", email=None, password=TEST_PASSWORD, **fields):
        user = User(
            id=user_id,
            email=email or f"{user_id}@example.com",
            password_hash=hash_password(password, FAST_HASH) if password else None,
            **fields,
        )
        users.add(user)
        return user
    return _make_user


# =============================================================================
# Collaborators
# =============================================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    from core.cache import InMemoryCache
    return InMemoryCache(clock=clock)


@pytest.fixture
def audit():
    from core.event_logger import AuditLogger
    return AuditLogger()


@pytest.fixture
def email_sender():
    sender = MagicMock()
    sender.send_otp_code.return_value = True
    sender.send_password_reset.return_value = True
    return sender


@pytest.fixture
def refresh_repo():
    from iam.auth.repositories import InMemoryRefreshTokenRepository
    return InMemoryRefreshTokenRepository()


@pytest.fixture
def sqlite_refresh_repo(tmp_path):
    from iam.auth.database import SqliteRefreshTokenRepository
    return SqliteRefreshTokenRepository(tmp_path / "auth.db")


@pytest.fixture
def ledger(refresh_repo, audit):
    from iam.auth.ledger import RefreshTokenLedger
    return RefreshTokenLedger(refresh_repo, hash_method=FAST_HASH, audit=audit)


@pytest.fixture
def tokens(ledger):
    from iam.auth.tokens import TokenIssuer
    return TokenIssuer("unit-test-signing-secret", issuer="iam-test", ledger=ledger)


@pytest.fixture
def cipher():
    from cryptography.fernet import Fernet
    from iam.mfa import SecretCipher
    return SecretCipher(Fernet.generate_key())


@pytest.fixture
def totp_provider(cache, cipher):
    from iam.mfa import TOTPProvider
    return TOTPProvider(cache, cipher, issuer_name="IAM Test")


@pytest.fixture
def email_otp_provider(cache, email_sender):
    from iam.mfa import EmailOTPProvider
    return EmailOTPProvider(cache, email_sender)


@pytest.fixture
def local_provider(users, tokens, cache, email_sender):
    from iam.auth.identity import LocalAuthProvider
    from iam.auth.passwords import LoginThrottle, PasswordPolicy, StaticConfigSource
    return LocalAuthProvider(
        users=users,
        tokens=tokens,
        policy=PasswordPolicy(StaticConfigSource()),
        cache=cache,
        email=email_sender,
        throttle=LoginThrottle(cache, threshold=3, duration_minutes=15),
        password_hash_method=FAST_HASH,
    )


@pytest.fixture
def service(users, local_provider, tokens, ledger, totp_provider, email_otp_provider, audit):
    from iam.auth.identity import CompositeAuthProvider
    from iam.auth.permissions import PermissionEngine
    from iam.auth.types import MfaType
    from iam.sessions import SessionService
    return SessionService(
        users=users,
        auth_provider=CompositeAuthProvider([local_provider]),
        engine=PermissionEngine(),
        tokens=tokens,
        ledger=ledger,
        mfa_providers={MfaType.TOTP: totp_provider, MfaType.EMAIL: email_otp_provider},
        audit=audit,
    )
