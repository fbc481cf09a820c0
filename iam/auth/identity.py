"""
Authentication providers.

Handles:
- Local credentials (password hash, lockout, self-issued access tokens,
  password reset tokens)
- External identity provider tokens (OIDC-style signed JWTs)
- CompositeAuthProvider: one entry point that accepts either kind of
  token by trying providers in order

Every provider exposes the same five operations. A provider that cannot
perform one raises NotSupportedError rather than silently succeeding.
"""
import hashlib
import logging
import secrets
from typing import Optional, Sequence

import jwt

from core.cache import Cache
from core.errors import (
    AccountLockedError,
    AccountSuspendedError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotSupportedError,
)
from core.timestamps import now
from config.redis_client import CacheKeys
from .passwords import LoginThrottle, PasswordPolicy, hash_password, verify_password
from .repositories import UserRepository
from .tokens import TokenIssuer
from .types import User

logger = logging.getLogger(__name__)


def _ensure_active(user: User) -> User:
    if not user.is_active:
        logger.info(f"Rejected {user.status.value} account: user={user.id}", extra={"user_id": user.id})
        raise AccountSuspendedError()
    return user


class AuthProvider:
    """Base provider. Subclasses override the operations they support."""

    name = "base"

    def authenticate(self, identifier: str, secret: str) -> User:
        raise NotSupportedError(f"{self.name} provider does not support password login")

    def authenticate_with_provider(self, provider_name: str, token: str) -> User:
        raise NotSupportedError(f"{self.name} provider does not support federated login")

    def request_password_reset(self, identifier: str) -> None:
        raise NotSupportedError(f"{self.name} provider does not support password reset")

    def reset_password(self, reset_token: str, new_secret: str) -> User:
        raise NotSupportedError(f"{self.name} provider does not support password reset")

    def verify_token(self, token: str) -> User:
        raise NotSupportedError(f"{self.name} provider does not verify tokens")


# =============================================================================
# Local Provider
# =============================================================================


class LocalAuthProvider(AuthProvider):
    """Email + password accounts stored in the identity repository.

    Args:
        users: Identity repository
        tokens: TokenIssuer used to verify self-issued access tokens
        policy: PasswordPolicy applied on password reset
        cache: Cache holding password reset tokens
        email: EmailSender used for password reset mails
        throttle: Optional LoginThrottle (account lockout)
        reset_ttl_minutes: Lifetime of a password reset token
        password_hash_method: werkzeug method for new password hashes
            (None uses werkzeug's default)
    """

    name = "local"

    def __init__(
        self,
        users: UserRepository,
        tokens: TokenIssuer,
        policy: PasswordPolicy,
        cache: Cache,
        email=None,
        throttle: Optional[LoginThrottle] = None,
        reset_ttl_minutes: int = 60,
        password_hash_method: Optional[str] = None,
    ):
        self._users = users
        self._tokens = tokens
        self._policy = policy
        self._cache = cache
        self._email = email
        self._throttle = throttle
        self._reset_ttl_minutes = reset_ttl_minutes
        self._hash_method = password_hash_method

    def authenticate(self, identifier: str, secret: str) -> User:
        """Verify email and password.

        Raises:
            InvalidCredentialsError: Unknown email or wrong password
            AccountLockedError: Too many recent failures
            AccountSuspendedError: Account is suspended or archived
        """
        user = self._users.find_by_email(identifier)
        if user is None:
            logger.info("Login failed: unknown email")
            raise InvalidCredentialsError()

        if self._throttle:
            self._throttle.check(user.id)

        if not verify_password(secret or "", user.password_hash):
            if self._throttle:
                attempts, locked = self._throttle.record_failure(user.id)
                if locked:
                    raise AccountLockedError()
            logger.info(f"Login failed: bad password for user={user.id}", extra={"user_id": user.id})
            raise InvalidCredentialsError()

        if self._throttle:
            self._throttle.clear(user.id)
        return _ensure_active(user)

    def verify_token(self, token: str) -> User:
        payload = self._tokens.decode_access_token(token)
        user = self._users.find_by_id(payload["sub"])
        if user is None:
            raise InvalidTokenError()
        return _ensure_active(user)

    # =========================================================================
    # Password Reset
    # =========================================================================

    @staticmethod
    def _reset_key(reset_token: str) -> str:
        # Cache keys hold only the sha256 of the token
        return CacheKeys.password_reset(hashlib.sha256(reset_token.encode()).hexdigest())

    def request_password_reset(self, identifier: str) -> None:
        """Email a one-time reset token. Unknown or inactive accounts are ignored silently."""
        user = self._users.find_by_email(identifier)
        if user is None or not user.is_active:
            logger.info("Password reset requested for unknown or inactive account")
            return

        reset_token = secrets.token_urlsafe(32)
        self._cache.set(self._reset_key(reset_token), user.id, ttl=self._reset_ttl_minutes * 60)
        if self._email is not None:
            self._email.send_password_reset(user.email, reset_token, self._reset_ttl_minutes)
        logger.info(f"Password reset token issued for user={user.id}", extra={"user_id": user.id})

    def reset_password(self, reset_token: str, new_secret: str) -> User:
        """Consume a reset token and set a new password.

        The policy is checked before the token is consumed so a rejected
        password can be retried with the same token. The token is then
        claimed with an atomic pop, so concurrent requests carrying the
        same token cannot both change the password.

        Raises:
            InvalidTokenError: Unknown, expired or already used reset token
            InvalidPasswordError: New password violates the policy
        """
        if not reset_token:
            raise InvalidTokenError()
        key = self._reset_key(reset_token)
        if not self._cache.get(key):
            raise InvalidTokenError()

        self._policy.validate(new_secret)

        user_id = self._cache.pop(key)
        if not user_id:
            raise InvalidTokenError()

        user = self._users.find_by_id(user_id)
        if user is None:
            raise InvalidTokenError()

        user.password_hash = hash_password(new_secret, self._hash_method)
        user.password_changed_at = now()
        self._users.update(user)
        if self._throttle:
            self._throttle.clear(user.id)
        logger.info(f"Password reset completed for user={user.id}", extra={"user_id": user.id})
        return user


# =============================================================================
# External Identity Provider
# =============================================================================


class OidcAuthProvider(AuthProvider):
    """Accept signed tokens from an external identity provider.

    Tokens must be signed with `key` using `algorithm`, carry the expected
    issuer (and audience, when configured) and a subject naming a user in
    the identity repository.
    """

    def __init__(
        self,
        users: UserRepository,
        issuer: str,
        key: str,
        algorithm: str = "HS256",
        audience: Optional[str] = None,
        provider_name: str = "oidc",
    ):
        if not key:
            raise ValueError("External identity provider key must not be empty")
        self._users = users
        self._issuer = issuer
        self._key = key
        self._algorithm = algorithm
        self._audience = audience
        self.name = provider_name

    @classmethod
    def from_settings(cls, settings, users: UserRepository) -> "OidcAuthProvider":
        oidc = settings.oidc
        return cls(
            users=users,
            issuer=oidc.issuer,
            key=oidc.key.get_secret_value(),
            algorithm=oidc.algorithm,
            audience=oidc.audience,
            provider_name=oidc.provider_name,
        )

    def verify_token(self, token: str) -> User:
        if not token:
            raise InvalidTokenError()
        try:
            payload = jwt.decode(
                token,
                self._key,
                algorithms=[self._algorithm],
                issuer=self._issuer,
                audience=self._audience,
                options={
                    "require": ["sub", "exp", "iss"],
                    "verify_aud": self._audience is not None,
                },
            )
        except jwt.InvalidTokenError as e:
            logger.debug(f"{self.name} token rejected: {e}")
            raise InvalidTokenError()

        user = self._users.find_by_id(str(payload["sub"]))
        if user is None and payload.get("email"):
            user = self._users.find_by_email(payload["email"])
        if user is None:
            logger.info(f"{self.name} token subject has no local account")
            raise InvalidTokenError()
        return _ensure_active(user)

    def authenticate_with_provider(self, provider_name: str, token: str) -> User:
        if provider_name != self.name:
            raise NotSupportedError(f"Unknown identity provider: {provider_name}")
        return self.verify_token(token)


# =============================================================================
# Composite
# =============================================================================


class CompositeAuthProvider(AuthProvider):
    """Ordered chain of providers.

    authenticate and password reset go to the first (primary) provider
    only. verify_token and authenticate_with_provider try each provider in
    order and return the first success; individual failures are absorbed
    and only reported once every provider has failed.
    """

    name = "composite"

    def __init__(self, providers: Sequence[AuthProvider]):
        if not providers:
            raise ValueError("CompositeAuthProvider needs at least one provider")
        self._providers = list(providers)

    @property
    def primary(self) -> AuthProvider:
        return self._providers[0]

    @property
    def providers(self) -> list[AuthProvider]:
        return list(self._providers)

    def authenticate(self, identifier: str, secret: str) -> User:
        return self.primary.authenticate(identifier, secret)

    def request_password_reset(self, identifier: str) -> None:
        return self.primary.request_password_reset(identifier)

    def reset_password(self, reset_token: str, new_secret: str) -> User:
        return self.primary.reset_password(reset_token, new_secret)

    def verify_token(self, token: str) -> User:
        for provider in self._providers:
            try:
                return provider.verify_token(token)
            except Exception as e:
                logger.debug(f"{provider.name} could not verify token: {type(e).__name__}")
        raise InvalidTokenError()

    def authenticate_with_provider(self, provider_name: str, token: str) -> User:
        for provider in self._providers:
            try:
                return provider.authenticate_with_provider(provider_name, token)
            except Exception as e:
                logger.debug(f"{provider.name} could not authenticate via {provider_name}: {type(e).__name__}")
        raise InvalidCredentialsError()
