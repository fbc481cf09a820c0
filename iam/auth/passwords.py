"""
Password hashing, verification, policy validation, and login throttling.

Handles:
- Password hashing (salted, via werkzeug)
- Password verification
- Password policy validation against a config source
- Account lockout after repeated failed attempts (cache counters)
"""
import logging
import re
from datetime import timedelta
from typing import Any, Optional, Protocol

from werkzeug.security import generate_password_hash, check_password_hash

from core.cache import Cache
from core.errors import AccountLockedError, InvalidPasswordError
from core.timestamps import now, parse_timestamp, to_iso
from config.redis_client import CacheKeys
from .config import ConfigKeys

logger = logging.getLogger(__name__)

__all__ = [
    "hash_password",
    "verify_password",
    "ConfigSource",
    "StaticConfigSource",
    "settings_config_source",
    "PasswordPolicy",
    "LoginThrottle",
]

SPECIAL_CHARACTERS = r"[!@#$%^&*(),.?\":{}|<>\[\]\\/'`~_+=;-]"

DEFAULT_MIN_LENGTH = 8
DEFAULT_MAX_LENGTH = 30


def hash_password(password: str, method: Optional[str] = None) -> str:
    """Hash a password with a random salt.

    Args:
        password: Plain text password
        method: werkzeug hash method (defaults to werkzeug's own default)

    Returns:
        Salted hash string (method$salt$hash)
    """
    if method:
        return generate_password_hash(password, method=method)
    return generate_password_hash(password)


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    """Verify a password against its hash.

    Returns:
        True if password matches, False otherwise (including no stored hash)
    """
    if not password_hash:
        return False
    return check_password_hash(password_hash, password)


# =============================================================================
# Config Source
# =============================================================================


class ConfigSource(Protocol):
    """Key/value lookup for runtime-tunable settings."""

    def get(self, key: str, default: Any = None) -> Any: ...


class StaticConfigSource:
    """ConfigSource backed by a plain dict (tests, embedded use)."""

    def __init__(self, values: Optional[dict] = None):
        self._values = dict(values or {})

    def get(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)


def settings_config_source(settings=None) -> StaticConfigSource:
    """Expose the PASSWORD_* settings under the config-source keys."""
    if settings is None:
        from config.settings import get_settings
        settings = get_settings()
    policy = settings.password_policy
    return StaticConfigSource({
        ConfigKeys.PASSWORD_MIN_LENGTH: policy.min_length,
        ConfigKeys.PASSWORD_MAX_LENGTH: policy.max_length,
        ConfigKeys.PASSWORD_MUST_HAVE_UPPERCASE: policy.require_uppercase,
        ConfigKeys.PASSWORD_MUST_HAVE_LOWERCASE: policy.require_lowercase,
        ConfigKeys.PASSWORD_MUST_HAVE_DIGIT: policy.require_digit,
        ConfigKeys.PASSWORD_MUST_HAVE_SPECIAL_CHAR: policy.require_special,
    })


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


# =============================================================================
# Password Policy
# =============================================================================


class PasswordPolicy:
    """Validate candidate passwords against configured complexity rules.

    Thresholds are read on every call so config changes apply without a
    restart. Absent keys use the defaults (8-30 characters, every
    character class required).
    """

    def __init__(self, config: ConfigSource):
        self._config = config

    def _int(self, key: str, default: int) -> int:
        value = self._config.get(key)
        if value is None or value == "":
            return default
        try:
            return int(value)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring non-numeric password policy value {key}={value!r}")
            return default

    def _flag(self, key: str) -> bool:
        value = self._config.get(key)
        if value is None:
            return True
        return _as_bool(value)

    def validate(self, candidate: str) -> None:
        """Raise InvalidPasswordError naming the first violated rule.

        Rules are checked in order: minimum length, maximum length,
        uppercase, lowercase, digit, special character.
        """
        min_length = self._int(ConfigKeys.PASSWORD_MIN_LENGTH, DEFAULT_MIN_LENGTH)
        max_length = self._int(ConfigKeys.PASSWORD_MAX_LENGTH, DEFAULT_MAX_LENGTH)
        candidate = candidate or ""

        if len(candidate) < min_length:
            raise InvalidPasswordError(f"Password must be at least {min_length} characters")

        if len(candidate) > max_length:
            raise InvalidPasswordError(f"Password must be at most {max_length} characters")

        if self._flag(ConfigKeys.PASSWORD_MUST_HAVE_UPPERCASE) and not re.search(r"[A-Z]", candidate):
            raise InvalidPasswordError("Password must contain at least one uppercase letter")

        if self._flag(ConfigKeys.PASSWORD_MUST_HAVE_LOWERCASE) and not re.search(r"[a-z]", candidate):
            raise InvalidPasswordError("Password must contain at least one lowercase letter")

        if self._flag(ConfigKeys.PASSWORD_MUST_HAVE_DIGIT) and not re.search(r"\d", candidate):
            raise InvalidPasswordError("Password must contain at least one digit")

        if self._flag(ConfigKeys.PASSWORD_MUST_HAVE_SPECIAL_CHAR) and not re.search(SPECIAL_CHARACTERS, candidate):
            raise InvalidPasswordError("Password must contain at least one special character")

    def is_valid(self, candidate: str) -> tuple[bool, str]:
        """Non-raising variant returning (is_valid, error_message)."""
        try:
            self.validate(candidate)
        except InvalidPasswordError as e:
            return False, e.reason
        return True, ""


# =============================================================================
# Account Lockout
# =============================================================================


class LoginThrottle:
    """Lock an account for a while after too many failed password checks.

    Counters live in the shared cache so every worker sees the same count.
    The failure window equals the lockout duration.
    """

    def __init__(self, cache: Cache, threshold: int = 5, duration_minutes: int = 15):
        self._cache = cache
        self._threshold = threshold
        self._duration = timedelta(minutes=duration_minutes)

    @property
    def _ttl(self) -> int:
        return int(self._duration.total_seconds())

    def check(self, user_id: str) -> None:
        """Raise AccountLockedError while the account is locked."""
        locked_until = parse_timestamp(self._cache.get(CacheKeys.login_locked(user_id)))
        if locked_until and locked_until > now():
            raise AccountLockedError(locked_until=locked_until)

    def record_failure(self, user_id: str) -> tuple[int, bool]:
        """Count a failed attempt.

        Returns:
            (attempt_count, is_now_locked) tuple
        """
        attempts = self._cache.incr(CacheKeys.login_failures(user_id), ttl=self._ttl)
        if attempts < self._threshold:
            return attempts, False

        locked_until = now() + self._duration
        self._cache.set(CacheKeys.login_locked(user_id), to_iso(locked_until), ttl=self._ttl)
        self._cache.delete(CacheKeys.login_failures(user_id))
        logger.warning(f"Account locked after {attempts} failed attempts: user={user_id}",
                       extra={"user_id": user_id})
        return attempts, True

    def clear(self, user_id: str) -> None:
        """Clear failed attempts and lockout for a user."""
        self._cache.delete(CacheKeys.login_failures(user_id))
        self._cache.delete(CacheKeys.login_locked(user_id))
