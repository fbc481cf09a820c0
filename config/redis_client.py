"""
Redis client configuration for MFA counters and one-time codes.

Usage:
    from config.redis_client import get_redis, redis_available

    if redis_available():
        redis = get_redis()
        redis.set(CacheKeys.email_otp("42"), "123456", ex=300)
"""

import logging

from config.settings import get_settings

logger = logging.getLogger(__name__)

# Global Redis client instance
_redis_client = None
_redis_available = None


def get_redis():
    """
    Get the Redis client instance.

    Returns:
        redis.Redis: Connected Redis client

    Raises:
        ConnectionError: If Redis is not available
    """
    global _redis_client

    if _redis_client is None:
        import redis
        _redis_client = redis.from_url(get_settings().redis.redis_url, decode_responses=True)

    return _redis_client


def redis_available() -> bool:
    """
    Check if Redis is available and responding.

    Returns:
        bool: True if Redis is reachable, False otherwise
    """
    global _redis_available

    # Cache the result to avoid repeated connection attempts
    if _redis_available is not None:
        return _redis_available

    url = get_settings().redis.redis_url
    try:
        client = get_redis()
        client.ping()
        _redis_available = True
        logger.info(f"Redis connected: {url}")
    except Exception as e:
        _redis_available = False
        logger.warning(f"Redis not available ({url}): {e}")

    return _redis_available


def reset_redis_connection():
    """Reset the Redis connection (useful for testing or reconnection)."""
    global _redis_client, _redis_available
    _redis_client = None
    _redis_available = None


class CacheKeys:
    """Cache key templates used by the MFA and login flows."""

    EMAIL_OTP = "mfa:email:{user_id}"
    EMAIL_OTP_ATTEMPTS = "mfa:email:attempts:{user_id}"

    TOTP_ATTEMPTS = "mfa:totp:attempts:{user_id}"
    TOTP_USED_CODE = "mfa:totp:used:{user_id}:{code}"

    LOGIN_FAILURES = "auth:login:failures:{user_id}"
    LOGIN_LOCKED = "auth:login:locked:{user_id}"

    PASSWORD_RESET = "auth:password-reset:{digest}"

    @classmethod
    def email_otp(cls, user_id: str) -> str:
        return cls.EMAIL_OTP.format(user_id=user_id)

    @classmethod
    def email_otp_attempts(cls, user_id: str) -> str:
        return cls.EMAIL_OTP_ATTEMPTS.format(user_id=user_id)

    @classmethod
    def totp_attempts(cls, user_id: str) -> str:
        return cls.TOTP_ATTEMPTS.format(user_id=user_id)

    @classmethod
    def totp_used_code(cls, user_id: str, code: str) -> str:
        return cls.TOTP_USED_CODE.format(user_id=user_id, code=code)

    @classmethod
    def login_failures(cls, user_id: str) -> str:
        return cls.LOGIN_FAILURES.format(user_id=user_id)

    @classmethod
    def login_locked(cls, user_id: str) -> str:
        return cls.LOGIN_LOCKED.format(user_id=user_id)

    @classmethod
    def password_reset(cls, digest: str) -> str:
        return cls.PASSWORD_RESET.format(digest=digest)
