"""
Central configuration using Pydantic BaseSettings.

Validates all env vars at startup (fail-fast). JWT_SECRET is required in
production but gets a safe default in TESTING mode.

Usage:
    from config.settings import get_settings

    settings = get_settings()
    print(settings.auth.access_token_minutes)

Lazy initialization: get_settings() creates the singleton on first call.
Tests can reset via get_settings.cache_clear().
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import SecretStr, model_validator
from pydantic_settings import BaseSettings


def _is_testing() -> bool:
    """Check if running in test mode."""
    return (
        os.getenv("TESTING", "").lower() in ("true", "1")
        or os.getenv("FLASK_ENV", "") == "testing"
    )


# =============================================================================
# Nested Settings Groups
# =============================================================================


class AuthSettings(BaseSettings):
    """JWT, refresh token and login throttling configuration."""

    model_config = {"env_prefix": "", "extra": "ignore"}

    jwt_secret: SecretStr = SecretStr("")
    jwt_algorithm: str = "HS256"
    jwt_issuer: str = "iam-core"
    access_token_minutes: int = 15
    refresh_token_days: int = 7

    # Short-lived token handed out between password and second factor
    mfa_token_expiration_minutes: int = 5

    # werkzeug hash method used for refresh token and reset token hashes
    token_hash_method: str = "scrypt"

    # Presenting an already-rotated refresh token revokes the whole family
    refresh_reuse_revokes_all: bool = True

    # Account lockout
    lockout_threshold: int = 5
    lockout_duration_minutes: int = 15

    password_reset_ttl_minutes: int = 60


class PasswordPolicySettings(BaseSettings):
    """Password complexity rules."""

    model_config = {"env_prefix": "PASSWORD_", "extra": "ignore"}

    min_length: int = 8
    max_length: int = 30
    require_uppercase: bool = True
    require_lowercase: bool = True
    require_digit: bool = True
    require_special: bool = True


class MfaSettings(BaseSettings):
    """TOTP and email OTP tunables."""

    model_config = {"env_prefix": "MFA_", "extra": "ignore"}

    encryption_key: SecretStr = SecretStr("")
    issuer_name: str = "IAM Core"

    totp_valid_window: int = 1
    totp_max_attempts: int = 5
    totp_attempt_window_seconds: int = 300

    email_otp_length: int = 6
    email_otp_ttl_seconds: int = 300
    email_otp_max_attempts: int = 5

    recovery_code_count: int = 8


class OidcSettings(BaseSettings):
    """External identity provider token verification."""

    model_config = {"env_prefix": "OIDC_", "extra": "ignore"}

    enabled: bool = False
    provider_name: str = "oidc"
    issuer: str = ""
    key: SecretStr = SecretStr("")  # shared secret or PEM public key
    algorithm: str = "HS256"
    audience: Optional[str] = None


class RedisSettings(BaseSettings):
    """Redis connection configuration."""

    model_config = {"env_prefix": "", "extra": "ignore"}

    redis_url: str = "redis://localhost:6379/0"
    use_redis_cache: bool = False


class DatabaseSettings(BaseSettings):
    """Database configuration."""

    model_config = {"env_prefix": "", "extra": "ignore"}

    auth_db_path: Optional[str] = None

    @property
    def refresh_db_path(self) -> Path:
        """SQLite path for the refresh token ledger."""
        if self.auth_db_path:
            return Path(self.auth_db_path)
        data_dir = Path(__file__).parent.parent / "data"
        data_dir.mkdir(exist_ok=True)
        return data_dir / "auth.db"


class EmailSettings(BaseSettings):
    """Outgoing mail (SMTP). An empty host means dev mode: mails are logged."""

    model_config = {"env_prefix": "SMTP_", "extra": "ignore"}

    host: str = ""
    port: int = 587
    user: str = ""
    password: SecretStr = SecretStr("")
    use_tls: bool = True
    from_email: str = ""
    from_name: str = "IAM Core"


# =============================================================================
# Root Settings
# =============================================================================


class AppSettings(BaseSettings):
    """Root application settings composing all sub-settings."""

    model_config = {"env_prefix": "", "extra": "ignore", "env_file": ".env", "env_file_encoding": "utf-8"}

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"
    log_file: str = ""
    audit_log_file: str = ""

    # Nested groups (initialized separately to support env_prefix)
    auth: AuthSettings = None  # type: ignore[assignment]
    password_policy: PasswordPolicySettings = None  # type: ignore[assignment]
    mfa: MfaSettings = None  # type: ignore[assignment]
    oidc: OidcSettings = None  # type: ignore[assignment]
    redis: RedisSettings = None  # type: ignore[assignment]
    database: DatabaseSettings = None  # type: ignore[assignment]
    email: EmailSettings = None  # type: ignore[assignment]

    @model_validator(mode="before")
    @classmethod
    def _init_nested(cls, values):
        """Initialize nested settings from environment."""
        if values.get("auth") is None:
            values["auth"] = AuthSettings()
        if values.get("password_policy") is None:
            values["password_policy"] = PasswordPolicySettings()
        if values.get("mfa") is None:
            values["mfa"] = MfaSettings()
        if values.get("oidc") is None:
            values["oidc"] = OidcSettings()
        if values.get("redis") is None:
            values["redis"] = RedisSettings()
        if values.get("database") is None:
            values["database"] = DatabaseSettings()
        if values.get("email") is None:
            values["email"] = EmailSettings()
        return values

    @model_validator(mode="after")
    def _validate_required_secrets(self):
        """Require JWT_SECRET in production; fall back to a fixed value only in TESTING mode."""
        if self.auth.jwt_secret.get_secret_value():
            return self

        if _is_testing():
            self.auth.jwt_secret = SecretStr("testing-only-jwt-secret")
            return self

        raise ValueError(
            "JWT_SECRET env var is required. "
            "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
        )


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    """
    Get the application settings singleton.

    Lazy-initialized on first call. Validates all env vars (fail-fast).
    Tests can reset via: get_settings.cache_clear()
    """
    return AppSettings()
