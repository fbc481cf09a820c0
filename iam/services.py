"""
Wiring: build a SessionService and its collaborators from settings.

Usage:
    from iam.services import get_session_service

    sessions = get_session_service()
    result = sessions.login("ada@example.com", "S3cure!pass", ip_address=request.remote_addr)

Hosts with their own identity store pass it in:

    sessions = build_session_service(users=MyUserRepository())
"""

import logging
import threading
from typing import Optional

from core.cache import get_cache
from core.event_logger import AuditLogger, audit_logger
from iam.auth.database import SqliteRefreshTokenRepository
from iam.auth.identity import CompositeAuthProvider, LocalAuthProvider, OidcAuthProvider
from iam.auth.ledger import RefreshTokenLedger
from iam.auth.passwords import LoginThrottle, PasswordPolicy, settings_config_source
from iam.auth.permissions import PermissionEngine
from iam.auth.repositories import InMemoryUserRepository
from iam.auth.tokens import TokenIssuer
from iam.auth.types import MfaType
from iam.email import EmailService
from iam.mfa import EmailOTPProvider, SecretCipher, TOTPProvider
from iam.sessions import SessionService

logger = logging.getLogger(__name__)


def build_session_service(
    settings=None,
    users=None,
    refresh_repo=None,
    cache=None,
    audit=None,
    email=None,
    config_source=None,
) -> SessionService:
    """Assemble the auth core.

    Every collaborator defaults to the one described by settings:
    SQLite refresh tokens at AUTH_DB_PATH, Redis or in-memory cache,
    SMTP email, the module audit logger, PASSWORD_* policy values.
    """
    if settings is None:
        from config.settings import get_settings
        settings = get_settings()

    if users is None:
        logger.warning("No identity repository supplied, using an empty in-memory store")
        users = InMemoryUserRepository()
    if refresh_repo is None:
        refresh_repo = SqliteRefreshTokenRepository(settings.database.refresh_db_path)
    if cache is None:
        cache = get_cache()
    if audit is None:
        audit = audit_logger
    if email is None:
        email = EmailService.from_settings(settings)
    if config_source is None:
        config_source = settings_config_source(settings)

    auth = settings.auth
    mfa = settings.mfa

    ledger = RefreshTokenLedger(
        refresh_repo,
        ttl_days=auth.refresh_token_days,
        hash_method=auth.token_hash_method,
        audit=audit,
        revoke_all_on_reuse=auth.refresh_reuse_revokes_all,
    )
    tokens = TokenIssuer.from_settings(settings, ledger=ledger)
    engine = PermissionEngine()

    local = LocalAuthProvider(
        users=users,
        tokens=tokens,
        policy=PasswordPolicy(config_source),
        cache=cache,
        email=email,
        throttle=LoginThrottle(cache, auth.lockout_threshold, auth.lockout_duration_minutes),
        reset_ttl_minutes=auth.password_reset_ttl_minutes,
    )
    providers = [local]
    if settings.oidc.enabled:
        providers.append(OidcAuthProvider.from_settings(settings, users))
    auth_provider = CompositeAuthProvider(providers)

    mfa_providers = {
        MfaType.TOTP: TOTPProvider(
            cache,
            SecretCipher.from_settings(settings),
            issuer_name=mfa.issuer_name,
            valid_window=mfa.totp_valid_window,
            max_attempts=mfa.totp_max_attempts,
            attempt_window_seconds=mfa.totp_attempt_window_seconds,
        ),
        MfaType.EMAIL: EmailOTPProvider(
            cache,
            email,
            code_length=mfa.email_otp_length,
            ttl_seconds=mfa.email_otp_ttl_seconds,
            max_attempts=mfa.email_otp_max_attempts,
        ),
    }

    return SessionService(
        users=users,
        auth_provider=auth_provider,
        engine=engine,
        tokens=tokens,
        ledger=ledger,
        mfa_providers=mfa_providers,
        audit=audit,
        recovery_code_count=mfa.recovery_code_count,
    )


def build_audit_logger(settings=None) -> AuditLogger:
    """File-backed audit logger when AUDIT_LOG_FILE is set, else the in-memory singleton."""
    if settings is None:
        from config.settings import get_settings
        settings = get_settings()
    if settings.audit_log_file:
        return AuditLogger(log_file=settings.audit_log_file)
    return audit_logger


_session_service: Optional[SessionService] = None
_session_service_lock = threading.Lock()


def get_session_service() -> SessionService:
    """Get or create the SessionService singleton."""
    global _session_service
    with _session_service_lock:
        if _session_service is None:
            _session_service = build_session_service(audit=build_audit_logger())
        return _session_service


def reset_session_service() -> None:
    """Drop the singleton (tests)."""
    global _session_service
    with _session_service_lock:
        _session_service = None
