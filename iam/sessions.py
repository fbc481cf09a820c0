"""
Session use cases: login, MFA, refresh, logout, password reset, MFA
enrollment and account status changes.

Each method takes plain request data and returns a result value or raises
one of the core.errors auth errors. Permission checks run before any
persistence or token action. Every operation that should end existing
sessions (password reset, MFA enable/disable, suspension, removal) calls
RefreshTokenLedger.revoke_all for the affected user after the state
change.

Users are loaded fresh from the repository on every call, mutated in
place and written back with UserRepository.update().
"""

import logging
from typing import Mapping, Optional, Union

from core.errors import (
    AccountLockedError,
    AccountSuspendedError,
    AuthenticationError,
    ConflictError,
    InvalidMfaCodeError,
    InvalidRefreshTokenError,
    InvalidTokenError,
    MfaNotEnabledError,
    NotFoundError,
    ValidationError,
)
from core.event_logger import AuditSink
from core.timestamps import now
from iam.auth.config import AuditEvents, PermissionKeys
from iam.auth.identity import AuthProvider
from iam.auth.ledger import RefreshTokenLedger
from iam.auth.permissions import PermissionEngine
from iam.auth.repositories import UserRepository
from iam.auth.tokens import TokenIssuer
from iam.auth.types import MfaChallenge, MfaType, TokenPair, User, UserStatus
from iam.mfa import (
    RECOVERY_CODE_COUNT,
    EmailOTPProvider,
    MfaProvider,
    TOTPProvider,
    consume_recovery_code,
    generate_recovery_codes,
)

logger = logging.getLogger(__name__)

LoginResult = Union[TokenPair, MfaChallenge]


class SessionService:
    """Orchestrates the auth core for transport layers (REST, WebSocket).

    Args:
        users: Identity repository
        auth_provider: Usually a CompositeAuthProvider
        engine: PermissionEngine gating protected operations
        tokens: TokenIssuer for access and MFA challenge tokens
        ledger: RefreshTokenLedger for refresh tokens
        mfa_providers: {MfaType.TOTP: TOTPProvider, MfaType.EMAIL: EmailOTPProvider}
        audit: Audit sink
        recovery_code_count: Recovery codes handed out when MFA is enabled
    """

    def __init__(
        self,
        users: UserRepository,
        auth_provider: AuthProvider,
        engine: PermissionEngine,
        tokens: TokenIssuer,
        ledger: RefreshTokenLedger,
        mfa_providers: Mapping[MfaType, MfaProvider],
        audit: Optional[AuditSink] = None,
        recovery_code_count: int = RECOVERY_CODE_COUNT,
    ):
        self._users = users
        self._auth = auth_provider
        self._engine = engine
        self._tokens = tokens
        self._ledger = ledger
        self._mfa = dict(mfa_providers)
        self._audit_sink = audit
        self._recovery_code_count = recovery_code_count

    @property
    def auth_provider(self) -> AuthProvider:
        return self._auth

    @property
    def engine(self) -> PermissionEngine:
        return self._engine

    @property
    def ledger(self) -> RefreshTokenLedger:
        return self._ledger

    # =========================================================================
    # Helpers
    # =========================================================================

    def _audit(self, action: str, user_id: Optional[str], status: str = "success",
               details: Optional[str] = None, ip_address: Optional[str] = None,
               user_agent: Optional[str] = None) -> None:
        if self._audit_sink is None:
            return
        try:
            self._audit_sink.log(action, user_id=user_id, status=status, details=details,
                                 ip_address=ip_address, user_agent=user_agent)
        except Exception as e:
            logger.error(f"Audit sink failed for {action}: {e}")

    def _get_target(self, actor: User, user_id: str, key: str) -> User:
        """Load the account an administrative operation acts on.

        A missing account is only reported as such to actors holding `key`
        unscoped; everyone else gets ForbiddenError, so unknown and
        out-of-scope ids look the same.
        """
        user = self._users.find_by_id(user_id)
        if user is None:
            self._engine.check(actor, key)
            raise NotFoundError("User not found")
        return user

    def _totp(self) -> TOTPProvider:
        provider = self._mfa.get(MfaType.TOTP)
        if provider is None:
            raise MfaNotEnabledError("TOTP is not available")
        return provider

    def _email_otp(self) -> EmailOTPProvider:
        provider = self._mfa.get(MfaType.EMAIL)
        if provider is None:
            raise MfaNotEnabledError("Email OTP is not available")
        return provider

    def _check_mfa_permission(self, actor: User, target: User) -> None:
        """Self-service needs manage-own-mfa; other accounts need update-user in their scope."""
        if actor.id == target.id:
            self._engine.check_any(
                actor,
                [PermissionKeys.MANAGE_OWN_MFA, PermissionKeys.UPDATE_USER],
                target.department_id,
            )
        else:
            self._engine.check(actor, PermissionKeys.UPDATE_USER, target.department_id)

    def _issue_tokens(self, user: User, ip_address: Optional[str], user_agent: Optional[str]) -> TokenPair:
        timestamp = now()
        user.last_login = timestamp
        user.last_activity = timestamp
        self._users.update(user)

        access_token = self._tokens.generate_access_token(user)
        refresh_token = self._tokens.generate_refresh_token(user, ip_address, user_agent)
        self._audit(AuditEvents.LOGIN, user.id, ip_address=ip_address, user_agent=user_agent)
        logger.info(f"Login completed for user={user.id}", extra={"user_id": user.id})
        return TokenPair(access_token=access_token, refresh_token=refresh_token, user=user)

    def _complete_first_factor(self, user: User, ip_address: Optional[str],
                               user_agent: Optional[str]) -> LoginResult:
        if not user.mfa_enabled:
            return self._issue_tokens(user, ip_address, user_agent)

        if user.mfa_type == MfaType.EMAIL:
            self._email_otp().generate(user)
        logger.info(f"MFA challenge issued for user={user.id}", extra={"user_id": user.id})
        return MfaChallenge(
            mfa_token=self._tokens.create_mfa_token(user),
            mfa_type=user.mfa_type,
            user_id=user.id,
        )

    # =========================================================================
    # Login
    # =========================================================================

    def login(self, email: str, password: str, ip_address: Optional[str] = None,
              user_agent: Optional[str] = None) -> LoginResult:
        """Password login.

        Returns:
            TokenPair, or MfaChallenge when the account has MFA enabled
            (for email MFA the code has been sent)
        """
        try:
            user = self._auth.authenticate(email, password)
        except AccountLockedError:
            self._audit(AuditEvents.ACCOUNT_LOCKED, None, status="failure",
                        details=f"email={email}", ip_address=ip_address, user_agent=user_agent)
            raise
        except (AuthenticationError, AccountSuspendedError) as e:
            self._audit(AuditEvents.LOGIN_FAILED, None, status="failure",
                        details=f"email={email} reason={e.code}",
                        ip_address=ip_address, user_agent=user_agent)
            raise
        return self._complete_first_factor(user, ip_address, user_agent)

    def login_with_provider(self, provider_name: str, token: str, ip_address: Optional[str] = None,
                            user_agent: Optional[str] = None) -> LoginResult:
        """Federated login with a token from an external identity provider."""
        try:
            user = self._auth.authenticate_with_provider(provider_name, token)
        except (AuthenticationError, AccountSuspendedError) as e:
            self._audit(AuditEvents.LOGIN_FAILED, None, status="failure",
                        details=f"provider={provider_name} reason={e.code}",
                        ip_address=ip_address, user_agent=user_agent)
            raise
        return self._complete_first_factor(user, ip_address, user_agent)

    def _user_from_mfa_token(self, mfa_token: str) -> User:
        payload = self._tokens.decode_mfa_token(mfa_token)
        user = self._users.find_by_id(payload["sub"])
        if user is None:
            raise InvalidTokenError()
        if not user.is_active:
            raise AccountSuspendedError()
        return user

    def send_email_otp(self, mfa_token: str) -> None:
        """Send a fresh email code for a pending MFA challenge."""
        user = self._user_from_mfa_token(mfa_token)
        if user.mfa_type != MfaType.EMAIL:
            raise MfaNotEnabledError("Email MFA is not enabled for this account")
        self._email_otp().generate(user)

    def verify_mfa(self, mfa_token: str, code: str, ip_address: Optional[str] = None,
                   user_agent: Optional[str] = None) -> TokenPair:
        """Complete a login with the second factor (or a recovery code).

        Raises:
            InvalidTokenError: Missing, expired or forged challenge token
            MfaNotEnabledError: The account has no MFA type
            InvalidMfaCodeError: Wrong, replayed or rate-limited code
        """
        user = self._user_from_mfa_token(mfa_token)
        if not user.mfa_type:
            raise MfaNotEnabledError()

        provider = self._mfa.get(user.mfa_type)
        if provider is None:
            raise MfaNotEnabledError()

        if not provider.verify(user, code):
            if provider.attempts_exhausted(user) or not consume_recovery_code(user, code):
                self._audit(AuditEvents.LOGIN_FAILED, user.id, status="failure",
                            details="invalid MFA code", ip_address=ip_address, user_agent=user_agent)
                raise InvalidMfaCodeError()
            logger.warning(f"Recovery code used for user={user.id}, "
                           f"{len(user.mfa_recovery_codes)} remaining", extra={"user_id": user.id})

        return self._issue_tokens(user, ip_address, user_agent)

    # =========================================================================
    # Refresh / Logout
    # =========================================================================

    def refresh(self, refresh_token: str, ip_address: Optional[str] = None,
                user_agent: Optional[str] = None) -> TokenPair:
        """Rotate a refresh token and issue a new access token.

        Raises:
            InvalidRefreshTokenError: Unknown, used, revoked or expired
                token, or the rotation lost a race with another request
            AccountSuspendedError: Owner is suspended or archived
        """
        record = self._ledger.find_valid(refresh_token)
        if record is None:
            raise InvalidRefreshTokenError()

        user = self._users.find_by_id(record.user_id)
        if user is None:
            self._ledger.revoke(record.id, reason="owner no longer exists")
            raise InvalidRefreshTokenError()
        if not user.is_active:
            raise AccountSuspendedError()

        new_refresh_token, _ = self._ledger.rotate(record, ip_address, user_agent)

        user.last_activity = now()
        self._users.update(user)

        access_token = self._tokens.generate_access_token(user)
        self._audit(AuditEvents.REFRESH, user.id, ip_address=ip_address, user_agent=user_agent)
        return TokenPair(access_token=access_token, refresh_token=new_refresh_token, user=user)

    def logout(self, refresh_token: str, ip_address: Optional[str] = None,
               user_agent: Optional[str] = None) -> int:
        """Revoke every session of the user owning `refresh_token`.

        Returns:
            Number of refresh tokens revoked
        """
        record = self._ledger.find_valid(refresh_token)
        if record is None:
            raise InvalidRefreshTokenError()

        count = self._ledger.revoke_all(record.user_id, reason="logout")
        self._audit(AuditEvents.LOGOUT, record.user_id, details=f"sessions_revoked={count}",
                    ip_address=ip_address, user_agent=user_agent)
        return count

    # =========================================================================
    # Password Reset
    # =========================================================================

    def request_password_reset(self, actor: User, email: str) -> None:
        """Send a reset token. Succeeds silently for unknown emails."""
        self._engine.check(actor, PermissionKeys.CREATE_PASSWORD_RESET)
        self._auth.request_password_reset(email)

    def reset_password(self, actor: User, reset_token: str, new_password: str) -> User:
        """Set a new password from a reset token and end every existing session."""
        self._engine.check(actor, PermissionKeys.UPDATE_PASSWORD)
        user = self._auth.reset_password(reset_token, new_password)
        revoked = self._ledger.revoke_all(user.id, reason="password reset")
        self._audit(AuditEvents.PASSWORD_RESET, user.id, details=f"sessions_revoked={revoked}")
        return user

    # =========================================================================
    # MFA Enrollment
    # =========================================================================

    def setup_totp(self, actor: User, user_id: str) -> tuple[str, str]:
        """Generate and store a new TOTP secret (MFA stays disabled until enable_mfa).

        Returns:
            (base32 secret, otpauth provisioning URI)
        """
        target = self._get_target(actor, user_id, PermissionKeys.UPDATE_USER)
        self._check_mfa_permission(actor, target)
        if target.mfa_enabled:
            raise ConflictError("MFA is already enabled; disable it before enrolling again")

        totp = self._totp()
        secret = totp.generate_secret(target)
        self._users.update(target)
        return secret, totp.provisioning_uri(target, secret)

    def enable_mfa(self, actor: User, user_id: str, mfa_type: MfaType,
                   code: Optional[str] = None) -> list[str]:
        """Turn on MFA and end every existing session.

        TOTP needs a confirmation code from the secret created by
        setup_totp(). Email OTP needs no confirmation.

        Returns:
            Plaintext recovery codes (shown once)
        """
        target = self._get_target(actor, user_id, PermissionKeys.UPDATE_USER)
        self._check_mfa_permission(actor, target)
        mfa_type = MfaType(mfa_type)

        if mfa_type == MfaType.TOTP:
            if not target.mfa_secret:
                raise ValidationError("TOTP setup has not been started")
            if not self._totp().verify(target, code):
                raise InvalidMfaCodeError()
        else:
            self._email_otp()  # raises when email OTP is not configured
            target.mfa_secret = None

        codes, hashes = generate_recovery_codes(self._recovery_code_count)
        target.mfa_enabled = True
        target.mfa_type = mfa_type
        target.mfa_recovery_codes = hashes
        self._users.update(target)

        revoked = self._ledger.revoke_all(target.id, reason="MFA enabled")
        self._audit(AuditEvents.MFA_ENABLED, target.id,
                    details=f"type={mfa_type.value} by={actor.id} sessions_revoked={revoked}")
        return codes

    def disable_mfa(self, actor: User, user_id: str) -> None:
        """Turn off MFA, clear secrets and recovery codes, and end every session."""
        target = self._get_target(actor, user_id, PermissionKeys.UPDATE_USER)
        self._check_mfa_permission(actor, target)

        provider = self._mfa.get(target.mfa_type) if target.mfa_type else None
        if provider is not None:
            provider.disable(target)
        target.mfa_enabled = False
        target.mfa_type = None
        target.mfa_secret = None
        target.mfa_recovery_codes = []
        self._users.update(target)

        revoked = self._ledger.revoke_all(target.id, reason="MFA disabled")
        self._audit(AuditEvents.MFA_DISABLED, target.id,
                    details=f"by={actor.id} sessions_revoked={revoked}")

    # =========================================================================
    # Account Administration
    # =========================================================================

    def change_user_status(self, actor: User, user_id: str, status: UserStatus) -> User:
        """Set an account's status. Leaving `active` ends every session."""
        target = self._get_target(actor, user_id, PermissionKeys.UPDATE_USER)
        self._engine.check(actor, PermissionKeys.UPDATE_USER, target.department_id)

        status = UserStatus(status)
        previous = target.status
        target.status = status
        self._users.update(target)

        if status != UserStatus.ACTIVE:
            self._ledger.revoke_all(target.id, reason=f"status changed to {status.value}")
        self._audit(AuditEvents.STATUS_CHANGED, target.id,
                    details=f"{previous.value} -> {status.value} by={actor.id}")
        return target

    def remove_user(self, actor: User, user_id: str) -> None:
        """Delete an account after revoking all of its sessions."""
        target = self._get_target(actor, user_id, PermissionKeys.DELETE_USER)
        self._engine.check(actor, PermissionKeys.DELETE_USER, target.department_id)

        self._ledger.revoke_all(target.id, reason="user removed")
        self._users.delete(target.id)
        self._audit(AuditEvents.USER_REMOVED, target.id, details=f"by={actor.id}")
