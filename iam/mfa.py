"""
Multi-Factor Authentication (MFA) providers.

Implements two second factors, selected per user by User.mfa_type:
- TOTP (RFC 6238) compatible with Google Authenticator, Authy, and other
  TOTP apps. Secrets are Fernet-encrypted on the user record.
- Email OTP: a short numeric code cached with a TTL and mailed to the user.

Both providers cap attempts per user with a cache counter and fail closed
once the cap is reached, until the counter's window expires. TOTP codes
are additionally single-use: an accepted user+code pair is remembered for
as long as the code could still validate.

Recovery codes (hashed, single-use) back up either factor. They share the
factor's attempt cap and are refused while it is exhausted.
"""

import base64
import hashlib
import hmac
import logging
import secrets
import unicodedata
from io import BytesIO
from typing import Optional, Protocol, Union

import pyotp
import qrcode
from cryptography.fernet import Fernet, InvalidToken
from pyotp.utils import strings_equal

from config.redis_client import CacheKeys
from core.cache import Cache
from iam.auth.types import MfaType, User

logger = logging.getLogger(__name__)

RECOVERY_CODE_COUNT = 8
TOTP_INTERVAL = 30


# =============================================================================
# Secret Encryption
# =============================================================================


class SecretCipher:
    """Symmetric encryption for MFA secrets at rest.

    Fernet tokens embed a fresh random IV, so encrypting the same secret
    twice never yields the same ciphertext.
    """

    def __init__(self, key: Union[str, bytes]):
        self._fernet = Fernet(key.encode() if isinstance(key, str) else key)

    @classmethod
    def from_settings(cls, settings) -> "SecretCipher":
        """Build from MFA_ENCRYPTION_KEY, else derive a key from the JWT secret.

        Priority:
        1. MFA_ENCRYPTION_KEY env var (must be a valid Fernet key)
        2. Derived from the JWT secret (works but logged as warning)
        """
        key = settings.mfa.encryption_key.get_secret_value()
        if key:
            try:
                return cls(key)
            except ValueError:
                logger.error("MFA_ENCRYPTION_KEY is not a valid Fernet key, falling back to derived key")

        logger.warning("MFA_ENCRYPTION_KEY not set - deriving from JWT secret. Set MFA_ENCRYPTION_KEY for production.")
        jwt_secret = settings.auth.jwt_secret.get_secret_value()
        derived = hashlib.sha256(jwt_secret.encode()).digest()
        return cls(base64.urlsafe_b64encode(derived))

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, token: str) -> str:
        """Decrypt a stored secret.

        Raises:
            cryptography.fernet.InvalidToken: Tampered data or wrong key
        """
        return self._fernet.decrypt(token.encode()).decode()


# =============================================================================
# Provider Interface
# =============================================================================


class MfaProvider(Protocol):
    mfa_type: MfaType

    def verify(self, user: User, code: str) -> bool: ...

    def attempts_exhausted(self, user: User) -> bool: ...

    def disable(self, user: User) -> None: ...


def _normalize_code(code: Optional[str]) -> str:
    # NFKC folds fullwidth digits so the replay marker matches what pyotp accepted
    return unicodedata.normalize("NFKC", code or "").replace(" ", "").strip()


# =============================================================================
# TOTP
# =============================================================================


class TOTPProvider:
    """Authenticator-app codes.

    Args:
        cache: Shared cache for attempt counters and used-code markers
        cipher: SecretCipher protecting User.mfa_secret
        issuer_name: Issuer shown in authenticator apps
        valid_window: Adjacent time steps accepted on each side
        max_attempts: Attempts allowed per attempt window
        attempt_window_seconds: Lifetime of the attempt counter
    """

    mfa_type = MfaType.TOTP

    def __init__(
        self,
        cache: Cache,
        cipher: SecretCipher,
        issuer_name: str = "IAM Core",
        valid_window: int = 1,
        max_attempts: int = 5,
        attempt_window_seconds: int = 300,
    ):
        self._cache = cache
        self._cipher = cipher
        self._issuer_name = issuer_name
        self._valid_window = valid_window
        self._max_attempts = max_attempts
        self._attempt_window = attempt_window_seconds

    @property
    def _replay_ttl(self) -> int:
        # Longest time an accepted code can still pass verify()
        return TOTP_INTERVAL * (2 * self._valid_window + 1)

    def generate_secret(self, user: User) -> str:
        """Create a new secret and store it encrypted on the user.

        The caller persists the user. The plaintext is returned once, for
        enrollment (manual entry or QR code).
        """
        secret = pyotp.random_base32()
        user.mfa_secret = self._cipher.encrypt(secret)
        return secret

    def provisioning_uri(self, user: User, secret: str) -> str:
        return pyotp.TOTP(secret).provisioning_uri(name=user.email, issuer_name=self._issuer_name)

    @staticmethod
    def qr_code(provisioning_uri: str) -> str:
        """Render a provisioning URI as a base64 PNG data URI."""
        qr = qrcode.QRCode(version=1, box_size=10, border=5)
        qr.add_data(provisioning_uri)
        qr.make(fit=True)
        img = qr.make_image(fill_color="black", back_color="white")

        buffer = BytesIO()
        img.save(buffer, format="PNG")
        qr_base64 = base64.b64encode(buffer.getvalue()).decode()
        return f"data:image/png;base64,{qr_base64}"

    def verify(self, user: User, code: str) -> bool:
        """Verify a TOTP code.

        Fails when the user has no secret, when the attempt cap for the
        current window is exhausted (even for a correct code), when the
        code is wrong, or when the same code was already accepted.
        """
        if not user.mfa_secret:
            return False

        attempts_key = CacheKeys.totp_attempts(user.id)
        attempts = self._cache.incr(attempts_key, ttl=self._attempt_window)
        if attempts > self._max_attempts:
            logger.warning(f"TOTP attempt limit reached for user={user.id}", extra={"user_id": user.id})
            return False

        try:
            secret = self._cipher.decrypt(user.mfa_secret)
        except InvalidToken:
            logger.error(f"Cannot decrypt TOTP secret for user={user.id}", extra={"user_id": user.id})
            return False

        code = _normalize_code(code)
        if not pyotp.TOTP(secret).verify(code, valid_window=self._valid_window):
            return False

        if not self._cache.add(CacheKeys.totp_used_code(user.id, code), 1, ttl=self._replay_ttl):
            logger.warning(f"TOTP code replay rejected for user={user.id}", extra={"user_id": user.id})
            return False

        self._cache.delete(attempts_key)
        return True

    def attempts_exhausted(self, user: User) -> bool:
        """True while the attempt cap for the current window is used up."""
        return int(self._cache.get(CacheKeys.totp_attempts(user.id)) or 0) > self._max_attempts

    def disable(self, user: User) -> None:
        user.mfa_secret = None
        user.mfa_type = None


# =============================================================================
# Email OTP
# =============================================================================


class EmailOTPProvider:
    """Numeric codes delivered by email.

    Args:
        cache: Shared cache holding the pending code and attempt counter
        email: EmailSender (delivery failures are logged, not raised)
        code_length: Digits per code
        ttl_seconds: Lifetime of a code and of its attempt counter
        max_attempts: Attempts allowed before failing closed
    """

    mfa_type = MfaType.EMAIL

    def __init__(
        self,
        cache: Cache,
        email=None,
        code_length: int = 6,
        ttl_seconds: int = 300,
        max_attempts: int = 5,
    ):
        self._cache = cache
        self._email = email
        self._code_length = code_length
        self._ttl = ttl_seconds
        self._max_attempts = max_attempts

    def generate(self, user: User) -> str:
        """Create, cache and send a new code. A new code replaces any pending one.

        The attempt counter is left untouched so resending cannot reset it.
        """
        code = f"{secrets.randbelow(10 ** self._code_length):0{self._code_length}d}"
        self._cache.set(CacheKeys.email_otp(user.id), code, ttl=self._ttl)

        if self._email is not None:
            sent = self._email.send_otp_code(user.email, code, self._ttl)
            if not sent:
                logger.error(f"Failed to deliver email OTP for user={user.id}", extra={"user_id": user.id})
        return code

    def verify(self, user: User, code: str) -> bool:
        attempts_key = CacheKeys.email_otp_attempts(user.id)
        attempts = self._cache.incr(attempts_key, ttl=self._ttl)
        if attempts > self._max_attempts:
            logger.warning(f"Email OTP attempt limit reached for user={user.id}", extra={"user_id": user.id})
            return False

        expected = self._cache.get(CacheKeys.email_otp(user.id))
        if not expected:
            return False

        if not strings_equal(str(expected), _normalize_code(code)):
            return False

        self._cache.delete(CacheKeys.email_otp(user.id))
        self._cache.delete(attempts_key)
        return True

    def attempts_exhausted(self, user: User) -> bool:
        return int(self._cache.get(CacheKeys.email_otp_attempts(user.id)) or 0) > self._max_attempts

    def disable(self, user: User) -> None:
        self._cache.delete(CacheKeys.email_otp(user.id))
        self._cache.delete(CacheKeys.email_otp_attempts(user.id))


# =============================================================================
# Recovery Codes
# =============================================================================


def _hash_recovery_code(code: str) -> str:
    return hashlib.sha256(code.strip().upper().encode()).hexdigest()


def generate_recovery_codes(count: int = RECOVERY_CODE_COUNT) -> tuple[list[str], list[str]]:
    """Generate recovery codes.

    Returns:
        (plaintext codes to show once, sha256 hashes to store on the user)
    """
    codes = [secrets.token_hex(8).upper() for _ in range(count)]  # 64 bits each
    return codes, [_hash_recovery_code(c) for c in codes]


def consume_recovery_code(user: User, code: str) -> bool:
    """Remove a matching recovery code from the user. Caller persists the user."""
    if not code:
        return False
    code_hash = _hash_recovery_code(code)
    for stored in user.mfa_recovery_codes:
        if hmac.compare_digest(stored, code_hash):
            user.mfa_recovery_codes = [h for h in user.mfa_recovery_codes if h != stored]
            return True
    return False
