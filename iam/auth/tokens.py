"""
JWT access token and MFA challenge token handling.

Handles:
- Access token creation and decoding (stateless, short-lived)
- MFA challenge tokens (issued between password check and second factor)
- Refresh tokens, delegated to the RefreshTokenLedger (opaque, persisted)
- Bearer token extraction from Flask requests
"""
import logging
import uuid
from datetime import timedelta
from typing import Optional

import jwt
from flask import request

from core.errors import InvalidTokenError
from core.timestamps import now
from .permissions import get_user_permissions
from .types import User

logger = logging.getLogger(__name__)

ACCESS_TOKEN_TYPE = "access"
MFA_TOKEN_TYPE = "mfa_pending"


class TokenIssuer:
    """Mint and verify self-issued JWTs.

    Args:
        secret: HMAC signing key
        algorithm: JWT algorithm (HS256)
        issuer: Value of the `iss` claim, verified on decode
        access_token_minutes: Access token lifetime
        mfa_token_minutes: Lifetime of the MFA challenge token
        ledger: RefreshTokenLedger backing generate_refresh_token
    """

    def __init__(
        self,
        secret: str,
        algorithm: str = "HS256",
        issuer: str = "iam-core",
        access_token_minutes: int = 15,
        mfa_token_minutes: int = 5,
        ledger=None,
    ):
        if not secret:
            raise ValueError("JWT signing secret must not be empty")
        self._secret = secret
        self._algorithm = algorithm
        self._issuer = issuer
        self._access_ttl = timedelta(minutes=access_token_minutes)
        self._mfa_ttl = timedelta(minutes=mfa_token_minutes)
        self._ledger = ledger

    @classmethod
    def from_settings(cls, settings, ledger=None) -> "TokenIssuer":
        auth = settings.auth
        return cls(
            secret=auth.jwt_secret.get_secret_value(),
            algorithm=auth.jwt_algorithm,
            issuer=auth.jwt_issuer,
            access_token_minutes=auth.access_token_minutes,
            mfa_token_minutes=auth.mfa_token_expiration_minutes,
            ledger=ledger,
        )

    # =========================================================================
    # Access Tokens
    # =========================================================================

    def generate_access_token(self, user: User) -> str:
        """Create a signed access token for an authenticated user.

        Args:
            user: Authenticated user

        Returns:
            Encoded JWT access token
        """
        issued_at = now()
        payload = {
            "sub": user.id,
            "email": user.email,
            "permissions": get_user_permissions(user),
            "jti": str(uuid.uuid4()),
            "type": ACCESS_TOKEN_TYPE,
            "iss": self._issuer,
            "iat": issued_at,
            "exp": issued_at + self._access_ttl,
        }
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)

    def decode_access_token(self, token: str) -> dict:
        """Decode and validate an access token.

        Raises:
            InvalidTokenError: Malformed, expired, wrongly signed, wrong
                issuer, or not an access token
        """
        return self._decode(token, ACCESS_TOKEN_TYPE)

    # =========================================================================
    # Refresh Tokens
    # =========================================================================

    def generate_refresh_token(
        self,
        user: User,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        """Issue an opaque refresh token through the ledger."""
        if self._ledger is None:
            raise RuntimeError("TokenIssuer has no refresh token ledger configured")
        return self._ledger.issue(user, ip_address=ip_address, user_agent=user_agent)

    # =========================================================================
    # MFA Challenge Tokens
    # =========================================================================

    def create_mfa_token(self, user: User) -> str:
        """Create a short-lived token proving the password step succeeded.

        It carries no permissions and is rejected by decode_access_token.
        """
        issued_at = now()
        payload = {
            "sub": user.id,
            "type": MFA_TOKEN_TYPE,
            "mfa_type": user.mfa_type.value if user.mfa_type else None,
            "jti": str(uuid.uuid4()),
            "iss": self._issuer,
            "iat": issued_at,
            "exp": issued_at + self._mfa_ttl,
        }
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)

    def decode_mfa_token(self, token: str) -> dict:
        """Decode an MFA challenge token.

        Raises:
            InvalidTokenError: Invalid, expired or not an MFA challenge token
        """
        return self._decode(token, MFA_TOKEN_TYPE)

    def _decode(self, token: str, expected_type: str) -> dict:
        if not token:
            raise InvalidTokenError()
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                issuer=self._issuer,
                options={"require": ["sub", "exp", "iss"]},
            )
        except jwt.ExpiredSignatureError:
            logger.debug(f"Rejected expired {expected_type} token")
            raise InvalidTokenError()
        except jwt.InvalidTokenError as e:
            logger.debug(f"Rejected {expected_type} token: {e}")
            raise InvalidTokenError()

        if payload.get("type") != expected_type:
            logger.debug(f"Rejected token of type {payload.get('type')!r}, expected {expected_type}")
            raise InvalidTokenError()
        return payload


def get_token_from_request() -> Optional[str]:
    """Extract JWT token from Authorization header.

    Returns:
        Token string or None if not present
    """
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header[7:]
    return None
