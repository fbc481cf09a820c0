"""
Error taxonomy for the identity core.

Error Hierarchy:
- APIError (4xx/5xx expected): messages are safe to expose to clients
- Any other exception (5xx): unexpected - never expose internal details

Auth errors deliberately carry generic messages. A refresh token that was
used, revoked, expired or never existed all surface as
InvalidRefreshTokenError with the same text; only the server logs keep
the distinction.

Usage:
    from core.errors import ForbiddenError, safe_error_response

    raise ForbiddenError()

    except Exception as e:
        return safe_error_response(e, "rotate refresh token")

    register_error_handlers(app)  # APIError raised in views -> JSON
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Optional, Tuple

from flask import jsonify, request

logger = logging.getLogger(__name__)


# =============================================================================
# Base Classes
# =============================================================================

class APIError(Exception):
    """
    Base class for expected errors.
    Messages are safe to expose to clients.
    """
    status_code = 400
    code = "BAD_REQUEST"
    default_message = "Bad request"

    def __init__(self, message: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message or self.default_message)
        if status_code is not None:
            self.status_code = status_code


class ValidationError(APIError):
    """Request validation failed (400)."""
    status_code = 400
    code = "VALIDATION_ERROR"


class AuthenticationError(APIError):
    """Authentication failed (401)."""
    status_code = 401
    code = "UNAUTHENTICATED"
    default_message = "Authentication failed"


class PermissionDeniedError(APIError):
    """Permission denied (403)."""
    status_code = 403
    code = "PERMISSION_DENIED"
    default_message = "Permission denied"


class NotFoundError(APIError):
    """Resource not found (404)."""
    status_code = 404
    code = "NOT_FOUND"
    default_message = "Not found"


class ConflictError(APIError):
    """Resource conflict (409)."""
    status_code = 409
    code = "CONFLICT"


# =============================================================================
# Auth Errors
# =============================================================================

class InvalidCredentialsError(AuthenticationError):
    code = "INVALID_CREDENTIALS"
    default_message = "Invalid credentials"


class InvalidTokenError(AuthenticationError):
    """Malformed, expired, wrongly signed or wrong-issuer token."""
    code = "INVALID_TOKEN"
    default_message = "Invalid token"


class InvalidRefreshTokenError(AuthenticationError):
    """Refresh token not found, already used, revoked or expired."""
    code = "INVALID_REFRESH_TOKEN"
    default_message = "Invalid or expired refresh token"


class InvalidMfaCodeError(AuthenticationError):
    code = "INVALID_MFA_CODE"
    default_message = "Invalid MFA code"


class ForbiddenError(PermissionDeniedError):
    code = "FORBIDDEN"
    default_message = "Forbidden"


class AccountSuspendedError(PermissionDeniedError):
    code = "ACCOUNT_SUSPENDED"
    default_message = "User account is suspended or archived"


class AccountLockedError(APIError):
    """Account temporarily locked after repeated failed logins (423)."""
    status_code = 423
    code = "ACCOUNT_LOCKED"
    default_message = "Account is temporarily locked due to multiple failed login attempts"

    def __init__(self, locked_until: Optional[datetime] = None, message: Optional[str] = None):
        super().__init__(message)
        self.locked_until = locked_until


class InvalidPasswordError(ValidationError):
    """Candidate password violates the configured policy."""
    code = "INVALID_PASSWORD"
    default_message = "Password does not meet complexity requirements"

    def __init__(self, reason: Optional[str] = None):
        super().__init__(reason)
        self.reason = reason or self.default_message


class MfaNotEnabledError(ValidationError):
    code = "MFA_NOT_ENABLED"
    default_message = "MFA not enabled"


class NotSupportedError(APIError):
    """Operation not available on this provider (501)."""
    status_code = 501
    code = "NOT_SUPPORTED"
    default_message = "Not supported"


# =============================================================================
# Flask Responses
# =============================================================================

def safe_error_response(
    e: Exception,
    operation: str,
    include_error_id: bool = True
) -> Tuple[Any, int]:
    """
    Turn an exception into a JSON error response.

    APIError subclasses keep their message, code and status (logged at
    WARNING); a locked account also reports `locked_until`. Anything else
    becomes a generic 500 naming only `operation`, with the traceback
    logged server-side.

    Args:
        e: The exception that was caught
        operation: What was being attempted (e.g. "refresh session")
        include_error_id: Add a short id that ties the response to the log line

    Returns:
        (json_response, status_code)
    """
    error_id = str(uuid.uuid4())[:8] if include_error_id else None
    log_extra = {'error_id': error_id} if error_id else {}

    if isinstance(e, APIError):
        logger.warning(f"{operation}: {e}", extra=log_extra)
        body = {"error": str(e), "code": e.code}
        if isinstance(e, AccountLockedError) and e.locked_until:
            body["locked_until"] = e.locked_until.isoformat()
        status = e.status_code
    else:
        logger.exception(f"{operation} failed", extra=log_extra)
        body = {"error": f"{operation} failed"}
        status = 500

    if error_id:
        body["error_id"] = error_id
    return jsonify(body), status


def register_error_handlers(app):
    """Render APIError raised inside views through safe_error_response."""

    @app.errorhandler(APIError)
    def handle_api_error(e):
        return safe_error_response(e, request.endpoint or "request")
