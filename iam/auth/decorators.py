"""
Flask route decorators for authentication and authorization.

Provides:
- init_auth: register the auth provider and permission engine on an app
- jwt_required: require a Bearer token accepted by the auth provider
- permission_required: require a permission, optionally scoped by a view argument

Usage:
    init_auth(app, get_session_service().auth_provider, PermissionEngine())

    @app.route("/api/departments/<dept_id>/users/<user_id>", methods=["DELETE"])
    @permission_required(PermissionKeys.DELETE_USER, scope_arg="dept_id")
    def delete_user(dept_id, user_id):
        ...
"""
from functools import wraps
from typing import Optional

from flask import current_app, g, has_app_context

from core.errors import APIError, AuthenticationError, register_error_handlers, safe_error_response
from .identity import AuthProvider
from .permissions import PermissionEngine
from .tokens import get_token_from_request

EXTENSION_KEY = "iam"


def init_auth(app, auth_provider: AuthProvider, engine: Optional[PermissionEngine] = None) -> None:
    """Register auth collaborators on a Flask app (app.extensions["iam"]).

    Also installs the APIError handler so use-case errors raised inside
    views render as JSON.
    """
    register_error_handlers(app)
    app.extensions[EXTENSION_KEY] = {
        "auth_provider": auth_provider,
        "engine": engine or PermissionEngine(),
    }


def _extension() -> dict:
    if not has_app_context() or EXTENSION_KEY not in current_app.extensions:
        raise RuntimeError("init_auth(app, ...) must be called before using auth decorators")
    return current_app.extensions[EXTENSION_KEY]


def jwt_required(f):
    """Decorator to require a valid access token for an endpoint.

    Sets g.current_user (a User) on success. Locally issued and federated
    tokens are both accepted when the registered provider is composite.
    """
    @wraps(f)
    def decorated(*args, **kwargs):
        token = get_token_from_request()
        if not token:
            return safe_error_response(AuthenticationError("Missing authorization token"), "authenticate request")

        try:
            g.current_user = _extension()["auth_provider"].verify_token(token)
        except APIError as e:
            return safe_error_response(e, "authenticate request")

        return f(*args, **kwargs)
    return decorated


def permission_required(permission_key: str, scope_arg: Optional[str] = None):
    """Decorator factory to require a permission.

    Args:
        permission_key: Key checked with PermissionEngine
        scope_arg: Name of the view argument holding the scope id
            (e.g. a department id); None checks an unscoped request

    Usage:
        @permission_required("read-users")
        def list_users():
            ...
    """
    def decorator(f):
        @wraps(f)
        @jwt_required
        def decorated(*args, **kwargs):
            scope_id = kwargs.get(scope_arg) if scope_arg else None
            try:
                _extension()["engine"].check(g.current_user, permission_key, scope_id)
            except APIError as e:
                return safe_error_response(e, "authorize request")
            return f(*args, **kwargs)
        return decorated
    return decorator


def has_permission(permission_key: str, scope_id: Optional[str] = None) -> bool:
    """Helper to check a permission for the current user (use inside routes)."""
    user = getattr(g, "current_user", None)
    if user is None:
        return False
    return _extension()["engine"].has(user, permission_key, scope_id)
