"""
Authentication and authorization core.

Public API:
- Decorators: init_auth, jwt_required, permission_required, has_permission
- Providers: LocalAuthProvider, OidcAuthProvider, CompositeAuthProvider
- Tokens: TokenIssuer, RefreshTokenLedger
- Permissions: PermissionEngine, user_has_permission, guest_actor
- Passwords: PasswordPolicy, LoginThrottle, hash_password, verify_password

Internal modules should import from submodules directly.
External callers should use this facade.

Import Rules:
- External callers: Use `from iam.auth import X` (this facade)
- Internal auth modules: Use `from .submodule import X` (direct imports)
- Ban: `from iam.auth import X` inside auth submodules (causes facade import)
"""

# =============================================================================
# Decorators (most commonly used)
# =============================================================================
from .decorators import (
    init_auth,
    jwt_required,
    permission_required,
    has_permission,
)

# =============================================================================
# Authentication
# =============================================================================
from .identity import (
    AuthProvider,
    LocalAuthProvider,
    OidcAuthProvider,
    CompositeAuthProvider,
)

from .tokens import (
    TokenIssuer,
    get_token_from_request,
)

from .ledger import RefreshTokenLedger

# =============================================================================
# Persistence
# =============================================================================
from .repositories import (
    UserRepository,
    RefreshTokenRepository,
    InMemoryUserRepository,
    InMemoryRefreshTokenRepository,
)

from .database import SqliteRefreshTokenRepository

# =============================================================================
# Permissions
# =============================================================================
from .permissions import (
    PermissionEngine,
    user_has_permission,
    get_user_permissions,
    build_default_role,
    guest_actor,
)

# =============================================================================
# Passwords
# =============================================================================
from .passwords import (
    hash_password,
    verify_password,
    ConfigSource,
    StaticConfigSource,
    settings_config_source,
    PasswordPolicy,
    LoginThrottle,
)

# =============================================================================
# Types and Constants
# =============================================================================
from .types import (
    UserStatus,
    MfaType,
    TokenState,
    Permission,
    PermissionGrant,
    Role,
    User,
    RefreshTokenRecord,
    TokenPair,
    MfaChallenge,
)

from .config import (
    PermissionKeys,
    ConfigKeys,
    AuditEvents,
    DEFAULT_PERMISSIONS,
    DEFAULT_ROLES,
)

__all__ = [
    # Decorators
    "init_auth",
    "jwt_required",
    "permission_required",
    "has_permission",

    # Providers
    "AuthProvider",
    "LocalAuthProvider",
    "OidcAuthProvider",
    "CompositeAuthProvider",

    # Tokens
    "TokenIssuer",
    "get_token_from_request",
    "RefreshTokenLedger",

    # Persistence
    "UserRepository",
    "RefreshTokenRepository",
    "InMemoryUserRepository",
    "InMemoryRefreshTokenRepository",
    "SqliteRefreshTokenRepository",

    # Permissions
    "PermissionEngine",
    "user_has_permission",
    "get_user_permissions",
    "build_default_role",
    "guest_actor",

    # Passwords
    "hash_password",
    "verify_password",
    "ConfigSource",
    "StaticConfigSource",
    "settings_config_source",
    "PasswordPolicy",
    "LoginThrottle",

    # Types
    "UserStatus",
    "MfaType",
    "TokenState",
    "Permission",
    "PermissionGrant",
    "Role",
    "User",
    "RefreshTokenRecord",
    "TokenPair",
    "MfaChallenge",

    # Config
    "PermissionKeys",
    "ConfigKeys",
    "AuditEvents",
    "DEFAULT_PERMISSIONS",
    "DEFAULT_ROLES",
]
