"""
Auth constants - no dependencies on other auth modules.

Permission keys, config source keys and audit event names are centralized
here for easy auditing. Tunables (TTLs, limits, secrets) live in
config.settings.
"""

# =============================================================================
# Permission Keys
# =============================================================================


class PermissionKeys:
    """Registry of permission keys checked by the session use cases."""

    # Grants every other permission, in every scope
    ROOT = "root"

    READ_USERS = "read-users"
    READ_USER = "read-user"
    CREATE_USER = "create-user"
    UPDATE_USER = "update-user"
    DELETE_USER = "delete-user"

    CREATE_SESSION = "create-session"
    CREATE_PASSWORD_RESET = "create-password-reset"
    UPDATE_PASSWORD = "update-password"

    # Self-service enrollment / removal of the caller's own second factor
    MANAGE_OWN_MFA = "manage-own-mfa"


# (key, description) pairs, seeded into permission stores by deployments
DEFAULT_PERMISSIONS = [
    (PermissionKeys.ROOT, "Full access to every operation"),
    (PermissionKeys.READ_USERS, "List user accounts"),
    (PermissionKeys.READ_USER, "Read a single user profile"),
    (PermissionKeys.CREATE_USER, "Create user accounts"),
    (PermissionKeys.UPDATE_USER, "Update user accounts, status and MFA"),
    (PermissionKeys.DELETE_USER, "Delete user accounts"),
    (PermissionKeys.CREATE_SESSION, "Log in"),
    (PermissionKeys.CREATE_PASSWORD_RESET, "Request a password reset"),
    (PermissionKeys.UPDATE_PASSWORD, "Complete a password reset"),
    (PermissionKeys.MANAGE_OWN_MFA, "Enable or disable MFA on one's own account"),
]

DEFAULT_ROLES = {
    "Administrators": {
        "description": "Unrestricted access",
        "permissions": [PermissionKeys.ROOT],
    },
    "Users": {
        "description": "Self-service account management",
        "permissions": [
            PermissionKeys.CREATE_SESSION,
            PermissionKeys.READ_USER,
            PermissionKeys.CREATE_PASSWORD_RESET,
            PermissionKeys.UPDATE_PASSWORD,
            PermissionKeys.MANAGE_OWN_MFA,
        ],
    },
    # Held by the anonymous actor used for unauthenticated requests
    "Guests": {
        "description": "Unauthenticated self-service",
        "permissions": [
            PermissionKeys.CREATE_PASSWORD_RESET,
            PermissionKeys.UPDATE_PASSWORD,
        ],
    },
}

GUEST_USER_ID = "guest"

# =============================================================================
# Config Source Keys (password policy)
# =============================================================================


class ConfigKeys:
    PASSWORD_MIN_LENGTH = "account_password_min_length"
    PASSWORD_MAX_LENGTH = "account_password_max_length"
    PASSWORD_MUST_HAVE_UPPERCASE = "account_password_must_have_uppercase"
    PASSWORD_MUST_HAVE_LOWERCASE = "account_password_must_have_lowercase"
    PASSWORD_MUST_HAVE_DIGIT = "account_password_must_have_digit"
    PASSWORD_MUST_HAVE_SPECIAL_CHAR = "account_password_must_have_special_char"


# =============================================================================
# Audit Event Names
# =============================================================================


class AuditEvents:
    LOGIN = "auth.login"
    LOGIN_FAILED = "auth.loginFailed"
    REFRESH = "auth.refresh"
    REFRESH_REUSE = "auth.refreshReuse"
    LOGOUT = "auth.logout"
    ACCOUNT_LOCKED = "user.accountLocked"
    MFA_ENABLED = "user.mfaEnabled"
    MFA_DISABLED = "user.mfaDisabled"
    PASSWORD_RESET = "user.passwordReset"
    STATUS_CHANGED = "user.statusChanged"
    USER_REMOVED = "user.removed"
