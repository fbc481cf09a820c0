"""
Authorization: the permission engine that gates every protected operation.

A user's effective grants are the grants of each of their roles plus the
grants assigned to them directly. Evaluation is synchronous and has no
side effects, so use cases call it before touching any state.
"""
import logging
from typing import Iterable, Optional

from core.errors import ForbiddenError
from .config import DEFAULT_PERMISSIONS, DEFAULT_ROLES, GUEST_USER_ID, PermissionKeys
from .types import Permission, PermissionGrant, Role, User

logger = logging.getLogger(__name__)


def effective_grants(user: User) -> list[PermissionGrant]:
    """Collect role and direct grants, dropping keys denied on the user.

    Args:
        user: Actor whose grants are collected

    Returns:
        List of grants that may authorize a request
    """
    denied = {g.key for g in user.permissions if g.deny}
    grants: list[PermissionGrant] = []
    for role in user.roles:
        grants.extend(role.permissions)
    grants.extend(g for g in user.permissions if not g.deny)
    return [g for g in grants if g.key not in denied]


def _grant_matches(grant: PermissionGrant, key: str, scope_id: Optional[str]) -> bool:
    if grant.key != key:
        return False
    return grant.scope_id is None or grant.scope_id == scope_id


def user_has_permission(user: User, key: str, scope_id: Optional[str] = None) -> bool:
    """Check whether a user may perform `key`, optionally within `scope_id`.

    A root grant authorizes everything. Otherwise an unscoped grant for
    `key` matches any requested scope; a scoped grant only matches the
    same scope (and never an unscoped request).
    """
    grants = effective_grants(user)
    if any(g.key == PermissionKeys.ROOT for g in grants):
        return True
    return any(_grant_matches(g, key, scope_id) for g in grants)


class PermissionEngine:
    """Stateless evaluator answering "can this actor do X (in scope Y)?"."""

    def has(self, actor: User, key: str, scope_id: Optional[str] = None) -> bool:
        return user_has_permission(actor, key, scope_id)

    def check(self, actor: User, key: str, scope_id: Optional[str] = None) -> None:
        """Raise ForbiddenError unless the actor holds the permission.

        Args:
            actor: Authenticated user
            key: Permission key to verify
            scope_id: Optional scope (e.g. department id)

        Raises:
            ForbiddenError: No matching grant
        """
        if not self.has(actor, key, scope_id):
            logger.info(
                f"Permission denied: user={actor.id} key={key} scope={scope_id}",
                extra={"user_id": actor.id},
            )
            raise ForbiddenError()

    def check_any(self, actor: User, keys: Iterable[str], scope_id: Optional[str] = None) -> None:
        """Raise ForbiddenError unless at least one of `keys` is granted."""
        keys = list(keys)
        if not any(self.has(actor, k, scope_id) for k in keys):
            logger.info(
                f"Permission denied: user={actor.id} keys={','.join(keys)} scope={scope_id}",
                extra={"user_id": actor.id},
            )
            raise ForbiddenError()


def get_user_permissions(user: User) -> list[str]:
    """Sorted distinct permission keys a user holds (for token claims and UIs)."""
    return sorted({g.key for g in effective_grants(user)})


def build_default_role(label: str) -> Role:
    """Build one of the DEFAULT_ROLES as a Role with unscoped grants."""
    role_def = DEFAULT_ROLES[label]
    descriptions = dict(DEFAULT_PERMISSIONS)
    grants = tuple(
        PermissionGrant(Permission(id=key, key=key, description=descriptions.get(key, "")))
        for key in role_def["permissions"]
    )
    return Role(id=label.lower(), label=label, permissions=grants)


def guest_actor() -> User:
    """Actor for unauthenticated requests (password reset request and completion)."""
    return User(id=GUEST_USER_ID, email="", roles=[build_default_role("Guests")])
