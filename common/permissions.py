import logging

from django.conf import settings
from rest_framework.permissions import BasePermission

from core.models import User

logger = logging.getLogger("security.authorization")


def _roles(*roles):
    return frozenset(str(role) for role in roles)


ALL_ROLES = _roles(*User.Role)

ROLE_CAPABILITY_MATRIX = {
    "inventory.view": ALL_ROLES,
    "branches.view": ALL_ROLES,
    "branches.manage": _roles(User.Role.SUPER_ADMIN),
    "products.manage": _roles(User.Role.SUPER_ADMIN, User.Role.BRANCH_MANAGER, User.Role.INVENTORY_CONTROLLER),
    "stock.receive": _roles(User.Role.SUPER_ADMIN, User.Role.BRANCH_MANAGER, User.Role.INVENTORY_CONTROLLER),
    "audit.view": _roles(User.Role.SUPER_ADMIN, User.Role.AUDITOR, User.Role.ACCOUNTANT),
    "transfer.view": _roles(
        User.Role.SUPER_ADMIN,
        User.Role.BRANCH_MANAGER,
        User.Role.INVENTORY_CONTROLLER,
        User.Role.STORE_KEEPER,
        User.Role.PHARMACIST,
        User.Role.ACCOUNTANT,
        User.Role.AUDITOR,
    ),
    "transfer.dispatch": _roles(User.Role.SUPER_ADMIN, User.Role.BRANCH_MANAGER, User.Role.INVENTORY_CONTROLLER),
    "transfer.verify.keeper": _roles(User.Role.SUPER_ADMIN, User.Role.BRANCH_MANAGER, User.Role.STORE_KEEPER),
    "transfer.verify.controller": _roles(User.Role.SUPER_ADMIN, User.Role.BRANCH_MANAGER, User.Role.INVENTORY_CONTROLLER),
    "requisition.view": _roles(
        User.Role.SUPER_ADMIN,
        User.Role.BRANCH_MANAGER,
        User.Role.ACCOUNTANT,
        User.Role.INVENTORY_CONTROLLER,
        User.Role.AUDITOR,
    ),
    "requisition.create": _roles(
        User.Role.SUPER_ADMIN,
        User.Role.BRANCH_MANAGER,
        User.Role.ACCOUNTANT,
        User.Role.INVENTORY_CONTROLLER,
    ),
    "requisition.decide": _roles(User.Role.SUPER_ADMIN, User.Role.BRANCH_MANAGER),
}


def get_user_role(user):
    if not user or not user.is_authenticated:
        return None
    if user.is_superuser:
        return str(User.Role.SUPER_ADMIN)
    role = getattr(user, "role", None)
    if role:
        return str(role)
    if getattr(user, "is_staff", False):
        return str(User.Role.SUPER_ADMIN)
    return str(User.Role.CASHIER)


def user_has_capability(user, capability):
    if not user or not user.is_authenticated:
        return False
    if user.is_superuser:
        return True
    allowed_roles = ROLE_CAPABILITY_MATRIX.get(capability)
    if not allowed_roles:
        return False
    return get_user_role(user) in allowed_roles


def user_sees_all_branches(user):
    """Super admins and head office staff have cross-branch visibility."""
    if not user or not user.is_authenticated:
        return False
    if get_user_role(user) == User.Role.SUPER_ADMIN:
        return True
    branch = getattr(user, "branch", None)
    return branch is not None and branch.code == settings.HEAD_OFFICE_BRANCH_CODE


class RoleCapabilityPermission(BasePermission):
    """Permission class that validates role capability by action/method and logs denied attempts."""

    message = "You do not have permission to perform this action."

    def has_permission(self, request, view):
        capability_map = getattr(view, "permission_action_map", {})
        action_key = getattr(view, "action", None) or request.method.lower()
        capability = capability_map.get(action_key)
        if capability is None:
            return True

        allowed = user_has_capability(request.user, capability)
        if not allowed:
            logger.warning(
                "permission_denied capability=%s user=%s role=%s method=%s path=%s view=%s action=%s",
                capability,
                getattr(request.user, "username", "anonymous"),
                get_user_role(request.user),
                request.method,
                request.path,
                view.__class__.__name__,
                action_key,
            )
        return allowed
