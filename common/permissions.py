import logging

from rest_framework.permissions import BasePermission

from core.models import User

logger = logging.getLogger("security.authorization")

STAFF_ROLES = {User.Role.ADMIN, User.Role.SUPERADMIN}
ALL_ROLES = {User.Role.CUSTOMER, User.Role.ADMIN, User.Role.SUPERADMIN, User.Role.DELIVERY}

ROLE_CAPABILITY_MATRIX = {
    "inventory.view": ALL_ROLES,
    "inventory.manage": STAFF_ROLES,
    "stock.adjust": STAFF_ROLES,
    "stock.transfer": STAFF_ROLES,
    "purchasing.manage": STAFF_ROLES,
    "records.manage": STAFF_ROLES,
    "customers.view": {User.Role.ADMIN, User.Role.SUPERADMIN, User.Role.DELIVERY},
    "quotation.view": ALL_ROLES,
    "quotation.create": {User.Role.CUSTOMER, User.Role.ADMIN, User.Role.SUPERADMIN},
    "quotation.edit": STAFF_ROLES,
    "quotation.approve": STAFF_ROLES,
    "quotation.reject": {User.Role.ADMIN},
    "quotation.deliver": {User.Role.DELIVERY},
    "quotation.convert": {User.Role.CUSTOMER},
    "quotation.cancel": STAFF_ROLES,
    "quotation.cancellation.resolve": STAFF_ROLES,
    "sale.view": {User.Role.ADMIN, User.Role.SUPERADMIN, User.Role.DELIVERY},
    "sale.create": STAFF_ROLES,
    "sale.payment.record": STAFF_ROLES,
    "notifications.view": ALL_ROLES,
}


def get_user_role(user):
    if not user or not user.is_authenticated:
        return None
    if user.is_superuser:
        return User.Role.SUPERADMIN
    role = getattr(user, "role", None)
    if role:
        return role
    if getattr(user, "is_staff", False):
        return User.Role.ADMIN
    return User.Role.CUSTOMER


def user_has_capability(user, capability):
    if not user or not user.is_authenticated:
        return False
    if user.is_superuser:
        return True
    allowed_roles = ROLE_CAPABILITY_MATRIX.get(capability)
    if not allowed_roles:
        return False
    return get_user_role(user) in allowed_roles


def role_has_capability(user, capability):
    """Decide by role alone. Superusers hold exactly what the superadmin role holds."""
    if not user or not user.is_authenticated:
        return False
    return get_user_role(user) in ROLE_CAPABILITY_MATRIX.get(capability, ())


def log_denied(user, capability, **context):
    logger.warning(
        "permission_denied capability=%s user=%s role=%s %s",
        capability,
        getattr(user, "username", "anonymous"),
        get_user_role(user),
        " ".join(f"{key}={value}" for key, value in context.items()),
    )


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
            log_denied(
                request.user,
                capability,
                method=request.method,
                path=request.path,
                view=view.__class__.__name__,
                action=action_key,
            )
        return allowed
