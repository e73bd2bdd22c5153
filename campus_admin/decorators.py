from functools import wraps

from flask import current_app
from flask_login import current_user

from .errors import AuthenticationRequired, PermissionDenied, RootPrivilegeRequired


# Capability checks. Role and root privilege are independent: destructive
# operations compose both, ordinary ledger operations need only the role.

def require_authenticated(user):
    if user is None or not getattr(user, "is_authenticated", False):
        raise AuthenticationRequired("Authentication required")
    return user


def require_role(user, *roles):
    require_authenticated(user)
    user_role = (getattr(user, "role", "") or "").strip().lower()
    allowed = {r.strip().lower() for r in roles}
    if user_role not in allowed:
        raise PermissionDenied("You do not have permission to access this resource.")
    return user


def require_admin(user):
    return require_role(user, "admin")


def require_root(user):
    require_authenticated(user)
    if not getattr(user, "is_root", False):
        current_app.logger.warning(
            "Root privilege denied for user_id=%s", getattr(user, "user_id", None)
        )
        raise RootPrivilegeRequired("Forbidden. Only Root Administrators can perform this operation.")
    return user


def role_required(*roles):
    """
    Decorator to ensure the current user has one of the allowed roles.
    Must be placed *after* @login_required.
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            require_role(current_user, *roles)
            return func(*args, **kwargs)
        return wrapper
    return decorator


def root_required(func):
    """Reject callers without the root flag. Combine with role_required("admin")."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        require_root(current_user)
        return func(*args, **kwargs)
    return wrapper
