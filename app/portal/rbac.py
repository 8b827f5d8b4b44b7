import logging
from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import g, jsonify, request

from app.portal.models import User

logger = logging.getLogger(__name__)


def permission_keys(user: User | None) -> frozenset[str]:
    if not user or not user.is_active:
        return frozenset()
    return frozenset(p.key for role in user.roles for p in role.permissions)


def user_has_permission(user: User | None, permission_key: str) -> bool:
    return permission_key in permission_keys(user)


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Document routes answer in JSON: 401 without a session, 403 naming the missing permission."""

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            if not user or not user.is_active:
                return jsonify({"success": False, "error": "Authentication required"}), 401
            if not user_has_permission(user, permission_key):
                g.missing_permission = permission_key
                logger.info("Denied %s %s to user %s (needs %s)", request.method, request.path, user.id, permission_key)
                return jsonify({"success": False, "error": "Forbidden", "missingPermission": permission_key}), 403
            return fn(*args, **kwargs)

        return wrapped

    return decorator
