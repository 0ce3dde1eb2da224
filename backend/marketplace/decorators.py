# Overview: Request authentication and role decorators for API routes.

from functools import wraps
from flask import request, jsonify, g

from .extensions import db
from .services import session_service
from .services.access_service import actor_for_user
from .states import UserRole


def _is_authenticated() -> bool:
    return hasattr(g, 'current_user') and hasattr(g, 'actor')


def require_auth(f):
    """
    Require a valid bearer token.

    Sets the following Flask g attributes:
    - g.current_user: The authenticated User object
    - g.actor: Actor (user id, role, owned supplier id) passed to services

    SECURITY: Returns 401 if:
    - No Authorization header
    - Invalid, expired or revoked token
    - User account deactivated
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get("Authorization")

        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify({"error": "Authentication required"}), 401

        token = auth_header.split(" ", 1)[1]
        context = session_service.validate_session(token)

        if not context:
            return jsonify({"error": "Invalid or expired token"}), 401

        g.current_user = context.user
        g.actor = actor_for_user(db.session, context.user)

        return f(*args, **kwargs)

    return decorated_function


def require_role(*roles):
    """
    Require one of the given roles (use after @require_auth).

    ADMIN implies SUPER_ADMIN is accepted as well.
    """
    allowed = {UserRole(role) for role in roles}
    if UserRole.ADMIN in allowed:
        allowed.add(UserRole.SUPER_ADMIN)

    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not _is_authenticated():
                return jsonify({"error": "Authentication required"}), 401

            if g.actor.role not in allowed:
                return jsonify({"error": "Permission denied", "code": "FORBIDDEN"}), 403

            return f(*args, **kwargs)

        return decorated_function
    return decorator
