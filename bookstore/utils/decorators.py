# ------- bookstore/utils/decorators.py -------
from functools import wraps

from flask import g, jsonify
from flask_jwt_extended import get_jwt_identity, verify_jwt_in_request

from ..extensions import db
from ..model.user import User
from ..utils.api import api_error


def _current_user():
    verify_jwt_in_request()
    uid = get_jwt_identity()
    try:
        uid = int(uid)
    except (TypeError, ValueError):
        uid = None
    return db.session.get(User, uid) if uid else None


def role_required(*roles, message: str | None = None):
    """Require a valid token for a known user; with ``roles``, one of them."""
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            u = _current_user()
            if not u:
                return jsonify(api_error("Unauthorized")), 401
            if roles and u.role not in roles:
                return jsonify(api_error(message or "Forbidden")), 403
            g.current_user = u
            return fn(*args, **kwargs)
        return wrapper
    return decorator


login_required = role_required()
admin_required = role_required("admin", message="Admin access required")


def current_user_id() -> int:
    return g.current_user.id
