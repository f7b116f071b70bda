from __future__ import annotations

from flask import abort, g

from nemy.errors import AuthorizationError
from nemy.extensions import db
from nemy.models import User


def current_user() -> User | None:
    uid = getattr(g, "auth_user_id", None)
    if uid is None:
        return None
    return db.session.get(User, int(uid))


def require_user(*roles: str) -> User:
    """Return the authenticated user, or abort 401 / raise 403 on role mismatch."""
    user = current_user()
    if user is None:
        abort(401, description="Authentication required")
    role = (user.role or "customer").strip().lower()
    if roles and role not in roles:
        raise AuthorizationError(f"{'/'.join(roles)} role required", role=role)
    return user
