from __future__ import annotations

from flask import g, request

from campus_market.errors import ForbiddenError, UnauthorizedError
from campus_market.extensions import db
from campus_market.models import User
from campus_market.utils.jwt_utils import decode_token, get_bearer_token


def current_user() -> User | None:
    cached = getattr(g, "_auth_user", None)
    if cached is not None:
        return cached
    token = get_bearer_token(request.headers.get("Authorization", ""))
    if not token:
        return None
    payload = decode_token(token)
    if not payload:
        return None
    try:
        uid = int(payload.get("sub") or 0)
    except (TypeError, ValueError):
        return None
    user = db.session.get(User, uid)
    if user is not None:
        g._auth_user = user
    return user


def require_user() -> User:
    user = current_user()
    if user is None:
        raise UnauthorizedError("Authentication required")
    return user


def is_admin(user: User | None) -> bool:
    if not user:
        return False
    return (getattr(user, "role", None) or "").strip().lower() == "admin"


def require_admin() -> User:
    user = require_user()
    if not is_admin(user):
        raise ForbiddenError("Admin access required")
    return user
