from __future__ import annotations

from flask import g, request

from app.models import User
from app.services.errors import ErrorKind, WorkflowError
from app.utils.jwt_utils import decode_token, get_bearer_token


def current_user() -> User | None:
    token = get_bearer_token(request.headers.get("Authorization", ""))
    if not token:
        return None
    payload = decode_token(token)
    if not payload:
        return None
    sub = str(payload.get("sub") or "").strip()
    if not sub:
        return None
    user = User.query.get(sub)
    if user is not None:
        g.auth_user_id = user.id
        g.auth_role = user.role
    return user


def require_user() -> User:
    user = current_user()
    if user is None:
        raise WorkflowError(ErrorKind.UNAUTHORIZED, "Authentication required")
    return user


def require_admin() -> User:
    user = require_user()
    if not user.is_admin:
        raise WorkflowError(ErrorKind.FORBIDDEN, "Admin access required")
    return user
