"""Signed session tokens and role checks for route handlers."""
from __future__ import annotations

from functools import wraps
from typing import Any, Callable

from flask import current_app, g, request
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from .errors import Forbidden, Unauthorized
from .extensions import db
from .models import User


def _serializer() -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(current_app.config["SECRET_KEY"], salt="auth-token")


def build_token(user: User) -> str:
    return _serializer().dumps({"user_id": user.user_id, "role": user.role})


def read_token(token: str) -> dict[str, Any] | None:
    """Return the token payload, or ``None`` if it is invalid or expired."""
    try:
        return _serializer().loads(token, max_age=current_app.config["AUTH_TOKEN_MAX_AGE"])
    except (SignatureExpired, BadSignature):
        return None


def _request_token() -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:]
    return request.cookies.get(current_app.config["AUTH_COOKIE_NAME"])


def get_current_user() -> User | None:
    token = _request_token()
    if not token:
        return None
    payload = read_token(token)
    if not payload or "user_id" not in payload:
        return None
    return db.session.get(User, payload["user_id"])


def login_required(*roles: str) -> Callable:
    """Resolve the caller into ``g.current_user``, optionally checking role."""

    def decorator(view: Callable) -> Callable:
        @wraps(view)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            user = get_current_user()
            if user is None:
                raise Unauthorized()
            if roles and user.role not in roles:
                raise Forbidden()
            g.current_user = user
            return view(*args, **kwargs)

        return wrapper

    return decorator
