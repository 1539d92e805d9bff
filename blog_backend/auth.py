from __future__ import annotations

from flask import abort, current_app, g, request
from sqlalchemy.exc import SQLAlchemyError

from blog_backend.extensions import db
from blog_backend.models import User
from blog_backend.services.session_cache import SessionUser
from blog_backend.services.tokens import InvalidToken
from blog_backend.web import ACCESS_COOKIE_NAME, cookie_value


def _bearer_token() -> str | None:
    cookie_token = cookie_value(ACCESS_COOKIE_NAME)
    if cookie_token:
        return cookie_token
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header.removeprefix("Bearer ").strip()
        return token or None
    return None


def _load_session_user(user_id: str) -> SessionUser:
    cache = current_app.extensions["session_cache"]
    cached = cache.get(user_id)
    if cached is not None:
        return cached
    try:
        user = db.session.get(User, user_id)
    except SQLAlchemyError:
        current_app.logger.exception("Account lookup failed for %s", user_id)
        abort(500, description="Unexpected server error.")
    if user is None:
        abort(404, description="Invalid Authentication Token")
    session_user = user.to_session()
    cache.store(session_user)
    return session_user


def require_user() -> SessionUser:
    """Resolve the caller from the access token or abort with 401/404.

    The resolved identity is memoized on ``g.session_user`` for the rest of
    the request.
    """
    cached = getattr(g, "session_user", None)
    if isinstance(cached, SessionUser):
        return cached

    token = _bearer_token()
    if token is None:
        abort(401, description="Unauthorized Request, Signin Again")
    try:
        claims = current_app.extensions["token_issuer"].verify_access_token(token)
    except InvalidToken:
        abort(401, description="Unauthorized Request, Signin Again")

    session_user = _load_session_user(claims["sub"])
    g.session_user = session_user
    current_app.logger.info("Authentication successful for user: %s", session_user.username)
    return session_user
