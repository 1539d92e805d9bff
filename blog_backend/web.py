from __future__ import annotations

import re

from flask import Response, abort, current_app, jsonify, make_response, request
from marshmallow import Schema, ValidationError

from blog_backend.services.media import MediaUploadError

ACCESS_COOKIE_NAME = "accessToken"
REFRESH_COOKIE_NAME = "refreshToken"

_UUID_RE = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)


def is_uuid(value: object) -> bool:
    return isinstance(value, str) and bool(_UUID_RE.match(value))


def api_response(data, message: str, status: int = 200) -> Response:
    resp = make_response(jsonify({"statusCode": status, "data": data, "message": message}), status)
    resp.headers["Cache-Control"] = "no-store"
    return resp


def error_payload(status: int, message: str) -> dict:
    return {"statusCode": status, "message": message}


def _first_error(messages) -> str:
    if isinstance(messages, dict):
        for value in messages.values():
            return _first_error(value)
    if isinstance(messages, (list, tuple)) and messages:
        return _first_error(messages[0])
    if isinstance(messages, str):
        return messages
    return "Invalid request."


def _request_data() -> dict:
    if request.mimetype in ("multipart/form-data", "application/x-www-form-urlencoded"):
        return request.form.to_dict()
    if not request.get_data(cache=True):
        return {}
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        abort(400, description="Expected JSON object body.")
    return data


def load_payload(schema: Schema) -> dict:
    """Validate the JSON or form body against `schema`; 400 on the first error."""
    try:
        return schema.load(_request_data())
    except ValidationError as e:
        abort(400, description=_first_error(e.messages))


def load_args(schema: Schema) -> dict:
    try:
        return schema.load(request.args.to_dict())
    except ValidationError as e:
        abort(400, description=_first_error(e.messages))


def _cookie_samesite() -> str:
    raw = str(current_app.config.get("SESSION_COOKIE_SAMESITE") or "").strip().lower()
    if raw in ("lax", "strict", "none"):
        return raw
    return "lax"


def _cookie_settings() -> tuple[str, bool]:
    samesite = _cookie_samesite()
    secure = bool(current_app.config.get("SESSION_COOKIE_SECURE", True))
    if samesite == "none" and not secure:
        raise RuntimeError("SESSION_COOKIE_SAMESITE=None requires SESSION_COOKIE_SECURE=1.")
    return ("None" if samesite == "none" else samesite.capitalize()), secure


def set_auth_cookies(resp: Response, *, access_token: str, refresh_token: str) -> None:
    samesite, secure = _cookie_settings()
    issuer = current_app.extensions["token_issuer"]
    for name, value, max_age in (
        (ACCESS_COOKIE_NAME, access_token, issuer.access_ttl_seconds),
        (REFRESH_COOKIE_NAME, refresh_token, issuer.refresh_ttl_seconds),
    ):
        resp.set_cookie(
            name,
            value,
            max_age=max_age,
            httponly=True,
            secure=secure,
            samesite=samesite,
            path="/",
        )


def clear_auth_cookies(resp: Response) -> None:
    samesite, secure = _cookie_settings()
    for name in (ACCESS_COOKIE_NAME, REFRESH_COOKIE_NAME):
        resp.delete_cookie(name, path="/", secure=secure, httponly=True, samesite=samesite)


def cookie_value(name: str) -> str | None:
    value = request.cookies.get(name)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def uploaded_file(field: str):
    storage = request.files.get(field)
    if storage is None or not storage.filename:
        return None
    return storage


def relay_upload(stream, *, folder: str, filename: str | None, content_type: str | None):
    """Store an image through the media relay; aborts the request on failure."""
    relay = current_app.extensions.get("media_relay")
    if relay is None:
        abort(503, description="Media storage is not configured.")
    try:
        return relay.upload(stream, folder=folder, filename=filename, content_type=content_type)
    except MediaUploadError:
        abort(500, description="Image Upload Failed")


def relay_delete(public_id: str | None) -> None:
    """Best-effort removal of a stored image; failures are only logged."""
    if not public_id:
        return
    relay = current_app.extensions.get("media_relay")
    if relay is None:
        current_app.logger.warning("Media storage not configured; leaving %s in place.", public_id)
        return
    relay.delete(public_id)
