from __future__ import annotations

import json
from dataclasses import asdict, dataclass

import redis
from flask import current_app

_KEY_PREFIX = "session:user:"


@dataclass(frozen=True)
class SessionUser:
    """Password-free projection of an account, as cached and as seen by handlers."""

    id: str
    name: str
    username: str
    email: str
    role: str
    avatar_url: str | None
    avatar_public_id: str | None
    created_at: str | None
    updated_at: str | None

    @classmethod
    def from_dict(cls, payload: dict) -> "SessionUser":
        return cls(
            id=str(payload["id"]),
            name=payload.get("name") or "",
            username=payload.get("username") or "",
            email=payload.get("email") or "",
            role=payload.get("role") or "regular",
            avatar_url=payload.get("avatar_url"),
            avatar_public_id=payload.get("avatar_public_id"),
            created_at=payload.get("created_at"),
            updated_at=payload.get("updated_at"),
        )

    def to_dict(self) -> dict:
        return asdict(self)


class SessionCache:
    """Redis-backed map of account id -> session projection.

    Every write carries the same TTL; logout removes the entry. Read and write
    failures are logged and reported as a miss so callers fall back to the
    database.
    """

    def __init__(self, client, *, ttl_seconds: int = 3600) -> None:
        self._client = client
        self.ttl_seconds = ttl_seconds

    @classmethod
    def from_url(cls, url: str, *, ttl_seconds: int = 3600) -> "SessionCache":
        client = redis.Redis.from_url(url, decode_responses=True, socket_timeout=2)
        return cls(client, ttl_seconds=ttl_seconds)

    @staticmethod
    def key(user_id: str) -> str:
        return f"{_KEY_PREFIX}{user_id}"

    def get(self, user_id: str) -> SessionUser | None:
        try:
            raw = self._client.get(self.key(user_id))
        except redis.RedisError as e:
            current_app.logger.warning("Session cache read failed for %s: %s", user_id, e)
            return None
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        try:
            payload = json.loads(raw)
        except ValueError:
            current_app.logger.warning("Discarding malformed session cache entry for %s.", user_id)
            return None
        if not isinstance(payload, dict) or "id" not in payload:
            return None
        return SessionUser.from_dict(payload)

    def store(self, user: SessionUser) -> bool:
        try:
            self._client.set(self.key(user.id), json.dumps(user.to_dict()), ex=self.ttl_seconds)
        except redis.RedisError as e:
            current_app.logger.warning("Session cache write failed for %s: %s", user.id, e)
            return False
        return True

    def invalidate(self, user_id: str) -> None:
        try:
            self._client.delete(self.key(user_id))
        except redis.RedisError as e:
            current_app.logger.warning("Session cache delete failed for %s: %s", user_id, e)

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except redis.RedisError:
            return False

    def close(self) -> None:
        self._client.close()
