from __future__ import annotations

import uuid
from datetime import datetime

from blog_backend.extensions import bcrypt, db, utcnow
from blog_backend.services.session_cache import SessionUser


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = db.Column(db.String(120), nullable=False)
    username = db.Column(db.String(64), unique=True, index=True, nullable=False)
    email = db.Column(db.String(320), unique=True, index=True, nullable=False)
    role = db.Column(db.String(16), nullable=False, default="regular")
    avatar_url = db.Column(db.Text, nullable=True)
    avatar_public_id = db.Column(db.String(255), nullable=True)
    password_hash = db.Column(db.Text, nullable=False)
    # Only the most recently issued refresh token is accepted.
    refresh_token = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    @property
    def password(self):
        raise AttributeError("password is write-only")

    @password.setter
    def password(self, plaintext: str) -> None:
        self.password_hash = bcrypt.generate_password_hash(plaintext).decode("utf-8")

    def check_password(self, plaintext: str) -> bool:
        if not self.password_hash or not isinstance(plaintext, str):
            return False
        # Stored hashes never come from passwords over bcrypt's 72-byte limit.
        if len(plaintext.encode("utf-8")) > 72:
            return False
        return bcrypt.check_password_hash(self.password_hash, plaintext)

    def to_session(self) -> SessionUser:
        return SessionUser(
            id=self.id,
            name=self.name,
            username=self.username,
            email=self.email,
            role=self.role or "regular",
            avatar_url=self.avatar_url,
            avatar_public_id=self.avatar_public_id,
            created_at=_iso(self.created_at),
            updated_at=_iso(self.updated_at),
        )

    def to_dict(self) -> dict:
        return session_user_dict(self.to_session())


def session_user_dict(user: SessionUser) -> dict:
    avatar = None
    if user.avatar_url:
        avatar = {"url": user.avatar_url, "publicId": user.avatar_public_id}
    return {
        "id": user.id,
        "name": user.name,
        "username": user.username,
        "email": user.email,
        "role": user.role,
        "avatar": avatar,
        "createdAt": user.created_at,
        "updatedAt": user.updated_at,
    }
