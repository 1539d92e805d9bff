from __future__ import annotations

import re
import unicodedata

from blog_backend.extensions import db
from blog_backend.models import User

_NON_HANDLE_RE = re.compile(r"[^a-z0-9]+")
_MAX_HANDLE_LENGTH = 48


def normalize_email(email: str) -> str:
    return email.strip().lower()


def is_email_like(value: str) -> bool:
    if not value or value.strip() != value:
        return False
    if " " in value:
        return False
    if value.count("@") != 1:
        return False
    local, domain = value.split("@", 1)
    if not local or not domain:
        return False
    if "." not in domain:
        return False
    if domain.startswith(".") or domain.endswith("."):
        return False
    return True


def username_base(name: str) -> str:
    ascii_name = (
        unicodedata.normalize("NFKD", name or "").encode("ascii", "ignore").decode("ascii")
    )
    base = _NON_HANDLE_RE.sub("", ascii_name.lower())[:_MAX_HANDLE_LENGTH]
    return base or "user"


def generate_username(name: str) -> str:
    """Derive a free handle from a display name.

    "Ann Lee" becomes ``annlee``; when that is taken the smallest free numeric
    suffix is appended (``annlee1``, ``annlee2``, ...).
    """
    base = username_base(name)
    rows = (
        db.session.query(User.username)
        .filter(User.username.like(f"{base}%"))
        .all()
    )
    taken = {row[0] for row in rows}
    if base not in taken:
        return base
    suffix = 1
    while f"{base}{suffix}" in taken:
        suffix += 1
    return f"{base}{suffix}"


def email_in_use(email: str, *, exclude_user_id: str | None = None) -> bool:
    query = User.query.filter_by(email=email)
    if exclude_user_id is not None:
        query = query.filter(User.id != exclude_user_id)
    return db.session.query(query.exists()).scalar()
