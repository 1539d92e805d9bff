from __future__ import annotations

import re
import uuid
from datetime import datetime, timedelta, timezone

import jwt

_ALGORITHM = "HS256"
_EXPIRY_RE = re.compile(r"^\s*(\d+)\s*([smhd]?)\s*$", re.IGNORECASE)
_EXPIRY_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}


class InvalidToken(Exception):
    """Raised for malformed, expired or wrongly signed tokens."""


def parse_expiry(value: str | int) -> int:
    """Convert an expiry such as ``900``, ``"15m"`` or ``"10d"`` to seconds."""
    if isinstance(value, int):
        return value
    match = _EXPIRY_RE.match(str(value))
    if match is None:
        raise ValueError(f"Invalid token expiry: {value!r}")
    amount, unit = match.groups()
    return int(amount) * _EXPIRY_UNITS[unit.lower()]


class TokenIssuer:
    def __init__(
        self,
        *,
        access_secret: str,
        access_ttl_seconds: int,
        refresh_secret: str,
        refresh_ttl_seconds: int,
    ) -> None:
        if not access_secret or not refresh_secret:
            raise ValueError("Both token secrets must be configured.")
        self._access_secret = access_secret
        self._refresh_secret = refresh_secret
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds

    @classmethod
    def from_config(cls, config) -> "TokenIssuer":
        return cls(
            access_secret=config.get("ACCESS_TOKEN_SECRET") or "",
            access_ttl_seconds=parse_expiry(config.get("ACCESS_TOKEN_EXPIRY", "1d")),
            refresh_secret=config.get("REFRESH_TOKEN_SECRET") or "",
            refresh_ttl_seconds=parse_expiry(config.get("REFRESH_TOKEN_EXPIRY", "10d")),
        )

    def _sign(self, claims: dict, *, secret: str, ttl_seconds: int) -> str:
        now = datetime.now(timezone.utc)
        payload = dict(claims)
        payload["iat"] = now
        payload["exp"] = now + timedelta(seconds=ttl_seconds)
        return jwt.encode(payload, secret, algorithm=_ALGORITHM)

    def issue_access_token(self, user) -> str:
        return self._sign(
            {"sub": user.id, "email": user.email, "name": user.name, "role": user.role},
            secret=self._access_secret,
            ttl_seconds=self.access_ttl_seconds,
        )

    def issue_refresh_token(self, user_id: str) -> str:
        # jti keeps two refresh tokens issued within the same second distinct.
        return self._sign(
            {"sub": user_id, "jti": uuid.uuid4().hex},
            secret=self._refresh_secret,
            ttl_seconds=self.refresh_ttl_seconds,
        )

    @staticmethod
    def _verify(token: str, secret: str) -> dict:
        if not isinstance(token, str) or not token.strip():
            raise InvalidToken("Missing token.")
        try:
            claims = jwt.decode(
                token.strip(),
                secret,
                algorithms=[_ALGORITHM],
                options={"require": ["exp", "sub"]},
            )
        except jwt.ExpiredSignatureError as e:
            raise InvalidToken("Token has expired.") from e
        except jwt.InvalidTokenError as e:
            raise InvalidToken("Token is invalid.") from e
        if not isinstance(claims.get("sub"), str) or not claims["sub"]:
            raise InvalidToken("Token has no subject.")
        return claims

    def verify_access_token(self, token: str) -> dict:
        return self._verify(token, self._access_secret)

    def verify_refresh_token(self, token: str) -> dict:
        return self._verify(token, self._refresh_secret)
