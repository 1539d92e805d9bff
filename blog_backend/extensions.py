from datetime import datetime, timezone

from flask_bcrypt import Bcrypt
from flask_sqlalchemy import SQLAlchemy

# Unbound extension objects; `create_app` initializes them per application.
db = SQLAlchemy()

# Password hashing; work factor comes from BCRYPT_LOG_ROUNDS (10 by default).
bcrypt = Bcrypt()


def utcnow() -> datetime:
    """Naive UTC timestamp for DateTime column defaults."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
