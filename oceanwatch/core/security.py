"""
security.py — Password hashing and JWT utilities.

Uses:
  - bcrypt (direct, no passlib)
  - python-jose for JWT creation / verification

The same tokens authenticate HTTP requests (Authorization: Bearer ...)
and the realtime `authenticate` handshake on the WebSocket channel.
Configuration is read from oceanwatch.core.config.settings.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
from jose import JWTError, jwt

from oceanwatch.core.config import settings

# ── Password hashing ──────────────────────────────────────────────────────────

def hash_password(plain: str) -> str:
    """Return bcrypt hash of *plain* password (bcrypt only uses the first 72 bytes)."""
    salt = bcrypt.gensalt()
    return bcrypt.hashpw(plain.encode("utf-8"), salt).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if *plain* matches *hashed*."""
    return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))


# ── JWT ───────────────────────────────────────────────────────────────────────

def create_access_token(
    subject: str,
    role: Optional[str] = None,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Create a signed JWT.

    Args:
        subject:       The user's string ID.
        role:          Optional role claim. Informational only: every check
                       re-reads the role from the users collection.
        expires_delta: Custom TTL; defaults to settings.jwt_expiry_hours.
    """
    delta = expires_delta or timedelta(hours=settings.jwt_expiry_hours)
    expire = datetime.now(tz=timezone.utc) + delta
    payload = {"sub": subject, "exp": expire}
    if role:
        payload["role"] = role
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> Optional[str]:
    """
    Decode and validate a JWT.

    Returns the *sub* claim (user ID) on success, or None if the token
    is missing, expired, or otherwise invalid.
    """
    if not token:
        return None
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
        )
        return payload.get("sub")
    except JWTError:
        return None
