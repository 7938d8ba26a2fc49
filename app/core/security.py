"""
Password hashing, token generation & access-token helpers.

- Passwords are hashed with bcrypt directly (passlib is unmaintained
  and broken with bcrypt>=4.1).
- Failed lookups still pay for one bcrypt comparison, so an unknown
  username and a wrong password take the same shape.
- Access tokens are JWTs carrying the full `LocalSession`; the server
  re-validates the embedded session against the registry on every
  session check, so the JWT alone never authorizes anything.
"""

import secrets
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any

import bcrypt
from fastapi import Depends, Header
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt

from app.core.config import settings
from app.core.errors import AccessRevoked
from app.schemas import LocalSession

# ── Password hashing ────────────────────────────────────────────────


def hash_password(plain: str) -> str:
    salt = bcrypt.gensalt(rounds=settings.BCRYPT_ROUNDS)
    return bcrypt.hashpw(plain.encode("utf-8"), salt).decode("utf-8")


@lru_cache(maxsize=1)
def _dummy_hash() -> str:
    return hash_password(secrets.token_urlsafe(16))


def verify_password(plain: str, hashed: str | None) -> bool:
    """bcrypt check; a missing hash is compared against a throwaway one."""
    if not hashed:
        bcrypt.checkpw(plain.encode("utf-8"), _dummy_hash().encode("utf-8"))
        return False
    return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))


def check_admin_credentials(username: str, password: str) -> bool:
    if not settings.ADMIN_PASSWORD:
        return False
    return secrets.compare_digest(username, settings.ADMIN_USERNAME) and secrets.compare_digest(
        password.encode("utf-8"), settings.ADMIN_PASSWORD.encode("utf-8")
    )


# ── Opaque values ────────────────────────────────────────────────────


def generate_token_value() -> str:
    """Cryptographically secure URL-safe invitation token."""
    return secrets.token_urlsafe(24)


def generate_session_id() -> str:
    return secrets.token_hex(16)


# ── JWT ──────────────────────────────────────────────────────────────
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/signin")


def create_access_token(session: LocalSession, expires_delta: timedelta | None = None) -> str:
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode: dict[str, Any] = {
        "sub": session.user_id,
        "session": session.model_dump(mode="json"),
        "exp": expire,
    }
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_access_token(token: str) -> LocalSession:
    """Decode & validate a JWT.  Raises AccessRevoked on failure."""
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        raise AccessRevoked("Invalid or expired access token")
    session = payload.get("session")
    if not isinstance(session, dict):
        raise AccessRevoked("Invalid access token payload")
    return LocalSession.model_validate(session)


# ── Request dependencies ────────────────────────────────────────────


async def get_current_session(token: str = Depends(oauth2_scheme)) -> LocalSession:
    """The caller's local session, as signed into its access token."""
    return decode_access_token(token)


async def get_device_fingerprint(
    x_device_fingerprint: str = Header(..., max_length=256),
) -> str:
    """The fingerprint the calling device presents on this request."""
    return x_device_fingerprint
