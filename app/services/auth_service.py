"""
Authentication service.

Handles:
- Sign-in with single-active-session enforcement
- Sign-up by redeeming a one-time invitation token
- Session check: re-derive a local session's validity from the store

Concurrency rules:
- One active device per user.  Signing in again from the same device
  supersedes the old session; signing in from a different device while
  a session is active is refused (no silent takeover).
- The reserved admin account never touches the session registry.

Services only flush.  Committing is the caller's job: the request
scope for HTTP routes, `run_in_transaction` for `AuthClient`.
"""

import logging
import uuid

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import (
    AccessRevoked,
    AlreadyLoggedInElsewhere,
    InvalidCredentials,
    InvalidToken,
    TokenAlreadyUsed,
    TokenDeactivated,
    TokenExpired,
    UsernameTaken,
)
from app.core.security import (
    check_admin_credentials,
    generate_session_id,
    hash_password,
    verify_password,
)
from app.models.base import as_utc, utcnow
from app.models.token import Token
from app.models.user import User
from app.schemas import LocalSession
from app.services import session_service

logger = logging.getLogger(__name__)

ADMIN_USER_ID = "admin"


# ── Lookups ──────────────────────────────────────────────────────────

async def get_user_by_username(username: str, db: AsyncSession) -> User | None:
    stmt = select(User).where(User.username == username)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def get_token(token: str, db: AsyncSession) -> Token | None:
    stmt = select(Token).where(Token.token == token)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


def _parse_user_id(user_id: str) -> uuid.UUID:
    try:
        return uuid.UUID(user_id)
    except (TypeError, ValueError):
        raise AccessRevoked("Malformed session user id")


# ── Sign-in ──────────────────────────────────────────────────────────

def admin_session(username: str, device_fingerprint: str) -> LocalSession:
    return LocalSession(
        username=username,
        user_id=ADMIN_USER_ID,
        session_id=generate_session_id(),
        device_fingerprint=device_fingerprint,
        created_at=utcnow(),
        is_admin=True,
    )


async def sign_in(
    username: str,
    password: str,
    device_fingerprint: str,
    db: AsyncSession,
) -> LocalSession:
    """
    Validate credentials, refuse a second device, and open a session.

    Returns the local session record the client should persist.
    """
    if username == settings.ADMIN_USERNAME:
        if check_admin_credentials(username, password):
            logger.info("Admin signed in")
            return admin_session(username, device_fingerprint)
        logger.info("Admin sign-in rejected")
        raise InvalidCredentials()

    user = await get_user_by_username(username, db)
    password_ok = verify_password(password, user.password_hash if user else None)
    if user is None or not password_ok:
        logger.info("Sign-in failed for %s", username)
        raise InvalidCredentials()

    for sess in await session_service.get_active_sessions(user.id, db):
        if sess.device_fingerprint != device_fingerprint:
            logger.info("Sign-in refused for %s: active on another device", username)
            raise AlreadyLoggedInElsewhere()

    session_id = await session_service.create_session(user.id, device_fingerprint, db)
    created = await session_service.get_session(session_id, db)

    logger.info("User %s signed in", username)
    return LocalSession(
        username=user.username,
        user_id=str(user.id),
        session_id=session_id,
        device_fingerprint=device_fingerprint,
        token=user.token,
        token_expiry=user.token_expiry,
        created_at=created.created_at if created else utcnow(),
    )


# ── Sign-up ──────────────────────────────────────────────────────────

async def mark_token_used(token: str, username: str, db: AsyncSession) -> bool:
    """
    Flag *token* as consumed by *username*.  Idempotent; returns False
    when the token row no longer exists.
    """
    token_row = await get_token(token, db)
    if token_row is None:
        logger.warning("Cannot mark missing token used for %s", username)
        return False
    token_row.is_used = True
    token_row.used_by = username
    await db.flush()
    return True


async def sign_up(
    username: str,
    password: str,
    token: str,
    db: AsyncSession,
    device_fingerprint: str | None = None,
) -> User:
    """Redeem *token* and create the account."""
    # the admin name signs in against the configured pair, never a user row
    if username == settings.ADMIN_USERNAME:
        raise UsernameTaken()
    if await get_user_by_username(username, db) is not None:
        raise UsernameTaken()

    token_row = await get_token(token, db)
    if token_row is None:
        raise InvalidToken()
    if token_row.is_used:
        raise TokenAlreadyUsed()

    user = User(
        id=uuid.uuid4(),
        username=username,
        password_hash=hash_password(password),
        token=token,
        token_expiry=token_row.expiry_date,
        device_fingerprint=device_fingerprint,
        created_at=utcnow(),
    )
    db.add(user)
    try:
        await db.flush()
    except IntegrityError as exc:
        # lost a race against another sign-up with the same username
        raise UsernameTaken() from exc

    await mark_token_used(token, username, db)
    logger.info("User %s signed up", username)
    return user


# ── Session check ────────────────────────────────────────────────────

async def check_session(
    local: LocalSession,
    device_fingerprint: str | None,
    db: AsyncSession,
) -> LocalSession | None:
    """
    Re-derive *local*'s validity from the store.

    Returns:
    - None for an admin session whose username no longer matches the
      configured admin (caller clears it);
    - *local* unchanged when the registry rejects the session (the
      caller keeps it; a transient store error must not log anyone out);
    - a refreshed copy otherwise.

    Raises AccessRevoked, TokenExpired or TokenDeactivated when the
    account or its token no longer grants access.
    """
    if local.is_admin:
        if local.username == settings.ADMIN_USERNAME:
            return local
        logger.warning("Admin session for %s no longer matches configuration", local.username)
        return None

    user = await get_user_by_username(local.username, db)
    if user is None:
        raise AccessRevoked()

    token_row = await get_token(user.token, db) if user.token else None
    if token_row is None:
        raise TokenDeactivated("Invalid token. Please contact admin.")
    if as_utc(token_row.expiry_date) < utcnow():
        raise TokenExpired()
    if not token_row.is_used:
        raise TokenDeactivated()

    valid = await session_service.validate_session(
        local.session_id, _parse_user_id(local.user_id), device_fingerprint, db,
    )
    if not valid:
        logger.warning("Session validation failed for %s, keeping local session", local.username)
        return local

    return local.model_copy(
        update={
            "username": user.username,
            "user_id": str(user.id),
            "token": user.token,
            "token_expiry": user.token_expiry,
            "is_admin": False,
            "is_logged_in": True,
        }
    )


async def sign_out(local: LocalSession, db: AsyncSession) -> None:
    """End the server half of *local*.  Admin sessions have none."""
    if local.is_admin:
        return
    await session_service.end_session(local.session_id, db)
    logger.info("User %s signed out", local.username)
