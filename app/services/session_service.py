"""
Session service — the single-active-session registry.

Handles:
- Creating a session while superseding every older one for the user
- Validating a session against the presenting device fingerprint
- Ending single sessions (sign-out) or all of a user's sessions
  (admin force logout / revocation)

Invariant: at most one active row per user.  The partial unique index
on `sessions` stops two active rows from coexisting, but it cannot say
*which* one should survive, so `create_session` re-reads after insert
and reconciles on "newest wins".

Every mutation goes through the ORM (load, then assign) rather than
bulk `update()` so the change feed sees it.
"""

import logging
import uuid
from collections.abc import Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import ConcurrentSessionConflict
from app.core.security import generate_session_id
from app.models.base import as_utc, utcnow
from app.models.session import UserSession

logger = logging.getLogger(__name__)


def _newest_first_key(sess: UserSession) -> tuple:
    # Equal timestamps fall back to the session id so every racer
    # picks the same survivor.
    return (as_utc(sess.created_at), sess.session_id)


def pick_survivor(sessions: Sequence[UserSession]) -> UserSession:
    """Return the session that wins a race: latest created_at, then greatest session_id."""
    return max(sessions, key=_newest_first_key)


async def get_active_sessions(
    user_id: uuid.UUID,
    db: AsyncSession,
) -> list[UserSession]:
    """Return all active sessions for a user."""
    stmt = select(UserSession).where(
        UserSession.user_id == user_id,
        UserSession.is_active == True,  # noqa: E712
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def get_session(session_id: str, db: AsyncSession) -> UserSession | None:
    """Return a session by its opaque id, active or not."""
    stmt = select(UserSession).where(UserSession.session_id == session_id)
    result = await db.execute(stmt)
    return result.scalars().first()


async def create_session(
    user_id: uuid.UUID,
    device_fingerprint: str,
    db: AsyncSession,
) -> str:
    """
    Supersede every session of *user_id* with a new active one.

    Returns the new opaque session id.  Raises ConcurrentSessionConflict
    if a concurrent sign-in for the same user won the race.
    """
    # (a) deactivate everything the user currently holds
    for sess in await get_active_sessions(user_id, db):
        sess.is_active = False
    await db.flush()

    # (b) insert the new active session
    now = utcnow()
    session_id = generate_session_id()
    new_session = UserSession(
        id=uuid.uuid4(),
        user_id=user_id,
        session_id=session_id,
        device_fingerprint=device_fingerprint,
        is_active=True,
        created_at=now,
        last_active=now,
    )
    db.add(new_session)
    try:
        await db.flush()
    except IntegrityError as exc:
        logger.warning("Active-session index rejected new session for user %s", user_id)
        raise ConcurrentSessionConflict() from exc

    # (c) re-read and reconcile
    active = await get_active_sessions(user_id, db)
    if not active:
        raise ConcurrentSessionConflict("Failed to create session - no active session found")

    if len(active) > 1:
        survivor = pick_survivor(active)
        for sess in active:
            if sess.id != survivor.id:
                sess.is_active = False
        await db.flush()
        logger.warning(
            "Reconciled %d active sessions for user %s", len(active), user_id,
        )
        if survivor.session_id != session_id:
            raise ConcurrentSessionConflict()

    logger.info("Created session for user %s", user_id)
    return session_id


async def validate_session(
    session_id: str,
    user_id: uuid.UUID,
    device_fingerprint: str | None,
    db: AsyncSession,
) -> bool:
    """
    True when (session_id, user_id) names an active session bound to
    *device_fingerprint*.  A fingerprint mismatch deactivates the row.
    """
    stmt = select(UserSession).where(
        UserSession.session_id == session_id,
        UserSession.user_id == user_id,
        UserSession.is_active == True,  # noqa: E712
    )
    result = await db.execute(stmt)
    session = result.scalars().first()

    if session is None:
        logger.info("No active session %s for user %s", session_id, user_id)
        return False

    if session.device_fingerprint != device_fingerprint:
        logger.warning("Device fingerprint mismatch on session %s; deactivating", session_id)
        session.is_active = False
        await db.flush()
        return False

    # last_active is best-effort; a failed write must not fail validation
    try:
        async with db.begin_nested():
            session.last_active = utcnow()
    except SQLAlchemyError:
        logger.exception("Failed to update last_active for session %s", session_id)

    return True


async def end_session(session_id: str, db: AsyncSession) -> None:
    """Mark a session inactive.  No-op when absent or already inactive."""
    stmt = select(UserSession).where(
        UserSession.session_id == session_id,
        UserSession.is_active == True,  # noqa: E712
    )
    result = await db.execute(stmt)
    for sess in result.scalars().all():
        sess.is_active = False
    await db.flush()


async def deactivate_all_user_sessions(
    user_id: uuid.UUID,
    db: AsyncSession,
) -> int:
    """
    Deactivate every active session for a given user.

    Returns the number of sessions affected.
    Used by admin force-logout and revocation flows.
    """
    sessions = await get_active_sessions(user_id, db)
    for sess in sessions:
        sess.is_active = False
    await db.flush()
    return len(sessions)
