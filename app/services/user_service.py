"""
User service — admin-side user management.

Each revocation changes the user row before touching sessions, so the
first change a connected client sees on the feed names the real cause
(user deleted, token pulled) rather than a bare session deactivation.
"""

import logging
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import NotFound
from app.models.token import Token, TokenDuration
from app.models.user import User
from app.services import session_service, token_service

logger = logging.getLogger(__name__)


async def get_user_by_id(
    user_id: uuid.UUID,
    db: AsyncSession,
) -> User:
    user = await db.get(User, user_id)
    if user is None:
        raise NotFound("User not found")
    return user


async def list_users(
    db: AsyncSession,
    skip: int = 0,
    limit: int = 50,
) -> list[User]:
    stmt = select(User).order_by(User.created_at.desc()).offset(skip).limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def delete_user(target_user_id: uuid.UUID, db: AsyncSession) -> None:
    """Admin action — drop the user's token, then delete the user.

    Sessions go with the user row (ON DELETE CASCADE).
    """
    user = await get_user_by_id(target_user_id, db)
    if user.token:
        await token_service.delete_token_value(user.token, db)
    redeemed = await db.execute(select(Token).where(Token.used_by == user.username))
    for token in redeemed.scalars().all():
        await db.delete(token)
    await db.delete(user)
    await db.flush()
    logger.info("Deleted user %s", user.username)


async def delete_user_token(target_user_id: uuid.UUID, db: AsyncSession) -> None:
    """Admin action — pull the user's token and end their sessions."""
    user = await get_user_by_id(target_user_id, db)
    old_token = user.token
    user.token = ""
    await db.flush()
    if old_token:
        await token_service.delete_token_value(old_token, db)
    await session_service.deactivate_all_user_sessions(user.id, db)
    logger.info("Removed token of user %s", user.username)


async def renew_token(
    target_user_id: uuid.UUID,
    duration: TokenDuration,
    db: AsyncSession,
) -> Token:
    """
    Replace the user's token with a fresh one of *duration*.

    The new token is assigned directly, so it is created already used
    and without `used_by`.  Old-row delete, new-row insert and the user
    update share the caller's transaction.
    """
    user = await get_user_by_id(target_user_id, db)
    if user.token:
        await token_service.delete_token_value(user.token, db)

    token = token_service.new_token(duration, is_used=True)
    db.add(token)
    await db.flush()

    user.token = token.token
    user.token_expiry = token.expiry_date
    await db.flush()
    logger.info("Renewed token of user %s for %s", user.username, token.duration.value)
    return token


async def force_logout(target_user_id: uuid.UUID, db: AsyncSession) -> int:
    """Admin action — end every active session of the user."""
    user = await get_user_by_id(target_user_id, db)
    count = await session_service.deactivate_all_user_sessions(user.id, db)
    logger.info("Force-logged-out user %s (%d session(s))", user.username, count)
    return count
