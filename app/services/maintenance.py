"""
Periodic maintenance for the token tables.

`expire_tokens` enforces that a user's token reference always points
at an unexpired token: once `token_expiry` has passed, the reference
is cleared and the token row deleted.  `run_token_sweeper` repeats it
forever on a fixed interval.
"""

import asyncio
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.models.base import utcnow
from app.models.user import User
from app.services import token_service

logger = logging.getLogger(__name__)


async def expire_tokens(db: AsyncSession) -> int:
    """Clear expired token references; return how many users were affected."""
    now = utcnow()
    stmt = select(User).where(
        User.token.is_not(None),
        User.token != "",
        User.token_expiry.is_not(None),
        User.token_expiry < now,
    )
    result = await db.execute(stmt)
    users = list(result.scalars().all())

    for user in users:
        logger.info("Token expired for user %s", user.username)
        old_token = user.token
        user.token = None
        user.token_expiry = None
        await db.flush()
        await token_service.delete_token_value(old_token, db)

    return len(users)


async def run_token_sweeper(
    factory: async_sessionmaker[AsyncSession],
    interval_seconds: float | None = None,
) -> None:
    """Run `expire_tokens` every *interval_seconds* until cancelled."""
    interval = interval_seconds or settings.TOKEN_SWEEP_INTERVAL_SECONDS
    while True:
        try:
            async with factory() as db:
                async with db.begin():
                    expired = await expire_tokens(db)
            if expired:
                logger.info("[Maintenance] Expired %d token(s)", expired)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("[Maintenance] Token expiry sweep failed")
        await asyncio.sleep(interval)
