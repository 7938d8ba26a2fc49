"""
Token service.

Handles the creation and management of invitation tokens.  Only the
admin console calls these (enforced at the controller layer).
"""

import calendar
import logging
import uuid
from collections import defaultdict
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import InvalidToken, NotFound
from app.core.security import generate_token_value
from app.models.base import utcnow
from app.models.token import Token, TokenDuration

logger = logging.getLogger(__name__)


def add_months(moment: datetime, months: int) -> datetime:
    """Calendar-month addition; the day is clamped to the target month's length."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def expiry_for(duration: TokenDuration, start: datetime | None = None) -> datetime:
    return add_months(start or utcnow(), TokenDuration(duration).months)


def new_token(duration: TokenDuration, *, is_used: bool = False) -> Token:
    now = utcnow()
    duration = TokenDuration(duration)
    return Token(
        id=uuid.uuid4(),
        token=generate_token_value(),
        duration=duration,
        expiry_date=expiry_for(duration, now),
        is_used=is_used,
        used_by=None,
        created_at=now,
    )


async def generate_token(duration: TokenDuration, db: AsyncSession) -> Token:
    """Issue a fresh, unused invitation token."""
    token = new_token(duration)
    db.add(token)
    await db.flush()
    logger.info("Generated %s token %s", token.duration.value, token.id)
    return token


async def list_tokens(db: AsyncSession) -> list[Token]:
    stmt = select(Token).order_by(Token.created_at.desc())
    result = await db.execute(stmt)
    return list(result.scalars().all())


def group_tokens_by_duration(tokens: list[Token]) -> dict[str, list[Token]]:
    grouped: dict[str, list[Token]] = defaultdict(list)
    for token in tokens:
        grouped[TokenDuration(token.duration).value].append(token)
    return dict(grouped)


async def get_token_by_id(token_id: uuid.UUID, db: AsyncSession) -> Token:
    token = await db.get(Token, token_id)
    if token is None:
        raise NotFound("Token not found")
    return token


async def delete_unused_token(token_id: uuid.UUID, db: AsyncSession) -> None:
    """Delete a token nobody has redeemed yet."""
    token = await get_token_by_id(token_id, db)
    if token.is_used:
        raise InvalidToken("Token is in use; revoke it through its user")
    await db.delete(token)
    await db.flush()
    logger.info("Deleted unused token %s", token_id)


async def delete_token_value(token_value: str, db: AsyncSession) -> bool:
    """Delete the token row carrying *token_value*; False if there is none."""
    stmt = select(Token).where(Token.token == token_value)
    result = await db.execute(stmt)
    token = result.scalar_one_or_none()
    if token is None:
        return False
    await db.delete(token)
    await db.flush()
    return True
