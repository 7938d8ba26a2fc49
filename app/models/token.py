"""
Access token model.

Admin issues a token → an unused row with a fixed expiry.  Sign-up
consumes it exactly once (`is_used` + `used_by`).  Renewal deletes the
row and creates a fresh one that is already marked used.
"""

import enum
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Enum, String
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, CreatedAtMixin, UUIDPrimaryKeyMixin


class TokenDuration(str, enum.Enum):
    THREE_MONTHS = "3month"
    SIX_MONTHS = "6month"
    ONE_YEAR = "1year"

    @property
    def months(self) -> int:
        return {"3month": 3, "6month": 6, "1year": 12}[self.value]


class Token(Base, UUIDPrimaryKeyMixin, CreatedAtMixin):
    __tablename__ = "tokens"

    token: Mapped[str] = mapped_column(String(128), unique=True, index=True, nullable=False)
    duration: Mapped[TokenDuration] = mapped_column(
        Enum(TokenDuration, name="token_duration", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    expiry_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_used: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    used_by: Mapped[str | None] = mapped_column(String(128), nullable=True)

    def __repr__(self) -> str:
        return f"<Token {self.duration.value} used={self.is_used}>"
