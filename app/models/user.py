"""
User model.

A user exists only after redeeming an invitation token.  `token` is a
plain string reference to `tokens.token` rather than a foreign key:
the admin console deletes and recreates token rows independently, and
an empty string means the admin has pulled the user's access.
"""

from datetime import datetime

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, CreatedAtMixin, UUIDPrimaryKeyMixin


class User(Base, UUIDPrimaryKeyMixin, CreatedAtMixin):
    __tablename__ = "users"

    username: Mapped[str] = mapped_column(String(128), unique=True, index=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(512), nullable=False)
    token: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    token_expiry: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    device_fingerprint: Mapped[str | None] = mapped_column(String(256), nullable=True, index=True)

    def __repr__(self) -> str:
        return f"<User {self.username}>"
