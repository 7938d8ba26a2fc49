"""
Models package — import every model so SQLAlchemy's Base.metadata
knows about all tables (critical for `create_all` / Alembic).
"""

from app.models.base import Base, CreatedAtMixin, UUIDPrimaryKeyMixin
from app.models.session import UserSession
from app.models.token import Token, TokenDuration
from app.models.user import User

__all__ = [
    "Base",
    "CreatedAtMixin",
    "UUIDPrimaryKeyMixin",
    "User",
    "Token",
    "TokenDuration",
    "UserSession",
]
