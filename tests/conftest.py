"""Pytest configuration and fixtures for the token-gate tests."""

import os

# Settings are read once at import; pin a throwaway configuration first.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("ADMIN_USERNAME", "admin")
os.environ.setdefault("ADMIN_PASSWORD", "admin-secret")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import uuid
from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy import select

from app.client.auth_client import AuthClient
from app.client.fingerprint import StaticFingerprint
from app.client.session_store import MemorySessionStore
from app.core.change_feed import ChangeFeed
from app.core.database import build_engine, build_session_factory, run_in_transaction
from app.models import Base
from app.models.base import utcnow
from app.models.session import UserSession
from app.models.token import Token, TokenDuration
from app.models.user import User
from app.services import token_service


@pytest_asyncio.fixture
async def engine(tmp_path):
    """Fresh file-backed SQLite store per test (one connection per session)."""
    eng = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'store.db'}")
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def feed():
    return ChangeFeed()


@pytest.fixture
def session_factory(engine, feed):
    return build_session_factory(engine, feed)


@pytest.fixture
def uow(session_factory):
    """Run ``work(db)`` in its own committed transaction."""

    async def _run(work):
        return await run_in_transaction(session_factory, work, timeout=5)

    return _run


@pytest.fixture
def make_client(session_factory):
    """Build an AuthClient for a simulated device."""

    def _make(fingerprint: str = "device-1") -> AuthClient:
        return AuthClient(
            session_factory,
            MemorySessionStore(),
            StaticFingerprint(fingerprint),
            timeout=5,
        )

    return _make


@pytest.fixture
def issue_token(uow):
    """Insert a token row and return its value."""

    async def _issue(
        duration: TokenDuration = TokenDuration.THREE_MONTHS,
        *,
        is_used: bool = False,
        expired: bool = False,
    ) -> str:
        token = token_service.new_token(duration, is_used=is_used)
        if expired:
            token.expiry_date = utcnow() - timedelta(days=1)

        async def _add(db):
            db.add(token)

        await uow(_add)
        return token.token

    return _issue


@pytest.fixture
def registered_user(make_client, issue_token):
    """Sign up a user and return (username, password, token)."""

    async def _register(username: str = "alice", password: str = "pa55word"):
        token = await issue_token()
        await make_client("signup-device").sign_up(username, password, token)
        return username, password, token

    return _register


@pytest.fixture
def store_rows(session_factory):
    """Read helpers that each use a short-lived session."""

    class _Rows:
        async def token(self, value: str) -> Token | None:
            async with session_factory() as db:
                result = await db.execute(select(Token).where(Token.token == value))
                return result.scalar_one_or_none()

        async def tokens(self) -> list[Token]:
            async with session_factory() as db:
                return list((await db.execute(select(Token))).scalars().all())

        async def user(self, username: str) -> User | None:
            async with session_factory() as db:
                result = await db.execute(select(User).where(User.username == username))
                return result.scalar_one_or_none()

        async def sessions(self, user_id: uuid.UUID) -> list[UserSession]:
            async with session_factory() as db:
                result = await db.execute(
                    select(UserSession).where(UserSession.user_id == user_id)
                )
                return list(result.scalars().all())

        async def active_sessions(self, user_id: uuid.UUID) -> list[UserSession]:
            return [s for s in await self.sessions(user_id) if s.is_active]

    return _Rows()
