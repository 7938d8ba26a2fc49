"""
Async engine, session factories & unit-of-work helpers.

Two factories mirror the two credential sets:
- `SessionLocal` — restricted credentials (reads, sign-up).
- `ServiceSessionLocal` — elevated credentials (session registry,
  admin console).

Both publish committed row changes on the process-wide change feed.

`run_in_transaction` is the client-side entry point: one unit of work
per call, bounded by an explicit timeout and retried once on a
transient store failure before surfacing `StoreUnavailable`.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import TypeVar

from sqlalchemy import event
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from app.core.change_feed import ChangeFeed, change_feed
from app.core.config import settings
from app.core.errors import StoreUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Failures worth one more attempt; everything else propagates as-is.
TRANSIENT_ERRORS = (
    OperationalError,
    InterfaceError,
    ConnectionError,
    asyncio.TimeoutError,
)


def build_engine(url: str) -> AsyncEngine:
    """Create an async engine; SQLite gets FK enforcement and a shared in-memory pool."""
    if not url.startswith("sqlite"):
        return create_async_engine(url, echo=False, pool_pre_ping=True)

    kwargs: dict = {"connect_args": {"check_same_thread": False}}
    if ":memory:" in url or url.rstrip("/").endswith("sqlite+aiosqlite:"):
        kwargs["poolclass"] = StaticPool
    engine = create_async_engine(url, echo=False, **kwargs)

    # The sqlite driver's implicit transactions break SAVEPOINT; take
    # over BEGIN ourselves so begin_nested() behaves as on Postgres.
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record) -> None:
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn) -> None:
        conn.exec_driver_sql("BEGIN")

    return engine


def build_session_factory(
    engine: AsyncEngine,
    feed: ChangeFeed | None = change_feed,
) -> async_sessionmaker[AsyncSession]:
    info = {"change_feed": feed} if feed is not None else {}
    return async_sessionmaker(engine, expire_on_commit=False, info=info)


engine = build_engine(settings.DATABASE_URL)
service_engine = (
    engine
    if settings.ELEVATED_DATABASE_URL == settings.DATABASE_URL
    else build_engine(settings.ELEVATED_DATABASE_URL)
)

SessionLocal = build_session_factory(engine)
ServiceSessionLocal = build_session_factory(service_engine)


# ── FastAPI dependencies ─────────────────────────────────────────────

async def _session_scope(factory: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_db() -> AsyncIterator[AsyncSession]:
    """Request-scoped session on the restricted credentials; commits on success."""
    async for session in _session_scope(SessionLocal):
        yield session


async def get_service_db() -> AsyncIterator[AsyncSession]:
    """Request-scoped session on the elevated credentials; commits on success."""
    async for session in _session_scope(ServiceSessionLocal):
        yield session


# ── Client-side unit of work ─────────────────────────────────────────

async def run_in_transaction(
    factory: async_sessionmaker[AsyncSession],
    work: Callable[[AsyncSession], Awaitable[T]],
    *,
    timeout: float | None = None,
    attempts: int = 2,
) -> T:
    """
    Run ``work(db)`` inside one transaction and commit it.

    Each attempt is bounded by *timeout* seconds (default
    ``settings.STORE_TIMEOUT_SECONDS``).  Transient failures are
    retried until *attempts* is exhausted, then re-raised as
    `StoreUnavailable`.  Any other exception rolls back and propagates.
    """
    if timeout is None:
        timeout = settings.STORE_TIMEOUT_SECONDS

    async def _attempt() -> T:
        async with factory() as db:
            async with db.begin():
                return await work(db)

    last_error: BaseException | None = None
    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.wait_for(_attempt(), timeout)
        except TRANSIENT_ERRORS as exc:
            last_error = exc
            logger.warning(
                "Store call failed (attempt %d/%d): %s",
                attempt, attempts, exc.__class__.__name__,
            )
    raise StoreUnavailable() from last_error
