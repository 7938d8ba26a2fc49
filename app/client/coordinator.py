"""
Session coordinator — near-real-time invalidation of the local session.

Two independent producers feed one command queue:

- the push path: change-feed subscriptions on the user's row
  (``users.username``) and the user's sessions (``sessions.user_id``),
  each event classified by `classify_event`;
- the poll path: `AuthClient.check_session` every few seconds, a
  fallback for a dead or lagging push channel.

A single applier drains the queue.  It clears the local session and
fires the ``on_invalidate`` callback at most once per session id, so
the two producers can race freely.  Sessions the client ended itself
(`AuthClient.retired`) never fire the callback, and the subscriptions
follow the client through its own sign-in and sign-out.

Tests drive the pieces directly with `handle_event`, `poll_once` and
`process_pending` instead of waiting on timers.
"""

import asyncio
import enum
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Union

from app.client.auth_client import AuthClient
from app.core.change_feed import DELETE, INSERT, UPDATE, ChangeEvent, ChangeFeed, Subscription
from app.core.config import settings
from app.core.errors import AccessRevoked, AuthError, SESSION_ENDING_ERRORS, TokenDeactivated, TokenExpired
from app.models.base import as_utc
from app.schemas import LocalSession

logger = logging.getLogger(__name__)

LANDING_PAGE = "/"
SIGN_IN_PAGE = "/signin"


class InvalidationReason(str, enum.Enum):
    ACCESS_REVOKED = "ACCESS_REVOKED"
    TOKEN_MODIFIED = "TOKEN_MODIFIED"
    SIGNED_IN_ELSEWHERE = "SIGNED_IN_ELSEWHERE"
    SESSION_DEACTIVATED = "SESSION_DEACTIVATED"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    TOKEN_DEACTIVATED = "TOKEN_DEACTIVATED"


_OUTCOMES: dict[InvalidationReason, tuple[str, str]] = {
    InvalidationReason.ACCESS_REVOKED: ("Your access has been revoked by admin", LANDING_PAGE),
    InvalidationReason.TOKEN_MODIFIED: ("Your access token has been modified by admin", LANDING_PAGE),
    InvalidationReason.SIGNED_IN_ELSEWHERE: (
        "Your session has ended because you signed in from another browser",
        SIGN_IN_PAGE,
    ),
    InvalidationReason.SESSION_DEACTIVATED: ("Your session was deactivated", SIGN_IN_PAGE),
    InvalidationReason.TOKEN_EXPIRED: (TokenExpired.default_detail, LANDING_PAGE),
    InvalidationReason.TOKEN_DEACTIVATED: (TokenDeactivated.default_detail, LANDING_PAGE),
}

_ERROR_REASONS: dict[type[AuthError], InvalidationReason] = {
    AccessRevoked: InvalidationReason.ACCESS_REVOKED,
    TokenExpired: InvalidationReason.TOKEN_EXPIRED,
    TokenDeactivated: InvalidationReason.TOKEN_DEACTIVATED,
}


@dataclass(frozen=True)
class Invalidation:
    reason: InvalidationReason
    session_id: str
    message: str
    redirect: str
    source: str = "push"

    @classmethod
    def for_reason(
        cls,
        reason: InvalidationReason,
        session_id: str,
        *,
        source: str = "push",
        message: str | None = None,
    ) -> "Invalidation":
        default_message, redirect = _OUTCOMES[reason]
        return cls(reason, session_id, message or default_message, redirect, source)


@dataclass(frozen=True)
class Recheck:
    """Run the session check now instead of waiting for the next poll."""

    session_id: str


Command = Union[Invalidation, Recheck]
InvalidateCallback = Callable[[Invalidation], Union[Awaitable[None], None]]


# ── Classification ──────────────────────────────────────────────────

def _timestamp(value: Any) -> datetime | None:
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    return as_utc(value) if isinstance(value, datetime) else None


def _is_newer(created_at: Any, local: LocalSession) -> bool:
    theirs = _timestamp(created_at)
    ours = as_utc(local.created_at)
    if ours is None or theirs is None:
        return True
    return theirs > ours


def _classify_user_event(change: ChangeEvent, local: LocalSession) -> Command | None:
    old = change.old_record or {}
    new = change.new_record or {}

    if change.event_type == DELETE:
        if old.get("username") == local.username:
            return Invalidation.for_reason(InvalidationReason.ACCESS_REVOKED, local.session_id)
        return None

    if change.event_type == UPDATE and old.get("username") == local.username:
        if not new.get("token") or new.get("token") != old.get("token"):
            return Invalidation.for_reason(InvalidationReason.TOKEN_MODIFIED, local.session_id)

    if new.get("username") == local.username:
        return Recheck(local.session_id)
    return None


def _classify_session_event(change: ChangeEvent, local: LocalSession) -> Command | None:
    old = change.old_record or {}
    new = change.new_record or {}

    if change.event_type in (INSERT, UPDATE) and str(new.get("user_id")) == local.user_id:
        if (
            new.get("session_id") != local.session_id
            and new.get("is_active")
            and _is_newer(new.get("created_at"), local)
        ):
            return Invalidation.for_reason(InvalidationReason.SIGNED_IN_ELSEWHERE, local.session_id)

    if change.event_type == UPDATE and old.get("session_id") == local.session_id:
        if old.get("is_active", True) and not new.get("is_active"):
            return Invalidation.for_reason(InvalidationReason.SESSION_DEACTIVATED, local.session_id)

    if change.event_type == DELETE and old.get("session_id") == local.session_id:
        return Invalidation.for_reason(InvalidationReason.SESSION_DEACTIVATED, local.session_id)

    return None


def classify_event(change: ChangeEvent, local: LocalSession | None) -> Command | None:
    """Decide what a change-feed event means for *local*."""
    if local is None or local.is_admin:
        return None
    if change.table == "users":
        return _classify_user_event(change, local)
    if change.table == "sessions":
        return _classify_session_event(change, local)
    return None


# ── Coordinator ─────────────────────────────────────────────────────

class SessionCoordinator:
    def __init__(
        self,
        client: AuthClient,
        feed: ChangeFeed,
        *,
        on_invalidate: InvalidateCallback | None = None,
        poll_interval: float | None = None,
    ) -> None:
        self.client = client
        self.feed = feed
        self.on_invalidate = on_invalidate
        self.poll_interval = (
            settings.SESSION_POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
        )
        self.commands: asyncio.Queue[Command] = asyncio.Queue()
        self.invalidations: list[Invalidation] = []
        self._handled: set[str] = set()
        self._subscriptions: list[Subscription] = []
        self._watchers: list[asyncio.Task] = []
        self._tasks: list[asyncio.Task] = []
        self._subscribed_for: str | None = None
        client.add_listener(self.subscribe)

    # ── Producers ────────────────────────────────────────────────────

    def handle_event(self, change: ChangeEvent) -> Command | None:
        """Push path: classify *change* and enqueue the resulting command."""
        command = classify_event(change, self.client.session)
        if command is not None:
            logger.debug("Change on %s → %s", change.table, command)
            self.commands.put_nowait(command)
        return command

    async def poll_once(self) -> Command | None:
        """Poll path: run the session check and enqueue an invalidation on failure."""
        local = self.client.session
        if local is None:
            return None
        try:
            result = await self.client.check_session()
        except SESSION_ENDING_ERRORS as exc:
            command: Command = Invalidation.for_reason(
                _ERROR_REASONS[type(exc)], local.session_id, source="poll", message=exc.detail,
            )
        else:
            if result is not None:
                self.subscribe(result)
                return None
            command = Invalidation.for_reason(
                InvalidationReason.ACCESS_REVOKED, local.session_id, source="poll",
            )
        self.commands.put_nowait(command)
        return command

    # ── Applier ──────────────────────────────────────────────────────

    async def apply(self, command: Command) -> bool:
        """Carry out one command; True when it invalidated the session."""
        if isinstance(command, Recheck):
            await self.poll_once()
            return False

        if command.session_id in self._handled or command.session_id in self.client.retired:
            # already handled, or ended by the client itself
            return False
        current = self.client.session
        if current is not None and current.session_id != command.session_id:
            # stale: the client has moved on to a newer session
            return False

        self._handled.add(command.session_id)
        self.client.invalidate()
        self.subscribe()
        self.invalidations.append(command)
        logger.info("Session invalidated (%s via %s)", command.reason.value, command.source)

        if self.on_invalidate is not None:
            result = self.on_invalidate(command)
            if inspect.isawaitable(result):
                await result
        return True

    async def process_pending(self) -> int:
        """Apply every queued command without waiting; return the number applied."""
        applied = 0
        while not self.commands.empty():
            command = self.commands.get_nowait()
            if await self.apply(command):
                applied += 1
        return applied

    # ── Subscriptions ────────────────────────────────────────────────

    def subscribe(self, local: LocalSession | None = None) -> None:
        """(Re)bind the feed subscriptions to *local* (default: the stored session)."""
        local = local or self.client.session
        key = f"{local.username}:{local.user_id}" if local and not local.is_admin else None
        if key == self._subscribed_for:
            return
        self._unsubscribe()
        self._subscribed_for = key
        if key is None:
            return

        self._subscriptions = [
            self.feed.subscribe("users", column="username", value=local.username),
            self.feed.subscribe("sessions", column="user_id", value=local.user_id),
        ]
        if self._tasks:
            self._watchers = [asyncio.create_task(self._watch(sub)) for sub in self._subscriptions]
        logger.debug("Watching changes for %s", local.username)

    def _unsubscribe(self) -> None:
        for task in self._watchers:
            task.cancel()
        self._watchers = []
        for sub in self._subscriptions:
            sub.close()
        self._subscriptions = []

    def drain_subscriptions(self) -> int:
        """Feed already-delivered events through `handle_event`; return the count."""
        handled = 0
        for sub in list(self._subscriptions):
            while not sub.queue.empty():
                self.handle_event(sub.queue.get_nowait())
                handled += 1
        return handled

    # ── Background tasks ────────────────────────────────────────────

    async def _watch(self, sub: Subscription) -> None:
        async for change in sub:
            self.handle_event(change)

    async def _poll(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                await self.poll_once()
            except Exception:
                logger.exception("Session poll failed")

    async def _apply_forever(self) -> None:
        while True:
            command = await self.commands.get()
            try:
                await self.apply(command)
            except Exception:
                logger.exception("Failed to apply %s", command)

    async def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._apply_forever()),
            asyncio.create_task(self._poll()),
        ]
        self._subscribed_for = None
        self.subscribe()
        await self.poll_once()

    async def stop(self) -> None:
        tasks = self._tasks + self._watchers
        self._tasks = []
        self._unsubscribe()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def __aenter__(self) -> "SessionCoordinator":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()
