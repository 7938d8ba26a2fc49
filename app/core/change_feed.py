"""
Change feed — row-level change notifications for the credential store.

Every ORM session created with ``info={"change_feed": feed}`` records
the rows it inserts, updates and deletes while flushing.  Once the
transaction commits, those changes are published to every matching
subscription as `ChangeEvent` objects; a rollback discards them.

Subscriptions filter by column equality on a single table, e.g.
``feed.subscribe("sessions", column="user_id", value=user_id)``, and
are consumed as async iterators:

    async with feed.subscribe("users", column="username", value="bob") as sub:
        async for event in sub:
            ...

Only changes made through the ORM unit of work are visible here;
bulk ``update()`` / ``delete()`` statements bypass the feed.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from fastapi.encoders import jsonable_encoder
from sqlalchemy import event, inspect
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

INSERT = "INSERT"
UPDATE = "UPDATE"
DELETE = "DELETE"

_PENDING_KEY = "_change_feed_pending"


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    event_type: str
    new_record: dict[str, Any] | None = None
    old_record: dict[str, Any] | None = None

    def value(self, column: str) -> Any:
        """Column value from the new record, falling back to the old one."""
        for record in (self.new_record, self.old_record):
            if record is not None and column in record:
                return record[column]
        return None

    def to_dict(self) -> dict[str, Any]:
        return jsonable_encoder(
            {
                "table": self.table,
                "event_type": self.event_type,
                "new_record": self.new_record,
                "old_record": self.old_record,
            }
        )


class Subscription:
    """A filtered, queue-backed view on the feed."""

    def __init__(self, feed: "ChangeFeed", table: str, column: str, value: Any) -> None:
        self.feed = feed
        self.table = table
        self.column = column
        self.value = value
        self.queue: asyncio.Queue[ChangeEvent] = asyncio.Queue()
        self.closed = False

    def matches(self, change: ChangeEvent) -> bool:
        if change.table != self.table:
            return False
        for record in (change.new_record, change.old_record):
            if record is not None and str(record.get(self.column)) == str(self.value):
                return True
        return False

    async def get(self) -> ChangeEvent:
        return await self.queue.get()

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.feed.unsubscribe(self)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ChangeEvent:
        if self.closed:
            raise StopAsyncIteration
        return await self.queue.get()

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"<Subscription {self.table}.{self.column}={self.value}>"


class ChangeFeed:
    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []

    def subscribe(self, table: str, *, column: str, value: Any) -> Subscription:
        sub = Subscription(self, table, column, value)
        self._subscriptions.append(sub)
        logger.debug("Subscribed %r", sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)
            logger.debug("Unsubscribed %r", sub)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, change: ChangeEvent) -> int:
        """Deliver *change* to every matching subscription; return the count."""
        delivered = 0
        for sub in list(self._subscriptions):
            if sub.matches(change):
                sub.queue.put_nowait(change)
                delivered += 1
        return delivered


# ── ORM hooks ────────────────────────────────────────────────────────

def _snapshot(obj: Any) -> tuple[str, dict[str, Any], dict[str, Any]]:
    """Return (table, current values, pre-flush values) for a mapped row."""
    state = inspect(obj)
    mapper = state.mapper
    current: dict[str, Any] = {}
    previous: dict[str, Any] = {}
    for attr in mapper.column_attrs:
        key = attr.key
        value = state.dict.get(key)
        history = state.attrs[key].history
        current[key] = value
        previous[key] = history.deleted[0] if history.deleted else value
    return mapper.local_table.name, current, previous


@event.listens_for(Session, "after_flush")
def _collect_changes(session: Session, flush_context: Any) -> None:
    if session.info.get("change_feed") is None:
        return
    pending: list[ChangeEvent] = session.info.setdefault(_PENDING_KEY, [])

    for obj in session.new:
        table, current, _ = _snapshot(obj)
        pending.append(ChangeEvent(table, INSERT, new_record=current))

    for obj in session.dirty:
        if not session.is_modified(obj, include_collections=False):
            continue
        table, current, previous = _snapshot(obj)
        pending.append(ChangeEvent(table, UPDATE, new_record=current, old_record=previous))

    for obj in session.deleted:
        table, current, _ = _snapshot(obj)
        pending.append(ChangeEvent(table, DELETE, old_record=current))


@event.listens_for(Session, "after_commit")
def _publish_changes(session: Session) -> None:
    pending = session.info.pop(_PENDING_KEY, [])
    feed: ChangeFeed | None = session.info.get("change_feed")
    if feed is None:
        return
    for change in pending:
        feed.publish(change)
    if pending:
        logger.debug("Published %d change(s)", len(pending))


@event.listens_for(Session, "after_rollback")
def _discard_changes(session: Session) -> None:
    session.info.pop(_PENDING_KEY, None)


change_feed = ChangeFeed()
