"""
services/realtime/change_feed.py
Change feed: committed row changes published per table.

Writers queue events on the session while a transaction is open
(`record_change`); they are published only after a successful commit
(`publish_pending`) and dropped on rollback (`discard_pending`).
Delivery is at-least-once; subscribers must tolerate duplicates.

Backends:
  RedisChangeFeed     — Redis pub/sub, channel `changes:<table>`
  InMemoryChangeFeed  — asyncio queues, single process / tests
"""

import asyncio
import logging
from collections import defaultdict
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from pydantic import BaseModel
from pydantic_core import to_jsonable_python
from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import AsyncSession

from config.redis_client import change_channel, init_redis
from config.settings import settings

logger = logging.getLogger(__name__)

PENDING_KEY = "pending_changes"


class ChangeType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ChangeEvent(BaseModel):
    table: str
    type: ChangeType
    old: Optional[Dict[str, Any]] = None
    new: Optional[Dict[str, Any]] = None

    @property
    def row(self) -> Dict[str, Any]:
        return self.new or self.old or {}


Predicate = Callable[[ChangeEvent], bool]


class ColumnEquals:
    """Row filter: `column = value`, checked on the new row (old row for deletes)."""

    def __init__(self, column: str, value: Any):
        self.column = column
        self.value = to_jsonable_python(value)

    def __call__(self, event: ChangeEvent) -> bool:
        return event.row.get(self.column) == self.value

    def __repr__(self) -> str:
        return f"{self.column}=eq.{self.value}"


def snapshot(instance) -> Dict[str, Any]:
    """JSON-safe dict of an ORM instance's column values."""
    mapper = inspect(instance).mapper
    return {
        attr.key: to_jsonable_python(getattr(instance, attr.key))
        for attr in mapper.column_attrs
    }


# ── Session-scoped outbox ─────────────────────────────────────

def record_change(
    db: AsyncSession,
    table: str,
    change_type: ChangeType,
    old: Optional[dict] = None,
    new: Optional[dict] = None,
) -> None:
    db.info.setdefault(PENDING_KEY, []).append(
        ChangeEvent(table=table, type=change_type, old=old, new=new)
    )


def discard_pending(db: AsyncSession) -> None:
    db.info.pop(PENDING_KEY, None)


async def publish_pending(db: AsyncSession, feed: "ChangeFeed") -> None:
    """Publish events queued on this session. Call only after commit."""
    events: List[ChangeEvent] = db.info.pop(PENDING_KEY, [])
    for event in events:
        try:
            await feed.publish(event)
        except Exception as e:
            # Store is already consistent; notifications are ephemeral
            logger.warning(f"Change feed publish failed for {event.table} {event.type.value}: {e}")


# ── Subscriptions ─────────────────────────────────────────────

class Subscription:
    """Async iterator over matching events. Close explicitly or use `async with`."""

    def __init__(self, table: str, predicate: Optional[Predicate] = None):
        self.table = table
        self.predicate = predicate
        self.closed = False

    async def _next_event(self) -> Optional[ChangeEvent]:
        raise NotImplementedError

    async def close(self) -> None:
        self.closed = True

    def __aiter__(self):
        return self

    async def __anext__(self) -> ChangeEvent:
        while not self.closed:
            event = await self._next_event()
            if event is None:
                break
            if self.predicate is None or self.predicate(event):
                return event
        raise StopAsyncIteration

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.close()


class ChangeFeed:
    async def publish(self, event: ChangeEvent) -> None:
        raise NotImplementedError

    async def subscribe(self, table: str, predicate: Optional[Predicate] = None) -> Subscription:
        raise NotImplementedError


# ── In-process backend ────────────────────────────────────────

_CLOSED = object()


class QueueSubscription(Subscription):
    def __init__(self, feed: "InMemoryChangeFeed", table: str, predicate: Optional[Predicate]):
        super().__init__(table, predicate)
        self._feed = feed
        self._queue: asyncio.Queue = asyncio.Queue()

    def offer(self, event: ChangeEvent) -> None:
        if not self.closed:
            self._queue.put_nowait(event)

    async def _next_event(self) -> Optional[ChangeEvent]:
        item = await self._queue.get()
        if item is _CLOSED:
            return None
        return item

    async def close(self) -> None:
        if self.closed:
            return
        await super().close()
        self._feed._subscriptions[self.table].discard(self)
        self._queue.put_nowait(_CLOSED)


class InMemoryChangeFeed(ChangeFeed):
    def __init__(self):
        self._subscriptions: Dict[str, Set[QueueSubscription]] = defaultdict(set)

    async def publish(self, event: ChangeEvent) -> None:
        for subscription in list(self._subscriptions[event.table]):
            subscription.offer(event)

    async def subscribe(self, table: str, predicate: Optional[Predicate] = None) -> Subscription:
        subscription = QueueSubscription(self, table, predicate)
        self._subscriptions[table].add(subscription)
        return subscription

    def subscriber_count(self, table: Optional[str] = None) -> int:
        if table is not None:
            return len(self._subscriptions[table])
        return sum(len(subs) for subs in self._subscriptions.values())


# ── Redis backend ─────────────────────────────────────────────

class RedisSubscription(Subscription):
    def __init__(self, pubsub, table: str, predicate: Optional[Predicate]):
        super().__init__(table, predicate)
        self._pubsub = pubsub

    async def _next_event(self) -> Optional[ChangeEvent]:
        while not self.closed:
            message = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            if message is None or message.get("type") != "message":
                continue
            try:
                return ChangeEvent.model_validate_json(message["data"])
            except ValueError as e:
                logger.warning(f"Dropping malformed change event on {self.table}: {e}")
        return None

    async def close(self) -> None:
        if self.closed:
            return
        await super().close()
        await self._pubsub.unsubscribe(change_channel(self.table))
        await self._pubsub.aclose()


class RedisChangeFeed(ChangeFeed):
    def __init__(self, redis):
        self._redis = redis

    async def publish(self, event: ChangeEvent) -> None:
        await self._redis.publish(change_channel(event.table), event.model_dump_json())

    async def subscribe(self, table: str, predicate: Optional[Predicate] = None) -> Subscription:
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(change_channel(table))
        return RedisSubscription(pubsub, table, predicate)


# ── Global feed (set on startup) ──────────────────────────────

_feed: Optional[ChangeFeed] = None


def set_change_feed(feed: Optional[ChangeFeed]) -> None:
    global _feed
    _feed = feed


def get_change_feed() -> ChangeFeed:
    """FastAPI dependency to get the change feed."""
    if _feed is None:
        raise RuntimeError("Change feed not initialized.")
    return _feed


async def open_change_feed() -> ChangeFeed:
    """Build the configured backend. Redis is connected here when selected."""
    if settings.CHANGE_FEED_BACKEND == "memory":
        return InMemoryChangeFeed()
    return RedisChangeFeed(await init_redis())
