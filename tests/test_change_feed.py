"""
tests/test_change_feed.py
Committed-change publication, subscription filtering and the Redis backend.
"""

import asyncio
import json
import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from services.booking import lifecycle
from services.booking.store import unit_of_work
from services.realtime.change_feed import (
    PENDING_KEY,
    ChangeEvent,
    ChangeFeed,
    ChangeType,
    ColumnEquals,
    InMemoryChangeFeed,
    RedisChangeFeed,
    record_change,
)
from shared.middleware.auth import Actor
from shared.models.models import Service, User
from shared.utils.exceptions import Conflict, StoreUnavailable
from tests.conftest import make_service


def _event(table: str = "bookings", **row) -> ChangeEvent:
    return ChangeEvent(table=table, type=ChangeType.INSERT, new={"id": str(uuid.uuid4()), **row})


@pytest.mark.asyncio
async def test_committed_write_is_published(
    db: AsyncSession, feed: InMemoryChangeFeed, traveler: User, umrah_service: Service
):
    subscription = await feed.subscribe("bookings")
    async with subscription:
        booking = await lifecycle.create_booking(db, feed, Actor.from_user(traveler), umrah_service.id)
        event = await asyncio.wait_for(subscription.__anext__(), timeout=2)

    assert event.type == ChangeType.INSERT
    assert event.new["id"] == str(booking.id)
    assert event.new["status"] == "pending"
    assert event.old is None
    assert PENDING_KEY not in db.info


@pytest.mark.asyncio
async def test_failed_write_publishes_nothing(db: AsyncSession, feed: InMemoryChangeFeed, traveler: User):
    inactive = await make_service(db, is_active=False)
    service_id, actor = inactive.id, Actor.from_user(traveler)
    subscription = await feed.subscribe("bookings")

    with pytest.raises(Conflict):
        await lifecycle.create_booking(db, feed, actor, service_id)
    with pytest.raises(Conflict):
        async with unit_of_work(db, feed):
            record_change(db, "bookings", ChangeType.INSERT, new={"id": "never-committed"})
            raise Conflict("Lost the race")

    marker = _event(marker=True)
    await feed.publish(marker)
    received = await asyncio.wait_for(subscription.__anext__(), timeout=2)
    assert received.new["marker"] is True
    assert PENDING_KEY not in db.info
    await subscription.close()


@pytest.mark.asyncio
async def test_store_error_becomes_store_unavailable(db: AsyncSession, feed: InMemoryChangeFeed):
    with pytest.raises(StoreUnavailable) as exc_info:
        async with unit_of_work(db, feed):
            record_change(db, "bookings", ChangeType.INSERT, new={"id": "x"})
            raise OperationalError("SELECT 1", {}, Exception("database is locked"))

    assert exc_info.value.status_code == 503
    assert exc_info.value.code == "store_unavailable"
    assert PENDING_KEY not in db.info


@pytest.mark.asyncio
async def test_publish_failure_does_not_fail_the_write(db: AsyncSession):
    broken = ChangeFeed()
    broken.publish = AsyncMock(side_effect=ConnectionError("feed down"))

    async with unit_of_work(db, broken):
        record_change(db, "bookings", ChangeType.INSERT, new={"id": "x"})

    broken.publish.assert_awaited_once()


@pytest.mark.asyncio
async def test_subscription_filters_rows(feed: InMemoryChangeFeed):
    mine, theirs = uuid.uuid4(), uuid.uuid4()
    subscription = await feed.subscribe("messages", ColumnEquals("recipient_id", mine))

    await feed.publish(_event("messages", recipient_id=str(theirs)))
    await feed.publish(_event("bookings", recipient_id=str(mine)))
    await feed.publish(_event("messages", recipient_id=str(mine), content="for me"))

    event = await asyncio.wait_for(subscription.__anext__(), timeout=2)
    assert event.new["content"] == "for me"
    await subscription.close()


def test_column_filter_uses_old_row_for_deletes():
    allocation_id = uuid.uuid4()
    event = ChangeEvent(
        table="service_allocations", type=ChangeType.DELETE, old={"provider_id": str(allocation_id)}
    )
    assert ColumnEquals("provider_id", allocation_id)(event)
    assert repr(ColumnEquals("provider_id", "p1")) == "provider_id=eq.p1"


@pytest.mark.asyncio
async def test_close_ends_iteration_and_unsubscribes(feed: InMemoryChangeFeed):
    subscription = await feed.subscribe("bookings")
    assert feed.subscriber_count("bookings") == 1

    collected = []
    received = asyncio.Event()

    async def consume():
        async for event in subscription:
            collected.append(event)
            received.set()

    task = asyncio.create_task(consume())
    await feed.publish(_event())
    await asyncio.wait_for(received.wait(), timeout=2)
    await subscription.close()
    await asyncio.wait_for(task, timeout=2)

    assert len(collected) == 1
    assert feed.subscriber_count("bookings") == 0
    await subscription.close()


# ── Redis backend ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_redis_feed_publishes_json_per_table():
    redis = MagicMock()
    redis.publish = AsyncMock()
    event = _event(status="pending")

    await RedisChangeFeed(redis).publish(event)

    channel, payload = redis.publish.await_args.args
    assert channel == "changes:bookings"
    assert json.loads(payload)["new"]["status"] == "pending"


@pytest.mark.asyncio
async def test_redis_subscription_decodes_and_filters():
    traveler_id = str(uuid.uuid4())
    wanted = _event(traveler_id=traveler_id)
    other = _event(traveler_id=str(uuid.uuid4()))

    pubsub = MagicMock()
    pubsub.subscribe = AsyncMock()
    pubsub.unsubscribe = AsyncMock()
    pubsub.aclose = AsyncMock()
    pubsub.get_message = AsyncMock(side_effect=[
        None,
        {"type": "message", "data": "not json"},
        {"type": "message", "data": other.model_dump_json()},
        {"type": "message", "data": wanted.model_dump_json()},
    ])
    redis = MagicMock()
    redis.pubsub.return_value = pubsub

    feed = RedisChangeFeed(redis)
    async with await feed.subscribe("bookings", ColumnEquals("traveler_id", traveler_id)) as subscription:
        event = await subscription.__anext__()

    assert event.new == wanted.new
    pubsub.subscribe.assert_awaited_once_with("changes:bookings")
    pubsub.unsubscribe.assert_awaited_once_with("changes:bookings")
    pubsub.aclose.assert_awaited_once()
