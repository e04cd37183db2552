"""
tests/test_messaging.py
Traveler ↔ provider conversation on a booking.
"""

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from services.activity import ledger
from services.messaging import channel
from shared.middleware.auth import Actor
from shared.models.models import ActivityAction, Booking, User
from shared.utils.exceptions import Forbidden
from tests.conftest import auth_headers


@pytest.mark.asyncio
async def test_traveler_messages_provider(
    db: AsyncSession, feed, accepted_booking: Booking, traveler: User, provider_user: User
):
    message = await channel.send(
        db, feed, accepted_booking.id, Actor.from_user(traveler), provider_user.id, "Assalamu alaikum"
    )

    assert message.sender_id == traveler.id
    assert message.recipient_id == provider_user.id
    assert message.is_read is False

    entry = (await ledger.list_for(db, accepted_booking.id))[-1]
    assert entry.action == ActivityAction.MESSAGE_SENT
    assert entry.details["message_id"] == str(message.id)


@pytest.mark.asyncio
async def test_outsiders_cannot_message(
    db: AsyncSession,
    feed,
    accepted_booking: Booking,
    other_traveler: User,
    provider_user: User,
    traveler: User,
):
    booking_id = accepted_booking.id
    outsider = Actor.from_user(other_traveler)
    provider_id, traveler_actor, outsider_id = provider_user.id, Actor.from_user(traveler), other_traveler.id

    with pytest.raises(Forbidden):
        await channel.send(db, feed, booking_id, outsider, provider_id, "Hello")
    with pytest.raises(Forbidden):
        await channel.send(db, feed, booking_id, traveler_actor, outsider_id, "Hello")
    with pytest.raises(Forbidden):
        await channel.send(db, feed, booking_id, traveler_actor, traveler_actor.id, "Note to self")


@pytest.mark.asyncio
async def test_unassigned_booking_has_no_conversation(
    db: AsyncSession, feed, pending_booking: Booking, traveler: User, admin_user: User
):
    booking_id, traveler_actor, admin_id = pending_booking.id, Actor.from_user(traveler), admin_user.id
    with pytest.raises(Forbidden):
        await channel.send(db, feed, booking_id, traveler_actor, admin_id, "Anyone there?")
    with pytest.raises(Forbidden):
        await channel.list_messages(db, booking_id, traveler_actor)


@pytest.mark.asyncio
async def test_mark_read_is_idempotent(
    db: AsyncSession, feed, accepted_booking: Booking, traveler: User, provider_user: User
):
    booking_id = accepted_booking.id
    sender, reader = Actor.from_user(traveler), Actor.from_user(provider_user)
    await channel.send(db, feed, booking_id, sender, reader.id, "First")
    await channel.send(db, feed, booking_id, sender, reader.id, "Second")

    assert await channel.mark_read(db, feed, booking_id, sender) == 0
    assert await channel.mark_read(db, feed, booking_id, reader) == 2
    assert await channel.mark_read(db, feed, booking_id, reader) == 0

    messages = await channel.list_messages(db, booking_id, reader)
    assert sorted(m.content for m in messages) == ["First", "Second"]
    assert all(m.is_read for m in messages)


@pytest.mark.asyncio
async def test_conversation_over_http(
    client: AsyncClient, accepted_booking: Booking, traveler: User, provider_user: User, admin_user: User
):
    url = f"/bookings/{accepted_booking.id}/messages"
    traveler_headers, provider_headers = auth_headers(traveler), auth_headers(provider_user)

    response = await client.post(
        url, headers=traveler_headers, json={"recipient_id": str(provider_user.id), "content": "Shukran"}
    )
    assert response.status_code == 201
    assert response.json()["is_read"] is False

    response = await client.post(f"{url}/read", headers=provider_headers)
    assert response.json() == {"updated": 1}

    response = await client.get(url, headers=auth_headers(admin_user))
    assert response.status_code == 200
    assert [m["content"] for m in response.json()] == ["Shukran"]
    assert response.json()[0]["is_read"] is True


@pytest.mark.asyncio
async def test_empty_message_rejected(
    client: AsyncClient, accepted_booking: Booking, traveler: User, provider_user: User
):
    response = await client.post(
        f"/bookings/{accepted_booking.id}/messages",
        headers=auth_headers(traveler),
        json={"recipient_id": str(provider_user.id), "content": ""},
    )
    assert response.status_code == 422


