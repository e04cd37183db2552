"""
tests/test_allocation_tasks.py
Periodic auto-routing sweep.
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from services.activity import ledger
from services.booking.store import get_booking
from shared.models.models import (
    ActivityAction,
    Booking,
    BookingStatus,
    Provider,
    Service,
    ServiceType,
    User,
)
from shared.utils.exceptions import StoreUnavailable
from tasks import allocation_tasks
from tasks.celery_app import celery_app
from tests.conftest import make_booking, make_service


def _later() -> datetime:
    return datetime.now(timezone.utc) + timedelta(hours=1)


@pytest.mark.asyncio
async def test_sweep_routes_stale_pending_bookings(
    db: AsyncSession, feed, pending_booking: Booking, provider: Provider, traveler: User
):
    booking_id, provider_id = pending_booking.id, provider.id
    hajj = await make_booking(db, feed, traveler, await make_service(db, ServiceType.HAJJ))
    hajj_id = hajj.id

    result = await allocation_tasks.sweep_pending_bookings(db, feed, now=_later())

    assert result == {"candidates": 2, "routed": 1, "skipped": 1}

    routed = await get_booking(db, booking_id)
    assert routed.status == BookingStatus.ACCEPTED
    assert routed.provider_id == provider_id
    entry = (await ledger.list_for(db, booking_id))[-1]
    assert entry.action == ActivityAction.STATUS_CHANGED_TO_ACCEPTED
    assert entry.actor_id is None
    assert entry.details["allocation_type"] == "auto"

    waiting = await get_booking(db, hajj_id)
    assert waiting.status == BookingStatus.PENDING
    assert waiting.provider_id is None


@pytest.mark.asyncio
async def test_sweep_continues_past_a_failing_booking(
    db: AsyncSession, feed, provider: Provider, traveler: User, umrah_service: Service, monkeypatch
):
    first = await make_booking(db, feed, traveler, umrah_service)
    second = await make_booking(db, feed, traveler, umrah_service)
    first_id, second_id, provider_id = first.id, second.id, provider.id
    route = allocation_tasks.auto_route_booking

    async def flaky_route(db, feed, booking_id, actor):
        if booking_id == first_id:
            raise StoreUnavailable()
        return await route(db, feed, booking_id, actor)

    monkeypatch.setattr(allocation_tasks, "auto_route_booking", flaky_route)
    result = await allocation_tasks.sweep_pending_bookings(db, feed, now=_later())

    assert result == {"candidates": 2, "routed": 1, "skipped": 1}
    assert (await get_booking(db, second_id)).provider_id == provider_id
    assert (await get_booking(db, first_id)).status == BookingStatus.PENDING


@pytest.mark.asyncio
async def test_sweep_respects_grace_period(db: AsyncSession, feed, pending_booking: Booking, provider: Provider):
    result = await allocation_tasks.sweep_pending_bookings(db, feed)
    assert result == {"candidates": 0, "routed": 0, "skipped": 0}


@pytest.mark.asyncio
async def test_sweep_ignores_assigned_bookings(db: AsyncSession, feed, accepted_booking: Booking):
    result = await allocation_tasks.sweep_pending_bookings(db, feed, now=_later())
    assert result["candidates"] == 0


def test_celery_task_runs_sweep(monkeypatch):
    async def fake_sweep():
        return {"candidates": 3, "routed": 2, "skipped": 1}

    monkeypatch.setattr(allocation_tasks, "_run_sweep", fake_sweep)
    assert allocation_tasks.auto_route_pending_bookings() == {"candidates": 3, "routed": 2, "skipped": 1}


def test_sweep_is_scheduled():
    schedule = celery_app.conf.beat_schedule["auto-route-pending-bookings"]
    assert schedule["task"] == "tasks.allocation_tasks.auto_route_pending_bookings"
