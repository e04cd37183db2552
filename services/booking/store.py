"""
services/booking/store.py
Booking store helpers shared by the lifecycle, allocation and messaging
components: transactional unit of work, lookups, visibility checks and
the conditional booking write.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from services.realtime.change_feed import (
    ChangeFeed,
    ChangeType,
    discard_pending,
    publish_pending,
    record_change,
    snapshot,
)
from shared.middleware.auth import Actor
from shared.models.models import Booking, Provider, UserRole, Vendor
from shared.utils.exceptions import Conflict, Forbidden, NotFound, StoreUnavailable

logger = logging.getLogger(__name__)


@asynccontextmanager
async def unit_of_work(db: AsyncSession, feed: ChangeFeed) -> AsyncGenerator[None, None]:
    """
    One database transaction per core operation.
    Commits on success and then publishes queued change events;
    on any error rolls back and drops them.
    """
    try:
        yield
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        discard_pending(db)
        logger.error(f"Store transaction failed: {e}")
        raise StoreUnavailable() from e
    except Exception:
        await db.rollback()
        discard_pending(db)
        raise
    await publish_pending(db, feed)


# ── Lookups ───────────────────────────────────────────────────

async def get_booking(db: AsyncSession, booking_id: UUID) -> Booking:
    result = await db.execute(
        select(Booking)
        .where(Booking.id == booking_id)
        .execution_options(populate_existing=True)
    )
    booking = result.scalar_one_or_none()
    if not booking:
        raise NotFound("Booking", booking_id)
    return booking


async def get_provider(db: AsyncSession, provider_id: UUID) -> Provider:
    result = await db.execute(
        select(Provider)
        .where(Provider.id == provider_id)
        .execution_options(populate_existing=True)
    )
    provider = result.scalar_one_or_none()
    if not provider:
        raise NotFound("Provider", provider_id)
    return provider


async def provider_for_user(db: AsyncSession, user_id: Optional[UUID]) -> Optional[Provider]:
    if user_id is None:
        return None
    result = await db.execute(select(Provider).where(Provider.user_id == user_id))
    return result.scalar_one_or_none()


async def vendor_for_user(db: AsyncSession, user_id: Optional[UUID]) -> Optional[Vendor]:
    if user_id is None:
        return None
    result = await db.execute(select(Vendor).where(Vendor.user_id == user_id))
    return result.scalar_one_or_none()


async def is_assigned_provider(db: AsyncSession, booking: Booking, actor: Actor) -> bool:
    if booking.provider_id is None or actor.role != UserRole.PROVIDER:
        return False
    provider = await provider_for_user(db, actor.id)
    return provider is not None and provider.id == booking.provider_id


async def ensure_can_view(db: AsyncSession, booking: Booking, actor: Actor) -> None:
    """Travelers see their own bookings, providers their assignments, vendors their pool's."""
    if actor.is_admin or booking.traveler_id == actor.id:
        return
    if await is_assigned_provider(db, booking, actor):
        return
    if actor.role == UserRole.VENDOR and booking.provider_id is not None:
        vendor = await vendor_for_user(db, actor.id)
        provider = await db.get(Provider, booking.provider_id)
        if vendor and provider and provider.vendor_id == vendor.id:
            return
    raise Forbidden("Not authorized to access this booking")


# ── Conditional write ─────────────────────────────────────────

async def conditional_update(
    db: AsyncSession,
    booking: Booking,
    expected: Dict[str, Any],
    values: Dict[str, Any],
) -> Booking:
    """
    UPDATE bookings SET <values>, version = version + 1
    WHERE id = :id AND version = :read_version AND <expected>.
    Zero rows means another writer got there first: Conflict.
    Queues an UPDATE change event and returns the re-read booking.

    `expected` may carry an explicit "version" to pin an earlier read.
    """
    old = snapshot(booking)
    expected = {"version": booking.version, **expected}
    conditions = [Booking.id == booking.id]
    for column, value in expected.items():
        attr = getattr(Booking, column)
        conditions.append(attr.is_(None) if value is None else attr == value)

    result = await db.execute(
        update(Booking)
        .where(*conditions)
        .values(version=Booking.version + 1, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise Conflict("Booking was modified concurrently; reload and retry")

    updated = await get_booking(db, booking.id)
    record_change(db, Booking.__tablename__, ChangeType.UPDATE, old=old, new=snapshot(updated))
    return updated
