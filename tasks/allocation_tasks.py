"""
tasks/allocation_tasks.py
Periodic allocation sweep.

Unassigned `pending` bookings older than AUTO_ROUTE_GRACE_MINUTES are
auto-routed as the system actor. A booking with no eligible provider is
left pending and retried on the next run; nothing ever auto-expires.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import close_db, get_db_context
from config.redis_client import close_redis
from config.settings import settings
from services.allocation.engine import auto_route_booking
from services.realtime.change_feed import ChangeFeed, open_change_feed
from shared.middleware.auth import Actor
from shared.models.models import Booking, BookingStatus
from shared.utils.exceptions import AppError, NoProviderAvailable
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


async def sweep_pending_bookings(
    db: AsyncSession,
    feed: ChangeFeed,
    now: Optional[datetime] = None,
) -> dict:
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(minutes=settings.AUTO_ROUTE_GRACE_MINUTES)

    result = await db.execute(
        select(Booking.id)
        .where(
            Booking.status == BookingStatus.PENDING,
            Booking.provider_id.is_(None),
            Booking.created_at <= cutoff,
        )
        .order_by(Booking.created_at.asc())
    )
    booking_ids = list(result.scalars().all())
    # Release the read transaction before each routing transaction
    await db.commit()

    routed, skipped = 0, 0
    actor = Actor.system()
    for booking_id in booking_ids:
        try:
            await auto_route_booking(db, feed, booking_id, actor)
            routed += 1
        except NoProviderAvailable:
            skipped += 1
            logger.info(f"auto_route_pending_bookings: no provider for booking {booking_id}, retrying later")
        except AppError as e:
            skipped += 1
            logger.warning(f"auto_route_pending_bookings: booking {booking_id} skipped ({e.code}): {e.detail}")

    logger.info(f"auto_route_pending_bookings: {routed} routed, {skipped} skipped of {len(booking_ids)}")
    return {"candidates": len(booking_ids), "routed": routed, "skipped": skipped}


async def _run_sweep() -> dict:
    feed = await open_change_feed()
    try:
        async with get_db_context() as db:
            return await sweep_pending_bookings(db, feed)
    finally:
        await close_redis()
        # Pooled connections are bound to this event loop
        await close_db()


@celery_app.task
def auto_route_pending_bookings():
    """Beat task: runs every AUTO_ROUTE_SWEEP_SECONDS."""
    try:
        return asyncio.run(_run_sweep())
    except Exception as e:
        logger.exception(f"auto_route_pending_bookings failed: {e}")
        raise
