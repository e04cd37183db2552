"""
services/booking/lifecycle.py
Booking intake, status state machine and proof gallery.

States: pending → accepted → in_progress → completed
        with cancelled / disputed branches:

    pending      -> accepted | cancelled
    accepted     -> in_progress | cancelled
    in_progress  -> completed | disputed | cancelled
    disputed     -> completed | cancelled   (administrators only)
    completed, cancelled: terminal
"""

import logging
import re
import uuid
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.activity import ledger
from services.booking.store import (
    conditional_update,
    ensure_can_view,
    get_booking,
    is_assigned_provider,
    provider_for_user,
    unit_of_work,
    vendor_for_user,
)
from services.realtime.change_feed import ChangeFeed, ChangeType, record_change, snapshot
from shared.middleware.auth import Actor
from shared.models.models import (
    ActivityAction,
    Beneficiary,
    Booking,
    BookingStatus,
    Provider,
    Service,
    UserRole,
)
from shared.utils.exceptions import Conflict, Forbidden, InvalidTransition, NotFound

logger = logging.getLogger(__name__)

TRANSITIONS = {
    BookingStatus.PENDING: {BookingStatus.ACCEPTED, BookingStatus.CANCELLED},
    BookingStatus.ACCEPTED: {BookingStatus.IN_PROGRESS, BookingStatus.CANCELLED},
    BookingStatus.IN_PROGRESS: {
        BookingStatus.COMPLETED,
        BookingStatus.DISPUTED,
        BookingStatus.CANCELLED,
    },
    BookingStatus.DISPUTED: {BookingStatus.COMPLETED, BookingStatus.CANCELLED},
    BookingStatus.COMPLETED: set(),
    BookingStatus.CANCELLED: set(),
}

TERMINAL_STATUSES = frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED})

_HTML_TAG = re.compile(r"<[^>]*>")


def can_transition(current: BookingStatus, new: BookingStatus) -> bool:
    return new in TRANSITIONS[current]


def sanitize_special_requests(text: Optional[str]) -> Optional[str]:
    """Strip markup, trim and cap free text. Empty input becomes None."""
    if not text:
        return None
    cleaned = _HTML_TAG.sub("", text).strip()[: settings.SPECIAL_REQUESTS_MAX_LENGTH]
    return cleaned or None


def compute_total(price: Decimal) -> Decimal:
    fee = Decimal(str(settings.SERVICE_FEE_PERCENT)) / Decimal(100)
    return (Decimal(price) * (1 + fee)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


# ── Intake ────────────────────────────────────────────────────

async def create_booking(
    db: AsyncSession,
    feed: ChangeFeed,
    actor: Actor,
    service_id: UUID,
    beneficiary_id: Optional[UUID] = None,
    scheduled_date: Optional[date] = None,
    special_requests: Optional[str] = None,
) -> Booking:
    """Create an unassigned `pending` booking priced from the catalog."""
    if actor.id is None or actor.role in (UserRole.PROVIDER, UserRole.VENDOR):
        raise Forbidden("Providers and vendors cannot create bookings")

    async with unit_of_work(db, feed):
        service = await db.get(Service, service_id)
        if not service:
            raise NotFound("Service", service_id)
        if not service.is_active:
            raise Conflict("Service is not currently available")

        if beneficiary_id is not None:
            beneficiary = await db.get(Beneficiary, beneficiary_id)
            if not beneficiary:
                raise NotFound("Beneficiary", beneficiary_id)
            if beneficiary.user_id != actor.id:
                raise Forbidden("Beneficiary does not belong to you")

        booking = Booking(
            traveler_id=actor.id,
            beneficiary_id=beneficiary_id,
            service_id=service.id,
            provider_id=None,
            status=BookingStatus.PENDING,
            scheduled_date=scheduled_date,
            special_requests=sanitize_special_requests(special_requests),
            total_amount=compute_total(service.price),
            currency=service.currency or settings.DEFAULT_CURRENCY,
            proof_gallery=[],
        )
        db.add(booking)
        await db.flush()

        record_change(db, Booking.__tablename__, ChangeType.INSERT, new=snapshot(booking))
        await ledger.append(
            db,
            booking.id,
            actor.id,
            ActivityAction.CREATED,
            {"status": BookingStatus.PENDING.value, "total_amount": str(booking.total_amount)},
        )

    logger.info(f"Booking {booking.id} created by {actor.id} for service {service.id}")
    return booking


# ── Status State Machine ──────────────────────────────────────

async def update_status(
    db: AsyncSession,
    feed: ChangeFeed,
    booking_id: UUID,
    new_status: BookingStatus,
    actor: Actor,
) -> Booking:
    """
    Move a booking along one edge of the state graph.
    The write is conditional on the status read, so a concurrent change
    surfaces as Conflict instead of being overwritten.

    Leaving `pending` requires an assigned provider, cancellation included:
    an unassigned pending booking raises Conflict even for administrators
    and stays in the allocation queue until it is routed.
    """
    new_status = BookingStatus(new_status)

    async with unit_of_work(db, feed):
        booking = await get_booking(db, booking_id)
        current = booking.status

        if not actor.is_admin:
            if not await is_assigned_provider(db, booking, actor):
                raise Forbidden("Only the assigned provider or an administrator can change status")
            if current == BookingStatus.DISPUTED:
                raise Forbidden("Only an administrator can resolve a disputed booking")

        if not can_transition(current, new_status):
            raise InvalidTransition(current.value, new_status.value)

        if current == BookingStatus.PENDING and booking.provider_id is None:
            raise Conflict("Booking has no assigned provider")

        values = {"status": new_status}
        if new_status == BookingStatus.COMPLETED:
            values["completed_at"] = datetime.now(timezone.utc)

        booking = await conditional_update(db, booking, expected={"status": current}, values=values)
        if new_status == BookingStatus.COMPLETED:
            await db.execute(
                update(Provider)
                .where(Provider.id == booking.provider_id)
                .values(total_bookings=Provider.total_bookings + 1)
                .execution_options(synchronize_session=False)
            )
        await ledger.append(
            db,
            booking.id,
            actor.id,
            ActivityAction.status_changed(new_status),
            {"old_status": current.value, "new_status": new_status.value},
        )

    logger.info(f"Booking {booking_id}: {current.value} → {new_status.value} by {actor.id or 'system'}")
    return booking


# ── Proof Gallery ─────────────────────────────────────────────

async def _ensure_can_manage_proofs(db: AsyncSession, booking: Booking, actor: Actor) -> None:
    if actor.is_admin or await is_assigned_provider(db, booking, actor):
        return
    raise Forbidden("Only the assigned provider or an administrator can manage proofs")


async def upload_proof(
    db: AsyncSession,
    feed: ChangeFeed,
    booking_id: UUID,
    actor: Actor,
    url: str,
    description: Optional[str] = None,
    media_type: str = "image",
) -> Booking:
    async with unit_of_work(db, feed):
        booking = await get_booking(db, booking_id)
        await _ensure_can_manage_proofs(db, booking, actor)

        item = {
            "id": str(uuid.uuid4()),
            "url": str(url),
            "description": description,
            "uploaded_by": str(actor.id) if actor.id else None,
            "uploaded_at": datetime.now(timezone.utc).isoformat(),
            "media_type": media_type,
        }
        gallery = list(booking.proof_gallery or []) + [item]
        booking = await conditional_update(
            db, booking, expected={"status": booking.status}, values={"proof_gallery": gallery}
        )
        await ledger.append(
            db,
            booking.id,
            actor.id,
            ActivityAction.PROOF_UPLOADED,
            {"proof_id": item["id"], "description": description, "media_type": media_type},
        )

    logger.info(f"Proof {item['id']} added to booking {booking_id}")
    return booking


async def delete_proof(
    db: AsyncSession,
    feed: ChangeFeed,
    booking_id: UUID,
    proof_id: str,
    actor: Actor,
) -> Booking:
    async with unit_of_work(db, feed):
        booking = await get_booking(db, booking_id)
        await _ensure_can_manage_proofs(db, booking, actor)

        gallery = list(booking.proof_gallery or [])
        remaining = [item for item in gallery if item.get("id") != proof_id]
        if len(remaining) == len(gallery):
            raise NotFound("Proof", proof_id)

        booking = await conditional_update(
            db, booking, expected={"status": booking.status}, values={"proof_gallery": remaining}
        )
        await ledger.append(db, booking.id, actor.id, ActivityAction.PROOF_DELETED, {"proof_id": proof_id})

    logger.info(f"Proof {proof_id} removed from booking {booking_id}")
    return booking


# ── Reads ─────────────────────────────────────────────────────

async def get_booking_for(db: AsyncSession, booking_id: UUID, actor: Actor) -> Booking:
    booking = await get_booking(db, booking_id)
    await ensure_can_view(db, booking, actor)
    return booking


async def list_bookings(
    db: AsyncSession,
    actor: Actor,
    status: Optional[BookingStatus] = None,
    page: int = 1,
    page_size: int = 20,
) -> List[Booking]:
    """Role-scoped listing, newest first."""
    query = select(Booking)

    if actor.is_admin:
        pass
    elif actor.role == UserRole.PROVIDER:
        provider = await provider_for_user(db, actor.id)
        if not provider:
            return []
        query = query.where(Booking.provider_id == provider.id)
    elif actor.role == UserRole.VENDOR:
        vendor = await vendor_for_user(db, actor.id)
        if not vendor:
            return []
        pool = select(Provider.id).where(Provider.vendor_id == vendor.id)
        query = query.where(Booking.provider_id.in_(pool))
    else:
        query = query.where(Booking.traveler_id == actor.id)

    if status is not None:
        query = query.where(Booking.status == BookingStatus(status))

    query = (
        query.order_by(Booking.created_at.desc(), Booking.id)
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    result = await db.execute(query)
    return list(result.scalars().all())


async def list_activities(db: AsyncSession, booking_id: UUID, actor: Actor):
    await get_booking_for(db, booking_id, actor)
    return await ledger.list_for(db, booking_id)
