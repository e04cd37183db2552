"""
services/allocation/engine.py
Allocation engine: manual assignment, automatic routing and unassignment.

Each operation is a single transaction. The allocation row and the
booking's provider/status are written together, and the booking write
is conditional on the status and provider read, so two dispatchers
racing on the same booking cannot both win.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional, Tuple
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.activity import ledger
from services.booking.lifecycle import TERMINAL_STATUSES
from services.booking.store import (
    conditional_update,
    get_booking,
    get_provider,
    unit_of_work,
    vendor_for_user,
)
from services.realtime.change_feed import ChangeFeed, ChangeType, record_change, snapshot
from shared.middleware.auth import Actor
from shared.models.models import (
    ActivityAction,
    AllocationStatus,
    AllocationType,
    Booking,
    BookingStatus,
    KycStatus,
    Provider,
    Service,
    ServiceAllocation,
    ServiceType,
    UserRole,
    Vendor,
)
from shared.utils.exceptions import Conflict, Forbidden, NoProviderAvailable, NotFound

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (BookingStatus.ACCEPTED, BookingStatus.IN_PROGRESS)
ASSIGNABLE_STATUSES = frozenset({BookingStatus.PENDING, BookingStatus.ACCEPTED})


# ── Helpers ───────────────────────────────────────────────────

def _eligibility():
    return (
        Provider.kyc_status == KycStatus.APPROVED,
        Provider.is_active.is_(True),
        Provider.is_suspended.is_(False),
    )


def is_eligible(provider: Provider) -> bool:
    return (
        provider.kyc_status == KycStatus.APPROVED
        and provider.is_active
        and not provider.is_suspended
    )


async def _assigning_vendor(db: AsyncSession, actor: Actor) -> Optional[Vendor]:
    """None for administrators; the actor's vendor record for vendors."""
    if actor.is_admin:
        return None
    if actor.role == UserRole.VENDOR:
        vendor = await vendor_for_user(db, actor.id)
        if vendor:
            return vendor
    raise Forbidden("Only administrators or vendors can allocate bookings")


def _ensure_assignable(booking: Booking) -> None:
    if booking.status in TERMINAL_STATUSES:
        raise Conflict(f"Booking is {booking.status.value} and can no longer be assigned")
    if booking.status not in ASSIGNABLE_STATUSES:
        raise Conflict(f"Booking in '{booking.status.value}' state cannot be reassigned")


async def get_allocation(db: AsyncSession, booking_id: UUID) -> Optional[ServiceAllocation]:
    result = await db.execute(
        select(ServiceAllocation)
        .where(ServiceAllocation.booking_id == booking_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def _ranked_providers_query(service_type: Optional[ServiceType] = None, vendor_id: Optional[UUID] = None):
    """
    Eligible providers, best first:
    rating desc (unrated last), fewer active bookings, seniority, id.
    """
    active_load = (
        select(Booking.provider_id, func.count(Booking.id).label("active"))
        .where(Booking.status.in_(ACTIVE_STATUSES))
        .group_by(Booking.provider_id)
        .subquery()
    )
    load = func.coalesce(active_load.c.active, 0)

    query = (
        select(Provider)
        .outerjoin(active_load, active_load.c.provider_id == Provider.id)
        .where(*_eligibility())
    )
    if service_type is not None:
        offers = select(Service.provider_id).where(
            Service.service_type == ServiceType(service_type),
            Service.is_active.is_(True),
        )
        query = query.where(Provider.id.in_(offers))
    if vendor_id is not None:
        query = query.where(Provider.vendor_id == vendor_id)

    return query.order_by(
        Provider.rating.desc().nulls_last(),
        load.asc(),
        Provider.created_at.asc(),
        Provider.id.asc(),
    )


async def _assign(
    db: AsyncSession,
    booking: Booking,
    provider: Provider,
    actor: Actor,
    vendor: Optional[Vendor],
    allocation_type: AllocationType,
    notes: Optional[str],
) -> Tuple[Booking, ServiceAllocation]:
    """Write allocation + booking + ledger inside the caller's transaction."""
    _ensure_assignable(booking)
    if not is_eligible(provider):
        raise Conflict("Provider is not approved, active and unsuspended")
    if vendor is not None and provider.vendor_id != vendor.id:
        raise Forbidden("Provider is not in your pool")

    previous_provider_id = booking.provider_id
    old_status = booking.status
    now = datetime.now(timezone.utc)

    values = {"provider_id": provider.id}
    if old_status == BookingStatus.PENDING:
        values["status"] = BookingStatus.ACCEPTED
    booking = await conditional_update(
        db,
        booking,
        expected={"status": old_status, "provider_id": previous_provider_id},
        values=values,
    )

    allocation = await get_allocation(db, booking.id)
    fields = dict(
        provider_id=provider.id,
        vendor_id=provider.vendor_id,
        status=AllocationStatus.ASSIGNED,
        allocation_type=allocation_type,
        assigned_at=now,
        assigned_by=actor.id,
        notes=notes,
    )
    if allocation is None:
        allocation = ServiceAllocation(booking_id=booking.id, **fields)
        db.add(allocation)
        await db.flush()
        record_change(db, ServiceAllocation.__tablename__, ChangeType.INSERT, new=snapshot(allocation))
    else:
        old = snapshot(allocation)
        for key, value in fields.items():
            setattr(allocation, key, value)
        await db.flush()
        await db.refresh(allocation)
        record_change(
            db, ServiceAllocation.__tablename__, ChangeType.UPDATE, old=old, new=snapshot(allocation)
        )

    if previous_provider_id is None:
        await ledger.append(
            db,
            booking.id,
            actor.id,
            ActivityAction.STATUS_CHANGED_TO_ACCEPTED,
            {
                "old_status": old_status.value,
                "new_status": booking.status.value,
                "provider_id": str(provider.id),
                "allocation_type": allocation_type.value,
            },
        )
    else:
        await ledger.append(
            db,
            booking.id,
            actor.id,
            ActivityAction.PROVIDER_REASSIGNED,
            {
                "previous_provider_id": str(previous_provider_id),
                "provider_id": str(provider.id),
                "allocation_type": allocation_type.value,
            },
        )
    return booking, allocation


# ── Operations ────────────────────────────────────────────────

async def assign_to_provider(
    db: AsyncSession,
    feed: ChangeFeed,
    booking_id: UUID,
    provider_id: UUID,
    actor: Actor,
    notes: Optional[str] = None,
    allocation_type: AllocationType = AllocationType.MANUAL,
) -> Tuple[Booking, ServiceAllocation]:
    """Assign (or reassign) a booking to a specific provider."""
    async with unit_of_work(db, feed):
        vendor = await _assigning_vendor(db, actor)
        booking = await get_booking(db, booking_id)
        provider = await get_provider(db, provider_id)
        booking, allocation = await _assign(
            db, booking, provider, actor, vendor, AllocationType(allocation_type), notes
        )

    logger.info(
        f"Booking {booking_id} assigned to provider {provider_id} "
        f"({allocation.allocation_type.value}) by {actor.id or 'system'}"
    )
    return booking, allocation


async def auto_route_booking(
    db: AsyncSession,
    feed: ChangeFeed,
    booking_id: UUID,
    actor: Actor,
) -> Tuple[Booking, ServiceAllocation]:
    """
    Pick the best eligible provider offering the booking's service type
    and assign it. Raises NoProviderAvailable without writing anything
    when no provider qualifies.
    """
    async with unit_of_work(db, feed):
        vendor = await _assigning_vendor(db, actor)
        booking = await get_booking(db, booking_id)
        _ensure_assignable(booking)

        service = await db.get(Service, booking.service_id)
        if not service:
            raise NotFound("Service", booking.service_id)

        query = _ranked_providers_query(service.service_type, vendor.id if vendor else None)
        result = await db.execute(query.limit(1))
        provider = result.scalars().first()
        if provider is None:
            raise NoProviderAvailable(
                f"No eligible provider offers {service.service_type.value} services"
            )

        booking, allocation = await _assign(
            db, booking, provider, actor, vendor, AllocationType.AUTO, settings.AUTO_ROUTE_NOTE
        )

    logger.info(f"Booking {booking_id} auto-routed to provider {provider.id}")
    return booking, allocation


async def unassign_booking(
    db: AsyncSession,
    feed: ChangeFeed,
    booking_id: UUID,
    actor: Actor,
) -> Booking:
    """Return a booking to the unassigned `pending` pool. Repeating it is a no-op."""
    if not actor.is_admin:
        raise Forbidden("Only administrators can unassign bookings")

    async with unit_of_work(db, feed):
        booking = await get_booking(db, booking_id)
        result = await db.execute(
            select(ServiceAllocation).where(ServiceAllocation.booking_id == booking.id)
        )
        allocations = list(result.scalars().all())

        if (
            booking.provider_id is None
            and booking.status == BookingStatus.PENDING
            and not allocations
        ):
            return booking

        old_status = booking.status
        previous_provider_id = booking.provider_id
        booking = await conditional_update(
            db,
            booking,
            expected={"status": old_status, "provider_id": previous_provider_id},
            values={"provider_id": None, "status": BookingStatus.PENDING, "completed_at": None},
        )

        for allocation in allocations:
            record_change(
                db, ServiceAllocation.__tablename__, ChangeType.DELETE, old=snapshot(allocation)
            )
            await db.delete(allocation)
        await db.flush()

        await ledger.append(
            db,
            booking.id,
            actor.id,
            ActivityAction.BOOKING_UNASSIGNED,
            {
                "old_status": old_status.value,
                "previous_provider_id": str(previous_provider_id) if previous_provider_id else None,
            },
        )

    logger.info(f"Booking {booking_id} unassigned by {actor.id or 'system'}")
    return booking


# ── Reads ─────────────────────────────────────────────────────

async def list_allocation_queue(
    db: AsyncSession, actor: Actor
) -> List[Tuple[Booking, Optional[ServiceAllocation]]]:
    """Bookings awaiting or holding an assignment, newest first."""
    if not actor.is_admin:
        raise Forbidden("Only administrators can view the allocation queue")

    result = await db.execute(
        select(Booking, ServiceAllocation)
        .outerjoin(ServiceAllocation, ServiceAllocation.booking_id == Booking.id)
        .where(Booking.status.in_(ASSIGNABLE_STATUSES))
        .order_by(Booking.created_at.desc(), Booking.id)
    )
    return [(booking, allocation) for booking, allocation in result.all()]


async def list_available_providers(
    db: AsyncSession,
    actor: Actor,
    service_type: Optional[ServiceType] = None,
) -> List[Provider]:
    """Eligible providers in routing order; vendors see only their pool."""
    vendor = await _assigning_vendor(db, actor)
    result = await db.execute(_ranked_providers_query(service_type, vendor.id if vendor else None))
    return list(result.scalars().all())
