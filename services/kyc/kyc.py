"""
services/kyc/kyc.py
KYC submission/review and suspension for providers and vendors.
Every write publishes an UPDATE on the record's table, which the
notification fan-out turns into approval/rejection notices.
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Union
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from services.booking.store import unit_of_work
from services.realtime.change_feed import ChangeFeed, ChangeType, record_change, snapshot
from shared.middleware.auth import Actor
from shared.models.models import KycStatus, Provider, Vendor
from shared.utils.exceptions import Conflict, Forbidden, NotFound

logger = logging.getLogger(__name__)

SUBJECTS = {
    "providers": Provider,
    "vendors": Vendor,
}

SUBMITTABLE = frozenset({KycStatus.PENDING, KycStatus.REJECTED})
DECISIONS = frozenset({KycStatus.APPROVED, KycStatus.REJECTED})

KycRecord = Union[Provider, Vendor]


def _model(subject: str):
    try:
        return SUBJECTS[subject]
    except KeyError:
        raise NotFound("KYC subject", subject)


async def _save(db: AsyncSession, record: KycRecord, old: dict) -> KycRecord:
    await db.flush()
    await db.refresh(record)
    record_change(db, record.__tablename__, ChangeType.UPDATE, old=old, new=snapshot(record))
    return record


async def get_record(db: AsyncSession, subject: str, record_id: UUID) -> KycRecord:
    model = _model(subject)
    result = await db.execute(
        select(model).where(model.id == record_id).execution_options(populate_existing=True)
    )
    record = result.scalar_one_or_none()
    if not record:
        raise NotFound(model.__name__, record_id)
    return record


async def submit_kyc(db: AsyncSession, feed: ChangeFeed, subject: str, actor: Actor) -> KycRecord:
    """Owner sends their record for review: pending|rejected → under_review."""
    model = _model(subject)
    async with unit_of_work(db, feed):
        result = await db.execute(
            select(model).where(model.user_id == actor.id).execution_options(populate_existing=True)
        )
        record = result.scalar_one_or_none()
        if not record:
            raise NotFound(model.__name__)
        if record.kyc_status not in SUBMITTABLE:
            raise Conflict(f"KYC is already {record.kyc_status.value}")

        old = snapshot(record)
        record.kyc_status = KycStatus.UNDER_REVIEW
        record.kyc_submitted_at = datetime.now(timezone.utc)
        record = await _save(db, record, old)

    logger.info(f"{model.__name__} {record.id} submitted KYC for review")
    return record


async def review_kyc(
    db: AsyncSession,
    feed: ChangeFeed,
    subject: str,
    record_id: UUID,
    decision: KycStatus,
    notes: Optional[str],
    actor: Actor,
) -> KycRecord:
    if not actor.is_admin:
        raise Forbidden("Only administrators can review KYC")
    decision = KycStatus(decision)
    if decision not in DECISIONS:
        raise Conflict("KYC decision must be approved or rejected")

    async with unit_of_work(db, feed):
        record = await get_record(db, subject, record_id)
        if record.kyc_status != KycStatus.UNDER_REVIEW:
            raise Conflict(f"KYC is {record.kyc_status.value}, not under review")

        old = snapshot(record)
        record.kyc_status = decision
        record.kyc_notes = notes
        record.kyc_reviewed_at = datetime.now(timezone.utc)
        record = await _save(db, record, old)

    logger.info(f"KYC for {subject} {record_id} {decision.value} by {actor.id or 'system'}")
    return record


async def set_suspension(
    db: AsyncSession,
    feed: ChangeFeed,
    subject: str,
    record_id: UUID,
    suspended: bool,
    reason: Optional[str],
    actor: Actor,
) -> KycRecord:
    if not actor.is_admin:
        raise Forbidden("Only administrators can suspend accounts")

    async with unit_of_work(db, feed):
        record = await get_record(db, subject, record_id)
        old = snapshot(record)
        record.is_suspended = suspended
        record.suspension_reason = reason if suspended else None
        record = await _save(db, record, old)

    if suspended:
        logger.warning(f"{subject} {record_id} suspended: {reason}")
    else:
        logger.info(f"{subject} {record_id} reinstated")
    return record
