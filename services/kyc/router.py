"""
services/kyc/router.py
KYC submission for providers/vendors and admin review / suspension.
"""

from typing import Literal
from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.kyc import kyc
from services.realtime.change_feed import ChangeFeed, get_change_feed
from shared.middleware.auth import Actor, get_actor, require_admin
from shared.models.models import KycStatus
from shared.schemas.schemas import KycRecordResponse, KycReviewRequest, SuspensionRequest

router = APIRouter(prefix="/kyc", tags=["KYC"])

Subject = Literal["providers", "vendors"]


@router.post("/{subject}/submit", response_model=KycRecordResponse)
async def submit_kyc(
    subject: Subject,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
):
    """Send your own provider/vendor record for review."""
    record = await kyc.submit_kyc(db, feed, subject, actor)
    return KycRecordResponse.model_validate(record)


@router.post("/{subject}/{record_id}/review", response_model=KycRecordResponse)
async def review_kyc(
    subject: Subject,
    record_id: UUID,
    data: KycReviewRequest,
    actor: Actor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
):
    record = await kyc.review_kyc(
        db, feed, subject, record_id, KycStatus(data.decision), data.notes, actor
    )
    return KycRecordResponse.model_validate(record)


@router.post("/{subject}/{record_id}/suspension", response_model=KycRecordResponse)
async def set_suspension(
    subject: Subject,
    record_id: UUID,
    data: SuspensionRequest,
    actor: Actor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
):
    record = await kyc.set_suspension(
        db, feed, subject, record_id, data.suspended, data.reason, actor
    )
    return KycRecordResponse.model_validate(record)
