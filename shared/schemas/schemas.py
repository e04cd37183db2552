"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the platform.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, HttpUrl

from shared.models.models import (
    ActivityAction,
    BookingStatus,
    KycStatus,
)


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


# ── Booking ───────────────────────────────────────────────────

class BookingCreateRequest(BaseSchema):
    service_id: uuid.UUID
    beneficiary_id: Optional[uuid.UUID] = None
    scheduled_date: Optional[date] = None
    special_requests: Optional[str] = Field(None, max_length=5000)


class ProofItem(BaseSchema):
    id: str
    url: str
    description: Optional[str] = None
    uploaded_by: Optional[str] = None
    uploaded_at: datetime
    media_type: str


class BookingResponse(BaseSchema):
    id: uuid.UUID
    traveler_id: uuid.UUID
    beneficiary_id: Optional[uuid.UUID]
    service_id: uuid.UUID
    provider_id: Optional[uuid.UUID]
    status: str
    scheduled_date: Optional[date]
    special_requests: Optional[str]
    total_amount: Decimal
    currency: str
    proof_gallery: List[ProofItem] = []
    completed_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime


class BookingStatusUpdateRequest(BaseSchema):
    status: BookingStatus


class ProofUploadRequest(BaseSchema):
    url: HttpUrl
    description: Optional[str] = Field(None, max_length=500)
    media_type: Literal["image", "video"] = "image"


# ── Activity Ledger ───────────────────────────────────────────

class ActivityResponse(BaseSchema):
    id: int
    booking_id: uuid.UUID
    actor_id: Optional[uuid.UUID]
    action: ActivityAction
    category: str
    severity: str
    details: Dict[str, Any]
    created_at: datetime


# ── Allocation ────────────────────────────────────────────────

class AssignRequest(BaseSchema):
    provider_id: uuid.UUID
    notes: Optional[str] = Field(None, max_length=1000)


class AllocationResponse(BaseSchema):
    id: uuid.UUID
    booking_id: uuid.UUID
    provider_id: uuid.UUID
    vendor_id: Optional[uuid.UUID]
    status: str
    allocation_type: str
    assigned_at: datetime
    assigned_by: Optional[uuid.UUID]
    notes: Optional[str]


class AllocationResultResponse(BaseSchema):
    booking: BookingResponse
    allocation: AllocationResponse


class AllocationQueueItem(BaseSchema):
    booking: BookingResponse
    allocation: Optional[AllocationResponse] = None


class ProviderSummaryResponse(BaseSchema):
    id: uuid.UUID
    user_id: uuid.UUID
    vendor_id: Optional[uuid.UUID]
    company_name: Optional[str]
    rating: Optional[float]
    total_bookings: int
    kyc_status: str


# ── Messaging ─────────────────────────────────────────────────

class ChatMessageCreateRequest(BaseSchema):
    recipient_id: uuid.UUID
    content: str = Field(..., min_length=1, max_length=5000)


class ChatMessageResponse(BaseSchema):
    id: uuid.UUID
    booking_id: uuid.UUID
    sender_id: uuid.UUID
    recipient_id: uuid.UUID
    content: str
    is_read: bool
    created_at: datetime


class MarkReadResponse(BaseSchema):
    updated: int


# ── Notification ──────────────────────────────────────────────

class NotificationResponse(BaseSchema):
    """Client-held notification; never persisted."""
    id: str
    type: str
    title: str
    message: str
    entity_id: Optional[str] = None
    entity_type: Optional[str] = None
    is_read: bool = False
    created_at: datetime


class NotificationCommand(BaseSchema):
    action: Literal["mark_read", "mark_all_read", "clear"]
    id: Optional[str] = None


# ── KYC ───────────────────────────────────────────────────────

class KycReviewRequest(BaseSchema):
    decision: Literal["approved", "rejected"]
    notes: Optional[str] = Field(None, max_length=1000)


class SuspensionRequest(BaseSchema):
    suspended: bool
    reason: Optional[str] = Field(None, max_length=500)


class KycRecordResponse(BaseSchema):
    id: uuid.UUID
    user_id: uuid.UUID
    company_name: Optional[str]
    kyc_status: KycStatus
    kyc_notes: Optional[str]
    kyc_submitted_at: Optional[datetime]
    kyc_reviewed_at: Optional[datetime]
    is_active: bool
    is_suspended: bool
    suspension_reason: Optional[str]


# ── Generic ───────────────────────────────────────────────────

class MessageResponse(BaseSchema):
    message: str
    success: bool = True


class ErrorResponse(BaseSchema):
    detail: str
    code: Optional[str] = None
