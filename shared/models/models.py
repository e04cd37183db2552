"""
shared/models/models.py
All SQLAlchemy ORM models for the pilgrimage services platform.
UUID primary keys throughout; the activity ledger uses a monotonic integer key.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from config.database import Base

JsonColumn = JSON().with_variant(JSONB(), "postgresql")
LedgerKey = BigInteger().with_variant(Integer(), "sqlite")


def _enum(enum_cls: type[PyEnum]) -> Enum:
    """Store enum values (snake_case strings), not member names."""
    return Enum(
        enum_cls,
        name=enum_cls.__name__.lower(),
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


# ── Enumerations ──────────────────────────────────────────────

class UserRole(str, PyEnum):
    TRAVELER = "traveler"
    PROVIDER = "provider"
    VENDOR = "vendor"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


ADMIN_ROLES = frozenset({UserRole.ADMIN, UserRole.SUPER_ADMIN})


class KycStatus(str, PyEnum):
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    REJECTED = "rejected"


class ServiceType(str, PyEnum):
    UMRAH = "umrah"
    HAJJ = "hajj"
    ZIYARAT = "ziyarat"


class BeneficiaryStatus(str, PyEnum):
    DECEASED = "deceased"
    SICK = "sick"
    ELDERLY = "elderly"
    DISABLED = "disabled"
    OTHER = "other"


class BookingStatus(str, PyEnum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"


class AllocationStatus(str, PyEnum):
    ASSIGNED = "assigned"


class AllocationType(str, PyEnum):
    MANUAL = "manual"
    AUTO = "auto"


class ActivityCategory(str, PyEnum):
    LIFECYCLE = "lifecycle"
    ALLOCATION = "allocation"
    EVIDENCE = "evidence"
    MESSAGING = "messaging"


class ActivitySeverity(str, PyEnum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class ActivityAction(str, PyEnum):
    CREATED = "created"
    STATUS_CHANGED_TO_ACCEPTED = "status_changed_to_accepted"
    STATUS_CHANGED_TO_IN_PROGRESS = "status_changed_to_in_progress"
    STATUS_CHANGED_TO_COMPLETED = "status_changed_to_completed"
    STATUS_CHANGED_TO_CANCELLED = "status_changed_to_cancelled"
    STATUS_CHANGED_TO_DISPUTED = "status_changed_to_disputed"
    PROVIDER_REASSIGNED = "provider_reassigned"
    BOOKING_UNASSIGNED = "booking_unassigned"
    PROOF_UPLOADED = "proof_uploaded"
    PROOF_DELETED = "proof_deleted"
    MESSAGE_SENT = "message_sent"

    @classmethod
    def status_changed(cls, status: "BookingStatus") -> "ActivityAction":
        return cls(f"status_changed_to_{status.value}")

    @property
    def category(self) -> ActivityCategory:
        return ACTIVITY_TAXONOMY[self][0]

    @property
    def severity(self) -> ActivitySeverity:
        return ACTIVITY_TAXONOMY[self][1]


ACTIVITY_TAXONOMY = {
    ActivityAction.CREATED: (ActivityCategory.LIFECYCLE, ActivitySeverity.INFO),
    ActivityAction.STATUS_CHANGED_TO_ACCEPTED: (ActivityCategory.LIFECYCLE, ActivitySeverity.INFO),
    ActivityAction.STATUS_CHANGED_TO_IN_PROGRESS: (ActivityCategory.LIFECYCLE, ActivitySeverity.INFO),
    ActivityAction.STATUS_CHANGED_TO_COMPLETED: (ActivityCategory.LIFECYCLE, ActivitySeverity.INFO),
    ActivityAction.STATUS_CHANGED_TO_CANCELLED: (ActivityCategory.LIFECYCLE, ActivitySeverity.WARNING),
    ActivityAction.STATUS_CHANGED_TO_DISPUTED: (ActivityCategory.LIFECYCLE, ActivitySeverity.CRITICAL),
    ActivityAction.PROVIDER_REASSIGNED: (ActivityCategory.ALLOCATION, ActivitySeverity.INFO),
    ActivityAction.BOOKING_UNASSIGNED: (ActivityCategory.ALLOCATION, ActivitySeverity.WARNING),
    ActivityAction.PROOF_UPLOADED: (ActivityCategory.EVIDENCE, ActivitySeverity.INFO),
    ActivityAction.PROOF_DELETED: (ActivityCategory.EVIDENCE, ActivitySeverity.WARNING),
    ActivityAction.MESSAGE_SENT: (ActivityCategory.MESSAGING, ActivitySeverity.INFO),
}


# ── Mixins ────────────────────────────────────────────────────

class TimestampMixin:
    """Adds created_at and updated_at to any model."""
    __mapper_args__ = {"eager_defaults": True}

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class KycMixin:
    """Verification and suspension fields shared by providers and vendors."""
    kyc_status: Mapped[KycStatus] = mapped_column(
        _enum(KycStatus), default=KycStatus.PENDING, nullable=False
    )
    kyc_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    kyc_submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    kyc_reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_suspended: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    suspension_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


# ── Models ────────────────────────────────────────────────────

class User(TimestampMixin, Base):
    """Account resolved from the identity provider; role drives authorization."""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[UserRole] = mapped_column(
        _enum(UserRole), nullable=False, default=UserRole.TRAVELER
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (Index("ix_users_role", "role"),)

    def __repr__(self) -> str:
        return f"<User {self.email} ({self.role})>"


class Vendor(TimestampMixin, KycMixin, Base):
    """Agency that manages a pool of providers."""
    __tablename__ = "vendors"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    company_name: Mapped[str] = mapped_column(String(255), nullable=False)

    providers: Mapped[List["Provider"]] = relationship(back_populates="vendor")


class Provider(TimestampMixin, KycMixin, Base):
    """
    Performer of rites. Eligible for allocation only while
    kyc_status=approved, is_active and not is_suspended.
    """
    __tablename__ = "providers"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    vendor_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("vendors.id", ondelete="SET NULL"), nullable=True
    )
    company_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    rating: Mapped[Optional[Decimal]] = mapped_column(Numeric(3, 2), nullable=True)
    total_bookings: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    vendor: Mapped[Optional["Vendor"]] = relationship(back_populates="providers")
    services: Mapped[List["Service"]] = relationship(back_populates="provider")

    __table_args__ = (
        Index("ix_providers_eligibility", "kyc_status", "is_active", "is_suspended"),
        Index("ix_providers_vendor_id", "vendor_id"),
    )


class Service(TimestampMixin, Base):
    """Catalog item offered by a provider; service_type drives auto-routing."""
    __tablename__ = "services"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    provider_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("providers.id", ondelete="CASCADE"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    service_type: Mapped[ServiceType] = mapped_column(_enum(ServiceType), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[Optional[str]] = mapped_column(String(3), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    provider: Mapped["Provider"] = relationship(back_populates="services")

    __table_args__ = (Index("ix_services_type_active", "service_type", "is_active"),)


class Beneficiary(TimestampMixin, Base):
    """Person on whose behalf a rite is performed."""
    __tablename__ = "beneficiaries"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[BeneficiaryStatus] = mapped_column(
        _enum(BeneficiaryStatus), default=BeneficiaryStatus.OTHER, nullable=False
    )


class Booking(TimestampMixin, Base):
    """
    Core booking entity.
    Status transitions: pending → accepted → in_progress → completed,
    with cancelled / disputed branches (see services/booking/lifecycle.py).
    """
    __tablename__ = "bookings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    traveler_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    beneficiary_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("beneficiaries.id"), nullable=True
    )
    service_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("services.id"), nullable=False
    )
    provider_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("providers.id"), nullable=True
    )

    status: Mapped[BookingStatus] = mapped_column(
        _enum(BookingStatus), nullable=False, default=BookingStatus.PENDING
    )
    scheduled_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    special_requests: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Pricing
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="SAR")

    # Evidence: [{id, url, description, uploaded_by, uploaded_at, media_type}]
    proof_gallery: Mapped[list] = mapped_column(JsonColumn, default=list, nullable=False)

    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Bumped by every conditional write (services/booking/store.py)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status = 'pending' OR provider_id IS NOT NULL",
            name="ck_bookings_provider_assigned",
        ),
        CheckConstraint(
            "(status = 'completed') = (completed_at IS NOT NULL)",
            name="ck_bookings_completed_at",
        ),
        Index("ix_bookings_traveler_id", "traveler_id"),
        Index("ix_bookings_provider_id", "provider_id"),
        Index("ix_bookings_status", "status"),
    )


class ServiceAllocation(TimestampMixin, Base):
    """Provider-assignment decision for one booking (1:1)."""
    __tablename__ = "service_allocations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    provider_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("providers.id"), nullable=False
    )
    vendor_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("vendors.id"), nullable=True
    )
    status: Mapped[AllocationStatus] = mapped_column(
        _enum(AllocationStatus), default=AllocationStatus.ASSIGNED, nullable=False
    )
    allocation_type: Mapped[AllocationType] = mapped_column(
        _enum(AllocationType), default=AllocationType.MANUAL, nullable=False
    )
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    assigned_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (Index("ix_service_allocations_provider_id", "provider_id"),)


class BookingActivity(Base):
    """Immutable ledger entry. Never updated or deleted."""
    __tablename__ = "booking_activities"
    __mapper_args__ = {"eager_defaults": True}

    id: Mapped[int] = mapped_column(LedgerKey, primary_key=True, autoincrement=True)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False
    )
    actor_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    action: Mapped[ActivityAction] = mapped_column(
        Enum(
            ActivityAction,
            name="activityaction",
            values_callable=lambda members: [m.value for m in members],
            native_enum=False,
            length=50,
        ),
        nullable=False,
    )
    details: Mapped[dict] = mapped_column(JsonColumn, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("ix_booking_activities_timeline", "booking_id", "created_at", "id"),
    )

    @property
    def category(self) -> str:
        return self.action.category.value

    @property
    def severity(self) -> str:
        return self.action.severity.value


class Message(Base):
    """One directed note in a booking's traveler/provider conversation."""
    __tablename__ = "messages"
    __mapper_args__ = {"eager_defaults": True}

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False
    )
    sender_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    recipient_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("ix_messages_booking_created", "booking_id", "created_at"),
        Index("ix_messages_recipient_unread", "recipient_id", "is_read"),
    )
