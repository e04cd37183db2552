"""
tests/conftest.py
Shared fixtures: in-memory SQLite database, in-process change feed,
HTTP client with dependency overrides, and user/provider/booking factories.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-not-for-production")
os.environ.setdefault("CHANGE_FEED_BACKEND", "memory")

import uuid
from decimal import Decimal
from typing import Iterable, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from config.database import Base, get_db
from main import app
from services.allocation.engine import assign_to_provider
from services.booking import lifecycle
from services.realtime.change_feed import InMemoryChangeFeed, get_change_feed
from shared.middleware.auth import Actor
from shared.models.models import (
    Booking,
    KycStatus,
    Provider,
    Service,
    ServiceType,
    User,
    UserRole,
    Vendor,
)
from shared.utils.security import create_access_token


def auth_headers(user: User) -> dict:
    token, _ = create_access_token(str(user.id), user.role.value, user.email)
    return {"Authorization": f"Bearer {token}"}


# ── Infrastructure ────────────────────────────────────────────

@pytest_asyncio.fixture
async def db():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(engine, expire_on_commit=False, autoflush=False)
    async with session_factory() as session:
        yield session

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def feed() -> InMemoryChangeFeed:
    return InMemoryChangeFeed()


@pytest_asyncio.fixture
async def client(db: AsyncSession, feed: InMemoryChangeFeed):
    async def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_change_feed] = lambda: feed

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ── Factories ─────────────────────────────────────────────────

async def make_user(db: AsyncSession, role: UserRole, name: Optional[str] = None) -> User:
    suffix = uuid.uuid4().hex[:8]
    user = User(
        email=f"{role.value}-{suffix}@example.com",
        full_name=name or f"Test {role.value.title()} {suffix}",
        role=role,
    )
    db.add(user)
    await db.commit()
    return user


async def make_provider(
    db: AsyncSession,
    rating: Optional[str] = "4.50",
    service_types: Iterable[ServiceType] = (ServiceType.UMRAH,),
    kyc_status: KycStatus = KycStatus.APPROVED,
    vendor: Optional[Vendor] = None,
    is_suspended: bool = False,
    company_name: Optional[str] = None,
) -> Provider:
    user = await make_user(db, UserRole.PROVIDER)
    provider = Provider(
        user_id=user.id,
        vendor_id=vendor.id if vendor else None,
        company_name=company_name,
        rating=Decimal(rating) if rating is not None else None,
        kyc_status=kyc_status,
        is_suspended=is_suspended,
    )
    db.add(provider)
    await db.flush()
    for service_type in service_types:
        db.add(Service(
            provider_id=provider.id,
            title=f"{service_type.value.title()} by proxy",
            service_type=service_type,
            price=Decimal("1000.00"),
        ))
    await db.commit()
    return provider


async def make_vendor(db: AsyncSession, kyc_status: KycStatus = KycStatus.APPROVED) -> Vendor:
    user = await make_user(db, UserRole.VENDOR)
    vendor = Vendor(user_id=user.id, company_name="Al Noor Agency", kyc_status=kyc_status)
    db.add(vendor)
    await db.commit()
    return vendor


async def make_service(
    db: AsyncSession,
    service_type: ServiceType = ServiceType.UMRAH,
    price: str = "1000.00",
    currency: Optional[str] = None,
    is_active: bool = True,
) -> Service:
    """Catalog item owned by an unrelated, unapproved provider."""
    owner = await make_provider(db, rating=None, service_types=(), kyc_status=KycStatus.PENDING)
    service = Service(
        provider_id=owner.id,
        title=f"{service_type.value.title()} package",
        service_type=service_type,
        price=Decimal(price),
        currency=currency,
        is_active=is_active,
    )
    db.add(service)
    await db.commit()
    return service


async def make_booking(db: AsyncSession, feed, traveler: User, service: Service) -> Booking:
    return await lifecycle.create_booking(db, feed, Actor.from_user(traveler), service.id)


async def user_of(db: AsyncSession, provider: Provider) -> User:
    return await db.get(User, provider.user_id)


# ── Fixtures ──────────────────────────────────────────────────

@pytest_asyncio.fixture
async def traveler(db: AsyncSession) -> User:
    return await make_user(db, UserRole.TRAVELER, "Aisha Traveler")


@pytest_asyncio.fixture
async def other_traveler(db: AsyncSession) -> User:
    return await make_user(db, UserRole.TRAVELER, "Omar Traveler")


@pytest_asyncio.fixture
async def admin_user(db: AsyncSession) -> User:
    return await make_user(db, UserRole.ADMIN, "Platform Admin")


@pytest_asyncio.fixture
async def umrah_service(db: AsyncSession) -> Service:
    return await make_service(db, ServiceType.UMRAH)


@pytest_asyncio.fixture
async def provider(db: AsyncSession) -> Provider:
    return await make_provider(db, rating="4.50", service_types=(ServiceType.UMRAH,))


@pytest_asyncio.fixture
async def provider_user(db: AsyncSession, provider: Provider) -> User:
    return await user_of(db, provider)


@pytest_asyncio.fixture
async def pending_booking(db, feed, traveler: User, umrah_service: Service) -> Booking:
    return await make_booking(db, feed, traveler, umrah_service)


@pytest_asyncio.fixture
async def accepted_booking(db, feed, admin_user: User, pending_booking: Booking, provider: Provider) -> Booking:
    booking, _ = await assign_to_provider(
        db, feed, pending_booking.id, provider.id, Actor.from_user(admin_user)
    )
    return booking
