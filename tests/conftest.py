"""Test fixtures for the referral ledger."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from referral_ledger import models  # noqa: F401
from referral_ledger.core.fingerprint import hash_client_value
from referral_ledger.database import Base, custom_json_dumps
from referral_ledger.models.referral import ReferralConversion
from referral_ledger.schemas.referral import (
    ClientMeta,
    ReferralCafeCreate,
    ReferralLinkCreate,
    ReferralPartnerCreate,
)
from referral_ledger.services.attribution_service import compute_commission
from referral_ledger.services.audit_service import Actor
from referral_ledger.services.link_service import LinkService
from referral_ledger.services.partner_service import PartnerService


TEST_IP = "203.0.113.7"
TEST_UA = "Mozilla/5.0 (X11; Linux x86_64) Firefox/131.0"


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    """Create test database engine."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        json_serializer=custom_json_dumps,
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_engine):
    """Create test database session."""
    async_session_maker = async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    async with async_session_maker() as session:
        try:
            yield session
        finally:
            await session.rollback()


@pytest.fixture
def actor():
    return Actor(id="ops-1", email="ops@qetta.com")


@pytest.fixture
def client_meta():
    return ClientMeta(ip_address=TEST_IP, user_agent=TEST_UA)


@pytest.fixture
def make_partner(db_session, actor):
    counter = {"n": 0}

    async def _make(**overrides):
        counter["n"] += 1
        data = {
            "org_id": f"org-{counter['n']}",
            "org_name": f"Partner {counter['n']}",
            "business_number": f"123-45-{counter['n']:05d}",
            "contact_email": f"partner{counter['n']}@example.com",
            "contact_name": "Kim Minji",
        }
        data.update(overrides)
        return await PartnerService(db_session).create_partner(ReferralPartnerCreate(**data), actor)

    return _make


@pytest.fixture
def make_cafe(db_session, actor):
    async def _make(partner, commission_rate="0.05", cafe_name="Startup Cafe"):
        return await PartnerService(db_session).create_cafe(
            ReferralCafeCreate(
                partner_id=partner.id,
                cafe_name=cafe_name,
                commission_rate=Decimal(commission_rate),
            ),
            actor,
        )

    return _make


@pytest.fixture
def make_link(db_session, actor):
    async def _make(cafe, **overrides):
        return await LinkService(db_session).create_link(
            ReferralLinkCreate(cafe_id=cafe.id, **overrides), actor
        )

    return _make


@pytest.fixture
def add_conversion(db_session):
    """Insert a conversion directly, with a chosen attribution time."""

    async def _add(link, cafe, user_id, amount, attributed_at=None, ip=TEST_IP, ua=TEST_UA):
        amount = Decimal(str(amount))
        conversion = ReferralConversion(
            user_id=user_id,
            link_id=link.id,
            ip_hash=hash_client_value(ip),
            user_agent_hash=hash_client_value(ua),
            attributed_at=attributed_at or datetime.now(timezone.utc),
            amount=amount,
            commission_rate=cafe.commission_rate,
            commission_amount=compute_commission(amount, cafe.commission_rate),
        )
        db_session.add(conversion)
        await db_session.commit()
        return conversion

    return _add


@pytest_asyncio.fixture
async def referral_setup(make_partner, make_cafe, make_link):
    """Partner with one 5% cafe and one link."""
    partner = await make_partner()
    cafe = await make_cafe(partner)
    link = await make_link(cafe)
    return partner, cafe, link


@pytest.fixture
def days_ago():
    def _days_ago(days: float) -> datetime:
        return datetime.now(timezone.utc) - timedelta(days=days)

    return _days_ago


@pytest_asyncio.fixture
async def async_client(db_session):
    """Create async test client."""
    from httpx import ASGITransport, AsyncClient

    from referral_ledger.database import get_db
    from referral_ledger.main import app

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
