"""Shared test infrastructure for the Bagsy Platform test suite.

Provides:
- db_session: async SQLite in-memory session with all tables created
- session_factory: sessionmaker bound to the same in-memory database
- notifier_mock: mock NotificationService capturing (kind, recipient, payload)
- fake_dispatcher: records delegate enqueues instead of running them
- make_user / make_space / make_profile / make_delegate: row factories
"""

import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Import Base first, then models to register all tables
from bagsy_platform.infra.database import Base

import bagsy_platform.domain.models  # noqa: F401

from bagsy_platform.domain.models import NegotiationDelegate, Space, User, VerificationProfile


# ---------------------------------------------------------------------------
# Database session fixture
# ---------------------------------------------------------------------------

@pytest.fixture
async def db_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory):
    """Async SQLite in-memory session with all tables created.

    Creates a fresh engine + tables for each test, yields a session,
    then rolls back and tears down.
    """
    async with session_factory() as session:
        yield session
        await session.rollback()


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------

@pytest.fixture
def notifier_mock():
    """Mock NotificationService that captures notifications.

    ``mock.sent`` collects ``(kind, recipient_id, payload)`` tuples.
    """
    mock = MagicMock()
    mock.sent = []

    async def _capture(kind, recipient_id, payload=None):
        mock.sent.append((kind, recipient_id, dict(payload or {})))
        return None

    mock.notify = AsyncMock(side_effect=_capture)
    mock.kinds = lambda: [kind for kind, _, _ in mock.sent]
    return mock


@pytest.fixture
def fake_dispatcher():
    """Records delegate runs as ``(booking_id, offer_id)`` tuples."""
    dispatcher = MagicMock()
    dispatcher.queued = []
    dispatcher.enqueue = MagicMock(
        side_effect=lambda booking_id, offer_id: dispatcher.queued.append((booking_id, offer_id))
    )
    return dispatcher


# ---------------------------------------------------------------------------
# Row factories
# ---------------------------------------------------------------------------

@pytest.fixture
def make_user(db_session):
    """Factory that creates a User row.

    Usage:
        renter = await make_user(name="Rita Renter")
    """
    async def _factory(name: str = "Test User", email: str | None = None) -> User:
        user = User(
            id=str(uuid.uuid4()),
            name=name,
            email=email or f"{uuid.uuid4().hex[:8]}@test.com",
        )
        db_session.add(user)
        await db_session.flush()
        return user

    return _factory


@pytest.fixture
def make_space(db_session):
    """Factory that creates a Space listing owned by ``owner``.

    Usage:
        space = await make_space(owner, price_per_hour=10.0)
    """
    async def _factory(
        owner: User,
        title: str = "Sunny Driveway",
        address: str = "123 Main St",
        city: str = "Austin",
        state: str = "TX",
        zip_code: str = "78701",
        price_per_hour: float = 10.0,
        space_type: str = "driveway",
    ) -> Space:
        space = Space(
            id=str(uuid.uuid4()),
            owner_id=owner.id,
            title=title,
            address=address,
            city=city,
            state=state,
            zip_code=zip_code,
            price_per_hour=price_per_hour,
            space_type=space_type,
            is_available=True,
        )
        db_session.add(space)
        await db_session.flush()
        return space

    return _factory


@pytest.fixture
def make_profile(db_session):
    """Factory that creates a VerificationProfile with the given facts.

    Usage:
        await make_profile(renter, payment_method_setup=True)
    """
    async def _factory(
        user: User,
        payment_method_setup: bool = True,
        billing_street: str | None = "123 Main St",
        billing_city: str | None = "Austin",
        billing_state: str | None = "TX",
        billing_zip: str | None = "78701",
        driver_license_verified: bool = False,
        verification_tier: str = "payment_verified",
        verification_score: int = 40,
        **extra,
    ) -> VerificationProfile:
        profile = VerificationProfile(
            id=str(uuid.uuid4()),
            user_id=user.id,
            payment_method_setup=payment_method_setup,
            billing_street=billing_street,
            billing_city=billing_city,
            billing_state=billing_state,
            billing_zip=billing_zip,
            driver_license_verified=driver_license_verified,
            verified_host_badge=extra.pop("verified_host_badge", False),
            high_value_listing_access=extra.pop("high_value_listing_access", False),
            fraud_flags=extra.pop("fraud_flags", 0),
            verification_tier=verification_tier,
            verification_score=verification_score,
            verification_badges=extra.pop("verification_badges", []),
            **extra,
        )
        db_session.add(profile)
        await db_session.flush()
        return profile

    return _factory


@pytest.fixture
def make_delegate(db_session):
    """Factory that enables a negotiation delegate for ``user``."""
    async def _factory(
        user: User,
        strategy: str = "moderate",
        enabled: bool = True,
        max_counter_offers: int = 5,
        **prefs,
    ) -> NegotiationDelegate:
        delegate = NegotiationDelegate(
            id=str(uuid.uuid4()),
            user_id=user.id,
            enabled=enabled,
            strategy=strategy,
            max_counter_offers=max_counter_offers,
            **prefs,
        )
        db_session.add(delegate)
        await db_session.flush()
        return delegate

    return _factory


@pytest.fixture
def booking_window():
    """A two-hour window starting tomorrow at 09:00 UTC."""
    start = (datetime.now(timezone.utc) + timedelta(days=1)).replace(
        hour=9, minute=0, second=0, microsecond=0
    )
    return start, start + timedelta(hours=2)
