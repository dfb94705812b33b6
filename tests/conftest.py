"""Shared test infrastructure for the GREIA platform test suite.

Provides:
- engine / session_factory / db_session: aiosqlite database in a temp file,
  so independent sessions (concurrency tests, fan-out writes) share it
- settings: default Settings, isolated from any local .env
- realtime_mock / payment_gateway_mock: collaborator doubles
- fanout: FanoutCoordinator wired to the test database and doubles
- make_candidate: factory for CandidateProfile rows
- actor: factory for Actor identities
"""

import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from greia_platform.app.config import Settings
from greia_platform.infra.database import Base

# Import model module so its tables are registered with Base.metadata
import greia_platform.domain.models  # noqa: F401

from greia_platform.domain.models import CandidateProfile
from greia_platform.domain.schemas import Actor
from greia_platform.services.fanout_coordinator import FanoutCoordinator


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
async def engine(tmp_path):
    """Fresh SQLite database file with all tables created."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'greia_test.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session
        await session.rollback()


# ---------------------------------------------------------------------------
# Configuration and collaborators
# ---------------------------------------------------------------------------

@pytest.fixture
def settings():
    return Settings(_env_file=None)


@pytest.fixture
def realtime_mock():
    """Mock ConnectionManager that records (channel, event, payload) publishes."""
    mock = MagicMock()
    mock.published = []

    async def _capture(channel: str, event: str, payload: dict):
        mock.published.append((channel, event, payload))
        return 1

    mock.publish = AsyncMock(side_effect=_capture)
    return mock


@pytest.fixture
def payment_gateway_mock():
    mock = MagicMock()
    mock.create_payment_intent = AsyncMock(return_value="pi_test_123")
    return mock


@pytest.fixture
def fanout(session_factory, settings, realtime_mock, payment_gateway_mock):
    return FanoutCoordinator(
        realtime=realtime_mock,
        payments=payment_gateway_mock,
        session_factory=session_factory,
        settings=settings,
    )


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

@pytest.fixture
def actor():
    """Factory for Actor identities.

    Usage:
        requester = actor("user-1")
        admin = actor(role="admin")
    """
    def _factory(user_id: str | None = None, role: str = "user") -> Actor:
        return Actor(id=user_id or str(uuid.uuid4()), role=role)

    return _factory


@pytest.fixture
def make_candidate(session_factory):
    """Factory that creates and commits a CandidateProfile.

    Usage:
        agent = await make_candidate(rating=4.8, total_deals=40)
    """
    async def _factory(
        candidate_id: str | None = None,
        name: str = "Test Agent",
        verified: bool = True,
        active: bool = True,
        regions: list[str] | None = None,
        specializations: list[str] | None = None,
        rating: float = 4.5,
        completed_count: int = 0,
        total_deals: int = 0,
        total_valuations: int = 0,
        total_referrals: int = 0,
        total_bookings: int = 0,
    ) -> CandidateProfile:
        candidate = CandidateProfile(
            id=candidate_id or str(uuid.uuid4()),
            name=name,
            email=f"{name.lower().replace(' ', '.')}@example.ie",
            verified=verified,
            active=active,
            regions=regions if regions is not None else ["North Dublin"],
            specializations=specializations if specializations is not None else ["residential"],
            rating=rating,
            completed_count=completed_count,
            total_deals=total_deals,
            total_valuations=total_valuations,
            total_referrals=total_referrals,
            total_bookings=total_bookings,
        )
        async with session_factory() as session:
            session.add(candidate)
            await session.commit()
        return candidate

    return _factory
