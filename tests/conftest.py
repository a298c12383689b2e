"""
Shared fixtures.

Everything time-related is injected: a frozen wall clock, a fake monotonic
clock and a sleep that advances both instead of waiting. The database is an
in-memory SQLite shared through StaticPool so several sessions (API request,
background drain, orchestrator tick) see the same data.
"""
import os

# Must be set before anything imports app.core.config / app.db.session
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ.setdefault("JWT_SECRET_KEY", "test-secret")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.db.base import Base
from app.services.campaign_store import CampaignStore
from tests.support import FakeGateway, FakeMonotonic, FrozenClock, RecordingSleep

# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def monotonic():
    return FakeMonotonic()


@pytest.fixture
def sleep(clock, monotonic):
    return RecordingSleep(clock, monotonic)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def store(db, clock):
    return CampaignStore(db, clock)

