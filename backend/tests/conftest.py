"""Pytest configuration and fixtures."""

import os

# Keep the app's own engine off the filesystem; set before settings load
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import pytest
from datetime import datetime, timezone
from typing import Generator

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from restaurant_ops.core.clock import FixedClock
from restaurant_ops.db.base import Base
from restaurant_ops.db.session import get_db
from restaurant_ops.main import app
# Import all models to ensure they're registered with Base.metadata
from restaurant_ops.models import *  # noqa: F401,F403
from restaurant_ops.models.tenant import Tenant
from restaurant_ops.services.operational_mode_service import (
    InMemoryModeStateStore,
    KeyedLockRegistry,
    OperationalModeStore,
)
from restaurant_ops.services.tenant_service import TenantTimezoneResolver

# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite:///:memory:"

# 09:00 in Buenos Aires (UTC-3, no DST)
START = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="function")
def db_engine():
    """Create a test database engine."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def file_db_engine(tmp_path):
    """File-backed SQLite engine where every session gets its own connection, like separate workers."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'workers.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """Create a test database session."""
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="function")
def client(db_session: Session) -> Generator[TestClient, None, None]:
    """Create a test client with database override."""
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    # Disable rate limiting during tests to avoid flaky failures
    from restaurant_ops.core.rate_limit import limiter
    limiter.enabled = False
    # Don't raise server exceptions so we can test error status codes
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
    limiter.enabled = True
    app.dependency_overrides.clear()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(START)


@pytest.fixture
def timezones() -> TenantTimezoneResolver:
    """Resolver with the default zone (America/Argentina/Buenos_Aires) for every tenant."""
    return TenantTimezoneResolver(default_timezone="America/Argentina/Buenos_Aires")


@pytest.fixture
def mode_store(clock: FixedClock, timezones: TenantTimezoneResolver) -> OperationalModeStore:
    """In-memory store with its own lock registry, so tests never share locks."""
    return OperationalModeStore(
        InMemoryModeStateStore(),
        clock=clock,
        timezones=timezones,
        locks=KeyedLockRegistry(),
        default_ttl_minutes=60,
    )


@pytest.fixture
def test_tenant(db_session: Session) -> Tenant:
    """Create a tenant in Madrid."""
    tenant = Tenant(tenant_id="store-madrid", name="Madrid Centro", timezone="Europe/Madrid")
    db_session.add(tenant)
    db_session.commit()
    db_session.refresh(tenant)
    return tenant
