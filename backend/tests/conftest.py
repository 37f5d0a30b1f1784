"""Shared pytest fixtures for test suite"""
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Generator
from unittest.mock import patch

# Engine is created at import time; keep it off PostgreSQL under test
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("EFI_WEBHOOK_SECRET", "")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "")

import fakeredis
import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from beltbilling.db import redis as redis_module
from beltbilling.db.session import get_db
from beltbilling.main import app
from beltbilling.models import Base
from beltbilling.models.enums import Gateway, PlanInterval, SubscriptionStatus
from beltbilling.models.plan import Plan
from beltbilling.models.subscription import Subscription
from beltbilling.services.credential_cache import CredentialCache
from beltbilling.services.gateways import PixAdapter, set_adapter


# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

# Create test engine with StaticPool for in-memory database
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

# Create test session factory
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

# Fixed reference time so period arithmetic is deterministic
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

PIX_BASE_URL = "https://pix.test"


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    Base.metadata.create_all(bind=test_engine)

    session = TestSessionLocal()

    # Code that opens its own sessions must land on the same database
    with patch("beltbilling.services.event_processor.SessionLocal", TestSessionLocal):
        with patch("beltbilling.tasks.scheduler.SessionLocal", TestSessionLocal):
            try:
                yield session
            finally:
                session.close()
                Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def mock_redis():
    """Shared Redis client replaced by fakeredis"""
    fake_redis = fakeredis.FakeStrictRedis(decode_responses=True)
    redis_module.set_redis_client(fake_redis)
    try:
        yield fake_redis
    finally:
        redis_module.set_redis_client(None)


@pytest.fixture(scope="function")
def client(db_session: Session, mock_redis) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database and mocked Redis"""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.dependency_overrides[get_db] = override_get_db

    try:
        with patch("beltbilling.main.init_db"):
            # Disable OpenTelemetry instrumentation in tests
            with patch("beltbilling.core.otel.initialize_otel", return_value=False):
                with patch("beltbilling.core.otel.instrument_app"):
                    with TestClient(app) as test_client:
                        yield test_client
    finally:
        app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def credential_cache() -> CredentialCache:
    """Isolated cache so tests never share tokens"""
    return CredentialCache()


class PixApi:
    """Scripted Efí API behind httpx.MockTransport.

    ``routes`` maps "METHOD /path" to a callable returning an httpx.Response,
    or to a list of responses served in order. Every request is recorded.
    """

    def __init__(self):
        self.routes = {}
        self.requests = []
        self.token_calls = 0
        self.token_counter = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/oauth/token":
            self.token_calls += 1
            self.token_counter += 1
            return httpx.Response(200, json={"access_token": f"token-{self.token_counter}", "expires_in": 3600})

        key = f"{request.method} {request.url.path}"
        route = self.routes.get(key)
        if route is None:
            return httpx.Response(404, json={"nome": "not_found", "mensagem": f"No route {key}"})
        if isinstance(route, list):
            scripted = route.pop(0) if len(route) > 1 else route[0]
            # Fresh copy so the last scripted response can be served repeatedly
            return httpx.Response(scripted.status_code, content=scripted.content, headers=scripted.headers)
        return route(request)

    def api_requests(self):
        return [r for r in self.requests if r.url.path != "/oauth/token"]


@pytest.fixture(scope="function")
def pix_api() -> PixApi:
    return PixApi()


@pytest.fixture(scope="function")
def pix_adapter(pix_api: PixApi, credential_cache: CredentialCache) -> Generator[PixAdapter, None, None]:
    """PixAdapter talking to the scripted API, installed as the shared pix adapter"""
    adapter = PixAdapter(
        credential_cache,
        base_url=PIX_BASE_URL,
        client_id="client-id",
        client_secret="client-secret",
        pix_key="chave@academia.test",
        http_client=httpx.Client(transport=httpx.MockTransport(pix_api.handler)),
    )
    set_adapter("pix", adapter)
    try:
        yield adapter
    finally:
        set_adapter("pix", None)
        adapter.close()


@pytest.fixture(scope="function")
def monthly_plan(db_session: Session) -> Plan:
    plan = Plan(
        slug="academia-mensal",
        name="Academia Mensal",
        price_cents=19900,
        currency="BRL",
        interval=PlanInterval.MONTHLY,
        trial_days=14,
        stripe_price_id="price_monthly",
    )
    db_session.add(plan)
    db_session.commit()
    db_session.refresh(plan)
    return plan


@pytest.fixture(scope="function")
def make_subscription(db_session: Session, monthly_plan: Plan):
    """Factory for subscriptions in an arbitrary state"""

    def _make(**overrides) -> Subscription:
        values = {
            "owner_id": "academy-1",
            "plan_id": monthly_plan.id,
            "status": SubscriptionStatus.ACTIVE,
            "gateway": Gateway.PIX,
            "gateway_recurrence_id": "RR1234567820260301abcdefghijk",
            "current_period_start": NOW - timedelta(days=30),
            "current_period_end": NOW,
        }
        values.update(overrides)
        sub = Subscription(**values)
        db_session.add(sub)
        db_session.commit()
        db_session.refresh(sub)
        return sub

    return _make
