"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, in-memory SQLite)
- A controllable clock for the scheduler, retry loop and rate limiters
- Stubbed ordering-platform and courier APIs (httpx.MockTransport)
- A DispatchEngine wired to all of the above, and an API test client
"""
# מפתח הצפנה לפני ייבוא app - הולידטור דורש מפתח כש-DEBUG=False
import os
os.environ.setdefault("ENCRYPTION_MASTER_KEY", "test-master-key-for-tests-only-0123456789abcdef")
os.environ.setdefault("COURIER_WEBHOOK_SECRET", "courier-webhook-secret")
os.environ.setdefault("WEBHOOK_PROCESSING_MODE", "inline")
# כל הסוויטה רצה מאותו IP מול אותו מופע middleware
os.environ.setdefault("WEBHOOK_RATE_LIMIT_MAX_REQUESTS", "100000")

import asyncio
import json
from collections import deque
from datetime import datetime, timedelta
from typing import Any, AsyncGenerator, Callable

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.clock import Clock
from app.core.config import Settings
from app.db.database import Base
from app.domain.engine import DispatchEngine
from app.domain.services.merchant_registry import MerchantRegistry
from app.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TEST_MASTER_KEY = "test-master-key-for-tests-only-0123456789abcdef"
TEST_SIGNING_SECRET = "dGVzdC1zaWduaW5nLXNlY3JldA"
COURIER_SECRET = "courier-webhook-secret"
TEST_ADMIN_API_KEY = "test-admin-api-key-for-tests"
ADMIN_HEADERS = {"X-Admin-API-Key": TEST_ADMIN_API_KEY}
STORE_ID = "S1"
PICKUP_ADDRESS = "12 Market Street, Springfield, IL 62701"

START_TIME = datetime(2026, 3, 1, 12, 0, 0)


class FakeClock(Clock):
    """Clock that only moves when told to; sleep() advances it instantly"""

    def __init__(self, start: datetime = START_TIME):
        self._now = start
        self._monotonic = 1000.0
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._monotonic

    def advance(self, seconds: float) -> None:
        self._now += timedelta(seconds=seconds)
        self._monotonic += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        if seconds > 0:
            self.advance(seconds)
        await asyncio.sleep(0)


class StubApi:
    """
    Scripted HTTP upstream.

    ``queue()`` pushes (status, json) responses consumed in order; once the
    queue is empty ``default`` answers. Every request is recorded.
    """

    def __init__(self, default: Callable[[httpx.Request], tuple[int, Any]]):
        self.default = default
        self.requests: list[httpx.Request] = []
        self._queued: deque = deque()

    def queue(self, *responses: tuple[int, Any]) -> None:
        self._queued.extend(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self._queued:
            status, body = self._queued.popleft()
        else:
            status, body = self.default(request)
        return httpx.Response(status, json=body)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def calls(self, method: str, path_suffix: str = "") -> list[httpx.Request]:
        return [
            r for r in self.requests
            if r.method == method and r.url.path.endswith(path_suffix)
        ]


def courier_default_response(request: httpx.Request) -> tuple[int, Any]:
    if request.method == "POST" and request.url.path.endswith("/deliveries"):
        payload = json.loads(request.content)
        return 200, {
            "external_delivery_id": payload["external_delivery_id"],
            "delivery_id": f"dd-{payload['external_delivery_id']}",
            "delivery_status": "created",
            "tracking_url": f"https://track.example.com/{payload['external_delivery_id']}",
        }
    if request.method == "PUT" and request.url.path.endswith("/cancel"):
        return 200, {"delivery_status": "cancelled"}
    return 404, {"message": "not found"}


def platform_default_response(request: httpx.Request) -> tuple[int, Any]:
    if request.method == "GET" and request.url.path.endswith("/orders"):
        return 200, {"orders": []}
    return 200, {}


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "ENCRYPTION_MASTER_KEY": TEST_MASTER_KEY,
        "ENCRYPTION_KDF_ITERATIONS": 1000,
        "WEBHOOK_PROCESSING_MODE": "inline",
        "DISPATCH_SCHEDULER_ENABLED": False,
        "DOORDASH_DEVELOPER_ID": "dev-123",
        "DOORDASH_KEY_ID": "key-456",
        "DOORDASH_SIGNING_SECRET": TEST_SIGNING_SECRET,
        "COURIER_WEBHOOK_SECRET": COURIER_SECRET,
        "RETRY_MAX_ATTEMPTS": 3,
        "ADMIN_API_KEY": TEST_ADMIN_API_KEY,
        "DISPATCH_LEAD_MINUTES": 30,
    }
    values.update(overrides)
    return Settings(**values)


def platform_payload(
    order_id: str = "O1",
    *,
    event_type: str = "order.created",
    store_id: str = STORE_ID,
    fulfillment: str = "delivery",
    promised_time: datetime | None = None,
    **order_fields: Any,
) -> dict[str, Any]:
    """Ordering-platform webhook body for one order"""
    order: dict[str, Any] = {
        "id": order_id,
        "type": fulfillment,
        "client_first_name": "Dana",
        "client_last_name": "Levi",
        "client_phone": "+1 (217) 555-0100",
        "client_address_parts": {
            "street": "400 Oak Avenue",
            "city": "Springfield",
            "state": "IL",
            "zip": "62704",
            "country": "US",
        },
        "total_price": 42.5,
    }
    if promised_time is not None:
        order["fulfill_at"] = promised_time.isoformat() + "Z"
    order.update(order_fields)
    return {"event_type": event_type, "store_id": store_id, "order": order}


# ============================================================================
# Database
# ============================================================================

@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(async_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


# ============================================================================
# Engine and external services
# ============================================================================

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def courier_api() -> StubApi:
    return StubApi(courier_default_response)


@pytest.fixture
def platform_api() -> StubApi:
    return StubApi(platform_default_response)


@pytest.fixture
async def engine_factory(session_factory, clock, courier_api, platform_api):
    """Build DispatchEngines against the test DB; all are stopped at teardown"""
    engines: list[DispatchEngine] = []

    def _build(**setting_overrides: Any) -> DispatchEngine:
        engine = DispatchEngine(
            make_settings(**setting_overrides),
            session_factory,
            clock=clock,
            platform_transport=platform_api.transport,
            courier_transport=courier_api.transport,
        )
        engines.append(engine)
        return engine

    yield _build

    for engine in engines:
        await engine.stop()


@pytest.fixture
def dispatch_engine(engine_factory) -> DispatchEngine:
    return engine_factory()


@pytest.fixture
def merchant_factory(dispatch_engine: DispatchEngine, session_factory):
    async def _create(
        store_id: str = STORE_ID,
        *,
        webhook_secret: str | None = None,
        requires_signature: bool = False,
        auto_dispatch_enabled: bool = True,
        is_active: bool = True,
        api_key: str = "platform-api-key",
        pickup_address: str | None = PICKUP_ADDRESS,
    ):
        async with session_factory() as db:
            return await MerchantRegistry(db, dispatch_engine.cipher).upsert_merchant(
                store_id,
                credentials={"api_key": api_key, "webhook_secret": webhook_secret},
                merchant_name="Pizza Place",
                is_active=is_active,
                requires_signature=requires_signature,
                auto_dispatch_enabled=auto_dispatch_enabled,
                pickup_address=pickup_address,
                pickup_phone="+12175550199",
            )

    return _create


@pytest.fixture
async def merchant(merchant_factory):
    return await merchant_factory()


@pytest.fixture(scope="function")
async def test_client(dispatch_engine: DispatchEngine):
    """API client bound to the test engine"""
    from httpx import AsyncClient, ASGITransport

    app.state.engine = dispatch_engine

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.state.engine = None
    app.dependency_overrides.clear()
