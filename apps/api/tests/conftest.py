from typing import Any, Dict, List

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config import settings
from database import Base, get_db
from main import app
from routers import rate_limit
from services.completion import CompletionProvider, CompletionUnavailable
from services.razorpay import GatewayError


TEST_KEY_ID = "rzp_test_key"
TEST_KEY_SECRET = "test_key_secret"
TEST_WEBHOOK_SECRET = "test_webhook_secret"


class FakeGateway:
    key_id = TEST_KEY_ID

    def __init__(self):
        self.fail = False
        self.calls: List[Dict[str, Any]] = []

    async def create_order(self, amount, currency, receipt=None, notes=None):
        if self.fail:
            raise GatewayError("Razorpay request failed: connection refused")
        self.calls.append({"amount": amount, "currency": currency, "receipt": receipt, "notes": notes})
        return {"id": f"order_test_{len(self.calls)}", "amount": amount, "currency": currency}


class FakeCompletionProvider(CompletionProvider):
    def __init__(self, reply: str = "Happy to help with that."):
        self.reply = reply
        self.fail = False
        self.calls: List[Dict[str, Any]] = []

    async def complete(self, messages, max_tokens):
        if self.fail:
            raise CompletionUnavailable("provider down")
        self.calls.append({"messages": messages, "max_tokens": max_tokens})
        return self.reply


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest.fixture(autouse=True)
def payment_settings(monkeypatch):
    monkeypatch.setattr(settings, "RAZORPAY_KEY_ID", TEST_KEY_ID)
    monkeypatch.setattr(settings, "RAZORPAY_KEY_SECRET", TEST_KEY_SECRET)
    monkeypatch.setattr(settings, "RAZORPAY_WEBHOOK_SECRET", TEST_WEBHOOK_SECRET)
    monkeypatch.setattr(settings, "USAGE_DAY_TIMEZONE", "UTC")
    return settings


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "serona.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest_asyncio.fixture
async def app_db(session_maker):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    yield session_maker
    app.dependency_overrides.pop(get_db, None)


@pytest_asyncio.fixture
async def integration_client(app_db):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.fixture
def fake_gateway():
    from services.razorpay import get_gateway

    gateway = FakeGateway()
    app.dependency_overrides[get_gateway] = lambda: gateway
    yield gateway
    app.dependency_overrides.pop(get_gateway, None)


@pytest.fixture
def fake_provider():
    from services.completion import get_completion_provider

    provider = FakeCompletionProvider()
    app.dependency_overrides[get_completion_provider] = lambda: provider
    yield provider
    app.dependency_overrides.pop(get_completion_provider, None)
