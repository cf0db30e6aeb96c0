"""
Points Engine — Test Configuration (conftest.py)
=================================================

What:  Shared pytest fixtures for the entire test suite.
Why:   Ledger invariants are only meaningful against a real SQL engine, so
       tests run on an in-memory SQLite database (aiosqlite) with the real
       schema, real UnitOfWork and real conditional UPDATEs.
How:   pytest auto-discovers conftest.py and makes fixtures available to all tests.

Fixture Hierarchy (all function-scoped, fresh per test):
    ├── settings:         Settings with fast retries and a known webhook secret
    ├── engine:           in-memory SQLite, schema created from Base.metadata
    ├── session_factory:  async_sessionmaker bound to that engine
    ├── fake_llm:         scripted LLMService (no network)
    ├── container:        ServiceContainer wired with the above
    ├── funded_user:      factory creating users with a seeded balance
    └── test_client:      HTTPX AsyncClient against create_app(container)
"""

import os

# Override settings for testing BEFORE any points_engine imports
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["GEMINI_API_KEY"] = ""
os.environ["PAYMENT_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["ALLOW_UNSIGNED_WEBHOOKS"] = "false"
os.environ["LOG_LEVEL"] = "WARNING"

import asyncio  # noqa: E402
import json  # noqa: E402
import time  # noqa: E402
from typing import List, Optional, Union  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy import func, select  # noqa: E402
from sqlalchemy.ext.asyncio import create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import points_engine.models  # noqa: E402,F401
from points_engine.config import Settings  # noqa: E402
from points_engine.database import Base, UnitOfWork, build_session_factory  # noqa: E402
from points_engine.models.enums import TransactionType  # noqa: E402
from points_engine.models.ledger import PaymentEvent, PointTransaction  # noqa: E402
from points_engine.services.container import build_container  # noqa: E402
from points_engine.services.llm_base import LLMService  # noqa: E402
from points_engine.services.notifier import Notifier  # noqa: E402
from points_engine.services.payment_service import compute_signature  # noqa: E402

WEBHOOK_SECRET = "whsec_test_secret"


# ══════════════════════════════════════════════════════════════════════════
# Test Doubles
# ══════════════════════════════════════════════════════════════════════════

class FakeLLM(LLMService):
    """
    Scripted LLMService.

    Each call pops the next scripted item: a string is returned, an exception
    is raised. With nothing scripted, `default` is returned.
    """

    def __init__(self, *script: Union[str, BaseException], default: str = "", delay: float = 0.0):
        self.script: List[Union[str, BaseException]] = list(script)
        self.default = default
        self.delay = delay
        self.prompts: List[str] = []

    async def generate_text(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        item = self.script.pop(0) if self.script else self.default
        if isinstance(item, BaseException):
            raise item
        return item

    async def health_check(self) -> bool:
        return True


class RecordingNotifier(Notifier):
    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    async def send(self, user_id, event, payload):
        if self.fail:
            raise ConnectionError("push service down")
        self.sent.append((user_id, event, payload))


# ══════════════════════════════════════════════════════════════════════════
# Helpers
# ══════════════════════════════════════════════════════════════════════════

def sign(body: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header for `body`."""
    ts = int(time.time()) if timestamp is None else timestamp
    return f"t={ts},v1={compute_signature(secret, ts, body)}"


def checkout_event(
    event_id: str = "evt_1",
    user_id: Optional[str] = "user_a",
    points: Optional[str] = "1000",
    event_type: str = "checkout.session.completed",
) -> bytes:
    metadata = {}
    if user_id is not None:
        metadata["userId"] = user_id
    if points is not None:
        metadata["points"] = points
    return json.dumps({
        "id": event_id,
        "type": event_type,
        "data": {"object": {"id": "cs_test_1", "metadata": metadata}},
    }).encode("utf-8")


async def count_transactions(session_factory, user_id: Optional[str] = None) -> int:
    async with session_factory() as session:
        query = select(func.count()).select_from(PointTransaction)
        if user_id is not None:
            query = query.where(PointTransaction.user_id == user_id)
        return (await session.execute(query)).scalar_one()


async def count_payment_events(session_factory) -> int:
    async with session_factory() as session:
        return (
            await session.execute(select(func.count()).select_from(PaymentEvent))
        ).scalar_one()


# ══════════════════════════════════════════════════════════════════════════
# Fixtures
# ══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def settings() -> Settings:
    """Fast retries, no real model, a known webhook secret."""
    return Settings(
        database_url="sqlite+aiosqlite://",
        gemini_api_key="",
        retry_max_attempts=2,
        retry_min_wait=0,
        retry_max_wait=0,
        valuation_timeout_seconds=2.0,
        payment_webhook_secret=WEBHOOK_SECRET,
        allow_unsigned_webhooks=False,
        listing_bonus_points=10,
        log_level="WARNING",
    )


@pytest_asyncio.fixture
async def engine():
    """
    In-memory SQLite shared across sessions via StaticPool.

    Why StaticPool: each new connection to ":memory:" is a brand-new empty
    database; a single shared connection keeps the schema and data visible
    to every session in the test.
    """
    eng = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def fake_llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def container(settings, engine, notifier):
    """Services wired against the test database; valuation uses the fallback."""
    return build_container(settings, engine=engine, notifier=notifier)


@pytest.fixture
def funded_user(container):
    """
    Factory: create a user and seed its balance through the ledger, so the
    balance == sum(transactions) invariant holds from the start.

    Usage:
        await funded_user("user_a", 500)
    """

    async def _create(user_id: str, points: int = 0, name: Optional[str] = None) -> str:
        async with UnitOfWork(container.session_factory) as session:
            await container.ledger.ensure_account(session, user_id, name=name or user_id)
            if points:
                await container.ledger.credit(
                    session, user_id, points, TransactionType.BONUS, "Seed balance"
                )
        return user_id

    return _create


@pytest_asyncio.fixture
async def test_client(container):
    """
    HTTPX AsyncClient talking to create_app(container) in-process.

    raise_app_exceptions=False: unexpected errors are asserted as HTTP 500
    responses, the way a real client would see them.
    """
    from points_engine.main import create_app

    app = create_app(container)
    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
