"""
Test configuration and fixtures.
Uses a throwaway SQLite file database (aiosqlite) per test.
"""
import asyncio
import os
import tempfile
from decimal import Decimal

# Set test environment before any imports
_TEST_DIR = tempfile.mkdtemp(prefix="emailkit-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_TEST_DIR, 'default.db')}"
os.environ["REDIS_URL"] = "redis://localhost:6379/0"
os.environ["ENVIRONMENT"] = "test"
os.environ["EMAIL_CREDIT_RATE"] = "0.01"
os.environ["AI_INPUT_TOKEN_RATE"] = "0.001"
os.environ["AI_OUTPUT_TOKEN_RATE"] = "0.003"
os.environ["STRIPE_SECRET_KEY"] = ""
os.environ["STRIPE_TEST_SECRET_KEY"] = ""

import pytest
from typing import AsyncGenerator, Optional

from fastapi import FastAPI
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from emailkit.config import Settings
from emailkit.models.base import Base
from emailkit.models.usage_event import UsageEvent, UsageKind
from emailkit.services.payment_gateway import CreditBalance, PaymentGateway
from emailkit.services.usage_ledger import UsageLedger

TEST_OWNER = "owner-1"


class FakePaymentGateway(PaymentGateway):
    """In-memory gateway recording every report it acknowledges.

    Like the provider, a repeated idempotency key is acknowledged without
    charging again.
    """

    def __init__(self, enabled: bool = True, available: Optional[Decimal] = Decimal("100")):
        super().__init__(payment_page_url="https://billing.example/top-up")
        self.enabled = enabled
        self.available = available
        self.reports = []
        self.report_error: Optional[Exception] = None
        self.balance_error: Optional[Exception] = None
        self.acknowledge = True
        self.report_delay = 0.0
        self.report_calls = 0
        self.duplicate_reports = 0
        self._charged_keys = set()

    def is_enabled(self) -> bool:
        return self.enabled

    async def get_balance(self, owner_id: str):
        if not self.enabled:
            return None
        if self.balance_error is not None:
            raise self.balance_error
        if self.available is None:
            return None
        return CreditBalance(available=self.available, pending=Decimal("0"), total=self.available)

    async def report_usage(self, owner_id, credits, metadata=None, idempotency_key=None) -> bool:
        self.report_calls += 1
        if self.report_delay:
            await asyncio.sleep(self.report_delay)
        if self.report_error is not None:
            raise self.report_error
        if not self.acknowledge:
            return False
        if idempotency_key is not None:
            if idempotency_key in self._charged_keys:
                self.duplicate_reports += 1
                return True
            self._charged_keys.add(idempotency_key)
        self.reports.append({
            "owner_id": owner_id,
            "credits": Decimal(credits),
            "metadata": metadata or {},
            "idempotency_key": idempotency_key,
        })
        return True

    async def create_credit_purchase_session(self, owner_id, credit_amount, success_url, cancel_url):
        if not self.enabled:
            return None
        return {"session_id": "cs_test_123", "url": "https://checkout.example/cs_test_123"}

    def status(self) -> dict:
        return {"enabled": self.enabled, "mode": "test" if self.enabled else "disabled"}


@pytest.fixture(scope="function")
async def engine(tmp_path):
    """SQLite file database; concurrent writers wait on the lock for up to 30s."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'usage.db'}",
        echo=False,
        connect_args={"timeout": 30},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@pytest.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for testing."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def ledger() -> UsageLedger:
    return UsageLedger()


@pytest.fixture
def gateway() -> FakePaymentGateway:
    return FakePaymentGateway()


@pytest.fixture
def test_settings() -> Settings:
    """Settings for scheduler tests: short timeouts, default rates."""
    return Settings(
        usage_report_interval_seconds=0.05,
        usage_report_batch_size=100,
        usage_claim_timeout_seconds=900,
        payment_request_timeout_seconds=0.1,
    )


async def fetch_event(session_factory, event_id: str) -> UsageEvent:
    """Load an event through a fresh session so no identity-map state leaks in."""
    async with session_factory() as session:
        return await session.get(UsageEvent, event_id)


async def record_emails(ledger: UsageLedger, db: AsyncSession, owner_id: str, counts, **kwargs):
    """Record one email_sent event per count, oldest first."""
    events = []
    for count in counts:
        events.append(await ledger.record(db, owner_id, UsageKind.EMAIL_SENT, email_count=count, **kwargs))
    return events


def get_test_app(session_factory, gateway: PaymentGateway, owner_id: str = TEST_OWNER) -> FastAPI:
    """Create a test FastAPI app with overridden dependencies."""
    from emailkit.main import app
    from emailkit.database import get_db
    from emailkit.auth.dependencies import get_current_owner
    from emailkit.services.payment_gateway import get_payment_gateway

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_owner] = lambda: owner_id
    app.dependency_overrides[get_payment_gateway] = lambda: gateway

    return app


@pytest.fixture(scope="function")
async def client(session_factory, gateway) -> AsyncGenerator[AsyncClient, None]:
    """Create async HTTP client for API testing."""
    app = get_test_app(session_factory, gateway)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
