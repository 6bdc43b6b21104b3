"""Shared test fixtures for the dispatch core."""
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from automation.claims import ReplyClaimStore
from automation.collaborators import TemplateReplyGenerator
from automation.engine import AutomationDecisionEngine
from config.settings import AutomationConfig
from database.store_memory import InMemoryDispatchStore
from job_queue.dispatcher import Dispatcher
from job_queue.outbound_queue import OutboundQueue
from job_queue.rate_limiter import RateLimiter
from models.schemas import Tenant, TenantSettings


class FakeClock:
    """Callable clock that tests advance explicitly."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 14, 12, 0, 30, tzinfo=timezone.utc))


@pytest.fixture
def store() -> InMemoryDispatchStore:
    return InMemoryDispatchStore()


@pytest.fixture
def limiter(store, clock) -> RateLimiter:
    return RateLimiter(store, max_per_minute=120, now_fn=clock)


@pytest.fixture
def queue(store, clock) -> OutboundQueue:
    return OutboundQueue(store, max_attempts=3, backoff_base_seconds=30,
                         stuck_timeout_seconds=300, now_fn=clock)


@pytest.fixture
def claims(store, clock) -> ReplyClaimStore:
    return ReplyClaimStore(store, now_fn=clock)


@pytest.fixture
def sender() -> AsyncMock:
    """Delivery collaborator; succeeds unless a test sets side_effect."""
    mock = AsyncMock()
    mock.send.return_value = {"status": "sent", "message_id": "mid.1"}
    return mock


@pytest.fixture
def dispatcher(store, queue, limiter, sender, clock) -> Dispatcher:
    return Dispatcher(store, queue, limiter, sender, batch_size=200, now_fn=clock)


@pytest.fixture
def engine(store, claims, queue, limiter, sender, clock) -> AutomationDecisionEngine:
    return AutomationDecisionEngine(
        store, claims, queue, limiter, sender,
        generator=TemplateReplyGenerator(),
        config=AutomationConfig(),
        now_fn=clock,
    )


@pytest.fixture
def growth_tenant(clock) -> Tenant:
    return Tenant(
        id="T1",
        plan="GROWTH",
        usage_count=3,
        usage_month=clock.now.strftime("%Y-%m"),
        shop_domain="demo-shop.myshopify.com",
        credentials={"ig_business_id": "1784", "page_access_token": "EAAG-token"},
    )


@pytest_asyncio.fixture
async def seeded_store(store, growth_tenant) -> InMemoryDispatchStore:
    await store.upsert_tenant(growth_tenant)
    await store.upsert_settings(TenantSettings(tenant_id=growth_tenant.id))
    return store
