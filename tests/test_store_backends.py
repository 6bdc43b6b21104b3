"""
Tests for all dispatch store backends.

Covers:
  - Store contract, run against InMemoryDispatchStore and
    SqlDispatchStore (via SQLite for test portability)
  - Concurrent callers: one claim winner, rate soundness, disjoint batches
  - SQL-only behaviour (dialect upserts, month rollover in one statement)
  - Store factory
  - Session URL translation and model portability
"""
import asyncio
import os
import shutil
import tempfile
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from models.schemas import (
    Channel, OutboundQueueItem, ProductMapping, QueueStatus, RecipientType,
    ReplyClaim, ReplyKind, Tenant, TenantSettings,
)

NOW = datetime(2026, 3, 14, 12, 0, 30, tzinfo=timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Fixtures
# ──────────────────────────────────────────────────────────────

@asynccontextmanager
async def _sqlite_store():
    from database.session import create_engine_for, create_tables, make_session_factory
    from database.store import SqlDispatchStore

    d = tempfile.mkdtemp(prefix="dispatch_test_")
    engine = create_engine_for("sqlite:///" + os.path.join(d, "dispatch.db"))
    try:
        await create_tables(engine)
        yield SqlDispatchStore(make_session_factory(engine))
    finally:
        await engine.dispose()
        shutil.rmtree(d, ignore_errors=True)


@pytest_asyncio.fixture
async def sql_store():
    async with _sqlite_store() as store:
        yield store


@pytest_asyncio.fixture(params=["memory", "sql"])
async def any_store(request):
    if request.param == "memory":
        from database.store_memory import InMemoryDispatchStore
        yield InMemoryDispatchStore()
        return
    async with _sqlite_store() as store:
        yield store


def _claim(event_key="evt_1", **kwargs):
    defaults = dict(tenant_id="T1", event_key=event_key, reply_text="hi",
                    sender_id="igsid_1", created_at=NOW)
    defaults.update(kwargs)
    return ReplyClaim(**defaults)


def _item(text="hello", **kwargs):
    defaults = dict(tenant_id="T1", recipient="igsid_1", text=text,
                    not_before=NOW, created_at=NOW, updated_at=NOW)
    defaults.update(kwargs)
    return OutboundQueueItem(**defaults)


# ──────────────────────────────────────────────────────────────
#  Store contract
# ──────────────────────────────────────────────────────────────

class TestTenants:
    @pytest.mark.asyncio
    async def test_upsert_and_get(self, any_store):
        await any_store.upsert_tenant(Tenant(id="T1", plan="GROWTH", shop_domain="shop.example",
                                             credentials={"ig_business_id": "1"}))
        tenant = await any_store.get_tenant("T1")
        assert tenant.plan == "GROWTH"
        assert tenant.credentials == {"ig_business_id": "1"}

        await any_store.upsert_tenant(tenant.model_copy(update={"plan": "PRO"}))
        assert (await any_store.get_tenant("T1")).plan == "PRO"

    @pytest.mark.asyncio
    async def test_missing_tenant(self, any_store):
        assert await any_store.get_tenant("nope") is None

    @pytest.mark.asyncio
    async def test_update_credentials(self, any_store):
        await any_store.upsert_tenant(Tenant(id="T1", credentials={"access_token": "old"}))
        await any_store.update_credentials("T1", {"access_token": "new"})
        assert (await any_store.get_tenant("T1")).credentials == {"access_token": "new"}

    @pytest.mark.asyncio
    async def test_increment_usage_rolls_month(self, any_store):
        await any_store.upsert_tenant(Tenant(id="T1", usage_count=24, usage_month="2026-03"))

        assert await any_store.increment_usage("T1", NOW) == 25
        assert await any_store.increment_usage("T1", NOW + timedelta(days=20)) == 1

        tenant = await any_store.get_tenant("T1")
        assert tenant.usage_month == "2026-04"
        assert tenant.usage_count == 1

    @pytest.mark.asyncio
    async def test_increment_usage_unknown_tenant(self, any_store):
        assert await any_store.increment_usage("nope", NOW) == 0


class TestSettingsAndMappings:
    @pytest.mark.asyncio
    async def test_settings_default_when_missing(self, any_store):
        settings = await any_store.get_settings("T1")
        assert settings.dm_automation_enabled is True
        assert settings.followup_enabled is False

    @pytest.mark.asyncio
    async def test_settings_upsert(self, any_store):
        await any_store.upsert_settings(TenantSettings(tenant_id="T1", followup_enabled=True))
        await any_store.upsert_settings(TenantSettings(tenant_id="T1", followup_enabled=True,
                                                       comment_automation_enabled=False))
        settings = await any_store.get_settings("T1")
        assert settings.followup_enabled is True
        assert settings.comment_automation_enabled is False

    @pytest.mark.asyncio
    async def test_mapping_upsert_replaces(self, any_store):
        await any_store.upsert_product_mapping(ProductMapping(
            tenant_id="T1", media_id="m1", product_id="P1"))
        await any_store.upsert_product_mapping(ProductMapping(
            tenant_id="T1", media_id="m1", product_id="P2", product_handle="tee"))

        mapping = await any_store.get_product_mapping("T1", "m1")
        assert mapping.product_id == "P2"
        assert mapping.product_handle == "tee"
        assert await any_store.get_product_mapping("T2", "m1") is None


class TestClaims:
    @pytest.mark.asyncio
    async def test_unique_per_tenant_and_key(self, any_store):
        assert await any_store.insert_claim(_claim()) is True
        assert await any_store.insert_claim(_claim(reply_text="again")) is False
        assert await any_store.insert_claim(_claim(tenant_id="T2")) is True

        claim = await any_store.get_claim("T1", "evt_1")
        assert claim.reply_text == "hi"
        assert claim.created_at == NOW

    @pytest.mark.asyncio
    async def test_latest_product_claim(self, any_store):
        await any_store.insert_claim(_claim("a", product_id="P1",
                                            created_at=NOW - timedelta(hours=5)))
        await any_store.insert_claim(_claim("b", product_id="P2",
                                            created_at=NOW - timedelta(hours=1)))
        await any_store.insert_claim(_claim("c", created_at=NOW))   # no product

        latest = await any_store.latest_product_claim("T1", "igsid_1", NOW - timedelta(hours=72))
        assert latest.product_id == "P2"
        assert await any_store.latest_product_claim("T1", "igsid_1", NOW - timedelta(minutes=30)) is None
        assert await any_store.latest_product_claim("T1", "other", NOW - timedelta(hours=72)) is None

    @pytest.mark.asyncio
    async def test_count_claims_by_kind(self, any_store):
        await any_store.insert_claim(_claim("a", reply_kind=ReplyKind.CLARIFYING))
        await any_store.insert_claim(_claim("b", reply_kind=ReplyKind.CLARIFYING,
                                            created_at=NOW - timedelta(hours=30)))
        await any_store.insert_claim(_claim("c", channel=Channel.COMMENT))

        since = NOW - timedelta(hours=24)
        assert await any_store.count_claims("T1", "igsid_1", since, "clarifying") == 1
        assert await any_store.count_claims("T1", "igsid_1", since, "answer") == 1


class TestRateWindows:
    @pytest.mark.asyncio
    async def test_increment_returns_post_increment_count(self, any_store):
        window = NOW.replace(second=0)
        assert [await any_store.increment_rate_window("T1", window) for _ in range(3)] == [1, 2, 3]
        assert await any_store.increment_rate_window("T2", window) == 1
        assert await any_store.increment_rate_window("T1", window + timedelta(minutes=1)) == 1

    @pytest.mark.asyncio
    async def test_delete_before_cutoff(self, any_store):
        window = NOW.replace(second=0)
        for minutes in (0, 1, 2, 3):
            await any_store.increment_rate_window("T1", window - timedelta(minutes=minutes))

        assert await any_store.delete_rate_windows_before(window - timedelta(minutes=1)) == 2
        assert await any_store.increment_rate_window("T1", window) == 2


class TestQueue:
    @pytest.mark.asyncio
    async def test_claim_due_items_fifo(self, any_store):
        later = await any_store.insert_queue_item(_item("b", created_at=NOW + timedelta(seconds=1)))
        first = await any_store.insert_queue_item(_item("a"))
        await any_store.insert_queue_item(_item("future", not_before=NOW + timedelta(minutes=1)))

        items = await any_store.claim_queue_items(10, NOW + timedelta(seconds=5))

        assert [i.id for i in items] == [first.id, later.id]
        assert all(i.status == QueueStatus.PROCESSING for i in items)
        assert await any_store.claim_queue_items(10, NOW + timedelta(seconds=5)) == []

    @pytest.mark.asyncio
    async def test_claim_limit(self, any_store):
        for n in range(5):
            await any_store.insert_queue_item(_item(f"m{n}", created_at=NOW + timedelta(seconds=n)))
        assert len(await any_store.claim_queue_items(3, NOW + timedelta(minutes=1))) == 3
        assert len(await any_store.claim_queue_items(3, NOW + timedelta(minutes=1))) == 2

    @pytest.mark.asyncio
    async def test_update_fields(self, any_store):
        item = await any_store.insert_queue_item(_item(recipient_type=RecipientType.COMMENT))
        later = NOW + timedelta(seconds=30)

        assert await any_store.update_queue_item(
            item.id, later, status=QueueStatus.PENDING, attempts=1,
            not_before=later, last_error="timeout",
        ) is True
        assert await any_store.update_queue_item("missing", later, attempts=1) is False

        stored = await any_store.get_queue_item(item.id)
        assert stored.attempts == 1
        assert stored.not_before == later
        assert stored.updated_at == later
        assert stored.last_error == "timeout"
        assert stored.recipient_type == RecipientType.COMMENT

    @pytest.mark.asyncio
    async def test_update_guarded_by_claim_stamp(self, any_store):
        item = await any_store.insert_queue_item(_item())
        [claimed] = await any_store.claim_queue_items(1, NOW)
        stale = NOW - timedelta(minutes=6)

        assert await any_store.update_queue_item(
            item.id, NOW, claimed_at=stale, status=QueueStatus.SENT) is False
        assert await any_store.update_queue_item(
            item.id, NOW, claimed_at=claimed.processing_since, status=QueueStatus.SENT) is True
        # No longer processing, so even the right stamp does not match
        assert await any_store.update_queue_item(
            item.id, NOW, claimed_at=claimed.processing_since, status=QueueStatus.FAILED) is False
        assert (await any_store.get_queue_item(item.id)).status == QueueStatus.SENT

    @pytest.mark.asyncio
    async def test_bump_attempts(self, any_store):
        item = await any_store.insert_queue_item(_item(attempts=1))
        assert await any_store.update_queue_item(item.id, NOW, bump_attempts=True,
                                                 last_error="timeout") is True
        stored = await any_store.get_queue_item(item.id)
        assert stored.attempts == 2
        assert stored.last_error == "timeout"

    @pytest.mark.asyncio
    async def test_reset_stuck(self, any_store):
        item = await any_store.insert_queue_item(_item())
        await any_store.claim_queue_items(1, NOW)

        assert await any_store.reset_stuck_items(NOW, NOW) == 0
        assert await any_store.reset_stuck_items(NOW + timedelta(minutes=5), NOW) == 1

        stored = await any_store.get_queue_item(item.id)
        assert stored.status == QueueStatus.PENDING
        assert stored.processing_since is None

    @pytest.mark.asyncio
    async def test_list_by_status(self, any_store):
        a = await any_store.insert_queue_item(_item("a"))
        await any_store.insert_queue_item(_item("b"))
        await any_store.insert_queue_item(_item("c", tenant_id="T2"))
        await any_store.update_queue_item(a.id, NOW, status=QueueStatus.FAILED)

        failed = await any_store.list_queue_items("T1", QueueStatus.FAILED)
        assert [i.id for i in failed] == [a.id]
        assert len(await any_store.list_queue_items("T1")) == 2


# ──────────────────────────────────────────────────────────────
#  Concurrent callers
# ──────────────────────────────────────────────────────────────

class TestConcurrentCallers:
    """Exactly-once guarantees under asyncio.gather.

    On SQLite every primitive runs on its own pooled connection, so these
    exercise the database statements rather than event-loop ordering.
    """

    @pytest.mark.asyncio
    async def test_one_claim_winner(self, any_store, clock):
        from automation.claims import ReplyClaimStore

        claims = ReplyClaimStore(any_store, now_fn=clock)
        results = await asyncio.gather(*[claims.claim("T1", "evt_1", f"reply {n}") for n in range(10)])

        assert results.count(True) == 1
        winner = results.index(True)
        assert (await claims.get("T1", "evt_1")).reply_text == f"reply {winner}"

    @pytest.mark.asyncio
    async def test_rate_limit_admits_exactly_max(self, any_store, clock):
        from job_queue.rate_limiter import RateLimiter

        limiter = RateLimiter(any_store, max_per_minute=5, now_fn=clock)
        results = await asyncio.gather(*[limiter.try_admit("T1") for _ in range(20)])

        assert results.count(True) == 5

    @pytest.mark.asyncio
    async def test_no_item_in_two_batches(self, any_store):
        for n in range(20):
            await any_store.insert_queue_item(_item(f"m{n}", created_at=NOW + timedelta(seconds=n)))

        batches = await asyncio.gather(*[any_store.claim_queue_items(7, NOW + timedelta(minutes=1))
                                         for _ in range(4)])

        ids = [i.id for batch in batches for i in batch]
        assert len(ids) == 20
        assert len(set(ids)) == 20

    @pytest.mark.asyncio
    async def test_concurrent_sweeps_send_each_item_once(self, any_store, clock):
        from job_queue.dispatcher import Dispatcher
        from job_queue.outbound_queue import OutboundQueue
        from job_queue.rate_limiter import RateLimiter

        queue = OutboundQueue(any_store, now_fn=clock)
        limiter = RateLimiter(any_store, max_per_minute=120, now_fn=clock)
        sender = AsyncMock()
        for n in range(12):
            await queue.enqueue("T1", "u", f"m{n}")

        workers = [Dispatcher(any_store, queue, limiter, sender, now_fn=clock) for _ in range(3)]
        summaries = await asyncio.gather(*[w.sweep() for w in workers])

        assert sum(s.sent for s in summaries) == 12
        assert sorted(c.args[2] for c in sender.send.await_args_list) == sorted(f"m{n}" for n in range(12))

    @pytest.mark.asyncio
    async def test_slow_worker_does_not_resend_recovered_items(self, any_store, clock):
        from job_queue.dispatcher import Dispatcher
        from job_queue.outbound_queue import OutboundQueue
        from job_queue.rate_limiter import RateLimiter

        queue = OutboundQueue(any_store, now_fn=clock)
        limiter = RateLimiter(any_store, max_per_minute=120, now_fn=clock)
        sends = []
        sender_b = AsyncMock()
        sender_b.send.side_effect = lambda tenant_id, recipient, text, kind: sends.append(("B", text))
        worker_b = Dispatcher(any_store, queue, limiter, sender_b, now_fn=clock)

        async def slow_send(tenant_id, recipient, text, kind):
            sends.append(("A", text))
            if text == "first":
                clock.advance(seconds=301)
                await worker_b.sweep()

        sender_a = AsyncMock()
        sender_a.send.side_effect = slow_send
        worker_a = Dispatcher(any_store, queue, limiter, sender_a, now_fn=clock)
        await queue.enqueue("T1", "u", "first")
        clock.advance(seconds=1)
        await queue.enqueue("T1", "u", "second")

        await worker_a.sweep()

        assert [text for _, text in sends].count("second") == 1
        assert ("A", "second") not in sends


# ──────────────────────────────────────────────────────────────
#  SQL specifics
# ──────────────────────────────────────────────────────────────

class TestSqlDispatchStore:
    @pytest.mark.asyncio
    async def test_datetimes_come_back_aware(self, sql_store):
        item = await sql_store.insert_queue_item(_item())
        stored = await sql_store.get_queue_item(item.id)
        assert stored.not_before.tzinfo is not None
        assert stored.created_at == NOW

    @pytest.mark.asyncio
    async def test_components_share_sql_store(self, sql_store):
        from automation.claims import ReplyClaimStore
        from job_queue.outbound_queue import OutboundQueue
        from job_queue.rate_limiter import RateLimiter

        clock = lambda: NOW
        limiter = RateLimiter(sql_store, max_per_minute=2, now_fn=clock)
        queue = OutboundQueue(sql_store, now_fn=clock)
        claims = ReplyClaimStore(sql_store, now_fn=clock)

        assert [await limiter.try_admit("T1") for _ in range(3)] == [True, True, False]
        assert await claims.claim("T1", "evt_1", "hi") is True
        assert await claims.claim("T1", "evt_1", "hi") is False

        item_id = await queue.enqueue("T1", "u", "hi")
        [item] = await queue.claim_batch(10)
        assert await queue.record_failure(item, "timeout") == QueueStatus.PENDING
        assert (await queue.get(item_id)).attempts == 1


# ──────────────────────────────────────────────────────────────
#  Store Factory
# ──────────────────────────────────────────────────────────────

class TestStoreFactory:
    def setup_method(self):
        from database.store_factory import reset_store
        reset_store()

    def teardown_method(self):
        from database.store_factory import reset_store
        reset_store()

    def test_create_memory_store(self):
        from database.store_factory import create_store
        from database.store_memory import InMemoryDispatchStore
        store = create_store({"store_backend": "memory"})
        assert isinstance(store, InMemoryDispatchStore)

    def test_create_sql_store(self):
        from database.store_factory import create_store
        from database.store import SqlDispatchStore
        store = create_store({"store_backend": "sql"})
        assert isinstance(store, SqlDispatchStore)

    def test_default_is_memory(self):
        from database.store_factory import create_store
        from database.store_memory import InMemoryDispatchStore
        assert isinstance(create_store({}), InMemoryDispatchStore)

    def test_unknown_backend_falls_back_to_memory(self):
        from database.store_factory import create_store
        from database.store_memory import InMemoryDispatchStore
        assert isinstance(create_store({"store_backend": "redis"}), InMemoryDispatchStore)

    def test_accepts_database_config(self):
        from config.settings import DatabaseConfig
        from database.store_factory import create_store
        from database.store import SqlDispatchStore
        assert isinstance(create_store(DatabaseConfig(store_backend="sql")), SqlDispatchStore)

    def test_singleton(self):
        from database.store_factory import create_store, get_store
        s1 = create_store({"store_backend": "memory"})
        s2 = get_store()
        assert s1 is s2


# ──────────────────────────────────────────────────────────────
#  Database Session — URL Translation
# ──────────────────────────────────────────────────────────────

class TestSessionUrlTranslation:
    def test_postgresql_url(self):
        from database.session import _to_async_url
        assert _to_async_url("postgresql://u:p@h/db") == "postgresql+asyncpg://u:p@h/db"

    def test_postgres_url(self):
        from database.session import _to_async_url
        assert _to_async_url("postgres://u:p@h/db") == "postgresql+asyncpg://u:p@h/db"

    def test_sqlite_url(self):
        from database.session import _to_async_url
        assert _to_async_url("sqlite:///./test.db") == "sqlite+aiosqlite:///./test.db"

    def test_already_async_url(self):
        from database.session import _to_async_url
        url = "postgresql+asyncpg://u:p@h/db"
        assert _to_async_url(url) == url

    def test_postgres_gets_pool_settings(self):
        from database.session import _engine_kwargs
        assert _engine_kwargs("postgresql+asyncpg://u:p@h/db")["pool_pre_ping"] is True
        assert "pool_size" not in _engine_kwargs("sqlite+aiosqlite:///x.db")


# ──────────────────────────────────────────────────────────────
#  Cross-DB Models Portability
# ──────────────────────────────────────────────────────────────

class TestModelsPortability:
    def test_credentials_is_json(self):
        from sqlalchemy import JSON
        from database.models import TenantRow
        col = TenantRow.__table__.columns["credentials"]
        assert isinstance(col.type, JSON)

    def test_no_jsonb_anywhere(self):
        from database.models import Base
        for table in Base.metadata.tables.values():
            for col in table.columns:
                assert type(col.type).__name__ != "JSONB", (
                    f"Column {table.name}.{col.name} uses JSONB — "
                    f"use JSON for cross-DB compatibility"
                )

    def test_all_tables_defined(self):
        from database.models import Base
        expected = {"tenants", "tenant_settings", "product_mappings", "reply_claims",
                    "outbound_queue", "rate_limit_windows"}
        assert set(Base.metadata.tables.keys()) == expected
