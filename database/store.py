"""
SqlDispatchStore — Portable SQL for PostgreSQL and SQLite.

Atomic primitives used here:
  - INSERT ... ON CONFLICT DO UPDATE ... RETURNING   (rate windows)
  - INSERT guarded by a unique constraint            (reply claims)
  - UPDATE ... WHERE id IN (SELECT ... FOR UPDATE SKIP LOCKED) RETURNING
                                                     (queue claim batch)
  - single-statement UPDATE with CASE                (monthly usage)

SQLite has no row locks; its database-level write lock serialises the
claim statement instead, and SQLAlchemy omits the FOR UPDATE clause.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncGenerator, Optional

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.models import (
    OutboundQueueRow, ProductMappingRow, RateLimitWindowRow, ReplyClaimRow,
    TenantRow, TenantSettingsRow, _new_id,
)
from database.session import get_session
from database.store_base import DispatchStore
from models.schemas import (
    Channel, OutboundQueueItem, ProductMapping, QueueStatus, RecipientType,
    ReplyClaim, ReplyKind, Tenant, TenantSettings, month_key,
)

logger = structlog.get_logger()


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalise to aware UTC. SQLite hands back naive datetimes."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _column_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return _utc(value)
    return value


class SqlDispatchStore(DispatchStore):
    """
    Persistent dispatch store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL and SQLite.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession, None]:
        if self._session_factory is None:
            async with get_session() as db:
                yield db
            return
        async with self._session_factory() as db:
            try:
                yield db
                await db.commit()
            except Exception:
                await db.rollback()
                raise

    @staticmethod
    def _insert_for(db: AsyncSession):
        """Dialect-specific INSERT that supports ON CONFLICT."""
        if db.get_bind().dialect.name == "postgresql":
            return postgresql.insert
        return sqlite.insert

    # ── Tenants ────────────────────────────────────────────

    async def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        async with self._session() as db:
            row = await db.get(TenantRow, tenant_id)
            return self._row_to_tenant(row) if row else None

    async def upsert_tenant(self, tenant: Tenant) -> Tenant:
        async with self._session() as db:
            existing = await db.get(TenantRow, tenant.id)
            data = tenant.model_dump(exclude={"id"})
            if existing:
                for key, value in data.items():
                    setattr(existing, key, value)
            else:
                db.add(TenantRow(id=tenant.id, **data))
            return tenant

    async def update_credentials(self, tenant_id: str, credentials: dict[str, Any]) -> None:
        async with self._session() as db:
            await db.execute(
                update(TenantRow)
                .where(TenantRow.id == tenant_id)
                .values(credentials=credentials, updated_at=datetime.now(timezone.utc))
            )

    async def increment_usage(self, tenant_id: str, now: datetime) -> int:
        month = month_key(now)
        stmt = (
            update(TenantRow)
            .where(TenantRow.id == tenant_id)
            .values(
                usage_count=case(
                    (TenantRow.usage_month == month, TenantRow.usage_count + 1),
                    else_=1,
                ),
                usage_month=month,
                updated_at=_utc(now),
            )
            .returning(TenantRow.usage_count)
        )
        async with self._session() as db:
            result = await db.execute(stmt, execution_options={"synchronize_session": False})
            count = result.scalar_one_or_none()
        return count or 0

    async def get_settings(self, tenant_id: str) -> TenantSettings:
        async with self._session() as db:
            row = await db.get(TenantSettingsRow, tenant_id)
            if not row:
                return TenantSettings(tenant_id=tenant_id)
            return TenantSettings(
                tenant_id=row.tenant_id,
                dm_automation_enabled=row.dm_automation_enabled,
                comment_automation_enabled=row.comment_automation_enabled,
                followup_enabled=row.followup_enabled,
            )

    async def upsert_settings(self, settings: TenantSettings) -> TenantSettings:
        async with self._session() as db:
            existing = await db.get(TenantSettingsRow, settings.tenant_id)
            data = settings.model_dump(exclude={"tenant_id"})
            if existing:
                for key, value in data.items():
                    setattr(existing, key, value)
            else:
                db.add(TenantSettingsRow(tenant_id=settings.tenant_id, **data))
            return settings

    async def get_product_mapping(self, tenant_id: str, media_id: str) -> Optional[ProductMapping]:
        async with self._session() as db:
            stmt = select(ProductMappingRow).where(
                ProductMappingRow.tenant_id == tenant_id,
                ProductMappingRow.media_id == media_id,
            )
            row = (await db.execute(stmt)).scalar_one_or_none()
            if not row:
                return None
            return ProductMapping(
                tenant_id=row.tenant_id, media_id=row.media_id,
                product_id=row.product_id, variant_id=row.variant_id,
                product_handle=row.product_handle,
            )

    async def upsert_product_mapping(self, mapping: ProductMapping) -> ProductMapping:
        async with self._session() as db:
            insert = self._insert_for(db)
            stmt = insert(ProductMappingRow).values(id=_new_id(), **mapping.model_dump())
            stmt = stmt.on_conflict_do_update(
                index_elements=["tenant_id", "media_id"],
                set_={
                    "product_id": mapping.product_id,
                    "variant_id": mapping.variant_id,
                    "product_handle": mapping.product_handle,
                },
            )
            await db.execute(stmt)
        return mapping

    # ── Reply claims ───────────────────────────────────────

    async def insert_claim(self, claim: ReplyClaim) -> bool:
        values = {k: _column_value(v) for k, v in claim.model_dump().items()}
        try:
            async with self._session() as db:
                db.add(ReplyClaimRow(**values))
        except IntegrityError:
            return False
        return True

    async def get_claim(self, tenant_id: str, event_key: str) -> Optional[ReplyClaim]:
        async with self._session() as db:
            stmt = select(ReplyClaimRow).where(
                ReplyClaimRow.tenant_id == tenant_id,
                ReplyClaimRow.event_key == event_key,
            )
            row = (await db.execute(stmt)).scalar_one_or_none()
            return self._row_to_claim(row) if row else None

    async def latest_product_claim(
        self, tenant_id: str, sender_id: str, since: datetime,
    ) -> Optional[ReplyClaim]:
        async with self._session() as db:
            stmt = (
                select(ReplyClaimRow)
                .where(
                    ReplyClaimRow.tenant_id == tenant_id,
                    ReplyClaimRow.sender_id == sender_id,
                    ReplyClaimRow.created_at >= _utc(since),
                    ReplyClaimRow.product_id.is_not(None),
                )
                .order_by(ReplyClaimRow.created_at.desc())
                .limit(1)
            )
            row = (await db.execute(stmt)).scalar_one_or_none()
            return self._row_to_claim(row) if row else None

    async def count_claims(
        self, tenant_id: str, sender_id: str, since: datetime, reply_kind: str,
    ) -> int:
        async with self._session() as db:
            stmt = select(func.count()).select_from(ReplyClaimRow).where(
                ReplyClaimRow.tenant_id == tenant_id,
                ReplyClaimRow.sender_id == sender_id,
                ReplyClaimRow.created_at >= _utc(since),
                ReplyClaimRow.reply_kind == _column_value(reply_kind),
            )
            return (await db.execute(stmt)).scalar_one()

    # ── Rate limit windows ─────────────────────────────────

    async def increment_rate_window(self, tenant_id: str, window_start: datetime) -> int:
        async with self._session() as db:
            insert = self._insert_for(db)
            stmt = (
                insert(RateLimitWindowRow)
                .values(id=_new_id(), tenant_id=tenant_id,
                        window_start=_utc(window_start), count=1)
                .on_conflict_do_update(
                    index_elements=["tenant_id", "window_start"],
                    set_={"count": RateLimitWindowRow.count + 1},
                )
                .returning(RateLimitWindowRow.count)
            )
            result = await db.execute(stmt)
            return result.scalar_one()

    async def delete_rate_windows_before(self, cutoff: datetime) -> int:
        async with self._session() as db:
            result = await db.execute(
                delete(RateLimitWindowRow).where(RateLimitWindowRow.window_start < _utc(cutoff))
            )
            return result.rowcount or 0

    # ── Outbound queue ─────────────────────────────────────

    async def insert_queue_item(self, item: OutboundQueueItem) -> OutboundQueueItem:
        values = {k: _column_value(v) for k, v in item.model_dump().items()}
        async with self._session() as db:
            db.add(OutboundQueueRow(**values))
        return item

    async def get_queue_item(self, item_id: str) -> Optional[OutboundQueueItem]:
        async with self._session() as db:
            row = await db.get(OutboundQueueRow, item_id)
            return self._row_to_item(row) if row else None

    async def claim_queue_items(self, limit: int, now: datetime) -> list[OutboundQueueItem]:
        now = _utc(now)
        due = (
            select(OutboundQueueRow.id)
            .where(
                OutboundQueueRow.status == QueueStatus.PENDING.value,
                OutboundQueueRow.not_before <= now,
            )
            .order_by(OutboundQueueRow.created_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        stmt = (
            update(OutboundQueueRow)
            .where(OutboundQueueRow.id.in_(due))
            .values(status=QueueStatus.PROCESSING.value, processing_since=now, updated_at=now)
            .returning(OutboundQueueRow)
        )
        async with self._session() as db:
            result = await db.execute(stmt, execution_options={"synchronize_session": False})
            items = [self._row_to_item(row) for row in result.scalars().all()]
        # RETURNING order is unspecified
        items.sort(key=lambda i: i.created_at)
        return items

    async def update_queue_item(
        self,
        item_id: str,
        now: datetime,
        claimed_at: Optional[datetime] = None,
        bump_attempts: bool = False,
        **fields,
    ) -> bool:
        values = {k: _column_value(v) for k, v in fields.items()}
        values["updated_at"] = _utc(now)
        if bump_attempts:
            values["attempts"] = OutboundQueueRow.attempts + 1

        stmt = update(OutboundQueueRow).where(OutboundQueueRow.id == item_id)
        if claimed_at is not None:
            stmt = stmt.where(
                OutboundQueueRow.status == QueueStatus.PROCESSING.value,
                OutboundQueueRow.processing_since == _utc(claimed_at),
            )
        async with self._session() as db:
            result = await db.execute(
                stmt.values(**values),
                execution_options={"synchronize_session": False},
            )
            return (result.rowcount or 0) > 0

    async def reset_stuck_items(self, cutoff: datetime, now: datetime) -> int:
        async with self._session() as db:
            result = await db.execute(
                update(OutboundQueueRow)
                .where(
                    OutboundQueueRow.status == QueueStatus.PROCESSING.value,
                    OutboundQueueRow.processing_since < _utc(cutoff),
                )
                .values(
                    status=QueueStatus.PENDING.value,
                    processing_since=None,
                    updated_at=_utc(now),
                ),
                execution_options={"synchronize_session": False},
            )
            return result.rowcount or 0

    async def list_queue_items(
        self, tenant_id: str, status: Optional[QueueStatus] = None, limit: int = 100,
    ) -> list[OutboundQueueItem]:
        async with self._session() as db:
            stmt = select(OutboundQueueRow).where(OutboundQueueRow.tenant_id == tenant_id)
            if status is not None:
                stmt = stmt.where(OutboundQueueRow.status == _column_value(status))
            stmt = stmt.order_by(OutboundQueueRow.updated_at.desc()).limit(limit)
            result = await db.execute(stmt)
            return [self._row_to_item(row) for row in result.scalars()]

    # ── Helpers ────────────────────────────────────────────

    @staticmethod
    def _row_to_tenant(row: TenantRow) -> Tenant:
        return Tenant(
            id=row.id, plan=row.plan, monthly_cap=row.monthly_cap,
            usage_count=row.usage_count or 0, usage_month=row.usage_month or "",
            shop_domain=row.shop_domain or "", brand_tone=row.brand_tone or "friendly",
            active=bool(row.active), credentials=row.credentials or {},
        )

    @staticmethod
    def _row_to_claim(row: ReplyClaimRow) -> ReplyClaim:
        return ReplyClaim(
            tenant_id=row.tenant_id, event_key=row.event_key,
            reply_text=row.reply_text or "", event_id=row.event_id,
            sender_id=row.sender_id or "", channel=Channel(row.channel),
            reply_kind=ReplyKind(row.reply_kind),
            product_id=row.product_id, variant_id=row.variant_id,
            created_at=_utc(row.created_at),
        )

    @staticmethod
    def _row_to_item(row: OutboundQueueRow) -> OutboundQueueItem:
        return OutboundQueueItem(
            id=row.id, tenant_id=row.tenant_id, recipient=row.recipient,
            recipient_type=RecipientType(row.recipient_type), text=row.text,
            status=QueueStatus(row.status), attempts=row.attempts or 0,
            not_before=_utc(row.not_before),
            processing_since=_utc(row.processing_since),
            last_error=row.last_error,
            created_at=_utc(row.created_at), updated_at=_utc(row.updated_at),
        )
