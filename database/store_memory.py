"""
InMemoryDispatchStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with SqlDispatchStore
  - Atomic per primitive: no method awaits between its read and its write,
    so concurrent coroutines on one event loop can never interleave inside one
  - All data lost on process restart

Best for: local development, unit tests, single-process deployments.
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Any, Optional

from database.store_base import DispatchStore
from models.schemas import (
    OutboundQueueItem, ProductMapping, QueueStatus, ReplyClaim, Tenant,
    TenantSettings, month_key,
)

logger = structlog.get_logger()


class InMemoryDispatchStore(DispatchStore):
    """
    In-memory store with the same interface as SqlDispatchStore.
    Values are copied on the way in and out so callers never share state.
    """

    def __init__(self):
        self._tenants: dict[str, Tenant] = {}
        self._settings: dict[str, TenantSettings] = {}
        self._mappings: dict[tuple[str, str], ProductMapping] = {}
        self._claims: dict[tuple[str, str], ReplyClaim] = {}          # (tenant, event_key)
        self._windows: dict[tuple[str, datetime], int] = {}           # (tenant, window_start)
        self._queue: dict[str, OutboundQueueItem] = {}                # item id → item
        logger.info("inmemory_store_initialized")

    # ── Tenants ───────────────────────────────────────────

    async def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        tenant = self._tenants.get(tenant_id)
        return tenant.model_copy(deep=True) if tenant else None

    async def upsert_tenant(self, tenant: Tenant) -> Tenant:
        self._tenants[tenant.id] = tenant.model_copy(deep=True)
        return tenant

    async def update_credentials(self, tenant_id: str, credentials: dict[str, Any]) -> None:
        tenant = self._tenants.get(tenant_id)
        if tenant:
            tenant.credentials = dict(credentials)

    async def increment_usage(self, tenant_id: str, now: datetime) -> int:
        tenant = self._tenants.get(tenant_id)
        if not tenant:
            return 0
        month = month_key(now)
        if tenant.usage_month != month:
            tenant.usage_month = month
            tenant.usage_count = 0
        tenant.usage_count += 1
        return tenant.usage_count

    async def get_settings(self, tenant_id: str) -> TenantSettings:
        settings = self._settings.get(tenant_id)
        if not settings:
            return TenantSettings(tenant_id=tenant_id)
        return settings.model_copy()

    async def upsert_settings(self, settings: TenantSettings) -> TenantSettings:
        self._settings[settings.tenant_id] = settings.model_copy()
        return settings

    async def get_product_mapping(self, tenant_id: str, media_id: str) -> Optional[ProductMapping]:
        mapping = self._mappings.get((tenant_id, media_id))
        return mapping.model_copy() if mapping else None

    async def upsert_product_mapping(self, mapping: ProductMapping) -> ProductMapping:
        self._mappings[(mapping.tenant_id, mapping.media_id)] = mapping.model_copy()
        return mapping

    # ── Reply claims ──────────────────────────────────────

    async def insert_claim(self, claim: ReplyClaim) -> bool:
        key = (claim.tenant_id, claim.event_key)
        if key in self._claims:
            return False
        self._claims[key] = claim.model_copy()
        return True

    async def get_claim(self, tenant_id: str, event_key: str) -> Optional[ReplyClaim]:
        claim = self._claims.get((tenant_id, event_key))
        return claim.model_copy() if claim else None

    async def latest_product_claim(
        self, tenant_id: str, sender_id: str, since: datetime,
    ) -> Optional[ReplyClaim]:
        matches = [
            c for c in self._claims.values()
            if c.tenant_id == tenant_id and c.sender_id == sender_id
            and c.created_at >= since and c.product_id
        ]
        if not matches:
            return None
        return max(matches, key=lambda c: c.created_at).model_copy()

    async def count_claims(
        self, tenant_id: str, sender_id: str, since: datetime, reply_kind: str,
    ) -> int:
        return sum(
            1 for c in self._claims.values()
            if c.tenant_id == tenant_id and c.sender_id == sender_id
            and c.created_at >= since and c.reply_kind == reply_kind
        )

    # ── Rate limit windows ────────────────────────────────

    async def increment_rate_window(self, tenant_id: str, window_start: datetime) -> int:
        key = (tenant_id, window_start)
        self._windows[key] = self._windows.get(key, 0) + 1
        return self._windows[key]

    async def delete_rate_windows_before(self, cutoff: datetime) -> int:
        stale = [key for key in self._windows if key[1] < cutoff]
        for key in stale:
            del self._windows[key]
        return len(stale)

    # ── Outbound queue ────────────────────────────────────

    async def insert_queue_item(self, item: OutboundQueueItem) -> OutboundQueueItem:
        self._queue[item.id] = item.model_copy()
        return item

    async def get_queue_item(self, item_id: str) -> Optional[OutboundQueueItem]:
        item = self._queue.get(item_id)
        return item.model_copy() if item else None

    async def claim_queue_items(self, limit: int, now: datetime) -> list[OutboundQueueItem]:
        due = sorted(
            (i for i in self._queue.values()
             if i.status == QueueStatus.PENDING and i.not_before <= now),
            key=lambda i: i.created_at,
        )[:limit]
        for item in due:
            item.status = QueueStatus.PROCESSING
            item.processing_since = now
            item.updated_at = now
        return [item.model_copy() for item in due]

    async def update_queue_item(
        self,
        item_id: str,
        now: datetime,
        claimed_at: Optional[datetime] = None,
        bump_attempts: bool = False,
        **fields,
    ) -> bool:
        item = self._queue.get(item_id)
        if not item:
            return False
        if claimed_at is not None and (
            item.status != QueueStatus.PROCESSING or item.processing_since != claimed_at
        ):
            return False
        if bump_attempts:
            item.attempts += 1
        for key, value in fields.items():
            setattr(item, key, value)
        item.updated_at = now
        return True

    async def reset_stuck_items(self, cutoff: datetime, now: datetime) -> int:
        count = 0
        for item in self._queue.values():
            if (item.status == QueueStatus.PROCESSING
                    and item.processing_since is not None
                    and item.processing_since < cutoff):
                item.status = QueueStatus.PENDING
                item.processing_since = None
                item.updated_at = now
                count += 1
        return count

    async def list_queue_items(
        self, tenant_id: str, status: Optional[QueueStatus] = None, limit: int = 100,
    ) -> list[OutboundQueueItem]:
        items = [
            i for i in self._queue.values()
            if i.tenant_id == tenant_id and (status is None or i.status == status)
        ]
        items.sort(key=lambda i: i.updated_at, reverse=True)
        return [i.model_copy() for i in items[:limit]]
