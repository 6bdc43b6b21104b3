"""
Abstract Dispatch Store — Interface for all storage backends.

Implementations:
  - SqlDispatchStore      (PostgreSQL / SQLite via SQLAlchemy)
  - InMemoryDispatchStore (dict-based, single-process, no persistence)

Every mutating method is a single atomic primitive. Components above this
layer (RateLimiter, ReplyClaimStore, OutboundQueue) never read-then-write.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from models.schemas import (
    OutboundQueueItem, ProductMapping, QueueStatus, ReplyClaim, Tenant,
    TenantSettings,
)


class DispatchStore(ABC):
    """Interface that all dispatch store backends must implement."""

    # ── Tenants ───────────────────────────────────────────────

    @abstractmethod
    async def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        ...

    @abstractmethod
    async def upsert_tenant(self, tenant: Tenant) -> Tenant:
        ...

    @abstractmethod
    async def update_credentials(self, tenant_id: str, credentials: dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def increment_usage(self, tenant_id: str, now: datetime) -> int:
        """Add one to the month's usage, resetting it first if the month rolled over.

        Returns the new count, or 0 if the tenant does not exist.
        """
        ...

    @abstractmethod
    async def get_settings(self, tenant_id: str) -> TenantSettings:
        """Return stored settings, or defaults when none were saved."""
        ...

    @abstractmethod
    async def upsert_settings(self, settings: TenantSettings) -> TenantSettings:
        ...

    @abstractmethod
    async def get_product_mapping(self, tenant_id: str, media_id: str) -> Optional[ProductMapping]:
        ...

    @abstractmethod
    async def upsert_product_mapping(self, mapping: ProductMapping) -> ProductMapping:
        ...

    # ── Reply claims ──────────────────────────────────────────

    @abstractmethod
    async def insert_claim(self, claim: ReplyClaim) -> bool:
        """Insert guarded by the (tenant_id, event_key) uniqueness.

        True if this call created the row, False on a duplicate. Any other
        storage error propagates.
        """
        ...

    @abstractmethod
    async def get_claim(self, tenant_id: str, event_key: str) -> Optional[ReplyClaim]:
        ...

    @abstractmethod
    async def latest_product_claim(
        self, tenant_id: str, sender_id: str, since: datetime,
    ) -> Optional[ReplyClaim]:
        """Newest claim for the sender since `since` that names a product."""
        ...

    @abstractmethod
    async def count_claims(
        self, tenant_id: str, sender_id: str, since: datetime, reply_kind: str,
    ) -> int:
        ...

    # ── Rate limit windows ────────────────────────────────────

    @abstractmethod
    async def increment_rate_window(self, tenant_id: str, window_start: datetime) -> int:
        """Atomically add one to the (tenant, window) counter; return the new count."""
        ...

    @abstractmethod
    async def delete_rate_windows_before(self, cutoff: datetime) -> int:
        ...

    # ── Outbound queue ────────────────────────────────────────

    @abstractmethod
    async def insert_queue_item(self, item: OutboundQueueItem) -> OutboundQueueItem:
        ...

    @abstractmethod
    async def get_queue_item(self, item_id: str) -> Optional[OutboundQueueItem]:
        ...

    @abstractmethod
    async def claim_queue_items(self, limit: int, now: datetime) -> list[OutboundQueueItem]:
        """Move up to `limit` due pending items to processing, oldest first.

        Rows locked by a concurrent claimer are skipped, never waited on.
        """
        ...

    @abstractmethod
    async def update_queue_item(
        self,
        item_id: str,
        now: datetime,
        claimed_at: Optional[datetime] = None,
        bump_attempts: bool = False,
        **fields,
    ) -> bool:
        """Apply a state transition in one statement.

        With `claimed_at`, the update only applies while the item is still
        processing under that claim stamp. `bump_attempts` adds one to the
        stored attempts. False if no row matched.
        """
        ...

    @abstractmethod
    async def reset_stuck_items(self, cutoff: datetime, now: datetime) -> int:
        """Return items processing since before `cutoff` to pending."""
        ...

    @abstractmethod
    async def list_queue_items(
        self, tenant_id: str, status: Optional[QueueStatus] = None, limit: int = 100,
    ) -> list[OutboundQueueItem]:
        ...
