"""
Outbound Queue — Durable, retryable queue of pending sends.

Item lifecycle:
  pending ──claim_batch──▶ processing ──mark_sent──▶ sent
     ▲                        │
     │                        ├──mark_retry (backoff)──▶ pending, later not_before
     │                        ├──defer (throttled)─────▶ pending, next window
     │                        └──mark_failed───────────▶ failed (operator view)
     └──────recover_stuck (processing too long)──┘

Retry state (attempts, not_before) is persisted, so retries survive restarts
and are observable without executing real delays.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta
from typing import Callable, Optional

from database.store_base import DispatchStore
from models.schemas import OutboundQueueItem, QueueStatus, RecipientType, utcnow

logger = structlog.get_logger()


def backoff_delay(attempts: int, base_seconds: int = 30) -> timedelta:
    """Delay before the next try after `attempts` failures: base * 2^(attempts-1)."""
    return timedelta(seconds=base_seconds * (2 ** max(attempts - 1, 0)))


class OutboundQueue:
    """
    Usage:
        queue = OutboundQueue(store)
        item_id = await queue.enqueue("t1", "igsid_123", "Here's the link!")
        for item in await queue.claim_batch(200):
            ...
    """

    def __init__(
        self,
        store: DispatchStore,
        max_attempts: int = 3,
        backoff_base_seconds: int = 30,
        stuck_timeout_seconds: int = 300,
        now_fn: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.max_attempts = max_attempts
        self.backoff_base_seconds = backoff_base_seconds
        self.stuck_timeout_seconds = stuck_timeout_seconds
        self._now = now_fn

    async def enqueue(
        self,
        tenant_id: str,
        recipient: str,
        text: str,
        recipient_type: RecipientType = RecipientType.USER,
    ) -> str:
        now = self._now()
        item = OutboundQueueItem(
            tenant_id=tenant_id,
            recipient=recipient,
            recipient_type=recipient_type,
            text=text,
            not_before=now,
            created_at=now,
            updated_at=now,
        )
        await self.store.insert_queue_item(item)
        logger.info("outbound_enqueued",
                    item_id=item.id,
                    tenant_id=tenant_id,
                    recipient_type=recipient_type.value)
        return item.id

    async def claim_batch(self, limit: int) -> list[OutboundQueueItem]:
        """Atomically take up to `limit` due items, oldest first."""
        items = await self.store.claim_queue_items(limit, self._now())
        if items:
            logger.info("outbound_batch_claimed", count=len(items), limit=limit)
        return items

    async def get(self, item_id: str) -> Optional[OutboundQueueItem]:
        return await self.store.get_queue_item(item_id)

    # ── Transitions ───────────────────────────────────────
    #
    # `claimed_at` is the processing_since stamp the worker holds. When given,
    # a transition only lands while that claim is still current; once
    # recover_stuck has handed the item to someone else it returns False.

    async def renew(self, item: OutboundQueueItem) -> bool:
        """Re-stamp a claimed item just before sending; False if the claim was lost."""
        now = self._now()
        owned = await self.store.update_queue_item(
            item.id, now, claimed_at=item.processing_since, processing_since=now,
        )
        if owned:
            item.processing_since = now
        else:
            logger.warning("outbound_claim_lost", item_id=item.id, tenant_id=item.tenant_id)
        return owned

    async def mark_sent(self, item_id: str, claimed_at: Optional[datetime] = None) -> bool:
        applied = await self.store.update_queue_item(
            item_id, self._now(), claimed_at=claimed_at,
            status=QueueStatus.SENT,
            processing_since=None,
            last_error=None,
        )
        logger.info("outbound_sent", item_id=item_id)
        return applied

    async def mark_retry(
        self,
        item_id: str,
        error: str,
        next_not_before: datetime,
        attempts: Optional[int] = None,
        claimed_at: Optional[datetime] = None,
    ) -> bool:
        """Back to pending at `next_not_before`. Without `attempts` the stored count goes up by one."""
        fields = {} if attempts is None else {"attempts": attempts}
        applied = await self.store.update_queue_item(
            item_id, self._now(), claimed_at=claimed_at,
            bump_attempts=attempts is None,
            status=QueueStatus.PENDING,
            not_before=next_not_before,
            processing_since=None,
            last_error=error,
            **fields,
        )
        logger.warning("outbound_retry_scheduled",
                       item_id=item_id,
                       attempts=attempts,
                       not_before=next_not_before.isoformat(),
                       error=error)
        return applied

    async def mark_failed(
        self,
        item_id: str,
        error: str,
        attempts: Optional[int] = None,
        claimed_at: Optional[datetime] = None,
    ) -> bool:
        """Terminal failure. `attempts` defaults to the maximum (fail fast)."""
        attempts = self.max_attempts if attempts is None else attempts
        applied = await self.store.update_queue_item(
            item_id, self._now(), claimed_at=claimed_at,
            status=QueueStatus.FAILED,
            attempts=attempts,
            processing_since=None,
            last_error=error,
        )
        logger.error("outbound_failed", item_id=item_id, attempts=attempts, error=error)
        return applied

    async def defer(
        self, item_id: str, not_before: datetime, claimed_at: Optional[datetime] = None,
    ) -> bool:
        """Throttled: back to pending at `not_before`, attempts unchanged."""
        applied = await self.store.update_queue_item(
            item_id, self._now(), claimed_at=claimed_at,
            status=QueueStatus.PENDING,
            not_before=not_before,
            processing_since=None,
        )
        logger.info("outbound_deferred", item_id=item_id, not_before=not_before.isoformat())
        return applied

    async def record_failure(
        self, item: OutboundQueueItem, error: str, fatal: bool = False,
    ) -> QueueStatus:
        """Apply the backoff policy to a failed send; return the item's new status."""
        claimed_at = item.processing_since
        if fatal:
            await self.mark_failed(item.id, error, claimed_at=claimed_at)
            return QueueStatus.FAILED

        attempts = item.attempts + 1
        if attempts >= self.max_attempts:
            await self.mark_failed(item.id, error, attempts=attempts, claimed_at=claimed_at)
            return QueueStatus.FAILED

        next_not_before = self._now() + backoff_delay(attempts, self.backoff_base_seconds)
        await self.mark_retry(item.id, error, next_not_before, attempts, claimed_at=claimed_at)
        return QueueStatus.PENDING

    async def recover_stuck(self, timeout_seconds: Optional[int] = None) -> int:
        """Return items processing for longer than the timeout to pending."""
        timeout = self.stuck_timeout_seconds if timeout_seconds is None else timeout_seconds
        now = self._now()
        recovered = await self.store.reset_stuck_items(now - timedelta(seconds=timeout), now)
        if recovered:
            logger.warning("outbound_stuck_recovered", count=recovered, timeout=timeout)
        return recovered

    async def list_failed(self, tenant_id: str, limit: int = 100) -> list[OutboundQueueItem]:
        return await self.store.list_queue_items(tenant_id, QueueStatus.FAILED, limit)
