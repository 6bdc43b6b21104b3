"""
Rate Limiter — Per-tenant, per-minute send admission.

Counters live in the shared store, never in process memory, so every
dispatch worker sees the same window. Admission is one atomic
increment-and-return; the comparison happens on the post-increment value.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta
from typing import Callable

from database.store_base import DispatchStore
from models.schemas import utcnow

logger = structlog.get_logger()

WINDOW = timedelta(minutes=1)


def floor_to_minute(ts: datetime) -> datetime:
    return ts.replace(second=0, microsecond=0)


class RateLimiter:
    """
    Usage:
        limiter = RateLimiter(store, max_per_minute=120)
        if await limiter.try_admit("t1"):
            ...send...
    """

    def __init__(
        self,
        store: DispatchStore,
        max_per_minute: int = 120,
        now_fn: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.max_per_minute = max_per_minute
        self._now = now_fn

    def window_start(self, now: datetime | None = None) -> datetime:
        return floor_to_minute(now or self._now())

    def next_window_start(self, now: datetime | None = None) -> datetime:
        return self.window_start(now) + WINDOW

    async def try_admit(self, tenant_id: str) -> bool:
        """True if this send fits in the tenant's current minute window.

        A denied call still counts toward the window. If the store is
        unavailable the send is admitted.
        """
        window = self.window_start()
        try:
            count = await self.store.increment_rate_window(tenant_id, window)
        except Exception as e:
            logger.warning("rate_limit_check_failed_open",
                           tenant_id=tenant_id, error=str(e))
            return True

        if count > self.max_per_minute:
            logger.info("rate_limited",
                        tenant_id=tenant_id,
                        count=count,
                        limit=self.max_per_minute)
            return False
        return True

    async def collect_garbage(self) -> int:
        """Delete windows that started more than two windows ago. Never raises."""
        cutoff = self.window_start() - 2 * WINDOW
        try:
            deleted = await self.store.delete_rate_windows_before(cutoff)
        except Exception as e:
            logger.warning("rate_window_gc_failed", error=str(e))
            return 0
        if deleted:
            logger.debug("rate_windows_collected", deleted=deleted)
        return deleted
