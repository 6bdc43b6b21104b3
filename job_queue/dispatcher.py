"""
Dispatcher — Drains the outbound queue.

One sweep:
  1. best-effort housekeeping: stuck-item recovery, rate-window GC
  2. claim a batch of due items (skip-locked, FIFO by enqueue time)
  3. per item: renew the claim (skip if lost) → admit or defer → send →
     mark sent + usage, or retry / fail
  4. return a SweepSummary

Any number of workers may sweep concurrently; mutual exclusion comes from
the store's atomic claim, not from in-process locks. Nothing escapes a
sweep: one bad item cannot stall the batch.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime
from typing import Callable, Optional

from channels.base import OutboundSender, is_fatal
from database.store_base import DispatchStore
from job_queue.outbound_queue import OutboundQueue
from job_queue.rate_limiter import RateLimiter
from models.schemas import OutboundQueueItem, QueueStatus, SweepSummary, utcnow

logger = structlog.get_logger()


class Dispatcher:
    """
    Usage:
        dispatcher = Dispatcher(store, queue, limiter, sender)
        summary = await dispatcher.sweep()
    """

    def __init__(
        self,
        store: DispatchStore,
        queue: OutboundQueue,
        limiter: RateLimiter,
        sender: OutboundSender,
        batch_size: int = 200,
        now_fn: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.queue = queue
        self.limiter = limiter
        self.sender = sender
        self.batch_size = batch_size
        self._now = now_fn

    async def sweep(self) -> SweepSummary:
        summary = SweepSummary()
        summary.recovered = await self._housekeeping()

        try:
            items = await self.queue.claim_batch(self.batch_size)
        except Exception as e:
            logger.error("sweep_claim_failed", error=str(e))
            return summary

        for item in items:
            summary.processed += 1
            try:
                await self._process(item, summary)
            except Exception as e:
                # Bookkeeping failed; the item stays processing until recover_stuck
                logger.error("sweep_item_error", item_id=item.id, error=str(e), exc_info=True)

        logger.info("sweep_complete", **summary.model_dump())
        return summary

    async def _housekeeping(self) -> int:
        recovered = 0
        try:
            recovered = await self.queue.recover_stuck()
        except Exception as e:
            logger.warning("recover_stuck_failed", error=str(e))
        await self.limiter.collect_garbage()
        return recovered

    async def _process(self, item: OutboundQueueItem, summary: SweepSummary) -> None:
        # A long batch can outlive the stuck timeout; another worker may own this item now
        if not await self.queue.renew(item):
            return

        if not await self.limiter.try_admit(item.tenant_id):
            await self.queue.defer(item.id, self.limiter.next_window_start(),
                                   claimed_at=item.processing_since)
            summary.deferred += 1
            return

        try:
            await self.sender.send(item.tenant_id, item.recipient, item.text, item.recipient_type)
        except Exception as e:
            status = await self.queue.record_failure(item, str(e), fatal=is_fatal(e))
            if status == QueueStatus.FAILED:
                summary.failed += 1
            else:
                summary.retried += 1
            return

        if not await self.queue.mark_sent(item.id, claimed_at=item.processing_since):
            logger.warning("outbound_sent_without_claim", item_id=item.id,
                           tenant_id=item.tenant_id)
        summary.sent += 1
        try:
            await self.store.increment_usage(item.tenant_id, self._now())
        except Exception as e:
            logger.error("usage_increment_failed", tenant_id=item.tenant_id,
                         item_id=item.id, error=str(e))


# ──────────────────────────────────────────────────────────────
#  Periodic sweep runner
# ──────────────────────────────────────────────────────────────

class SweepRunner:
    """
    Background task that runs Dispatcher.sweep() on a fixed period.
    Redundant runners in other processes are safe.
    """

    def __init__(self, dispatcher: Dispatcher, interval_seconds: int = 60):
        self.dispatcher = dispatcher
        self.interval = interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start_background(self) -> asyncio.Task:
        self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self):
        logger.info("sweep_runner_started", interval=self.interval)
        while True:
            try:
                await self.dispatcher.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("sweep_runner_error", error=str(e))
            await asyncio.sleep(self.interval)
