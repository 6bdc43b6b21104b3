"""
Reply Claims — at most one automated reply per inbound event.

A claim is a single insert guarded by the (tenant_id, event_key) unique
constraint. Whoever creates the row wins and must send; everyone else
backs off. There is no existence check before the insert and no lock.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta
from typing import Callable, Optional

from database.store_base import DispatchStore
from models.schemas import (
    Channel, InboundEvent, ProductReference, ReplyClaim, ReplyKind, utcnow,
)

logger = structlog.get_logger()

COMMENT_KEY_PREFIX = "comment_reply:"


def event_key_for(event: InboundEvent) -> str:
    """Stable claim key for an inbound event.

    Comments key on the upstream comment id so every internal row that
    refers to the same comment collapses onto one claim.
    """
    if event.channel == Channel.COMMENT and event.external_id:
        return f"{COMMENT_KEY_PREFIX}{event.external_id}"
    return event.id


class ReplyClaimStore:

    def __init__(self, store: DispatchStore, now_fn: Callable[[], datetime] = utcnow):
        self.store = store
        self._now = now_fn

    async def claim(self, tenant_id: str, event_key: str, reply_text: str, **attrs) -> bool:
        """True only for the caller that created the claim.

        Storage errors return False: when in doubt, do not send.
        """
        claim = ReplyClaim(
            tenant_id=tenant_id,
            event_key=event_key,
            reply_text=reply_text,
            created_at=self._now(),
            **attrs,
        )
        try:
            won = await self.store.insert_claim(claim)
        except Exception as e:
            logger.error("reply_claim_storage_error",
                         tenant_id=tenant_id, event_key=event_key, error=str(e))
            return False

        if not won:
            logger.info("reply_claim_lost", tenant_id=tenant_id, event_key=event_key)
        return won

    async def exists(self, tenant_id: str, event_key: str) -> bool:
        return await self.store.get_claim(tenant_id, event_key) is not None

    async def get(self, tenant_id: str, event_key: str) -> Optional[ReplyClaim]:
        return await self.store.get_claim(tenant_id, event_key)

    async def last_product_reference(
        self, tenant_id: str, sender_id: str, within: timedelta,
    ) -> Optional[ProductReference]:
        """The product most recently sent to this sender inside the window."""
        if not sender_id:
            return None
        claim = await self.store.latest_product_claim(tenant_id, sender_id, self._now() - within)
        if not claim:
            return None
        return ProductReference(
            product_id=claim.product_id,
            variant_id=claim.variant_id,
            source="conversation",
        )

    async def count_clarifying(self, tenant_id: str, sender_id: str, within: timedelta) -> int:
        if not sender_id:
            return 0
        return await self.store.count_claims(
            tenant_id, sender_id, self._now() - within, ReplyKind.CLARIFYING.value,
        )
