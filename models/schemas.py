"""
Core data models for the dispatch core.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def month_key(ts: datetime) -> str:
    """UTC calendar month bucket used for usage accounting, e.g. '2026-10'."""
    return ts.astimezone(timezone.utc).strftime("%Y-%m")


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class Channel(str, Enum):
    DM = "dm"
    COMMENT = "comment"


class RecipientType(str, Enum):
    USER = "user"          # direct message to an account id
    COMMENT = "comment"    # private reply addressed to a comment id


class QueueStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"


class ReplyKind(str, Enum):
    ANSWER = "answer"
    CLARIFYING = "clarifying"


class Intent(str, Enum):
    PURCHASE = "purchase"
    PRODUCT_QUESTION = "product_question"
    VARIANT_INQUIRY = "variant_inquiry"
    PRICE_REQUEST = "price_request"
    STORE_QUESTION = "store_question"


PRODUCT_INTENTS = frozenset({
    Intent.PURCHASE.value,
    Intent.PRODUCT_QUESTION.value,
    Intent.VARIANT_INQUIRY.value,
    Intent.PRICE_REQUEST.value,
})

DM_ELIGIBLE_INTENTS = PRODUCT_INTENTS | {Intent.STORE_QUESTION.value}
COMMENT_ELIGIBLE_INTENTS = PRODUCT_INTENTS


# ──────────────────────────────────────────────────────────────
#  Tenant — an independent customer account
# ──────────────────────────────────────────────────────────────

class Tenant(BaseModel):
    id: str
    plan: str = "FREE"
    monthly_cap: Optional[int] = None         # overrides the plan cap when set
    usage_count: int = 0
    usage_month: str = ""                     # "YYYY-MM"; stale month means zero usage
    shop_domain: str = ""
    brand_tone: str = "friendly"
    active: bool = True
    credentials: dict[str, Any] = {}

    def usage_for(self, now: datetime) -> int:
        """Usage in the month containing `now`; a stale month counts as zero."""
        return self.usage_count if self.usage_month == month_key(now) else 0


class TenantSettings(BaseModel):
    tenant_id: str
    dm_automation_enabled: bool = True
    comment_automation_enabled: bool = True
    followup_enabled: bool = False


class ProductReference(BaseModel):
    """A product the conversation is about, or a homepage fallback."""
    product_id: Optional[str] = None
    variant_id: Optional[str] = None
    product_handle: Optional[str] = None
    url: Optional[str] = None
    source: str = ""                          # "mapping" | "conversation" | "homepage"


class ProductMapping(BaseModel):
    tenant_id: str
    media_id: str
    product_id: str
    variant_id: Optional[str] = None
    product_handle: Optional[str] = None


# ──────────────────────────────────────────────────────────────
#  Inbound events
# ──────────────────────────────────────────────────────────────

class Classification(BaseModel):
    intent: Optional[str] = None
    confidence: Optional[float] = None
    sentiment: Optional[str] = None


class InboundEvent(BaseModel):
    """One received message or comment. Only the AI fields change after recording."""
    id: str
    tenant_id: str
    external_id: str = ""
    channel: Channel = Channel.DM
    sender_id: str = ""
    text: str = ""
    media_id: Optional[str] = None            # comments: the post being commented on
    prior_message_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    ai_intent: Optional[str] = None
    ai_confidence: Optional[float] = None
    ai_sentiment: Optional[str] = None

    @field_validator("created_at", "prior_message_at")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def with_classification(self, result: Classification) -> InboundEvent:
        return self.model_copy(update={
            "ai_intent": result.intent,
            "ai_confidence": result.confidence,
            "ai_sentiment": result.sentiment,
        })


# ──────────────────────────────────────────────────────────────
#  Claims and queue
# ──────────────────────────────────────────────────────────────

class ReplyClaim(BaseModel):
    tenant_id: str
    event_key: str
    reply_text: str
    event_id: Optional[str] = None
    sender_id: str = ""
    channel: Channel = Channel.DM
    reply_kind: ReplyKind = ReplyKind.ANSWER
    product_id: Optional[str] = None
    variant_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class OutboundQueueItem(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    tenant_id: str
    recipient: str
    recipient_type: RecipientType = RecipientType.USER
    text: str
    status: QueueStatus = QueueStatus.PENDING
    attempts: int = 0
    not_before: datetime = Field(default_factory=utcnow)
    processing_since: Optional[datetime] = None
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ──────────────────────────────────────────────────────────────
#  Results
# ──────────────────────────────────────────────────────────────

class SweepSummary(BaseModel):
    """Outcome of one dispatcher sweep, suitable for logs or a metrics sink."""
    processed: int = 0
    sent: int = 0
    failed: int = 0
    deferred: int = 0
    retried: int = 0
    recovered: int = 0


class AutomationResult(BaseModel):
    sent: bool
    reason: Optional[str] = None
    detail: Optional[str] = None
    claimed: bool = False
    delivery: Optional[str] = None            # "immediate" | "queued" | "failed"
    event_key: Optional[str] = None
    item_id: Optional[str] = None
