"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB for tenant credentials.
  - Uniqueness is enforced by the database, never by a read-then-write:
      reply_claims       (tenant_id, event_key)
      rate_limit_windows (tenant_id, window_start)
  - String primary keys (uuid hex) — no database-specific sequences.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    Boolean, String, Integer, DateTime, Text, Index, JSON, UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


# ──────────────────────────────────────────────────────────────
#  Tenants
# ──────────────────────────────────────────────────────────────

class TenantRow(Base):
    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    plan: Mapped[str] = mapped_column(String(32), default="FREE")
    monthly_cap: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    usage_count: Mapped[int] = mapped_column(Integer, default=0)
    usage_month: Mapped[str] = mapped_column(String(7), default="")
    shop_domain: Mapped[str] = mapped_column(String(256), default="")
    brand_tone: Mapped[str] = mapped_column(String(32), default="friendly")
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    credentials: Mapped[Any] = mapped_column(JSON, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class TenantSettingsRow(Base):
    __tablename__ = "tenant_settings"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    dm_automation_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    comment_automation_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    followup_enabled: Mapped[bool] = mapped_column(Boolean, default=False)


class ProductMappingRow(Base):
    __tablename__ = "product_mappings"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    media_id: Mapped[str] = mapped_column(String(128), nullable=False)
    product_id: Mapped[str] = mapped_column(String(128), nullable=False)
    variant_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    product_handle: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)

    __table_args__ = (
        UniqueConstraint("tenant_id", "media_id", name="uq_product_mappings_tenant_media"),
    )


# ──────────────────────────────────────────────────────────────
#  Reply claims: one permanent row per replied-to event
# ──────────────────────────────────────────────────────────────

class ReplyClaimRow(Base):
    __tablename__ = "reply_claims"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_key: Mapped[str] = mapped_column(String(256), nullable=False)
    event_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    sender_id: Mapped[str] = mapped_column(String(128), default="")
    channel: Mapped[str] = mapped_column(String(16), default="dm")
    reply_kind: Mapped[str] = mapped_column(String(16), default="answer")
    reply_text: Mapped[str] = mapped_column(Text, default="")
    product_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    variant_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "event_key", name="uq_reply_claims_tenant_event"),
        Index("ix_reply_claims_sender", "tenant_id", "sender_id", "created_at"),
    )


# ──────────────────────────────────────────────────────────────
#  Outbound queue
# ──────────────────────────────────────────────────────────────

class OutboundQueueRow(Base):
    __tablename__ = "outbound_queue"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    recipient: Mapped[str] = mapped_column(String(128), nullable=False)
    recipient_type: Mapped[str] = mapped_column(String(16), default="user")
    text: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="pending")
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    not_before: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    processing_since: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_outbound_queue_due", "status", "not_before"),
        Index("ix_outbound_queue_tenant_status", "tenant_id", "status"),
    )


# ──────────────────────────────────────────────────────────────
#  Rate limit windows
# ──────────────────────────────────────────────────────────────

class RateLimitWindowRow(Base):
    __tablename__ = "rate_limit_windows"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    count: Mapped[int] = mapped_column(Integer, default=0)

    __table_args__ = (
        UniqueConstraint("tenant_id", "window_start", name="uq_rate_limit_windows_tenant_window"),
        Index("ix_rate_limit_windows_start", "window_start"),
    )
