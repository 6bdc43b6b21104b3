"""
FastAPI Application — Dispatch core HTTP surface.

Provides:
- Cron-triggered dispatcher sweep (POST /cron/dispatch?secret=...)
- Inbound event evaluation for the webhook tier (POST /api/v1/events)
- Failed-queue view for operators
- Tenant / settings / product mapping upserts
- In-process periodic sweep runner (optional; cron and runner may coexist)
"""
from __future__ import annotations

import hmac
import structlog
from datetime import datetime, timezone
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Query

from automation import AutomationDecisionEngine, ReplyClaimStore, TemplateReplyGenerator
from channels.base import OutboundSender, StoreCredentialProvider
from channels.instagram_client import InstagramDeliveryClient
from config.settings import get_settings
from database.session import close_db, init_db
from database.store_factory import create_store
from job_queue import Dispatcher, OutboundQueue, RateLimiter, SweepRunner
from models.schemas import InboundEvent, ProductMapping, Tenant, TenantSettings

logger = structlog.get_logger()

# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

_settings_boot = get_settings()

store = create_store(_settings_boot.database)

rate_limiter = RateLimiter(store, max_per_minute=_settings_boot.dispatch.rate_limit_per_minute)
outbound_queue = OutboundQueue(
    store,
    max_attempts=_settings_boot.dispatch.max_attempts,
    backoff_base_seconds=_settings_boot.dispatch.backoff_base_seconds,
    stuck_timeout_seconds=_settings_boot.dispatch.stuck_timeout_seconds,
)
reply_claims = ReplyClaimStore(store)

delivery_client = InstagramDeliveryClient(_settings_boot.instagram)
sender = OutboundSender(delivery_client, StoreCredentialProvider(store))

dispatcher = Dispatcher(
    store, outbound_queue, rate_limiter, sender,
    batch_size=_settings_boot.dispatch.batch_size,
)
decision_engine = AutomationDecisionEngine(
    store, reply_claims, outbound_queue, rate_limiter, sender,
    generator=TemplateReplyGenerator(),
    config=_settings_boot.automation,
)
sweep_runner = SweepRunner(dispatcher, interval_seconds=_settings_boot.dispatch.sweep_interval_seconds)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()

    if settings.database.store_backend == "sql":
        await init_db()
    if settings.dispatch.run_sweeper:
        await sweep_runner.start_background()

    logger.info("dispatch_core_started",
                store_backend=settings.database.store_backend,
                sweeper=settings.dispatch.run_sweeper)
    yield

    await sweep_runner.stop()
    await delivery_client.close()
    if settings.database.store_backend == "sql":
        await close_db()
    logger.info("dispatch_core_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="AutoReply Dispatch API",
    description="Outbound automation dispatch core",
    version="1.0.0",
    lifespan=lifespan,
)


def _check_cron_secret(secret: str) -> None:
    expected = get_settings().cron_secret
    if not expected or not hmac.compare_digest(secret.encode(), expected.encode()):
        raise HTTPException(401, "Unauthorized")


# ══════════════════════════════════════════════════════════════
#  HEALTH
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "store_backend": type(store).__name__,
        "sweeper_running": sweep_runner.running,
    }


# ══════════════════════════════════════════════════════════════
#  DISPATCH
# ══════════════════════════════════════════════════════════════

@app.post("/cron/dispatch")
async def cron_dispatch(secret: str = Query("")):
    _check_cron_secret(secret)
    summary = await dispatcher.sweep()
    return {"success": True, "result": summary.model_dump()}


@app.get("/api/v1/tenants/{tenant_id}/queue/failed")
async def list_failed_items(tenant_id: str, limit: int = Query(100, ge=1, le=500)):
    items = await outbound_queue.list_failed(tenant_id, limit=limit)
    return {
        "tenant_id": tenant_id,
        "count": len(items),
        "items": [
            item.model_dump(mode="json", include={
                "id", "recipient", "recipient_type", "text", "attempts",
                "last_error", "created_at", "updated_at",
            })
            for item in items
        ],
    }


# ══════════════════════════════════════════════════════════════
#  INBOUND EVENTS
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/events")
async def receive_inbound_event(event: InboundEvent):
    result = await decision_engine.handle_event(event)
    return result.model_dump()


# ══════════════════════════════════════════════════════════════
#  TENANTS
# ══════════════════════════════════════════════════════════════

@app.put("/api/v1/tenants/{tenant_id}")
async def upsert_tenant(tenant_id: str, tenant: Tenant):
    if tenant.id != tenant_id:
        raise HTTPException(400, "Tenant id mismatch")
    await store.upsert_tenant(tenant)
    return tenant.model_dump(exclude={"credentials"})


@app.get("/api/v1/tenants/{tenant_id}")
async def get_tenant(tenant_id: str):
    tenant = await store.get_tenant(tenant_id)
    if not tenant:
        raise HTTPException(404, "Tenant not found")
    return tenant.model_dump(exclude={"credentials"})


@app.put("/api/v1/tenants/{tenant_id}/settings")
async def upsert_tenant_settings(tenant_id: str, settings: TenantSettings):
    if settings.tenant_id != tenant_id:
        raise HTTPException(400, "Tenant id mismatch")
    await store.upsert_settings(settings)
    return settings.model_dump()


@app.put("/api/v1/tenants/{tenant_id}/mappings/{media_id}")
async def upsert_product_mapping(tenant_id: str, media_id: str, mapping: ProductMapping):
    if mapping.tenant_id != tenant_id or mapping.media_id != media_id:
        raise HTTPException(400, "Mapping key mismatch")
    await store.upsert_product_mapping(mapping)
    return mapping.model_dump()


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
