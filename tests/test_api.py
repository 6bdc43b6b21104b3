"""
Tests for the HTTP surface: health, cron-triggered sweep, inbound events,
tenant upserts and the failed-queue view.

The lifespan is not entered, so no background sweeper runs.
"""
import uuid
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

import api.main as main
from config.settings import get_settings


@pytest.fixture
def client():
    return TestClient(main.app)


@pytest.fixture(autouse=True)
def fake_delivery(monkeypatch):
    """Keep every send in-process."""
    sender = AsyncMock()
    sender.send.return_value = {"status": "sent", "message_id": "mid.api"}
    monkeypatch.setattr(main.decision_engine, "sender", sender)
    monkeypatch.setattr(main.dispatcher, "sender", sender)
    return sender


@pytest.fixture
def cron_secret(monkeypatch):
    monkeypatch.setattr(get_settings(), "cron_secret", "s3cret")
    return "s3cret"


@pytest.fixture
def tenant_id(client):
    tid = f"T_{uuid.uuid4().hex[:8]}"
    resp = client.put(f"/api/v1/tenants/{tid}", json={
        "id": tid, "plan": "GROWTH", "shop_domain": "demo-shop.myshopify.com",
        "credentials": {"ig_business_id": "1784", "page_access_token": "EAAG"},
    })
    assert resp.status_code == 200
    return tid


class TestHealth:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "healthy"
        assert data["store_backend"] == "InMemoryDispatchStore"
        assert data["sweeper_running"] is False


class TestCronDispatch:
    def test_rejects_wrong_secret(self, client, cron_secret):
        assert client.post("/cron/dispatch", params={"secret": "nope"}).status_code == 401

    def test_rejects_when_secret_unset(self, client, monkeypatch):
        monkeypatch.setattr(get_settings(), "cron_secret", "")
        assert client.post("/cron/dispatch", params={"secret": ""}).status_code == 401

    def test_runs_sweep(self, client, cron_secret):
        resp = client.post("/cron/dispatch", params={"secret": cron_secret})

        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert set(body["result"]) == {"processed", "sent", "failed", "deferred",
                                       "retried", "recovered"}


class TestTenants:
    def test_get_hides_credentials(self, client, tenant_id):
        resp = client.get(f"/api/v1/tenants/{tenant_id}")
        assert resp.status_code == 200
        assert resp.json()["plan"] == "GROWTH"
        assert "credentials" not in resp.json()

    def test_get_missing(self, client):
        assert client.get("/api/v1/tenants/does-not-exist").status_code == 404

    def test_settings_toggle_applies(self, client, tenant_id):
        resp = client.put(f"/api/v1/tenants/{tenant_id}/settings",
                          json={"tenant_id": tenant_id, "dm_automation_enabled": False})
        assert resp.status_code == 200

        data = client.post("/api/v1/events", json={
            "id": f"evt_{uuid.uuid4().hex[:8]}", "tenant_id": tenant_id,
            "sender_id": "igsid_1", "text": "hours?", "ai_intent": "store_question",
        }).json()
        assert data["reason"] == "DM automation disabled"

    def test_id_mismatch(self, client):
        resp = client.put("/api/v1/tenants/A", json={"id": "B"})
        assert resp.status_code == 400

    def test_mapping_key_mismatch(self, client, tenant_id):
        resp = client.put(f"/api/v1/tenants/{tenant_id}/mappings/m1",
                          json={"tenant_id": tenant_id, "media_id": "m2", "product_id": "P1"})
        assert resp.status_code == 400


class TestInboundEvents:
    def test_store_question_sent_immediately(self, client, tenant_id, fake_delivery):
        resp = client.post("/api/v1/events", json={
            "id": f"evt_{uuid.uuid4().hex[:8]}", "tenant_id": tenant_id,
            "channel": "dm", "sender_id": "igsid_1", "text": "do you ship to canada?",
            "ai_intent": "store_question",
        })

        assert resp.status_code == 200
        data = resp.json()
        assert data["sent"] is True
        assert data["delivery"] == "immediate"
        fake_delivery.send.assert_awaited_once()

    def test_duplicate_event(self, client, tenant_id):
        event = {
            "id": f"evt_{uuid.uuid4().hex[:8]}", "tenant_id": tenant_id,
            "channel": "dm", "sender_id": "igsid_1", "text": "hours?",
            "ai_intent": "store_question",
        }
        client.post("/api/v1/events", json=event)
        data = client.post("/api/v1/events", json=event).json()

        assert data["sent"] is False
        assert data["reason"] == "Already replied to this message"

    def test_comment_with_mapping(self, client, tenant_id, fake_delivery):
        client.put(f"/api/v1/tenants/{tenant_id}/mappings/media_9", json={
            "tenant_id": tenant_id, "media_id": "media_9",
            "product_id": "P1", "product_handle": "blue-shirt",
        })
        comment_id = uuid.uuid4().hex[:10]

        data = client.post("/api/v1/events", json={
            "id": f"row_{comment_id}", "tenant_id": tenant_id, "external_id": comment_id,
            "channel": "comment", "sender_id": "igsid_2", "text": "price?",
            "media_id": "media_9", "ai_intent": "price_request", "ai_confidence": 0.9,
        }).json()

        assert data["sent"] is True
        assert data["event_key"] == f"comment_reply:{comment_id}"
        assert "/products/blue-shirt" in fake_delivery.send.await_args.args[2]

    def test_invalid_body(self, client):
        assert client.post("/api/v1/events", json={"text": "no ids"}).status_code == 422


class TestFailedQueue:
    def test_lists_failed_items(self, client, tenant_id, fake_delivery):
        from channels.base import FatalDeliveryError
        fake_delivery.send.side_effect = FatalDeliveryError("(#10) not allowed", code=10)

        client.post("/api/v1/events", json={
            "id": f"evt_{uuid.uuid4().hex[:8]}", "tenant_id": tenant_id,
            "channel": "dm", "sender_id": "igsid_3", "text": "returns?",
            "ai_intent": "store_question",
        })
        resp = client.get(f"/api/v1/tenants/{tenant_id}/queue/failed")

        assert resp.status_code == 200
        data = resp.json()
        assert data["count"] == 1
        assert data["items"][0]["attempts"] == 3
        assert "not allowed" in data["items"][0]["last_error"]
