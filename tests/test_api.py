"""Integration tests for the webhook intake and operator API endpoints.

Uses in-memory stores, AsyncMock client doubles and an AsyncMock webhook
queue assigned to ``app.state``, and httpx AsyncClient over ASGITransport.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from src.syncbridge.events.bus import WebhookQueue
from src.syncbridge.main import create_app
from src.syncbridge.sync.integration import IntegrationFactory
from src.syncbridge.sync.schemas import (
    IntegrationMessage,
    MessageLevel,
    SubscriptionCategory,
    WebhookSubscription,
)
from src.syncbridge.sync.signatures import WebhookSource
from src.syncbridge.sync.store import InMemoryMappingStore

INTEGRATION_ID = "int-test"
WEBHOOK_PATH = f"/api/v1/integrations/{INTEGRATION_ID}/webhooks"
CRM_SECRET = "crm-secret"
CALL_KEY = "call-key"


def _crm_headers(body: bytes, secret: str = CRM_SECRET) -> dict[str, str]:
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return {"x-attio-signature": digest, "content-type": "application/json"}


def _telephony_headers(body: bytes, key: str = CALL_KEY, timestamp: str = "1700000000") -> dict[str, str]:
    digest = hmac.new(key.encode(), timestamp.encode() + body, hashlib.sha256).digest()
    signature = base64.b64encode(digest).decode()
    return {"openphone-signature": f"hmac;1;{timestamp};{signature}", "content-type": "application/json"}


@pytest.fixture
def queue() -> AsyncMock:
    mock = AsyncMock(spec=WebhookQueue)
    mock.publish.return_value = "1-0"
    return mock


@pytest.fixture
def factory(crm, telephony, config, config_store, settings) -> IntegrationFactory:
    config.subscriptions = {
        SubscriptionCategory.CRM_RECORDS: WebhookSubscription(id="crm-1", secret=CRM_SECRET, url="u"),
        SubscriptionCategory.CALLS: WebhookSubscription(id="WH-call", secret=CALL_KEY, url="u"),
    }
    return IntegrationFactory(
        settings,
        config_store,
        lambda _id: InMemoryMappingStore(),
        crm_factory=lambda: crm,
        telephony_factory=lambda: telephony,
    )


@pytest_asyncio.fixture
async def client(factory, queue):
    app = create_app()
    app.state.integration_factory = factory
    app.state.webhook_queue = queue
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


class TestWebhookIntake:
    async def test_crm_delivery_is_verified_and_queued(self, client, queue):
        body = json.dumps({"events": [{"event_type": "record.created"}]}).encode()

        response = await client.post(
            WEBHOOK_PATH, content=body, headers={**_crm_headers(body), "x-request-id": "req-1"}
        )

        assert response.status_code == 200
        assert response.json()["received"] is True
        assert response.headers["X-Request-ID"] == "req-1"
        stream, envelope = queue.publish.await_args.args
        assert stream == "webhooks"
        assert envelope.integration_id == INTEGRATION_ID
        assert envelope.source is WebhookSource.CRM
        assert envelope.event_type == "crm.records"
        assert envelope.headers["x-request-id"] == "req-1"
        assert response.json()["envelope_id"] == envelope.envelope_id

    async def test_telephony_delivery_uses_event_key(self, client, queue):
        body = json.dumps({"type": "call.completed", "data": {"object": {"id": "AC1"}}}).encode()

        response = await client.post(WEBHOOK_PATH, content=body, headers=_telephony_headers(body))

        assert response.status_code == 200
        envelope = queue.publish.await_args.args[1]
        assert envelope.source is WebhookSource.TELEPHONY
        assert envelope.event_type == "call.completed"

    async def test_telephony_event_without_key_rejected(self, client, queue):
        body = json.dumps({"type": "message.received", "data": {"object": {"id": "MS1"}}}).encode()
        response = await client.post(WEBHOOK_PATH, content=body, headers=_telephony_headers(body))
        assert response.status_code == 401
        queue.publish.assert_not_awaited()

    async def test_missing_signature(self, client, queue):
        response = await client.post(WEBHOOK_PATH, json={"events": []})
        assert response.status_code == 401
        queue.publish.assert_not_awaited()

    async def test_bad_signature(self, client, queue):
        body = json.dumps({"events": []}).encode()
        response = await client.post(WEBHOOK_PATH, content=body, headers=_crm_headers(body, "wrong"))
        assert response.status_code == 401
        queue.publish.assert_not_awaited()

    async def test_unknown_integration(self, client):
        body = b"{}"
        response = await client.post(
            "/api/v1/integrations/nope/webhooks", content=body, headers=_crm_headers(body)
        )
        assert response.status_code == 404

    @pytest.mark.parametrize("body", [b"not json", b"[1, 2]"])
    async def test_body_must_be_json_object(self, client, queue, body):
        response = await client.post(WEBHOOK_PATH, content=body, headers=_crm_headers(body))
        assert response.status_code == 400
        queue.publish.assert_not_awaited()

    async def test_uninitialized_engine_is_503(self):
        app = create_app()
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            response = await ac.post(WEBHOOK_PATH, json={})
        assert response.status_code == 503


class TestOperatorEndpoints:
    async def test_provision(self, client, crm, telephony):
        crm.create_webhook.return_value = {"data": {"id": {"webhook_id": "crm-2"}, "secret": "s"}}
        telephony.create_message_webhook.return_value = {"data": {"id": "WH-msg", "key": "k1"}}
        telephony.create_call_webhook.return_value = {"data": {"id": "WH-call-2", "key": "k2"}}
        telephony.create_call_summary_webhook.return_value = {"data": {"id": "WH-sum", "key": "k3"}}

        response = await client.post("/api/v1/integrations/fresh/provision")

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["crm"]["status"] == "configured"
        assert data["telephony"]["subscription_ids"]["messages"] == "WH-msg"

    async def test_teardown(self, client, crm, telephony):
        response = await client.delete(WEBHOOK_PATH)
        assert response.status_code == 200
        assert sorted(response.json()["deleted"]) == ["WH-call", "crm-1"]
        crm.delete_webhook.assert_awaited_once_with("crm-1")
        telephony.delete_webhook.assert_awaited_once_with("WH-call")

    async def test_teardown_unknown_integration(self, client):
        response = await client.delete("/api/v1/integrations/nope/webhooks")
        assert response.status_code == 404

    async def test_backfill(self, client, crm):
        crm.list_records.return_value = {"data": []}

        response = await client.post(
            f"/api/v1/integrations/{INTEGRATION_ID}/backfill", json={"cursor": 50}
        )

        assert response.status_code == 200
        assert response.json()[0]["object_type"] == "people"
        assert response.json()[0]["next"]["cursor"] is None
        crm.list_records.assert_awaited_once_with("people", {"limit": 50, "offset": 50})

    async def test_backfill_validates_pages(self, client):
        response = await client.post(
            f"/api/v1/integrations/{INTEGRATION_ID}/backfill", json={"max_pages": 0}
        )
        assert response.status_code == 422

    async def test_messages_filtered_by_level(self, client, config_store):
        await config_store.add_message(
            INTEGRATION_ID, IntegrationMessage(level=MessageLevel.ERRORS, title="E", message="e")
        )
        await config_store.add_message(
            INTEGRATION_ID, IntegrationMessage(level=MessageLevel.WARNINGS, title="W", message="w")
        )

        response = await client.get(f"/api/v1/integrations/{INTEGRATION_ID}/messages?level=warnings")

        assert response.status_code == 200
        assert [m["title"] for m in response.json()] == ["W"]

    async def test_messages_unknown_integration(self, client):
        response = await client.get("/api/v1/integrations/nope/messages")
        assert response.status_code == 404


class TestHealth:
    async def test_liveness(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"
