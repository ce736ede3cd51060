"""Tests for the FastAPI webhook receiver and flow endpoints."""
import asyncio
import hashlib
import hmac
import json
import pytest

from fastapi.testclient import TestClient

from api.main import create_app
from config.settings import Settings, WhatsAppConfig
from database.store_memory import InMemoryFlowStore
from models.schemas import SessionStatus

from conftest import PHONE, RecordingGateway, conn, install_flow, make_flow, make_node


def menu_nodes():
    return [
        make_node("welcome", "button", {
            "label": "Welcome! Pick one", "buttons": [{"text": "Sales"}, {"text": "Support"}],
        }, [conn("sales", index=0), conn("support", index=1)]),
        make_node("sales", "message", {"label": "Sales will call you"}),
        make_node("support", "handoff", {"message": "Connecting you to support"}),
    ]


def inbound_text(text: str, phone: str = "919876543210") -> dict:
    return {"object": "whatsapp_business_account", "entry": [{"changes": [{"value": {
        "messages": [{"from": phone, "id": "wamid.in1", "type": "text", "text": {"body": text}}],
    }}]}]}


@pytest.fixture
def api_store():
    store = InMemoryFlowStore()
    asyncio.run(install_flow(store, make_flow("welcome", keyword="hi"), menu_nodes()))
    return store


@pytest.fixture
def api_gateway():
    return RecordingGateway()


def make_client(store, gateway, **whatsapp) -> TestClient:
    settings = Settings(whatsapp=WhatsAppConfig(verify_token="verify-me", **whatsapp))
    return TestClient(create_app(settings=settings, store=store, gateway=gateway))


class TestHealth:
    def test_health(self, api_store, api_gateway):
        with make_client(api_store, api_gateway) as client:
            resp = client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["store"] == "InMemoryFlowStore"
        assert body["gateway"]["channel"] == "whatsapp"


class TestWebhookVerification:
    def test_challenge_echoed(self, api_store, api_gateway):
        with make_client(api_store, api_gateway) as client:
            resp = client.get("/webhooks/whatsapp", params={
                "hub.mode": "subscribe", "hub.verify_token": "verify-me", "hub.challenge": "12345",
            })
        assert resp.status_code == 200
        assert resp.text == "12345"

    def test_wrong_token_forbidden(self, api_store, api_gateway):
        with make_client(api_store, api_gateway) as client:
            resp = client.get("/webhooks/whatsapp", params={
                "hub.mode": "subscribe", "hub.verify_token": "wrong", "hub.challenge": "12345",
            })
        assert resp.status_code == 403


class TestInboundWebhook:
    def test_keyword_starts_flow(self, api_store, api_gateway):
        with make_client(api_store, api_gateway) as client:
            resp = client.post("/webhooks/whatsapp", json=inbound_text("Hi"))

        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}
        assert api_gateway.bodies == ["Welcome! Pick one"]
        session = asyncio.run(api_store.get_active_session("919876543210"))
        assert session.current_node_id == "welcome"

    def test_malformed_body_still_acknowledged(self, api_store, api_gateway):
        with make_client(api_store, api_gateway) as client:
            resp = client.post("/webhooks/whatsapp", content=b"not json",
                               headers={"Content-Type": "application/json"})
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}

    def test_internal_failure_still_acknowledged(self, api_store, api_gateway, monkeypatch):
        async def broken(phone_number):
            raise RuntimeError("db down")

        monkeypatch.setattr(api_store, "get_active_session", broken)
        with make_client(api_store, api_gateway) as client:
            resp = client.post("/webhooks/whatsapp", json=inbound_text("Hi"))
        assert resp.status_code == 200
        errors = asyncio.run(api_store.get_error_logs())
        assert errors[0].context == "handleIncomingEvent"

    def test_signature_checked_when_secret_configured(self, api_store, api_gateway):
        body = json.dumps(inbound_text("Hi")).encode()
        digest = hmac.new(b"app-secret", body, hashlib.sha256).hexdigest()

        with make_client(api_store, api_gateway, app_secret="app-secret") as client:
            rejected = client.post("/webhooks/whatsapp", content=body,
                                   headers={"X-Hub-Signature-256": "sha256=bad"})
            accepted = client.post("/webhooks/whatsapp", content=body,
                                   headers={"X-Hub-Signature-256": f"sha256={digest}"})

        assert rejected.status_code == 403
        assert accepted.status_code == 200
        assert api_gateway.bodies == ["Welcome! Pick one"]

    def test_inbound_messages_marked_read(self, api_store, api_gateway):
        statuses = {"object": "whatsapp_business_account", "entry": [{"changes": [{"value": {
            "statuses": [{"id": "wamid.out1", "status": "delivered", "recipient_id": "919876543210"}],
        }}]}]}
        with make_client(api_store, api_gateway) as client:
            client.post("/webhooks/whatsapp", json=inbound_text("Hi"))
            client.post("/webhooks/whatsapp", json=statuses)
        assert api_gateway.read == ["wamid.in1"]

    def test_read_receipt_failure_does_not_block_routing(self, api_store):
        gateway = RecordingGateway(fail_read=True)
        with make_client(api_store, gateway) as client:
            resp = client.post("/webhooks/whatsapp", json=inbound_text("Hi"))
        assert resp.json() == {"status": "ok"}
        assert gateway.read == []
        assert gateway.bodies == ["Welcome! Pick one"]


class TestFlowEndpoints:
    def test_direct_start(self, api_store, api_gateway):
        with make_client(api_store, api_gateway) as client:
            resp = client.post("/api/v1/flows/flow-1/start",
                               json={"phone_number": PHONE, "context": {"source": "campaign"}})
        assert resp.status_code == 200
        session = resp.json()["session"]
        assert session["status"] == "active"
        assert session["current_node_id"] == "welcome"
        assert session["context"] == {"source": "campaign"}

    def test_direct_start_refused(self, api_store, api_gateway):
        with make_client(api_store, api_gateway) as client:
            client.post("/api/v1/flows/flow-1/start", json={"phone_number": PHONE})
            again = client.post("/api/v1/flows/flow-1/start", json={"phone_number": PHONE})
            missing = client.post("/api/v1/flows/nope/start", json={"phone_number": "+15550001111"})
        assert again.status_code == 409
        assert missing.status_code == 409

    def test_test_webhook_walks_flow(self, api_store, api_gateway):
        with make_client(api_store, api_gateway) as client:
            first = client.post("/api/v1/webhooks/test", json={"phoneNumber": PHONE, "text": "hi"})
            second = client.post("/api/v1/webhooks/test", json={
                "phoneNumber": PHONE, "type": "button", "buttonId": "welcome_btn_1",
            })

        assert first.json()["session"]["current_node_id"] == "welcome"
        assert first.json()["last_message"]["content"]["body"] == "Welcome! Pick one"

        body = second.json()
        assert body["success"] is True
        assert body["event"]["type"] == "button_reply"
        assert body["session"] is None
        assert body["last_message"]["content"]["body"] == "Connecting you to support"
        sessions = list(api_store._sessions.values())
        assert sessions[0].status == SessionStatus.PAUSED
