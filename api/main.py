"""
FastAPI Application — WhatsApp webhook receiver for the flow engine.

Provides:
- WhatsApp webhook verification and inbound event delivery
- Direct (manual / campaign) flow start
- Test webhook that simulates a normalized event and returns the session
- Health and gateway diagnostics

The engine is assembled per app inside the lifespan hook and kept on
app.state; create_app() accepts a store and gateway so tests can inject fakes.
"""
from __future__ import annotations

import json
import structlog
from datetime import datetime, timezone
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from channels.base import MessageGateway
from channels.whatsapp_adapter import (
    WhatsAppGateway, parse_webhook, verify_signature, verify_webhook,
)
from config.settings import Settings, get_settings
from core.executor import NodeExecutor
from core.http_actions import HttpActions
from core.router import EventRouter
from core.sessions import SessionManager
from database.session import close_db, init_db
from database.store import SqlFlowStore
from database.store_base import BaseFlowStore
from database.store_factory import create_store
from models.schemas import EventType, InboundEvent, Session

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Request/Response Models
# ──────────────────────────────────────────────────────────────

class StartFlowRequest(BaseModel):
    phone_number: str
    context: dict[str, Any] = {}


class TestWebhookRequest(BaseModel):
    phone_number: str = Field(alias="phoneNumber")
    type: str = "text"                           # text | button | list
    text: Optional[str] = None
    button_id: Optional[str] = Field(default=None, alias="buttonId")
    list_id: Optional[str] = Field(default=None, alias="listId")

    model_config = {"populate_by_name": True}


def _session_summary(session: Optional[Session]) -> Optional[dict[str, Any]]:
    if session is None:
        return None
    return {
        "id": session.id,
        "flow_id": session.flow_id,
        "current_node_id": session.current_node_id,
        "status": session.status.value,
        "context": session.context,
    }


def _test_event(req: TestWebhookRequest) -> InboundEvent:
    message_id = f"test_{int(datetime.now(timezone.utc).timestamp() * 1000)}"
    if req.type in ("button", "button_reply"):
        return InboundEvent(type=EventType.BUTTON_REPLY, phone_number=req.phone_number,
                            message_id=message_id, payload=req.button_id or "test_btn_0",
                            text=req.text or "Button clicked")
    if req.type in ("list", "list_reply"):
        return InboundEvent(type=EventType.LIST_REPLY, phone_number=req.phone_number,
                            message_id=message_id, payload=req.list_id or "test_list_0",
                            text=req.text or "List item selected")
    return InboundEvent(type=EventType.MESSAGE, phone_number=req.phone_number,
                        message_id=message_id, text=req.text or "test")


# ──────────────────────────────────────────────────────────────
#  App factory
# ──────────────────────────────────────────────────────────────

def create_app(
    settings: Settings = None,
    store: BaseFlowStore = None,
    gateway: MessageGateway = None,
) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = settings or get_settings()
        flow_store = store or create_store({"store_backend": cfg.database.store_backend})
        if isinstance(flow_store, SqlFlowStore) and store is None:
            await init_db()

        message_gateway = gateway or WhatsAppGateway(cfg.whatsapp)
        http = HttpActions(cfg.engine)
        executor = NodeExecutor(flow_store, message_gateway, http, cfg.engine)
        sessions = SessionManager(flow_store, executor, cfg.engine)

        app.state.settings = cfg
        app.state.store = flow_store
        app.state.gateway = message_gateway
        app.state.http = http
        app.state.sessions = sessions
        app.state.router = EventRouter(flow_store, sessions)

        logger.info("flowbot_started", app_name=cfg.app_name,
                    store=type(flow_store).__name__,
                    gateway=type(message_gateway).__name__,
                    test_mode=message_gateway.test_mode)
        yield

        await http.aclose()
        await message_gateway.shutdown()
        if isinstance(flow_store, SqlFlowStore) and store is None:
            await close_db()
        logger.info("flowbot_stopped")

    app = FastAPI(
        title="FlowBot API",
        description="WhatsApp chatbot flow execution engine",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ══════════════════════════════════════════════════════════
    #  HEALTH & DIAGNOSTICS
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health(request: Request):
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "store": type(request.app.state.store).__name__,
            "gateway": await request.app.state.gateway.health_check(),
            "pending_webhooks": request.app.state.http.pending,
        }

    # ══════════════════════════════════════════════════════════
    #  WEBHOOKS — WhatsApp
    # ══════════════════════════════════════════════════════════

    @app.get("/webhooks/whatsapp")
    async def whatsapp_verify(request: Request):
        params = dict(request.query_params)
        challenge = verify_webhook(params, request.app.state.settings.whatsapp.verify_token)
        if challenge is not None:
            logger.info("whatsapp_webhook_verified")
            return PlainTextResponse(challenge)
        logger.warning("whatsapp_webhook_verification_failed", mode=params.get("hub.mode"))
        raise HTTPException(403, "Verification failed")

    @app.post("/webhooks/whatsapp")
    async def whatsapp_webhook(request: Request):
        """Receive WhatsApp events. Acknowledges with 200 regardless of processing outcome."""
        body_bytes = await request.body()

        # Verify webhook signature if app_secret is configured
        signature = request.headers.get("X-Hub-Signature-256", "")
        if not verify_signature(body_bytes, signature, request.app.state.settings.whatsapp.app_secret):
            logger.warning("whatsapp_webhook_signature_invalid")
            raise HTTPException(403, "Invalid signature")

        try:
            events = parse_webhook(json.loads(body_bytes or b"{}"))
        except (ValueError, TypeError, AttributeError) as e:
            logger.error("whatsapp_webhook_unparseable", error=str(e))
            return {"status": "ok"}

        router: EventRouter = request.app.state.router
        gateway: MessageGateway = request.app.state.gateway
        for event in events:
            if event.type != EventType.STATUS and event.message_id:
                try:
                    await gateway.mark_read(event.message_id)
                except Exception as e:
                    logger.warning("mark_read_failed", message_id=event.message_id, error=str(e))
            await router.handle_incoming_event(event)
        return {"status": "ok"}

    # ══════════════════════════════════════════════════════════
    #  FLOWS
    # ══════════════════════════════════════════════════════════

    @app.post("/api/v1/flows/{flow_id}/start")
    async def start_flow(flow_id: str, req: StartFlowRequest, request: Request):
        session = await request.app.state.router.start_flow(req.phone_number, flow_id, req.context)
        if session is None:
            raise HTTPException(409, "Flow could not be started")
        return {"session": _session_summary(session)}

    @app.post("/api/v1/webhooks/test")
    async def test_webhook(req: TestWebhookRequest, request: Request):
        """Simulate a normalized inbound event for local flow testing."""
        event = _test_event(req)
        await request.app.state.router.handle_incoming_event(event)

        session = await request.app.state.sessions.get_session(req.phone_number)
        logs = await request.app.state.store.get_message_logs(req.phone_number, limit=1)
        return {
            "success": True,
            "event": event.model_dump(mode="json", by_alias=True),
            "session": _session_summary(session),
            "last_message": logs[-1].model_dump(mode="json") if logs else None,
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("api.main:app", host="0.0.0.0", port=8000, reload=get_settings().debug)
