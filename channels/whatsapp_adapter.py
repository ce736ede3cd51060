"""
WhatsApp Gateway — WhatsApp Business Cloud API integration.

Provides:
- Outbound: text, interactive button (max 3) and interactive list (max 10 rows)
- Test mode when no credentials are configured (payload logged, nothing sent)
- Phone number normalization
- Webhook verification (hub.verify_token challenge)
- X-Hub-Signature-256 payload signature check
- Inbound: Cloud API webhook payload → normalized InboundEvent list
"""
from __future__ import annotations

import hashlib
import hmac
import re
import structlog
from typing import Any, Optional

import httpx
from tenacity import (
    retry, retry_if_exception, stop_after_attempt, wait_exponential,
)

from channels.base import ChannelError, MessageGateway
from config.settings import WhatsAppConfig, get_settings
from models.schemas import EventType, InboundEvent, MessageKind, OutboundMessage

logger = structlog.get_logger()

MAX_BUTTONS = 3
MAX_LIST_ROWS = 10
BUTTON_TITLE_MAX = 20
ROW_TITLE_MAX = 24
ROW_DESCRIPTION_MAX = 72


def normalize_phone(phone: str) -> str:
    """Normalize phone to digits only, stripping +, spaces, dashes."""
    return re.sub(r"[^\d]", "", phone or "")


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    return isinstance(exc, ChannelError) and exc.retryable


# ══════════════════════════════════════════════════════════════
#  OUTBOUND PAYLOADS
# ══════════════════════════════════════════════════════════════

def build_payload(message: OutboundMessage) -> dict[str, Any]:
    """Format a message intent as a Cloud API /messages request body."""
    payload: dict[str, Any] = {
        "messaging_product": "whatsapp",
        "recipient_type": "individual",
        "to": normalize_phone(message.to),
    }

    if message.kind == MessageKind.INTERACTIVE_BUTTON:
        interactive: dict[str, Any] = {
            "type": "button",
            "body": {"text": message.body},
            "action": {
                "buttons": [
                    {"type": "reply", "reply": {"id": opt.id, "title": opt.title[:BUTTON_TITLE_MAX]}}
                    for opt in message.options[:MAX_BUTTONS]
                ],
            },
        }
        if message.header:
            interactive["header"] = {"type": "text", "text": message.header}
        if message.footer:
            interactive["footer"] = {"text": message.footer}
        payload["type"] = "interactive"
        payload["interactive"] = interactive

    elif message.kind == MessageKind.INTERACTIVE_LIST:
        interactive = {
            "type": "list",
            "body": {"text": message.body},
            "action": {
                "button": message.button_text or "Select",
                "sections": [{
                    "title": message.section_title or "Options",
                    "rows": [
                        {
                            "id": opt.id,
                            "title": opt.title[:ROW_TITLE_MAX],
                            "description": opt.description[:ROW_DESCRIPTION_MAX],
                        }
                        for opt in message.options[:MAX_LIST_ROWS]
                    ],
                }],
            },
        }
        if message.header:
            interactive["header"] = {"type": "text", "text": message.header}
        payload["type"] = "interactive"
        payload["interactive"] = interactive

    else:
        payload["type"] = "text"
        payload["text"] = {"body": message.body}

    return payload


# ══════════════════════════════════════════════════════════════
#  WHATSAPP GATEWAY
# ══════════════════════════════════════════════════════════════

class WhatsAppGateway(MessageGateway):
    """
    WhatsApp Business Cloud API gateway.

    Transport errors and 429/5xx responses are retried (tenacity); other
    4xx responses fail immediately. Without a phone number id and access
    token the gateway runs in test mode.
    """

    channel = "whatsapp"

    def __init__(self, config: WhatsAppConfig = None, client: httpx.AsyncClient = None):
        self.config = config or get_settings().whatsapp
        super().__init__(rate_per_second=self.config.rate_per_second, burst=self.config.burst)
        self._client: Optional[httpx.AsyncClient] = client
        if self.test_mode:
            logger.warning("whatsapp_test_mode", reason="missing phone_number_id or access_token")

    @property
    def test_mode(self) -> bool:
        return not self.config.has_credentials

    @property
    def messages_url(self) -> str:
        return (f"{self.config.base_url.rstrip('/')}/{self.config.api_version}"
                f"/{self.config.phone_number_id}/messages")

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.config.request_timeout, connect=10.0),
                headers={"Content-Type": "application/json"},
            )
        return self._client

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        retry=retry_if_exception(_is_retryable),
        reraise=True,
    )
    async def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        client = await self._get_client()
        resp = await client.post(
            self.messages_url,
            json=payload,
            headers={"Authorization": f"Bearer {self.config.access_token}"},
        )
        if resp.status_code >= 400:
            logger.error("whatsapp_api_error", status=resp.status_code, body=resp.text[:500])
            raise ChannelError(
                f"WhatsApp API returned {resp.status_code}",
                channel=self.channel,
                retryable=resp.status_code == 429 or resp.status_code >= 500,
            )
        return resp.json() if resp.content else {}

    async def _do_send(self, message: OutboundMessage) -> str:
        data = await self._post(build_payload(message))
        messages = data.get("messages") or [{}]
        return messages[0].get("id", "")

    async def mark_read(self, message_id: str) -> bool:
        """Single-attempt read receipt. Failures are logged, never raised."""
        if self.test_mode or not message_id:
            return False
        client = await self._get_client()
        try:
            resp = await client.post(
                self.messages_url,
                json={"messaging_product": "whatsapp", "status": "read", "message_id": message_id},
                headers={"Authorization": f"Bearer {self.config.access_token}"},
            )
        except httpx.HTTPError as e:
            logger.warning("whatsapp_mark_read_failed", message_id=message_id, error=str(e))
            return False
        if resp.status_code >= 400:
            logger.warning("whatsapp_mark_read_failed", message_id=message_id,
                           status=resp.status_code, body=resp.text[:200])
            return False
        return True

    async def shutdown(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None


# ══════════════════════════════════════════════════════════════
#  WEBHOOK VERIFICATION
# ══════════════════════════════════════════════════════════════

def verify_webhook(params: dict[str, Any], verify_token: str) -> Optional[str]:
    """
    Verify the WhatsApp webhook subscription.
    Returns the challenge string on success, None on failure.
    """
    mode = params.get("hub.mode", "")
    token = params.get("hub.verify_token", "")
    challenge = params.get("hub.challenge", "")

    if mode == "subscribe" and verify_token and hmac.compare_digest(token, verify_token):
        return challenge
    return None


def verify_signature(body: bytes, signature_header: Optional[str], app_secret: str) -> bool:
    """Check X-Hub-Signature-256. Always passes when no app secret is configured."""
    if not app_secret:
        return True
    if not signature_header or not signature_header.startswith("sha256="):
        return False
    expected = hmac.new(app_secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(signature_header[len("sha256="):], expected)


# ══════════════════════════════════════════════════════════════
#  INBOUND NORMALIZATION
# ══════════════════════════════════════════════════════════════

def _parse_message(msg: dict[str, Any]) -> Optional[InboundEvent]:
    sender = msg.get("from", "")
    msg_id = msg.get("id")
    msg_type = msg.get("type", "text")

    if msg_type == "text":
        return InboundEvent(type=EventType.MESSAGE, phone_number=sender, message_id=msg_id,
                            text=msg.get("text", {}).get("body", ""))

    if msg_type == "interactive":
        interactive = msg.get("interactive", {})
        itype = interactive.get("type", "")
        if itype in ("button_reply", "list_reply"):
            reply = interactive.get(itype, {})
            return InboundEvent(type=EventType(itype), phone_number=sender, message_id=msg_id,
                                payload=reply.get("id", ""), text=reply.get("title", ""))
        logger.info("webhook_interactive_ignored", interactive_type=itype)
        return None

    if msg_type == "button":
        # Template quick-reply buttons
        button = msg.get("button", {})
        return InboundEvent(type=EventType.BUTTON_REPLY, phone_number=sender, message_id=msg_id,
                            payload=button.get("payload", ""), text=button.get("text", ""))

    logger.info("webhook_message_type_ignored", message_type=msg_type, sender=sender)
    return None


def parse_webhook(raw_payload: dict[str, Any]) -> list[InboundEvent]:
    """Parse a WhatsApp Cloud API webhook payload into normalized events."""
    events: list[InboundEvent] = []
    for entry in raw_payload.get("entry") or []:
        for change in entry.get("changes") or []:
            value = change.get("value") or {}

            for msg in value.get("messages") or []:
                event = _parse_message(msg)
                if event is not None:
                    events.append(event)

            for status in value.get("statuses") or []:
                events.append(InboundEvent(
                    type=EventType.STATUS,
                    phone_number=status.get("recipient_id", ""),
                    message_id=status.get("id"),
                    status=status.get("status"),
                ))
    return events
