"""
External HTTP calls made by flow nodes.

- http nodes: awaited request with configurable method, auth (bearer, basic,
  api-key header), headers, body and timeout. Any HTTP status counts as a
  completed call; only transport failures and timeouts are errors.
- webhook nodes: fire-and-forget POST of the session context. The task may
  outlive the inbound event that started it; failures are logged and dropped.
"""
from __future__ import annotations

import asyncio
import base64
import json
import structlog
from dataclasses import dataclass
from typing import Any, Optional, Union

import httpx

from config.settings import EngineConfig
from models.schemas import HttpProperties, WebhookProperties
from utils.interpolation import interpolate

logger = structlog.get_logger()

BODY_METHODS = ("POST", "PUT", "PATCH")


@dataclass
class HttpCallResult:
    status_code: Optional[int] = None
    body: Any = None
    error: str = ""

    @property
    def completed(self) -> bool:
        return self.status_code is not None


def _parse_json_field(value: Union[dict, list, str, None], field_name: str) -> Any:
    """Headers/body may be authored as JSON strings or as objects."""
    if value is None or value == "":
        return None
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError as e:
            logger.warning("http_node_invalid_json", field=field_name, error=str(e))
            return None
    return value


def _interpolate_values(value: Any, context: dict[str, Any]) -> Any:
    if isinstance(value, str):
        return interpolate(value, context)
    if isinstance(value, dict):
        return {k: _interpolate_values(v, context) for k, v in value.items()}
    if isinstance(value, list):
        return [_interpolate_values(v, context) for v in value]
    return value


def build_auth_headers(props: HttpProperties) -> dict[str, str]:
    auth = (props.auth_type or "none").lower()
    if auth == "bearer" and props.bearer_token:
        return {"Authorization": f"Bearer {props.bearer_token}"}
    if auth == "basic" and props.basic_username and props.basic_password:
        credentials = base64.b64encode(f"{props.basic_username}:{props.basic_password}".encode()).decode()
        return {"Authorization": f"Basic {credentials}"}
    if auth == "apikey" and props.api_key_header and props.api_key_value:
        return {props.api_key_header: props.api_key_value}
    return {}


def _response_body(resp: httpx.Response) -> Any:
    if not resp.content:
        return None
    try:
        return resp.json()
    except ValueError:
        return resp.text


class HttpActions:
    """Runs http and webhook node side effects over one shared httpx client."""

    def __init__(self, config: EngineConfig = None, client: httpx.AsyncClient = None):
        self.config = config or EngineConfig()
        self._client: Optional[httpx.AsyncClient] = client
        self._pending: set[asyncio.Task] = set()

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(follow_redirects=True)
        return self._client

    # ── http node ─────────────────────────────────────────────

    async def call(self, props: HttpProperties, context: dict[str, Any]) -> HttpCallResult:
        """Issue the configured request. Never raises."""
        url = interpolate(props.url, context)
        if not url:
            return HttpCallResult(error="no url configured")

        method = (props.method or "GET").upper()
        headers = _parse_json_field(props.headers, "headers") or {}
        if not isinstance(headers, dict):
            headers = {}
        headers = {str(k): str(v) for k, v in _interpolate_values(headers, context).items()}
        headers.update(build_auth_headers(props))

        body = None
        if method in BODY_METHODS:
            body = _interpolate_values(_parse_json_field(props.body, "body"), context)

        timeout = props.timeout or self.config.http_default_timeout
        client = await self._get_client()
        try:
            resp = await client.request(method, url, json=body, headers=headers, timeout=timeout)
        except httpx.HTTPError as e:
            logger.warning("http_node_request_failed", url=url, method=method,
                           error=str(e) or type(e).__name__)
            return HttpCallResult(error=str(e) or type(e).__name__)

        logger.info("http_node_completed", url=url, method=method, status=resp.status_code)
        return HttpCallResult(status_code=resp.status_code, body=_response_body(resp))

    # ── webhook node ──────────────────────────────────────────

    def fire_webhook(self, props: WebhookProperties, payload: dict[str, Any]) -> Optional[asyncio.Task]:
        """Schedule the webhook call and return immediately."""
        if not props.url:
            logger.info("webhook_node_skipped", reason="no url configured")
            return None
        task = asyncio.create_task(self._send_webhook(props, payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _send_webhook(self, props: WebhookProperties, payload: dict[str, Any]) -> None:
        headers = _parse_json_field(props.headers, "headers") or {}
        if not isinstance(headers, dict):
            headers = {}
        method = (props.method or "POST").upper()
        try:
            client = await self._get_client()
            resp = await client.request(
                method, props.url, json=payload,
                headers={str(k): str(v) for k, v in headers.items()},
                timeout=self.config.webhook_timeout,
            )
            logger.info("webhook_fired", url=props.url, status=resp.status_code)
        except Exception as e:
            logger.warning("webhook_failed", url=props.url, error=str(e) or type(e).__name__)

    async def drain(self) -> None:
        """Wait for in-flight webhook tasks (shutdown and tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def aclose(self) -> None:
        await self.drain()
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
