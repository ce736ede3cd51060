"""Tests for http node requests and fire-and-forget webhooks."""
import base64
import json
import pytest

import httpx

from config.settings import EngineConfig
from core.http_actions import HttpActions, build_auth_headers
from models.schemas import HttpProperties, WebhookProperties


def actions_with(handler, config: EngineConfig = None) -> HttpActions:
    return HttpActions(config, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


class TestAuthHeaders:
    def test_bearer(self):
        props = HttpProperties(authType="bearer", bearerToken="abc")
        assert build_auth_headers(props) == {"Authorization": "Bearer abc"}

    def test_basic(self):
        props = HttpProperties(authType="basic", basicUsername="user", basicPassword="pass")
        expected = base64.b64encode(b"user:pass").decode()
        assert build_auth_headers(props) == {"Authorization": f"Basic {expected}"}

    def test_api_key(self):
        props = HttpProperties(authType="apikey", apiKeyHeader="X-Api-Key", apiKeyValue="k1")
        assert build_auth_headers(props) == {"X-Api-Key": "k1"}

    def test_incomplete_credentials(self):
        assert build_auth_headers(HttpProperties(authType="bearer")) == {}
        assert build_auth_headers(HttpProperties(authType="none")) == {}


class TestHttpCall:
    @pytest.mark.asyncio
    async def test_get_with_interpolated_url_and_headers(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"ok": True})

        http = actions_with(handler)
        props = HttpProperties(url="https://api.example.com/orders/{{order.id}}",
                               headers='{"X-Customer": "{{name}}"}', body={"ignored": True})

        result = await http.call(props, {"order": {"id": 7}, "name": "Asha"})

        assert result.completed
        assert result.status_code == 200
        assert result.body == {"ok": True}
        assert seen[0].method == "GET"
        assert str(seen[0].url) == "https://api.example.com/orders/7"
        assert seen[0].headers["X-Customer"] == "Asha"
        assert seen[0].content == b""

    @pytest.mark.asyncio
    async def test_post_sends_json_body(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(201, text="created")

        http = actions_with(handler)
        props = HttpProperties(url="https://api.example.com/leads", method="post",
                               body={"phone": "{{phone}}", "tags": ["{{tag}}"]})

        result = await http.call(props, {"phone": "+91", "tag": "vip"})

        assert result.status_code == 201
        assert result.body == "created"
        assert json.loads(seen[0].content) == {"phone": "+91", "tags": ["vip"]}

    @pytest.mark.asyncio
    async def test_error_status_still_completes(self):
        http = actions_with(lambda request: httpx.Response(500, json={"error": "down"}))
        result = await http.call(HttpProperties(url="https://api.example.com"), {})
        assert result.completed
        assert result.status_code == 500
        assert result.body == {"error": "down"}

    @pytest.mark.asyncio
    async def test_transport_error_is_reported(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        result = await actions_with(handler).call(HttpProperties(url="https://down.example.com"), {})
        assert not result.completed
        assert "refused" in result.error

    @pytest.mark.asyncio
    async def test_timeout_is_reported(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        result = await actions_with(handler).call(
            HttpProperties(url="https://slow.example.com", timeout=0.5), {})
        assert not result.completed
        assert result.error

    @pytest.mark.asyncio
    async def test_missing_url(self):
        result = await actions_with(lambda r: httpx.Response(200)).call(HttpProperties(), {})
        assert not result.completed
        assert result.error == "no url configured"

    @pytest.mark.asyncio
    async def test_invalid_json_body_sends_nothing(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(204)

        result = await actions_with(handler).call(
            HttpProperties(url="https://api.example.com", method="PUT", body="{not json"), {})
        assert result.status_code == 204
        assert result.body is None
        assert seen[0].content in (b"", b"null")


class TestWebhook:
    @pytest.mark.asyncio
    async def test_fire_and_drain(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200)

        http = actions_with(handler)
        task = http.fire_webhook(WebhookProperties(url="https://hooks.example.com",
                                                   headers={"X-Source": "flowbot"}),
                                 {"phoneNumber": "+91"})
        assert task is not None
        await http.drain()

        assert http.pending == 0
        assert seen[0].method == "POST"
        assert seen[0].headers["X-Source"] == "flowbot"
        assert json.loads(seen[0].content) == {"phoneNumber": "+91"}

    @pytest.mark.asyncio
    async def test_failure_is_swallowed(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        http = actions_with(handler)
        http.fire_webhook(WebhookProperties(url="https://hooks.example.com"), {})
        await http.drain()
        assert http.pending == 0

    def test_no_url_skipped(self):
        http = HttpActions()
        assert http.fire_webhook(WebhookProperties(), {}) is None

    @pytest.mark.asyncio
    async def test_aclose(self):
        http = actions_with(lambda r: httpx.Response(200))
        await http.aclose()
        assert http._client is None
