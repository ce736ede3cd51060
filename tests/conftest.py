"""Shared test fixtures for FlowBot."""
import pytest
from typing import Any, Iterable

import httpx

from channels.base import ChannelError, MessageGateway
from config.settings import EngineConfig
from core.executor import NodeExecutor
from core.http_actions import HttpActions
from core.router import EventRouter
from core.sessions import SessionManager
from database.store_factory import reset_store
from database.store_memory import InMemoryFlowStore
from models.schemas import (
    Connection, EventType, Flow, InboundEvent, Node, NodeType, OutboundMessage, TriggerType,
)

PHONE = "+919876543210"


class RecordingGateway(MessageGateway):
    """Gateway that records every outbound message instead of calling a provider."""

    channel = "whatsapp"

    def __init__(self, fail: bool = False, fail_read: bool = False):
        super().__init__()
        self.sent: list[OutboundMessage] = []
        self.read: list[str] = []
        self.fail = fail
        self.fail_read = fail_read

    async def _do_send(self, message: OutboundMessage) -> str:
        if self.fail:
            raise ChannelError("provider rejected message", channel=self.channel)
        self.sent.append(message)
        return f"wamid.{len(self.sent)}"

    async def mark_read(self, message_id: str) -> bool:
        if self.fail_read:
            raise ChannelError("read receipt rejected", channel=self.channel)
        self.read.append(message_id)
        return True

    @property
    def bodies(self) -> list[str]:
        return [m.body for m in self.sent]


# ── Flow builders ─────────────────────────────────────

def conn(target: str, index: int = None, handle: str = None) -> Connection:
    return Connection(target_node_id=target, button_index=index, source_handle=handle)


def make_node(node_id: str, node_type: str, props: dict[str, Any] = None,
              connections: Iterable[Connection] = (), flow_id: str = "flow-1") -> Node:
    return Node(id=node_id, flow_id=flow_id, type=NodeType(node_type),
                properties=props or {}, connections=list(connections))


def make_flow(first_node_id: str, flow_id: str = "flow-1", keyword: str = "",
              is_active: bool = True) -> Flow:
    return Flow(
        id=flow_id,
        name=f"Flow {flow_id}",
        trigger_type=TriggerType.KEYWORD if keyword else TriggerType.MANUAL,
        trigger_value=keyword,
        is_active=is_active,
        first_node_id=first_node_id,
    )


async def install_flow(store, flow: Flow, nodes: list[Node]) -> Flow:
    await store.save_flow(flow)
    await store.save_nodes(flow.id, nodes)
    return flow


def text_event(text: str, phone: str = PHONE) -> InboundEvent:
    return InboundEvent(type=EventType.MESSAGE, phone_number=phone, text=text)


def button_event(payload: str, title: str = "", phone: str = PHONE) -> InboundEvent:
    return InboundEvent(type=EventType.BUTTON_REPLY, phone_number=phone,
                        payload=payload, text=title)


def list_event(payload: str, title: str = "", phone: str = PHONE) -> InboundEvent:
    return InboundEvent(type=EventType.LIST_REPLY, phone_number=phone,
                        payload=payload, text=title)


# ── Engine fixtures ───────────────────────────────────

@pytest.fixture(autouse=True)
def _reset_store_singleton():
    reset_store()
    yield
    reset_store()


@pytest.fixture
def store() -> InMemoryFlowStore:
    return InMemoryFlowStore()


@pytest.fixture
def gateway() -> RecordingGateway:
    return RecordingGateway()


@pytest.fixture
def engine_config() -> EngineConfig:
    return EngineConfig()


@pytest.fixture
def http_requests() -> list[httpx.Request]:
    return []


@pytest.fixture
def http_client(http_requests) -> httpx.AsyncClient:
    """AsyncClient answering every request with {"status": "ok", "user": {"name": "Asha"}}."""
    def handler(request: httpx.Request) -> httpx.Response:
        http_requests.append(request)
        return httpx.Response(200, json={"status": "ok", "user": {"name": "Asha"}})
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def http(engine_config, http_client) -> HttpActions:
    return HttpActions(engine_config, client=http_client)


@pytest.fixture
def executor(store, gateway, http, engine_config) -> NodeExecutor:
    return NodeExecutor(store, gateway, http, engine_config)


@pytest.fixture
def sessions(store, executor, engine_config) -> SessionManager:
    return SessionManager(store, executor, engine_config)


@pytest.fixture
def router(store, sessions) -> EventRouter:
    return EventRouter(store, sessions)
