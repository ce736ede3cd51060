"""
Core data models for the FlowBot engine.
These are the universal types shared across all modules.

Node properties are a closed, tagged set: every NodeType maps to exactly
one properties model in NODE_PROPERTIES, and Node.config returns the typed
payload for the node's kind.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class TriggerType(str, Enum):
    KEYWORD = "keyword"
    MANUAL = "manual"
    CAMPAIGN = "campaign"


class NodeType(str, Enum):
    MESSAGE = "message"
    BUTTON = "button"
    LIST = "list"
    INPUT = "input"
    CONDITION = "condition"
    DELAY = "delay"
    TAG = "tag"
    WEBHOOK = "webhook"
    HANDOFF = "handoff"
    HTTP = "http"
    NOTE = "note"
    START = "start"
    UNKNOWN = "unknown"

    @classmethod
    def _missing_(cls, value):
        # Author-supplied types outside the closed set collapse to UNKNOWN
        return cls.UNKNOWN


class SessionStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    EXPIRED = "expired"
    ERROR = "error"


class EventType(str, Enum):
    MESSAGE = "message"
    BUTTON_REPLY = "button_reply"
    LIST_REPLY = "list_reply"
    STATUS = "status"


class InputType(str, Enum):
    TEXT = "text"
    NUMBER = "number"
    EMAIL = "email"
    PHONE = "phone"

    @classmethod
    def _missing_(cls, value):
        return cls.TEXT


class MessageKind(str, Enum):
    TEXT = "text"
    INTERACTIVE_BUTTON = "interactive_button"
    INTERACTIVE_LIST = "interactive_list"


class SendStatus(str, Enum):
    SENT = "sent"
    FAILED = "failed"
    TEST_MODE = "test_mode"


# ──────────────────────────────────────────────────────────────
#  Flow graph — Flow, Node, Connection
# ──────────────────────────────────────────────────────────────

class Flow(BaseModel):
    """An authored conversation graph with a trigger and a designated entry node."""
    id: str = Field(default_factory=_new_id)
    name: str
    trigger_type: TriggerType = TriggerType.MANUAL
    trigger_value: str = ""
    is_active: bool = True
    first_node_id: Optional[str] = None

    def matches_keyword(self, text: str) -> bool:
        """Active keyword flows match the trimmed, case-folded inbound text."""
        if not self.is_active or self.trigger_type != TriggerType.KEYWORD:
            return False
        if not self.trigger_value:
            return False
        return self.trigger_value.strip().casefold() == text.strip().casefold()


class Connection(BaseModel):
    """Directed edge, optionally discriminated by option index or condition branch."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    target_node_id: str = Field(alias="targetNodeId")
    button_index: Optional[int] = Field(default=None, alias="buttonIndex")
    source_handle: Optional[str] = Field(default=None, alias="sourceHandle")


class _Properties(BaseModel):
    """Author-entered node settings. Blank values (None, and "" for typed
    fields) fall back to the field default instead of failing validation."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    @model_validator(mode="before")
    @classmethod
    def _blank_to_default(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        cleaned = dict(data)
        for name, info in cls.model_fields.items():
            for key in {name, info.alias} - {None}:
                if key not in cleaned:
                    continue
                value = cleaned[key]
                if value is None or (value == "" and info.annotation is not Any):
                    del cleaned[key]
        return cleaned


class ButtonOption(_Properties):
    text: str = ""


class ListItem(_Properties):
    title: str = ""
    description: str = ""


class MessageProperties(_Properties):
    """message / button / list nodes."""
    label: str = ""
    message: str = ""
    header: str = ""
    footer: str = ""
    buttons: list[ButtonOption] = []
    list_items: list[ListItem] = Field(default=[], alias="listItems")
    button_text: str = Field(default="Select", alias="buttonText")
    section_title: str = Field(default="Options", alias="sectionTitle")

    @property
    def body(self) -> str:
        return self.label or self.message

    @property
    def has_options(self) -> bool:
        return bool(self.buttons) or bool(self.list_items)


class InputProperties(_Properties):
    label: str = ""
    message: str = ""
    variable_name: str = Field(default="", alias="variableName")
    input_type: InputType = Field(default=InputType.TEXT, alias="inputType")
    invalid_message: str = Field(default="Invalid input. Please try again.", alias="invalidMessage")

    @property
    def prompt(self) -> str:
        return self.label or self.message or "Please provide your input:"


class ConditionProperties(_Properties):
    variable: Optional[str] = None
    operator: Optional[str] = None
    value: Any = None


class DelayProperties(_Properties):
    duration: Optional[float] = None
    unit: str = "seconds"


class TagProperties(_Properties):
    action: str = "add"                          # add | remove
    tags: list[str] = []


class WebhookProperties(_Properties):
    url: str = ""
    method: str = "POST"
    headers: Union[dict[str, str], str, None] = None


class HttpProperties(_Properties):
    url: str = ""
    method: str = "GET"
    auth_type: str = Field(default="none", alias="authType")    # none | bearer | basic | apikey
    bearer_token: str = Field(default="", alias="bearerToken")
    basic_username: str = Field(default="", alias="basicUsername")
    basic_password: str = Field(default="", alias="basicPassword")
    api_key_header: str = Field(default="", alias="apiKeyHeader")
    api_key_value: str = Field(default="", alias="apiKeyValue")
    body: Union[dict[str, Any], list[Any], str, None] = None
    headers: Union[dict[str, str], str, None] = None
    timeout: Optional[float] = None              # seconds
    response_variable: str = Field(default="", alias="responseVariable")


class HandoffProperties(_Properties):
    message: str = "Transferring you to an agent..."


class EmptyProperties(_Properties):
    """note / start / unknown nodes carry no engine-relevant configuration."""


NodeProperties = Union[
    MessageProperties, InputProperties, ConditionProperties, DelayProperties,
    TagProperties, WebhookProperties, HttpProperties, HandoffProperties,
    EmptyProperties,
]

NODE_PROPERTIES: dict[NodeType, type[_Properties]] = {
    NodeType.MESSAGE: MessageProperties,
    NodeType.BUTTON: MessageProperties,
    NodeType.LIST: MessageProperties,
    NodeType.INPUT: InputProperties,
    NodeType.CONDITION: ConditionProperties,
    NodeType.DELAY: DelayProperties,
    NodeType.TAG: TagProperties,
    NodeType.WEBHOOK: WebhookProperties,
    NodeType.HTTP: HttpProperties,
    NodeType.HANDOFF: HandoffProperties,
    NodeType.NOTE: EmptyProperties,
    NodeType.START: EmptyProperties,
    NodeType.UNKNOWN: EmptyProperties,
}


class Node(BaseModel):
    """One step in a flow graph."""
    id: str = Field(default_factory=_new_id)
    flow_id: str
    type: NodeType
    name: str = ""
    properties: dict[str, Any] = {}
    connections: list[Connection] = []

    @field_validator("properties", mode="before")
    @classmethod
    def _none_to_empty(cls, v):
        return v or {}

    @property
    def config(self) -> NodeProperties:
        return NODE_PROPERTIES[self.type].model_validate(self.properties)

    @property
    def default_next(self) -> Optional[str]:
        return self.connections[0].target_node_id if self.connections else None

    def connection_for_index(self, index: int) -> Optional[Connection]:
        return next((c for c in self.connections if c.button_index == index), None)

    def connection_for_handle(self, handle: str) -> Optional[Connection]:
        return next((c for c in self.connections if c.source_handle == handle), None)


# ──────────────────────────────────────────────────────────────
#  Contact
# ──────────────────────────────────────────────────────────────

class Contact(BaseModel):
    id: str = Field(default_factory=_new_id)
    phone_number: str
    name: str = ""
    attributes: dict[str, Any] = {}
    tags: list[str] = []
    last_interaction_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Session + execution trace
# ──────────────────────────────────────────────────────────────

class TraceEntry(BaseModel):
    """Immutable record of one engine transition. Never read back to drive logic."""
    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=_utcnow)
    node_id: str
    node_type: str
    action: str                                  # node_entered | input_captured | button_clicked | ...
    details: dict[str, Any] = {}


class Session(BaseModel):
    """One contact's live progress through one flow."""
    id: str = Field(default_factory=_new_id)
    contact_id: str = ""
    phone_number: str
    flow_id: str
    current_node_id: Optional[str] = None
    status: SessionStatus = SessionStatus.ACTIVE
    context: dict[str, Any] = {}
    execution_trace: list[TraceEntry] = []
    last_interaction_at: datetime = Field(default_factory=_utcnow)
    created_at: datetime = Field(default_factory=_utcnow)
    ended_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE


# ──────────────────────────────────────────────────────────────
#  Inbound events (normalized) and outbound message intents
# ──────────────────────────────────────────────────────────────

class InboundEvent(BaseModel):
    """Normalized inbound webhook event."""
    model_config = ConfigDict(populate_by_name=True)

    type: EventType
    phone_number: str = Field(alias="from")
    text: Optional[str] = None
    payload: Optional[str] = None                # button / list reply id
    message_id: Optional[str] = Field(default=None, alias="messageId")
    status: Optional[str] = None                 # sent | delivered | read | failed


class MessageOption(BaseModel):
    id: str
    title: str
    description: str = ""


class OutboundMessage(BaseModel):
    """Message intent handed to the gateway; wire formatting is the gateway's job."""
    to: str
    kind: MessageKind = MessageKind.TEXT
    body: str
    options: list[MessageOption] = []
    header: str = ""
    footer: str = ""
    button_text: str = "Select"
    section_title: str = "Options"
    node_id: Optional[str] = None


class SendResult(BaseModel):
    status: SendStatus
    provider_message_id: Optional[str] = None
    error: str = ""
    latency_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status != SendStatus.FAILED


# ──────────────────────────────────────────────────────────────
#  Logs
# ──────────────────────────────────────────────────────────────

class MessageLog(BaseModel):
    id: str = Field(default_factory=_new_id)
    phone_number: str
    message_type: str
    content: dict[str, Any] = {}
    status: str = "sent"
    provider_message_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)


class ErrorLog(BaseModel):
    id: str = Field(default_factory=_new_id)
    phone_number: str = ""
    context: str
    error_message: str
    error_stack: str = ""
    timestamp: datetime = Field(default_factory=_utcnow)
