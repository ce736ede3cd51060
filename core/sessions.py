"""
Session Manager — session lifecycle for contacts moving through flows.

Owns: lazy expiry on read, flow start, interpretation of an inbound event
relative to the node the session is waiting on, and ending sessions.
Node side effects and graph walking are delegated to NodeExecutor.
"""
from __future__ import annotations

import math
import re
import structlog
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from config.settings import EngineConfig
from core.errors import FlowConfigurationError, SessionConflictError
from core.executor import ExecutionResult, ExecutionStatus, NodeExecutor
from database.store_base import BaseFlowStore
from models.schemas import (
    EventType, InboundEvent, InputProperties, InputType, Node, NodeType,
    Session, SessionStatus,
)

logger = structlog.get_logger()

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
CHOICE_PAYLOAD = re.compile(r"^(?P<node_id>.*)_(?P<kind>btn|list)_(?P<index>\d+)$")

_STAY = object()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def validate_input(input_type: InputType, text: Optional[str]) -> tuple[bool, Any]:
    """Validate a captured reply. Returns (ok, value to store)."""
    if text is None or not text.strip():
        return False, None
    value = text.strip()

    if input_type == InputType.NUMBER:
        try:
            number = float(value)
        except ValueError:
            return False, None
        if math.isnan(number) or math.isinf(number):
            return False, None
        return True, int(number) if number.is_integer() else number

    if input_type == InputType.EMAIL:
        return (True, value) if EMAIL_PATTERN.match(value) else (False, None)

    # text and phone are accepted as-is
    return True, text


def parse_choice_payload(payload: Optional[str]) -> Optional[tuple[str, str, int]]:
    """Split '<nodeId>_btn_<i>' / '<nodeId>_list_<i>' into (node_id, kind, index)."""
    if not payload:
        return None
    match = CHOICE_PAYLOAD.match(payload)
    if not match:
        return None
    return match.group("node_id"), match.group("kind"), int(match.group("index"))


class SessionManager:
    """Session lifecycle over a flow store; node execution via NodeExecutor."""

    def __init__(self, store: BaseFlowStore, executor: NodeExecutor, config: EngineConfig = None):
        self.store = store
        self.executor = executor
        self.config = config or executor.config

    @property
    def session_timeout(self) -> timedelta:
        return timedelta(hours=self.config.session_timeout_hours)

    # ── Lookup + expiry ───────────────────────────────────────

    def is_stale(self, session: Session, now: datetime = None) -> bool:
        now = now or _utcnow()
        last = session.last_interaction_at
        if last.tzinfo is None:
            last = last.replace(tzinfo=timezone.utc)
        return now - last > self.session_timeout

    async def get_session(self, phone_number: str) -> Optional[Session]:
        """Active session for the contact, expiring it first if it has gone stale."""
        session = await self.store.get_active_session(phone_number)
        if session is None:
            return None
        if self.is_stale(session):
            if await self.end_session(session.id, SessionStatus.EXPIRED):
                logger.info("session_expired", session_id=session.id, phone=phone_number,
                            last_interaction_at=session.last_interaction_at.isoformat())
            return None
        return session

    # ── Start ─────────────────────────────────────────────────

    async def start_flow(
        self, phone_number: str, flow_id: str, initial_context: dict[str, Any] = None,
    ) -> Optional[Session]:
        """Create a session for the flow and run its first node. None if the start was refused."""
        try:
            contact = await self.store.get_or_create_contact(phone_number)

            flow = await self.store.get_flow(flow_id)
            if flow is None:
                raise FlowConfigurationError(f"Flow {flow_id} not found", flow_id=flow_id)
            if not flow.first_node_id:
                raise FlowConfigurationError(f"Flow {flow_id} has no first node", flow_id=flow_id)

            nodes = await self.store.get_nodes(flow_id)
            if not nodes:
                raise FlowConfigurationError(f"Flow {flow_id} has no nodes", flow_id=flow_id)
            if not any(n.id == flow.first_node_id for n in nodes):
                raise FlowConfigurationError(
                    f"First node {flow.first_node_id} not found in flow {flow_id}",
                    flow_id=flow_id, node_id=flow.first_node_id,
                )

            if await self.get_session(phone_number) is not None:
                raise SessionConflictError(phone_number)

            session = await self.store.create_session(Session(
                contact_id=contact.id,
                phone_number=phone_number,
                flow_id=flow.id,
                current_node_id=flow.first_node_id,
                status=SessionStatus.ACTIVE,
                context=dict(initial_context or {}),
            ))
        except Exception as e:
            logger.warning("flow_start_refused", phone=phone_number, flow_id=flow_id,
                           error=str(e), error_type=type(e).__name__)
            await self.store.log_error(phone_number, "startFlow", e)
            return None

        logger.info("session_started", session_id=session.id, phone=phone_number,
                    flow_id=flow.id, first_node_id=flow.first_node_id)
        await self.executor.execute_node(session, flow.first_node_id, nodes)
        return session

    # ── Input processing ──────────────────────────────────────

    async def process_current_node_input(
        self, session: Session, event: InboundEvent,
    ) -> Optional[ExecutionResult]:
        """Interpret event against the session's current node and advance accordingly.

        Returns the execution result when the session moved, None when it
        stayed on the same node (re-prompt, ignored reply, or failure).
        """
        try:
            nodes = await self.store.get_nodes(session.flow_id)
            node = next((n for n in nodes if n.id == session.current_node_id), None)
            if node is None:
                raise FlowConfigurationError(
                    f"Current node {session.current_node_id} not found",
                    flow_id=session.flow_id, node_id=session.current_node_id or "",
                )

            resolved = await self._resolve_next(session, node, event)
            if resolved is _STAY:
                return None
            next_node_id, captured = resolved

            if captured:
                await self.merge_variables(session, captured)
        except Exception as e:
            logger.error("input_processing_failed", session_id=session.id,
                         node_id=session.current_node_id, error=str(e))
            await self.store.log_error(session.phone_number, "processCurrentNodeInput", e)
            if isinstance(e, FlowConfigurationError):
                # The flow changed under a live session; it can never resume
                await self.executor.end_session(session, SessionStatus.ERROR)
            return None

        if next_node_id:
            return await self.advance_to_node(session, next_node_id, nodes)

        await self.executor.end_session(session, SessionStatus.COMPLETED)
        return ExecutionResult(ExecutionStatus.COMPLETED, node.id)

    async def _resolve_next(self, session: Session, node: Node, event: InboundEvent):
        if node.type == NodeType.INPUT:
            return await self._resolve_input(session, node, event)

        if node.type in (NodeType.BUTTON, NodeType.LIST, NodeType.MESSAGE):
            if node.config.has_options:
                return await self._resolve_choice(session, node, event)
            # A plain message at rest only happens if a previous pass was cut short
            return node.default_next, {}

        if node.type == NodeType.CONDITION:
            return await self.executor.resolve_condition(session, node), {}

        logger.info("input_on_passive_node", session_id=session.id, node_id=node.id,
                    node_type=node.type.value)
        return None, {}

    async def _resolve_input(self, session: Session, node: Node, event: InboundEvent):
        props: InputProperties = node.config
        ok, value = validate_input(props.input_type, event.text)
        if not ok:
            await self.executor.trace(session, node, "input_invalid",
                                      input_type=props.input_type.value, text=event.text)
            await self.executor.send_text(session, node, props.invalid_message)
            return _STAY

        captured = {props.variable_name: value} if props.variable_name else {}
        await self.executor.trace(session, node, "input_captured",
                                  variable=props.variable_name or None, value=value)
        return node.default_next, captured

    async def _resolve_choice(self, session: Session, node: Node, event: InboundEvent):
        if event.type not in (EventType.BUTTON_REPLY, EventType.LIST_REPLY):
            logger.info("choice_expected_text_ignored", session_id=session.id, node_id=node.id)
            return _STAY

        parsed = parse_choice_payload(event.payload)
        conn = None
        if parsed is not None:
            payload_node_id, kind, index = parsed
            if payload_node_id != node.id:
                logger.warning("choice_payload_node_mismatch", session_id=session.id,
                               node_id=node.id, payload_node_id=payload_node_id)
            conn = node.connection_for_index(index)
        else:
            kind, index = None, None

        if conn is None:
            logger.warning("choice_routing_fallback", session_id=session.id, node_id=node.id,
                           payload=event.payload, index=index)
            next_id = node.default_next
        else:
            next_id = conn.target_node_id

        action = "list_selected" if event.type == EventType.LIST_REPLY else "button_clicked"
        await self.executor.trace(session, node, action, index=index, payload=event.payload,
                                  text=event.text, target_node=next_id, fallback=conn is None)
        return next_id, {}

    async def merge_variables(self, session: Session, variables: dict[str, Any]) -> None:
        """Merge captured variables into the session context and the contact's attributes."""
        session.context = {**session.context, **variables}
        await self.store.update_session(session.id, context=session.context)
        await self.store.update_contact_attributes(session.phone_number, variables)

    # ── Advance + end ─────────────────────────────────────────

    async def advance_to_node(
        self, session: Session, node_id: str, nodes: list[Node] = None,
    ) -> ExecutionResult:
        return await self.executor.execute_node(session, node_id, nodes)

    async def end_session(self, session_id: str, status: SessionStatus = SessionStatus.COMPLETED) -> bool:
        session = await self.store.get_session_by_id(session_id)
        if session is None:
            logger.warning("end_session_unknown", session_id=session_id)
            return False
        return await self.executor.end_session(session, status)
