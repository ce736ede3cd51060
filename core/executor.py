"""
Node Executor — runs flow nodes and walks the graph.

execute_node() enters a node, performs its side effect, and keeps
auto-advancing through the graph inside one bounded loop until a node
suspends (message with options, input), pauses the session (handoff), or
no next connection exists (session completed). Any exception ends the
session with status `error`.

Dispatch is a closed table keyed by NodeType; construction fails if a
NodeType has no handler.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from channels.base import MessageGateway
from config.settings import EngineConfig
from core.errors import FlowConfigurationError, HopLimitExceeded
from core.http_actions import HttpActions
from database.store_base import BaseFlowStore
from models.schemas import (
    MessageKind, MessageLog, MessageOption, MessageProperties, Node, NodeType,
    OutboundMessage, SendResult, Session, SessionStatus, TraceEntry,
)
from utils.conditions import evaluate_condition
from utils.interpolation import interpolate

logger = structlog.get_logger()

DEFAULT_CHOICE_BODY = "Please select an option:"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExecutionStatus(str, Enum):
    SUSPENDED = "suspended"     # waiting for the contact's next message
    COMPLETED = "completed"
    PAUSED = "paused"           # handed off to a human agent
    ERROR = "error"


@dataclass
class ExecutionResult:
    status: ExecutionStatus
    node_id: Optional[str] = None
    hops: int = 0


class _Outcome(str, Enum):
    ADVANCE = "advance"
    SUSPEND = "suspend"
    PAUSE = "pause"


@dataclass
class _Step:
    outcome: _Outcome
    next_node_id: Optional[str] = None


class NodeExecutor:
    """Executes nodes for one session at a time. Holds no per-session state."""

    def __init__(
        self,
        store: BaseFlowStore,
        gateway: MessageGateway,
        http: HttpActions = None,
        config: EngineConfig = None,
    ):
        self.store = store
        self.gateway = gateway
        self.config = config or EngineConfig()
        self.http = http or HttpActions(self.config)

        self._handlers = {
            NodeType.MESSAGE: self._run_message,
            NodeType.BUTTON: self._run_message,
            NodeType.LIST: self._run_message,
            NodeType.INPUT: self._run_input,
            NodeType.CONDITION: self._run_condition,
            NodeType.DELAY: self._run_delay,
            NodeType.TAG: self._run_tag,
            NodeType.WEBHOOK: self._run_webhook,
            NodeType.HTTP: self._run_http,
            NodeType.HANDOFF: self._run_handoff,
            NodeType.NOTE: self._run_passthrough,
            NodeType.START: self._run_passthrough,
            NodeType.UNKNOWN: self._run_unknown,
        }
        missing = set(NodeType) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No executor handler for node types: {sorted(m.value for m in missing)}")

    # ══════════════════════════════════════════════════════════
    #  GRAPH WALK
    # ══════════════════════════════════════════════════════════

    async def execute_node(
        self, session: Session, node_id: str, nodes: Optional[list[Node]] = None,
    ) -> ExecutionResult:
        """Execute node_id and auto-advance until the flow suspends or ends."""
        if nodes is None:
            nodes = await self.store.get_nodes(session.flow_id)
        by_id = {n.id: n for n in nodes}

        current: Optional[str] = node_id
        hops = 0
        try:
            while True:
                if hops >= self.config.max_hops_per_event:
                    raise HopLimitExceeded(self.config.max_hops_per_event, current or "")
                node = by_id.get(current)
                if node is None:
                    raise FlowConfigurationError(
                        f"Node {current} not found", flow_id=session.flow_id, node_id=current or "",
                    )
                hops += 1

                await self._enter(session, node)
                step = await self._handlers[node.type](session, node)

                if step.outcome == _Outcome.SUSPEND:
                    logger.info("flow_suspended", session_id=session.id, node_id=node.id,
                                node_type=node.type.value, hops=hops)
                    return ExecutionResult(ExecutionStatus.SUSPENDED, node.id, hops)

                if step.outcome == _Outcome.PAUSE:
                    await self.end_session(session, SessionStatus.PAUSED)
                    return ExecutionResult(ExecutionStatus.PAUSED, node.id, hops)

                if not step.next_node_id:
                    await self.end_session(session, SessionStatus.COMPLETED)
                    return ExecutionResult(ExecutionStatus.COMPLETED, node.id, hops)

                logger.debug("flow_auto_advance", session_id=session.id,
                             from_node=node.id, to_node=step.next_node_id)
                current = step.next_node_id

        except Exception as e:
            logger.error("node_execution_failed", session_id=session.id, node_id=current,
                         error=str(e), error_type=type(e).__name__)
            await self.store.log_error(session.phone_number, "executeNode", e)
            await self.end_session(session, SessionStatus.ERROR)
            return ExecutionResult(ExecutionStatus.ERROR, current, hops)

    async def end_session(self, session: Session, status: SessionStatus) -> bool:
        """Close an active session and refresh the contact's last interaction."""
        ended = await self.store.end_session(session.id, status)
        await self.store.touch_contact(session.phone_number)
        if ended:
            session.status = SessionStatus(status)
            session.ended_at = _utcnow()
            logger.info("session_ended", session_id=session.id, status=session.status.value,
                        phone=session.phone_number, node_id=session.current_node_id)
        return ended

    async def _enter(self, session: Session, node: Node) -> None:
        now = _utcnow()
        session.current_node_id = node.id
        session.last_interaction_at = now
        await self.store.update_session(session.id, current_node_id=node.id, last_interaction_at=now)
        await self.trace(session, node, "node_entered", node_name=node.name)

    async def trace(self, session: Session, node: Node, action: str, **details: Any) -> None:
        entry = TraceEntry(node_id=node.id, node_type=node.type.value, action=action, details=details)
        await self.store.append_execution_trace(session.id, entry)
        session.execution_trace.append(entry)

    # ══════════════════════════════════════════════════════════
    #  NODE HANDLERS
    # ══════════════════════════════════════════════════════════

    async def _run_message(self, session: Session, node: Node) -> _Step:
        props: MessageProperties = node.config
        await self.send_node_message(session, node, props)
        if props.has_options:
            return _Step(_Outcome.SUSPEND)
        return _Step(_Outcome.ADVANCE, node.default_next)

    async def _run_input(self, session: Session, node: Node) -> _Step:
        await self.send_text(session, node, node.config.prompt)
        return _Step(_Outcome.SUSPEND)

    async def _run_condition(self, session: Session, node: Node) -> _Step:
        return _Step(_Outcome.ADVANCE, await self.resolve_condition(session, node))

    async def _run_delay(self, session: Session, node: Node) -> _Step:
        # No durable timer yet: the delay is recorded and skipped.
        props = node.config
        await self.trace(session, node, "delay_skipped", duration=props.duration, unit=props.unit)
        return _Step(_Outcome.ADVANCE, node.default_next)

    async def _run_tag(self, session: Session, node: Node) -> _Step:
        props = node.config
        if props.tags:
            if props.action == "remove":
                tags = await self.store.update_contact_tags(session.phone_number, remove=props.tags)
            elif props.action == "add":
                tags = await self.store.update_contact_tags(session.phone_number, add=props.tags)
            else:
                logger.warning("tag_action_unknown", node_id=node.id, action=props.action)
                tags = None
            if tags is not None:
                await self.trace(session, node, "tags_updated", tag_action=props.action,
                                 tags=list(props.tags), contact_tags=tags)
        return _Step(_Outcome.ADVANCE, node.default_next)

    async def _run_webhook(self, session: Session, node: Node) -> _Step:
        props = node.config
        payload = {
            "phoneNumber": session.phone_number,
            "context": dict(session.context),
            "flowId": session.flow_id,
            "sessionId": session.id,
        }
        if self.http.fire_webhook(props, payload) is not None:
            await self.trace(session, node, "webhook_fired", url=props.url, method=props.method)
        return _Step(_Outcome.ADVANCE, node.default_next)

    async def _run_http(self, session: Session, node: Node) -> _Step:
        props = node.config
        result = await self.http.call(props, session.context)
        if result.completed:
            if props.response_variable:
                session.context = {**session.context, props.response_variable: result.body}
                await self.store.update_session(session.id, context=session.context)
            await self.trace(session, node, "http_completed", status_code=result.status_code,
                             response_variable=props.response_variable or None)
        else:
            await self.trace(session, node, "http_failed", error=result.error)
        return _Step(_Outcome.ADVANCE, node.default_next)

    async def _run_handoff(self, session: Session, node: Node) -> _Step:
        await self.send_text(session, node, node.config.message)
        await self.trace(session, node, "handoff")
        return _Step(_Outcome.PAUSE)

    async def _run_passthrough(self, session: Session, node: Node) -> _Step:
        return _Step(_Outcome.ADVANCE, node.default_next)

    async def _run_unknown(self, session: Session, node: Node) -> _Step:
        logger.warning("unknown_node_type", node_id=node.id, node_name=node.name)
        return _Step(_Outcome.ADVANCE, node.default_next)

    # ══════════════════════════════════════════════════════════
    #  SHARED STEPS
    # ══════════════════════════════════════════════════════════

    async def resolve_condition(self, session: Session, node: Node) -> Optional[str]:
        """Evaluate a condition node and return the id of the branch to follow."""
        result = evaluate_condition(node.config, session.context,
                                    fail_open=self.config.condition_fail_open)
        handle = "true" if result else "false"
        conn = node.connection_for_handle(handle)
        next_id = conn.target_node_id if conn else node.default_next
        await self.trace(session, node, "condition_evaluated", result=result,
                         handle=handle, target_node=next_id)
        return next_id

    async def send_text(self, session: Session, node: Node, text: str) -> Optional[SendResult]:
        return await self.send_node_message(session, node, MessageProperties(label=text))

    async def send_node_message(
        self, session: Session, node: Node, props: MessageProperties,
    ) -> Optional[SendResult]:
        """Interpolate, send, and log one outbound message. Skips empty content."""
        ctx = session.context
        message = self._build_message(session.phone_number, node.id, props, ctx)
        if message is None:
            logger.error("message_content_empty", node_id=node.id, session_id=session.id)
            return None

        result = await self.gateway.send(message)
        await self.store.add_message_log(MessageLog(
            phone_number=session.phone_number,
            message_type=message.kind.value,
            content={
                "body": message.body,
                "options": [o.model_dump() for o in message.options],
                "node_id": node.id,
            },
            status="sent" if result.ok else "failed",
            provider_message_id=result.provider_message_id,
        ))
        await self.trace(session, node, "message_sent", kind=message.kind.value,
                         status=result.status.value)
        return result

    @staticmethod
    def _build_message(
        to: str, node_id: str, props: MessageProperties, ctx: dict[str, Any],
    ) -> Optional[OutboundMessage]:
        if props.buttons:
            return OutboundMessage(
                to=to, node_id=node_id,
                kind=MessageKind.INTERACTIVE_BUTTON,
                body=interpolate(props.body or DEFAULT_CHOICE_BODY, ctx),
                header=interpolate(props.header, ctx),
                footer=interpolate(props.footer, ctx),
                options=[
                    MessageOption(id=f"{node_id}_btn_{i}", title=interpolate(btn.text, ctx))
                    for i, btn in enumerate(props.buttons)
                ],
            )

        if props.list_items:
            return OutboundMessage(
                to=to, node_id=node_id,
                kind=MessageKind.INTERACTIVE_LIST,
                body=interpolate(props.body or DEFAULT_CHOICE_BODY, ctx),
                header=interpolate(props.header, ctx),
                button_text=interpolate(props.button_text or "Select", ctx),
                section_title=interpolate(props.section_title or "Options", ctx),
                options=[
                    MessageOption(
                        id=f"{node_id}_list_{i}",
                        title=interpolate(item.title, ctx),
                        description=interpolate(item.description, ctx),
                    )
                    for i, item in enumerate(props.list_items)
                ],
            )

        body = interpolate(props.body, ctx)
        if not body:
            return None
        return OutboundMessage(to=to, node_id=node_id, kind=MessageKind.TEXT, body=body)
