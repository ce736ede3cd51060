"""
InMemoryFlowStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with SqlFlowStore
  - Safe under asyncio (single event loop, no awaits inside mutations)
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import structlog
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from core.errors import SessionConflictError
from database.store_base import BaseFlowStore
from models.schemas import (
    Contact, ErrorLog, Flow, MessageLog, Node, Session, SessionStatus,
    TraceEntry, TriggerType,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryFlowStore(BaseFlowStore):
    """
    In-memory store with the same interface as SqlFlowStore.
    Returns deep copies so callers never mutate stored state by accident.
    """

    def __init__(self):
        self._flows: dict[str, Flow] = {}                       # id → flow
        self._nodes: dict[str, list[Node]] = defaultdict(list)  # flow_id → [nodes]
        self._sessions: dict[str, Session] = {}                 # id → session
        self._contacts: dict[str, Contact] = {}                 # phone → contact
        self._message_logs: list[MessageLog] = []
        self._error_logs: list[ErrorLog] = []
        logger.info("inmemory_store_initialized")

    # ── Flow graph ────────────────────────────────────────

    async def get_flow(self, flow_id: str) -> Optional[Flow]:
        flow = self._flows.get(flow_id)
        return flow.model_copy(deep=True) if flow else None

    async def get_active_flows_by_trigger(self, kind: TriggerType) -> list[Flow]:
        return [
            f.model_copy(deep=True) for f in self._flows.values()
            if f.is_active and f.trigger_type == kind
        ]

    async def get_nodes(self, flow_id: str) -> list[Node]:
        return [n.model_copy(deep=True) for n in self._nodes.get(flow_id, [])]

    async def save_flow(self, flow: Flow) -> Flow:
        self._flows[flow.id] = flow.model_copy(deep=True)
        return flow

    async def save_nodes(self, flow_id: str, nodes: list[Node]) -> None:
        self._nodes[flow_id] = [n.model_copy(update={"flow_id": flow_id}, deep=True) for n in nodes]

    # ── Sessions ──────────────────────────────────────────

    async def get_active_session(self, phone_number: str) -> Optional[Session]:
        active = [
            s for s in self._sessions.values()
            if s.phone_number == phone_number and s.status == SessionStatus.ACTIVE
        ]
        if not active:
            return None
        active.sort(key=lambda s: s.created_at, reverse=True)
        return active[0].model_copy(deep=True)

    async def get_session_by_id(self, session_id: str) -> Optional[Session]:
        session = self._sessions.get(session_id)
        return session.model_copy(deep=True) if session else None

    async def create_session(self, session: Session) -> Session:
        if session.status == SessionStatus.ACTIVE and any(
            s.phone_number == session.phone_number and s.status == SessionStatus.ACTIVE
            for s in self._sessions.values()
        ):
            raise SessionConflictError(session.phone_number)
        self._sessions[session.id] = session.model_copy(deep=True)
        return session

    async def update_session(self, session_id: str, **fields) -> None:
        session = self._sessions.get(session_id)
        if session:
            self._sessions[session_id] = session.model_copy(update=fields, deep=True)

    async def end_session(self, session_id: str, status: SessionStatus) -> bool:
        session = self._sessions.get(session_id)
        if session is None or session.status != SessionStatus.ACTIVE:
            return False
        self._sessions[session_id] = session.model_copy(
            update={"status": SessionStatus(status), "ended_at": _utcnow()},
        )
        return True

    # ── Contacts ──────────────────────────────────────────

    async def get_or_create_contact(self, phone_number: str) -> Contact:
        contact = self._contacts.get(phone_number)
        if contact is None:
            contact = Contact(phone_number=phone_number)
            self._contacts[phone_number] = contact
            logger.info("contact_created", phone=phone_number)
        return contact.model_copy(deep=True)

    async def get_contact(self, phone_number: str) -> Optional[Contact]:
        contact = self._contacts.get(phone_number)
        return contact.model_copy(deep=True) if contact else None

    async def update_contact_attributes(self, phone_number: str, attributes: dict[str, Any]) -> None:
        contact = self._contacts.get(phone_number)
        if contact:
            contact.attributes = {**contact.attributes, **attributes}
            contact.updated_at = _utcnow()

    async def update_contact_tags(self, phone_number: str,
                                  add: Iterable[str] = (), remove: Iterable[str] = ()) -> list[str]:
        contact = self._contacts.get(phone_number)
        if contact is None:
            return []
        removed = set(remove)
        tags = [t for t in contact.tags if t not in removed]
        for tag in add:
            if tag not in tags:
                tags.append(tag)
        contact.tags = tags
        contact.updated_at = _utcnow()
        return list(tags)

    async def touch_contact(self, phone_number: str) -> None:
        contact = self._contacts.get(phone_number)
        if contact:
            contact.last_interaction_at = _utcnow()

    # ── Execution trace ───────────────────────────────────

    async def append_execution_trace(self, session_id: str, entry: TraceEntry) -> None:
        session = self._sessions.get(session_id)
        if session:
            session.execution_trace = [*session.execution_trace, entry]

    # ── Message + error logs ──────────────────────────────

    async def add_message_log(self, log: MessageLog) -> MessageLog:
        self._message_logs.append(log.model_copy(deep=True))
        return log

    async def update_message_status(self, provider_message_id: str, status: str) -> bool:
        updated = False
        for log in self._message_logs:
            if log.provider_message_id == provider_message_id:
                log.status = status
                updated = True
        return updated

    async def get_message_logs(self, phone_number: str, limit: int = 50) -> list[MessageLog]:
        logs = [m for m in self._message_logs if m.phone_number == phone_number]
        return [m.model_copy(deep=True) for m in logs[-limit:]]

    async def get_error_logs(self, phone_number: str = "", limit: int = 50) -> list[ErrorLog]:
        logs = [e for e in self._error_logs if not phone_number or e.phone_number == phone_number]
        return logs[-limit:]

    async def _insert_error_log(self, entry: ErrorLog) -> None:
        self._error_logs.append(entry)

    # ── Stats (for debugging) ─────────────────────────────

    def stats(self) -> dict[str, int]:
        return {
            "flows": len(self._flows),
            "nodes": sum(len(v) for v in self._nodes.values()),
            "sessions": len(self._sessions),
            "contacts": len(self._contacts),
            "message_logs": len(self._message_logs),
            "error_logs": len(self._error_logs),
        }
