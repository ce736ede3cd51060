"""
SqlFlowStore — Portable SQL queries for PostgreSQL and SQLite.

Notes:
  - JSON columns are reassigned (never mutated in place) so SQLAlchemy
    detects the change without MutableDict wrappers.
  - SQLite drops tzinfo on DateTime columns; converters re-attach UTC so
    the engine only ever sees aware datetimes.
"""
from __future__ import annotations

import json
import structlog
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Optional

from sqlalchemy import select, update, delete, and_

from core.errors import SessionConflictError
from database.models import (
    FlowRow, NodeRow, ContactRow, SessionRow, MessageLogRow, ErrorLogRow,
)
from database.session import Database, get_session
from database.store_base import BaseFlowStore
from models.schemas import (
    Contact, Connection, ErrorLog, Flow, MessageLog, Node, Session,
    SessionStatus, TraceEntry, TriggerType,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _json(value: Any) -> Any:
    # Handle both native JSON and TEXT (SQLite may hand back strings)
    if isinstance(value, str):
        return json.loads(value)
    return value


def _column_value(value: Any) -> Any:
    """Convert engine-side values (enums, models) into column-safe ones."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, TraceEntry):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return [_column_value(v) for v in value]
    return value


class SqlFlowStore(BaseFlowStore):
    """
    Persistent flow store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL and SQLite.

    Without an explicit Database it uses the process-wide one built from
    settings on first query.
    """

    def __init__(self, database: Optional[Database] = None):
        self._scope = database.session if database is not None else get_session

    # ── Flow graph ─────────────────────────────────────────

    async def get_flow(self, flow_id: str) -> Optional[Flow]:
        async with self._scope() as db:
            row = await db.get(FlowRow, flow_id)
            return self._row_to_flow(row) if row else None

    async def get_active_flows_by_trigger(self, kind: TriggerType) -> list[Flow]:
        async with self._scope() as db:
            stmt = (
                select(FlowRow)
                .where(and_(
                    FlowRow.is_active.is_(True),
                    FlowRow.trigger_type == TriggerType(kind).value,
                ))
                .order_by(FlowRow.created_at)
            )
            result = await db.execute(stmt)
            return [self._row_to_flow(r) for r in result.scalars().all()]

    async def get_nodes(self, flow_id: str) -> list[Node]:
        async with self._scope() as db:
            stmt = select(NodeRow).where(NodeRow.flow_id == flow_id)
            result = await db.execute(stmt)
            return [self._row_to_node(r) for r in result.scalars().all()]

    async def save_flow(self, flow: Flow) -> Flow:
        async with self._scope() as db:
            existing = await db.get(FlowRow, flow.id)
            if existing:
                existing.name = flow.name
                existing.trigger_type = flow.trigger_type.value
                existing.trigger_value = flow.trigger_value
                existing.is_active = flow.is_active
                existing.first_node_id = flow.first_node_id
            else:
                db.add(FlowRow(
                    id=flow.id,
                    name=flow.name,
                    trigger_type=flow.trigger_type.value,
                    trigger_value=flow.trigger_value,
                    is_active=flow.is_active,
                    first_node_id=flow.first_node_id,
                ))
            return flow

    async def save_nodes(self, flow_id: str, nodes: list[Node]) -> None:
        async with self._scope() as db:
            await db.execute(delete(NodeRow).where(NodeRow.flow_id == flow_id))
            for node in nodes:
                db.add(NodeRow(
                    id=node.id,
                    flow_id=flow_id,
                    type=node.type.value,
                    name=node.name,
                    properties=node.properties,
                    connections=[c.model_dump(by_alias=True, exclude_none=True) for c in node.connections],
                ))

    # ── Sessions ───────────────────────────────────────────

    async def get_active_session(self, phone_number: str) -> Optional[Session]:
        async with self._scope() as db:
            stmt = (
                select(SessionRow)
                .where(and_(
                    SessionRow.phone_number == phone_number,
                    SessionRow.status == SessionStatus.ACTIVE.value,
                ))
                .order_by(SessionRow.created_at.desc())
                .limit(1)
            )
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            return self._row_to_session(row) if row else None

    async def get_session_by_id(self, session_id: str) -> Optional[Session]:
        async with self._scope() as db:
            row = await db.get(SessionRow, session_id)
            return self._row_to_session(row) if row else None

    async def create_session(self, session: Session) -> Session:
        async with self._scope() as db:
            if session.status == SessionStatus.ACTIVE:
                stmt = select(SessionRow.id).where(and_(
                    SessionRow.phone_number == session.phone_number,
                    SessionRow.status == SessionStatus.ACTIVE.value,
                )).limit(1)
                if (await db.execute(stmt)).scalar_one_or_none():
                    raise SessionConflictError(session.phone_number)

            db.add(SessionRow(
                id=session.id,
                contact_id=session.contact_id or None,
                phone_number=session.phone_number,
                flow_id=session.flow_id,
                current_node_id=session.current_node_id,
                status=session.status.value,
                context=session.context,
                execution_trace=_column_value(session.execution_trace),
                last_interaction_at=session.last_interaction_at,
                created_at=session.created_at,
                ended_at=session.ended_at,
            ))
            return session

    async def update_session(self, session_id: str, **fields) -> None:
        if not fields:
            return
        values = {k: _column_value(v) for k, v in fields.items()}
        async with self._scope() as db:
            await db.execute(
                update(SessionRow)
                .where(SessionRow.id == session_id)
                .values(**values)
            )

    async def end_session(self, session_id: str, status: SessionStatus) -> bool:
        async with self._scope() as db:
            result = await db.execute(
                update(SessionRow)
                .where(and_(
                    SessionRow.id == session_id,
                    SessionRow.status == SessionStatus.ACTIVE.value,
                ))
                .values(status=SessionStatus(status).value, ended_at=_utcnow())
            )
            return result.rowcount > 0

    # ── Contacts ───────────────────────────────────────────

    async def get_or_create_contact(self, phone_number: str) -> Contact:
        async with self._scope() as db:
            row = await self._contact_row(db, phone_number)
            if row is None:
                row = ContactRow(phone_number=phone_number, attributes={}, tags=[])
                db.add(row)
                await db.flush()
                logger.info("contact_created", phone=phone_number)
            return self._row_to_contact(row)

    async def get_contact(self, phone_number: str) -> Optional[Contact]:
        async with self._scope() as db:
            row = await self._contact_row(db, phone_number)
            return self._row_to_contact(row) if row else None

    async def update_contact_attributes(self, phone_number: str, attributes: dict[str, Any]) -> None:
        async with self._scope() as db:
            row = await self._contact_row(db, phone_number)
            if row:
                row.attributes = {**(_json(row.attributes) or {}), **attributes}

    async def update_contact_tags(self, phone_number: str,
                                  add: Iterable[str] = (), remove: Iterable[str] = ()) -> list[str]:
        async with self._scope() as db:
            row = await self._contact_row(db, phone_number)
            if row is None:
                return []
            removed = set(remove)
            tags = [t for t in (_json(row.tags) or []) if t not in removed]
            for tag in add:
                if tag not in tags:
                    tags.append(tag)
            row.tags = tags
            return list(tags)

    async def touch_contact(self, phone_number: str) -> None:
        async with self._scope() as db:
            await db.execute(
                update(ContactRow)
                .where(ContactRow.phone_number == phone_number)
                .values(last_interaction_at=_utcnow())
            )

    # ── Execution trace ────────────────────────────────────

    async def append_execution_trace(self, session_id: str, entry: TraceEntry) -> None:
        async with self._scope() as db:
            row = await db.get(SessionRow, session_id)
            if row:
                row.execution_trace = [*(_json(row.execution_trace) or []), entry.model_dump(mode="json")]

    # ── Message + error logs ───────────────────────────────

    async def add_message_log(self, log: MessageLog) -> MessageLog:
        async with self._scope() as db:
            db.add(MessageLogRow(
                id=log.id,
                phone_number=log.phone_number,
                message_type=log.message_type,
                content=log.content,
                status=log.status,
                provider_message_id=log.provider_message_id,
                created_at=log.created_at,
            ))
            return log

    async def update_message_status(self, provider_message_id: str, status: str) -> bool:
        async with self._scope() as db:
            result = await db.execute(
                update(MessageLogRow)
                .where(MessageLogRow.provider_message_id == provider_message_id)
                .values(status=status)
            )
            return result.rowcount > 0

    async def get_message_logs(self, phone_number: str, limit: int = 50) -> list[MessageLog]:
        async with self._scope() as db:
            stmt = (
                select(MessageLogRow)
                .where(MessageLogRow.phone_number == phone_number)
                .order_by(MessageLogRow.created_at.desc())
                .limit(limit)
            )
            result = await db.execute(stmt)
            return [
                MessageLog(
                    id=r.id, phone_number=r.phone_number, message_type=r.message_type,
                    content=_json(r.content) or {}, status=r.status,
                    provider_message_id=r.provider_message_id,
                    created_at=_as_utc(r.created_at),
                )
                for r in reversed(result.scalars().all())
            ]

    async def get_error_logs(self, phone_number: str = "", limit: int = 50) -> list[ErrorLog]:
        async with self._scope() as db:
            stmt = select(ErrorLogRow).order_by(ErrorLogRow.timestamp.desc()).limit(limit)
            if phone_number:
                stmt = stmt.where(ErrorLogRow.phone_number == phone_number)
            result = await db.execute(stmt)
            return [
                ErrorLog(
                    id=r.id, phone_number=r.phone_number, context=r.context,
                    error_message=r.error_message, error_stack=r.error_stack,
                    timestamp=_as_utc(r.timestamp),
                )
                for r in reversed(result.scalars().all())
            ]

    async def _insert_error_log(self, entry: ErrorLog) -> None:
        async with self._scope() as db:
            db.add(ErrorLogRow(
                id=entry.id,
                phone_number=entry.phone_number,
                context=entry.context[:255],
                error_message=entry.error_message,
                error_stack=entry.error_stack,
                timestamp=entry.timestamp,
            ))

    # ── Converters ─────────────────────────────────────────

    @staticmethod
    async def _contact_row(db, phone_number: str) -> Optional[ContactRow]:
        stmt = select(ContactRow).where(ContactRow.phone_number == phone_number)
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    def _row_to_flow(row: FlowRow) -> Flow:
        return Flow(
            id=row.id, name=row.name,
            trigger_type=TriggerType(row.trigger_type),
            trigger_value=row.trigger_value or "",
            is_active=bool(row.is_active),
            first_node_id=row.first_node_id,
        )

    @staticmethod
    def _row_to_node(row: NodeRow) -> Node:
        return Node(
            id=row.id, flow_id=row.flow_id, type=row.type, name=row.name or "",
            properties=_json(row.properties) or {},
            connections=[Connection.model_validate(c) for c in (_json(row.connections) or [])],
        )

    @staticmethod
    def _row_to_contact(row: ContactRow) -> Contact:
        return Contact(
            id=row.id, phone_number=row.phone_number, name=row.name or "",
            attributes=_json(row.attributes) or {},
            tags=_json(row.tags) or [],
            last_interaction_at=_as_utc(row.last_interaction_at),
            created_at=_as_utc(row.created_at) or _utcnow(),
            updated_at=_as_utc(row.updated_at) or _utcnow(),
        )

    @staticmethod
    def _row_to_session(row: SessionRow) -> Session:
        return Session(
            id=row.id, contact_id=row.contact_id or "",
            phone_number=row.phone_number, flow_id=row.flow_id or "",
            current_node_id=row.current_node_id,
            status=SessionStatus(row.status),
            context=_json(row.context) or {},
            execution_trace=[TraceEntry.model_validate(e) for e in (_json(row.execution_trace) or [])],
            last_interaction_at=_as_utc(row.last_interaction_at),
            created_at=_as_utc(row.created_at),
            ended_at=_as_utc(row.ended_at),
        )
