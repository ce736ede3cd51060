"""
Abstract Flow Store — Interface for all storage backends.

Implementations:
  - SqlFlowStore      (PostgreSQL / SQLite via SQLAlchemy)
  - InMemoryFlowStore (dict-based, single-process, no persistence)

This is the only persistence contract the engine depends on: flow graph
reads, session lifecycle, contact attributes/tags, execution trace and
the message/error logs.
"""
from __future__ import annotations

import traceback
from abc import ABC, abstractmethod
from typing import Any, Iterable, Optional, Union

import structlog

from models.schemas import (
    Contact, ErrorLog, Flow, MessageLog, Node, Session, SessionStatus,
    TraceEntry, TriggerType,
)

logger = structlog.get_logger()


class BaseFlowStore(ABC):
    """Interface that all flow store backends must implement."""

    # ── Flow graph ────────────────────────────────────────────

    @abstractmethod
    async def get_flow(self, flow_id: str) -> Optional[Flow]:
        ...

    @abstractmethod
    async def get_active_flows_by_trigger(self, kind: TriggerType) -> list[Flow]:
        ...

    @abstractmethod
    async def get_nodes(self, flow_id: str) -> list[Node]:
        ...

    @abstractmethod
    async def save_flow(self, flow: Flow) -> Flow:
        ...

    @abstractmethod
    async def save_nodes(self, flow_id: str, nodes: list[Node]) -> None:
        """Replace the node set of a flow."""
        ...

    # ── Sessions ──────────────────────────────────────────────

    @abstractmethod
    async def get_active_session(self, phone_number: str) -> Optional[Session]:
        """Most recent session with status=active for the phone number."""
        ...

    @abstractmethod
    async def get_session_by_id(self, session_id: str) -> Optional[Session]:
        ...

    @abstractmethod
    async def create_session(self, session: Session) -> Session:
        """Insert a session. Raises SessionConflictError if the phone already has an active one."""
        ...

    @abstractmethod
    async def update_session(self, session_id: str, **fields) -> None:
        ...

    @abstractmethod
    async def end_session(self, session_id: str, status: SessionStatus) -> bool:
        """Move an active session to status and stamp ended_at. False if it was not active."""
        ...

    # ── Contacts ──────────────────────────────────────────────

    @abstractmethod
    async def get_or_create_contact(self, phone_number: str) -> Contact:
        ...

    @abstractmethod
    async def get_contact(self, phone_number: str) -> Optional[Contact]:
        ...

    @abstractmethod
    async def update_contact_attributes(self, phone_number: str, attributes: dict[str, Any]) -> None:
        """Merge attributes into the contact's stored mapping."""
        ...

    @abstractmethod
    async def update_contact_tags(self, phone_number: str,
                                  add: Iterable[str] = (), remove: Iterable[str] = ()) -> list[str]:
        ...

    @abstractmethod
    async def touch_contact(self, phone_number: str) -> None:
        """Refresh the contact's last_interaction_at."""
        ...

    # ── Execution trace ───────────────────────────────────────

    @abstractmethod
    async def append_execution_trace(self, session_id: str, entry: TraceEntry) -> None:
        ...

    # ── Message + error logs ──────────────────────────────────

    @abstractmethod
    async def add_message_log(self, log: MessageLog) -> MessageLog:
        ...

    @abstractmethod
    async def update_message_status(self, provider_message_id: str, status: str) -> bool:
        ...

    @abstractmethod
    async def get_message_logs(self, phone_number: str, limit: int = 50) -> list[MessageLog]:
        ...

    @abstractmethod
    async def get_error_logs(self, phone_number: str = "", limit: int = 50) -> list[ErrorLog]:
        ...

    @abstractmethod
    async def _insert_error_log(self, entry: ErrorLog) -> None:
        ...

    async def log_error(self, phone_number: str, context: str,
                        error: Union[BaseException, str]) -> None:
        """Record an error against a phone number and context label. Never raises."""
        if isinstance(error, BaseException):
            message = str(error) or type(error).__name__
            stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        else:
            message, stack = str(error), ""

        logger.error("flow_error", phone=phone_number, context=context, error=message)
        try:
            await self._insert_error_log(ErrorLog(
                phone_number=phone_number or "",
                context=context,
                error_message=message,
                error_stack=stack,
            ))
        except Exception as e:
            logger.error("error_log_write_failed", phone=phone_number, context=context, error=str(e))
