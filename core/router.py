"""
Event Router — entry point for normalized inbound events.

    status          → update the message log by provider message id
    anything else   → (per-contact lock) active session?
                        yes → Session Manager input processing
                        no  → text matching an active keyword flow → start it
                              otherwise dropped

Nothing raised here reaches the webhook receiver: failures are logged
against the phone number with the `handleIncomingEvent` label.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from channels.base import DeliveryStatus
from core.locks import KeyedLocks
from core.sessions import SessionManager
from database.store_base import BaseFlowStore
from models.schemas import EventType, Flow, InboundEvent, Session, TriggerType

logger = structlog.get_logger()


class EventRouter:

    def __init__(self, store: BaseFlowStore, sessions: SessionManager, locks: KeyedLocks = None):
        self.store = store
        self.sessions = sessions
        self.locks = locks or KeyedLocks()

    async def handle_incoming_event(self, event: InboundEvent) -> None:
        try:
            if event.type == EventType.STATUS:
                await self._handle_status(event)
                return

            async with self.locks.hold(event.phone_number):
                await self._route(event)
        except Exception as e:
            logger.error("event_handling_failed", phone=event.phone_number,
                         event_type=event.type.value, error=str(e))
            await self.store.log_error(event.phone_number, "handleIncomingEvent", e)

    async def start_flow(
        self, phone_number: str, flow_id: str, initial_context: dict[str, Any] = None,
    ) -> Optional[Session]:
        """Direct (manual/campaign) start, serialized with inbound events for the same contact."""
        async with self.locks.hold(phone_number):
            return await self.sessions.start_flow(phone_number, flow_id, initial_context)

    async def _route(self, event: InboundEvent) -> None:
        session = await self.sessions.get_session(event.phone_number)
        if session is not None:
            logger.info("event_routed_to_session", phone=event.phone_number,
                        session_id=session.id, node_id=session.current_node_id,
                        event_type=event.type.value)
            await self.sessions.process_current_node_input(session, event)
            return

        if event.type == EventType.MESSAGE and event.text:
            flow = await self.match_trigger(event.text)
            if flow is not None:
                logger.info("flow_triggered", phone=event.phone_number,
                            flow_id=flow.id, trigger=flow.trigger_value)
                await self.sessions.start_flow(event.phone_number, flow.id, {})
                return

        logger.info("event_dropped", phone=event.phone_number, event_type=event.type.value,
                    reason="no active session and no trigger match")

    async def match_trigger(self, text: str) -> Optional[Flow]:
        flows = await self.store.get_active_flows_by_trigger(TriggerType.KEYWORD)
        return next((f for f in flows if f.matches_keyword(text)), None)

    async def _handle_status(self, event: InboundEvent) -> None:
        if not event.message_id or not event.status:
            logger.info("status_event_incomplete", phone=event.phone_number)
            return
        updated = await self.store.update_message_status(event.message_id, event.status)
        if event.status in {s.value for s in DeliveryStatus}:
            self.sessions.executor.gateway.metrics.record_status(DeliveryStatus(event.status))
        logger.info("message_status_updated", provider_message_id=event.message_id,
                    status=event.status, matched=updated)
