"""Engine exceptions."""
from __future__ import annotations


class FlowEngineError(Exception):
    """Base exception for flow engine failures."""


class FlowConfigurationError(FlowEngineError):
    """Flow cannot run: missing flow, first node, node set, or referenced node."""

    def __init__(self, message: str, flow_id: str = "", node_id: str = ""):
        self.flow_id = flow_id
        self.node_id = node_id
        super().__init__(message)


class SessionConflictError(FlowEngineError):
    """A second active session was about to be created for one phone number."""

    def __init__(self, phone_number: str):
        self.phone_number = phone_number
        super().__init__(f"Active session already exists for {phone_number}")


class HopLimitExceeded(FlowEngineError):
    """Auto-advance visited more nodes than allowed for one inbound event."""

    def __init__(self, limit: int, node_id: str = ""):
        self.limit = limit
        self.node_id = node_id
        super().__init__(f"Auto-advance exceeded {limit} hops (at node {node_id})")
