"""Outbound message gateways and provider webhook normalization."""
from channels.base import (
    MessageGateway,
    ChannelError,
    RateLimitedError,
    CircuitOpenError,
    DeliveryStatus,
    TokenBucketRateLimiter,
    CircuitBreaker,
    GatewayMetrics,
)
from channels.whatsapp_adapter import (
    WhatsAppGateway,
    build_payload,
    parse_webhook,
    verify_webhook,
    verify_signature,
)

__all__ = [
    "MessageGateway", "ChannelError", "RateLimitedError", "CircuitOpenError",
    "DeliveryStatus", "TokenBucketRateLimiter", "CircuitBreaker", "GatewayMetrics",
    "WhatsAppGateway", "build_payload", "parse_webhook",
    "verify_webhook", "verify_signature",
]
