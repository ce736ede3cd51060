"""
Message Gateway — Production-grade base infrastructure for outbound sends.

Provides:
- ChannelError: structured error hierarchy
- TokenBucketRateLimiter: async token bucket with configurable burst
- CircuitBreaker: failure-counting breaker with half-open probe
- GatewayMetrics: send/fail/delivery/latency tracking
- DeliveryStatus: provider-reported message lifecycle states
- MessageGateway: abstract base wrapping every send with resilience
"""
from __future__ import annotations

import abc
import asyncio
import time
import uuid
import structlog
from enum import Enum
from typing import Any, Optional

from models.schemas import OutboundMessage, SendResult, SendStatus

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all gateway operations."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


class RateLimitedError(ChannelError):
    def __init__(self, channel: str = ""):
        super().__init__(f"Rate limit exceeded for {channel}", channel, retryable=True)


class CircuitOpenError(ChannelError):
    def __init__(self, channel: str = ""):
        super().__init__(f"Circuit breaker open for {channel}", channel, retryable=True)


# ══════════════════════════════════════════════════════════════
#  TOKEN BUCKET RATE LIMITER
# ══════════════════════════════════════════════════════════════

class TokenBucketRateLimiter:
    """
    Async token bucket rate limiter.
    Tokens refill at `rate` per second up to `burst` capacity.
    """

    def __init__(self, rate: float = 10.0, burst: int = 10):
        self.rate = rate
        self.burst = burst
        self._tokens: float = float(burst)
        self._last_refill = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self, timeout: float = 5.0) -> bool:
        deadline = time.monotonic() + timeout
        while True:
            async with self._lock:
                self._refill()
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            wait = min(1.0 / max(self.rate, 0.001), remaining)
            await asyncio.sleep(wait)

    def _refill(self):
        now = time.monotonic()
        elapsed = now - self._last_refill
        self._tokens = min(self.burst, self._tokens + elapsed * self.rate)
        self._last_refill = now


# ══════════════════════════════════════════════════════════════
#  CIRCUIT BREAKER
# ══════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    Synchronous circuit breaker with failure counting.

    closed → open (after threshold failures) → half_open (after timeout) →
    closed (on success) or open (on failure).
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._state = "closed"
        self._failure_count = 0
        self._opened_at: float = 0.0
        self._total_failures = 0
        self._total_successes = 0

    @property
    def state(self) -> str:
        if self._state == "open":
            if time.monotonic() - self._opened_at >= self.recovery_timeout:
                return "half_open"
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state == "open"

    def record_failure(self):
        self._total_failures += 1
        self._failure_count += 1
        if self.state == "half_open" or self._failure_count >= self.failure_threshold:
            self._open()

    def record_success(self):
        self._total_successes += 1
        self._close()

    def _open(self):
        self._state = "open"
        self._opened_at = time.monotonic()
        logger.warning("circuit_opened", failures=self._failure_count)

    def _close(self):
        self._state = "closed"
        self._failure_count = 0

    def reset(self):
        self._close()

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "state": self.state,
            "failure_count": self._failure_count,
            "total_failures": self._total_failures,
            "total_successes": self._total_successes,
        }


# ══════════════════════════════════════════════════════════════
#  GATEWAY METRICS
# ══════════════════════════════════════════════════════════════

class GatewayMetrics:
    """Tracks send, failure, delivery, and latency metrics for one gateway."""

    def __init__(self, channel: str):
        self.channel = channel
        self.messages_sent: int = 0
        self.messages_failed: int = 0
        self.messages_test_mode: int = 0
        self.messages_delivered: int = 0
        self.messages_read: int = 0
        self._latencies: list[float] = []
        self._errors: list[str] = []

    def record_send(self, latency_ms: float = 0.0):
        self.messages_sent += 1
        if latency_ms > 0:
            self._latencies.append(latency_ms)

    def record_test_mode(self):
        self.messages_test_mode += 1

    def record_failure(self, error: str = ""):
        self.messages_failed += 1
        if error:
            self._errors.append(error)

    def record_status(self, status: "DeliveryStatus"):
        if status == DeliveryStatus.DELIVERED:
            self.messages_delivered += 1
        elif status == DeliveryStatus.READ:
            self.messages_read += 1

    @property
    def avg_latency_ms(self) -> float:
        return sum(self._latencies) / len(self._latencies) if self._latencies else 0.0

    @property
    def failure_rate(self) -> float:
        total = self.messages_sent + self.messages_failed
        return self.messages_failed / total if total > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel,
            "sent": self.messages_sent,
            "failed": self.messages_failed,
            "test_mode": self.messages_test_mode,
            "delivered": self.messages_delivered,
            "read": self.messages_read,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "failure_rate": round(self.failure_rate, 4),
            "recent_errors": self._errors[-10:],
        }


# ══════════════════════════════════════════════════════════════
#  DELIVERY STATUS
# ══════════════════════════════════════════════════════════════

class DeliveryStatus(str, Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


# ══════════════════════════════════════════════════════════════
#  MESSAGE GATEWAY — Abstract Base
# ══════════════════════════════════════════════════════════════

class MessageGateway(abc.ABC):
    """
    Base class for outbound message gateways.

    Subclasses implement _do_send, returning the provider message id or
    raising ChannelError. The base class wraps every send with rate
    limiting, circuit breaker, and metrics, and never raises: every
    outcome is reported as a SendResult.
    """

    channel: str = "generic"

    def __init__(self, rate_per_second: float = 0.0, burst: int = 10,
                 breaker: Optional[CircuitBreaker] = None):
        self._breaker = breaker or CircuitBreaker()
        self._rate_limiter: Optional[TokenBucketRateLimiter] = None
        if rate_per_second > 0:
            self._rate_limiter = TokenBucketRateLimiter(rate=rate_per_second, burst=burst)
        self.metrics = GatewayMetrics(self.channel)

    # ── Abstract hooks ────────────────────────────────────────

    @abc.abstractmethod
    async def _do_send(self, message: OutboundMessage) -> str:
        ...

    @property
    def test_mode(self) -> bool:
        """True when the gateway has no credentials and only logs sends."""
        return False

    # ── Public send ───────────────────────────────────────────

    async def send(self, message: OutboundMessage) -> SendResult:
        if self.test_mode:
            self.metrics.record_test_mode()
            logger.info("message_test_mode", channel=self.channel, to=message.to,
                        kind=message.kind.value, body=message.body[:200])
            return SendResult(status=SendStatus.TEST_MODE,
                              provider_message_id=f"test_{uuid.uuid4().hex[:20]}")

        start = time.monotonic()

        if self._rate_limiter:
            if not await self._rate_limiter.acquire(timeout=10.0):
                self.metrics.record_failure("rate_limited")
                return self._failed(message, RateLimitedError(self.channel))

        if self._breaker.is_open:
            self.metrics.record_failure("circuit_open")
            return self._failed(message, CircuitOpenError(self.channel))

        try:
            provider_id = await self._do_send(message)
        except Exception as e:
            self._breaker.record_failure()
            self.metrics.record_failure(str(e))
            return self._failed(message, e)

        latency = (time.monotonic() - start) * 1000
        self._breaker.record_success()
        self.metrics.record_send(latency)
        logger.info("message_sent", channel=self.channel, to=message.to,
                    kind=message.kind.value, provider_message_id=provider_id,
                    latency_ms=round(latency, 1))
        return SendResult(status=SendStatus.SENT, provider_message_id=provider_id,
                          latency_ms=round(latency, 1))

    def _failed(self, message: OutboundMessage, error: Exception) -> SendResult:
        logger.error("message_send_failed", channel=self.channel, to=message.to,
                     kind=message.kind.value, error=str(error),
                     retryable=getattr(error, "retryable", False))
        return SendResult(status=SendStatus.FAILED, error=str(error) or type(error).__name__)

    async def mark_read(self, message_id: str) -> bool:
        """Send a read receipt for an inbound message. Providers without receipts do nothing."""
        return False

    # ── Health ────────────────────────────────────────────────

    async def health_check(self) -> dict[str, Any]:
        return {
            "channel": self.channel,
            "test_mode": self.test_mode,
            "circuit_breaker": self._breaker.stats,
            "metrics": self.metrics.to_dict(),
        }

    async def shutdown(self) -> None:
        pass
