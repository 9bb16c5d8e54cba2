"""
Mail transport base: error types, circuit breaker, and the send wrapper.

A transport makes exactly one delivery attempt per ``send``. Retrying is the
email queue's job (attempt counter + next eligible time), so nothing here
sleeps or loops.

Failures come out as TransportError. ``retryable`` tells the queue whether
another attempt could succeed (connection trouble, 4xx) or not (refused or
suppressed recipient, 5xx).
"""
from __future__ import annotations

import abc
import time
import structlog
from typing import Any, Callable, Optional

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class TransportError(Exception):

    def __init__(self, message: str, transport: str = "", retryable: bool = True):
        super().__init__(message)
        self.transport = transport
        self.retryable = retryable


class CircuitOpenError(TransportError):
    def __init__(self, transport: str = ""):
        super().__init__(f"{transport or 'transport'} circuit open, send refused", transport)


class RecipientSuppressedError(TransportError):
    def __init__(self, address: str, transport: str = ""):
        super().__init__(f"Suppressed: {address}", transport, retryable=False)


# ══════════════════════════════════════════════════════════════
#  CIRCUIT BREAKER
# ══════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    Counts consecutive retryable failures.

    After ``failure_threshold`` of them the circuit opens and sends are
    refused. Once ``recovery_timeout`` seconds pass it reports half_open:
    the next send is let through, and its outcome closes or re-opens it.
    """

    CLOSED, OPEN, HALF_OPEN = "closed", "open", "half_open"

    def __init__(
        self, failure_threshold: int = 5, recovery_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._consecutive = 0
        self._opened_at: Optional[float] = None
        self._counts = {"failures": 0, "successes": 0, "trips": 0}

    @property
    def state(self) -> str:
        if self._opened_at is None:
            return self.CLOSED
        if self._clock() - self._opened_at >= self.recovery_timeout:
            return self.HALF_OPEN
        return self.OPEN

    @property
    def is_open(self) -> bool:
        return self.state == self.OPEN

    def record_failure(self):
        self._counts["failures"] += 1
        self._consecutive += 1
        if self.state == self.HALF_OPEN or self._consecutive >= self.failure_threshold:
            self.trip()

    def record_success(self):
        self._counts["successes"] += 1
        self.reset()

    def trip(self):
        """Open the circuit now."""
        self._opened_at = self._clock()
        self._counts["trips"] += 1
        logger.warning("circuit_opened", consecutive_failures=self._consecutive)

    def reset(self):
        self._opened_at = None
        self._consecutive = 0

    @property
    def stats(self) -> dict[str, Any]:
        return {"state": self.state, "consecutive_failures": self._consecutive, **self._counts}


# ══════════════════════════════════════════════════════════════
#  MAIL TRANSPORT
# ══════════════════════════════════════════════════════════════

class MailTransport(abc.ABC):
    """
    Subclasses implement ``_do_send``; ``send`` adds the breaker, error
    normalisation, and counters for the health endpoint.
    """

    name: str = "mail"

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0):
        self._breaker = CircuitBreaker(failure_threshold, recovery_timeout)
        self._sent = 0
        self._failed = 0
        self._last_latency_ms: Optional[float] = None

    @abc.abstractmethod
    async def _do_send(
        self, to: str, subject: str, html: str,
        attachments: Optional[list[dict[str, Any]]] = None,
    ) -> str:
        """Deliver one message; return the transport's message id."""

    def is_unavailable(self) -> bool:
        """True while the breaker refuses sends."""
        return self._breaker.is_open

    async def send(
        self, to: str, subject: str, html: str,
        attachments: Optional[list[dict[str, Any]]] = None,
    ) -> str:
        if self._breaker.is_open:
            self._failed += 1
            raise CircuitOpenError(self.name)

        started = time.monotonic()
        try:
            message_id = await self._do_send(to, subject, html, attachments)
        except TransportError as e:
            self._failed += 1
            if e.retryable:
                self._breaker.record_failure()
            raise
        except Exception as e:
            self._failed += 1
            self._breaker.record_failure()
            raise TransportError(str(e) or type(e).__name__, self.name) from e
        finally:
            self._last_latency_ms = round((time.monotonic() - started) * 1000, 1)

        self._sent += 1
        self._breaker.record_success()
        return message_id

    async def health_check(self) -> dict[str, Any]:
        return {
            "transport": self.name,
            "sent": self._sent,
            "failed": self._failed,
            "last_latency_ms": self._last_latency_ms,
            "circuit_breaker": self._breaker.stats,
        }

    async def shutdown(self) -> None:
        pass
