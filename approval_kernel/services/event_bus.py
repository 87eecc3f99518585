"""
Event bus -- publish/subscribe transport for approval events.

Responsibility:
    The seam between the engine and the domain modules that react to
    approvals.  ``EventBus`` is the protocol; ``InProcessEventBus`` is the
    bundled implementation.  A broker-backed bus (RabbitMQ, Kafka, ...)
    implements the same three methods.

Architecture position:
    Kernel > Services.  Called only by ``EventRelay``, after commit.

Invariants enforced:
    - Subscriber registry is guarded by a lock; publishing works on a copy
      so handlers may subscribe/unsubscribe while being called.
    - Every matching handler is attempted even if an earlier one fails;
      the failures are then raised together as EventDeliveryError so the
      relay can retry the event.

Failure modes:
    - EventDeliveryError when at least one handler raised.
"""

from __future__ import annotations

import threading
from typing import Callable, Protocol

from approval_kernel.domain.events import EventEnvelope
from approval_kernel.exceptions import EventDeliveryError
from approval_kernel.logging_config import get_logger

logger = get_logger("services.event_bus")

EventHandler = Callable[[EventEnvelope], None]

ALL_EVENTS = "*"


class EventBus(Protocol):
    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        ...

    def unsubscribe(self, event_type: str, handler: EventHandler) -> bool:
        ...

    def publish(self, envelope: EventEnvelope) -> int:
        """Deliver ``envelope``; return the number of handlers invoked."""
        ...


class InProcessEventBus:
    """Synchronous in-process bus.  ``"*"`` subscribes to every event type."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = {}
        self._lock = threading.Lock()

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        with self._lock:
            handlers = self._handlers.setdefault(event_type, [])
            if handler not in handlers:
                handlers.append(handler)
        logger.debug("event_handler_subscribed", extra={"event_type": event_type})

    def unsubscribe(self, event_type: str, handler: EventHandler) -> bool:
        with self._lock:
            handlers = self._handlers.get(event_type)
            if not handlers or handler not in handlers:
                return False
            handlers.remove(handler)
            if not handlers:
                del self._handlers[event_type]
            return True

    def handlers_for(self, event_type: str) -> list[EventHandler]:
        with self._lock:
            return list(self._handlers.get(event_type, ())) + list(
                self._handlers.get(ALL_EVENTS, ())
            )

    def publish(self, envelope: EventEnvelope) -> int:
        handlers = self.handlers_for(envelope.event_type)
        failures: list[str] = []
        for handler in handlers:
            try:
                handler(envelope)
            except Exception as exc:
                name = getattr(handler, "__qualname__", repr(handler))
                failures.append(f"{name}: {type(exc).__name__}: {exc}")
                logger.exception(
                    "event_handler_failed",
                    extra={
                        "event_id": str(envelope.event_id),
                        "event_type": envelope.event_type,
                        "handler": name,
                    },
                )
        if failures:
            raise EventDeliveryError(
                str(envelope.event_id), envelope.event_type, failures,
            )
        return len(handlers)
