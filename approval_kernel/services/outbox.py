"""
EventOutbox -- transactional enqueue of outbound approval events.

Responsibility:
    Serialize an ``ApprovalEvent`` into ``approval_outbox`` inside the
    caller's transaction.  Delivery happens later, after commit, through
    ``EventRelay``.

Architecture position:
    Kernel > Services.  Flush-only.

Invariants enforced:
    - Events are written in the same transaction as the state change; a
      rolled-back transition leaves no event behind.
"""

from __future__ import annotations

from uuid import uuid4

from approval_kernel.domain.events import ApprovalEvent, EventEnvelope
from approval_kernel.logging_config import get_logger
from approval_kernel.models.outbox import ApprovalOutboxModel
from approval_kernel.services.base import BaseService

logger = get_logger("services.outbox")


class EventOutbox(BaseService):
    """Write side of the transactional outbox."""

    def enqueue(self, event: ApprovalEvent) -> EventEnvelope:
        now = self.clock.now()
        model = ApprovalOutboxModel(
            event_id=uuid4(),
            event_type=event.event_type,
            instance_id=event.instance_id,
            payload=event.to_payload(),
            occurred_at=now,
            attempts=0,
            next_attempt_at=now,
        )
        self.session.add(model)
        self.session.flush()

        logger.debug(
            "approval_event_enqueued",
            extra={
                "event_id": str(model.event_id),
                "event_type": model.event_type,
                "instance_id": str(model.instance_id),
            },
        )
        return EventEnvelope(
            event_id=model.event_id,
            event_type=model.event_type,
            instance_id=model.instance_id,
            occurred_at=now,
            payload=model.payload,
        )
