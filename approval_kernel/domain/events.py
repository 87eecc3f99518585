"""
Outbound approval events (``approval_kernel.domain.events``).

Responsibility
--------------
Typed, immutable event records emitted by the state machine and the
reconciliation sweep, and the envelope that carries them through the
outbox and the event bus.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  Serialization is to plain
JSON-compatible dicts (UUIDs and datetimes as strings) so payloads can be
stored in the outbox table and handed to any transport.

Invariants enforced
-------------------
* Every event type string is unique and maps to exactly one class
  (``EVENT_TYPES``).
* ``decode_event(envelope)`` reverses ``to_payload``.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from datetime import datetime
from typing import Any, ClassVar
from uuid import UUID


def _encode(value: Any) -> Any:
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "value"):
        return value.value
    return value


@dataclass(frozen=True)
class ApprovalEvent:
    """Base for all outbound events."""

    event_type: ClassVar[str] = ""
    _uuid_fields: ClassVar[frozenset[str]] = frozenset()

    instance_id: UUID
    target_type: str
    target_id: UUID

    def to_payload(self) -> dict[str, Any]:
        return {key: _encode(value) for key, value in asdict(self).items()}

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "ApprovalEvent":
        uuid_fields = {"instance_id", "target_id"} | cls._uuid_fields
        kwargs: dict[str, Any] = {}
        for f in fields(cls):
            value = payload.get(f.name)
            if value is not None and f.name in uuid_fields:
                value = UUID(value)
            kwargs[f.name] = value
        return cls(**kwargs)


@dataclass(frozen=True)
class StepPending(ApprovalEvent):
    """Fired on initiation, on every step advance, and on resume."""

    event_type: ClassVar[str] = "step_pending"
    _uuid_fields: ClassVar[frozenset[str]] = frozenset({"approver_user_id"})

    step_order: int = 0
    step_name: str = ""
    approver_role_code: str | None = None
    approver_user_id: UUID | None = None


@dataclass(frozen=True)
class ApprovalCompleted(ApprovalEvent):
    """Fired exactly once per instance, on approval or rejection."""

    event_type: ClassVar[str] = "completed"
    _uuid_fields: ClassVar[frozenset[str]] = frozenset({"approver_id"})

    status: str = ""
    approver_id: UUID | None = None
    comment: str | None = None


@dataclass(frozen=True)
class ApprovalEscalated(ApprovalEvent):
    event_type: ClassVar[str] = "escalated"

    step_order: int = 0
    escalated_from_role: str | None = None
    escalated_to_role: str | None = None
    hours_pending: float = 0.0


@dataclass(frozen=True)
class ApprovalReturned(ApprovalEvent):
    event_type: ClassVar[str] = "returned"
    _uuid_fields: ClassVar[frozenset[str]] = frozenset({"returned_by_id"})

    comment: str = ""
    returned_by_id: UUID | None = None


@dataclass(frozen=True)
class ApprovalDelegated(ApprovalEvent):
    event_type: ClassVar[str] = "delegated"
    _uuid_fields: ClassVar[frozenset[str]] = frozenset(
        {"delegated_by_id", "delegated_to_id"}
    )

    delegated_by_id: UUID | None = None
    delegated_to_id: UUID | None = None
    reason: str | None = None


EVENT_TYPES: dict[str, type[ApprovalEvent]] = {
    cls.event_type: cls
    for cls in (
        StepPending,
        ApprovalCompleted,
        ApprovalEscalated,
        ApprovalReturned,
        ApprovalDelegated,
    )
}


@dataclass(frozen=True)
class EventEnvelope:
    """What subscribers receive: identity and timing plus the raw payload.

    Delivery is at-least-once; subscribers dedupe on ``event_id``.
    """

    event_id: UUID
    event_type: str
    instance_id: UUID
    occurred_at: datetime
    payload: dict[str, Any]

    @property
    def event(self) -> ApprovalEvent:
        return decode_event(self)


def decode_event(envelope: EventEnvelope) -> ApprovalEvent:
    """Rebuild the typed event carried by ``envelope``.

    Raises:
        KeyError: if the envelope's event type is unknown.
    """
    return EVENT_TYPES[envelope.event_type].from_payload(envelope.payload)
