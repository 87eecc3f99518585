"""
Module: approval_kernel.models.outbox
Responsibility: ORM persistence for outbound events awaiting delivery.

Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - event_id is unique; subscribers dedupe on it.
    - A row is written in the same transaction as the state change that
      produced it, so no event exists without its state and vice versa.
    - delivered_at is set once, by the relay, after every subscriber
      handled the event.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from approval_kernel.db.base import Base, UTCDateTime, UUIDString


class ApprovalOutboxModel(Base):
    """One outbound event."""

    __tablename__ = "approval_outbox"

    __table_args__ = (
        Index(
            "ix_approval_outbox_undelivered",
            "delivered_at", "next_attempt_at", "occurred_at",
        ),
        Index("ix_approval_outbox_instance", "instance_id"),
    )

    event_id: Mapped[UUID] = mapped_column(
        UUIDString(), nullable=False, unique=True, default=uuid4,
    )
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    instance_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    delivered_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    next_attempt_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<ApprovalOutbox {self.event_id} {self.event_type} "
            f"delivered={self.delivered_at is not None} attempts={self.attempts}>"
        )
