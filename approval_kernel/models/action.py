"""
Module: approval_kernel.models.action
Responsibility: ORM persistence for the approval action ledger.

Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Append-only: before_update / before_delete listeners reject any
      mutation of an existing row.
    - Action values limited by CHECK constraint.

Failure modes:
    - ImmutabilityViolationError on UPDATE/DELETE.

Audit relevance:
    Every successful transition writes exactly one row here in the same
    transaction as the instance change.  The reconciliation sweep reads
    this table (not instance state) to decide whether a step has already
    been escalated.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import CheckConstraint, ForeignKey, Index, Integer, String, Text, event
from sqlalchemy.orm import Mapped, mapped_column

from approval_kernel.db.base import Base, UTCDateTime, UUIDString
from approval_kernel.exceptions import ImmutabilityViolationError

if TYPE_CHECKING:
    from approval_kernel.domain.approval import ActionRecord


class ApprovalActionModel(Base):
    """Persistent ledger row. Append-only."""

    __tablename__ = "approval_actions"

    __table_args__ = (
        CheckConstraint(
            "action IN ('approve', 'reject', 'return', 'delegate', "
            "'auto_approve', 'escalate', 'resume', 'cancel')",
            name="ck_approval_actions_valid_action",
        ),
        Index("ix_approval_actions_instance_acted", "instance_id", "acted_at"),
        Index(
            "ix_approval_actions_instance_action_step",
            "instance_id", "action", "step_order",
        ),
        Index("ix_approval_actions_action_acted", "action", "acted_at"),
    )

    instance_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("approval_instances.id"),
        nullable=False,
    )
    step_order: Mapped[int] = mapped_column(Integer, nullable=False)
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    actor_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    delegated_to_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    escalated_to_role: Mapped[str | None] = mapped_column(String(100), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)
    acted_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    def __repr__(self) -> str:
        return (
            f"<ApprovalAction {self.id} instance={self.instance_id} "
            f"step={self.step_order} action={self.action}>"
        )

    def to_dto(self) -> ActionRecord:
        """Convert ORM model to frozen domain DTO."""
        from approval_kernel.domain.approval import ActionRecord, ActionType

        return ActionRecord(
            action_id=self.id,
            instance_id=self.instance_id,
            step_order=self.step_order,
            action=ActionType(self.action),
            actor_id=self.actor_id,
            comment=self.comment,
            delegated_to_id=self.delegated_to_id,
            escalated_to_role=self.escalated_to_role,
            ip_address=self.ip_address,
            user_agent=self.user_agent,
            acted_at=self.acted_at,
        )


@event.listens_for(ApprovalActionModel, "before_update")
def prevent_action_update(mapper, connection, target):
    """Prevent updates to ledger rows."""
    raise ImmutabilityViolationError(
        entity_type="ApprovalAction",
        entity_id=str(target.id),
        reason="Approval actions are immutable -- cannot modify",
    )


@event.listens_for(ApprovalActionModel, "before_delete")
def prevent_action_delete(mapper, connection, target):
    """Prevent deletion of ledger rows."""
    raise ImmutabilityViolationError(
        entity_type="ApprovalAction",
        entity_id=str(target.id),
        reason="Approval actions are immutable -- cannot delete",
    )
