"""
Module: approval_kernel.models.instance
Responsibility: ORM persistence for approval instances and the step
    snapshot each instance takes of its flow at initiation.

Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Status values limited by CHECK constraint; transition rules live in
      the service layer (INSTANCE_TRANSITIONS).
    - At most one open (pending/returned) instance per target: partial
      unique index on PostgreSQL and SQLite.
    - Optimistic version check: ``version`` is the mapper's version_id_col,
      so an UPDATE from a stale read raises StaleDataError.  Services also
      take a row lock, so this only fires when a caller bypasses it.
    - Step snapshot rows are immutable (before_update/before_delete).

Failure modes:
    - IntegrityError on a second open instance for the same target.
    - StaleDataError on concurrent modification without the row lock.
    - ImmutabilityViolationError on snapshot UPDATE/DELETE.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from approval_kernel.db.base import Base, UTCDateTime, UUIDString
from approval_kernel.exceptions import ImmutabilityViolationError
from approval_kernel.models.flow import APPROVER_TYPE_CHECK

if TYPE_CHECKING:
    from approval_kernel.domain.approval import ApprovalInstance, StepDefinition

_OPEN_STATUS_PREDICATE = "status IN ('pending', 'returned')"


class ApprovalInstanceModel(Base):
    """Persistent approval instance.

    Contract:
        Mutated only by ApprovalService under a row lock.  Terminal
        statuses (approved, rejected, cancelled) are never left.
    """

    __tablename__ = "approval_instances"

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'returned', 'approved', 'rejected', 'cancelled')",
            name="ck_approval_instances_valid_status",
        ),
        Index(
            "ix_approval_instances_open_target_unique",
            "target_type", "target_id",
            unique=True,
            postgresql_where=text(_OPEN_STATUS_PREDICATE),
            sqlite_where=text(_OPEN_STATUS_PREDICATE),
        ),
        Index(
            "ix_approval_instances_target_created",
            "target_type", "target_id", "created_at",
        ),
        Index(
            "ix_approval_instances_status_role",
            "status", "current_approver_role",
        ),
        Index(
            "ix_approval_instances_requester_created",
            "requester_id", "created_at",
        ),
    )

    flow_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("approval_flows.id", ondelete="SET NULL"),
        nullable=True,
    )
    flow_code: Mapped[str] = mapped_column(String(100), nullable=False)
    target_type: Mapped[str] = mapped_column(String(100), nullable=False)
    target_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    requester_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    current_step_order: Mapped[int] = mapped_column(Integer, nullable=False)
    current_approver_role: Mapped[str | None] = mapped_column(String(100), nullable=True)
    current_approver_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    is_urgent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    deadline: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    final_comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    steps: Mapped[list["ApprovalInstanceStepModel"]] = relationship(
        "ApprovalInstanceStepModel",
        back_populates="instance",
        order_by="ApprovalInstanceStepModel.step_order",
        cascade="save-update, merge",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return (
            f"<ApprovalInstance {self.id} {self.target_type}/{self.target_id} "
            f"status={self.status} step={self.current_step_order}>"
        )

    def to_dto(self) -> ApprovalInstance:
        """Convert ORM model to frozen domain DTO."""
        from approval_kernel.domain.approval import (
            ApprovalInstance as ApprovalInstanceDTO,
            InstanceStatus,
        )

        return ApprovalInstanceDTO(
            instance_id=self.id,
            flow_id=self.flow_id,
            flow_code=self.flow_code,
            target_type=self.target_type,
            target_id=self.target_id,
            requester_id=self.requester_id,
            status=InstanceStatus(self.status),
            current_step_order=self.current_step_order,
            current_approver_role=self.current_approver_role,
            current_approver_id=self.current_approver_id,
            is_urgent=self.is_urgent,
            deadline=self.deadline,
            final_comment=self.final_comment,
            resolved_by_id=self.resolved_by_id,
            resolved_at=self.resolved_at,
            created_at=self.created_at,
            updated_at=self.updated_at,
            version=self.version,
            steps=tuple(s.to_dto() for s in self.steps),
        )


class ApprovalInstanceStepModel(Base):
    """Immutable copy of one flow step, taken when the instance was created."""

    __tablename__ = "approval_instance_steps"

    __table_args__ = (
        UniqueConstraint(
            "instance_id", "step_order",
            name="uq_approval_instance_steps_order",
        ),
        CheckConstraint(
            APPROVER_TYPE_CHECK,
            name="ck_approval_instance_steps_approver_type",
        ),
    )

    instance_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("approval_instances.id"),
        nullable=False,
    )
    source_step_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    step_order: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    approver_type: Mapped[str] = mapped_column(String(50), nullable=False)
    approver_role_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    specific_approver_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    is_final: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    auto_approve_hours: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    escalation_hours: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    escalation_role_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    instructions: Mapped[str | None] = mapped_column(Text, nullable=True)
    can_skip: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    instance: Mapped["ApprovalInstanceModel"] = relationship(
        "ApprovalInstanceModel",
        back_populates="steps",
    )

    def to_dto(self) -> StepDefinition:
        """Convert ORM model to frozen domain DTO."""
        from approval_kernel.domain.approval import ApproverType, StepDefinition

        return StepDefinition(
            step_id=self.source_step_id,
            step_order=self.step_order,
            name=self.name,
            approver_type=ApproverType(self.approver_type),
            approver_role_code=self.approver_role_code,
            specific_approver_id=self.specific_approver_id,
            is_final=self.is_final,
            auto_approve_hours=self.auto_approve_hours,
            escalation_hours=self.escalation_hours,
            escalation_role_code=self.escalation_role_code,
            instructions=self.instructions,
            can_skip=self.can_skip,
        )

    @classmethod
    def from_dto(cls, dto: StepDefinition) -> ApprovalInstanceStepModel:
        """Snapshot a template step definition."""
        return cls(
            source_step_id=dto.step_id,
            step_order=dto.step_order,
            name=dto.name,
            approver_type=dto.approver_type.value,
            approver_role_code=dto.approver_role_code,
            specific_approver_id=dto.specific_approver_id,
            is_final=dto.is_final,
            auto_approve_hours=dto.auto_approve_hours,
            escalation_hours=dto.escalation_hours,
            escalation_role_code=dto.escalation_role_code,
            instructions=dto.instructions,
            can_skip=dto.can_skip,
        )


# =============================================================================
# ORM-Level Immutability for Step Snapshots
# =============================================================================


@event.listens_for(ApprovalInstanceStepModel, "before_update")
def prevent_snapshot_update(mapper, connection, target):
    """Prevent updates to instance step snapshots."""
    raise ImmutabilityViolationError(
        entity_type="ApprovalInstanceStep",
        entity_id=str(target.id),
        reason="Instance step snapshots are immutable -- cannot modify",
    )


@event.listens_for(ApprovalInstanceStepModel, "before_delete")
def prevent_snapshot_delete(mapper, connection, target):
    """Prevent deletion of instance step snapshots."""
    raise ImmutabilityViolationError(
        entity_type="ApprovalInstanceStep",
        entity_id=str(target.id),
        reason="Instance step snapshots are immutable -- cannot delete",
    )
