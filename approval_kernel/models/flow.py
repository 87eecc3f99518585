"""
Module: approval_kernel.models.flow
Responsibility: ORM persistence for flow templates and their ordered steps.

Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Flow codes are unique.
    - step_order is unique within a flow (UNIQUE); >= 1 is checked by the
      catalog service so reorders can pass through temporary values.
    - approver_type values are limited to the known approver types.

Failure modes:
    - IntegrityError on duplicate flow code or duplicate step order (the
      catalog service checks first and raises typed errors).
"""

from __future__ import annotations

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
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from approval_kernel.db.base import Base, TrackedBase, UUIDString

if TYPE_CHECKING:
    from approval_kernel.domain.approval import FlowDefinition, StepDefinition

APPROVER_TYPE_CHECK = (
    "approver_type IN ('role', 'manager', 'skip_manager', 'branch_manager', "
    "'regional_manager', 'department_head', 'specific_user')"
)


class ApprovalFlowModel(TrackedBase):
    """Persistent flow template.

    Contract:
        Edited only through FlowCatalogService.  Running instances never
        read these rows after initiation; they carry their own snapshot.
    """

    __tablename__ = "approval_flows"

    __table_args__ = (
        Index(
            "ix_approval_flows_target_active_priority",
            "target_type", "is_active", "priority",
        ),
    )

    code: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    target_type: Mapped[str] = mapped_column(String(100), nullable=False)
    branch_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    region_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    department_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    position_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    steps: Mapped[list["ApprovalFlowStepModel"]] = relationship(
        "ApprovalFlowStepModel",
        back_populates="flow",
        order_by="ApprovalFlowStepModel.step_order",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<ApprovalFlow {self.code} target={self.target_type} active={self.is_active}>"

    def to_dto(self) -> FlowDefinition:
        """Convert ORM model to frozen domain DTO."""
        from approval_kernel.domain.approval import FlowDefinition

        return FlowDefinition(
            flow_id=self.id,
            code=self.code,
            name=self.name,
            target_type=self.target_type,
            description=self.description,
            branch_id=self.branch_id,
            region_id=self.region_id,
            department_id=self.department_id,
            position_id=self.position_id,
            priority=self.priority,
            is_active=self.is_active,
            steps=tuple(
                s.to_dto() for s in sorted(self.steps, key=lambda s: s.step_order)
            ),
        )


class ApprovalFlowStepModel(Base):
    """Persistent step of a flow template."""

    __tablename__ = "approval_flow_steps"

    __table_args__ = (
        UniqueConstraint("flow_id", "step_order", name="uq_approval_flow_steps_order"),
        CheckConstraint(
            APPROVER_TYPE_CHECK,
            name="ck_approval_flow_steps_approver_type",
        ),
        CheckConstraint(
            "auto_approve_hours >= 0 AND escalation_hours >= 0",
            name="ck_approval_flow_steps_hours",
        ),
    )

    flow_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("approval_flows.id", ondelete="CASCADE"),
        nullable=False,
    )
    step_order: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False, default="Approval Step")
    approver_type: Mapped[str] = mapped_column(String(50), nullable=False, default="role")
    approver_role_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    specific_approver_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    is_final: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    auto_approve_hours: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    escalation_hours: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    escalation_role_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    instructions: Mapped[str | None] = mapped_column(Text, nullable=True)
    can_skip: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    flow: Mapped["ApprovalFlowModel"] = relationship(
        "ApprovalFlowModel",
        back_populates="steps",
    )

    def __repr__(self) -> str:
        return f"<ApprovalFlowStep flow={self.flow_id} order={self.step_order} {self.name}>"

    def to_dto(self) -> StepDefinition:
        """Convert ORM model to frozen domain DTO."""
        from approval_kernel.domain.approval import ApproverType, StepDefinition

        return StepDefinition(
            step_id=self.id,
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
