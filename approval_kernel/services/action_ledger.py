"""
ActionLedger -- append-only audit trail of approval transitions.

Responsibility:
    The single write path for ``approval_actions`` and the ledger-derived
    lookups the state machine and the reconciliation sweep depend on:
    instance history, "already escalated at step N", and the time the
    current step was entered.

Architecture position:
    Kernel > Services.  Flush-only; the caller owns the transaction.

Invariants enforced:
    - Rows are inserted, never updated or deleted (ORM listeners in
      models/action.py back this up).
    - ``step_entered_at`` is derived solely from ledger rows plus the
      instance creation time, never from mutable instance columns.

Failure modes:
    - ImmutabilityViolationError if anything attempts to mutate a row.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import and_, func, or_, select

from approval_kernel.domain.approval import (
    STEP_COMPLETING_ACTIONS,
    ActionRecord,
    ActionType,
)
from approval_kernel.logging_config import get_logger
from approval_kernel.models.action import ApprovalActionModel
from approval_kernel.services.base import BaseService

logger = get_logger("services.action_ledger")


class ActionLedger(BaseService):
    """Append and query approval actions."""

    def append(
        self,
        instance_id: UUID,
        step_order: int,
        action: ActionType,
        actor_id: UUID | None = None,
        comment: str | None = None,
        delegated_to_id: UUID | None = None,
        escalated_to_role: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        acted_at: datetime | None = None,
    ) -> ActionRecord:
        model = ApprovalActionModel(
            instance_id=instance_id,
            step_order=step_order,
            action=ActionType(action).value,
            actor_id=actor_id,
            comment=comment,
            delegated_to_id=delegated_to_id,
            escalated_to_role=escalated_to_role,
            ip_address=ip_address,
            user_agent=user_agent,
            acted_at=acted_at or self.clock.now(),
        )
        self.session.add(model)
        self.session.flush()

        logger.debug(
            "approval_action_appended",
            extra={
                "instance_id": str(instance_id),
                "step_order": step_order,
                "action": model.action,
                "actor_id": str(actor_id) if actor_id else None,
            },
        )
        return model.to_dto()

    def history(self, instance_id: UUID) -> list[ActionRecord]:
        """All actions for an instance, oldest first."""
        models = self.session.execute(
            select(ApprovalActionModel)
            .where(ApprovalActionModel.instance_id == instance_id)
            .order_by(ApprovalActionModel.acted_at, ApprovalActionModel.step_order)
        ).scalars().all()
        return [m.to_dto() for m in models]

    def has_action_at_step(
        self,
        instance_id: UUID,
        action: ActionType,
        step_order: int,
    ) -> bool:
        found = self.session.execute(
            select(ApprovalActionModel.id)
            .where(
                ApprovalActionModel.instance_id == instance_id,
                ApprovalActionModel.action == ActionType(action).value,
                ApprovalActionModel.step_order == step_order,
            )
            .limit(1)
        ).first()
        return found is not None

    def step_entered_at(
        self,
        instance_id: UUID,
        step_order: int,
        created_at: datetime,
    ) -> datetime:
        """When the instance arrived at (or resumed on) ``step_order``.

        The latest step-completing action at a lower order, or the latest
        resume at this order; the instance creation time when neither
        exists.
        """
        completing = [a.value for a in STEP_COMPLETING_ACTIONS]
        latest = self.session.execute(
            select(func.max(ApprovalActionModel.acted_at)).where(
                ApprovalActionModel.instance_id == instance_id,
                or_(
                    and_(
                        ApprovalActionModel.action.in_(completing),
                        ApprovalActionModel.step_order < step_order,
                    ),
                    and_(
                        ApprovalActionModel.action == ActionType.RESUME.value,
                        ApprovalActionModel.step_order == step_order,
                    ),
                ),
            )
        ).scalar_one_or_none()
        if latest is None:
            return created_at
        return max(latest, created_at)

