"""
Module: approval_kernel.selectors.approval_selector
Responsibility: Read API for approval instances and the action ledger:
    pending-for-staff, pending-for-role, my-submitted, instance-by-target,
    instance-by-id, history, aggregate counts and dashboard statistics.
Architecture position: Kernel > Selectors.  Read-only; returns frozen DTOs.

Invariants enforced:
    - Pending queues list only status ``pending``.  Returned instances wait
      on the requester and are not in any approver's queue.
    - Queue order: urgent first, then oldest first.
    - "Today" is the UTC calendar day of the injected clock.

Failure modes:
    - InstanceNotFoundError from get_instance.
    - DirectoryRequiredError from pending_for_staff on a selector built
      without a staff directory.
    - StaffNotFoundError from pending_for_staff when the staff member is
      unknown to the directory.
"""

from __future__ import annotations

from collections import Counter
from datetime import date, datetime, time, timedelta, timezone
from uuid import UUID

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from approval_kernel.domain.approval import (
    ActionRecord,
    ActionType,
    ApprovalInstance,
    ApprovalStats,
    InstanceStatus,
)
from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.directory import StaffDirectory
from approval_kernel.exceptions import (
    DirectoryRequiredError,
    InstanceNotFoundError,
    StaffNotFoundError,
)
from approval_kernel.models.action import ApprovalActionModel
from approval_kernel.models.instance import ApprovalInstanceModel
from approval_kernel.selectors.base import BaseSelector

_APPROVED_ACTIONS = (ActionType.APPROVE.value, ActionType.AUTO_APPROVE.value)


class ApprovalSelector(BaseSelector):
    """Read-only queries over approval instances and actions."""

    def __init__(
        self,
        session: Session,
        directory: StaffDirectory | None = None,
        clock: Clock | None = None,
    ):
        super().__init__(session)
        self.directory = directory
        self.clock = clock or SystemClock()

    # ------------------------------------------------------------------
    # Instances
    # ------------------------------------------------------------------

    def get_instance(self, instance_id: UUID) -> ApprovalInstance:
        model = self.session.get(ApprovalInstanceModel, instance_id)
        if model is None:
            raise InstanceNotFoundError(str(instance_id))
        return model.to_dto()

    def instance_by_target(self, target_type: str, target_id: UUID) -> ApprovalInstance | None:
        """Most recent instance for a target request, any status."""
        model = self.session.execute(
            select(ApprovalInstanceModel)
            .where(
                ApprovalInstanceModel.target_type == target_type,
                ApprovalInstanceModel.target_id == target_id,
            )
            .order_by(ApprovalInstanceModel.created_at.desc())
            .limit(1)
        ).scalar_one_or_none()
        return model.to_dto() if model is not None else None

    def pending_for_staff(self, staff_id: UUID) -> list[ApprovalInstance]:
        """Pending instances routed to the staff member or to one of their roles."""
        return [
            m.to_dto()
            for m in self.session.execute(self._pending_for_staff_stmt(staff_id)).scalars()
        ]

    def pending_for_role(self, role_code: str) -> list[ApprovalInstance]:
        stmt = (
            select(ApprovalInstanceModel)
            .where(
                ApprovalInstanceModel.status == InstanceStatus.PENDING.value,
                ApprovalInstanceModel.current_approver_role == role_code,
            )
            .order_by(
                ApprovalInstanceModel.is_urgent.desc(),
                ApprovalInstanceModel.created_at,
            )
        )
        return [m.to_dto() for m in self.session.execute(stmt).scalars()]

    def submitted_by(self, requester_id: UUID) -> list[ApprovalInstance]:
        """All instances a requester started, newest first."""
        stmt = (
            select(ApprovalInstanceModel)
            .where(ApprovalInstanceModel.requester_id == requester_id)
            .order_by(ApprovalInstanceModel.created_at.desc())
        )
        return [m.to_dto() for m in self.session.execute(stmt).scalars()]

    def pending_instance_ids(self) -> list[UUID]:
        """Ids of every pending instance, oldest first (reconciliation input)."""
        return list(
            self.session.execute(
                select(ApprovalInstanceModel.id)
                .where(ApprovalInstanceModel.status == InstanceStatus.PENDING.value)
                .order_by(ApprovalInstanceModel.created_at)
            ).scalars()
        )

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    def history(self, instance_id: UUID) -> list[ActionRecord]:
        stmt = (
            select(ApprovalActionModel)
            .where(ApprovalActionModel.instance_id == instance_id)
            .order_by(ApprovalActionModel.acted_at, ApprovalActionModel.step_order)
        )
        return [m.to_dto() for m in self.session.execute(stmt).scalars()]

    def action_counts_by_day(
        self,
        since: datetime,
        until: datetime | None = None,
    ) -> dict[tuple[date, ActionType], int]:
        """Action counts bucketed by UTC day and action type."""
        stmt = select(ApprovalActionModel.action, ApprovalActionModel.acted_at).where(
            ApprovalActionModel.acted_at >= since,
        )
        if until is not None:
            stmt = stmt.where(ApprovalActionModel.acted_at < until)
        counts: Counter[tuple[date, ActionType]] = Counter()
        for action, acted_at in self.session.execute(stmt):
            counts[(acted_at.astimezone(timezone.utc).date(), ActionType(action))] += 1
        return dict(counts)

    def stats(self, staff_id: UUID | None = None) -> ApprovalStats:
        """Dashboard counters.

        ``pending`` always counts every pending instance.  With ``staff_id``
        the today-counts are that staff member's own decisions, so
        auto-approvals count as approvals only in the global view.
        """
        pending = self.session.execute(
            select(func.count(ApprovalInstanceModel.id)).where(
                ApprovalInstanceModel.status == InstanceStatus.PENDING.value,
            )
        ).scalar_one()

        start = datetime.combine(
            self.clock.now().astimezone(timezone.utc).date(), time.min, tzinfo=timezone.utc,
        )
        end = start + timedelta(days=1)
        approved_today = self._count_actions(_APPROVED_ACTIONS, start, end, staff_id)
        rejected_today = self._count_actions(
            (ActionType.REJECT.value,), start, end, staff_id,
        )

        durations = [
            (resolved - created).total_seconds() / 3600.0
            for created, resolved in self.session.execute(
                select(
                    ApprovalInstanceModel.created_at,
                    ApprovalInstanceModel.resolved_at,
                ).where(
                    ApprovalInstanceModel.status == InstanceStatus.APPROVED.value,
                    ApprovalInstanceModel.resolved_at.is_not(None),
                )
            )
        ]
        avg_hours = round(sum(durations) / len(durations), 2) if durations else None

        return ApprovalStats(
            pending=pending,
            approved_today=approved_today,
            rejected_today=rejected_today,
            avg_resolution_hours=avg_hours,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _pending_for_staff_stmt(self, staff_id: UUID):
        if self.directory is None:
            raise DirectoryRequiredError("pending_for_staff")
        staff = self.directory.get_staff(staff_id)
        if staff is None:
            raise StaffNotFoundError(str(staff_id))

        routed = [ApprovalInstanceModel.current_approver_id == staff_id]
        if staff.role_codes:
            routed.append(
                ApprovalInstanceModel.current_approver_role.in_(sorted(staff.role_codes))
            )
        return (
            select(ApprovalInstanceModel)
            .where(
                ApprovalInstanceModel.status == InstanceStatus.PENDING.value,
                or_(*routed),
            )
            .order_by(
                ApprovalInstanceModel.is_urgent.desc(),
                ApprovalInstanceModel.created_at,
            )
        )

    def _count_actions(
        self,
        actions: tuple[str, ...],
        since: datetime,
        until: datetime,
        actor_id: UUID | None,
    ) -> int:
        stmt = select(func.count(ApprovalActionModel.id)).where(
            ApprovalActionModel.action.in_(actions),
            ApprovalActionModel.acted_at >= since,
            ApprovalActionModel.acted_at < until,
        )
        if actor_id is not None:
            stmt = stmt.where(ApprovalActionModel.actor_id == actor_id)
        return self.session.execute(stmt).scalar_one()
