"""
approval_kernel.services.approval_service -- Approval instance state machine.

Responsibility:
    Creates approval instances and applies every transition to them:
    approve, reject, delegate, return-for-info, resume, cancel, and the
    time-driven auto-approve / escalate used by the reconciliation sweep.
    Each transition writes the instance change, one ledger row and any
    outbound events in the caller's transaction.

Architecture position:
    Kernel > Services.  May import from domain/, models/, db/ and sibling
    services (catalog, ledger, outbox).  Flush-only.

Invariants enforced:
    - Per-instance serialization: every transition re-reads the instance
      with SELECT ... FOR UPDATE (populate_existing) before validating, and
      the version column rejects a stale writer.
    - Terminal statuses are absorbing; ``returned`` only leaves via resume
      or cancel.
    - current_step_order always points into the instance's own step
      snapshot, taken at initiation.
    - Approving a final (or the highest) step finalizes to approved;
      rejecting finalizes to rejected at any step without moving the
      step pointer.
    - ``completed`` is emitted exactly once per instance.
    - At most one escalation per (instance, step_order), decided from the
      ledger.

Failure modes:
    - InstanceNotFoundError, StaffNotFoundError.
    - AlreadyProcessedError: terminal status, moved step, or lost race.
    - AwaitingResubmissionError: decision attempted on a returned instance.
    - InvalidStepError: pointer does not resolve in the snapshot.
    - NotAuthorizedError: actor fails the step's approver rule.
    - CommentRequiredError: reject / return without a comment.
    - DuplicateInstanceError, NoMatchingFlowError, EmptyFlowError on
      initiation.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from approval_kernel.domain.approval import (
    OPEN_INSTANCE_STATUSES,
    TERMINAL_INSTANCE_STATUSES,
    ActionType,
    ApprovalInstance,
    InstanceStatus,
    StepDefinition,
    can_transition,
    find_step,
    first_step,
    is_finalizing_step,
    next_step,
)
from approval_kernel.domain.approvers import assignment_for, is_authorized
from approval_kernel.domain.clock import Clock
from approval_kernel.domain.directory import StaffDirectory, StaffProfile
from approval_kernel.domain.events import (
    ApprovalCompleted,
    ApprovalDelegated,
    ApprovalEscalated,
    ApprovalReturned,
    StepPending,
)
from approval_kernel.domain.timeouts import (
    TimeoutDecision,
    TimeoutOutcome,
    evaluate_timeouts,
    hours_between,
)
from approval_kernel.exceptions import (
    AlreadyProcessedError,
    AwaitingResubmissionError,
    CommentRequiredError,
    DuplicateInstanceError,
    InstanceNotFoundError,
    InvalidStepError,
    InvalidTransitionError,
    NotAuthorizedError,
    StaffNotFoundError,
)
from approval_kernel.logging_config import get_logger
from approval_kernel.models.instance import (
    ApprovalInstanceModel,
    ApprovalInstanceStepModel,
)
from approval_kernel.services.action_ledger import ActionLedger
from approval_kernel.services.base import BaseService
from approval_kernel.services.flow_catalog import FlowCatalogService
from approval_kernel.services.outbox import EventOutbox

logger = get_logger("services.approval_service")


class ApprovalService(BaseService):
    """Applies approval transitions inside the caller's transaction."""

    def __init__(
        self,
        session: Session,
        directory: StaffDirectory,
        clock: Clock | None = None,
        catalog: FlowCatalogService | None = None,
        ledger: ActionLedger | None = None,
        outbox: EventOutbox | None = None,
    ) -> None:
        super().__init__(session, clock)
        self.directory = directory
        self.catalog = catalog or FlowCatalogService(session, self.clock)
        self.ledger = ledger or ActionLedger(session, self.clock)
        self.outbox = outbox or EventOutbox(session, self.clock)

    # ------------------------------------------------------------------
    # Initiation
    # ------------------------------------------------------------------

    def initiate(
        self,
        target_type: str,
        target_id: UUID,
        flow_code: str | None = None,
        requester_id: UUID | None = None,
        is_urgent: bool = False,
        deadline: datetime | None = None,
    ) -> ApprovalInstance:
        """Start an approval for a target request at its flow's first step."""
        requester = self._require_staff(requester_id) if requester_id else None

        existing = self.session.execute(
            select(ApprovalInstanceModel.id).where(
                ApprovalInstanceModel.target_type == target_type,
                ApprovalInstanceModel.target_id == target_id,
                ApprovalInstanceModel.status.in_(
                    [s.value for s in OPEN_INSTANCE_STATUSES]
                ),
            )
        ).scalar_one_or_none()
        if existing is not None:
            raise DuplicateInstanceError(target_type, str(target_id), str(existing))

        flow = self.catalog.select_flow_for_initiation(
            target_type, flow_code=flow_code, requester=requester,
        )
        start = first_step(flow.steps)
        assignment = assignment_for(start, requester)
        now = self.clock.now()

        model = ApprovalInstanceModel(
            flow_id=flow.flow_id,
            flow_code=flow.code,
            target_type=target_type,
            target_id=target_id,
            requester_id=requester_id,
            status=InstanceStatus.PENDING.value,
            current_step_order=start.step_order,
            current_approver_role=assignment.role_code,
            current_approver_id=assignment.approver_id,
            is_urgent=is_urgent,
            deadline=deadline,
            created_at=now,
            updated_at=now,
        )
        model.steps = [ApprovalInstanceStepModel.from_dto(s) for s in flow.steps]
        self.session.add(model)
        self.session.flush()

        self._emit_step_pending(model, start)

        logger.info(
            "approval_initiated",
            extra={
                "instance_id": str(model.id),
                "flow_code": flow.code,
                "target_type": target_type,
                "target_id": str(target_id),
                "requester_id": str(requester_id) if requester_id else None,
                "step_order": start.step_order,
                "is_urgent": is_urgent,
            },
        )
        return model.to_dto()

    # ------------------------------------------------------------------
    # Approver decisions
    # ------------------------------------------------------------------

    def approve(
        self,
        instance_id: UUID,
        approver_id: UUID,
        comment: str | None = None,
        expected_step_order: int | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> ApprovalInstance:
        """Approve the current step; advance or finalize.

        ``expected_step_order`` lets a caller assert which step it reviewed.
        If another approver moved the instance on first, the call fails with
        AlreadyProcessedError instead of approving the next step.

        ``ip_address`` and ``user_agent`` are recorded on the ledger row for
        audit, as they are for reject, delegate and return.
        """
        model = self._lock_instance(instance_id)
        self._require_decidable(model)
        if (
            expected_step_order is not None
            and model.current_step_order != expected_step_order
        ):
            raise AlreadyProcessedError(
                str(model.id),
                model.status,
                detail=(
                    f"step {expected_step_order} already decided; "
                    f"instance is at step {model.current_step_order}"
                ),
            )
        step = self._current_step(model)
        self._authorize(model, step, approver_id)

        now = self.clock.now()
        acted_step = model.current_step_order
        self._advance_or_finalize(model, step, approver_id, comment, now)
        self._flush(model)
        self.ledger.append(
            model.id, acted_step, ActionType.APPROVE,
            actor_id=approver_id, comment=comment,
            ip_address=ip_address, user_agent=user_agent, acted_at=now,
        )
        self._emit_after_advance(model, approver_id, comment)

        logger.info(
            "approval_step_approved",
            extra={
                "instance_id": str(model.id),
                "approver_id": str(approver_id),
                "step_order": acted_step,
                "status": model.status,
                "next_step_order": model.current_step_order,
            },
        )
        return model.to_dto()

    def reject(
        self,
        instance_id: UUID,
        approver_id: UUID,
        comment: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> ApprovalInstance:
        """Reject at the current step.  Always finalizes; step pointer stays."""
        if not comment or not comment.strip():
            raise CommentRequiredError("reject")

        model = self._lock_instance(instance_id)
        self._require_decidable(model)
        step = self._current_step(model)
        self._authorize(model, step, approver_id)

        now = self.clock.now()
        self._transition(model, InstanceStatus.REJECTED, "reject")
        model.resolved_by_id = approver_id
        model.resolved_at = now
        model.final_comment = comment
        model.updated_at = now
        self._flush(model)

        self.ledger.append(
            model.id, model.current_step_order, ActionType.REJECT,
            actor_id=approver_id, comment=comment,
            ip_address=ip_address, user_agent=user_agent, acted_at=now,
        )
        self.outbox.enqueue(ApprovalCompleted(
            instance_id=model.id,
            target_type=model.target_type,
            target_id=model.target_id,
            status=InstanceStatus.REJECTED.value,
            approver_id=approver_id,
            comment=comment,
        ))

        logger.info(
            "approval_rejected",
            extra={
                "instance_id": str(model.id),
                "approver_id": str(approver_id),
                "step_order": model.current_step_order,
            },
        )
        return model.to_dto()

    def delegate(
        self,
        instance_id: UUID,
        delegator_id: UUID,
        delegate_to_id: UUID,
        reason: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> ApprovalInstance:
        """Route the current step to another staff member.

        The delegator does not need to be an authorized approver; this is a
        routing correction, not a decision.
        """
        model = self._lock_instance(instance_id)
        self._require_decidable(model)
        self._require_staff(delegator_id)
        self._require_staff(delegate_to_id)
        self._current_step(model)

        now = self.clock.now()
        model.current_approver_id = delegate_to_id
        model.updated_at = now
        self._flush(model)

        self.ledger.append(
            model.id, model.current_step_order, ActionType.DELEGATE,
            actor_id=delegator_id, comment=reason,
            delegated_to_id=delegate_to_id,
            ip_address=ip_address, user_agent=user_agent, acted_at=now,
        )
        self.outbox.enqueue(ApprovalDelegated(
            instance_id=model.id,
            target_type=model.target_type,
            target_id=model.target_id,
            delegated_by_id=delegator_id,
            delegated_to_id=delegate_to_id,
            reason=reason,
        ))

        logger.info(
            "approval_delegated",
            extra={
                "instance_id": str(model.id),
                "delegator_id": str(delegator_id),
                "delegate_to_id": str(delegate_to_id),
                "step_order": model.current_step_order,
            },
        )
        return model.to_dto()

    def return_for_info(
        self,
        instance_id: UUID,
        approver_id: UUID,
        comment: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> ApprovalInstance:
        """Send the request back to the requester; status becomes returned."""
        if not comment or not comment.strip():
            raise CommentRequiredError("return")

        model = self._lock_instance(instance_id)
        self._require_decidable(model)
        step = self._current_step(model)
        self._authorize(model, step, approver_id)

        now = self.clock.now()
        self._transition(model, InstanceStatus.RETURNED, "return")
        model.updated_at = now
        self._flush(model)

        self.ledger.append(
            model.id, model.current_step_order, ActionType.RETURN,
            actor_id=approver_id, comment=comment,
            ip_address=ip_address, user_agent=user_agent, acted_at=now,
        )
        self.outbox.enqueue(ApprovalReturned(
            instance_id=model.id,
            target_type=model.target_type,
            target_id=model.target_id,
            comment=comment,
            returned_by_id=approver_id,
        ))

        logger.info(
            "approval_returned",
            extra={
                "instance_id": str(model.id),
                "approver_id": str(approver_id),
                "step_order": model.current_step_order,
            },
        )
        return model.to_dto()

    def resume(
        self,
        instance_id: UUID,
        resubmitted_by: UUID | None = None,
        comment: str | None = None,
    ) -> ApprovalInstance:
        """Put a returned instance back in front of the same step."""
        model = self._lock_instance(instance_id)
        status = InstanceStatus(model.status)
        if status in TERMINAL_INSTANCE_STATUSES:
            raise AlreadyProcessedError(str(model.id), model.status)
        if status != InstanceStatus.RETURNED:
            raise InvalidTransitionError(str(model.id), model.status, "resume")
        if (
            resubmitted_by is not None
            and model.requester_id is not None
            and resubmitted_by != model.requester_id
        ):
            raise NotAuthorizedError(
                str(model.id),
                str(resubmitted_by),
                model.current_step_order,
                reason="only the requester may resubmit",
            )
        step = self._current_step(model)

        now = self.clock.now()
        self._transition(model, InstanceStatus.PENDING, "resume")
        model.updated_at = now
        self._flush(model)

        self.ledger.append(
            model.id, model.current_step_order, ActionType.RESUME,
            actor_id=resubmitted_by, comment=comment, acted_at=now,
        )
        self._emit_step_pending(model, step)

        logger.info(
            "approval_resumed",
            extra={
                "instance_id": str(model.id),
                "resubmitted_by": str(resubmitted_by) if resubmitted_by else None,
                "step_order": model.current_step_order,
            },
        )
        return model.to_dto()

    def cancel(
        self,
        instance_id: UUID,
        reason: str | None = None,
        cancelled_by: UUID | None = None,
    ) -> ApprovalInstance:
        """Cancel an open instance.  Cancelling a terminal one is an error."""
        model = self._lock_instance(instance_id)
        if InstanceStatus(model.status) in TERMINAL_INSTANCE_STATUSES:
            raise AlreadyProcessedError(str(model.id), model.status)

        now = self.clock.now()
        self._transition(model, InstanceStatus.CANCELLED, "cancel")
        model.resolved_by_id = cancelled_by
        model.resolved_at = now
        model.final_comment = reason
        model.updated_at = now
        self._flush(model)

        self.ledger.append(
            model.id, model.current_step_order, ActionType.CANCEL,
            actor_id=cancelled_by, comment=reason, acted_at=now,
        )

        logger.info(
            "approval_cancelled",
            extra={
                "instance_id": str(model.id),
                "cancelled_by": str(cancelled_by) if cancelled_by else None,
                "step_order": model.current_step_order,
            },
        )
        return model.to_dto()

    # ------------------------------------------------------------------
    # Time-driven transitions
    # ------------------------------------------------------------------

    def apply_timeouts(self, instance_id: UUID) -> TimeoutOutcome:
        """Auto-approve or escalate one instance if its step has idled too long.

        Uses the same lock path as human decisions, so a sweep racing a
        human approver resolves exactly like two humans racing.
        """
        model = self._lock_instance(instance_id)
        if model.status != InstanceStatus.PENDING.value:
            return TimeoutOutcome(TimeoutDecision.NONE, 0.0)

        steps = self._snapshot(model)
        step = find_step(steps, model.current_step_order)
        if step is None:
            logger.warning(
                "approval_timeout_step_unresolved",
                extra={
                    "instance_id": str(model.id),
                    "step_order": model.current_step_order,
                },
            )
            return TimeoutOutcome(TimeoutDecision.NONE, 0.0)

        now = self.clock.now()
        entered = self.ledger.step_entered_at(
            model.id, step.step_order, model.created_at,
        )
        hours_pending = hours_between(entered, now)
        already_escalated = step.escalation_enabled and self.ledger.has_action_at_step(
            model.id, ActionType.ESCALATE, step.step_order,
        )
        outcome = evaluate_timeouts(step, hours_pending, already_escalated)

        if outcome.decision == TimeoutDecision.AUTO_APPROVE:
            comment = f"Auto-approved after {hours_pending:.1f} hours"
            acted_step = step.step_order
            self._advance_or_finalize(model, step, None, comment, now)
            self._flush(model)
            self.ledger.append(
                model.id, acted_step, ActionType.AUTO_APPROVE,
                actor_id=None, comment=comment, acted_at=now,
            )
            self._emit_after_advance(model, None, comment)
            logger.info(
                "approval_auto_approved",
                extra={
                    "instance_id": str(model.id),
                    "step_order": acted_step,
                    "hours_pending": round(hours_pending, 2),
                    "status": model.status,
                },
            )

        elif outcome.decision == TimeoutDecision.ESCALATE:
            from_role = model.current_approver_role
            model.current_approver_role = outcome.escalate_to_role
            model.current_approver_id = None
            model.updated_at = now
            self._flush(model)
            self.ledger.append(
                model.id, step.step_order, ActionType.ESCALATE,
                actor_id=None,
                comment=f"Escalated after {hours_pending:.1f} hours",
                escalated_to_role=outcome.escalate_to_role,
                acted_at=now,
            )
            self.outbox.enqueue(ApprovalEscalated(
                instance_id=model.id,
                target_type=model.target_type,
                target_id=model.target_id,
                step_order=step.step_order,
                escalated_from_role=from_role,
                escalated_to_role=outcome.escalate_to_role,
                hours_pending=round(hours_pending, 2),
            ))
            logger.info(
                "approval_escalated",
                extra={
                    "instance_id": str(model.id),
                    "step_order": step.step_order,
                    "from_role": from_role,
                    "to_role": outcome.escalate_to_role,
                    "hours_pending": round(hours_pending, 2),
                },
            )

        return outcome

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _lock_instance(self, instance_id: UUID) -> ApprovalInstanceModel:
        model = self.session.execute(
            select(ApprovalInstanceModel)
            .where(ApprovalInstanceModel.id == instance_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if model is None:
            raise InstanceNotFoundError(str(instance_id))
        return model

    def _flush(self, model: ApprovalInstanceModel) -> None:
        instance_id, status = str(model.id), model.status
        try:
            self.session.flush()
        except StaleDataError as exc:
            raise AlreadyProcessedError(
                instance_id, status, detail="modified concurrently",
            ) from exc

    def _require_staff(self, staff_id: UUID) -> StaffProfile:
        profile = self.directory.get_staff(staff_id)
        if profile is None:
            raise StaffNotFoundError(str(staff_id))
        return profile

    def _requester(self, model: ApprovalInstanceModel) -> StaffProfile | None:
        if model.requester_id is None:
            return None
        return self.directory.get_staff(model.requester_id)

    @staticmethod
    def _require_decidable(model: ApprovalInstanceModel) -> None:
        status = InstanceStatus(model.status)
        if status in TERMINAL_INSTANCE_STATUSES:
            raise AlreadyProcessedError(str(model.id), model.status)
        if status == InstanceStatus.RETURNED:
            raise AwaitingResubmissionError(str(model.id))

    @staticmethod
    def _transition(model: ApprovalInstanceModel, to_status: InstanceStatus, action: str) -> None:
        if not can_transition(InstanceStatus(model.status), to_status):
            raise InvalidTransitionError(str(model.id), model.status, action)
        model.status = to_status.value

    @staticmethod
    def _snapshot(model: ApprovalInstanceModel) -> tuple[StepDefinition, ...]:
        return tuple(s.to_dto() for s in model.steps)

    def _current_step(self, model: ApprovalInstanceModel) -> StepDefinition:
        step = find_step(self._snapshot(model), model.current_step_order)
        if step is None:
            raise InvalidStepError(str(model.id), model.current_step_order)
        return step

    def _authorize(
        self,
        model: ApprovalInstanceModel,
        step: StepDefinition,
        actor_id: UUID,
    ) -> StaffProfile:
        """Delegate, escalation role, or the step's approver strategy."""
        actor = self._require_staff(actor_id)
        if model.current_approver_id is not None and actor_id == model.current_approver_id:
            return actor
        if (
            model.current_approver_role
            and actor.has_role(model.current_approver_role)
            and self.ledger.has_action_at_step(
                model.id, ActionType.ESCALATE, step.step_order,
            )
        ):
            return actor
        if is_authorized(step, actor, self._requester(model)):
            return actor
        raise NotAuthorizedError(str(model.id), str(actor_id), step.step_order)

    def _advance_or_finalize(
        self,
        model: ApprovalInstanceModel,
        step: StepDefinition,
        actor_id: UUID | None,
        comment: str | None,
        now: datetime,
    ) -> None:
        steps = self._snapshot(model)
        if is_finalizing_step(steps, step):
            self._transition(model, InstanceStatus.APPROVED, "approve")
            model.resolved_by_id = actor_id
            model.resolved_at = now
            model.final_comment = comment
        else:
            upcoming = next_step(steps, step.step_order)
            assignment = assignment_for(upcoming, self._requester(model))
            model.current_step_order = upcoming.step_order
            model.current_approver_role = assignment.role_code
            model.current_approver_id = assignment.approver_id
        model.updated_at = now

    def _emit_after_advance(
        self,
        model: ApprovalInstanceModel,
        actor_id: UUID | None,
        comment: str | None,
    ) -> None:
        if model.status == InstanceStatus.APPROVED.value:
            self.outbox.enqueue(ApprovalCompleted(
                instance_id=model.id,
                target_type=model.target_type,
                target_id=model.target_id,
                status=InstanceStatus.APPROVED.value,
                approver_id=actor_id,
                comment=comment,
            ))
        else:
            self._emit_step_pending(model, self._current_step(model))

    def _emit_step_pending(
        self,
        model: ApprovalInstanceModel,
        step: StepDefinition,
    ) -> None:
        self.outbox.enqueue(StepPending(
            instance_id=model.id,
            target_type=model.target_type,
            target_id=model.target_id,
            step_order=step.step_order,
            step_name=step.name,
            approver_role_code=model.current_approver_role,
            approver_user_id=model.current_approver_id,
        ))
