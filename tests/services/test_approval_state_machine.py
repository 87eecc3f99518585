"""
Tests for ApprovalService -- the instance state machine.

Covers initiation, approve / reject / delegate / return / resume / cancel,
authorization, the step snapshot, ledger rows and outbox events.
"""

from uuid import uuid4

import pytest
from sqlalchemy import select

from approval_kernel.domain.approval import ActionType, InstanceStatus, StepSpec
from approval_kernel.exceptions import (
    AlreadyProcessedError,
    AwaitingResubmissionError,
    CommentRequiredError,
    DuplicateInstanceError,
    EmptyFlowError,
    InstanceNotFoundError,
    InvalidTransitionError,
    NoMatchingFlowError,
    NotAuthorizedError,
    StaffNotFoundError,
)
from approval_kernel.models.outbox import ApprovalOutboxModel
from approval_kernel.services.action_ledger import ActionLedger
from tests.conftest import CLAIM, LEAVE, role_step


def _events(session, instance_id):
    rows = session.execute(
        select(ApprovalOutboxModel)
        .where(ApprovalOutboxModel.instance_id == instance_id)
        .order_by(ApprovalOutboxModel.occurred_at)
    ).scalars().all()
    return [(r.event_type, r.payload) for r in rows]


def _event_types(session, instance_id):
    return [event_type for event_type, _ in _events(session, instance_id)]


def _actions(session, instance_id):
    return [a.action for a in ActionLedger(session).history(instance_id)]


@pytest.fixture
def leave(service, staff, leave_flow):
    return service.initiate(LEAVE, uuid4(), requester_id=staff.requester.staff_id)


# =============================================================================
# Initiation
# =============================================================================


class TestInitiate:

    def test_starts_pending_at_first_step(self, session, leave, staff, leave_flow):
        assert leave.status == InstanceStatus.PENDING
        assert leave.current_step_order == 1
        assert leave.current_approver_role == "BRANCH_MANAGER"
        assert leave.flow_code == "LEAVE_DEFAULT"
        assert leave.requester_id == staff.requester.staff_id
        assert [s.step_order for s in leave.steps] == [1, 2]
        assert leave.current_step.approver_role_code == "BRANCH_MANAGER"
        assert not leave.is_terminal

    def test_emits_step_pending_and_writes_no_action(self, session, leave):
        events = _events(session, leave.instance_id)
        assert [e for e, _ in events] == ["step_pending"]
        assert events[0][1]["step_order"] == 1
        assert events[0][1]["approver_role_code"] == "BRANCH_MANAGER"
        assert _actions(session, leave.instance_id) == []

    def test_explicit_flow_code_wins(self, service, make_flow, leave_flow, staff):
        make_flow("LEAVE_FAST", steps=[role_step("HR_MANAGER")])
        instance = service.initiate(
            LEAVE, uuid4(), flow_code="LEAVE_FAST", requester_id=staff.requester.staff_id,
        )
        assert instance.flow_code == "LEAVE_FAST"

    def test_unknown_code_falls_back_to_matching(self, service, leave_flow, staff):
        instance = service.initiate(
            LEAVE, uuid4(), flow_code="NOPE", requester_id=staff.requester.staff_id,
        )
        assert instance.flow_code == "LEAVE_DEFAULT"

    def test_scoped_flow_selected_for_its_branch(self, service, make_flow, leave_flow, staff):
        make_flow(
            "LEAVE_BRANCH",
            steps=[role_step("HR_MANAGER")],
            branch_id=staff.branch_id,
            priority=5,
        )
        mine = service.initiate(LEAVE, uuid4(), requester_id=staff.requester.staff_id)
        theirs = service.initiate(LEAVE, uuid4(), requester_id=staff.outsider.staff_id)
        assert mine.flow_code == "LEAVE_BRANCH"
        assert theirs.flow_code == "LEAVE_DEFAULT"

    def test_no_flow_for_target_type(self, service, leave_flow, staff):
        with pytest.raises(NoMatchingFlowError):
            service.initiate("UNKNOWN_TYPE", uuid4(), requester_id=staff.requester.staff_id)

    def test_flow_without_steps(self, service, make_flow, staff):
        make_flow("EMPTY", target_type="EMPTY_TYPE")
        with pytest.raises(EmptyFlowError):
            service.initiate("EMPTY_TYPE", uuid4(), requester_id=staff.requester.staff_id)

    def test_unknown_requester(self, service, leave_flow):
        with pytest.raises(StaffNotFoundError):
            service.initiate(LEAVE, uuid4(), requester_id=uuid4())

    def test_second_open_instance_for_same_target_rejected(self, service, leave, staff):
        with pytest.raises(DuplicateInstanceError):
            service.initiate(LEAVE, leave.target_id, requester_id=staff.requester.staff_id)

    def test_target_can_be_reinitiated_after_resolution(self, service, leave, staff):
        service.cancel(leave.instance_id, reason="withdrawn")
        again = service.initiate(LEAVE, leave.target_id, requester_id=staff.requester.staff_id)
        assert again.instance_id != leave.instance_id


# =============================================================================
# Approve
# =============================================================================


class TestApprove:

    def test_leave_default_two_step_scenario(self, session, service, leave, staff, clock):
        clock.advance(60)
        at_hr = service.approve(leave.instance_id, staff.manager.staff_id, "fine by me")
        assert at_hr.status == InstanceStatus.PENDING
        assert at_hr.current_step_order == 2
        assert at_hr.current_approver_role == "HR_MANAGER"
        assert at_hr.current_step.is_final

        clock.advance(60)
        done = service.approve(leave.instance_id, staff.hr.staff_id)
        assert done.status == InstanceStatus.APPROVED
        assert done.resolved_by_id == staff.hr.staff_id
        assert done.resolved_at == clock.now()
        assert done.is_terminal and not done.is_open

        history = ActionLedger(session).history(leave.instance_id)
        assert [(a.step_order, a.action, a.actor_id) for a in history] == [
            (1, ActionType.APPROVE, staff.manager.staff_id),
            (2, ActionType.APPROVE, staff.hr.staff_id),
        ]
        assert history[0].comment == "fine by me"

        events = _events(session, leave.instance_id)
        assert [e for e, _ in events] == ["step_pending", "step_pending", "completed"]
        assert events[-1][1]["status"] == "approved"

    def test_final_flag_finalizes_before_highest_step(self, service, make_flow, staff):
        make_flow(
            "SHORT",
            target_type=CLAIM,
            steps=[role_step("BRANCH_MANAGER", is_final=True), role_step("HR_MANAGER")],
        )
        instance = service.initiate(CLAIM, uuid4(), requester_id=staff.requester.staff_id)
        done = service.approve(instance.instance_id, staff.manager.staff_id)
        assert done.status == InstanceStatus.APPROVED
        assert done.current_step_order == 1

    def test_unauthorized_actor(self, session, service, leave, staff):
        with pytest.raises(NotAuthorizedError):
            service.approve(leave.instance_id, staff.hr.staff_id)
        assert _actions(session, leave.instance_id) == []

    def test_unknown_actor(self, service, leave):
        with pytest.raises(StaffNotFoundError):
            service.approve(leave.instance_id, uuid4())

    def test_unknown_instance(self, service, staff):
        with pytest.raises(InstanceNotFoundError):
            service.approve(uuid4(), staff.manager.staff_id)

    def test_terminal_instance(self, service, leave, staff):
        service.reject(leave.instance_id, staff.manager.staff_id, "no budget")
        with pytest.raises(AlreadyProcessedError):
            service.approve(leave.instance_id, staff.manager.staff_id)

    def test_stale_expected_step(self, service, leave, staff):
        service.approve(leave.instance_id, staff.manager.staff_id, expected_step_order=1)
        with pytest.raises(AlreadyProcessedError):
            service.approve(leave.instance_id, staff.hr.staff_id, expected_step_order=1)

    def test_manager_step_routes_to_requesters_manager(self, service, make_flow, staff):
        make_flow(
            "MGR",
            target_type=CLAIM,
            steps=[StepSpec(name="Line manager", approver_type="manager")],
        )
        instance = service.initiate(CLAIM, uuid4(), requester_id=staff.requester.staff_id)
        assert instance.current_approver_id == staff.manager.staff_id
        with pytest.raises(NotAuthorizedError):
            service.approve(instance.instance_id, staff.regional.staff_id)
        assert service.approve(
            instance.instance_id, staff.manager.staff_id,
        ).status == InstanceStatus.APPROVED


# =============================================================================
# Reject
# =============================================================================


class TestReject:

    def test_reject_at_step_one_of_three(self, session, service, three_step_flow, staff):
        instance = service.initiate(CLAIM, uuid4(), requester_id=staff.requester.staff_id)
        rejected = service.reject(instance.instance_id, staff.manager.staff_id, "duplicate claim")

        assert rejected.status == InstanceStatus.REJECTED
        assert rejected.current_step_order == 1
        assert rejected.final_comment == "duplicate claim"
        assert _actions(session, instance.instance_id) == [ActionType.REJECT]
        events = _events(session, instance.instance_id)
        assert events[-1][0] == "completed"
        assert events[-1][1]["status"] == "rejected"

    def test_reject_at_middle_step_keeps_pointer(self, service, three_step_flow, staff):
        instance = service.initiate(CLAIM, uuid4(), requester_id=staff.requester.staff_id)
        service.approve(instance.instance_id, staff.manager.staff_id)
        rejected = service.reject(instance.instance_id, staff.accountant.staff_id, "receipts missing")
        assert rejected.status == InstanceStatus.REJECTED
        assert rejected.current_step_order == 2

    @pytest.mark.parametrize("comment", ["", "   ", None])
    def test_comment_required(self, service, leave, staff, comment):
        with pytest.raises(CommentRequiredError):
            service.reject(leave.instance_id, staff.manager.staff_id, comment)

    def test_completed_emitted_once(self, session, service, leave, staff):
        service.reject(leave.instance_id, staff.manager.staff_id, "no")
        with pytest.raises(AlreadyProcessedError):
            service.reject(leave.instance_id, staff.manager.staff_id, "no again")
        assert _event_types(session, leave.instance_id).count("completed") == 1


# =============================================================================
# Delegate
# =============================================================================


class TestDelegate:

    def test_delegate_lets_target_act(self, session, service, leave, staff):
        delegated = service.delegate(
            leave.instance_id, staff.manager.staff_id, staff.accountant.staff_id, "on leave",
        )
        assert delegated.current_approver_id == staff.accountant.staff_id
        assert delegated.current_step_order == 1
        assert delegated.status == InstanceStatus.PENDING

        history = ActionLedger(session).history(leave.instance_id)
        assert history[-1].action == ActionType.DELEGATE
        assert history[-1].delegated_to_id == staff.accountant.staff_id
        assert "delegated" in _event_types(session, leave.instance_id)

        approved = service.approve(leave.instance_id, staff.accountant.staff_id)
        assert approved.current_step_order == 2

    def test_role_holders_keep_authority(self, service, leave, staff):
        service.delegate(leave.instance_id, staff.manager.staff_id, staff.accountant.staff_id)
        assert service.approve(
            leave.instance_id, staff.manager.staff_id,
        ).current_step_order == 2

    def test_delegate_to_unknown_staff(self, service, leave, staff):
        with pytest.raises(StaffNotFoundError):
            service.delegate(leave.instance_id, staff.manager.staff_id, uuid4())

    def test_delegate_terminal(self, service, leave, staff):
        service.cancel(leave.instance_id)
        with pytest.raises(AlreadyProcessedError):
            service.delegate(leave.instance_id, staff.manager.staff_id, staff.hr.staff_id)

    def test_delegate_to_staff_who_left(self, service, directory, leave, staff):
        before = len(directory)
        directory.remove(staff.accountant.staff_id)
        assert len(directory) == before - 1
        with pytest.raises(StaffNotFoundError):
            service.delegate(leave.instance_id, staff.manager.staff_id, staff.accountant.staff_id)


# =============================================================================
# Return for info / resume
# =============================================================================


class TestReturnAndResume:

    def test_return_then_resume(self, session, service, leave, staff, clock):
        clock.advance(60)
        returned = service.return_for_info(
            leave.instance_id, staff.manager.staff_id, "attach the medical note",
        )
        assert returned.status == InstanceStatus.RETURNED
        assert returned.current_step_order == 1
        assert returned.is_open

        clock.advance(60)
        resumed = service.resume(leave.instance_id, staff.requester.staff_id, "attached")
        assert resumed.status == InstanceStatus.PENDING
        assert resumed.current_step_order == 1

        assert _actions(session, leave.instance_id) == [ActionType.RETURN, ActionType.RESUME]
        assert _event_types(session, leave.instance_id) == [
            "step_pending", "returned", "step_pending",
        ]

    def test_returned_instance_cannot_be_decided(self, service, leave, staff):
        service.return_for_info(leave.instance_id, staff.manager.staff_id, "more info")
        with pytest.raises(AwaitingResubmissionError):
            service.approve(leave.instance_id, staff.manager.staff_id)
        with pytest.raises(AwaitingResubmissionError):
            service.reject(leave.instance_id, staff.manager.staff_id, "no")
        with pytest.raises(AwaitingResubmissionError):
            service.delegate(leave.instance_id, staff.manager.staff_id, staff.hr.staff_id)

    def test_returned_instance_blocks_new_initiation(self, service, leave, staff):
        service.return_for_info(leave.instance_id, staff.manager.staff_id, "more info")
        with pytest.raises(DuplicateInstanceError):
            service.initiate(LEAVE, leave.target_id, requester_id=staff.requester.staff_id)

    def test_return_requires_comment(self, service, leave, staff):
        with pytest.raises(CommentRequiredError):
            service.return_for_info(leave.instance_id, staff.manager.staff_id, "")

    def test_only_requester_may_resume(self, service, leave, staff):
        service.return_for_info(leave.instance_id, staff.manager.staff_id, "more info")
        with pytest.raises(NotAuthorizedError):
            service.resume(leave.instance_id, staff.manager.staff_id)

    def test_resume_pending_instance(self, service, leave):
        with pytest.raises(InvalidTransitionError):
            service.resume(leave.instance_id)

    def test_resume_terminal_instance(self, service, leave):
        service.cancel(leave.instance_id)
        with pytest.raises(AlreadyProcessedError):
            service.resume(leave.instance_id)


# =============================================================================
# Cancel
# =============================================================================


class TestCancel:

    def test_cancel_pending(self, session, service, leave, staff):
        cancelled = service.cancel(leave.instance_id, "withdrawn", staff.requester.staff_id)
        assert cancelled.status == InstanceStatus.CANCELLED
        assert cancelled.final_comment == "withdrawn"
        assert _actions(session, leave.instance_id) == [ActionType.CANCEL]
        assert _event_types(session, leave.instance_id) == ["step_pending"]

    def test_cancel_returned(self, service, leave, staff):
        service.return_for_info(leave.instance_id, staff.manager.staff_id, "more info")
        assert service.cancel(leave.instance_id).status == InstanceStatus.CANCELLED

    def test_cancel_terminal_raises(self, service, leave, staff):
        service.cancel(leave.instance_id)
        with pytest.raises(AlreadyProcessedError):
            service.cancel(leave.instance_id)


# =============================================================================
# Audit metadata
# =============================================================================


class TestAuditMetadata:

    def test_decisions_record_ip_and_user_agent(self, session, service, leave, staff, clock):
        service.delegate(
            leave.instance_id, staff.manager.staff_id, staff.accountant.staff_id,
            ip_address="10.0.0.7", user_agent="hr-portal/2.1",
        )
        clock.advance(60)
        service.approve(
            leave.instance_id, staff.accountant.staff_id,
            ip_address="10.0.0.8", user_agent="mobile/5.0",
        )
        clock.advance(60)
        service.return_for_info(
            leave.instance_id, staff.hr.staff_id, "attach the doctor's note",
            ip_address="2001:db8::1",
        )
        clock.advance(60)
        service.resume(leave.instance_id, staff.requester.staff_id)
        clock.advance(60)
        service.reject(
            leave.instance_id, staff.hr.staff_id, "no balance left",
            ip_address="10.0.0.9", user_agent="hr-portal/2.1",
        )

        history = ActionLedger(session).history(leave.instance_id)
        assert [(a.action, a.ip_address, a.user_agent) for a in history] == [
            (ActionType.DELEGATE, "10.0.0.7", "hr-portal/2.1"),
            (ActionType.APPROVE, "10.0.0.8", "mobile/5.0"),
            (ActionType.RETURN, "2001:db8::1", None),
            (ActionType.RESUME, None, None),
            (ActionType.REJECT, "10.0.0.9", "hr-portal/2.1"),
        ]

    def test_metadata_is_optional(self, session, service, leave, staff):
        service.approve(leave.instance_id, staff.manager.staff_id)
        (action,) = ActionLedger(session).history(leave.instance_id)
        assert (action.ip_address, action.user_agent) == (None, None)


# =============================================================================
# Snapshot isolation and atomicity
# =============================================================================


class TestSnapshotAndAtomicity:

    def test_template_edits_do_not_reach_running_instances(
        self, session, service, catalog, leave, leave_flow, staff,
    ):
        catalog.update_step(leave_flow.steps[1].step_id, approver_role_code="ACCOUNTANT")
        catalog.add_step(leave_flow.flow_id, role_step("CEO"))
        session.commit()

        at_two = service.approve(leave.instance_id, staff.manager.staff_id)
        assert at_two.current_approver_role == "HR_MANAGER"
        with pytest.raises(NotAuthorizedError):
            service.approve(leave.instance_id, staff.accountant.staff_id)
        assert service.approve(
            leave.instance_id, staff.hr.staff_id,
        ).status == InstanceStatus.APPROVED

    def test_rollback_leaves_no_action_or_event(self, session_factory, directory, clock, leave_flow, staff):
        from approval_kernel.services.approval_service import ApprovalService

        setup = session_factory()
        instance = ApprovalService(setup, directory, clock).initiate(
            LEAVE, uuid4(), requester_id=staff.requester.staff_id,
        )
        setup.commit()
        setup.close()

        s = session_factory()
        ApprovalService(s, directory, clock).approve(instance.instance_id, staff.manager.staff_id)
        s.rollback()
        s.close()

        check = session_factory()
        try:
            reloaded = ApprovalService(check, directory, clock).approve(
                instance.instance_id, staff.manager.staff_id,
            )
            assert reloaded.current_step_order == 2
            assert _actions(check, instance.instance_id) == [ActionType.APPROVE]
            assert _event_types(check, instance.instance_id).count("step_pending") == 2
        finally:
            check.rollback()
            check.close()

    def test_snapshot_keeps_can_skip(self, session, service, catalog, make_flow, staff):
        flow = make_flow(
            "CLAIM_OPTIONAL_REVIEW",
            target_type=CLAIM,
            steps=[
                role_step("BRANCH_MANAGER", can_skip=True),
                role_step("ACCOUNTANT", is_final=True),
            ],
        )
        assert [s.can_skip for s in flow.steps] == [True, False]
        instance = service.initiate(CLAIM, uuid4(), requester_id=staff.requester.staff_id)

        catalog.update_step(flow.steps[0].step_id, can_skip=False)
        session.commit()

        assert catalog.get_flow(flow.flow_id).steps[0].can_skip is False
        assert [s.can_skip for s in instance.steps] == [True, False]
        assert service.approve(
            instance.instance_id, staff.manager.staff_id,
        ).steps[0].can_skip is True
