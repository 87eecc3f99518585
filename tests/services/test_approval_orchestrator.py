"""Tests for ApprovalOrchestrator -- one transaction per operation, relay after commit."""

from uuid import uuid4

import pytest

from approval_kernel.domain.approval import InstanceStatus
from approval_kernel.exceptions import NotAuthorizedError
from approval_kernel.selectors.approval_selector import ApprovalSelector
from approval_kernel.services.approval_orchestrator import ApprovalOrchestrator
from approval_kernel.services.event_bus import ALL_EVENTS, InProcessEventBus
from approval_kernel.services.event_relay import EventRelay
from tests.conftest import LEAVE


@pytest.fixture
def received():
    return []


@pytest.fixture
def orchestrator(session_factory, directory, clock, received, leave_flow):
    bus = InProcessEventBus()
    bus.subscribe(ALL_EVENTS, received.append)
    relay = EventRelay(session_factory, bus, clock)
    return ApprovalOrchestrator(session_factory, directory, clock, relay=relay)


def test_full_lifecycle_publishes_after_each_commit(orchestrator, received, staff, clock):
    instance = orchestrator.initiate(LEAVE, uuid4(), requester_id=staff.requester.staff_id)
    assert [e.event_type for e in received] == ["step_pending"]

    clock.advance(60)
    orchestrator.approve(instance.instance_id, staff.manager.staff_id)
    clock.advance(60)
    done = orchestrator.approve(instance.instance_id, staff.hr.staff_id, "enjoy")

    assert done.status == InstanceStatus.APPROVED
    assert [e.event_type for e in received] == ["step_pending", "step_pending", "completed"]
    assert received[-1].event.comment == "enjoy"


def test_failed_operation_rolls_back(orchestrator, received, staff, session_factory):
    instance = orchestrator.initiate(LEAVE, uuid4(), requester_id=staff.requester.staff_id)
    with pytest.raises(NotAuthorizedError):
        orchestrator.approve(instance.instance_id, staff.outsider.staff_id)

    s = session_factory()
    try:
        assert ApprovalSelector(s).history(instance.instance_id) == []
    finally:
        s.close()
    assert len(received) == 1


def test_return_resume_cancel(orchestrator, received, staff):
    instance = orchestrator.initiate(LEAVE, uuid4(), requester_id=staff.requester.staff_id)
    orchestrator.return_for_info(instance.instance_id, staff.manager.staff_id, "which dates?")
    orchestrator.resume(instance.instance_id, staff.requester.staff_id)
    orchestrator.delegate(instance.instance_id, staff.manager.staff_id, staff.regional.staff_id)
    cancelled = orchestrator.cancel(instance.instance_id, "plans changed", staff.requester.staff_id)
    assert cancelled.status == InstanceStatus.CANCELLED
    assert "returned" in [e.event_type for e in received]
    assert "delegated" in [e.event_type for e in received]


def test_audit_metadata_reaches_the_ledger(orchestrator, staff, session_factory):
    instance = orchestrator.initiate(LEAVE, uuid4(), requester_id=staff.requester.staff_id)
    orchestrator.approve(
        instance.instance_id, staff.manager.staff_id,
        ip_address="192.0.2.10", user_agent="hr-portal/2.1",
    )
    orchestrator.reject(
        instance.instance_id, staff.hr.staff_id, "no balance left", ip_address="192.0.2.11",
    )

    s = session_factory()
    try:
        history = ApprovalSelector(s).history(instance.instance_id)
    finally:
        s.close()
    assert [(a.ip_address, a.user_agent) for a in history] == [
        ("192.0.2.10", "hr-portal/2.1"),
        ("192.0.2.11", None),
    ]


def test_relay_failure_does_not_fail_committed_operation(session_factory, directory, clock, leave_flow, staff, captured_logs):
    bus = InProcessEventBus()

    def broken(envelope):
        raise RuntimeError("broker down")

    bus.subscribe(ALL_EVENTS, broken)
    orchestrator = ApprovalOrchestrator(
        session_factory, directory, clock, relay=EventRelay(session_factory, bus, clock),
    )

    instance = orchestrator.initiate(LEAVE, uuid4(), requester_id=staff.requester.staff_id)
    assert instance.status == InstanceStatus.PENDING
    assert any(r["message"] == "approval_event_delivery_failed" for r in captured_logs())


def test_reject_via_orchestrator(orchestrator, received, staff):
    instance = orchestrator.initiate(LEAVE, uuid4(), requester_id=staff.requester.staff_id)
    rejected = orchestrator.reject(instance.instance_id, staff.manager.staff_id, "busy season")
    assert rejected.status == InstanceStatus.REJECTED
    assert received[-1].event.status == "rejected"
