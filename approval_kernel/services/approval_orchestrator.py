"""
ApprovalOrchestrator -- transaction-owning entry point for domain modules.

Responsibility:
    The inbound interface.  Each call opens a session, runs one
    ApprovalService operation, commits (or rolls back and re-raises), then
    hands the committed outbox rows to the relay.

Architecture position:
    Kernel > Services (outermost kernel layer).  The only kernel component
    that commits.

Invariants enforced:
    - One transaction per operation: instance change, ledger row and
      outbox events commit together or not at all.
    - Events are published only after commit, so subscribers never see an
      event for a rolled-back transition.
    - Relay failures after commit are logged and left for the next relay
      pass; the caller's operation has already succeeded.

Failure modes:
    - Any ApprovalEngineError from the service propagates unchanged after
      rollback.
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable, TypeVar
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from approval_kernel.db.engine import session_scope
from approval_kernel.domain.approval import ApprovalInstance
from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.directory import StaffDirectory
from approval_kernel.logging_config import LogContext, get_logger
from approval_kernel.services.approval_service import ApprovalService
from approval_kernel.services.event_relay import EventRelay

logger = get_logger("services.approval_orchestrator")

T = TypeVar("T")


class ApprovalOrchestrator:
    """Runs approval operations in their own transactions."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        directory: StaffDirectory,
        clock: Clock | None = None,
        relay: EventRelay | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._directory = directory
        self._clock = clock or SystemClock()
        self._relay = relay

    def run(self, operation: Callable[[ApprovalService], T]) -> T:
        """Run ``operation`` against a fresh service in one transaction."""
        with session_scope(self._session_factory) as session:
            result = operation(ApprovalService(session, self._directory, self._clock))
        self._relay_after_commit()
        return result

    def initiate(
        self,
        target_type: str,
        target_id: UUID,
        flow_code: str | None = None,
        requester_id: UUID | None = None,
        is_urgent: bool = False,
        deadline: datetime | None = None,
    ) -> ApprovalInstance:
        with LogContext.bind(target_id=target_id, actor_id=requester_id):
            return self.run(lambda svc: svc.initiate(
                target_type,
                target_id,
                flow_code=flow_code,
                requester_id=requester_id,
                is_urgent=is_urgent,
                deadline=deadline,
            ))

    def approve(
        self,
        instance_id: UUID,
        approver_id: UUID,
        comment: str | None = None,
        expected_step_order: int | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> ApprovalInstance:
        with LogContext.bind(instance_id=instance_id, actor_id=approver_id):
            return self.run(lambda svc: svc.approve(
                instance_id, approver_id, comment, expected_step_order,
                ip_address=ip_address, user_agent=user_agent,
            ))

    def reject(
        self,
        instance_id: UUID,
        approver_id: UUID,
        comment: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> ApprovalInstance:
        with LogContext.bind(instance_id=instance_id, actor_id=approver_id):
            return self.run(lambda svc: svc.reject(
                instance_id, approver_id, comment,
                ip_address=ip_address, user_agent=user_agent,
            ))

    def delegate(
        self,
        instance_id: UUID,
        delegator_id: UUID,
        delegate_to_id: UUID,
        reason: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> ApprovalInstance:
        with LogContext.bind(instance_id=instance_id, actor_id=delegator_id):
            return self.run(lambda svc: svc.delegate(
                instance_id, delegator_id, delegate_to_id, reason,
                ip_address=ip_address, user_agent=user_agent,
            ))

    def return_for_info(
        self,
        instance_id: UUID,
        approver_id: UUID,
        comment: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> ApprovalInstance:
        with LogContext.bind(instance_id=instance_id, actor_id=approver_id):
            return self.run(lambda svc: svc.return_for_info(
                instance_id, approver_id, comment,
                ip_address=ip_address, user_agent=user_agent,
            ))

    def resume(
        self,
        instance_id: UUID,
        resubmitted_by: UUID | None = None,
        comment: str | None = None,
    ) -> ApprovalInstance:
        with LogContext.bind(instance_id=instance_id, actor_id=resubmitted_by):
            return self.run(lambda svc: svc.resume(instance_id, resubmitted_by, comment))

    def cancel(
        self,
        instance_id: UUID,
        reason: str | None = None,
        cancelled_by: UUID | None = None,
    ) -> ApprovalInstance:
        with LogContext.bind(instance_id=instance_id, actor_id=cancelled_by):
            return self.run(lambda svc: svc.cancel(instance_id, reason, cancelled_by))

    def _relay_after_commit(self) -> None:
        if self._relay is None:
            return
        try:
            self._relay.dispatch_pending()
        except Exception:
            logger.exception("approval_relay_after_commit_failed")
