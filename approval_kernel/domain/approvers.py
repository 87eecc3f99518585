"""
Approver strategies (``approval_kernel.domain.approvers``).

Responsibility
--------------
Closed dispatch from ``ApproverType`` to the rule that decides (a) whether
an acting staff member may act on a step and (b) who the step is routed
to when it becomes current.  Each approver type has exactly one strategy;
there are no nested conditionals on the type anywhere else.

Architecture position
---------------------
**Kernel domain layer** -- pure.  Reads only ``StaffProfile`` values that
the service has already fetched from the directory.

Invariants enforced
-------------------
* Fail closed: a type with no role code and no specific rule denies.
* ``ROLE`` requires role-code membership.
* ``MANAGER`` requires the actor to be the requester's direct manager.
* ``SPECIFIC_USER`` requires the actor to be ``specific_approver_id``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping
from uuid import UUID

from approval_kernel.domain.approval import ApproverType, StepDefinition
from approval_kernel.domain.directory import StaffProfile


@dataclass(frozen=True)
class Assignment:
    """Who a step is routed to when it becomes current."""

    role_code: str | None = None
    approver_id: UUID | None = None


class ApproverStrategy(ABC):
    """Authorization and routing rule for one approver type."""

    approver_type: ApproverType

    @abstractmethod
    def authorize(
        self,
        step: StepDefinition,
        actor: StaffProfile,
        requester: StaffProfile | None,
    ) -> bool:
        ...

    def assignee(
        self,
        step: StepDefinition,
        requester: StaffProfile | None,
    ) -> Assignment:
        return Assignment(role_code=step.approver_role_code)


class RoleApprover(ApproverStrategy):
    approver_type = ApproverType.ROLE

    def authorize(self, step, actor, requester):
        return actor.has_role(step.approver_role_code)


class ManagerApprover(ApproverStrategy):
    approver_type = ApproverType.MANAGER

    def authorize(self, step, actor, requester):
        if requester is None or requester.manager_id is None:
            return False
        return actor.staff_id == requester.manager_id

    def assignee(self, step, requester):
        manager_id = requester.manager_id if requester is not None else None
        return Assignment(role_code=step.approver_role_code, approver_id=manager_id)


class SpecificUserApprover(ApproverStrategy):
    approver_type = ApproverType.SPECIFIC_USER

    def authorize(self, step, actor, requester):
        return (
            step.specific_approver_id is not None
            and actor.staff_id == step.specific_approver_id
        )

    def assignee(self, step, requester):
        return Assignment(
            role_code=step.approver_role_code,
            approver_id=step.specific_approver_id,
        )


class RoleCodeFallbackApprover(ApproverStrategy):
    """Organizational types resolved through role membership only."""

    def __init__(self, approver_type: ApproverType):
        self.approver_type = approver_type

    def authorize(self, step, actor, requester):
        if not step.approver_role_code:
            return False
        return actor.has_role(step.approver_role_code)


_STRATEGIES: Mapping[ApproverType, ApproverStrategy] = MappingProxyType({
    ApproverType.ROLE: RoleApprover(),
    ApproverType.MANAGER: ManagerApprover(),
    ApproverType.SPECIFIC_USER: SpecificUserApprover(),
    ApproverType.SKIP_MANAGER: RoleCodeFallbackApprover(ApproverType.SKIP_MANAGER),
    ApproverType.BRANCH_MANAGER: RoleCodeFallbackApprover(ApproverType.BRANCH_MANAGER),
    ApproverType.REGIONAL_MANAGER: RoleCodeFallbackApprover(ApproverType.REGIONAL_MANAGER),
    ApproverType.DEPARTMENT_HEAD: RoleCodeFallbackApprover(ApproverType.DEPARTMENT_HEAD),
})


def strategy_for(approver_type: ApproverType | str) -> ApproverStrategy:
    """Return the strategy for ``approver_type``.

    Raises:
        ValueError: if the value is not a known ApproverType.
    """
    return _STRATEGIES[ApproverType(approver_type)]


def is_authorized(
    step: StepDefinition,
    actor: StaffProfile,
    requester: StaffProfile | None,
) -> bool:
    return strategy_for(step.approver_type).authorize(step, actor, requester)


def assignment_for(step: StepDefinition, requester: StaffProfile | None) -> Assignment:
    return strategy_for(step.approver_type).assignee(step, requester)
