"""
Approval domain types (``approval_kernel.domain.approval``).

Responsibility
--------------
Pure value objects for the approval workflow engine.  Defines the
instance lifecycle state machine, action and approver-type vocabularies,
flow/step definitions, instance snapshots, ledger records, and the
aggregate statistics returned by the read side.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports
from ``db/``, ``services/``, ``selectors/``, or outer layers.

Invariants enforced
-------------------
* ``INSTANCE_TRANSITIONS`` defines the only valid status transitions.
  Terminal statuses have no outgoing edges, so no instance re-enters
  ``pending`` once resolved.
* ``returned`` is open but not actionable: only ``resume`` (back to
  ``pending``) or ``cancel`` leave it.
* A step is finalizing when it is marked final or when no step with a
  higher order exists (``is_finalizing_step``).
* ``validate_step_spec`` is the single definition of a well-formed step,
  shared by the flow catalog and the configuration validator.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from uuid import UUID


# =========================================================================
# Instance Status Lifecycle
# =========================================================================


class InstanceStatus(str, Enum):
    """Approval instance lifecycle states."""

    PENDING = "pending"
    RETURNED = "returned"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


INSTANCE_TRANSITIONS: dict[InstanceStatus, frozenset[InstanceStatus]] = {
    InstanceStatus.PENDING: frozenset({
        InstanceStatus.RETURNED,
        InstanceStatus.APPROVED,
        InstanceStatus.REJECTED,
        InstanceStatus.CANCELLED,
    }),
    InstanceStatus.RETURNED: frozenset({
        InstanceStatus.PENDING,
        InstanceStatus.CANCELLED,
    }),
    InstanceStatus.APPROVED: frozenset(),
    InstanceStatus.REJECTED: frozenset(),
    InstanceStatus.CANCELLED: frozenset(),
}

TERMINAL_INSTANCE_STATUSES: frozenset[InstanceStatus] = frozenset({
    InstanceStatus.APPROVED,
    InstanceStatus.REJECTED,
    InstanceStatus.CANCELLED,
})

OPEN_INSTANCE_STATUSES: frozenset[InstanceStatus] = frozenset({
    InstanceStatus.PENDING,
    InstanceStatus.RETURNED,
})


def can_transition(from_status: InstanceStatus, to_status: InstanceStatus) -> bool:
    """Return True if ``from_status -> to_status`` is a legal transition."""
    return to_status in INSTANCE_TRANSITIONS.get(from_status, frozenset())


class ActionType(str, Enum):
    """Ledger action vocabulary. One row per successful transition."""

    APPROVE = "approve"
    REJECT = "reject"
    RETURN = "return"
    DELEGATE = "delegate"
    AUTO_APPROVE = "auto_approve"
    ESCALATE = "escalate"
    RESUME = "resume"
    CANCEL = "cancel"


# Actions that complete a step and move the instance forward.
STEP_COMPLETING_ACTIONS: frozenset[ActionType] = frozenset({
    ActionType.APPROVE,
    ActionType.AUTO_APPROVE,
})


class ApproverType(str, Enum):
    """How the approver of a step is determined."""

    ROLE = "role"
    MANAGER = "manager"
    SKIP_MANAGER = "skip_manager"
    BRANCH_MANAGER = "branch_manager"
    REGIONAL_MANAGER = "regional_manager"
    DEPARTMENT_HEAD = "department_head"
    SPECIFIC_USER = "specific_user"


DEFAULT_STEP_NAME = "Approval Step"


# =========================================================================
# Flow and Step Definitions
# =========================================================================


@dataclass(frozen=True)
class StepSpec:
    """Input for creating or importing a flow step.

    ``step_order=None`` means "append after the current last step".
    """

    name: str = DEFAULT_STEP_NAME
    approver_type: ApproverType = ApproverType.ROLE
    approver_role_code: str | None = None
    specific_approver_id: UUID | None = None
    step_order: int | None = None
    is_final: bool = False
    auto_approve_hours: int = 0
    escalation_hours: int = 0
    escalation_role_code: str | None = None
    instructions: str | None = None
    can_skip: bool = False


def validate_step_spec(spec: StepSpec) -> list[str]:
    """Return a list of problems with ``spec`` (empty when well-formed)."""
    errors: list[str] = []
    if spec.step_order is not None and spec.step_order < 1:
        errors.append(f"step_order must be >= 1, got {spec.step_order}")
    if spec.approver_type == ApproverType.ROLE and not spec.approver_role_code:
        errors.append("approver_type 'role' requires approver_role_code")
    if (
        spec.approver_type == ApproverType.SPECIFIC_USER
        and spec.specific_approver_id is None
    ):
        errors.append("approver_type 'specific_user' requires specific_approver_id")
    if spec.auto_approve_hours < 0:
        errors.append("auto_approve_hours must be >= 0")
    if spec.escalation_hours < 0:
        errors.append("escalation_hours must be >= 0")
    if spec.escalation_hours > 0 and not spec.escalation_role_code:
        errors.append("escalation_hours > 0 requires escalation_role_code")
    return errors


@dataclass(frozen=True)
class StepDefinition:
    """One step of a flow template or of an instance's snapshot.

    ``step_id`` is the template step id; on a snapshot it is the id of the
    template step that was copied (None if that step has since been removed
    and the snapshot was loaded without it).

    ``can_skip`` is informational; the engine never skips a step itself.
    """

    step_order: int
    name: str
    approver_type: ApproverType
    approver_role_code: str | None = None
    specific_approver_id: UUID | None = None
    is_final: bool = False
    auto_approve_hours: int = 0
    escalation_hours: int = 0
    escalation_role_code: str | None = None
    instructions: str | None = None
    can_skip: bool = False
    step_id: UUID | None = None

    @property
    def auto_approve_enabled(self) -> bool:
        return self.auto_approve_hours > 0

    @property
    def escalation_enabled(self) -> bool:
        return self.escalation_hours > 0 and bool(self.escalation_role_code)


def find_step(steps: tuple[StepDefinition, ...], step_order: int | None) -> StepDefinition | None:
    """Return the step with ``step_order`` or None."""
    if step_order is None:
        return None
    for step in steps:
        if step.step_order == step_order:
            return step
    return None


def next_step(steps: tuple[StepDefinition, ...], step_order: int) -> StepDefinition | None:
    """Return the step with the smallest order greater than ``step_order``."""
    later = [s for s in steps if s.step_order > step_order]
    if not later:
        return None
    return min(later, key=lambda s: s.step_order)


def first_step(steps: tuple[StepDefinition, ...]) -> StepDefinition | None:
    if not steps:
        return None
    return min(steps, key=lambda s: s.step_order)


def is_finalizing_step(steps: tuple[StepDefinition, ...], step: StepDefinition) -> bool:
    """Approving ``step`` resolves the instance."""
    return step.is_final or next_step(steps, step.step_order) is None


@dataclass(frozen=True)
class FlowSpec:
    """Input for creating or importing a flow template."""

    code: str
    name: str
    target_type: str
    description: str | None = None
    branch_id: UUID | None = None
    region_id: UUID | None = None
    department_id: UUID | None = None
    position_id: UUID | None = None
    priority: int = 0
    is_active: bool = True
    steps: tuple[StepSpec, ...] = ()


SCOPE_ATTRIBUTES: tuple[str, ...] = (
    "branch_id",
    "region_id",
    "department_id",
    "position_id",
)


@dataclass(frozen=True)
class FlowDefinition:
    """Immutable view of a flow template and its ordered steps."""

    flow_id: UUID
    code: str
    name: str
    target_type: str
    description: str | None = None
    branch_id: UUID | None = None
    region_id: UUID | None = None
    department_id: UUID | None = None
    position_id: UUID | None = None
    priority: int = 0
    is_active: bool = True
    steps: tuple[StepDefinition, ...] = ()

    @property
    def scope(self) -> dict[str, UUID | None]:
        return {attr: getattr(self, attr) for attr in SCOPE_ATTRIBUTES}

    @property
    def is_global(self) -> bool:
        """Flow applies to every requester (no scoping attribute set)."""
        return all(value is None for value in self.scope.values())


# =========================================================================
# Instances and Ledger Records
# =========================================================================


@dataclass(frozen=True)
class ApprovalInstance:
    """Immutable snapshot of an approval instance."""

    instance_id: UUID
    flow_id: UUID | None
    flow_code: str
    target_type: str
    target_id: UUID
    status: InstanceStatus
    current_step_order: int
    requester_id: UUID | None = None
    current_approver_role: str | None = None
    current_approver_id: UUID | None = None
    is_urgent: bool = False
    deadline: datetime | None = None
    final_comment: str | None = None
    resolved_by_id: UUID | None = None
    resolved_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    version: int = 1
    steps: tuple[StepDefinition, ...] = ()

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_INSTANCE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_INSTANCE_STATUSES

    @property
    def current_step(self) -> StepDefinition | None:
        return find_step(self.steps, self.current_step_order)


@dataclass(frozen=True)
class ActionRecord:
    """One ledger row. Immutable."""

    action_id: UUID
    instance_id: UUID
    step_order: int
    action: ActionType
    acted_at: datetime
    actor_id: UUID | None = None
    comment: str | None = None
    delegated_to_id: UUID | None = None
    escalated_to_role: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None

    @property
    def is_system_action(self) -> bool:
        return self.actor_id is None


@dataclass(frozen=True)
class ApprovalStats:
    """Aggregate counters for dashboards.

    ``avg_resolution_hours`` is None when no instance has been approved.
    """

    pending: int
    approved_today: int
    rejected_today: int
    avg_resolution_hours: float | None = None

