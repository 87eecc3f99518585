"""
Pure domain layer.

Data transfer objects and decision logic with NO dependencies on:
- ORM (SQLAlchemy)
- Database
- Wall-clock time (see clock.py)

All domain objects are immutable and deterministic.
"""

from approval_kernel.domain.approval import (
    INSTANCE_TRANSITIONS,
    OPEN_INSTANCE_STATUSES,
    TERMINAL_INSTANCE_STATUSES,
    ActionRecord,
    ActionType,
    ApprovalInstance,
    ApprovalStats,
    ApproverType,
    FlowDefinition,
    FlowSpec,
    InstanceStatus,
    StepDefinition,
    StepSpec,
)
from approval_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from approval_kernel.domain.directory import (
    InMemoryStaffDirectory,
    StaffDirectory,
    StaffProfile,
)
from approval_kernel.domain.events import (
    ApprovalCompleted,
    ApprovalDelegated,
    ApprovalEscalated,
    ApprovalEvent,
    ApprovalReturned,
    EventEnvelope,
    StepPending,
)

__all__ = [
    "INSTANCE_TRANSITIONS",
    "OPEN_INSTANCE_STATUSES",
    "TERMINAL_INSTANCE_STATUSES",
    "ActionRecord",
    "ActionType",
    "ApprovalInstance",
    "ApprovalStats",
    "ApproverType",
    "FlowDefinition",
    "FlowSpec",
    "InstanceStatus",
    "StepDefinition",
    "StepSpec",
    "Clock",
    "DeterministicClock",
    "SystemClock",
    "InMemoryStaffDirectory",
    "StaffDirectory",
    "StaffProfile",
    "ApprovalCompleted",
    "ApprovalDelegated",
    "ApprovalEscalated",
    "ApprovalEvent",
    "ApprovalReturned",
    "EventEnvelope",
    "StepPending",
]
