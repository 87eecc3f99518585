"""
Timeout evaluation (``approval_kernel.domain.timeouts``).

Responsibility
--------------
Decide, for one pending instance's current step, whether the
reconciliation sweep should auto-approve it, escalate it, or leave it
alone.

Architecture position
---------------------
**Kernel domain layer** -- pure.  The service supplies the elapsed time
(computed from the action ledger) and whether an escalation is already
recorded at this step.

Invariants enforced
-------------------
* Auto-approve takes precedence; an auto-approved step is never also
  escalated in the same sweep.
* At most one escalation per (instance, step_order): an existing escalate
  action suppresses the decision.
* Zero hours disables the corresponding rule.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from approval_kernel.domain.approval import StepDefinition


class TimeoutDecision(str, Enum):
    NONE = "none"
    AUTO_APPROVE = "auto_approve"
    ESCALATE = "escalate"


@dataclass(frozen=True)
class TimeoutOutcome:
    decision: TimeoutDecision
    hours_pending: float
    escalate_to_role: str | None = None


def hours_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 3600.0


def evaluate_timeouts(
    step: StepDefinition,
    hours_pending: float,
    already_escalated: bool,
) -> TimeoutOutcome:
    """Return the sweep decision for ``step`` after ``hours_pending`` idle hours."""
    if step.auto_approve_enabled and hours_pending >= step.auto_approve_hours:
        return TimeoutOutcome(TimeoutDecision.AUTO_APPROVE, hours_pending)
    if (
        step.escalation_enabled
        and not already_escalated
        and hours_pending >= step.escalation_hours
    ):
        return TimeoutOutcome(
            TimeoutDecision.ESCALATE,
            hours_pending,
            escalate_to_role=step.escalation_role_code,
        )
    return TimeoutOutcome(TimeoutDecision.NONE, hours_pending)
