"""
Flow matching (``approval_kernel.domain.matching``).

Responsibility
--------------
Pick the single best flow template for a requester from a set of active
candidates.  A flow's non-null scoping attributes (branch, region,
department, position) must all equal the requester's; null attributes
match anyone.  Among matches the highest ``priority`` wins; ties break on
``code`` so the result is deterministic.

Architecture position
---------------------
**Kernel domain layer** -- pure function.  The catalog service fetches
candidates; this module only decides.
"""

from __future__ import annotations

from typing import Iterable

from approval_kernel.domain.approval import SCOPE_ATTRIBUTES, FlowDefinition
from approval_kernel.domain.directory import StaffProfile


def ordered_by_priority(flows: Iterable[FlowDefinition]) -> list[FlowDefinition]:
    """Highest priority first, then code ascending."""
    return sorted(flows, key=lambda f: (-f.priority, f.code))


def scope_matches(flow: FlowDefinition, requester: StaffProfile | None) -> bool:
    for attr in SCOPE_ATTRIBUTES:
        required = getattr(flow, attr)
        if required is None:
            continue
        if requester is None or getattr(requester, attr) != required:
            return False
    return True


def match_flow(
    flows: Iterable[FlowDefinition],
    target_type: str,
    requester: StaffProfile | None,
) -> FlowDefinition | None:
    """Return the best active flow for ``target_type`` and ``requester``."""
    candidates = [
        f for f in flows if f.is_active and f.target_type == target_type
    ]
    for flow in ordered_by_priority(candidates):
        if scope_matches(flow, requester):
            return flow
    return None
