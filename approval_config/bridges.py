"""
Config -> Kernel Bridges.

Convert configuration templates into kernel ``FlowSpec`` inputs.  These
live in approval_config (the producer) because the kernel never imports
approval_config.

Usage:
    from approval_config import load_engine_config
    from approval_config.bridges import to_flow_specs

    config = load_engine_config()
    catalog.import_templates(to_flow_specs(config.flows))
"""

from __future__ import annotations

from typing import Iterable
from uuid import UUID

from approval_config.schema import FlowTemplateDef, StepTemplateDef
from approval_kernel.domain.approval import ApproverType, FlowSpec, StepSpec
from approval_kernel.domain.directory import StaffProfile


def to_step_spec(step: StepTemplateDef) -> StepSpec:
    return StepSpec(
        name=step.name,
        approver_type=ApproverType(step.approver_type),
        approver_role_code=step.approver_role_code,
        specific_approver_id=_uuid(step.specific_approver_id),
        step_order=step.step_order,
        is_final=step.is_final,
        auto_approve_hours=step.auto_approve_hours,
        escalation_hours=step.escalation_hours,
        escalation_role_code=step.escalation_role_code,
        instructions=step.instructions,
        can_skip=step.can_skip,
    )


def to_flow_spec(flow: FlowTemplateDef) -> FlowSpec:
    return FlowSpec(
        code=flow.code,
        name=flow.name,
        target_type=flow.target_type,
        description=flow.description,
        branch_id=_uuid(flow.branch_id),
        region_id=_uuid(flow.region_id),
        department_id=_uuid(flow.department_id),
        position_id=_uuid(flow.position_id),
        priority=flow.priority,
        is_active=flow.is_active,
        steps=tuple(to_step_spec(s) for s in flow.steps),
    )


def to_flow_specs(flows: Iterable[FlowTemplateDef]) -> list[FlowSpec]:
    return [to_flow_spec(f) for f in flows]


def _uuid(value: str | None) -> UUID | None:
    return UUID(value) if value else None


def to_staff_profiles(records: Iterable[dict]) -> list[StaffProfile]:
    """Build directory profiles from ``staff:`` records of a YAML file.

    Used by the command-line tools; applications plug their HR-backed
    ``StaffDirectory`` in directly.

    Raises:
        KeyError: if a record has no ``staff_id``.
    """
    return [
        StaffProfile(
            staff_id=UUID(str(record["staff_id"])),
            full_name=record.get("full_name", ""),
            role_codes=frozenset(record.get("role_codes") or ()),
            manager_id=_uuid(_opt(record.get("manager_id"))),
            branch_id=_uuid(_opt(record.get("branch_id"))),
            region_id=_uuid(_opt(record.get("region_id"))),
            department_id=_uuid(_opt(record.get("department_id"))),
            position_id=_uuid(_opt(record.get("position_id"))),
        )
        for record in records
    ]


def _opt(value) -> str | None:
    return str(value) if value is not None else None
