"""
approval_kernel.services.flow_catalog -- Flow template administration and lookup.

Responsibility:
    Create, edit, activate/deactivate and delete flow templates and their
    steps, and pick the template an initiation should use.

Architecture position:
    Kernel > Services.  May import from domain/, models/, db/.  Matching
    itself is the pure ``domain.matching.match_flow``; this service only
    fetches candidates.

Invariants enforced:
    - Flow codes unique; step orders unique within a flow and >= 1.
    - Every step satisfies ``validate_step_spec`` (role steps carry a role
      code, specific-user steps carry a user, escalation carries a role).
    - A flow with open instances cannot be deleted.  Deleting a flow with
      only historical instances detaches them (flow_id -> NULL); their
      step snapshots are untouched.
    - Template edits never reach running instances: instances read their
      own snapshot, never these rows.

Failure modes:
    - FlowNotFoundError / StepNotFoundError for unknown ids or codes.
    - DuplicateFlowCodeError, DuplicateStepOrderError,
      InvalidStepDefinitionError on bad admin input.
    - FlowInUseError on delete with open instances.
    - NoMatchingFlowError / EmptyFlowError from select_flow_for_initiation.
"""

from __future__ import annotations

from dataclasses import fields, replace
from typing import Any, Iterable
from uuid import UUID

from sqlalchemy import func, select, update

from approval_kernel.domain.approval import (
    OPEN_INSTANCE_STATUSES,
    ApproverType,
    FlowDefinition,
    FlowSpec,
    StepDefinition,
    StepSpec,
    validate_step_spec,
)
from approval_kernel.domain.directory import StaffProfile
from approval_kernel.domain.matching import match_flow, ordered_by_priority
from approval_kernel.exceptions import (
    DuplicateFlowCodeError,
    DuplicateStepOrderError,
    EmptyFlowError,
    FlowInUseError,
    FlowNotFoundError,
    InvalidStepDefinitionError,
    NoMatchingFlowError,
    StepNotFoundError,
)
from approval_kernel.logging_config import get_logger
from approval_kernel.models.flow import ApprovalFlowModel, ApprovalFlowStepModel
from approval_kernel.models.instance import ApprovalInstanceModel
from approval_kernel.services.base import BaseService

logger = get_logger("services.flow_catalog")

_FLOW_FIELDS = frozenset({
    "code",
    "name",
    "description",
    "target_type",
    "branch_id",
    "region_id",
    "department_id",
    "position_id",
    "priority",
    "is_active",
})

_STEP_FIELDS = frozenset(f.name for f in fields(StepSpec))


class FlowCatalogService(BaseService):
    """Flow template administration and selection."""

    # ------------------------------------------------------------------
    # Flow administration
    # ------------------------------------------------------------------

    def create_flow(self, spec: FlowSpec, actor_id: UUID | None = None) -> FlowDefinition:
        if self._find_flow_by_code(spec.code) is not None:
            raise DuplicateFlowCodeError(spec.code)

        now = self.clock.now()
        flow = ApprovalFlowModel(
            code=spec.code,
            name=spec.name,
            description=spec.description,
            target_type=spec.target_type,
            branch_id=spec.branch_id,
            region_id=spec.region_id,
            department_id=spec.department_id,
            position_id=spec.position_id,
            priority=spec.priority,
            is_active=spec.is_active,
            created_at=now,
            updated_at=now,
            created_by_id=actor_id,
        )

        used: set[int] = set()
        for step_spec in spec.steps:
            order = step_spec.step_order
            if order is None:
                order = max(used, default=0) + 1
            self._validate_step(replace(step_spec, step_order=order))
            if order in used:
                raise DuplicateStepOrderError(spec.code, order)
            used.add(order)
            flow.steps.append(self._build_step(step_spec, order))

        self.session.add(flow)
        self.session.flush()

        logger.info(
            "approval_flow_created",
            extra={
                "flow_id": str(flow.id),
                "flow_code": flow.code,
                "target_type": flow.target_type,
                "step_count": len(flow.steps),
                "priority": flow.priority,
            },
        )
        return flow.to_dto()

    def update_flow(
        self,
        flow_id: UUID,
        actor_id: UUID | None = None,
        **changes: Any,
    ) -> FlowDefinition:
        unknown = set(changes) - _FLOW_FIELDS
        if unknown:
            raise ValueError(f"Unknown flow fields: {sorted(unknown)}")

        flow = self._load_flow(flow_id)
        new_code = changes.get("code")
        if new_code is not None and new_code != flow.code:
            if self._find_flow_by_code(new_code) is not None:
                raise DuplicateFlowCodeError(new_code)

        for name, value in changes.items():
            setattr(flow, name, value)
        flow.updated_at = self.clock.now()
        flow.updated_by_id = actor_id
        self.session.flush()

        logger.info(
            "approval_flow_updated",
            extra={
                "flow_id": str(flow.id),
                "flow_code": flow.code,
                "fields": sorted(changes),
            },
        )
        return flow.to_dto()

    def activate_flow(self, flow_id: UUID, actor_id: UUID | None = None) -> FlowDefinition:
        return self.update_flow(flow_id, actor_id=actor_id, is_active=True)

    def deactivate_flow(self, flow_id: UUID, actor_id: UUID | None = None) -> FlowDefinition:
        return self.update_flow(flow_id, actor_id=actor_id, is_active=False)

    def delete_flow(self, flow_id: UUID) -> None:
        flow = self._load_flow(flow_id)
        open_count = self._count_open_instances(flow.id)
        if open_count:
            raise FlowInUseError(flow.code, open_count)

        self.session.execute(
            update(ApprovalInstanceModel)
            .where(ApprovalInstanceModel.flow_id == flow.id)
            .values(flow_id=None)
            .execution_options(synchronize_session=False)
        )
        self.session.delete(flow)
        self.session.flush()

        logger.info(
            "approval_flow_deleted",
            extra={"flow_id": str(flow_id), "flow_code": flow.code},
        )

    # ------------------------------------------------------------------
    # Step administration
    # ------------------------------------------------------------------

    def add_step(
        self,
        flow_id: UUID,
        spec: StepSpec,
        actor_id: UUID | None = None,
    ) -> StepDefinition:
        flow = self._load_flow(flow_id)
        used = {s.step_order for s in flow.steps}
        order = spec.step_order
        if order is None:
            order = max(used, default=0) + 1
        self._validate_step(replace(spec, step_order=order))
        if order in used:
            raise DuplicateStepOrderError(flow.code, order)

        step = self._build_step(spec, order)
        flow.steps.append(step)
        flow.updated_at = self.clock.now()
        flow.updated_by_id = actor_id
        self.session.flush()

        logger.info(
            "approval_step_added",
            extra={
                "flow_code": flow.code,
                "step_id": str(step.id),
                "step_order": order,
            },
        )
        return step.to_dto()

    def update_step(
        self,
        step_id: UUID,
        actor_id: UUID | None = None,
        **changes: Any,
    ) -> StepDefinition:
        unknown = set(changes) - _STEP_FIELDS
        if unknown:
            raise ValueError(f"Unknown step fields: {sorted(unknown)}")

        step = self._load_step(step_id)
        flow = step.flow
        merged = replace(self._spec_of(step), **changes)
        self._validate_step(merged)
        if merged.step_order != step.step_order and any(
            s.step_order == merged.step_order for s in flow.steps if s is not step
        ):
            raise DuplicateStepOrderError(flow.code, merged.step_order)

        self._apply_spec(step, merged)
        flow.updated_at = self.clock.now()
        flow.updated_by_id = actor_id
        self.session.flush()

        logger.info(
            "approval_step_updated",
            extra={
                "flow_code": flow.code,
                "step_id": str(step.id),
                "fields": sorted(changes),
            },
        )
        return step.to_dto()

    def remove_step(self, step_id: UUID) -> None:
        step = self._load_step(step_id)
        flow = step.flow
        flow.steps.remove(step)
        flow.updated_at = self.clock.now()
        self.session.flush()

        logger.info(
            "approval_step_removed",
            extra={
                "flow_code": flow.code,
                "step_id": str(step_id),
                "step_order": step.step_order,
            },
        )

    def reorder_steps(self, flow_id: UUID, new_orders: dict[UUID, int]) -> FlowDefinition:
        """Assign new step orders.  Steps not named keep their order."""
        flow = self._load_flow(flow_id)
        by_id = {s.id: s for s in flow.steps}
        missing = [str(sid) for sid in new_orders if sid not in by_id]
        if missing:
            raise StepNotFoundError(", ".join(missing))

        final = {s.id: new_orders.get(s.id, s.step_order) for s in flow.steps}
        seen: set[int] = set()
        for sid, order in final.items():
            if order < 1:
                raise InvalidStepDefinitionError(
                    by_id[sid].name, [f"step_order must be >= 1, got {order}"]
                )
            if order in seen:
                raise DuplicateStepOrderError(flow.code, order)
            seen.add(order)

        # Two passes so UNIQUE(flow_id, step_order) holds after every flush
        for i, step in enumerate(flow.steps, start=1):
            step.step_order = -i
        self.session.flush()
        for step in flow.steps:
            step.step_order = final[step.id]
        flow.updated_at = self.clock.now()
        self.session.flush()

        logger.info(
            "approval_steps_reordered",
            extra={
                "flow_code": flow.code,
                "orders": {str(k): v for k, v in final.items()},
            },
        )
        return flow.to_dto()

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get_flow(self, flow_id: UUID) -> FlowDefinition:
        return self._load_flow(flow_id).to_dto()

    def get_flow_by_code(self, code: str, active_only: bool = True) -> FlowDefinition:
        flow = self._find_flow_by_code(code)
        if flow is None or (active_only and not flow.is_active):
            raise FlowNotFoundError(code)
        return flow.to_dto()

    def list_flows(
        self,
        target_type: str | None = None,
        include_inactive: bool = False,
    ) -> list[FlowDefinition]:
        stmt = select(ApprovalFlowModel)
        if target_type is not None:
            stmt = stmt.where(ApprovalFlowModel.target_type == target_type)
        if not include_inactive:
            stmt = stmt.where(ApprovalFlowModel.is_active.is_(True))
        stmt = stmt.order_by(ApprovalFlowModel.priority.desc(), ApprovalFlowModel.name)
        return [f.to_dto() for f in self.session.execute(stmt).scalars().all()]

    def resolve(
        self,
        target_type: str,
        requester: StaffProfile | None,
    ) -> FlowDefinition | None:
        """Best scoped match among active flows for ``target_type``."""
        return match_flow(self.list_flows(target_type), target_type, requester)

    def select_flow_for_initiation(
        self,
        target_type: str,
        flow_code: str | None = None,
        requester: StaffProfile | None = None,
    ) -> FlowDefinition:
        """Explicit code, then scoped match, then any active flow by priority.

        Raises:
            NoMatchingFlowError: no active flow for ``target_type`` at all.
            EmptyFlowError: the chosen flow has no steps.
        """
        chosen: FlowDefinition | None = None
        source = "code"

        if flow_code:
            flow = self._find_flow_by_code(flow_code)
            if flow is not None and flow.is_active:
                chosen = flow.to_dto()

        if chosen is None and requester is not None:
            chosen = self.resolve(target_type, requester)
            source = "scoped"

        if chosen is None:
            candidates = ordered_by_priority(self.list_flows(target_type))
            if candidates:
                chosen = candidates[0]
                source = "fallback"
                logger.warning(
                    "approval_flow_fallback_used",
                    extra={
                        "target_type": target_type,
                        "flow_code": chosen.code,
                        "requested_code": flow_code,
                    },
                )

        if chosen is None:
            raise NoMatchingFlowError(target_type, flow_code)
        if not chosen.steps:
            raise EmptyFlowError(chosen.code)

        logger.debug(
            "approval_flow_selected",
            extra={
                "target_type": target_type,
                "flow_code": chosen.code,
                "selection": source,
            },
        )
        return chosen

    def import_templates(
        self,
        specs: Iterable[FlowSpec],
        actor_id: UUID | None = None,
    ) -> list[FlowDefinition]:
        """Create each flow whose code does not exist yet.  Idempotent."""
        result: list[FlowDefinition] = []
        created = 0
        for spec in specs:
            existing = self._find_flow_by_code(spec.code)
            if existing is not None:
                result.append(existing.to_dto())
                continue
            result.append(self.create_flow(spec, actor_id=actor_id))
            created += 1

        logger.info(
            "approval_templates_imported",
            extra={"created": created, "existing": len(result) - created},
        )
        return result

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _load_flow(self, flow_id: UUID) -> ApprovalFlowModel:
        flow = self.session.get(ApprovalFlowModel, flow_id)
        if flow is None:
            raise FlowNotFoundError(str(flow_id))
        return flow

    def _load_step(self, step_id: UUID) -> ApprovalFlowStepModel:
        step = self.session.get(ApprovalFlowStepModel, step_id)
        if step is None:
            raise StepNotFoundError(str(step_id))
        return step

    def _find_flow_by_code(self, code: str) -> ApprovalFlowModel | None:
        return self.session.execute(
            select(ApprovalFlowModel).where(ApprovalFlowModel.code == code)
        ).scalar_one_or_none()

    def _count_open_instances(self, flow_id: UUID) -> int:
        return self.session.execute(
            select(func.count(ApprovalInstanceModel.id)).where(
                ApprovalInstanceModel.flow_id == flow_id,
                ApprovalInstanceModel.status.in_([s.value for s in OPEN_INSTANCE_STATUSES]),
            )
        ).scalar_one()

    @staticmethod
    def _validate_step(spec: StepSpec) -> None:
        errors = validate_step_spec(spec)
        if errors:
            raise InvalidStepDefinitionError(spec.name, errors)

    @staticmethod
    def _build_step(spec: StepSpec, order: int) -> ApprovalFlowStepModel:
        step = ApprovalFlowStepModel()
        FlowCatalogService._apply_spec(step, replace(spec, step_order=order))
        return step

    @staticmethod
    def _apply_spec(step: ApprovalFlowStepModel, spec: StepSpec) -> None:
        step.step_order = spec.step_order
        step.name = spec.name
        step.approver_type = ApproverType(spec.approver_type).value
        step.approver_role_code = spec.approver_role_code
        step.specific_approver_id = spec.specific_approver_id
        step.is_final = spec.is_final
        step.auto_approve_hours = spec.auto_approve_hours
        step.escalation_hours = spec.escalation_hours
        step.escalation_role_code = spec.escalation_role_code
        step.instructions = spec.instructions
        step.can_skip = spec.can_skip

    @staticmethod
    def _spec_of(step: ApprovalFlowStepModel) -> StepSpec:
        return StepSpec(
            name=step.name,
            approver_type=ApproverType(step.approver_type),
            approver_role_code=step.approver_role_code,
            specific_approver_id=step.specific_approver_id,
            step_order=step.step_order,
            is_final=step.is_final,
            auto_approve_hours=step.auto_approve_hours,
            escalation_hours=step.escalation_hours,
            escalation_role_code=step.escalation_role_code,
            instructions=step.instructions,
            can_skip=step.can_skip,
        )
