"""
Configuration Validator (``approval_config.validator``).

Responsibility
--------------
Validates an ``EngineConfig`` before it is handed to the runtime, so a
bad seed flow is reported at load time instead of at initiation time.

Invariants enforced
-------------------
* Flow code uniqueness.
* Every step passes the kernel's step rules (role steps name a role,
  escalation names a target role, hours are non-negative, orders >= 1).
* Approver types are known.
* Explicit step orders are unique within a flow.
* Scope ids are valid UUIDs.

Failure modes
-------------
* Errors  -> configuration MUST NOT be used.
* Warnings (e.g. a flow with no steps, an active flow without a final
  step) -> configuration may be used but should be reviewed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from uuid import UUID

from approval_config.schema import EngineConfig, FlowTemplateDef
from approval_kernel.domain.approval import ApproverType, StepSpec, validate_step_spec

_KNOWN_APPROVER_TYPES = frozenset(t.value for t in ApproverType)
_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


@dataclass
class ConfigValidationResult:
    """
    Result of configuration validation.

    ``is_valid`` is True only when ``errors`` is empty.
    """

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return len(self.errors) == 0

    def add_error(self, msg: str) -> None:
        self.errors.append(msg)

    def add_warning(self, msg: str) -> None:
        self.warnings.append(msg)


def validate_engine_config(config: EngineConfig) -> ConfigValidationResult:
    result = ConfigValidationResult()
    _validate_settings(config, result)
    _validate_flow_codes(config, result)
    for flow in config.flows:
        _validate_flow(flow, result)
    return result


def _validate_settings(config: EngineConfig, result: ConfigValidationResult) -> None:
    settings = config.settings
    if settings.sweep_interval_seconds <= 0:
        result.add_error("settings.sweep_interval_seconds must be > 0")
    if settings.relay_batch_size <= 0:
        result.add_error("settings.relay_batch_size must be > 0")
    if settings.relay_max_attempts <= 0:
        result.add_error("settings.relay_max_attempts must be > 0")
    if settings.relay_backoff_seconds < 0:
        result.add_error("settings.relay_backoff_seconds must be >= 0")
    if settings.log_level not in _LOG_LEVELS:
        result.add_error(f"settings.log_level {settings.log_level!r} is not a log level")


def _validate_flow_codes(config: EngineConfig, result: ConfigValidationResult) -> None:
    seen: set[str] = set()
    for flow in config.flows:
        if flow.code in seen:
            result.add_error(f"Duplicate flow code: {flow.code}")
        seen.add(flow.code)


def _validate_flow(flow: FlowTemplateDef, result: ConfigValidationResult) -> None:
    for attr in ("branch_id", "region_id", "department_id", "position_id"):
        value = getattr(flow, attr)
        if value is not None and not _is_uuid(value):
            result.add_error(f"Flow '{flow.code}': {attr} {value!r} is not a UUID")

    if not flow.steps:
        result.add_warning(f"Flow '{flow.code}' has no steps and cannot be initiated")
        return

    orders: set[int] = set()
    for index, step in enumerate(flow.steps, start=1):
        label = f"Flow '{flow.code}' step {index} ({step.name})"
        if step.approver_type not in _KNOWN_APPROVER_TYPES:
            result.add_error(f"{label}: unknown approver_type {step.approver_type!r}")
            continue
        if step.specific_approver_id is not None and not _is_uuid(step.specific_approver_id):
            result.add_error(f"{label}: specific_approver_id is not a UUID")
            continue
        if step.step_order is not None:
            if step.step_order in orders:
                result.add_error(f"{label}: duplicate step_order {step.step_order}")
            orders.add(step.step_order)
        spec = StepSpec(
            name=step.name,
            approver_type=ApproverType(step.approver_type),
            approver_role_code=step.approver_role_code,
            specific_approver_id=(
                UUID(step.specific_approver_id) if step.specific_approver_id else None
            ),
            step_order=step.step_order,
            is_final=step.is_final,
            auto_approve_hours=step.auto_approve_hours,
            escalation_hours=step.escalation_hours,
            escalation_role_code=step.escalation_role_code,
        )
        for err in validate_step_spec(spec):
            result.add_error(f"{label}: {err}")

    if flow.is_active and not any(step.is_final for step in flow.steps):
        result.add_warning(
            f"Flow '{flow.code}' has no step marked final; the highest step finalizes"
        )


def _is_uuid(value: str) -> bool:
    try:
        UUID(str(value))
    except ValueError:
        return False
    return True
