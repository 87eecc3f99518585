"""
Engine configuration schema.

Defines the human-authored, reviewable source artifact for the approval
engine: runtime settings plus the seed flow templates.  YAML files are
parsed into these types by the loader, checked by the validator, and
turned into kernel ``FlowSpec`` inputs by the bridges.
"""

from __future__ import annotations

from dataclasses import dataclass, field

DEFAULT_DATABASE_URL = "sqlite:///approvals.db"


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EngineSettings:
    """Runtime knobs for the engine, scheduler and relay."""

    database_url: str = DEFAULT_DATABASE_URL
    sweep_interval_seconds: int = 1800
    relay_batch_size: int = 100
    relay_max_attempts: int = 10
    relay_backoff_seconds: float = 30.0
    log_level: str = "INFO"


# ---------------------------------------------------------------------------
# Flow templates (declarative data)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StepTemplateDef:
    """One step of a seed flow."""

    name: str
    approver_type: str = "role"
    approver_role_code: str | None = None
    specific_approver_id: str | None = None
    step_order: int | None = None
    is_final: bool = False
    auto_approve_hours: int = 0
    escalation_hours: int = 0
    escalation_role_code: str | None = None
    instructions: str | None = None
    can_skip: bool = False


@dataclass(frozen=True)
class FlowTemplateDef:
    """A seed flow, imported by code (existing codes are left alone)."""

    code: str
    name: str
    target_type: str
    description: str | None = None
    branch_id: str | None = None
    region_id: str | None = None
    department_id: str | None = None
    position_id: str | None = None
    priority: int = 0
    is_active: bool = True
    steps: tuple[StepTemplateDef, ...] = ()


@dataclass(frozen=True)
class EngineConfig:
    """Loaded, validated engine configuration."""

    settings: EngineSettings = field(default_factory=EngineSettings)
    flows: tuple[FlowTemplateDef, ...] = ()
    checksum: str = ""
    source: str | None = None

    def flow(self, code: str) -> FlowTemplateDef | None:
        for template in self.flows:
            if template.code == code:
                return template
        return None
