"""
Configuration Loader (``approval_config.loader``).

Responsibility
--------------
Loads the engine YAML file and parses it into typed
``approval_config.schema`` dataclass instances.  Runtime callers go
through ``approval_config.load_engine_config()``; this module is the
parsing layer underneath it.

Architecture position
---------------------
**Config layer**.  No dependency on the kernel, services or batch.

Invariants enforced
-------------------
* Parse errors raise ``ValueError`` or ``KeyError`` with descriptive
  messages; required fields (flow ``code``, ``name``, ``target_type``)
  have no silent defaults.
* Every parsed object is a frozen dataclass from ``schema.py``.
* ``compute_checksum`` produces a deterministic SHA-256 hash of the raw
  document for change detection.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
* Wrong shape (e.g. ``steps`` not a list)  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

import yaml

from approval_config.schema import (
    EngineSettings,
    FlowTemplateDef,
    StepTemplateDef,
)

DEFAULT_STEP_NAME = "Approval Step"


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the document is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping at top level, got {type(data).__name__}")
    return data


def parse_settings(data: dict[str, Any]) -> EngineSettings:
    """Parse EngineSettings; absent keys keep their defaults."""
    defaults = EngineSettings()
    return EngineSettings(
        database_url=str(data.get("database_url", defaults.database_url)),
        sweep_interval_seconds=int(
            data.get("sweep_interval_seconds", defaults.sweep_interval_seconds)
        ),
        relay_batch_size=int(data.get("relay_batch_size", defaults.relay_batch_size)),
        relay_max_attempts=int(data.get("relay_max_attempts", defaults.relay_max_attempts)),
        relay_backoff_seconds=float(
            data.get("relay_backoff_seconds", defaults.relay_backoff_seconds)
        ),
        log_level=str(data.get("log_level", defaults.log_level)).upper(),
    )


def parse_step(data: dict[str, Any]) -> StepTemplateDef:
    """Parse a StepTemplateDef from a dict."""
    return StepTemplateDef(
        name=data.get("name") or DEFAULT_STEP_NAME,
        approver_type=str(data.get("approver_type", "role")),
        approver_role_code=data.get("approver_role_code"),
        specific_approver_id=(
            str(data["specific_approver_id"]) if data.get("specific_approver_id") else None
        ),
        step_order=int(data["step_order"]) if data.get("step_order") is not None else None,
        is_final=bool(data.get("is_final", False)),
        auto_approve_hours=int(data.get("auto_approve_hours", 0)),
        escalation_hours=int(data.get("escalation_hours", 0)),
        escalation_role_code=data.get("escalation_role_code"),
        instructions=data.get("instructions"),
        can_skip=bool(data.get("can_skip", False)),
    )


def parse_flow(data: dict[str, Any]) -> FlowTemplateDef:
    """
    Parse a FlowTemplateDef from a dict.

    Raises:
        KeyError: if ``code``, ``name`` or ``target_type`` is missing.
        ValueError: if ``steps`` is not a list.
    """
    steps = data.get("steps") or []
    if not isinstance(steps, list):
        raise ValueError(f"Flow {data.get('code')!r}: 'steps' must be a list")
    return FlowTemplateDef(
        code=data["code"],
        name=data["name"],
        target_type=data["target_type"],
        description=data.get("description"),
        branch_id=_opt_str(data.get("branch_id")),
        region_id=_opt_str(data.get("region_id")),
        department_id=_opt_str(data.get("department_id")),
        position_id=_opt_str(data.get("position_id")),
        priority=int(data.get("priority", 0)),
        is_active=bool(data.get("is_active", True)),
        steps=tuple(parse_step(s) for s in steps),
    )


def parse_flows(data: list[dict[str, Any]] | None) -> tuple[FlowTemplateDef, ...]:
    if not data:
        return ()
    if not isinstance(data, list):
        raise ValueError("'flows' must be a list")
    return tuple(parse_flow(item) for item in data)


def compute_checksum(data: dict[str, Any]) -> str:
    """
    Compute SHA-256 checksum of canonical JSON serialization.

    Identical ``data`` always produces identical checksums.
    """
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def _opt_str(value: Any) -> str | None:
    return str(value) if value is not None else None
