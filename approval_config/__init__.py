"""
approval_config -- single public entrypoint for engine configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``load_engine_config()``.  No other component reads configuration
    files or environment variables directly.

Architecture position:
    Configuration -- YAML-driven, validated at load time.  Sits beside
    ``approval_kernel``; the kernel MUST NEVER import from
    ``approval_config``.  ``bridges`` translates templates into kernel
    ``FlowSpec`` inputs.

Invariants enforced:
    - Single entrypoint: settings and seed flows flow through
      ``load_engine_config()``.
    - Load-time validation: a configuration with validator errors is
      never returned.
    - Environment overrides are applied after parsing and before
      validation, and only for the documented variables.

Failure modes:
    - ``FileNotFoundError`` -- the requested YAML file does not exist.
    - ``ValueError`` -- validation failures or bad override values.
    - ``KeyError`` -- a flow is missing a required key.
"""

from __future__ import annotations

import logging
import os
from dataclasses import replace
from pathlib import Path
from typing import Mapping

from approval_config.loader import (
    compute_checksum,
    load_yaml_file,
    parse_flows,
    parse_settings,
)
from approval_config.schema import (
    EngineConfig,
    EngineSettings,
    FlowTemplateDef,
    StepTemplateDef,
)
from approval_config.validator import ConfigValidationResult, validate_engine_config

__all__ = [
    "ConfigValidationResult",
    "DEFAULT_CONFIG_PATH",
    "EngineConfig",
    "EngineSettings",
    "FlowTemplateDef",
    "StepTemplateDef",
    "compute_checksum",
    "load_engine_config",
    "validate_engine_config",
]

_logger = logging.getLogger("approval_kernel.config")

DEFAULT_CONFIG_PATH = Path(__file__).parent / "defaults" / "engine.yaml"

ENV_DATABASE_URL = "APPROVAL_DATABASE_URL"
ENV_SWEEP_INTERVAL = "APPROVAL_SWEEP_INTERVAL_SECONDS"
ENV_LOG_LEVEL = "APPROVAL_LOG_LEVEL"


def load_engine_config(
    path: Path | str | None = None,
    environ: Mapping[str, str] | None = None,
) -> EngineConfig:
    """The ONLY public configuration entrypoint.

    Args:
        path: YAML file to load.  Defaults to the bundled
            ``approval_config/defaults/engine.yaml``.
        environ: Environment mapping for overrides.  Defaults to
            ``os.environ``.

    Returns:
        A validated ``EngineConfig`` whose ``checksum`` fingerprints the
        source document plus any applied overrides.

    Raises:
        FileNotFoundError: If ``path`` does not exist.
        ValueError: If validation fails.
    """
    source = Path(path) if path is not None else DEFAULT_CONFIG_PATH
    raw = load_yaml_file(source)

    settings = parse_settings(raw.get("settings") or {})
    settings, overrides = _apply_env_overrides(
        settings, os.environ if environ is None else environ,
    )
    flows = parse_flows(raw.get("flows"))

    config = EngineConfig(
        settings=settings,
        flows=flows,
        checksum=compute_checksum({"document": raw, "overrides": overrides}),
        source=str(source),
    )

    validation = validate_engine_config(config)
    if not validation.is_valid:
        raise ValueError(
            "Configuration validation failed:\n"
            + "\n".join(f"  - {e}" for e in validation.errors)
        )
    for warning in validation.warnings:
        _logger.warning("approval_config_warning", extra={"warning": warning})

    _logger.info(
        "approval_config_loaded",
        extra={
            "source": config.source,
            "checksum": config.checksum,
            "flow_count": len(config.flows),
            "overrides": sorted(overrides),
        },
    )
    return config


def _apply_env_overrides(
    settings: EngineSettings,
    environ: Mapping[str, str],
) -> tuple[EngineSettings, dict[str, str]]:
    changes: dict[str, object] = {}
    applied: dict[str, str] = {}

    if environ.get(ENV_DATABASE_URL):
        changes["database_url"] = environ[ENV_DATABASE_URL]
        applied[ENV_DATABASE_URL] = environ[ENV_DATABASE_URL]
    if environ.get(ENV_SWEEP_INTERVAL):
        try:
            changes["sweep_interval_seconds"] = int(environ[ENV_SWEEP_INTERVAL])
        except ValueError:
            raise ValueError(
                f"{ENV_SWEEP_INTERVAL} must be an integer, got {environ[ENV_SWEEP_INTERVAL]!r}"
            ) from None
        applied[ENV_SWEEP_INTERVAL] = environ[ENV_SWEEP_INTERVAL]
    if environ.get(ENV_LOG_LEVEL):
        changes["log_level"] = environ[ENV_LOG_LEVEL].upper()
        applied[ENV_LOG_LEVEL] = environ[ENV_LOG_LEVEL]

    return (replace(settings, **changes) if changes else settings), applied
