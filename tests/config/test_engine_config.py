"""Tests for approval_config -- loading, overrides, validation and bridges."""

from pathlib import Path
from uuid import uuid4

import pytest

from approval_config import DEFAULT_CONFIG_PATH, load_engine_config
from approval_config.bridges import to_flow_specs, to_staff_profiles
from approval_config.loader import compute_checksum
from approval_kernel.domain.approval import ApproverType


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "engine.yaml"
    path.write_text(text)
    return path


MINIMAL = """
settings:
  database_url: "sqlite:///:memory:"
  sweep_interval_seconds: 60
flows:
  - code: EXPENSE_DEFAULT
    name: Expenses
    target_type: EXPENSE
    steps:
      - approver_type: role
        approver_role_code: ACCOUNTANT
        is_final: true
"""


class TestDefaults:

    def test_bundled_config_loads(self):
        config = load_engine_config(environ={})
        assert config.source == str(DEFAULT_CONFIG_PATH)
        assert config.settings.sweep_interval_seconds == 1800
        assert {(f.code, f.target_type) for f in config.flows} == {
            ("LEAVE_DEFAULT", "leave"),
            ("LEAVE_MANAGER", "leave"),
            ("CLAIM_DEFAULT", "claim"),
            ("CLAIM_HIGH_VALUE", "claim"),
            ("STAFF_LOAN_DEFAULT", "staff_loan"),
            ("SALARY_ADVANCE_DEFAULT", "staff_loan"),
            ("PETTY_CASH_REPLENISHMENT_DEFAULT", "petty_cash_replenishment"),
        }
        assert len(config.checksum) == 64
        assert {f.code for f in config.flows if not f.is_active} == {
            "LEAVE_MANAGER", "CLAIM_HIGH_VALUE", "SALARY_ADVANCE_DEFAULT",
        }

    def test_bundled_flow_steps(self):
        config = load_engine_config(environ={})
        roles = {
            f.code: [s.approver_role_code for s in f.steps] for f in config.flows
        }
        assert roles["CLAIM_HIGH_VALUE"] == [
            "BRANCH_MANAGER", "REGIONAL_MANAGER", "ACCOUNTANT", "HR_MANAGER",
        ]
        assert roles["STAFF_LOAN_DEFAULT"] == ["BRANCH_MANAGER", "HR_MANAGER", "ACCOUNTANT", "CEO"]
        assert roles["SALARY_ADVANCE_DEFAULT"] == ["BRANCH_MANAGER", "HR_MANAGER", "ACCOUNTANT"]

        petty = config.flow("PETTY_CASH_REPLENISHMENT_DEFAULT")
        first, second = petty.steps
        assert (first.approver_role_code, first.escalation_hours, first.escalation_role_code) == (
            "REGIONAL_MANAGER", 48, "CEO",
        )
        assert first.auto_approve_hours == 0
        assert second.approver_role_code == "ACCOUNTANT" and second.is_final
        assert second.instructions == "Verify float balance and process disbursement."

        manager_first = config.flow("LEAVE_MANAGER").steps[0]
        assert (manager_first.escalation_hours, manager_first.escalation_role_code) == (48, "CEO")
        assert all(s.approver_type == "role" for f in config.flows for s in f.steps)
        assert not any(s.can_skip for f in config.flows for s in f.steps)

    def test_checksum_is_stable(self):
        assert load_engine_config(environ={}).checksum == load_engine_config(environ={}).checksum
        assert compute_checksum({"b": 1, "a": 2}) == compute_checksum({"a": 2, "b": 1})


class TestOverrides:

    def test_environment_overrides(self, tmp_path):
        path = _write(tmp_path, MINIMAL)
        config = load_engine_config(path, environ={
            "APPROVAL_DATABASE_URL": "postgresql://db/approvals",
            "APPROVAL_SWEEP_INTERVAL_SECONDS": "120",
            "APPROVAL_LOG_LEVEL": "debug",
        })
        assert config.settings.database_url == "postgresql://db/approvals"
        assert config.settings.sweep_interval_seconds == 120
        assert config.settings.log_level == "DEBUG"
        assert config.checksum != load_engine_config(path, environ={}).checksum

    def test_bad_interval_override(self, tmp_path):
        with pytest.raises(ValueError, match="APPROVAL_SWEEP_INTERVAL_SECONDS"):
            load_engine_config(_write(tmp_path, MINIMAL), environ={
                "APPROVAL_SWEEP_INTERVAL_SECONDS": "soon",
            })


class TestValidation:

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_engine_config(tmp_path / "absent.yaml", environ={})

    def test_document_must_be_mapping(self, tmp_path):
        with pytest.raises(ValueError):
            load_engine_config(_write(tmp_path, "- just\n- a list\n"), environ={})

    def test_flow_requires_code(self, tmp_path):
        with pytest.raises(KeyError):
            load_engine_config(_write(tmp_path, "flows:\n  - name: X\n    target_type: X\n"), environ={})

    def test_errors_are_collected(self, tmp_path):
        text = """
settings:
  sweep_interval_seconds: 0
  log_level: LOUD
flows:
  - code: DUP
    name: One
    target_type: X
    branch_id: not-a-uuid
    steps:
      - approver_type: wizard
  - code: DUP
    name: Two
    target_type: X
    steps:
      - approver_type: role
"""
        with pytest.raises(ValueError) as excinfo:
            load_engine_config(_write(tmp_path, text), environ={})
        message = str(excinfo.value)
        assert "sweep_interval_seconds must be > 0" in message
        assert "'LOUD' is not a log level" in message
        assert "Duplicate flow code: DUP" in message
        assert "branch_id 'not-a-uuid' is not a UUID" in message
        assert "unknown approver_type 'wizard'" in message
        assert "requires approver_role_code" in message

    def test_warnings_are_logged(self, tmp_path, captured_logs):
        text = MINIMAL + "  - code: EMPTY\n    name: Empty\n    target_type: EMPTY\n"
        load_engine_config(_write(tmp_path, text), environ={})
        warnings = [r for r in captured_logs() if r["message"] == "approval_config_warning"]
        assert len(warnings) == 1


class TestBridges:

    def test_flow_specs_import_into_catalog(self, catalog, session):
        config = load_engine_config(environ={})
        specs = to_flow_specs(config.flows)
        leave = next(s for s in specs if s.code == "LEAVE_DEFAULT")
        assert leave.steps[0].approver_type == ApproverType.ROLE
        assert leave.steps[0].approver_role_code == "BRANCH_MANAGER"
        assert leave.steps[0].escalation_role_code == "REGIONAL_MANAGER"

        first = catalog.import_templates(specs)
        session.commit()
        again = catalog.import_templates(specs)
        assert [f.flow_id for f in first] == [f.flow_id for f in again]
        assert len(catalog.list_flows(include_inactive=True)) == 7

    def test_staff_profiles(self):
        staff_id, manager_id = uuid4(), uuid4()
        [profile] = to_staff_profiles([{
            "staff_id": str(staff_id),
            "full_name": "Sam Staff",
            "role_codes": ["STAFF"],
            "manager_id": str(manager_id),
        }])
        assert profile.staff_id == staff_id
        assert profile.manager_id == manager_id
        assert profile.role_codes == frozenset({"STAFF"})
        assert profile.branch_id is None

    def test_staff_profile_requires_id(self):
        with pytest.raises(KeyError):
            to_staff_profiles([{"full_name": "Nobody"}])
