"""
Pytest fixtures for the approval engine test suite.

Provides:
- A SQLite file database per test (multiple sessions see the same data)
- Deterministic clock, staff directory and the standard org chart
- Service / selector factories and a flow builder
- Structured-log capture

Environment Variables:
- DATABASE_URL: when it points at PostgreSQL, tests marked ``postgres``
  run against it; otherwise they are skipped.
"""

import json
import logging
import os
from io import StringIO
from types import SimpleNamespace
from uuid import uuid4

import pytest
from sqlalchemy.orm import sessionmaker

from approval_kernel.db.engine import build_engine, create_tables
from approval_kernel.domain.approval import (
    ApproverType,
    FlowSpec,
    StepSpec,
)
from approval_kernel.domain.clock import DeterministicClock
from approval_kernel.domain.directory import InMemoryStaffDirectory, StaffProfile
from approval_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from approval_kernel.selectors.approval_selector import ApprovalSelector
from approval_kernel.services.approval_service import ApprovalService
from approval_kernel.services.flow_catalog import FlowCatalogService

LEAVE = "leave"
CLAIM = "claim"


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "postgres: mark test as requiring PostgreSQL"
    )


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture approval_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, service):
            service.approve(...)
            logs = captured_logs()
            assert any(r["message"] == "approval_step_approved" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("approval_kernel")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def engine(tmp_path):
    eng = build_engine(f"sqlite:///{tmp_path / 'approvals.db'}")
    create_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def session(session_factory):
    s = session_factory()
    yield s
    s.rollback()
    s.close()


@pytest.fixture
def postgres_url():
    url = os.environ.get("DATABASE_URL", "")
    if not url.startswith("postgresql"):
        pytest.skip("DATABASE_URL does not point at PostgreSQL")
    return url


# =============================================================================
# Domain fixtures
# =============================================================================


@pytest.fixture
def clock():
    return DeterministicClock()


@pytest.fixture
def staff():
    """A small branch: requester -> branch manager -> regional manager, plus HR."""
    branch_id, other_branch_id, region_id = uuid4(), uuid4(), uuid4()
    regional = StaffProfile(
        staff_id=uuid4(),
        full_name="Rita Regional",
        role_codes=frozenset({"REGIONAL_MANAGER"}),
        region_id=region_id,
    )
    manager = StaffProfile(
        staff_id=uuid4(),
        full_name="Bob Branch",
        role_codes=frozenset({"BRANCH_MANAGER"}),
        manager_id=regional.staff_id,
        branch_id=branch_id,
        region_id=region_id,
    )
    requester = StaffProfile(
        staff_id=uuid4(),
        full_name="Sam Staff",
        role_codes=frozenset({"STAFF"}),
        manager_id=manager.staff_id,
        branch_id=branch_id,
        region_id=region_id,
    )
    hr = StaffProfile(
        staff_id=uuid4(),
        full_name="Hana HR",
        role_codes=frozenset({"HR_MANAGER"}),
    )
    accountant = StaffProfile(
        staff_id=uuid4(),
        full_name="Ari Accounts",
        role_codes=frozenset({"ACCOUNTANT"}),
    )
    outsider = StaffProfile(
        staff_id=uuid4(),
        full_name="Olga Other",
        role_codes=frozenset({"STAFF"}),
        branch_id=other_branch_id,
    )
    return SimpleNamespace(
        branch_id=branch_id,
        other_branch_id=other_branch_id,
        region_id=region_id,
        requester=requester,
        manager=manager,
        regional=regional,
        hr=hr,
        accountant=accountant,
        outsider=outsider,
    )


@pytest.fixture
def directory(staff):
    return InMemoryStaffDirectory([
        staff.requester,
        staff.manager,
        staff.regional,
        staff.hr,
        staff.accountant,
        staff.outsider,
    ])


# =============================================================================
# Service fixtures
# =============================================================================


@pytest.fixture
def catalog(session, clock):
    return FlowCatalogService(session, clock)


@pytest.fixture
def service(session, directory, clock):
    return ApprovalService(session, directory, clock)


@pytest.fixture
def selector(session, directory, clock):
    return ApprovalSelector(session, directory, clock)


def role_step(role, *, name=None, **kwargs) -> StepSpec:
    return StepSpec(
        name=name or f"{role} review",
        approver_type=ApproverType.ROLE,
        approver_role_code=role,
        **kwargs,
    )


@pytest.fixture
def make_flow(catalog, session):
    """Create and commit a flow.  ``steps`` are StepSpecs."""

    def _make(code, target_type=LEAVE, steps=(), **kwargs):
        flow = catalog.create_flow(
            FlowSpec(code=code, name=code.title(), target_type=target_type,
                     steps=tuple(steps), **kwargs)
        )
        session.commit()
        return flow

    return _make


@pytest.fixture
def leave_flow(make_flow):
    """LEAVE_DEFAULT: branch manager (escalates to regional after 48h), then HR."""
    return make_flow(
        "LEAVE_DEFAULT",
        steps=[
            role_step(
                "BRANCH_MANAGER",
                escalation_hours=48,
                escalation_role_code="REGIONAL_MANAGER",
            ),
            role_step("HR_MANAGER", is_final=True),
        ],
    )


@pytest.fixture
def three_step_flow(make_flow):
    return make_flow(
        "CLAIM_DEFAULT",
        target_type=CLAIM,
        steps=[
            role_step("BRANCH_MANAGER"),
            role_step("ACCOUNTANT"),
            role_step("HR_MANAGER"),
        ],
    )
