"""Tests for the structured logging system (approval_kernel/logging_config.py)."""

import json
import logging
from io import StringIO
from uuid import uuid4

import pytest

from approval_kernel.exceptions import NotAuthorizedError
from approval_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
    reset_logging,
)


@pytest.fixture(autouse=True)
def _clean_logging():
    """Reset logging state between tests; restore the suite's DEBUG setup after."""
    reset_logging()
    LogContext.clear()
    yield
    LogContext.clear()
    reset_logging()
    configure_logging(level=logging.DEBUG)


def _make_handler() -> tuple[logging.Handler, StringIO]:
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    return handler, stream


def _parse_log(stream: StringIO) -> dict:
    """Parse the first JSON log line from a stream."""
    line = stream.getvalue().strip().split("\n")[0]
    return json.loads(line)


def _parse_all_logs(stream: StringIO) -> list[dict]:
    lines = stream.getvalue().strip().split("\n")
    return [json.loads(line) for line in lines if line]


# ---------------------------------------------------------------------------
# StructuredFormatter tests
# ---------------------------------------------------------------------------


class TestStructuredFormatter:
    """Tests for JSON log output format."""

    def test_basic_json_output(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("hello")

        record = _parse_log(stream)
        assert record["level"] == "INFO"
        assert record["message"] == "hello"
        assert record["logger"] == "approval_kernel.test"
        assert "ts" in record

    def test_extra_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("approved", extra={"step_order": 2, "status": "pending"})

        record = _parse_log(stream)
        assert record["step_order"] == 2
        assert record["status"] == "pending"

    def test_context_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        LogContext.set(correlation_id="abc-123", sweep_id="sw-1")
        get_logger("test").info("test_msg")

        record = _parse_log(stream)
        assert record["correlation_id"] == "abc-123"
        assert record["sweep_id"] == "sw-1"

    def test_approval_error_fields_extracted(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        try:
            raise NotAuthorizedError("inst-1", "staff-9", step_order=2)
        except NotAuthorizedError:
            get_logger("test").error("decision_refused", exc_info=True)

        record = _parse_log(stream)
        assert record["exc_type"] == "NotAuthorizedError"
        assert record["exc_code"] == "NOT_AUTHORIZED"
        assert record["exc_instance_id"] == "inst-1"
        assert record["exc_step_order"] == 2
        assert "traceback" in record

    def test_uuid_serialized(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        uid = uuid4()
        get_logger("test").info("with_uuid", extra={"instance_id": uid})

        assert _parse_log(stream)["instance_id"] == str(uid)

    def test_role_code_sets_serialized(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("staff_roles", extra={"roles": frozenset({"HR_MANAGER", "ACCOUNTANT"})})

        assert _parse_log(stream)["roles"] == ["ACCOUNTANT", "HR_MANAGER"]

    def test_level_filters_debug(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        logger.info("first")
        logger.warning("second", extra={"k": "v"})
        logger.debug("third")

        logs = _parse_all_logs(stream)
        assert [r["message"] for r in logs] == ["first", "second"]


# ---------------------------------------------------------------------------
# LogContext tests
# ---------------------------------------------------------------------------


class TestLogContext:

    def test_set_and_clear(self):
        LogContext.set(correlation_id="x", instance_id="y")
        assert LogContext.get_all() == {"correlation_id": "x", "instance_id": "y"}
        LogContext.clear()
        assert LogContext.get_all() == {}

    def test_bind_restores_previous(self):
        LogContext.set(instance_id="outer")
        with LogContext.bind(instance_id="inner"):
            assert LogContext.get_all()["instance_id"] == "inner"
        assert LogContext.get_all()["instance_id"] == "outer"

    def test_bind_restores_none(self):
        with LogContext.bind(sweep_id="temp"):
            assert LogContext.get_all()["sweep_id"] == "temp"
        assert "sweep_id" not in LogContext.get_all()

    def test_uuid_values_stored_as_strings(self):
        uid = uuid4()
        with LogContext.bind(instance_id=uid, actor_id=None):
            assert LogContext.get_all() == {"instance_id": str(uid)}

    def test_unknown_field_rejected(self):
        with pytest.raises(TypeError):
            LogContext.set(flow_code="LEAVE_DEFAULT")


# ---------------------------------------------------------------------------
# configure_logging tests
# ---------------------------------------------------------------------------


class TestConfigureLogging:

    def test_idempotent(self):
        h1, _ = _make_handler()
        configure_logging(handler=h1)
        h2, _ = _make_handler()
        configure_logging(handler=h2)
        assert len(logging.getLogger("approval_kernel").handlers) == 1

    def test_get_logger_returns_child(self):
        assert get_logger("batch.scheduler").name == "approval_kernel.batch.scheduler"

    def test_string_level(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler, level="DEBUG")
        get_logger("deep.nested").debug("hierarchy_test")
        assert _parse_log(stream)["logger"] == "approval_kernel.deep.nested"
