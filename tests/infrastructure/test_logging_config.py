"""Unit tests for structured logging setup."""

import json
import logging
import sys

from registry_transfer.infrastructure.logging_config import RunContextFilter, StructuredFormatter, setup_logging


def _record(message="Sent Condition dx-1-1", **attributes):
    record = logging.LogRecord(
        name="registry_transfer.domain.services.orchestrator",
        level=logging.INFO,
        pathname=__file__,
        lineno=10,
        msg=message,
        args=(),
        exc_info=None,
    )
    for key, value in attributes.items():
        setattr(record, key, value)
    return record


class TestStructuredFormatter:
    """Test JSON log lines."""

    def test_basic_fields(self):
        data = json.loads(StructuredFormatter().format(_record()))

        assert data["level"] == "INFO"
        assert data["logger"] == "registry_transfer.domain.services.orchestrator"
        assert data["message"] == "Sent Condition dx-1-1"
        assert data["timestamp"].endswith("Z")
        assert "run_id" not in data

    def test_run_id_and_extra_fields(self):
        record = _record(run_id="run-1", extra_fields={"record_id": "1"})

        data = json.loads(StructuredFormatter().format(record))

        assert data["run_id"] == "run-1"
        assert data["record_id"] == "1"

    def test_exception_included(self):
        try:
            raise ValueError("bad row")
        except ValueError:
            record = _record(exc_info=sys.exc_info())

        data = json.loads(StructuredFormatter().format(record))

        assert "ValueError: bad row" in data["exception"]


class TestRunContextFilter:
    def test_stamps_run_id(self):
        record = _record()
        assert RunContextFilter("run-7").filter(record) is True
        assert record.run_id == "run-7"


class TestSetupLogging:
    """Test root logger configuration."""

    def test_json_handler(self):
        root = logging.getLogger()
        saved_handlers, saved_level = list(root.handlers), root.level
        try:
            setup_logging(use_json=True, log_level="debug")

            assert root.level == logging.DEBUG
            assert len(root.handlers) == 1
            assert isinstance(root.handlers[0].formatter, StructuredFormatter)
            assert logging.getLogger("httpx").level == logging.WARNING
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)

    def test_unknown_level_falls_back_to_info(self):
        root = logging.getLogger()
        saved_handlers, saved_level = list(root.handlers), root.level
        try:
            setup_logging(log_level="chatty")

            assert root.level == logging.INFO
            assert not isinstance(root.handlers[0].formatter, StructuredFormatter)
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)
