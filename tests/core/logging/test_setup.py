"""Tests for logging setup functions."""

import json
import logging
import re
import sys
from datetime import datetime

import pytest

from core.download.http_client import Response
from core.errors.exceptions import HttpError
from core.logging.context import clear_log_context, get_log_context, set_log_context
from core.logging.formatters import ConsoleFormatter, JSONFormatter
from core.logging.setup import generate_run_id, get_log_file_path, setup_logging
from core.logging.utilities import LoggedClass, log_exception


def make_record(msg="Form downloaded", level=logging.INFO, exc_info=None, **extra):
    record = logging.LogRecord("collect_pipeline.test", level, __file__, 10, msg, None, exc_info)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestSetupLogging:
    """Tests for setup_logging function."""

    @pytest.fixture(autouse=True)
    def restore_root_logger(self):
        root_logger = logging.getLogger()
        handlers = list(root_logger.handlers)
        level = root_logger.level
        yield
        for handler in root_logger.handlers:
            handler.close()
        root_logger.handlers[:] = handlers
        root_logger.setLevel(level)

    def test_creates_console_and_file_handlers(self, tmp_path):
        setup_logging(domain="aggregate", stage="pull", log_dir=tmp_path, use_instance_id=False)

        handlers = logging.getLogger().handlers
        assert len(handlers) == 2
        assert any(isinstance(h.formatter, JSONFormatter) for h in handlers)
        assert any(isinstance(h.formatter, ConsoleFormatter) for h in handlers)

    def test_writes_json_lines(self, tmp_path):
        logger = setup_logging(
            domain="aggregate", stage="pull", log_dir=tmp_path, run_id="r-1", use_instance_id=False
        )
        logger.info("Pull started", extra={"form_id": "census", "total": 3})
        for handler in logging.getLogger().handlers:
            handler.flush()

        log_file = get_log_file_path(tmp_path, domain="aggregate", stage="pull")
        entries = [json.loads(line) for line in log_file.read_text().splitlines()]
        entry = next(e for e in entries if e["msg"] == "Pull started")
        assert entry["form_id"] == "census"
        assert entry["total"] == 3
        assert entry["run_id"] == "r-1"
        assert entry["domain"] == "aggregate"

    def test_sets_context(self, tmp_path):
        setup_logging(domain="central", stage="pull", log_dir=tmp_path, run_id="r-2")

        context = get_log_context()
        assert context["domain"] == "central"
        assert context["stage"] == "pull"
        assert context["run_id"] == "r-2"

    def test_quiets_noisy_loggers(self, tmp_path):
        setup_logging(log_dir=tmp_path)

        assert logging.getLogger("aiohttp").level == logging.WARNING


class TestLogFilePath:
    def test_domain_and_stage(self, tmp_path):
        today = datetime.now()

        path = get_log_file_path(tmp_path, domain="aggregate", stage="pull", instance_id="p1")

        assert path == (
            tmp_path
            / "aggregate"
            / today.strftime("%Y-%m-%d")
            / f"aggregate_pull_{today.strftime('%Y%m%d')}_p1.log"
        )

    def test_no_domain(self, tmp_path):
        path = get_log_file_path(tmp_path)

        assert path.parent.parent == tmp_path
        assert path.name.startswith("pipeline_")

    def test_run_id_format(self):
        assert re.fullmatch(r"r-\d{8}-\d{6}-[0-9a-f]{4}", generate_run_id())


class TestFormatters:
    def test_json_includes_context_and_extras(self):
        set_log_context(domain="aggregate", form_id="census")

        entry = json.loads(JSONFormatter().format(make_record(instance_id="uuid:1", outcome="success")))

        assert entry["msg"] == "Form downloaded"
        assert entry["level"] == "INFO"
        assert entry["domain"] == "aggregate"
        assert entry["form_id"] == "census"
        assert entry["instance_id"] == "uuid:1"
        assert "stage" not in entry

    def test_json_sanitizes_urls(self):
        record = make_record(url="https://user:pw@central.example.org/v1/x?st=secret&a=1")

        entry = json.loads(JSONFormatter().format(record))

        assert entry["url"] == "https://central.example.org/v1/x?st=[REDACTED]&a=1"

    def test_json_error_has_location_and_exception(self):
        try:
            raise ValueError("bad cursor")
        except ValueError:
            record = make_record("Failed", logging.ERROR, exc_info=sys.exc_info())

        entry = json.loads(JSONFormatter().format(record))

        assert entry["file"].endswith(":10")
        assert "ValueError: bad cursor" in entry["exception"]

    def test_console_prefix(self):
        set_log_context(domain="central", form_id="survey")

        line = ConsoleFormatter().format(make_record())

        assert line.endswith(" - INFO - [central] - [survey] - Form downloaded")


class TestContext:
    def test_only_given_fields_change(self):
        set_log_context(domain="aggregate", stage="pull")
        set_log_context(form_id="census")

        assert get_log_context() == {
            "domain": "aggregate",
            "stage": "pull",
            "run_id": None,
            "form_id": "census",
        }

    def test_clear(self):
        set_log_context(domain="aggregate")
        clear_log_context()

        assert all(value is None for value in get_log_context().values())


class TestUtilities:
    def test_log_exception_adds_category(self, caplog):
        logger = logging.getLogger("collect_pipeline.test")
        error = HttpError(Response(url="https://h.org", status_code=503, reason="Unavailable"))

        with caplog.at_level(logging.ERROR):
            log_exception(logger, error, "Request failed", include_traceback=False)

        record = caplog.records[-1]
        assert record.error_category == "transient"
        assert record.exc_info is None

    def test_log_exception_guesses_category(self, caplog):
        logger = logging.getLogger("collect_pipeline.test")

        with caplog.at_level(logging.ERROR):
            log_exception(logger, OSError("Connection refused"), "Request failed")

        assert caplog.records[-1].error_category == "transient"

    def test_logged_class_adds_instance_context(self, caplog):
        class Worker(LoggedClass):
            log_component = "worker"

            def __init__(self):
                self.form_id = "census"
                super().__init__()

        with caplog.at_level(logging.INFO):
            Worker()._log(logging.INFO, "Working", total=2)

        record = caplog.records[-1]
        assert record.name.endswith(".worker")
        assert record.form_id == "census"
        assert record.total == 2
