"""
Tests for logging configuration and the audit trail.
"""

import json
import logging

import pytest

from push_deployer import audit
from push_deployer.logging_config import (
    GATEWAY_LOGGER,
    PIPELINE_LOGGER,
    LogContext,
    StructuredFormatter,
    log_step_outcome,
    setup_logging,
)


@pytest.fixture
def restore_logging():
    """Undo global logging changes so caplog keeps working in later tests."""
    root = logging.getLogger()
    saved = {
        name: (logging.getLogger(name).handlers[:], logging.getLogger(name).propagate)
        for name in (PIPELINE_LOGGER, GATEWAY_LOGGER)
    }
    root_handlers, root_level = root.handlers[:], root.level
    yield
    for handler in root.handlers:
        if handler not in root_handlers:
            handler.close()
    root.handlers[:] = root_handlers
    root.setLevel(root_level)
    for name, (handlers, propagate) in saved.items():
        logger = logging.getLogger(name)
        for handler in logger.handlers:
            handler.close()
        logger.handlers[:] = handlers
        logger.propagate = propagate


class TestSetupLogging:
    def test_creates_log_files(self, tmp_path, restore_logging):
        log_dir = tmp_path / "logs"

        setup_logging(log_dir=str(log_dir), use_json=True)
        logging.getLogger("push_deployer.test").error("something broke")

        assert (log_dir / "deployer.log").exists()
        assert "something broke" in (log_dir / "error.log").read_text()

    def test_step_stream_is_separate(self, tmp_path, restore_logging):
        setup_logging(log_dir=str(tmp_path))

        log_step_outcome("run-1", "build", "success", duration_ms=1200)

        line = (tmp_path / "pipeline-steps.log").read_text().strip()
        entry = json.loads(line)
        assert entry["run_id"] == "run-1"
        assert entry["step"] == "build"
        assert entry["duration_ms"] == 1200
        assert logging.getLogger(PIPELINE_LOGGER).propagate is False
        assert "Step build" not in (tmp_path / "deployer.log").read_text()


class TestStructuredFormatter:
    def test_context_fields(self):
        record = logging.LogRecord(
            "push_deployer.pipeline", logging.INFO, __file__, 1, "hello %s", ("world",), None
        )
        record.run_id = "run-1"
        record.revision = "a1b2c3d"

        entry = json.loads(StructuredFormatter().format(record))

        assert entry["message"] == "hello world"
        assert entry["level"] == "INFO"
        assert entry["run_id"] == "run-1"
        assert entry["revision"] == "a1b2c3d"
        assert "step" not in entry


class TestLogContext:
    def test_fields_added_inside_block(self, caplog):
        caplog.set_level(logging.INFO, logger="push_deployer.test")
        logger = logging.getLogger("push_deployer.test")

        with LogContext(run_id="run-1", workload="web"):
            logger.info("inside")
        logger.info("outside")

        inside, outside = caplog.records
        assert inside.run_id == "run-1"
        assert inside.workload == "web"
        assert not hasattr(outside, "run_id")

    def test_step_outcome_inside_context(self, caplog):
        caplog.set_level(logging.INFO, logger=PIPELINE_LOGGER)

        with LogContext(run_id="run-1", revision="a1b2c3d"):
            log_step_outcome("run-1", "publish", "failure", "registry down", exit_code=1)

        record = caplog.records[-1]
        assert record.levelno == logging.ERROR
        assert record.step == "publish"
        assert record.exit_code == 1
        assert record.revision == "a1b2c3d"
        assert "registry down" in record.getMessage()


class TestAudit:
    def test_appends_json_lines(self, audit_log):
        audit.audit_pipeline_event("run_started", run_id="run-1", revision="a1b2c3d", actor="cli")
        audit.audit_pipeline_event("deployed", run_id="run-1", success=True)

        entries = [json.loads(line) for line in audit_log.read_text().splitlines()]

        assert [entry["action"] for entry in entries] == ["run_started", "deployed"]
        assert entries[0]["actor"] == "cli"
        assert entries[1]["actor"] == "system"
        assert entries[1]["success"] is True
        assert "success" not in entries[0]

    def test_unwritable_log_does_not_raise(self, tmp_path, monkeypatch, caplog):
        blocker = tmp_path / "blocker"
        blocker.write_text("")
        monkeypatch.setattr(audit, "AUDIT_LOG_PATH", blocker / "audit.jsonl")

        audit.audit_pipeline_event("deployed", run_id="run-1")

        assert "Failed to write audit log" in caplog.text

    def test_configure_audit_log(self, tmp_path, monkeypatch):
        monkeypatch.setattr(audit, "AUDIT_LOG_PATH", audit.AUDIT_LOG_PATH)

        audit.configure_audit_log(str(tmp_path / "custom.jsonl"))
        audit.audit_pipeline_event("fatal", run_id="run-1")

        assert (tmp_path / "custom.jsonl").exists()
