"""Tests for logging setup and helpers."""

from __future__ import annotations

import pytest

from disk_imager import logging as logging_module


@pytest.fixture
def records():
    """Capture loguru records in memory."""
    logging_module.logger.remove()
    captured: list[dict] = []

    def sink(message):
        captured.append(message.record)

    logging_module.logger.add(sink, level="TRACE", enqueue=False)
    yield captured
    logging_module.logger.remove()


def test_setup_logging_without_log_dir_writes_no_files(tmp_path, monkeypatch):
    """Test console-only logging returns no log path."""
    monkeypatch.chdir(tmp_path)

    assert logging_module.setup_logging() is None
    assert list(tmp_path.iterdir()) == []


def test_setup_logging_creates_log_files(tmp_path):
    """Test file sinks are created under the log directory."""
    log_dir = tmp_path / "logs"

    path = logging_module.setup_logging(debug=True, log_dir=log_dir)
    logging_module.get_logger(source="test").info("Written to disk")
    logging_module.logger.complete()

    assert path == log_dir / "operations.log"
    assert "Written to disk" in path.read_text()
    assert (log_dir / "debug.log").exists()
    assert (log_dir / "structured.jsonl").exists()


def test_debug_log_only_with_debug(tmp_path):
    """Test debug.log is not created at the default level."""
    logging_module.setup_logging(log_dir=tmp_path)

    assert not (tmp_path / "debug.log").exists()


def test_get_logger_preserves_context_metadata(records):
    """Test bound logger keeps job_id, tags, and source metadata."""
    log = logging_module.get_logger(job_id="job-123", tags=["backup"], source="backup")
    log.info("Context test")

    record = records[0]
    assert record["extra"]["job_id"] == "job-123"
    assert record["extra"]["tags"] == ["backup"]
    assert record["extra"]["source"] == "backup"


def test_logger_factory_sources(records):
    """Test each factory logger carries its source."""
    logging_module.LoggerFactory.for_backup().info("b")
    logging_module.LoggerFactory.for_restore(job_id="restore-1").info("r")
    logging_module.LoggerFactory.for_verify().info("v")
    logging_module.LoggerFactory.for_commands().info("c")
    logging_module.LoggerFactory.for_system().info("s")

    assert [r["extra"]["source"] for r in records] == [
        "backup",
        "restore",
        "verify",
        "command",
        "system",
    ]
    assert records[0]["extra"]["job_id"].startswith("backup-")
    assert records[1]["extra"]["job_id"] == "restore-1"


class TestOperationContext:
    """Tests for operation_context."""

    def test_success_logs_start_and_completion(self, records):
        """Test start and completion records share the job id."""
        with logging_module.operation_context("backup", source="/dev/sda") as log:
            log.info("inside")

        messages = [r["message"] for r in records]
        assert messages[0] == "Backup started source=/dev/sda"
        assert messages[-1].startswith("Backup completed in ")
        assert records[-1]["level"].name == "SUCCESS"
        job_ids = {r["extra"]["job_id"] for r in records}
        assert len(job_ids) == 1
        assert job_ids.pop().startswith("backup-")

    def test_failure_is_logged_and_reraised(self, records):
        """Test failures are logged with the error type and propagate."""
        with pytest.raises(RuntimeError):
            with logging_module.operation_context("restore"):
                raise RuntimeError("boom")

        failure = records[-1]
        assert failure["level"].name == "ERROR"
        assert "Restore failed after" in failure["message"]
        assert failure["extra"]["error_type"] == "RuntimeError"
