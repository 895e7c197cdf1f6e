"""Tests for the job entry point and structured logging."""

from __future__ import annotations

import json
import logging
import os
import sys
from collections.abc import Iterator
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest
from platform_mock import MockPlatform

from patchwindow.config import Config
from patchwindow.lock import RunLock
from patchwindow.main import (
    EXIT_FAILURE,
    EXIT_LOCKED,
    EXIT_OK,
    JsonFormatter,
    execute,
    main,
    setup_logging,
)
from patchwindow.store import DatastoreError, WindowStore


class BrokenPruneStore(WindowStore):
    def prune(self, now: datetime) -> int:
        raise DatastoreError("Window ledger prune failed: login timeout")


@pytest.fixture
def restore_root_logger() -> Iterator[None]:
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def make_record(level: int, msg: str, **extra: object) -> logging.LogRecord:
    record = logging.LogRecord("patchwindow.engine", level, __file__, 1, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJsonFormatter:
    """Tests for the JSON log format."""

    def test_fields(self) -> None:
        """Test the record carries sink, severity, source and extras."""
        formatter = JsonFormatter("PatchUnmanage")
        record = make_record(
            logging.WARNING, "Host is not monitored", source="AddWindow", hostname="host2"
        )

        data = json.loads(formatter.format(record))

        assert data["sink"] == "PatchUnmanage"
        assert data["severity"] == "Warning"
        assert data["level"] == "WARNING"
        assert data["source"] == "AddWindow"
        assert data["message"] == "Host is not monitored"
        assert data["logger"] == "patchwindow.engine"
        assert data["hostname"] == "host2"
        assert data["timestamp"].endswith("Z")

    @pytest.mark.parametrize(
        ("level", "severity"),
        [
            (logging.DEBUG, "Information"),
            (logging.INFO, "Information"),
            (logging.WARNING, "Warning"),
            (logging.ERROR, "Error"),
            (logging.CRITICAL, "Error"),
        ],
    )
    def test_severity_mapping(self, level: int, severity: str) -> None:
        """Test Python levels map onto the sink's three severities."""
        data = json.loads(JsonFormatter("s").format(make_record(level, "m")))
        assert data["severity"] == severity

    def test_source_defaults_to_logger_name(self) -> None:
        """Test records without a source tag use the logger name."""
        data = json.loads(JsonFormatter("s").format(make_record(logging.INFO, "m")))
        assert data["source"] == "patchwindow.engine"

    def test_exception_included(self) -> None:
        """Test tracebacks are serialized."""
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = make_record(logging.ERROR, "failed")
            record.exc_info = sys.exc_info()

        data = json.loads(JsonFormatter("s").format(record))

        assert "RuntimeError: boom" in data["exception"]

    def test_setup_logging_replaces_handler(self, restore_root_logger: None) -> None:
        """Test reconfiguring switches the sink without stacking handlers."""
        setup_logging("First")
        setup_logging("Second")

        json_handlers = [
            h for h in logging.getLogger().handlers if isinstance(h.formatter, JsonFormatter)
        ]
        assert len(json_handlers) == 1
        assert json_handlers[0].formatter.sink == "Second"


class TestExecute:
    """Tests for run outcome to exit code mapping."""

    def test_completed_run(self, config: Config, store: WindowStore, now: datetime) -> None:
        """Test a completed run exits 0, even with per-member failures."""
        platform = MockPlatform()
        platform.scheduler.add_task("Wave G", "Patch Wave G", now + timedelta(hours=1))
        platform.directory.set_group("G", ["host1:vcenter1", "ghost"])
        platform.vsphere.add_guest("vcenter1", "host1", ip_address="10.0.0.5")
        platform.swis.add_node("10.0.0.5", "123")
        lock = RunLock(config.lock_file)

        code = execute(platform.build_engine(config, store), lock, now)

        assert code == EXIT_OK
        assert platform.swis.unmanaged_node_ids == ["123"]
        assert lock.held is False

    def test_no_pending_tasks(self, config: Config, store: WindowStore, now: datetime) -> None:
        """Test an idle run exits 0."""
        engine = MockPlatform().build_engine(config, store)

        assert execute(engine, RunLock(config.lock_file), now) == EXIT_OK

    def test_lock_held(self, config: Config, store: WindowStore, now: datetime) -> None:
        """Test an overlapping run exits 3 without touching anything."""
        platform = MockPlatform()
        engine = platform.build_engine(config, store)

        with RunLock(config.lock_file):
            code = execute(engine, RunLock(config.lock_file), now)

        assert code == EXIT_LOCKED
        assert platform.scheduler.queried_paths == []

    def test_ledger_unavailable(self, config: Config, db_engine, now: datetime) -> None:
        """Test a prune failure aborts the run with exit 1."""
        platform = MockPlatform()
        engine = platform.build_engine(config, BrokenPruneStore(db_engine))

        assert execute(engine, RunLock(config.lock_file), now) == EXIT_FAILURE
        assert platform.scheduler.queried_paths == []

    def test_scheduler_unavailable(
        self, config: Config, store: WindowStore, now: datetime
    ) -> None:
        """Test a scheduler failure aborts the run with exit 1."""
        platform = MockPlatform()
        platform.scheduler.set_failure(True)
        engine = platform.build_engine(config, store)

        assert execute(engine, RunLock(config.lock_file), now) == EXIT_FAILURE


class TestMain:
    """Tests for the process entry point."""

    def test_missing_configuration(self, restore_root_logger: None) -> None:
        """Test a missing configuration exits 1."""
        with patch.dict(os.environ, {}, clear=True):
            assert main() == EXIT_FAILURE

    def test_invalid_configuration(self, tmp_path, restore_root_logger: None) -> None:
        """Test an invalid configuration exits 1 before any client is built."""
        group_map = tmp_path / "groups.yaml"
        group_map.write_text("groups: []\n", encoding="utf-8")
        env = {"GROUP_MAP_FILE": str(group_map), "ORION_URL": "orion"}

        with patch.dict(os.environ, env, clear=True):
            with patch("patchwindow.main.build_engine") as build:
                assert main() == EXIT_FAILURE

        build.assert_not_called()

    def test_database_url_argument_used(self, tmp_path, restore_root_logger: None) -> None:
        """Test a ledger URL passed by the caller reaches the wired engine."""
        group_map = tmp_path / "groups.yaml"
        group_map.write_text("groups: []\n", encoding="utf-8")
        env = {
            "GROUP_MAP_FILE": str(group_map),
            "ORION_URL": "https://orion:17778",
            "DIRECTORY_URL": "https://patch/st/console/api/v1.0",
        }
        database_url = f"sqlite:///{tmp_path}/ledger.db"

        with patch.dict(os.environ, env, clear=True):
            with patch("patchwindow.main.build_engine", side_effect=RuntimeError("stop")) as build:
                assert main(database_url=database_url) == EXIT_FAILURE

        assert build.call_args.args[0].database_url == database_url
