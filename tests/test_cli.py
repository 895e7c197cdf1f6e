"""Tests for the pwsync admin CLI."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from patchwindow.cli import cli
from patchwindow.models import MaintenanceWindow
from patchwindow.store import WindowStore, create_store_engine

PAST = datetime(2020, 1, 1, 3, 0, tzinfo=UTC)
FUTURE = datetime(2099, 1, 1, 3, 0, tzinfo=UTC)


def window(node_id: str, start: datetime) -> MaintenanceWindow:
    return MaintenanceWindow(
        node_id=node_id,
        ip_address="10.0.0.5",
        hostname=f"host{node_id}.corp",
        group_name="G",
        start_time=start,
        end_time=start + timedelta(minutes=45),
    )


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path}/ledger.db"


@pytest.fixture
def seeded(database_url: str) -> WindowStore:
    store = WindowStore(create_store_engine(database_url))
    store.create_schema()
    store.insert(window("101", PAST))
    store.insert(window("202", FUTURE))
    return store


class TestCli:
    """Tests for pwsync commands."""

    def test_init_db(self, runner: CliRunner, database_url: str) -> None:
        """Test the ledger table is created."""
        result = runner.invoke(cli, ["--database-url", database_url, "init-db"])

        assert result.exit_code == 0, result.output
        assert "Window ledger ready." in result.output
        assert WindowStore(create_store_engine(database_url)).select_all() == []

    def test_list_windows(
        self, runner: CliRunner, database_url: str, seeded: WindowStore
    ) -> None:
        """Test every window is listed with expired ones marked."""
        result = runner.invoke(cli, ["--database-url", database_url, "windows", "list"])

        assert result.exit_code == 0, result.output
        lines = result.output.splitlines()
        assert lines[0].startswith("NODE")
        assert lines[1].startswith("101") and lines[1].endswith("(expired)")
        assert lines[2].startswith("202") and "(expired)" not in lines[2]
        assert "2099-01-01 03:45" in lines[2]

    def test_list_empty(self, runner: CliRunner, database_url: str) -> None:
        """Test an empty ledger."""
        runner.invoke(cli, ["--database-url", database_url, "init-db"])

        result = runner.invoke(cli, ["--database-url", database_url, "windows", "list"])

        assert result.exit_code == 0
        assert "No windows recorded." in result.output

    def test_remove_window(
        self, runner: CliRunner, database_url: str, seeded: WindowStore
    ) -> None:
        """Test a node's window can be forgotten."""
        result = runner.invoke(
            cli, ["--database-url", database_url, "windows", "remove", "202"]
        )

        assert result.exit_code == 0, result.output
        assert "Removed window for node 202." in result.output
        assert seeded.exists("202") is False

    def test_remove_unknown_window(
        self, runner: CliRunner, database_url: str, seeded: WindowStore
    ) -> None:
        """Test removing a node without window fails."""
        result = runner.invoke(
            cli, ["--database-url", database_url, "windows", "remove", "999"]
        )

        assert result.exit_code == 1
        assert "No window recorded for node 999" in result.output

    def test_prune(self, runner: CliRunner, database_url: str, seeded: WindowStore) -> None:
        """Test expired windows are dropped."""
        result = runner.invoke(cli, ["--database-url", database_url, "windows", "prune"])

        assert result.exit_code == 0, result.output
        assert "Pruned 1 expired window(s)." in result.output
        assert [w.node_id for w in seeded.select_all()] == ["202"]

    def test_missing_table_reported(self, runner: CliRunner, database_url: str) -> None:
        """Test datastore errors are reported without a traceback."""
        result = runner.invoke(cli, ["--database-url", database_url, "windows", "list"])

        assert result.exit_code == 1
        assert "Window ledger" in result.output

    def test_no_database_configured(
        self, runner: CliRunner, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test a missing ledger URL is a usage error."""
        for key in ("DATABASE_URL", "DB_INSTANCE", "DB_NAME"):
            monkeypatch.delenv(key, raising=False)

        result = runner.invoke(cli, ["windows", "list"])

        assert result.exit_code == 1
        assert "No ledger configured" in result.output

    def test_run_uses_database_url(self, runner: CliRunner, database_url: str) -> None:
        """Test the run command hands --database-url to the job."""
        with patch("patchwindow.cli.run_job", return_value=3) as run_job:
            result = runner.invoke(cli, ["--database-url", database_url, "run"])

        assert result.exit_code == 3
        run_job.assert_called_once_with(database_url=database_url)
