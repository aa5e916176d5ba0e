"""Tests for CLI commands - init, seed, sync, status, purge-undo."""

from __future__ import annotations

import json
from collections.abc import Generator
from pathlib import Path
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from clinicsync.client.cli import cli
from clinicsync.client.store import LocalStore
from tests.fakes import FakeRemoteStore


@pytest.fixture
def runner() -> CliRunner:
    """Create a CLI test runner."""
    return CliRunner()


@pytest.fixture
def config_dir(tmp_path: Path) -> Generator[Path, None, None]:
    """Point the CLI at a temporary config directory."""
    config = tmp_path / ".clinicsync"
    with patch("clinicsync.client.cli.config.get_config_dir", return_value=config):
        yield config


@pytest.fixture
def configured(config_dir: Path) -> Path:
    """Write a minimal configuration."""
    config_dir.mkdir(parents=True, exist_ok=True)
    (config_dir / "config.json").write_text(json.dumps({
        "server_url": "http://localhost:8000",
        "token": "tok",
        "device_id": "dev-a",
    }))
    return config_dir


class TestInitCommand:
    """Tests for 'clinicsync init' command."""

    def test_init_saves_config(self, runner: CliRunner, config_dir: Path) -> None:
        result = runner.invoke(cli, [
            "init", "--server-url", "http://localhost:8000/", "--token", "tok",
            "--device-id", "front desk",
        ])
        assert result.exit_code == 0, result.output
        assert "front_desk" in result.output
        saved = json.loads((config_dir / "config.json").read_text())
        assert saved == {
            "server_url": "http://localhost:8000",
            "token": "tok",
            "device_id": "front_desk",
        }

    def test_init_prompts(self, runner: CliRunner, config_dir: Path) -> None:
        result = runner.invoke(cli, ["init"], input="http://h\nsecret\n")
        assert result.exit_code == 0, result.output
        saved = json.loads((config_dir / "config.json").read_text())
        assert saved["server_url"] == "http://h"
        assert saved["token"] == "secret"
        assert saved["device_id"]

    def test_init_refuses_overwrite(self, runner: CliRunner, configured: Path) -> None:
        result = runner.invoke(
            cli, ["init", "--server-url", "http://other", "--token", "t"], input="n\n"
        )
        assert result.exit_code != 0
        saved = json.loads((configured / "config.json").read_text())
        assert saved["server_url"] == "http://localhost:8000"

    def test_init_force(self, runner: CliRunner, configured: Path) -> None:
        result = runner.invoke(
            cli, ["init", "--server-url", "http://other", "--token", "t", "--force"]
        )
        assert result.exit_code == 0, result.output
        saved = json.loads((configured / "config.json").read_text())
        assert saved["server_url"] == "http://other"


class TestSyncCommands:
    """Tests for seed/sync/status."""

    def test_sync_requires_config(self, runner: CliRunner, config_dir: Path) -> None:
        result = runner.invoke(cli, ["sync"])
        assert result.exit_code == 1
        assert "Not configured" in result.output

    def test_seed(self, runner: CliRunner, configured: Path) -> None:
        remote = FakeRemoteStore()
        remote.collections = {"patients": {"PT-1": {"firstName": "Ada"}}}
        with patch("clinicsync.client.cli.sync.open_remote", return_value=remote):
            result = runner.invoke(cli, ["seed"])

        assert result.exit_code == 0, result.output
        assert "patients: 1" in result.output
        assert "Seeded 1 records." in result.output
        with LocalStore(configured / "local.db") as store:
            assert store.get("patients", "PT-1")["syncStatus"] == "synced"

    def test_sync_once(self, runner: CliRunner, configured: Path) -> None:
        with LocalStore(configured / "local.db") as store:
            store.put("patients", {"uid": "PT-1", "syncStatus": "pending"})
        remote = FakeRemoteStore()
        with patch("clinicsync.client.cli.sync.open_remote", return_value=remote):
            result = runner.invoke(cli, ["sync"])

        assert result.exit_code == 0, result.output
        assert "1 pushed, 0 deleted" in result.output
        assert "PT-1" in remote.docs("patients")

    def test_sync_nothing_to_do(self, runner: CliRunner, configured: Path) -> None:
        with patch("clinicsync.client.cli.sync.open_remote", return_value=FakeRemoteStore()):
            result = runner.invoke(cli, ["sync"])
        assert result.exit_code == 0, result.output
        assert "Everything is up to date." in result.output

    def test_status(self, runner: CliRunner, configured: Path) -> None:
        with LocalStore(configured / "local.db") as store:
            store.put("patients", {"uid": "PT-1", "syncStatus": "pending"})
            store.put("patients", {"uid": "PT-2", "syncStatus": "synced"})

        result = runner.invoke(cli, ["status"])

        assert result.exit_code == 0, result.output
        assert "patients: 1 pending" in result.output
        assert "1 pending changes." in result.output

    def test_purge_undo(self, runner: CliRunner, configured: Path) -> None:
        result = runner.invoke(cli, ["purge-undo"])
        assert result.exit_code == 0, result.output
        assert "Purged 0 expired undo records." in result.output
