"""Tests for the ledgerlock CLI via CliRunner."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import requests
from click.testing import CliRunner

from ledgerlock.cli import main
from ledgerlock.config import LedgerConfig, save_config
from ledgerlock.storage import LocalStore, StorageKeys

from conftest import PIN


@pytest.fixture
def cli_home(tmp_path: Path) -> str:
    """Ledger home with a fast, offline config."""
    home = tmp_path / ".ledgerlock"
    save_config(home, LedgerConfig(
        pbkdf2_iterations=1000,
        api_url="http://coordinator.test",
        share_base_url="https://ledger.test",
    ))
    return str(home)


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def set_up(runner: CliRunner, cli_home: str) -> str:
    result = runner.invoke(main, ["setup", "--home", cli_home, "--pin", PIN])
    assert result.exit_code == 0, result.output
    return cli_home


class TestSetupAndStatus:
    """setup / status."""

    def test_version(self, runner: CliRunner) -> None:
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert "ledgerlock" in result.output

    def test_status_before_setup(self, runner: CliRunner, cli_home: str) -> None:
        result = runner.invoke(main, ["status", "--home", cli_home])
        assert result.exit_code == 0
        assert "NOT SET UP" in result.output

    def test_setup(self, runner: CliRunner, cli_home: str) -> None:
        result = runner.invoke(main, ["setup", "--home", cli_home, "--pin", PIN])
        assert result.exit_code == 0
        assert "Key fingerprint" in result.output

    def test_setup_refuses_twice(self, runner: CliRunner, set_up: str) -> None:
        result = runner.invoke(main, ["setup", "--home", set_up, "--pin", PIN])
        assert result.exit_code == 1
        assert "already set" in result.output

    def test_setup_weak_pin(self, runner: CliRunner, cli_home: str) -> None:
        result = runner.invoke(main, ["setup", "--home", cli_home, "--pin", "12"])
        assert result.exit_code == 1
        assert "at least 6" in result.output

    def test_setup_prompts_for_pin(self, runner: CliRunner, cli_home: str) -> None:
        result = runner.invoke(main, ["setup", "--home", cli_home], input=f"{PIN}\n{PIN}\n")
        assert result.exit_code == 0
        assert "Key fingerprint" in result.output

    def test_status_is_locked_in_new_process(self, runner: CliRunner, set_up: str) -> None:
        result = runner.invoke(main, ["status", "--home", set_up])
        assert result.exit_code == 0
        assert "LOCKED" in result.output
        assert "Linked devices" in result.output


class TestLogin:
    """login / change-pin."""

    def test_login_before_setup(self, runner: CliRunner, cli_home: str) -> None:
        result = runner.invoke(main, ["login", "--home", cli_home, "--pin", PIN])
        assert result.exit_code == 1
        assert "No PIN set" in result.output

    def test_login(self, runner: CliRunner, set_up: str) -> None:
        result = runner.invoke(main, ["login", "--home", set_up, "--pin", PIN])
        assert result.exit_code == 0
        assert "Unlocked" in result.output

    def test_login_from_env(self, runner: CliRunner, set_up: str) -> None:
        result = runner.invoke(main, ["login", "--home", set_up], env={"LEDGERLOCK_PIN": PIN})
        assert result.exit_code == 0

    def test_wrong_pin(self, runner: CliRunner, set_up: str) -> None:
        result = runner.invoke(main, ["login", "--home", set_up, "--pin", "000000"])
        assert result.exit_code == 1
        assert "Wrong PIN" in result.output

    def test_corrupted_credentials(self, runner: CliRunner, set_up: str) -> None:
        LocalStore(Path(set_up)).delete(StorageKeys.WRAPPED_DEK)
        result = runner.invoke(main, ["login", "--home", set_up, "--pin", PIN])
        assert result.exit_code == 2
        assert "ledgerlock wipe" in result.output

    def test_change_pin(self, runner: CliRunner, set_up: str) -> None:
        result = runner.invoke(
            main, ["change-pin", "--home", set_up, "--old-pin", PIN, "--new-pin", "654321"],
        )
        assert result.exit_code == 0
        assert "PIN changed" in result.output

        assert runner.invoke(main, ["login", "--home", set_up, "--pin", PIN]).exit_code == 1
        assert runner.invoke(main, ["login", "--home", set_up, "--pin", "654321"]).exit_code == 0

    def test_change_pin_wrong_old(self, runner: CliRunner, set_up: str) -> None:
        result = runner.invoke(
            main, ["change-pin", "--home", set_up, "--old-pin", "000000", "--new-pin", "654321"],
        )
        assert result.exit_code == 1
        assert "wrong" in result.output


class TestWipe:
    """wipe with and without confirmation."""

    def test_wipe_yes(self, runner: CliRunner, set_up: str) -> None:
        result = runner.invoke(main, ["wipe", "--home", set_up, "--yes"])
        assert result.exit_code == 0
        assert "Wiped" in result.output
        status = runner.invoke(main, ["status", "--home", set_up])
        assert "NOT SET UP" in status.output

    def test_wipe_aborted(self, runner: CliRunner, set_up: str) -> None:
        result = runner.invoke(main, ["wipe", "--home", set_up], input="n\n")
        assert result.exit_code == 1
        assert runner.invoke(main, ["login", "--home", set_up, "--pin", PIN]).exit_code == 0


class TestDevices:
    """devices link / list / unlink / register."""

    def test_link_invalid(self, runner: CliRunner, cli_home: str) -> None:
        result = runner.invoke(main, ["devices", "link", "https://host/other?uuid=x", "--home", cli_home])
        assert result.exit_code == 1
        assert "Invalid share link" in result.output

    def test_link_before_setup(self, runner: CliRunner, cli_home: str) -> None:
        result = runner.invoke(main, ["devices", "link", "https://host/share?uuid=abc123", "--home", cli_home])
        assert result.exit_code == 0
        assert "ledgerlock setup" in result.output

    def test_list_empty(self, runner: CliRunner, set_up: str) -> None:
        result = runner.invoke(main, ["devices", "list", "--home", set_up])
        assert result.exit_code == 0
        assert "No linked devices" in result.output

    def test_unlink_unknown(self, runner: CliRunner, set_up: str) -> None:
        result = runner.invoke(main, ["devices", "unlink", "nobody", "--home", set_up])
        assert result.exit_code == 1
        assert "Not linked" in result.output

    def test_register(self, runner: CliRunner, set_up: str) -> None:
        resp = MagicMock(status_code=200)
        resp.json.return_value = {"jwt": "token-1"}
        with patch("ledgerlock.devices.requests.request", return_value=resp) as mock_request:
            result = runner.invoke(main, ["devices", "register", "--home", set_up])
            again = runner.invoke(main, ["devices", "register", "--home", set_up])
        assert result.exit_code == 0
        assert "Registered" in result.output
        assert "Already registered" in again.output
        assert mock_request.call_count == 1

    def test_register_offline(self, runner: CliRunner, set_up: str) -> None:
        with patch("ledgerlock.devices.requests.request", side_effect=requests.Timeout()):
            result = runner.invoke(main, ["devices", "register", "--home", set_up])
        assert result.exit_code == 1
        assert "Registration failed" in result.output


class TestSyncAndAudit:
    """sync status / push while pending / audit."""

    def test_sync_status(self, runner: CliRunner, set_up: str) -> None:
        result = runner.invoke(main, ["sync", "status", "--home", set_up])
        assert result.exit_code == 0
        assert "Push cursor: 0" in result.output

    def test_linked_setup_waits_for_initial_sync(self, runner: CliRunner, cli_home: str) -> None:
        with patch("ledgerlock.devices.requests.request", side_effect=requests.Timeout()):
            setup = runner.invoke(main, [
                "setup", "--home", cli_home, "--pin", PIN,
                "--link", "https://ledger.test/share?uuid=abc123&pub=XYZ",
            ])
        assert setup.exit_code == 0
        assert "unreachable" in setup.output

        push = runner.invoke(main, ["sync", "push", "--home", cli_home, "--pin", PIN])
        assert push.exit_code == 1
        assert "initial sync" in push.output

    def test_audit(self, runner: CliRunner, set_up: str) -> None:
        runner.invoke(main, ["login", "--home", set_up, "--pin", "000000"])
        result = runner.invoke(main, ["audit", "--home", set_up])
        assert result.exit_code == 0
        assert "PIN_SETUP" in result.output
        assert "AUTH_FAILED" in result.output

    def test_audit_empty(self, runner: CliRunner, cli_home: str) -> None:
        result = runner.invoke(main, ["audit", "--home", cli_home])
        assert "No audit entries" in result.output
