"""Tests for the hub command line."""

import json
import logging

import pytest
from click.testing import CliRunner
from rich.console import Console

from claudehub import cli as cli_module
from claudehub.cli import cli
from claudehub.models import AccountUsageSnapshot
from claudehub.usage import UsageFetcher


@pytest.fixture(autouse=True)
def isolated_output(monkeypatch):
    """Wide console for stable table output, and no log handlers leaking between tests."""
    monkeypatch.setattr(cli_module, "console", Console(stderr=True, width=200, highlight=False))
    yield
    logger = logging.getLogger("claudehub")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def usage(make_snapshot):
    return {
        "a": make_snapshot("a", session=50),
        "b": make_snapshot("b", session=90, email="bee@example.com"),
        "c": make_snapshot("c", session=10),
    }


@pytest.fixture
def configured(hub_home, accounts, tmp_path, usage, monkeypatch):
    """A config.json for the three test accounts, with usage served from memory."""
    hub_home.mkdir(parents=True, exist_ok=True)
    (hub_home / "config.json").write_text(
        json.dumps(
            {
                "accounts": {name: str(path) for name, path in accounts.items()},
                "sync_on_start": False,
                "state_file": str(tmp_path / "state.json"),
                "log_file": str(tmp_path / "hub.log"),
            }
        )
    )

    def fetch(self, accounts):
        return [usage[name] for name in accounts]

    monkeypatch.setattr(UsageFetcher, "fetch", fetch)
    return hub_home


class TestSetup:
    """Tests for --init and configuration errors."""

    def test_init_writes_config(self, runner, hub_home):
        result = runner.invoke(cli, ["--init"])

        assert result.exit_code == 0
        assert "Wrote" in result.output
        assert (hub_home / "config.json").is_file()

    def test_init_refuses_existing(self, runner, hub_home):
        runner.invoke(cli, ["--init"])

        result = runner.invoke(cli, ["--init"])

        assert result.exit_code == 1
        assert "already exists" in result.output

    def test_missing_config(self, runner, hub_home):
        result = runner.invoke(cli, ["--usage"])

        assert result.exit_code == 1
        assert "hub --init" in result.output

    def test_logs_to_file(self, runner, configured, tmp_path):
        runner.invoke(cli, ["--usage", "--verbose"])

        assert (tmp_path / "hub.log").is_file()
        assert not logging.getLogger("claudehub").propagate


class TestReports:
    """Tests for the read-only commands."""

    def test_usage(self, runner, configured):
        result = runner.invoke(cli, ["--usage"])

        assert result.exit_code == 0
        assert "Usage Across Accounts" in result.output
        assert "b (best)" in result.output
        assert "bee@example.com" in result.output

    def test_score(self, runner, configured):
        result = runner.invoke(cli, ["--score"])

        assert result.exit_code == 0
        assert "Score Breakdown" in result.output
        assert "<- BEST" in result.output
        assert "active session -15" in result.output

    def test_sync(self, runner, configured, accounts):
        project = accounts["a"] / "projects" / "-home-dev-app"
        project.mkdir(parents=True)
        (project / "s1.jsonl").write_text("{}\n")

        result = runner.invoke(cli, ["--sync"])

        assert result.exit_code == 0
        assert "Sync complete" in result.output
        assert "2 copied" in result.output
        assert (accounts["c"] / "projects" / "-home-dev-app" / "s1.jsonl").is_file()

    def test_list(self, runner, configured, accounts):
        project = accounts["b"] / "projects" / "-home-dev-app"
        project.mkdir(parents=True)
        (project / "s1.jsonl").write_text("{}\n")

        result = runner.invoke(cli, ["--list"])

        assert result.exit_code == 0
        assert "-home-dev-app: 1 conversations" in result.output
        assert "No projects found" in result.output


class TestLaunch:
    """Tests for launching the wrapped CLI."""

    def test_best_account_supervised(self, runner, configured, monkeypatch):
        """Test the best account is launched with unknown arguments passed through."""
        launched = {}

        def fake_run_supervised(context, account_id, args, snapshots, auto_failover_enabled=True, console=None):
            launched.update(account=account_id, args=list(args), count=len(snapshots), auto=auto_failover_enabled)
            return 3

        monkeypatch.setattr(cli_module, "run_supervised", fake_run_supervised)

        result = runner.invoke(cli, ["--model", "opus", "-p", "hello"])

        assert result.exit_code == 3
        assert launched == {"account": "b", "args": ["--model", "opus", "-p", "hello"], "count": 3, "auto": True}
        assert "auto-switch on" in result.output
        assert "F9: usage | F10: switch" in result.output

    def test_forced_account_without_auto_switch(self, runner, configured, monkeypatch):
        calls = []

        def fake_passthrough(command, args, env, console=None):
            calls.append((command, list(args), env["CLAUDE_CONFIG_DIR"]))
            return 4

        monkeypatch.setattr(cli_module, "run_passthrough", fake_passthrough)

        result = runner.invoke(cli, ["--account", "c", "--no-auto-switch", "--resume", "abc"])

        assert result.exit_code == 4
        assert calls[0][0] == "claude"
        assert calls[0][1] == ["--resume", "abc"]
        assert calls[0][2].endswith("c")
        assert "auto-switch off" in result.output

    def test_unknown_account(self, runner, configured):
        result = runner.invoke(cli, ["--account", "nope"])

        assert result.exit_code == 1
        assert "not found in config" in result.output

    def test_no_accounts_available(self, runner, configured, usage):
        for name in list(usage):
            usage[name] = AccountUsageSnapshot.failed(name, "Network error")

        result = runner.invoke(cli, [])

        assert result.exit_code == 1
        assert "No accounts available" in result.output
