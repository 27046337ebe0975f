"""Tests for autocycle/cli/ — Click-based CLI commands."""

from __future__ import annotations

import json
import os
import signal
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from click.testing import CliRunner

from autocycle.cli.app import cli
from autocycle.cli.formatters import (
    build_table,
    format_age,
    format_duration,
    get_console,
    status_indicator,
)
from autocycle.knowledge import Goal, GoalSet, KnowledgeBase, Observation
from autocycle.lock import AlreadyRunning
from autocycle.store import KnowledgeStore


@pytest.fixture()
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture(autouse=True)
def _env(monkeypatch: pytest.MonkeyPatch, home: Path) -> None:
    monkeypatch.setenv("AUTOCYCLE_HOME", str(home))
    monkeypatch.delenv("AUTOCYCLE_PID_FILE", raising=False)
    monkeypatch.delenv("AUTOCYCLE_INTERVAL", raising=False)
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)


# ---------------------------------------------------------------------------
# Formatters
# ---------------------------------------------------------------------------


class TestFormatDuration:
    def test_seconds(self) -> None:
        assert format_duration(45) == "45s"

    def test_minutes(self) -> None:
        assert format_duration(125) == "2m05s"

    def test_hours(self) -> None:
        assert format_duration(7200) == "2h00m"
        assert format_duration(3 * 3600 + 7 * 60 + 59) == "3h07m"

    def test_days(self) -> None:
        assert format_duration(2 * 86400 + 4 * 3600 + 30) == "2d04h"

    def test_fractional_seconds_truncated(self) -> None:
        assert format_duration(59.9) == "59s"


class TestFormatAge:
    def test_never(self) -> None:
        assert format_age(None) == "never"

    def test_ago(self) -> None:
        now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
        assert format_age(now - timedelta(seconds=90), now=now) == "1m30s ago"

    def test_days_ago(self) -> None:
        now = datetime(2026, 1, 3, 12, 0, tzinfo=timezone.utc)
        assert format_age(now - timedelta(days=2, hours=1), now=now) == "2d01h ago"


class TestFormatterHelpers:
    def test_status_indicator(self) -> None:
        assert "running" in status_indicator(True).plain
        assert "stopped" in status_indicator(False).plain

    def test_build_table(self) -> None:
        table = build_table("T", [("a", 1), ("b", status_indicator(True))])
        assert table.row_count == 2

    def test_no_color_console(self) -> None:
        assert get_console(no_color=True).no_color is True


# ---------------------------------------------------------------------------
# status
# ---------------------------------------------------------------------------


class TestStatusCommand:
    def test_fresh_home_json(self, runner: CliRunner, home: Path) -> None:
        result = runner.invoke(cli, ["status", "--json"])
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["running"] is False
        assert data["pid"] is None
        assert data["home"] == str(home)
        assert data["knowledge"]["total_cycles"] == 0
        assert data["goals"] == {"active": 0, "total": 0}

    def test_reports_knowledge_and_goals(self, runner: CliRunner, home: Path) -> None:
        store = KnowledgeStore(home)
        kb = KnowledgeBase.empty()
        kb.observations.append(Observation(content="x", cycle=1))
        kb.metadata.total_cycles = 7
        store.save_knowledge(kb)
        store.save_goals(GoalSet(goals=[
            Goal(id=1, title="Ship v1", priority="HIGH"),
            Goal(id=2, title="Old", status="completed"),
        ]))

        result = runner.invoke(cli, ["--no-color", "status"])

        assert result.exit_code == 0, result.output
        assert "Total cycles" in result.output
        assert "7" in result.output
        assert "1 of 2" in result.output
        assert "[HIGH] Ship v1" in result.output

    def test_running_marker(self, runner: CliRunner, home: Path) -> None:
        (home / "heartbeat.pid").write_text(str(os.getpid()))
        data = json.loads(runner.invoke(cli, ["status", "--json"]).output)
        assert data["running"] is True
        assert data["pid"] == os.getpid()

    def test_corrupt_state(self, runner: CliRunner, home: Path) -> None:
        (home / "context.json").write_text("{oops")
        result = runner.invoke(cli, ["status"])
        assert result.exit_code == 1
        assert "context.json" in result.output


# ---------------------------------------------------------------------------
# stop
# ---------------------------------------------------------------------------


class TestStopCommand:
    def test_not_running(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["stop"])
        assert result.exit_code == 0
        assert "not running" in result.output

    def test_sends_sigterm_and_waits(
        self, runner: CliRunner, home: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        marker = home / "heartbeat.pid"
        marker.write_text("4321")
        sent: list[tuple[int, int]] = []

        def _fake_kill(pid: int, sig: int) -> None:
            sent.append((pid, sig))
            marker.unlink()

        monkeypatch.setattr("autocycle.lock.is_process_alive", lambda pid: True)
        monkeypatch.setattr("autocycle.cli.heartbeat_cmd.os.kill", _fake_kill)

        result = runner.invoke(cli, ["stop"])

        assert result.exit_code == 0, result.output
        assert sent == [(4321, signal.SIGTERM)]
        assert "stopped" in result.output

    def test_still_finishing(
        self, runner: CliRunner, home: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        (home / "heartbeat.pid").write_text("4321")
        monkeypatch.setattr("autocycle.lock.is_process_alive", lambda pid: True)
        monkeypatch.setattr("autocycle.cli.heartbeat_cmd.os.kill", lambda pid, sig: None)

        result = runner.invoke(cli, ["stop", "--timeout", "0"])

        assert result.exit_code == 0
        assert "still finishing" in result.output


# ---------------------------------------------------------------------------
# start
# ---------------------------------------------------------------------------


class TestStartCommand:
    def test_already_running(self, runner: CliRunner, home: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
        (home / "heartbeat.pid").write_text(str(os.getpid()))

        result = runner.invoke(cli, ["start"])

        assert result.exit_code == 1
        assert "already running" in result.output

    def test_missing_api_key(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["start"])
        assert result.exit_code == 1
        assert "ANTHROPIC_API_KEY" in result.output

    def test_runs_service_with_interval(
        self, runner: CliRunner, home: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
        seen = {}

        async def _fake_run_service(config, executor=None):
            seen["config"] = config

        monkeypatch.setattr("autocycle.main.run_service", _fake_run_service)

        result = runner.invoke(cli, ["start", "--interval", "5"])

        assert result.exit_code == 0, result.output
        assert seen["config"].heartbeat.interval == 5.0
        assert seen["config"].home_dir == home
        assert "Heartbeat stopped." in result.output

    def test_lost_race_exits_nonzero(self, runner: CliRunner, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")

        async def _raise(config, executor=None):
            raise AlreadyRunning(999)

        monkeypatch.setattr("autocycle.main.run_service", _raise)

        result = runner.invoke(cli, ["start"])

        assert result.exit_code == 1
        assert "PID 999" in result.output


def test_version(runner: CliRunner) -> None:
    result = runner.invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert "autocycle" in result.output
