"""Integration tests for the vigil CLI, run through click's CliRunner."""

from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path

import pytest
from click.testing import CliRunner

from vigil.cli.main import cli
from vigil.core.audit.models import AccessResult, Actor, EventType
from vigil.core.config import load_config
from vigil.core.engine import SecurityEngine
from vigil.core.store.migrations import LATEST_SCHEMA_VERSION

STRONG_PASSWORD = "Vivid7Harbor!Lamp"


@pytest.fixture
def env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setenv("VIGIL_CONFIG", str(tmp_path / "config.toml"))
    monkeypatch.setenv("VIGIL_DB_PATH", str(tmp_path / "vigil.db"))
    monkeypatch.setenv("VIGIL_LOG_LEVEL", "ERROR")
    monkeypatch.setenv("VIGIL_BREACH_CHECK_ENABLED", "false")
    yield tmp_path
    logger = logging.getLogger("vigil")
    for handler in list(logger.handlers):
        if getattr(handler, "_vigil_handler", False):
            logger.removeHandler(handler)
            handler.close()


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


def _seed(entries: int = 3) -> None:
    engine = SecurityEngine.from_config(load_config(missing_ok=True))
    try:
        for i in range(entries):
            engine.record_action(EventType.RECORD_ACCESS, f"view-{i}", actor=Actor("alice"))
        engine.record_action(
            EventType.ACCESS_DENIED, "view", actor=Actor("mallory"), result=AccessResult.DENIED
        )
    finally:
        engine.close()


class TestSetup:
    def test_version_json(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["version", "--json"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert set(data) == {"vigil", "python", "platform", "arch", "schema_version"}
        assert data["schema_version"] == LATEST_SCHEMA_VERSION

    def test_init(self, runner: CliRunner, env: Path) -> None:
        result = runner.invoke(cli, ["init"])
        assert result.exit_code == 0
        assert "Config written" in result.stdout
        assert (env / "config.toml").exists()

        again = runner.invoke(cli, ["init"])
        assert "Config already exists" in again.stdout

        forced = runner.invoke(cli, ["init", "--force"])
        assert "Config written" in forced.stdout

    def test_bad_config_exits(self, runner: CliRunner, env: Path) -> None:
        (env / "config.toml").write_text("[sessions\n", encoding="utf-8")
        result = runner.invoke(cli, ["verify"])
        assert result.exit_code == 2
        assert "Config error" in result.stdout


class TestAudit:
    def test_verify_empty(self, runner: CliRunner, env: Path) -> None:
        result = runner.invoke(cli, ["verify"])
        assert result.exit_code == 0
        assert "Chain intact" in result.stdout

    def test_verify_json(self, runner: CliRunner, env: Path) -> None:
        _seed()
        result = runner.invoke(cli, ["verify", "--json"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["ok"] is True
        assert data["checked"] == 4

    def test_verify_detects_tampering(self, runner: CliRunner, env: Path) -> None:
        _seed()
        raw = sqlite3.connect(str(env / "vigil.db"))
        try:
            raw.execute("UPDATE audit_log SET action = 'edited' WHERE id = 2")
            raw.commit()
        finally:
            raw.close()

        result = runner.invoke(cli, ["verify", "--json"])
        assert result.exit_code == 6
        data = json.loads(result.stdout)
        assert data["ok"] is False
        assert data["violations"][0]["entry_id"] == 2

    def test_report_json(self, runner: CliRunner, env: Path) -> None:
        _seed()
        result = runner.invoke(cli, ["report", "--json", "--requested-by", "auditor"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["total_events"] == 4
        assert data["denied_events"] == 1

    def test_report_rejects_bad_date(self, runner: CliRunner, env: Path) -> None:
        result = runner.invoke(cli, ["report", "--start", "last tuesday"])
        assert result.exit_code == 1
        assert "Invalid date" in result.stdout

    def test_replay_nothing_spooled(self, runner: CliRunner, env: Path) -> None:
        result = runner.invoke(cli, ["replay"])
        assert result.exit_code == 0
        assert "Replayed 0 spooled audit entries." in result.stdout


class TestPassword:
    def test_accepted(self, runner: CliRunner, env: Path) -> None:
        result = runner.invoke(
            cli, ["password", "check", "--no-breach", "--json", "--password", STRONG_PASSWORD]
        )
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["accepted"] is True
        assert data["reasons"] == []
        assert data["breach_checked"] is False

    def test_rejected(self, runner: CliRunner, env: Path) -> None:
        result = runner.invoke(cli, ["password", "check", "--json", "--password", "short"])
        assert result.exit_code == 8
        data = json.loads(result.stdout)
        assert data["accepted"] is False
        assert "PASSWORD_TOO_SHORT" in data["reasons"]


class TestSessionsAndIncidents:
    def test_sessions_list_empty(self, runner: CliRunner, env: Path) -> None:
        result = runner.invoke(cli, ["sessions", "list", "--json"])
        assert result.exit_code == 0
        assert json.loads(result.stdout) == []

    def test_sessions_list_and_sweep(self, runner: CliRunner, env: Path) -> None:
        engine = SecurityEngine.from_config(load_config(missing_ok=True))
        try:
            engine.authenticate("alice")
        finally:
            engine.close()

        listed = runner.invoke(cli, ["sessions", "list", "--json", "--principal", "alice"])
        assert [s["principal_id"] for s in json.loads(listed.stdout)] == ["alice"]

        swept = runner.invoke(cli, ["sessions", "sweep"])
        assert swept.exit_code == 0
        assert "Ended 0 expired session(s)." in swept.stdout

    def test_incidents_list_and_update(self, runner: CliRunner, env: Path) -> None:
        engine = SecurityEngine.from_config(load_config(missing_ok=True))
        try:
            engine.record_action(EventType.ROLE_CHANGED, "promote", actor=Actor("root"))
        finally:
            engine.close()

        listed = runner.invoke(cli, ["incidents", "list", "--json"])
        assert listed.exit_code == 0
        (incident,) = json.loads(listed.stdout)
        assert incident["type"] == "CRITICAL_SYSTEM_CHANGE"

        updated = runner.invoke(cli, ["incidents", "update", incident["id"], "resolved"])
        assert updated.exit_code == 0
        resolved = runner.invoke(cli, ["incidents", "list", "--status", "resolved", "--json"])
        assert [i["id"] for i in json.loads(resolved.stdout)] == [incident["id"]]

    def test_update_unknown_incident(self, runner: CliRunner, env: Path) -> None:
        result = runner.invoke(cli, ["incidents", "update", "no-such-id", "closed"])
        assert result.exit_code == 1
        assert "No incident" in result.stdout


class TestMetricsAndDb:
    def test_metrics_collect(self, runner: CliRunner, env: Path) -> None:
        _seed()
        result = runner.invoke(cli, ["metrics", "--collect", "--json"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["total_events"] == 4
        assert data["system_health"] == "normal"

        latest = runner.invoke(cli, ["metrics", "--json"])
        assert json.loads(latest.stdout)["total_events"] == 4

    def test_db_info_and_migrate(self, runner: CliRunner, env: Path) -> None:
        info = runner.invoke(cli, ["db", "info", "--json"])
        assert json.loads(info.stdout)["exists"] is False

        dry = runner.invoke(cli, ["db", "migrate", "--dry-run", "--json"])
        assert json.loads(dry.stdout)["status"] == "dry_run"
        assert not (env / "vigil.db").exists()

        migrated = runner.invoke(cli, ["db", "migrate", "--json"])
        data = json.loads(migrated.stdout)
        assert data["status"] == "applied"
        assert data["current_version"] == 0

        info = json.loads(runner.invoke(cli, ["db", "info", "--json"]).stdout)
        assert info["exists"] is True
        assert info["schema_version"] == LATEST_SCHEMA_VERSION
        assert info["tables"]["audit_log"] == 0

        again = runner.invoke(cli, ["db", "migrate", "--json"])
        assert json.loads(again.stdout)["status"] == "up_to_date"
