"""Integration tests for vigil.core.daemon.manager (MonitorDaemon scheduling)."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from vigil.core.audit.models import Actor, EventType
from vigil.core.clock import ManualClock
from vigil.core.config import VigilConfig
from vigil.core.daemon.manager import MonitorDaemon
from vigil.core.engine import SecurityEngine


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def config(tmp_path: Path) -> VigilConfig:
    return VigilConfig.model_validate(
        {
            "database": {"path": str(tmp_path / "vigil.db")},
            "alerts": {"notify_in_background": False},
            "credentials": {"breach_check_enabled": False},
        }
    )


@pytest.fixture
def engine(config: VigilConfig, clock: ManualClock) -> SecurityEngine:
    e = SecurityEngine.from_config(config, clock=clock)
    yield e
    e.close()


@pytest.fixture
def daemon(engine: SecurityEngine, config: VigilConfig, tmp_path: Path) -> MonitorDaemon:
    return MonitorDaemon(
        engine, config, data_dir=tmp_path / "run", install_signal_handlers=False
    )


class TestJobs:
    def test_job_names(self, daemon: MonitorDaemon) -> None:
        assert [name for name, _, _ in daemon.jobs()] == [
            "session_sweep",
            "tracker_sweep",
            "metrics_rollup",
            "compliance_scan",
            "fallback_replay",
        ]

    def test_intervals_follow_config(self, engine: SecurityEngine, tmp_path: Path) -> None:
        config = VigilConfig.model_validate(
            {
                "sessions": {"sweep_interval_seconds": 7},
                "scheduler": {"metrics_interval_seconds": 90},
            }
        )
        daemon = MonitorDaemon(engine, config, data_dir=tmp_path, install_signal_handlers=False)
        intervals = {name: interval for name, interval, _ in daemon.jobs()}
        assert intervals["session_sweep"] == 7
        assert intervals["metrics_rollup"] == 90


class TestRunOnce:
    def test_returns_result_and_counts(self, daemon: MonitorDaemon) -> None:
        assert asyncio.run(daemon.run_once("answer", lambda: 42)) == 42
        assert daemon.runs == {"answer": 1}

    def test_failure_is_logged_not_raised(
        self, daemon: MonitorDaemon, caplog: pytest.LogCaptureFixture
    ) -> None:
        def boom() -> None:
            raise RuntimeError("disk on fire")

        assert asyncio.run(daemon.run_once("broken", boom)) is None
        assert "broken" not in daemon.runs
        assert "disk on fire" in caplog.text

    def test_session_sweep_job(
        self, daemon: MonitorDaemon, engine: SecurityEngine, clock: ManualClock
    ) -> None:
        engine.authenticate("alice")
        clock.advance(minutes=31)
        jobs = {name: fn for name, _, fn in daemon.jobs()}
        assert asyncio.run(daemon.run_once("session_sweep", jobs["session_sweep"])) == 1
        assert engine.db.list_active_sessions("alice") == []

    def test_metrics_rollup_job(self, daemon: MonitorDaemon, engine: SecurityEngine) -> None:
        engine.record_action(EventType.RECORD_ACCESS, "view", actor=Actor("alice"))
        jobs = {name: fn for name, _, fn in daemon.jobs()}
        asyncio.run(daemon.run_once("metrics_rollup", jobs["metrics_rollup"]))
        assert engine.db.latest_metrics() is not None


class TestLifecycle:
    def test_start_and_stop(self, daemon: MonitorDaemon) -> None:
        seen: dict[str, bool] = {}

        async def scenario() -> None:
            task = asyncio.create_task(daemon.start())
            await asyncio.sleep(0.05)
            seen["pid_during_run"] = daemon.pid_file.exists()
            await daemon.stop()
            await asyncio.wait_for(task, timeout=5)

        asyncio.run(scenario())
        assert seen["pid_during_run"]
        assert not daemon.pid_file.exists()
        assert daemon.runs["fallback_replay"] == 1

    def test_periodic_ticks(self, daemon: MonitorDaemon) -> None:
        calls: list[int] = []

        async def scenario() -> None:
            daemon._running = True
            task = asyncio.create_task(daemon._periodic("tick", 0.01, lambda: calls.append(1)))
            await asyncio.sleep(0.2)
            await daemon.stop()
            await asyncio.wait_for(task, timeout=5)

        asyncio.run(scenario())
        assert len(calls) >= 2
        assert daemon.runs["tick"] == len(calls)

    def test_shutdown_replays_spool(
        self, daemon: MonitorDaemon, engine: SecurityEngine
    ) -> None:
        engine.db.close()
        assert engine.record_action(EventType.RECORD_ACCESS, "during", actor=Actor("bob")) is None
        engine.db.connect()

        async def scenario() -> None:
            task = asyncio.create_task(daemon.start())
            await asyncio.sleep(0.01)
            await daemon.stop()
            await asyncio.wait_for(task, timeout=5)

        asyncio.run(scenario())
        assert engine.db.count_audit_entries() == 1
        assert engine.verify_integrity().ok
