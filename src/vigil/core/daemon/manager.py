"""
Monitor daemon.

The MonitorDaemon runs the background jobs of one SecurityEngine for a
process lifetime:
  - Session sweep (ends idle / absolute-expired sessions)
  - Tracker cleanup (drops stale sliding-window keys)
  - Metrics rollup
  - Compliance scan (recent chain verification, overdue passwords)
  - Fallback replay (re-appends audit entries spooled during outages)
  - Graceful shutdown on SIGTERM/SIGINT

Every job is blocking I/O against SQLite, so each tick runs in a worker
thread via ``asyncio.to_thread``; a failing tick is logged and the job
keeps its schedule.

PID file: ~/.vigil/vigil.pid
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from collections.abc import Callable
from pathlib import Path
from typing import Any

from vigil.core.config import VigilConfig, vigil_dir
from vigil.core.constants import PID_FILENAME
from vigil.core.engine import SecurityEngine

logger = logging.getLogger(__name__)


class MonitorDaemon:
    """
    Background scheduler for a :class:`SecurityEngine`.

    Lifecycle::

        daemon = MonitorDaemon(engine, config)
        await daemon.start()    # blocks until shutdown signal
        await daemon.stop()
    """

    def __init__(
        self,
        engine: SecurityEngine,
        config: VigilConfig | None = None,
        *,
        data_dir: Path | None = None,
        install_signal_handlers: bool = True,
    ) -> None:
        self._engine = engine
        self._config = config or VigilConfig()
        self._data_dir = data_dir or vigil_dir()
        self._install_signal_handlers = install_signal_handlers
        self._running = False
        self._shutdown_event = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []
        self.runs: dict[str, int] = {}

    def jobs(self) -> list[tuple[str, float, Callable[[], Any]]]:
        """(name, interval seconds, callable) for every scheduled job."""
        sessions = self._config.sessions
        detection = self._config.detection
        sched = self._config.scheduler
        engine = self._engine
        replay = engine.chain.replay_fallback
        return [
            ("session_sweep", sessions.sweep_interval_seconds, engine.sessions.sweep_expired),
            ("tracker_sweep", detection.tracker_sweep_interval_seconds, engine.detector.sweep),
            ("metrics_rollup", sched.metrics_interval_seconds, engine.metrics.rollup),
            ("compliance_scan", sched.compliance_interval_seconds, engine.run_compliance_scan),
            ("fallback_replay", sched.fallback_replay_interval_seconds, replay),
        ]

    async def start(self) -> None:
        """Start every job and run until shutdown."""
        logger.info("Vigil monitor starting")
        self._write_pid_file()
        try:
            self._running = True
            if self._install_signal_handlers:
                self._setup_signal_handlers()
            for name, interval, fn in self.jobs():
                self._tasks.append(
                    asyncio.create_task(self._periodic(name, interval, fn), name=name)
                )
            logger.info("Vigil monitor ready (%d jobs)", len(self._tasks))
            await self._shutdown_event.wait()
        finally:
            await self._cleanup()
            self._remove_pid_file()
            logger.info("Vigil monitor stopped")

    async def stop(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def run_once(self, name: str, fn: Callable[[], Any]) -> Any:
        """Run one tick of a job off the event loop; errors are logged, not raised."""
        try:
            result = await asyncio.to_thread(fn)
        except Exception as exc:  # noqa: BLE001
            logger.error("Background job %s failed: %s", name, exc)
            return None
        self.runs[name] = self.runs.get(name, 0) + 1
        return result

    async def _periodic(self, name: str, interval: float, fn: Callable[[], Any]) -> None:
        while self._running:
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval)
                return
            except TimeoutError:
                pass
            await self.run_once(name, fn)

    # ------------------------------------------------------------------
    # Signal handling
    # ------------------------------------------------------------------

    def _setup_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda: asyncio.create_task(self.stop()))

    # ------------------------------------------------------------------
    # PID file
    # ------------------------------------------------------------------

    @property
    def pid_file(self) -> Path:
        return self._data_dir / PID_FILENAME

    def _write_pid_file(self) -> None:
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self.pid_file.write_text(str(os.getpid()))

    def _remove_pid_file(self) -> None:
        self.pid_file.unlink(missing_ok=True)

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    async def _cleanup(self) -> None:
        self._running = False
        for t in self._tasks:
            t.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        # Last chance to drain entries spooled while the store was unavailable
        await self.run_once("fallback_replay", self._engine.chain.replay_fallback)
