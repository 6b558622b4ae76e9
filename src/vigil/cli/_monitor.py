"""vigil monitor | metrics — background monitor and metrics snapshots."""

from __future__ import annotations

import asyncio
import json

import click
from rich.console import Console

from vigil.cli._common import load_cli_config, open_engine


def cmd_monitor(config_path: str, console: Console) -> None:
    from vigil.core.daemon.manager import MonitorDaemon
    from vigil.core.logging import configure_logging

    config = load_cli_config(config_path, console)
    configure_logging(config.logging, config.log_path)
    engine = open_engine(config, console)
    daemon = MonitorDaemon(engine, config)

    console.print(f"[bold]Vigil monitor[/bold] running (pid file {daemon.pid_file})")
    console.print(f"Logs: {config.log_path}. Press Ctrl-C to stop.")
    try:
        asyncio.run(daemon.start())
    except KeyboardInterrupt:
        pass
    finally:
        engine.close()
    console.print("Monitor stopped.")


def cmd_metrics(config_path: str, collect: bool, as_json: bool, console: Console) -> None:
    engine = open_engine(load_cli_config(config_path, console), console)
    try:
        data = engine.metrics.rollup().to_dict() if collect else engine.db.latest_metrics()
    finally:
        engine.close()

    if as_json:
        click.echo(json.dumps(data, indent=2, default=str))
        return
    if not data:
        console.print("No metrics recorded yet. Run [cyan]vigil metrics --collect[/cyan].")
        return

    health = str(data.get("system_health", "normal"))
    colour = {"normal": "green", "warning": "yellow", "critical": "red"}.get(health, "white")
    console.print(f"[bold]Security metrics[/bold] at {data['recorded_at']}\n")
    console.print(f"  System health     [{colour}]{health}[/{colour}]")
    for key in ("total_events", "security_events", "alerts", "incidents", "open_incidents"):
        console.print(f"  {key.replace('_', ' '):<17} {data.get(key, 0)}")
