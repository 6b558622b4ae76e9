"""vigil sessions | incidents — session and incident inspection."""

from __future__ import annotations

import json
import sys

import click
from rich.console import Console
from rich.table import Table

from vigil.cli._common import load_cli_config, open_engine
from vigil.core.constants import ExitCode


def cmd_sessions_list(config_path: str, principal: str, as_json: bool, console: Console) -> None:
    engine = open_engine(load_cli_config(config_path, console), console)
    try:
        active = engine.sessions.list_active(principal or None)
    finally:
        engine.close()

    if as_json:
        click.echo(json.dumps([s.to_dict() for s in active], indent=2))
        return
    if not active:
        console.print("No active sessions.")
        return

    table = Table(title=f"Active sessions ({len(active)})")
    table.add_column("Session", style="cyan")
    table.add_column("Principal")
    table.add_column("Last activity")
    table.add_column("Expires")
    table.add_column("Client")
    for s in active:
        table.add_row(
            s.id[:8],
            s.principal_id,
            s.last_activity.strftime("%Y-%m-%d %H:%M:%S"),
            s.expires_at.strftime("%H:%M:%S"),
            s.ip_address or "—",
        )
    console.print(table)


def cmd_sessions_sweep(config_path: str, console: Console) -> None:
    engine = open_engine(load_cli_config(config_path, console), console)
    try:
        ended = engine.sessions.sweep_expired()
    finally:
        engine.close()
    console.print(f"Ended {ended} expired session(s).")


_SEVERITY_STYLE = {
    "low": "dim",
    "medium": "yellow",
    "high": "red",
    "critical": "bold red",
}


def cmd_incidents_list(
    config_path: str, status: str | None, limit: int, as_json: bool, console: Console
) -> None:
    from vigil.core.alerts.models import IncidentStatus

    engine = open_engine(load_cli_config(config_path, console), console)
    try:
        rows = engine.db.list_incidents(IncidentStatus(status) if status else None, limit=limit)
    finally:
        engine.close()

    if as_json:
        click.echo(json.dumps([i.to_dict() for i in rows], indent=2))
        return
    if not rows:
        console.print("No incidents.")
        return

    table = Table(title="Incidents")
    table.add_column("ID", style="cyan")
    table.add_column("Type")
    table.add_column("Severity")
    table.add_column("Status")
    table.add_column("Subject")
    table.add_column("Created")
    for i in rows:
        style = _SEVERITY_STYLE.get(str(i.severity), "")
        table.add_row(
            i.id[:8],
            i.type,
            f"[{style}]{i.severity}[/{style}]" if style else str(i.severity),
            str(i.status),
            i.subject or "—",
            i.created_at.strftime("%Y-%m-%d %H:%M:%S"),
        )
    console.print(table)


def cmd_incidents_update(config_path: str, incident_id: str, status: str, console: Console) -> None:
    from vigil.core.alerts.models import IncidentStatus

    engine = open_engine(load_cli_config(config_path, console), console)
    try:
        updated = engine.dispatcher.update_status(incident_id, IncidentStatus(status))
    finally:
        engine.close()
    if not updated:
        console.print(f"[red]No incident with id[/red] {incident_id}")
        sys.exit(ExitCode.ERROR)
    console.print(f"Incident {incident_id} → [bold]{status}[/bold]")
