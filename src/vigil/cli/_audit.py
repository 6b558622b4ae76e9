"""vigil verify | report | replay — audit ledger commands."""

from __future__ import annotations

import json
import sys

import click
from rich.console import Console
from rich.table import Table

from vigil.cli._common import load_cli_config, open_engine, parse_when
from vigil.core.constants import ExitCode


def _period(start: str, end: str, console: Console) -> tuple:
    try:
        return parse_when(start), parse_when(end)
    except ValueError as exc:
        console.print(f"[red]Invalid date:[/red] {exc}")
        sys.exit(ExitCode.ERROR)


def cmd_verify(
    config_path: str, start: str, end: str, exhaustive: bool, as_json: bool, console: Console
) -> None:
    since, until = _period(start, end, console)
    engine = open_engine(load_cli_config(config_path, console), console)
    try:
        report = engine.verify_integrity(since, until, exhaustive=exhaustive)
    finally:
        engine.close()

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
    elif report.ok:
        console.print(
            f"[green]Chain intact[/green] ({report.chain_id}): {report.checked} entries verified"
        )
    else:
        console.print(
            f"[red]Integrity violation[/red] ({report.chain_id}): "
            f"{len(report.violations)} problem(s) in {report.checked} entries"
        )
        for v in report.violations:
            console.print(f"  {v.describe()}")

    if not report.ok:
        sys.exit(ExitCode.INTEGRITY_VIOLATION)


def cmd_report(
    config_path: str, start: str, end: str, requested_by: str, as_json: bool, console: Console
) -> None:
    since, until = _period(start, end, console)
    engine = open_engine(load_cli_config(config_path, console), console)
    try:
        report = engine.generate_report(since, until, requested_by=requested_by or None)
    finally:
        engine.close()

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2, default=str))
        return

    period = f"{since or 'beginning'} → {until or 'now'}"
    console.print(f"[bold]Audit report[/bold] {period}\n")
    console.print(f"Total events:  {report.total_events}")
    console.print(f"Denied/failed: {report.denied_events}")
    console.print(f"Incidents:     {len(report.incidents)}")
    integrity = "[green]intact[/green]" if report.ok else "[red]VIOLATED[/red]"
    console.print(f"Integrity:     {integrity} ({report.integrity.checked} entries)\n")

    table = Table(title="Events by type")
    table.add_column("Event type")
    table.add_column("Count", justify="right")
    table.add_column("Actors", justify="right")
    table.add_column("Denied", justify="right")
    for s in report.by_event_type:
        table.add_row(s.event_type, str(s.count), str(s.unique_actors), str(s.denied))
    console.print(table)

    if report.top_offenders:
        console.print("\n[bold]Top offending principals[/bold]")
        for row in report.top_offenders:
            console.print(f"  {row['actor_id']:<24} {row['failures']:>5}  last {row['last_seen']}")


def cmd_replay(config_path: str, console: Console) -> None:
    engine = open_engine(load_cli_config(config_path, console), console)
    try:
        replayed = engine.chain.replay_fallback()
    finally:
        engine.close()
    console.print(f"Replayed {replayed} spooled audit entr{'y' if replayed == 1 else 'ies'}.")
