"""Database inspection and management CLI commands."""

from __future__ import annotations

import json
import sqlite3
from pathlib import Path

import click
from rich.console import Console

console = Console()


@click.group()
def db_group() -> None:
    """Database inspection and management."""


def _db_path(ctx: click.Context) -> Path:
    from vigil.cli._common import load_cli_config

    obj = ctx.find_root().obj or {}
    return load_cli_config(obj.get("config_path", ""), console).db_path


@db_group.command("info")
@click.option("--json", "as_json", is_flag=True, default=False)
@click.pass_context
def db_info(ctx: click.Context, as_json: bool) -> None:
    """Show database path, schema version, and table stats."""
    db_path = _db_path(ctx)

    if not db_path.exists():
        if as_json:
            click.echo(json.dumps({"exists": False, "path": str(db_path)}))
        else:
            console.print(f"Database does not exist yet: {db_path}")
            console.print("Run [cyan]vigil db migrate[/cyan] to create it.")
        return

    from vigil.core.store.database import Database
    from vigil.core.store.migrations import LATEST_SCHEMA_VERSION, get_user_version

    conn = sqlite3.connect(str(db_path), check_same_thread=False)
    try:
        version = get_user_version(conn)
    finally:
        conn.close()

    tables: dict[str, int] = {}
    chains: list[str] = []
    if version == LATEST_SCHEMA_VERSION:
        database = Database(db_path)
        database.connect()
        try:
            tables = database.table_counts()
            chains = database.list_chain_ids()
        finally:
            database.close()

    size_kb = db_path.stat().st_size / 1024
    if as_json:
        click.echo(
            json.dumps(
                {
                    "exists": True,
                    "path": str(db_path),
                    "schema_version": version,
                    "latest_version": LATEST_SCHEMA_VERSION,
                    "size_kb": round(size_kb, 1),
                    "tables": tables,
                    "chains": chains,
                },
                indent=2,
            )
        )
    else:
        console.print(f"[bold]Database[/bold]: {db_path}")
        console.print(f"Schema version: {version} (latest: {LATEST_SCHEMA_VERSION})")
        console.print(f"Size: {size_kb:.1f} KB")
        if not tables:
            console.print("\nRun [cyan]vigil db migrate[/cyan] to upgrade the schema.")
            return
        console.print(f"Audit chains: {', '.join(chains) or '—'}")
        console.print("\nTable row counts:")
        for table, count in tables.items():
            console.print(f"  {table:<18} {count}")


@db_group.command("migrate")
@click.option(
    "--dry-run", is_flag=True, default=False, help="Show pending migrations without applying them."
)
@click.option(
    "--json", "as_json", is_flag=True, default=False, help="Machine-readable JSON output."
)
@click.pass_context
def db_migrate(ctx: click.Context, dry_run: bool, as_json: bool) -> None:
    """Run (or preview) pending schema migrations."""
    from vigil.core.store.migrations import LATEST_SCHEMA_VERSION, get_user_version

    db_path = _db_path(ctx)
    current = 0
    if db_path.exists():
        conn = sqlite3.connect(str(db_path), check_same_thread=False)
        try:
            current = get_user_version(conn)
        finally:
            conn.close()
    pending = list(range(current, LATEST_SCHEMA_VERSION))

    if pending and not dry_run:
        from vigil.core.store.database import Database

        database = Database(db_path)
        database.connect()
        database.close()

    if as_json:
        click.echo(
            json.dumps(
                {
                    "path": str(db_path),
                    "current_version": current,
                    "latest_version": LATEST_SCHEMA_VERSION,
                    "pending_migrations": [f"v{v} -> v{v + 1}" for v in pending],
                    "dry_run": dry_run,
                    "status": "up_to_date"
                    if not pending
                    else ("dry_run" if dry_run else "applied"),
                },
                indent=2,
            )
        )
        return

    if not pending:
        console.print(f"[green]Database is up to date[/green] (v{current}).")
    elif dry_run:
        console.print(f"[bold]Database[/bold]: {db_path}")
        console.print(f"Current schema version: {current}")
        console.print(f"Latest schema version:  {LATEST_SCHEMA_VERSION}")
        console.print(f"\n[yellow]Pending migrations ({len(pending)}):[/yellow]")
        for v in pending:
            console.print(f"  v{v} -> v{v + 1}")
        console.print("\nRun without [cyan]--dry-run[/cyan] to apply.")
    else:
        console.print(
            f"[green]Migrations applied[/green] (v{current} -> v{LATEST_SCHEMA_VERSION})."
        )
