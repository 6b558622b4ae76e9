"""
Vigil CLI entry point.

Commands:
  vigil init                  — write a default config file
  vigil version               — show version information
  vigil verify                — verify the audit hash chain
  vigil report                — compliance audit report for a period
  vigil replay                — re-append spooled fallback audit entries
  vigil sessions list|sweep   — inspect or sweep sessions
  vigil incidents list|update — inspect or triage incidents
  vigil password check        — evaluate a password against the policy
  vigil metrics               — show or collect security metrics
  vigil db info|migrate       — database inspection and migrations
  vigil monitor               — run the background monitor in the foreground
"""

from __future__ import annotations

import click
from rich.console import Console

from vigil import __version__

console = Console()


# ---------------------------------------------------------------------------
# Root group
# ---------------------------------------------------------------------------


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(__version__, "--version", "-V", message="vigil %(version)s")
@click.option("--config", "config_path", default="", envvar="VIGIL_CONFIG", help="Config file")
@click.pass_context
def cli(ctx: click.Context, config_path: str) -> None:
    """Vigil — tamper-evident audit ledger and security monitor."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


# ---------------------------------------------------------------------------
# init / version
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--force", is_flag=True, default=False, help="Overwrite an existing config")
@click.pass_context
def init(ctx: click.Context, force: bool) -> None:
    """Write a default config file."""
    from vigil.cli._setup import cmd_init

    cmd_init(config_path=ctx.obj["config_path"], force=force, console=console)


@cli.command()
@click.option("--json", "as_json", is_flag=True, default=False)
def version(as_json: bool) -> None:
    """Show version information."""
    import platform
    import sys as _sys

    from vigil.core.store.migrations import LATEST_SCHEMA_VERSION

    if as_json:
        import json

        click.echo(
            json.dumps(
                {
                    "vigil": __version__,
                    "python": _sys.version.split()[0],
                    "platform": _sys.platform,
                    "arch": platform.machine(),
                    "schema_version": LATEST_SCHEMA_VERSION,
                },
                indent=2,
            )
        )
    else:
        console.print(f"vigil {__version__}")
        console.print(f"Python {_sys.version.split()[0]}")
        console.print(f"Platform: {_sys.platform} {platform.machine()}")
        console.print(f"Schema version: {LATEST_SCHEMA_VERSION}")


# ---------------------------------------------------------------------------
# verify / report / replay
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--start", default="", help="ISO-8601 start (inclusive)")
@click.option("--end", default="", help="ISO-8601 end (inclusive)")
@click.option("--all-violations", "exhaustive", is_flag=True, default=False)
@click.option("--json", "as_json", is_flag=True, default=False)
@click.pass_context
def verify(ctx: click.Context, start: str, end: str, exhaustive: bool, as_json: bool) -> None:
    """Verify the audit hash chain."""
    from vigil.cli._audit import cmd_verify

    cmd_verify(
        config_path=ctx.obj["config_path"],
        start=start,
        end=end,
        exhaustive=exhaustive,
        as_json=as_json,
        console=console,
    )


@cli.command()
@click.option("--start", default="", help="ISO-8601 start (inclusive)")
@click.option("--end", default="", help="ISO-8601 end (inclusive)")
@click.option("--requested-by", default="", help="Principal requesting the report")
@click.option("--json", "as_json", is_flag=True, default=False)
@click.pass_context
def report(ctx: click.Context, start: str, end: str, requested_by: str, as_json: bool) -> None:
    """Compliance audit report for a period."""
    from vigil.cli._audit import cmd_report

    cmd_report(
        config_path=ctx.obj["config_path"],
        start=start,
        end=end,
        requested_by=requested_by,
        as_json=as_json,
        console=console,
    )


@cli.command()
@click.pass_context
def replay(ctx: click.Context) -> None:
    """Re-append audit entries spooled while the store was unavailable."""
    from vigil.cli._audit import cmd_replay

    cmd_replay(config_path=ctx.obj["config_path"], console=console)


# ---------------------------------------------------------------------------
# sessions
# ---------------------------------------------------------------------------


@cli.group()
def sessions() -> None:
    """Session inspection."""


@sessions.command("list")
@click.option("--principal", default="", help="Only this principal's sessions")
@click.option("--json", "as_json", is_flag=True, default=False)
@click.pass_context
def sessions_list(ctx: click.Context, principal: str, as_json: bool) -> None:
    """List active sessions."""
    from vigil.cli._sessions import cmd_sessions_list

    cmd_sessions_list(
        config_path=ctx.obj["config_path"], principal=principal, as_json=as_json, console=console
    )


@sessions.command("sweep")
@click.pass_context
def sessions_sweep(ctx: click.Context) -> None:
    """End every expired session now."""
    from vigil.cli._sessions import cmd_sessions_sweep

    cmd_sessions_sweep(config_path=ctx.obj["config_path"], console=console)


# ---------------------------------------------------------------------------
# incidents
# ---------------------------------------------------------------------------


@cli.group()
def incidents() -> None:
    """Security incident triage."""


@incidents.command("list")
@click.option(
    "--status",
    type=click.Choice(["open", "investigating", "resolved", "closed"]),
    default=None,
)
@click.option("--limit", default=50, help="Maximum incidents to show")
@click.option("--json", "as_json", is_flag=True, default=False)
@click.pass_context
def incidents_list(ctx: click.Context, status: str | None, limit: int, as_json: bool) -> None:
    """List incidents, newest first."""
    from vigil.cli._sessions import cmd_incidents_list

    cmd_incidents_list(
        config_path=ctx.obj["config_path"],
        status=status,
        limit=limit,
        as_json=as_json,
        console=console,
    )


@incidents.command("update")
@click.argument("incident_id")
@click.argument("status", type=click.Choice(["open", "investigating", "resolved", "closed"]))
@click.pass_context
def incidents_update(ctx: click.Context, incident_id: str, status: str) -> None:
    """Move an incident to a new status."""
    from vigil.cli._sessions import cmd_incidents_update

    cmd_incidents_update(
        config_path=ctx.obj["config_path"], incident_id=incident_id, status=status, console=console
    )


# ---------------------------------------------------------------------------
# password
# ---------------------------------------------------------------------------


@cli.group()
def password() -> None:
    """Credential policy tools."""


@password.command("check")
@click.option("--principal", default="", help="Also check this principal's password history")
@click.option("--no-breach", is_flag=True, default=False, help="Skip the breach lookup")
@click.option("--json", "as_json", is_flag=True, default=False)
@click.password_option("--password", prompt="Password", confirmation_prompt=False)
@click.pass_context
def password_check(
    ctx: click.Context, principal: str, no_breach: bool, as_json: bool, password: str
) -> None:
    """Evaluate a password against the credential policy."""
    from vigil.cli._password import cmd_password_check

    cmd_password_check(
        config_path=ctx.obj["config_path"],
        principal=principal,
        password=password,
        breach=not no_breach,
        as_json=as_json,
        console=console,
    )


# ---------------------------------------------------------------------------
# metrics / monitor
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--collect", is_flag=True, default=False, help="Take and store a snapshot now")
@click.option("--json", "as_json", is_flag=True, default=False)
@click.pass_context
def metrics(ctx: click.Context, collect: bool, as_json: bool) -> None:
    """Show the latest security metrics snapshot."""
    from vigil.cli._monitor import cmd_metrics

    cmd_metrics(
        config_path=ctx.obj["config_path"], collect=collect, as_json=as_json, console=console
    )


@cli.command()
@click.pass_context
def monitor(ctx: click.Context) -> None:
    """Run the background monitor in the foreground until interrupted."""
    from vigil.cli._monitor import cmd_monitor

    cmd_monitor(config_path=ctx.obj["config_path"], console=console)


# ---------------------------------------------------------------------------
# db
# ---------------------------------------------------------------------------


from vigil.cli._db import db_group  # noqa: E402

cli.add_command(db_group, "db")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
