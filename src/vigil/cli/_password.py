"""vigil password check — evaluate a candidate password against the policy."""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click
from rich.console import Console

from vigil.cli._common import load_cli_config
from vigil.core.constants import ExitCode


def cmd_password_check(
    config_path: str,
    principal: str,
    password: str,
    breach: bool,
    as_json: bool,
    console: Console,
) -> None:
    from vigil.core.credentials.breach import DisabledBreachCheck
    from vigil.core.credentials.policy import CredentialPolicyEngine
    from vigil.core.engine import build_breach_check
    from vigil.core.store.database import Database

    config = load_cli_config(config_path, console)
    # History only exists in the real database; otherwise check against an empty one
    use_history = bool(principal) and config.db_path.exists()
    db = Database(config.db_path if use_history else Path(":memory:"))
    db.connect()
    try:
        engine = CredentialPolicyEngine(
            db,
            config=config.credentials,
            breach=build_breach_check(config) if breach else DisabledBreachCheck(),
        )
        decision = engine.evaluate(principal, password)
    finally:
        db.close()

    data = {
        "accepted": decision.accepted,
        "score": decision.strength.score,
        "reasons": list(decision.reasons),
        "weaknesses": list(decision.strength.weaknesses),
        "breach_checked": decision.breach.checked,
        "breach_occurrences": decision.breach.occurrences,
    }
    if as_json:
        click.echo(json.dumps(data, indent=2))
    else:
        verdict = "[green]accepted[/green]" if decision.accepted else "[red]rejected[/red]"
        console.print(f"Password {verdict} (score {decision.strength.score}/100)")
        for reason in decision.reasons:
            console.print(f"  [red]✗[/red] {reason}")
        for weakness in decision.strength.weaknesses:
            console.print(f"  [yellow]![/yellow] {weakness.replace('_', ' ')}")
        if breach and not decision.breach.checked:
            console.print("  [yellow]Breach lookup unavailable; not checked.[/yellow]")

    if not decision.accepted:
        sys.exit(ExitCode.POLICY_REJECTED)

