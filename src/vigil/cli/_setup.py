"""vigil init — write the default configuration."""

from __future__ import annotations

import sys
from pathlib import Path

from rich.console import Console

from vigil.core.constants import ExitCode


def cmd_init(config_path: str, force: bool, console: Console) -> None:
    from vigil.core.config import _config_file_path, default_config_data, save_config
    from vigil.core.exceptions import ConfigError

    path = Path(config_path) if config_path else _config_file_path()
    if path.exists() and not force:
        console.print(f"Config already exists: {path}")
        console.print("Use [cyan]--force[/cyan] to overwrite it with defaults.")
        return

    try:
        written = save_config(default_config_data(), path)
    except ConfigError as exc:
        console.print(f"[red]Config error:[/red] {exc}")
        sys.exit(ExitCode.CONFIG_ERROR)
    console.print(f"[green]Config written:[/green] {written}")
