"""Shared helpers for CLI commands: config loading, engine construction, exits."""

from __future__ import annotations

import sys
from datetime import datetime
from pathlib import Path

from rich.console import Console

from vigil.core.config import VigilConfig
from vigil.core.constants import ExitCode
from vigil.core.engine import SecurityEngine


def load_cli_config(config_path: str, console: Console) -> VigilConfig:
    """Load config (defaults when no file exists) and configure logging."""
    from vigil.core.config import load_config
    from vigil.core.exceptions import ConfigError
    from vigil.core.logging import configure_logging

    try:
        config = load_config(Path(config_path) if config_path else None, missing_ok=True)
    except ConfigError as exc:
        console.print(f"[red]Config error:[/red] {exc}")
        sys.exit(ExitCode.CONFIG_ERROR)
    configure_logging(config.logging)
    return config


def open_engine(config: VigilConfig, console: Console) -> SecurityEngine:
    from vigil.core.exceptions import StorageError

    try:
        return SecurityEngine.from_config(config)
    except StorageError as exc:
        console.print(f"[red]Storage error:[/red] {exc}")
        sys.exit(ExitCode.STORAGE_ERROR)


def parse_when(value: str | None) -> datetime | None:
    """ISO-8601 date or datetime from a CLI option; naive values are UTC."""
    if not value:
        return None
    from vigil.core.clock import utc

    return utc(datetime.fromisoformat(value))
