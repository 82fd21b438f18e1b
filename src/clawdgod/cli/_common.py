"""Shared helpers for CLI command modules.

Provides the Rich console, configuration loading, and state colors.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import click
from rich.console import Console

from .. import ORCHESTRATOR_HOME
from ..config import OrchestratorConfig, load_config

console = Console()

home_option = click.option(
    "--home", default=ORCHESTRATOR_HOME, type=click.Path(), help="Orchestrator home directory.",
)


def get_config(home: Optional[str]) -> OrchestratorConfig:
    """Load configuration for the given home directory."""
    return load_config(Path(home or ORCHESTRATOR_HOME).expanduser())


def state_style(state: str) -> str:
    """Map a systemd ActiveState to Rich markup."""
    return {
        "active": "[bold green]active[/]",
        "activating": "[yellow]activating[/]",
        "reloading": "[yellow]reloading[/]",
        "deactivating": "[yellow]deactivating[/]",
        "inactive": "[dim]inactive[/]",
        "failed": "[bold red]failed[/]",
    }.get(state, f"[dim]{state}[/]")
