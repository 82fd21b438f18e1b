"""Health commands: check, tracked."""

from __future__ import annotations

import time

import click
from rich.table import Table

from ._common import console, get_config, home_option


def _print_cycle_report(report) -> None:
    color = "green" if not report.failing else "yellow"
    if report.escalated:
        color = "red"
    healthy = len(report.healthy)
    line = f"  [{color}]{healthy}/{report.checked} healthy[/]"
    if report.restarted:
        line += f"  [yellow]restarted: {', '.join(report.restarted)}[/]"
    if report.escalated:
        line += f"  [red bold]OFFLINE: {', '.join(report.escalated)}[/]"
    console.print(line)


def register_health_commands(main: click.Group) -> None:
    """Register the health command group."""

    @main.group()
    def health():
        """Liveness checks over tracked agents."""

    @health.command("check")
    @home_option
    @click.option("--cycles", default=1, show_default=True, type=click.IntRange(min=1),
                  help="Cycles to run, one health interval apart.")
    def health_check(home: str, cycles: int):
        """Run health-check cycles over the tracked agents.

        Failure counts start at zero for every invocation, so a single
        cycle only reports status. An auto-restart needs at least
        health_max_fails cycles in one run, as the daemon loop does.
        """
        from ..daemon import build_orchestrator

        config = get_config(home)
        orc = build_orchestrator(config)
        if not len(orc.registry):
            console.print("\n  [dim]No tracked agents.[/]\n")
            return
        console.print()
        for n in range(cycles):
            if n:
                time.sleep(config.health_interval)
            _print_cycle_report(orc.monitor.run_cycle())
        console.print()

    @health.command("tracked")
    @home_option
    def health_tracked(home: str):
        """List tracked agents."""
        from ..health import AgentRegistry

        config = get_config(home)
        registry = AgentRegistry(config.registry_file)
        agents = registry.agents()
        if not agents:
            console.print("\n  [dim]No tracked agents.[/]\n")
            return

        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("Agent", style="cyan")
        table.add_column("Host")
        table.add_column("User", style="dim")
        for a in agents:
            table.add_row(a.agent_id, a.host_address, a.user_id or "-")
        console.print()
        console.print(table)
        console.print()
