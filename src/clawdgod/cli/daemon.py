"""Daemon commands: start, status."""

from __future__ import annotations

import json
import os
import sys

import click

from ._common import console, get_config, home_option


def register_daemon_commands(main: click.Group) -> None:
    """Register the daemon command group."""

    @main.group()
    def daemon():
        """The orchestrator daemon: internal API plus health checks."""

    @daemon.command("start")
    @home_option
    @click.option("--port", type=int, default=None, help="API port (overrides config).")
    def daemon_start(home: str, port):
        """Run the orchestrator in the foreground.

        Serves the internal API and checks every tracked agent on the
        configured interval. Use a systemd unit to keep it running.
        """
        from ..daemon import DaemonService, is_running, setup_logging

        config = get_config(home)
        if port is not None:
            config = config.model_copy(update={"api_port": port})

        if is_running(config.home):
            console.print("[yellow]Daemon is already running.[/]")
            sys.exit(0)

        setup_logging(config)
        svc = DaemonService(config)

        console.print(f"\n  [green]Starting orchestrator[/] on port [cyan]{config.api_port}[/]")
        console.print(f"  Host: {config.node_host} ({config.transport})")
        console.print(f"  Health: every {config.health_interval:g}s, restart after {config.health_max_fails} misses")
        console.print(f"  Log: {config.log_file}")
        console.print(f"  PID: {os.getpid()}")
        console.print("  [dim]Running in foreground (Ctrl+C to stop)[/]\n")

        svc.start()
        svc.run_forever()

    @daemon.command("status")
    @home_option
    @click.option("--json-out", is_flag=True, help="Output as JSON.")
    def daemon_status(home: str, json_out: bool):
        """Show whether the daemon is running."""
        from ..daemon import read_pid

        config = get_config(home)
        pid = read_pid(config.home)

        if json_out:
            click.echo(json.dumps({"running": pid is not None, "pid": pid, "port": config.api_port}))
            return

        if pid is None:
            console.print("\n  [yellow]Daemon is not running.[/]\n")
        else:
            console.print(f"\n  [green]Daemon running[/], PID {pid}, API port {config.api_port}\n")
