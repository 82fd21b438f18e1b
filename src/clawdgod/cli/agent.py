"""Agent commands: create, stop, restart, delete, stats, logs, update-files, identity, render."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Tuple

import click
from pydantic import ValidationError
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from ._common import console, get_config, home_option, state_style


def _load_request(path: str):
    from ..models import ProvisioningRequest

    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        return ProvisioningRequest.model_validate(data)
    except (OSError, json.JSONDecodeError, ValidationError) as exc:
        console.print(f"[bold red]Invalid request file:[/] {exc}")
        sys.exit(1)


def register_agent_commands(main: click.Group) -> None:
    """Register the agent command group."""

    @main.group()
    def agent():
        """Manage individual agent runtimes on the configured host.

        \b
        Create:   clawdgod agent create --request request.json
        Inspect:  clawdgod agent stats <agent-id>
        Logs:     clawdgod agent logs <agent-id> -n 100
        Remove:   clawdgod agent delete <agent-id>
        """

    @agent.command("create")
    @home_option
    @click.option("--request", "request_path", required=True, type=click.Path(exists=True),
                  help="JSON provisioning request.")
    def agent_create(home: str, request_path: str):
        """Provision and start an agent from a request file."""
        from ..daemon import build_orchestrator
        from ..executor import ExecutorError
        from ..lifecycle import LifecycleError
        from ..materializer import ConfigValidationError

        request = _load_request(request_path)
        orc = build_orchestrator(get_config(home))

        console.print(f"\n  Creating agent [cyan]{request.agent_id}[/]...")
        try:
            address = orc.controller.create(request)
        except ConfigValidationError as exc:
            console.print(f"  [bold red]Invalid configuration:[/] {exc}\n")
            sys.exit(1)
        except (LifecycleError, ExecutorError) as exc:
            console.print(f"  [bold red]Create failed:[/] {exc}\n")
            sys.exit(1)

        orc.registry.track(request.agent_id, orc.controller.host, request.user_id)
        console.print(f"  [green]Active[/] at [bold]{address}[/]\n")

    @agent.command("stop")
    @home_option
    @click.argument("agent_id")
    def agent_stop(home: str, agent_id: str):
        """Stop an agent, keeping its files."""
        from ..daemon import build_orchestrator

        orc = build_orchestrator(get_config(home))
        orc.controller.stop(agent_id)
        orc.registry.untrack(agent_id)
        console.print(f"\n  [green]Stopped[/] {agent_id}\n")

    @agent.command("restart")
    @home_option
    @click.argument("agent_id")
    def agent_restart(home: str, agent_id: str):
        """Restart an agent and wait for it to come back."""
        from ..daemon import build_orchestrator
        from ..executor import ExecutorError

        orc = build_orchestrator(get_config(home))
        try:
            running = orc.controller.restart(agent_id)
        except ExecutorError as exc:
            console.print(f"\n  [bold red]Restart failed:[/] {exc}\n")
            sys.exit(1)
        if running:
            console.print(f"\n  [green]Restarted[/] {agent_id}\n")
        else:
            console.print(f"\n  [bold red]{agent_id} is offline after restart[/]\n")
            sys.exit(1)

    @agent.command("delete")
    @home_option
    @click.argument("agent_id")
    @click.option("--yes", is_flag=True, help="Skip the confirmation prompt.")
    def agent_delete(home: str, agent_id: str, yes: bool):
        """Remove an agent's unit and state directory."""
        from ..daemon import build_orchestrator

        if not yes:
            click.confirm(f"Delete agent {agent_id} and all its host state?", abort=True)
        orc = build_orchestrator(get_config(home))
        orc.controller.delete(agent_id)
        orc.registry.untrack(agent_id)
        console.print(f"\n  [green]Deleted[/] {agent_id}\n")

    @agent.command("stats")
    @home_option
    @click.argument("agent_id")
    @click.option("--json-out", is_flag=True, help="Output as JSON.")
    def agent_stats(home: str, agent_id: str, json_out: bool):
        """Show unit state, uptime, and memory for an agent."""
        from ..daemon import build_orchestrator

        orc = build_orchestrator(get_config(home))
        stats = orc.controller.get_stats(agent_id)

        if json_out:
            click.echo(json.dumps(stats.model_dump() if stats else None, indent=2))
            return
        if stats is None:
            console.print(f"\n  [yellow]No unit found for {agent_id}.[/]\n")
            return

        table = Table(show_header=False, box=None, padding=(0, 2))
        table.add_column("Field", style="bold")
        table.add_column("Value")
        table.add_row("Status", state_style(stats.status))
        table.add_row("Since", stats.uptime)
        table.add_row("PID", str(stats.pid or "-"))
        table.add_row("Memory", stats.memory)
        table.add_row("Address", stats.address)
        table.add_row("Gateway", stats.gateway_url)
        console.print()
        console.print(Panel(table, title=f"Agent {agent_id}", border_style="bright_blue"))
        console.print()

    @agent.command("logs")
    @home_option
    @click.argument("agent_id")
    @click.option("-n", "--lines", default=50, help="Number of journal lines.")
    def agent_logs(home: str, agent_id: str, lines: int):
        """Print recent journal output for an agent."""
        from ..daemon import build_orchestrator

        orc = build_orchestrator(get_config(home))
        click.echo(orc.controller.get_logs(agent_id, lines))

    @agent.command("update-files")
    @home_option
    @click.argument("agent_id")
    @click.argument("files", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
    def agent_update_files(home: str, agent_id: str, files: Tuple[str, ...]):
        """Copy local files into an agent's workspace (hot-reloaded)."""
        from ..daemon import build_orchestrator

        payload = [
            {"path": Path(f).name, "content": Path(f).read_text(encoding="utf-8")}
            for f in files
        ]
        orc = build_orchestrator(get_config(home))
        orc.controller.update_files(agent_id, payload)
        console.print(f"\n  [green]Updated {len(payload)} file(s)[/] for {agent_id}\n")

    @agent.command("identity")
    @home_option
    @click.argument("agent_id")
    @click.option("--json-out", is_flag=True, help="Output as JSON.")
    def agent_identity(home: str, agent_id: str, json_out: bool):
        """Show the service name, paths, and reserved port of an agent."""
        from ..daemon import build_orchestrator
        from ..models import validate_agent_id

        try:
            validate_agent_id(agent_id)
        except ValueError as exc:
            console.print(f"[bold red]{exc}[/]")
            sys.exit(1)

        identity = build_orchestrator(get_config(home)).controller.identity(agent_id)
        if json_out:
            click.echo(identity.model_dump_json(indent=2))
            return

        table = Table(show_header=False, box=None, padding=(0, 2))
        table.add_column("Field", style="bold")
        table.add_column("Value", style="cyan")
        for key, value in identity.model_dump().items():
            table.add_row(key, str(value))
        console.print()
        console.print(table)
        console.print()

    @agent.command("render")
    @home_option
    @click.option("--request", "request_path", required=True, type=click.Path(exists=True),
                  help="JSON provisioning request.")
    def agent_render(home: str, request_path: str):
        """Render a request's host files without touching the host."""
        from ..materializer import ConfigValidationError, render
        from ..placement import resolve

        request = _load_request(request_path)
        config = get_config(home)
        identity = resolve(request.agent_id, config.layout)
        try:
            files = render(identity, request)
        except ConfigValidationError as exc:
            console.print(f"[bold red]Invalid configuration:[/] {exc}")
            sys.exit(1)

        for f in files:
            content = "<redacted>" if f.kind == "env" else f.content
            console.print(Panel(Text(content), title=f.path, border_style="dim"))
