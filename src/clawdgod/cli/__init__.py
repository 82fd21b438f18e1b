"""
ClawdGod CLI: operate the agent orchestrator from the command line.

The main Click group is defined here and every command group is
registered from its own module.

Entry point: clawdgod.cli:main
"""

from __future__ import annotations

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="clawdgod")
def main():
    """ClawdGod: provision and supervise agent runtimes."""


from .agent import register_agent_commands
from .daemon import register_daemon_commands
from .health import register_health_commands

register_agent_commands(main)
register_daemon_commands(main)
register_health_commands(main)
