"""Systemd integration for agent runtime units.

Builds the systemctl/journalctl command lines the lifecycle controller
sends through a host executor, renders the per-agent unit file, and parses
``systemctl show`` output. Nothing here runs a command itself, so the same
code drives a local host and a remote one.

Each agent runs as a system unit ``clawdgod-<id>.service`` that starts the
runtime gateway with the agent's own state dir and config, restarts on any
exit, and logs to the journal under its service name.

Usage:
    from clawdgod.systemd import generate_unit_file, is_active_cmd
    unit = generate_unit_file(identity, runtime_binary="/usr/bin/openclaw")
    executor.execute(is_active_cmd(identity.service_name))
"""

from __future__ import annotations

import shlex
from dataclasses import dataclass
from typing import Dict, Optional

from .placement import AgentIdentity

SHOW_PROPERTIES = ("ActiveState", "MainPID", "ExecMainStartTimestamp", "LoadState")


@dataclass
class UnitProperties:
    """Parsed ``systemctl show`` output for one unit.

    Attributes:
        load_state: ``loaded``, ``not-found``, ...
        active_state: ``active``, ``inactive``, ``failed``, ``activating``, ...
        main_pid: PID of the main process (0 if none).
        started_at: ExecMainStartTimestamp, empty if never started.
    """

    load_state: str = ""
    active_state: str = "unknown"
    main_pid: int = 0
    started_at: str = ""

    @property
    def exists(self) -> bool:
        return self.load_state not in ("", "not-found")


def _q(value: str) -> str:
    return shlex.quote(value)


def daemon_reload_cmd() -> str:
    return "systemctl daemon-reload"


def enable_cmd(service: str) -> str:
    return f"systemctl enable {_q(service)}"


def start_cmd(service: str) -> str:
    return f"systemctl start {_q(service)}"


def restart_cmd(service: str) -> str:
    return f"systemctl restart {_q(service)}"


def stop_cmd(service: str, tolerant: bool = True) -> str:
    """Stop a unit; ``tolerant`` treats an absent or stopped unit as success."""
    cmd = f"systemctl stop {_q(service)}"
    return f"{cmd} 2>/dev/null || true" if tolerant else cmd


def disable_cmd(service: str, tolerant: bool = True) -> str:
    cmd = f"systemctl disable {_q(service)}"
    return f"{cmd} 2>/dev/null || true" if tolerant else cmd


def is_active_cmd(service: str) -> str:
    return f"systemctl is-active {_q(service)} 2>/dev/null"


def show_cmd(service: str) -> str:
    return f"systemctl show {_q(service)} --property={','.join(SHOW_PROPERTIES)}"


def journal_cmd(service: str, lines: int = 50) -> str:
    """Last ``lines`` journal lines for a unit, stdout and stderr merged."""
    return f"journalctl -u {_q(service)} --no-pager -n {int(lines)} 2>&1"


def rss_cmd(pid: int) -> str:
    return f"ps -o rss= -p {int(pid)}"


def remove_file_cmd(path: str) -> str:
    return f"rm -f {_q(path)}"


def remove_tree_cmd(path: str) -> str:
    return f"rm -rf {_q(path)}"


def mkdir_cmd(path: str) -> str:
    return f"mkdir -p {_q(path)}"


def parse_show_output(output: str) -> UnitProperties:
    """Parse ``KEY=VALUE`` lines from ``systemctl show``.

    Args:
        output: Raw stdout.

    Returns:
        UnitProperties: Parsed values; unknown keys are ignored.
    """
    props = UnitProperties()
    for line in output.strip().splitlines():
        if "=" not in line:
            continue
        key, _, value = line.partition("=")
        value = value.strip()
        if key == "LoadState":
            props.load_state = value
        elif key == "ActiveState":
            props.active_state = value or "unknown"
        elif key == "MainPID":
            try:
                props.main_pid = int(value)
            except ValueError:
                pass
        elif key == "ExecMainStartTimestamp":
            props.started_at = value
    return props


def format_rss(output: str) -> Optional[str]:
    """Turn ``ps -o rss=`` kilobytes into ``"<n>MB"``; None if unparseable."""
    try:
        rss_kb = int(output.strip())
    except ValueError:
        return None
    return f"{round(rss_kb / 1024)}MB"


def generate_unit_file(
    identity: AgentIdentity,
    runtime_binary: str = "/usr/bin/openclaw",
    extra_env: Optional[Dict[str, str]] = None,
) -> str:
    """Render the systemd unit for one agent runtime.

    Args:
        identity: The agent's host identity.
        runtime_binary: Absolute path of the runtime executable.
        extra_env: Additional ``Environment=`` entries.

    Returns:
        str: Complete unit file content.
    """
    env_lines = ""
    if extra_env:
        for k, v in extra_env.items():
            env_lines += f"Environment={k}={v}\n"

    return f"""[Unit]
Description=ClawdGod Agent {identity.agent_id}
After=network-online.target
Wants=network-online.target

[Service]
Type=simple
EnvironmentFile={identity.env_path}
Environment=OPENCLAW_STATE_DIR={identity.state_dir}
Environment=OPENCLAW_CONFIG_PATH={identity.config_path}
Environment=NODE_ENV=production
{env_lines}ExecStart={runtime_binary} gateway
Restart=always
RestartSec=5
StandardOutput=journal
StandardError=journal
SyslogIdentifier={identity.service_name}

[Install]
WantedBy=multi-user.target
"""
