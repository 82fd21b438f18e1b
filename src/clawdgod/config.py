"""
Orchestrator configuration.

Loaded from ``<home>/config.yaml`` and then overridden by ``CLAWDGOD_*``
environment variables, so a systemd unit or container can reconfigure
the orchestrator without touching the file.

Example config.yaml:

    transport: ssh
    node_host: 203.0.113.7
    ssh_user: root
    ssh_key: ~/.ssh/clawdgod
    backend_url: http://localhost:3001
    internal_secret: change-me
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from . import ORCHESTRATOR_HOME

logger = logging.getLogger(__name__)

CONFIG_FILE = "config.yaml"

# env var -> config field
_ENV_OVERRIDES = {
    "CLAWDGOD_NODE_HOST": "node_host",
    "CLAWDGOD_TRANSPORT": "transport",
    "CLAWDGOD_SSH_USER": "ssh_user",
    "CLAWDGOD_SSH_KEY": "ssh_key",
    "CLAWDGOD_BACKEND_URL": "backend_url",
    "CLAWDGOD_INTERNAL_SECRET": "internal_secret",
    "CLAWDGOD_API_PORT": "api_port",
    "CLAWDGOD_LOG_LEVEL": "log_level",
}


class HostLayout(BaseModel):
    """Where agent state, units, and the runtime binary live on the host."""

    state_root: str = "/root"
    unit_dir: str = "/etc/systemd/system"
    runtime_binary: str = "/usr/bin/openclaw"
    service_prefix: str = "clawdgod-"
    profile_prefix: str = "agent-"
    base_port: int = Field(default=18800, ge=1024, le=65535)
    port_range: int = Field(default=1000, ge=1)


class OrchestratorConfig(BaseModel):
    """Top-level orchestrator settings.

    Attributes:
        home: Orchestrator home (logs, registry, port reservations).
        transport: ``local`` to run commands on this machine, ``ssh`` for
            a remote host.
        node_host: Externally reachable address of the agent host.
        ssh_user: SSH login for the ssh transport.
        ssh_key: Private key file for the ssh transport.
        ssh_port: SSH port.
        command_timeout: Seconds before a single host command is abandoned.
        layout: Host-side layout conventions.
        readiness_initial_delay: First wait after start/restart, seconds.
        readiness_max_delay: Cap for the backoff between readiness polls.
        readiness_timeout: Total readiness budget before declaring offline.
        health_interval: Seconds between health-check cycles.
        health_max_fails: Consecutive failures before an auto-restart.
        backend_url: Platform backend base URL for status reports.
        internal_secret: Shared secret for the internal API and reports.
        api_port: Port for the internal HTTP API.
        api_bind: Bind address for the internal HTTP API.
        reserve_ports: Use the persisted port reservation table.
        persist_registry: Persist tracked agents across restarts.
        log_level: Root log level for the daemon.
    """

    home: Path = Field(default_factory=lambda: Path(ORCHESTRATOR_HOME).expanduser())
    transport: str = Field(default="local", pattern="^(local|ssh)$")
    node_host: str = "127.0.0.1"
    ssh_user: str = "root"
    ssh_key: Optional[str] = None
    ssh_port: int = 22
    command_timeout: float = 60.0
    layout: HostLayout = Field(default_factory=HostLayout)
    readiness_initial_delay: float = 1.0
    readiness_max_delay: float = 4.0
    readiness_timeout: float = 15.0
    health_interval: float = 60.0
    health_max_fails: int = Field(default=3, ge=1)
    backend_url: Optional[str] = None
    internal_secret: str = ""
    api_port: int = 3002
    api_bind: str = "0.0.0.0"
    reserve_ports: bool = True
    persist_registry: bool = True
    log_level: str = "INFO"

    @property
    def log_file(self) -> Path:
        return self.home / "logs" / "orchestrator.log"

    @property
    def registry_file(self) -> Path:
        return self.home / "tracked_agents.json"

    @property
    def reservations_file(self) -> Path:
        return self.home / "port_reservations.json"


def load_config(home: Optional[Path] = None) -> OrchestratorConfig:
    """Load configuration from disk and the environment.

    A missing or malformed config file falls back to defaults; the
    environment overrides are applied either way.

    Args:
        home: Orchestrator home directory.

    Returns:
        OrchestratorConfig: The effective configuration.
    """
    home = (home or Path(ORCHESTRATOR_HOME)).expanduser()
    data: dict = {}

    config_file = home / CONFIG_FILE
    if config_file.exists():
        try:
            data = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            logger.warning("Failed to parse %s: %s; using defaults", config_file, exc)
            data = {}
        if not isinstance(data, dict):
            logger.warning("Ignoring %s: top level is not a mapping", config_file)
            data = {}

    for env_name, field_name in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            data[field_name] = value

    data["home"] = home
    try:
        return OrchestratorConfig(**data)
    except ValidationError as exc:
        logger.warning("Invalid configuration in %s: %s; using defaults", config_file, exc)
        return OrchestratorConfig(home=home)
