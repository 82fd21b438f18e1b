"""
Host placement: the deterministic host identity of an agent.

Every name, path, and port the orchestrator uses for an agent is derived
from its ID alone, so restart, stats, and delete can recompute them later
without a lookup table:

    service_name   clawdgod-<id>
    profile_name   agent-<id>
    state_dir      <state_root>/.openclaw-agent-<id>
    workspace_dir  <state_dir>/workspace
    config_path    <state_dir>/openclaw.json
    env_path       <state_dir>/.env
    unit_path      <unit_dir>/clawdgod-<id>.service
    port           base_port + |hash32(id)| % port_range

Two IDs can hash to the same port. ``PortReservations`` is a small
persisted table that hands out the hashed port when it is free and probes
forward otherwise; once reserved, an agent keeps its port until deleted.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict

from ._store import locked, read_json, write_json
from .config import HostLayout

logger = logging.getLogger(__name__)


class PortExhaustedError(RuntimeError):
    """Every port in the configured range is reserved."""


class AgentIdentity(BaseModel):
    """Host-level names, paths, and port for one agent."""

    model_config = ConfigDict(frozen=True)

    agent_id: str
    service_name: str
    profile_name: str
    state_dir: str
    workspace_dir: str
    config_path: str
    env_path: str
    unit_path: str
    port: int

    def address(self, host: str) -> str:
        """Externally reachable ``host:port`` of the agent gateway."""
        return f"{host}:{self.port}"

    def gateway_url(self, host: str) -> str:
        return f"http://{host}:{self.port}"


def _hash32(value: str) -> int:
    """Signed 32-bit ``h = h * 31 + ord(ch)`` string hash."""
    h = 0
    for ch in value:
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return h


def agent_port(agent_id: str, base_port: int = 18800, port_range: int = 1000) -> int:
    """Hash an agent ID into the gateway port range.

    Args:
        agent_id: Agent ID.
        base_port: First port of the range.
        port_range: Number of ports in the range.

    Returns:
        int: A port in ``[base_port, base_port + port_range)``.
    """
    return base_port + abs(_hash32(agent_id)) % port_range


def resolve(
    agent_id: str,
    layout: Optional[HostLayout] = None,
    port: Optional[int] = None,
) -> AgentIdentity:
    """Derive the full host identity of an agent.

    Pure: no I/O, no randomness.

    Args:
        agent_id: Agent ID.
        layout: Host layout conventions (defaults if omitted).
        port: Reserved port overriding the hashed one.

    Returns:
        AgentIdentity: The derived identity.
    """
    layout = layout or HostLayout()
    service = f"{layout.service_prefix}{agent_id}"
    profile = f"{layout.profile_prefix}{agent_id}"
    state_dir = f"{layout.state_root.rstrip('/')}/.openclaw-{profile}"
    return AgentIdentity(
        agent_id=agent_id,
        service_name=service,
        profile_name=profile,
        state_dir=state_dir,
        workspace_dir=f"{state_dir}/workspace",
        config_path=f"{state_dir}/openclaw.json",
        env_path=f"{state_dir}/.env",
        unit_path=f"{layout.unit_dir.rstrip('/')}/{service}.service",
        port=port if port is not None else agent_port(
            agent_id, layout.base_port, layout.port_range,
        ),
    )


class PortReservations:
    """Persisted agent_id -> port table.

    Thread-safe, and safe to share with other processes: every change
    re-reads the file under a lock before writing it back.

    Args:
        path: JSON file backing the table (None keeps it in memory).
        base_port: First port of the range.
        port_range: Number of ports in the range.
    """

    def __init__(
        self,
        path: Optional[Path] = None,
        base_port: int = 18800,
        port_range: int = 1000,
    ) -> None:
        self._path = path
        self._base_port = base_port
        self._port_range = port_range
        self._lock = threading.Lock()
        self._ports: Dict[str, int] = {}
        self._refresh()

    def _refresh(self) -> None:
        if self._path is None:
            return
        try:
            data = read_json(self._path) or {}
            self._ports = {str(k): int(v) for k, v in data.items()}
        except (json.JSONDecodeError, ValueError, AttributeError) as exc:
            logger.warning("Ignoring unreadable port table %s: %s", self._path, exc)
            self._ports = {}

    def _save(self) -> None:
        if self._path is not None:
            write_json(self._path, self._ports)

    def lookup(self, agent_id: str) -> int:
        """Reserved port for an agent, or its hashed default. Never mutates."""
        with self._lock:
            self._refresh()
            reserved = self._ports.get(agent_id)
        if reserved is not None:
            return reserved
        return agent_port(agent_id, self._base_port, self._port_range)

    def reserve(self, agent_id: str) -> int:
        """Reserve a port for an agent.

        Returns the existing reservation if there is one; otherwise the
        hashed port, or the next free port after it (wrapping).

        Raises:
            PortExhaustedError: If the range is fully reserved.
        """
        with self._lock, locked(self._path):
            self._refresh()
            if agent_id in self._ports:
                return self._ports[agent_id]

            taken = set(self._ports.values())
            start = agent_port(agent_id, self._base_port, self._port_range) - self._base_port
            for step in range(self._port_range):
                candidate = self._base_port + (start + step) % self._port_range
                if candidate not in taken:
                    if step:
                        logger.info(
                            "Port collision for %s: hashed %d taken, using %d",
                            agent_id, self._base_port + start, candidate,
                        )
                    self._ports[agent_id] = candidate
                    self._save()
                    return candidate

        raise PortExhaustedError(
            f"No free port in {self._base_port}-{self._base_port + self._port_range - 1}"
        )

    def release(self, agent_id: str) -> None:
        """Drop an agent's reservation (no-op if it has none)."""
        with self._lock, locked(self._path):
            self._refresh()
            if self._ports.pop(agent_id, None) is not None:
                self._save()

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            self._refresh()
            return dict(self._ports)
