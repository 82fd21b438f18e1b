"""Shared test fixtures for clawdgod.

``FakeHost`` is an in-memory host: it keeps a file table, interprets the
handful of shell commands the orchestrator issues (mkdir, rm, systemctl,
journalctl, ps), and records every command in order.
"""

from __future__ import annotations

import json
import posixpath
import shlex
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from clawdgod.config import OrchestratorConfig
from clawdgod.executor import CommandResult, ExecutorError, HostConnectionError, HostExecutor
from clawdgod.lifecycle import LifecycleController
from clawdgod.models import AgentState, ProvisioningRequest
from clawdgod.reporter import StatusReporter


class FakeHost(HostExecutor):
    """Simulated agent host."""

    def __init__(self, host: str = "203.0.113.7") -> None:
        self.host = host
        self.files: Dict[str, str] = {}
        self.dirs: set = set()
        self.commands: List[str] = []
        self.units: Dict[str, str] = {}
        self.enabled: set = set()
        self.start_state = "active"
        self.start_fails = False
        self.journal = "gateway: listening\ngateway: fatal: invalid config"
        self.rss_kb = 51200
        self.unreachable = False
        # command prefix (or "<write>") -> error raised instead of running it
        self.raise_on: Dict[str, ExecutorError] = {}

    # -- helpers -------------------------------------------------------

    def _unit_file_exists(self, service: str) -> bool:
        return any(p.endswith(f"/{service}.service") for p in self.files)

    def paths_under(self, prefix: str) -> List[str]:
        prefix = prefix.rstrip("/") + "/"
        return [p for p in self.files if p.startswith(prefix)] + [
            d for d in self.dirs if d.startswith(prefix) or d + "/" == prefix
        ]

    def systemctl_calls(self) -> List[str]:
        return [c for c in self.commands if c.startswith("systemctl")]

    def _check(self, command: str) -> None:
        if self.unreachable:
            raise HostConnectionError(f"Cannot reach {self.host}")
        for prefix, error in self.raise_on.items():
            if command.startswith(prefix):
                raise error

    # -- executor interface ---------------------------------------------

    def write_file(self, path: str, content: str) -> None:
        self._check("<write>")
        self.commands.append(f"<write {path}>")
        self.files[path] = content
        self.dirs.add(posixpath.dirname(path))

    def execute(self, command: str) -> CommandResult:
        self._check(command)
        self.commands.append(command)
        tokens = shlex.split(command)
        tolerant = "||" in tokens
        result = self._dispatch(tokens)
        if tolerant and result.exit_code != 0:
            return CommandResult(result.stdout, "", 0)
        return result

    def _dispatch(self, tokens: List[str]) -> CommandResult:
        prog = tokens[0]
        if prog == "mkdir":
            self.dirs.add(tokens[-1])
            return CommandResult("", "", 0)
        if prog == "rm":
            target = tokens[-1]
            if tokens[1] == "-rf":
                for p in list(self.files):
                    if p == target or p.startswith(target.rstrip("/") + "/"):
                        del self.files[p]
                self.dirs = {
                    d for d in self.dirs
                    if not (d == target or d.startswith(target.rstrip("/") + "/"))
                }
            else:
                self.files.pop(target, None)
            return CommandResult("", "", 0)
        if prog == "journalctl":
            return CommandResult(self.journal, "", 0)
        if prog == "ps":
            return CommandResult(str(self.rss_kb), "", 0)
        if prog == "systemctl":
            return self._systemctl(tokens[1], tokens[2] if len(tokens) > 2 else "")
        return CommandResult("", f"{prog}: command not found", 127)

    def _systemctl(self, verb: str, service: str) -> CommandResult:
        if verb == "daemon-reload":
            self.units = {s: st for s, st in self.units.items() if self._unit_file_exists(s)}
            return CommandResult("", "", 0)
        known = self._unit_file_exists(service)
        missing = CommandResult("", f"Unit {service}.service not found.", 5)
        if verb == "enable":
            if not known:
                return missing
            self.enabled.add(service)
            return CommandResult("", "", 0)
        if verb == "disable":
            self.enabled.discard(service)
            return CommandResult("", "", 0) if known else missing
        if verb in ("start", "restart"):
            if not known:
                return missing
            if self.start_fails:
                return CommandResult("", f"Job for {service}.service failed.", 1)
            self.units[service] = self.start_state
            return CommandResult("", "", 0)
        if verb == "stop":
            if service in self.units:
                self.units[service] = "inactive"
                return CommandResult("", "", 0)
            return missing
        if verb == "is-active":
            state = self.units.get(service, "inactive")
            return CommandResult(state, "", 0 if state == "active" else 3)
        if verb == "show":
            if not known and service not in self.units:
                return CommandResult(
                    "LoadState=not-found\nActiveState=inactive\nMainPID=0\nExecMainStartTimestamp=",
                    "", 0,
                )
            state = self.units.get(service, "inactive")
            pid = 4242 if state == "active" else 0
            started = "Sat 2026-10-17 10:00:00 UTC" if state == "active" else ""
            return CommandResult(
                f"LoadState=loaded\nActiveState={state}\nMainPID={pid}\nExecMainStartTimestamp={started}",
                "", 0,
            )
        return CommandResult("", f"Unknown command verb {verb}.", 1)


class RecordingReporter(StatusReporter):
    """Reporter that remembers every notification."""

    def __init__(self) -> None:
        self.events: List[tuple] = []

    def notify(self, agent_id, user_id, state, extra=None):
        self.events.append((agent_id, AgentState(state), extra or {}))

    def states(self, agent_id: Optional[str] = None) -> List[AgentState]:
        return [s for a, s, _ in self.events if agent_id is None or a == agent_id]


def make_request(
    agent_id: str = "a1",
    config: Optional[dict] = None,
    raw_config: Optional[str] = None,
    extra_files: Optional[List[dict]] = None,
    env: Optional[dict] = None,
) -> ProvisioningRequest:
    """Build a provisioning request like the backend sends."""
    if raw_config is None:
        raw_config = json.dumps(config or {})
    files = [{"path": "config.json", "content": raw_config}]
    files += extra_files or []
    return ProvisioningRequest.model_validate({
        "agentId": agent_id,
        "userId": "user-1",
        "openclawVersion": "1.0",
        "envVars": env if env is not None else {"ANTHROPIC_API_KEY": "x"},
        "files": files,
        "channels": ["telegram"],
    })


@pytest.fixture
def fake_host() -> FakeHost:
    return FakeHost()


@pytest.fixture
def reporter() -> RecordingReporter:
    return RecordingReporter()


@pytest.fixture
def config(tmp_path: Path) -> OrchestratorConfig:
    """Config with a zero readiness budget: exactly one immediate poll."""
    return OrchestratorConfig(
        home=tmp_path / ".clawdgod",
        readiness_initial_delay=0,
        readiness_max_delay=0,
        readiness_timeout=0,
    )


@pytest.fixture
def controller(fake_host: FakeHost, reporter: RecordingReporter, config: OrchestratorConfig) -> LifecycleController:
    return LifecycleController(fake_host, reporter, config)
