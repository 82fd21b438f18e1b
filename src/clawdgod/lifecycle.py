"""
Lifecycle controller: create, stop, restart, and delete agent runtimes.

Each operation is a fixed sequence of host commands sent through a
``HostExecutor``; every state change it causes is reported through a
``StatusReporter``. Operations on one agent are serialized by a per-agent
lock; different agents never wait on each other.

Create flow:
  1. Admission gate (plan limits live with the caller)
  2. Reserve port, resolve identity, render files (fails before any write)
  3. mkdir workspace; write runtime config, workspace files, env file
  4. Write the unit file; daemon-reload; enable; start
  5. Poll ``is-active`` with backoff until active or the budget runs out
  6. Report ``active`` with the gateway address, or ``offline`` and raise
     with the unit's recent journal

All steps overwrite, so re-running create for the same agent converges on
the same host state without manual cleanup.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, Iterable, List, Optional, Union

from . import systemd
from .config import OrchestratorConfig
from .executor import CommandResult, ExecutorError, HostExecutor
from .materializer import ConfigValidationError, render
from .models import AgentFile, AgentState, AgentStats, ProvisioningRequest, validate_agent_id
from .placement import AgentIdentity, PortExhaustedError, PortReservations, resolve
from .reporter import StatusReporter

logger = logging.getLogger(__name__)

FAILURE_LOG_LINES = 20

AdmissionGate = Callable[[ProvisioningRequest], bool]


class LifecycleError(Exception):
    """A lifecycle operation failed."""


class AgentStartError(LifecycleError):
    """The runtime did not come up.

    Attributes:
        logs: Recent journal output of the unit, when it could be captured.
    """

    def __init__(self, message: str, logs: str = "") -> None:
        super().__init__(f"{message}\n{logs}" if logs else message)
        self.logs = logs


class ProvisioningDenied(LifecycleError):
    """The admission gate refused the request."""


class AgentLocks:
    """One re-entrant lock per agent ID, created on first use."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}

    def for_agent(self, agent_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(agent_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[agent_id] = lock
            return lock


class LifecycleController:
    """Drive agent runtimes on one host.

    Args:
        executor: Executor for the agent host.
        reporter: Sink for state transitions.
        config: Orchestrator configuration (defaults if omitted).
        reservations: Port reservation table; None uses the plain hash.
        admission: Yes/no gate consulted before provisioning.
        locks: Shared per-agent locks (one is created if omitted).
    """

    def __init__(
        self,
        executor: HostExecutor,
        reporter: StatusReporter,
        config: Optional[OrchestratorConfig] = None,
        reservations: Optional[PortReservations] = None,
        admission: Optional[AdmissionGate] = None,
        locks: Optional[AgentLocks] = None,
    ) -> None:
        self._executor = executor
        self._reporter = reporter
        self._config = config or OrchestratorConfig()
        self._reservations = reservations
        self._admission = admission
        self._locks = locks or AgentLocks()

    @property
    def host(self) -> str:
        return self._executor.host

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def identity(self, agent_id: str) -> AgentIdentity:
        """Resolve an agent's identity without reserving anything."""
        port = self._reservations.lookup(agent_id) if self._reservations else None
        return resolve(agent_id, self._config.layout, port=port)

    def _run(self, command: str) -> CommandResult:
        result = self._executor.execute(command)
        if not result.ok:
            logger.debug("exit %d: %s: %s", result.exit_code, command, result.stderr)
        return result

    def _notify(self, agent_id: str, user_id: Optional[str], state: AgentState, extra=None) -> None:
        try:
            self._reporter.notify(agent_id, user_id, state, extra)
        except Exception as exc:
            logger.error("Status reporter raised for %s -> %s: %s", agent_id, state.value, exc)

    def _unit_active(self, service: str) -> bool:
        return self._run(systemd.is_active_cmd(service)).stdout.strip() == "active"

    def _wait_until_active(self, identity: AgentIdentity) -> bool:
        """Poll the unit with exponential backoff until active or out of budget.

        Returns:
            True if the unit reported ``active`` within the readiness budget.
        """
        cfg = self._config
        delay = cfg.readiness_initial_delay
        waited = 0.0
        while True:
            time.sleep(delay)
            waited += delay
            if self._unit_active(identity.service_name):
                logger.debug("%s active after %.1fs", identity.service_name, waited)
                return True
            remaining = cfg.readiness_timeout - waited
            if remaining <= 0:
                return False
            delay = min(delay * 2, cfg.readiness_max_delay, remaining)

    def _write_workspace_files(self, identity: AgentIdentity, files: Iterable[AgentFile]) -> None:
        for f in files:
            self._executor.write_file(f"{identity.workspace_dir}/{f.path}", f.content)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def create(self, request: ProvisioningRequest) -> str:
        """Provision and start an agent runtime.

        Args:
            request: The provisioning request.

        Returns:
            str: The gateway's external address, ``host:port``.

        Raises:
            ProvisioningDenied: If the admission gate refuses.
            ConfigValidationError: If the request's config is malformed.
            AgentStartError: If the unit fails to start or become active.
            ExecutorError: If the host is unreachable or a host step fails
                (``offline`` is reported first).
            PortExhaustedError: If no gateway port is free (``offline`` is
                reported first).
        """
        agent_id = request.agent_id
        if self._admission is not None and not self._admission(request):
            raise ProvisioningDenied(f"Provisioning not allowed for agent {agent_id}")

        with self._locks.for_agent(agent_id):
            newly_reserved = False
            port = None
            if self._reservations is not None:
                newly_reserved = agent_id not in self._reservations.snapshot()
                try:
                    port = self._reservations.reserve(agent_id)
                except PortExhaustedError:
                    self._notify(agent_id, request.user_id, AgentState.OFFLINE)
                    raise
            identity = resolve(agent_id, self._config.layout, port=port)

            try:
                files = render(identity, request)
            except ConfigValidationError:
                if newly_reserved:
                    self._reservations.release(agent_id)
                raise

            logger.info(
                "Creating agent %s (runtime %s) as %s on port %d",
                agent_id, request.runtime_version, identity.service_name, identity.port,
            )
            try:
                return self._provision(identity, request, files)
            except ExecutorError:
                self._notify(agent_id, request.user_id, AgentState.OFFLINE)
                raise

    def _provision(self, identity: AgentIdentity, request: ProvisioningRequest, files) -> str:
        agent_id = identity.agent_id
        service = identity.service_name

        self._run(systemd.mkdir_cmd(identity.workspace_dir))
        for f in files:
            self._executor.write_file(f.path, f.content)

        unit = systemd.generate_unit_file(identity, runtime_binary=self._config.layout.runtime_binary)
        self._executor.write_file(identity.unit_path, unit)

        self._run(systemd.daemon_reload_cmd())
        self._run(systemd.enable_cmd(service))
        start = self._run(systemd.start_cmd(service))
        if not start.ok:
            self._notify(agent_id, request.user_id, AgentState.OFFLINE)
            raise AgentStartError(
                f"Agent {agent_id} failed to start (exit {start.exit_code})",
                logs=start.stderr,
            )

        if not self._wait_until_active(identity):
            logs = self._run(systemd.journal_cmd(service, FAILURE_LOG_LINES))
            self._notify(agent_id, request.user_id, AgentState.OFFLINE)
            excerpt = "\n".join(p for p in (logs.stdout, logs.stderr) if p)
            logger.error("Agent %s not running after start", agent_id)
            raise AgentStartError(f"Agent {agent_id} not running after start. Logs:", logs=excerpt)

        address = identity.address(self.host)
        self._notify(
            agent_id,
            request.user_id,
            AgentState.ACTIVE,
            {
                "containerId": address,
                "gatewayPort": identity.port,
                "gatewayUrl": identity.gateway_url(self.host),
            },
        )
        logger.info("Agent %s active at %s", agent_id, address)
        return address

    def stop(self, agent_id: str, user_id: Optional[str] = None) -> None:
        """Stop an agent's runtime, keeping its files. Already stopped is fine."""
        validate_agent_id(agent_id)
        with self._locks.for_agent(agent_id):
            identity = self.identity(agent_id)
            try:
                self._run(systemd.stop_cmd(identity.service_name))
            except ExecutorError:
                self._notify(agent_id, user_id, AgentState.OFFLINE)
                raise
            logger.info("Stopped agent %s", agent_id)
            self._notify(agent_id, user_id, AgentState.STOPPED)

    def restart(self, agent_id: str, user_id: Optional[str] = None) -> bool:
        """Restart an agent's runtime.

        ``restarting`` is reported before anything else so observers see the
        transition; the outcome is reported as ``active`` or ``offline``.

        Returns:
            True if the unit came back active.

        Raises:
            ExecutorError: If the host is unreachable or a command times out
                (``offline`` is reported first).
        """
        validate_agent_id(agent_id)
        with self._locks.for_agent(agent_id):
            identity = self.identity(agent_id)
            self._notify(agent_id, user_id, AgentState.RESTARTING)
            try:
                result = self._run(systemd.restart_cmd(identity.service_name))
                if result.ok:
                    running = self._wait_until_active(identity)
                else:
                    logger.warning("Restart of %s exited %d: %s", agent_id, result.exit_code, result.stderr)
                    running = False
            except ExecutorError:
                self._notify(agent_id, user_id, AgentState.OFFLINE)
                raise

            self._notify(agent_id, user_id, AgentState.ACTIVE if running else AgentState.OFFLINE)
            logger.info("Restarted agent %s: %s", agent_id, "active" if running else "offline")
            return running

    def delete(self, agent_id: str, user_id: Optional[str] = None) -> None:
        """Remove every trace of an agent from the host.

        Safe on an agent that never existed.
        """
        validate_agent_id(agent_id)
        with self._locks.for_agent(agent_id):
            identity = self.identity(agent_id)
            service = identity.service_name

            self._run(systemd.stop_cmd(service))
            self._run(systemd.disable_cmd(service))
            self._run(systemd.remove_file_cmd(identity.unit_path))
            self._run(systemd.daemon_reload_cmd())
            self._run(systemd.remove_tree_cmd(identity.state_dir))

            if self._reservations is not None:
                self._reservations.release(agent_id)
            logger.info("Deleted agent %s", agent_id)
            self._notify(agent_id, user_id, AgentState.DELETED)

    def update_files(self, agent_id: str, files: List[Union[AgentFile, dict]]) -> None:
        """Write files into the agent's workspace; the runtime hot-reloads them."""
        validate_agent_id(agent_id)
        parsed = [f if isinstance(f, AgentFile) else AgentFile(**f) for f in files]
        with self._locks.for_agent(agent_id):
            identity = self.identity(agent_id)
            self._write_workspace_files(identity, parsed)
            logger.info("Updated %d workspace file(s) for %s", len(parsed), agent_id)

    def is_running(self, agent_id: str) -> bool:
        """Whether the agent's unit is currently ``active``."""
        return self._unit_active(self.identity(agent_id).service_name)

    def get_stats(self, agent_id: str) -> Optional[AgentStats]:
        """Unit state, start time, and memory of an agent.

        Returns:
            AgentStats, or None if systemd does not know the unit at all.
        """
        validate_agent_id(agent_id)
        identity = self.identity(agent_id)
        result = self._run(systemd.show_cmd(identity.service_name))
        if not result.ok:
            return None
        props = systemd.parse_show_output(result.stdout)
        if not props.exists:
            return None

        memory = "0MB"
        if props.main_pid:
            rss = self._run(systemd.rss_cmd(props.main_pid))
            if rss.ok:
                memory = systemd.format_rss(rss.stdout) or memory

        return AgentStats(
            status=props.active_state,
            uptime=props.started_at or "unknown",
            memory=memory,
            pid=props.main_pid,
            address=identity.address(self.host),
            gateway_url=identity.gateway_url(self.host),
        )

    def get_logs(self, agent_id: str, lines: int = 50) -> str:
        """Most recent ``lines`` of the agent's journal (stdout and stderr)."""
        validate_agent_id(agent_id)
        identity = self.identity(agent_id)
        return self._run(systemd.journal_cmd(identity.service_name, max(1, int(lines)))).stdout
