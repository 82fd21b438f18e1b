"""Agent health monitoring: liveness polling with bounded auto-restart.

Every ``interval`` seconds the monitor asks systemd whether each tracked
agent is active. Consecutive misses are counted per agent; on reaching
``max_fails`` the agent gets one restart through the lifecycle controller
and its counter is reset whatever the outcome. A restart that does not
bring the agent back escalates an ``offline`` report, and monitoring
continues on the normal cadence instead of hammering a dead host.

An error while checking one agent counts as a miss for that agent and
never interrupts the rest of the cycle.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from ._store import locked, read_json, write_json
from .lifecycle import LifecycleController
from .models import AgentState
from .reporter import StatusReporter

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 60.0
DEFAULT_MAX_FAILS = 3


@dataclass
class TrackedAgent:
    """An agent under liveness monitoring."""

    agent_id: str
    host_address: str
    user_id: Optional[str] = None
    consecutive_failures: int = 0


@dataclass
class HealthCycleReport:
    """Result of one monitoring pass.

    Attributes:
        timestamp: When the cycle started.
        checked: Number of agents examined.
        healthy: Agents found active.
        failing: Agents that missed this check.
        restarted: Agents whose auto-restart brought them back.
        escalated: Agents reported offline after a failed auto-restart.
    """

    timestamp: str = ""
    checked: int = 0
    healthy: List[str] = field(default_factory=list)
    failing: List[str] = field(default_factory=list)
    restarted: List[str] = field(default_factory=list)
    escalated: List[str] = field(default_factory=list)


class AgentRegistry:
    """Thread-safe set of tracked agents, optionally persisted to JSON.

    The file may be shared with other processes (the CLI tracks agents
    while the daemon runs); each access re-reads it, keeping the in-memory
    failure counters of agents that are still listed.

    Args:
        path: File to persist tracked agents to (None keeps them in memory).
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self._path = path
        self._lock = threading.Lock()
        self._agents: Dict[str, TrackedAgent] = {}
        self._refresh()
        if self._agents:
            logger.info("Loaded %d tracked agent(s) from %s", len(self._agents), self._path)

    def _refresh(self) -> None:
        if self._path is None:
            return
        try:
            raw = read_json(self._path) or []
            agents = {}
            for entry in raw:
                agent = TrackedAgent(
                    agent_id=entry["agent_id"],
                    host_address=entry["host_address"],
                    user_id=entry.get("user_id"),
                )
                # counters live in memory only; a fresh process starts at zero
                known = self._agents.get(agent.agent_id)
                if known is not None:
                    agent.consecutive_failures = known.consecutive_failures
                agents[agent.agent_id] = agent
        except (json.JSONDecodeError, KeyError, TypeError) as exc:
            logger.warning("Ignoring unreadable registry %s: %s", self._path, exc)
            agents = {}
        self._agents = agents

    def _save(self) -> None:
        if self._path is None:
            return
        write_json(self._path, [
            {"agent_id": a.agent_id, "host_address": a.host_address, "user_id": a.user_id}
            for a in self._agents.values()
        ])

    def track(self, agent_id: str, host_address: str, user_id: Optional[str] = None) -> None:
        """Start monitoring an agent (resets its failure count)."""
        with self._lock, locked(self._path):
            self._refresh()
            self._agents[agent_id] = TrackedAgent(agent_id, host_address, user_id)
            self._save()
        logger.debug("Tracking %s on %s", agent_id, host_address)

    def untrack(self, agent_id: str) -> None:
        """Stop monitoring an agent (no-op if untracked)."""
        with self._lock, locked(self._path):
            self._refresh()
            if self._agents.pop(agent_id, None) is not None:
                self._save()
        logger.debug("Untracked %s", agent_id)

    def get(self, agent_id: str) -> Optional[TrackedAgent]:
        with self._lock:
            self._refresh()
            agent = self._agents.get(agent_id)
            return TrackedAgent(**asdict(agent)) if agent else None

    def agents(self) -> List[TrackedAgent]:
        """Copies of all tracked agents."""
        with self._lock:
            self._refresh()
            return [TrackedAgent(**asdict(a)) for a in self._agents.values()]

    def mark_healthy(self, agent_id: str) -> None:
        with self._lock:
            agent = self._agents.get(agent_id)
            if agent:
                agent.consecutive_failures = 0

    def mark_failed(self, agent_id: str) -> Optional[int]:
        """Count a miss; returns the new count, or None if no longer tracked."""
        with self._lock:
            agent = self._agents.get(agent_id)
            if agent is None:
                return None
            agent.consecutive_failures += 1
            return agent.consecutive_failures

    def __len__(self) -> int:
        with self._lock:
            self._refresh()
            return len(self._agents)

    def __contains__(self, agent_id: object) -> bool:
        with self._lock:
            self._refresh()
            return agent_id in self._agents


class HealthMonitor:
    """Periodic liveness check over every tracked agent.

    Args:
        controller: Lifecycle controller used for checks and restarts.
        registry: Tracked agents.
        reporter: Sink for escalations.
        interval: Seconds between cycles.
        max_fails: Consecutive misses before an auto-restart.
    """

    def __init__(
        self,
        controller: LifecycleController,
        registry: AgentRegistry,
        reporter: StatusReporter,
        interval: float = DEFAULT_INTERVAL,
        max_fails: int = DEFAULT_MAX_FAILS,
    ) -> None:
        self._controller = controller
        self._registry = registry
        self._reporter = reporter
        self._interval = interval
        self._max_fails = max_fails
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.last_report: Optional[HealthCycleReport] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_cycle(self) -> HealthCycleReport:
        """Check every tracked agent once.

        Returns:
            HealthCycleReport: What happened this cycle.
        """
        report = HealthCycleReport(timestamp=datetime.now(timezone.utc).isoformat())
        for agent in self._registry.agents():
            report.checked += 1
            self._check_agent(agent, report)
        self.last_report = report
        if report.failing:
            logger.info(
                "Health cycle: %d checked, %d failing, %d restarted, %d escalated",
                report.checked, len(report.failing), len(report.restarted), len(report.escalated),
            )
        return report

    def _check_agent(self, agent: TrackedAgent, report: HealthCycleReport) -> None:
        agent_id = agent.agent_id
        try:
            running = self._controller.is_running(agent_id)
        except Exception as exc:
            logger.error("Error checking %s: %s", agent_id, exc)
            running = False

        if running:
            self._registry.mark_healthy(agent_id)
            report.healthy.append(agent_id)
            return

        report.failing.append(agent_id)
        fails = self._registry.mark_failed(agent_id)
        if fails is None:
            return
        logger.warning("Agent %s not running (fail count: %d)", agent_id, fails)

        if fails >= self._max_fails:
            self._recover(agent, report)

    def _recover(self, agent: TrackedAgent, report: HealthCycleReport) -> None:
        agent_id = agent.agent_id
        logger.error("Agent %s exceeded %d failed checks, restarting", agent_id, self._max_fails)
        try:
            recovered = self._controller.restart(agent_id, agent.user_id)
        except Exception as exc:
            logger.error("Failed to restart %s: %s", agent_id, exc)
            recovered = False
        finally:
            self._registry.mark_healthy(agent_id)

        if recovered:
            report.restarted.append(agent_id)
            return

        report.escalated.append(agent_id)
        try:
            self._reporter.notify(
                agent_id, agent.user_id, AgentState.OFFLINE, {"reason": "auto_restart_failed"},
            )
        except Exception as exc:
            logger.error("Offline escalation for %s failed: %s", agent_id, exc)

    def _loop(self) -> None:
        while not self._stop_event.wait(timeout=self._interval):
            try:
                self.run_cycle()
            except Exception as exc:
                logger.error("Health cycle failed: %s", exc)

    def start(self) -> None:
        """Run cycles in a background thread every ``interval`` seconds."""
        if self.running:
            return
        logger.info("Starting health checks every %ss", self._interval)
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="health-monitor", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the background loop."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
