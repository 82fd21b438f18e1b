"""
Status reporting: tell the platform backend about agent state changes.

The backend owns the agent record and fans status events out to the
dashboard. Reports are best-effort: a failed report is logged and dropped,
never retried, and never undoes the lifecycle step that triggered it.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import requests

from .config import OrchestratorConfig
from .models import AgentState

logger = logging.getLogger(__name__)

REPORT_TIMEOUT = 10


class StatusReporter:
    """Sink for agent state transitions."""

    def notify(
        self,
        agent_id: str,
        user_id: Optional[str],
        state: AgentState,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Report that an agent entered ``state``.

        Args:
            agent_id: Agent ID.
            user_id: Owning user, when the caller knows it.
            state: The new state.
            extra: Additional fields for the record (address, reason, ...).
        """
        raise NotImplementedError


class LogStatusReporter(StatusReporter):
    """Reporter used when no backend is configured; only logs."""

    def notify(self, agent_id, user_id, state, extra=None):
        logger.info("Agent %s -> %s %s", agent_id, AgentState(state).value, extra or "")


class HttpStatusReporter(StatusReporter):
    """POST status updates to the backend's internal API.

    Args:
        backend_url: Backend base URL, e.g. ``http://localhost:3001``.
        token: Shared internal secret sent as ``x-internal-token``.
        timeout: Request timeout in seconds.
        session: Optional requests session. Without one each report is a
            standalone ``requests.post``, safe from any thread.
    """

    def __init__(
        self,
        backend_url: str,
        token: str = "",
        timeout: float = REPORT_TIMEOUT,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._backend_url = backend_url.rstrip("/")
        self._token = token
        self._timeout = timeout
        self._session = session

    def notify(self, agent_id, user_id, state, extra=None):
        state = AgentState(state)
        body: Dict[str, Any] = {"status": state.value}
        if user_id:
            body["userId"] = user_id
        if extra:
            body.update(extra)

        url = f"{self._backend_url}/internal/agents/{agent_id}/status"
        try:
            post = self._session.post if self._session is not None else requests.post
            resp = post(
                url,
                json=body,
                headers={"x-internal-token": self._token},
                timeout=self._timeout,
            )
            if resp.status_code >= 400:
                logger.error(
                    "Status report for %s (%s) rejected: %d %s",
                    agent_id, state.value, resp.status_code, resp.text[:200],
                )
            else:
                logger.debug("Reported %s -> %s", agent_id, state.value)
        except requests.RequestException as exc:
            logger.error("Failed to report %s -> %s: %s", agent_id, state.value, exc)


def build_reporter(config: OrchestratorConfig) -> StatusReporter:
    """Pick the reporter for the configuration."""
    if config.backend_url:
        return HttpStatusReporter(config.backend_url, token=config.internal_secret)
    logger.warning("No backend_url configured; status reports will only be logged")
    return LogStatusReporter()
