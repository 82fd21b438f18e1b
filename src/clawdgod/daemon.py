"""
ClawdGod orchestrator daemon.

Long-running process that owns the lifecycle controller, the tracked-agent
registry, and the health-check loop, and serves the internal HTTP API the
platform backend calls to create and manage agents.

Every route except ``/health`` requires the shared secret in the
``x-internal-token`` header.

    POST   /internal/containers/create
    POST   /internal/containers/<id>/stop
    POST   /internal/containers/<id>/restart
    DELETE /internal/containers/<id>
    PUT    /internal/containers/<id>/files
    GET    /internal/containers/<id>/stats
    GET    /internal/containers/<id>/logs?lines=N
    GET    /status
    GET    /health
"""

from __future__ import annotations

import hmac
import json
import logging
import os
import re
import signal
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import parse_qs, urlparse

from pydantic import ValidationError

from . import ORCHESTRATOR_HOME
from .config import OrchestratorConfig
from .executor import ExecutorError, HostConnectionError, build_executor
from .health import AgentRegistry, HealthMonitor
from .lifecycle import AgentStartError, LifecycleController, ProvisioningDenied
from .materializer import ConfigValidationError
from .models import ProvisioningRequest
from .placement import PortExhaustedError, PortReservations
from .reporter import StatusReporter, build_reporter

logger = logging.getLogger("clawdgod.daemon")

PID_FILE = "daemon.pid"
MAX_BODY_BYTES = 10 * 1024 * 1024


@dataclass
class Orchestrator:
    """The wired-up core components."""

    config: OrchestratorConfig
    controller: LifecycleController
    registry: AgentRegistry
    monitor: HealthMonitor
    reporter: StatusReporter


def build_orchestrator(config: OrchestratorConfig) -> Orchestrator:
    """Wire executor, reporter, reservations, controller, registry, and monitor.

    Args:
        config: Orchestrator configuration.

    Returns:
        Orchestrator: Ready-to-use components.
    """
    reporter = build_reporter(config)
    reservations = None
    if config.reserve_ports:
        reservations = PortReservations(
            config.reservations_file,
            base_port=config.layout.base_port,
            port_range=config.layout.port_range,
        )
    controller = LifecycleController(
        build_executor(config), reporter, config, reservations=reservations,
    )
    registry = AgentRegistry(config.registry_file if config.persist_registry else None)
    monitor = HealthMonitor(
        controller, registry, reporter,
        interval=config.health_interval,
        max_fails=config.health_max_fails,
    )
    return Orchestrator(config, controller, registry, monitor, reporter)


class DaemonState:
    """Thread-safe daemon counters and recent errors."""

    def __init__(self):
        self._lock = threading.Lock()
        self.started_at: Optional[datetime] = None
        self.operations: Dict[str, int] = {}
        self.errors: list[str] = []
        self.running: bool = False

    def record_operation(self, name: str) -> None:
        with self._lock:
            self.operations[name] = self.operations.get(name, 0) + 1

    def record_error(self, error: str) -> None:
        """Record an error, keeping only the last 50."""
        with self._lock:
            ts = datetime.now(timezone.utc).isoformat()
            self.errors.append(f"[{ts}] {error}")
            if len(self.errors) > 50:
                self.errors = self.errors[-50:]

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "running": self.running,
                "started_at": self.started_at.isoformat() if self.started_at else None,
                "uptime_seconds": (
                    (datetime.now(timezone.utc) - self.started_at).total_seconds()
                    if self.started_at
                    else 0
                ),
                "operations": dict(self.operations),
                "recent_errors": self.errors[-10:],
                "pid": os.getpid(),
            }


class ApiError(Exception):
    """An error with an HTTP status for the internal API."""

    def __init__(self, status: int, message: str):
        super().__init__(message)
        self.status = status


_ROUTES = [
    ("POST", re.compile(r"^/internal/containers/create$"), "create"),
    ("POST", re.compile(r"^/internal/containers/(?P<agent_id>[^/]+)/stop$"), "stop"),
    ("POST", re.compile(r"^/internal/containers/(?P<agent_id>[^/]+)/restart$"), "restart"),
    ("DELETE", re.compile(r"^/internal/containers/(?P<agent_id>[^/]+)$"), "delete"),
    ("PUT", re.compile(r"^/internal/containers/(?P<agent_id>[^/]+)/files$"), "files"),
    ("GET", re.compile(r"^/internal/containers/(?P<agent_id>[^/]+)/stats$"), "stats"),
    ("GET", re.compile(r"^/internal/containers/(?P<agent_id>[^/]+)/logs$"), "logs"),
    ("GET", re.compile(r"^/status$"), "status"),
]


class InternalApi:
    """Route handlers for the internal API, independent of the HTTP server.

    Args:
        orchestrator: Wired core components.
        state: Daemon state for counters and errors.
    """

    def __init__(self, orchestrator: Orchestrator, state: DaemonState):
        self._orc = orchestrator
        self._state = state

    def dispatch(
        self, method: str, path: str, query: Dict[str, list], body: Any,
    ) -> Tuple[int, dict]:
        """Handle one request.

        Returns:
            (status, JSON-serializable payload)
        """
        for route_method, pattern, name in _ROUTES:
            match = pattern.match(path)
            if match and route_method == method:
                handler: Callable = getattr(self, f"_{name}")
                self._state.record_operation(name)
                try:
                    return 200, handler(body=body, query=query, **match.groupdict())
                except ApiError as exc:
                    return exc.status, {"error": str(exc)}
                except (ValidationError, ConfigValidationError, ValueError) as exc:
                    return 400, {"error": str(exc)}
                except ProvisioningDenied as exc:
                    return 402, {"error": str(exc)}
                except AgentStartError as exc:
                    self._state.record_error(f"{name}: {exc}")
                    return 500, {"error": str(exc), "logs": exc.logs}
                except HostConnectionError as exc:
                    self._state.record_error(f"{name}: {exc}")
                    return 502, {"error": str(exc)}
                except (ExecutorError, PortExhaustedError) as exc:
                    self._state.record_error(f"{name}: {exc}")
                    logger.error("%s failed: %s", name, exc)
                    return 500, {"error": str(exc)}
                except Exception as exc:
                    self._state.record_error(f"{name}: {exc}")
                    logger.exception("%s crashed", name)
                    return 500, {"error": "Internal error"}
        return 404, {"error": "Not found"}

    def _create(self, body, query):
        request = ProvisioningRequest.model_validate(body or {})
        address = self._orc.controller.create(request)
        self._orc.registry.track(request.agent_id, self._orc.controller.host, request.user_id)
        return {"success": True, "containerId": address}

    def _stop(self, body, query, agent_id):
        self._orc.controller.stop(agent_id)
        self._orc.registry.untrack(agent_id)
        return {"success": True}

    def _restart(self, body, query, agent_id):
        running = self._orc.controller.restart(agent_id)
        return {"success": True, "running": running}

    def _delete(self, body, query, agent_id):
        self._orc.controller.delete(agent_id)
        self._orc.registry.untrack(agent_id)
        return {"success": True}

    def _files(self, body, query, agent_id):
        files = body.get("files") if isinstance(body, dict) else None
        if not isinstance(files, list):
            raise ApiError(400, "body must contain a 'files' list")
        self._orc.controller.update_files(agent_id, files)
        return {"success": True}

    def _stats(self, body, query, agent_id):
        stats = self._orc.controller.get_stats(agent_id)
        return {"stats": stats.model_dump() if stats else None}

    def _logs(self, body, query, agent_id):
        try:
            lines = int(query.get("lines", ["50"])[0])
        except ValueError:
            raise ApiError(400, "lines must be an integer")
        return {"logs": self._orc.controller.get_logs(agent_id, lines)}

    def _status(self, body, query):
        snap = self._state.snapshot()
        snap["tracked_agents"] = len(self._orc.registry)
        report = self._orc.monitor.last_report
        snap["last_health_cycle"] = asdict(report) if report else None
        return snap


def make_handler(api: InternalApi, secret: str):
    """Build the request handler class bound to ``api``."""

    class OrchestratorHandler(BaseHTTPRequestHandler):
        """HTTP handler for the internal orchestrator API."""

        def _handle(self, method: str) -> None:
            parsed = urlparse(self.path)
            if method == "GET" and parsed.path == "/health":
                self._json_response(
                    {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}
                )
                return

            token = self.headers.get("x-internal-token", "")
            if not secret or not hmac.compare_digest(token, secret):
                self._json_response({"error": "Forbidden"}, status=403)
                return

            body = None
            try:
                length = int(self.headers.get("Content-Length") or 0)
            except ValueError:
                length = -1
            if length < 0:
                self._json_response({"error": "Invalid Content-Length"}, status=400)
                return
            if length > MAX_BODY_BYTES:
                self._json_response({"error": "Body too large"}, status=413)
                return
            if length:
                try:
                    body = json.loads(self.rfile.read(length))
                except (UnicodeDecodeError, ValueError):
                    self._json_response({"error": "Invalid JSON body"}, status=400)
                    return

            status, payload = api.dispatch(method, parsed.path, parse_qs(parsed.query), body)
            self._json_response(payload, status=status)

        def do_GET(self):
            self._handle("GET")

        def do_POST(self):
            self._handle("POST")

        def do_PUT(self):
            self._handle("PUT")

        def do_DELETE(self):
            self._handle("DELETE")

        def _json_response(self, data: dict, status: int = 200):
            payload = json.dumps(data, default=str).encode()
            self.send_response(status)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(payload)))
            self.end_headers()
            self.wfile.write(payload)

        def log_message(self, format, *args):
            logger.debug("API: %s", format % args)

    return OrchestratorHandler


class DaemonService:
    """The orchestrator process: API server plus health loop.

    Args:
        config: Orchestrator configuration.
        orchestrator: Pre-built components (built from config if omitted).
    """

    def __init__(self, config: OrchestratorConfig, orchestrator: Optional[Orchestrator] = None):
        self.config = config
        self.state = DaemonState()
        self.orchestrator = orchestrator or build_orchestrator(config)
        self._stop_event = threading.Event()
        self._server: Optional[ThreadingHTTPServer] = None
        self._server_thread: Optional[threading.Thread] = None

    @property
    def port(self) -> int:
        """Bound API port (useful when configured as 0)."""
        return self._server.server_address[1] if self._server else self.config.api_port

    def start(self, install_signals: bool = True) -> None:
        """Start the API server and health loop.

        Args:
            install_signals: Register SIGTERM/SIGINT handlers (main thread only).
        """
        self._write_pid()
        if install_signals:
            self._setup_signals()

        if not self.config.internal_secret:
            logger.warning("No internal_secret configured; every API call will be refused")

        self.state.running = True
        self.state.started_at = datetime.now(timezone.utc)

        api = InternalApi(self.orchestrator, self.state)
        self._server = ThreadingHTTPServer(
            (self.config.api_bind, self.config.api_port),
            make_handler(api, self.config.internal_secret),
        )
        self._server_thread = threading.Thread(
            target=self._server.serve_forever, name="daemon-api", daemon=True,
        )
        self._server_thread.start()
        logger.info(
            "Orchestrator API listening on %s:%d (transport=%s host=%s)",
            self.config.api_bind, self.port, self.config.transport, self.config.node_host,
        )

        self.orchestrator.monitor.start()
        logger.info("Daemon started, PID %d", os.getpid())

    def stop(self) -> None:
        """Stop the health loop and the API server."""
        logger.info("Daemon stopping...")
        self._stop_event.set()
        self.state.running = False
        self.orchestrator.monitor.stop()
        if self._server:
            self._server.shutdown()
            self._server.server_close()
        if self._server_thread:
            self._server_thread.join(timeout=5)
        self._remove_pid()
        logger.info("Daemon stopped.")

    def run_forever(self) -> None:
        """Block until a stop signal arrives, then shut down."""
        try:
            while not self._stop_event.is_set():
                self._stop_event.wait(timeout=1)
        except KeyboardInterrupt:
            pass
        finally:
            self.stop()

    def _setup_signals(self) -> None:
        for sig in (signal.SIGTERM, signal.SIGINT):
            signal.signal(sig, self._handle_signal)

    def _handle_signal(self, signum, frame):
        logger.info("Received signal %s, stopping", signal.Signals(signum).name)
        self._stop_event.set()

    def _write_pid(self) -> None:
        pid_path = self.config.home / PID_FILE
        pid_path.parent.mkdir(parents=True, exist_ok=True)
        pid_path.write_text(str(os.getpid()), encoding="utf-8")

    def _remove_pid(self) -> None:
        (self.config.home / PID_FILE).unlink(missing_ok=True)


def setup_logging(config: OrchestratorConfig) -> None:
    """Send logs to ``<home>/logs/orchestrator.log`` at the configured level."""
    config.log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(config.log_file)
    handler.setFormatter(
        logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s")
    )
    root = logging.getLogger()
    root.addHandler(handler)
    root.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))


def read_pid(home: Optional[Path] = None) -> Optional[int]:
    """Read the daemon PID, clearing a stale PID file.

    Returns:
        PID as int, or None if not running.
    """
    home = (home or Path(ORCHESTRATOR_HOME)).expanduser()
    pid_path = home / PID_FILE
    if not pid_path.exists():
        return None
    try:
        pid = int(pid_path.read_text(encoding="utf-8").strip())
        os.kill(pid, 0)
        return pid
    except (ValueError, ProcessLookupError, PermissionError):
        pid_path.unlink(missing_ok=True)
        return None


def is_running(home: Optional[Path] = None) -> bool:
    return read_pid(home) is not None
