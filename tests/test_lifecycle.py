"""Tests for the lifecycle controller against a simulated host."""

from __future__ import annotations

import json
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from clawdgod.config import OrchestratorConfig
from clawdgod.executor import ExecutorError, HostConnectionError
from clawdgod.lifecycle import (
    AgentLocks,
    AgentStartError,
    LifecycleController,
    ProvisioningDenied,
)
from clawdgod.materializer import ConfigValidationError
from clawdgod.models import AgentState
from clawdgod.placement import PortExhaustedError, PortReservations

from conftest import make_request

STATE_DIR = "/root/.openclaw-agent-a1"
UNIT_PATH = "/etc/systemd/system/clawdgod-a1.service"


class TestCreate:
    """Tests for LifecycleController.create()."""

    def test_happy_path_returns_address(self, controller, fake_host, reporter):
        """A clean create returns host:port and reports active."""
        address = controller.create(make_request())

        assert address == "203.0.113.7:18856"
        assert reporter.states("a1") == [AgentState.ACTIVE]
        _, _, extra = reporter.events[-1]
        assert extra == {
            "containerId": "203.0.113.7:18856",
            "gatewayPort": 18856,
            "gatewayUrl": "http://203.0.113.7:18856",
        }

    def test_writes_config_workspace_env_and_unit(self, controller, fake_host):
        controller.create(make_request(
            config={"meta": {"x": 1}, "gateway": {"token": "old"}},
            extra_files=[{"path": "SOUL.md", "content": "be kind"}],
            env={"ANTHROPIC_API_KEY": "sk-1"},
        ))

        runtime_config = json.loads(fake_host.files[f"{STATE_DIR}/openclaw.json"])
        assert "meta" not in runtime_config
        assert runtime_config["gateway"]["port"] == 18856
        assert runtime_config["gateway"]["auth"] == {"mode": "token", "token": "a1"}
        assert "token" not in runtime_config["gateway"]
        assert fake_host.files[f"{STATE_DIR}/workspace/SOUL.md"] == "be kind"
        assert fake_host.files[f"{STATE_DIR}/.env"] == "ANTHROPIC_API_KEY=sk-1"
        assert "ExecStart=/usr/bin/openclaw gateway" in fake_host.files[UNIT_PATH]

    def test_command_order(self, controller, fake_host):
        """Files and unit are written before reload, enable, and start."""
        controller.create(make_request())

        cmds = fake_host.commands
        unit_write = cmds.index(f"<write {UNIT_PATH}>")
        reload_idx = cmds.index("systemctl daemon-reload")
        enable_idx = cmds.index("systemctl enable clawdgod-a1")
        start_idx = cmds.index("systemctl start clawdgod-a1")
        assert cmds[0].startswith("mkdir -p")
        assert unit_write < reload_idx < enable_idx < start_idx
        assert "clawdgod-a1" in fake_host.enabled

    def test_invalid_config_touches_nothing(self, controller, fake_host, reporter):
        with pytest.raises(ConfigValidationError):
            controller.create(make_request(raw_config="{not json"))

        assert fake_host.commands == []
        assert fake_host.files == {}
        assert reporter.events == []

    def test_invalid_config_releases_new_reservation(self, fake_host, reporter, config):
        reservations = PortReservations()
        ctl = LifecycleController(fake_host, reporter, config, reservations=reservations)

        with pytest.raises(ConfigValidationError):
            ctl.create(make_request(raw_config="[]"))

        assert reservations.snapshot() == {}

    def test_unit_never_active_raises_with_logs(self, controller, fake_host, reporter):
        """An agent that fails readiness is reported offline, with its journal."""
        fake_host.start_state = "failed"

        with pytest.raises(AgentStartError) as exc_info:
            controller.create(make_request())

        assert "fatal: invalid config" in exc_info.value.logs
        assert "fatal: invalid config" in str(exc_info.value)
        assert reporter.states("a1") == [AgentState.OFFLINE]
        assert any(c.startswith("journalctl -u clawdgod-a1") for c in fake_host.commands)

    def test_start_command_fails(self, controller, fake_host, reporter):
        fake_host.start_fails = True

        with pytest.raises(AgentStartError) as exc_info:
            controller.create(make_request())

        assert "Job for clawdgod-a1.service failed" in exc_info.value.logs
        assert reporter.states("a1") == [AgentState.OFFLINE]
        assert AgentState.ACTIVE not in reporter.states()

    def test_unreachable_host_reports_offline(self, controller, fake_host, reporter):
        fake_host.unreachable = True

        with pytest.raises(HostConnectionError):
            controller.create(make_request())

        assert reporter.states("a1") == [AgentState.OFFLINE]

    def test_write_failure_reports_offline(self, controller, fake_host, reporter):
        fake_host.raise_on["<write>"] = ExecutorError("No space left on device")

        with pytest.raises(ExecutorError, match="No space left"):
            controller.create(make_request())

        assert reporter.states("a1") == [AgentState.OFFLINE]

    def test_start_timeout_reports_offline(self, controller, fake_host, reporter):
        fake_host.raise_on["systemctl start"] = ExecutorError("Command timed out after 60.0s")

        with pytest.raises(ExecutorError):
            controller.create(make_request())

        assert reporter.states("a1") == [AgentState.OFFLINE]

    def test_port_range_exhausted_reports_offline(self, fake_host, reporter, config):
        reservations = PortReservations(port_range=1)
        reservations.reserve("other")
        ctl = LifecycleController(fake_host, reporter, config, reservations=reservations)

        with pytest.raises(PortExhaustedError):
            ctl.create(make_request())

        assert reporter.states("a1") == [AgentState.OFFLINE]
        assert fake_host.commands == []

    def test_create_is_retriable(self, controller, fake_host, reporter):
        """A second create after a failure converges without cleanup."""
        fake_host.start_state = "failed"
        with pytest.raises(AgentStartError):
            controller.create(make_request(extra_files=[{"path": "SOUL.md", "content": "v1"}]))

        fake_host.start_state = "active"
        address = controller.create(make_request(extra_files=[{"path": "SOUL.md", "content": "v2"}]))

        assert address == "203.0.113.7:18856"
        assert fake_host.files[f"{STATE_DIR}/workspace/SOUL.md"] == "v2"
        assert reporter.states("a1")[-1] == AgentState.ACTIVE

    def test_admission_gate_denies(self, fake_host, reporter, config):
        ctl = LifecycleController(fake_host, reporter, config, admission=lambda req: False)

        with pytest.raises(ProvisioningDenied):
            ctl.create(make_request())

        assert fake_host.commands == []

    def test_colliding_ids_get_distinct_ports(self, fake_host, reporter, config):
        """'Aa' and 'BB' hash identically; reservations keep them apart."""
        ctl = LifecycleController(fake_host, reporter, config, reservations=PortReservations())

        first = ctl.create(make_request("Aa"))
        second = ctl.create(make_request("BB"))

        assert first != second
        assert ctl.identity("Aa").port != ctl.identity("BB").port


class TestReadiness:
    """Tests for the readiness backoff."""

    def test_backoff_schedule(self, fake_host, reporter, tmp_path):
        config = OrchestratorConfig(home=tmp_path)
        ctl = LifecycleController(fake_host, reporter, config)
        fake_host.start_state = "activating"

        with patch("clawdgod.lifecycle.time.sleep") as mock_sleep:
            with pytest.raises(AgentStartError):
                ctl.create(make_request())

        delays = [c.args[0] for c in mock_sleep.call_args_list]
        assert delays == [1.0, 2.0, 4.0, 4.0, 4.0]
        assert sum(delays) == pytest.approx(15.0)

    def test_stops_polling_once_active(self, fake_host, reporter, tmp_path):
        config = OrchestratorConfig(home=tmp_path)
        ctl = LifecycleController(fake_host, reporter, config)

        with patch("clawdgod.lifecycle.time.sleep") as mock_sleep:
            ctl.create(make_request())

        mock_sleep.assert_called_once_with(1.0)


class TestStopRestartDelete:
    """Tests for stop, restart, and delete."""

    def test_stop_reports_stopped(self, controller, fake_host, reporter):
        controller.create(make_request())
        controller.stop("a1", "user-1")

        assert fake_host.units["clawdgod-a1"] == "inactive"
        assert reporter.states("a1")[-1] == AgentState.STOPPED
        assert f"{STATE_DIR}/openclaw.json" in fake_host.files

    def test_stop_never_created_is_fine(self, controller, reporter):
        controller.stop("ghost")
        assert reporter.states("ghost") == [AgentState.STOPPED]

    def test_stop_rejects_bad_id(self, controller, fake_host):
        with pytest.raises(ValueError):
            controller.stop("a1; rm -rf /")
        assert fake_host.commands == []

    def test_restart_success(self, controller, reporter):
        controller.create(make_request())
        assert controller.restart("a1") is True
        assert reporter.states("a1")[-2:] == [AgentState.RESTARTING, AgentState.ACTIVE]

    def test_restart_unit_stays_down(self, controller, fake_host, reporter):
        controller.create(make_request())
        fake_host.start_state = "failed"

        assert controller.restart("a1") is False
        assert reporter.states("a1")[-2:] == [AgentState.RESTARTING, AgentState.OFFLINE]

    def test_restart_during_outage(self, controller, fake_host, reporter):
        """Unreachable host: restarting, then offline, never active."""
        fake_host.unreachable = True

        with pytest.raises(HostConnectionError):
            controller.restart("a1")

        assert reporter.states("a1") == [AgentState.RESTARTING, AgentState.OFFLINE]

    def test_restart_command_timeout(self, controller, fake_host, reporter):
        """A timed-out restart leaves the agent offline, not restarting."""
        controller.create(make_request())
        fake_host.raise_on["systemctl restart"] = ExecutorError("Command timed out after 60.0s")

        with pytest.raises(ExecutorError, match="timed out"):
            controller.restart("a1")

        assert reporter.states("a1")[-2:] == [AgentState.RESTARTING, AgentState.OFFLINE]

    def test_restart_nonzero_exit_skips_polling(self, fake_host, reporter, tmp_path):
        ctl = LifecycleController(fake_host, reporter, OrchestratorConfig(home=tmp_path))

        with patch("clawdgod.lifecycle.time.sleep") as mock_sleep:
            assert ctl.restart("ghost") is False

        mock_sleep.assert_not_called()
        assert not any("is-active" in c for c in fake_host.commands)
        assert reporter.states("ghost") == [AgentState.RESTARTING, AgentState.OFFLINE]

    def test_stop_timeout_reports_offline(self, controller, fake_host, reporter):
        fake_host.raise_on["systemctl stop"] = ExecutorError("Command timed out after 60.0s")

        with pytest.raises(ExecutorError):
            controller.stop("a1")

        assert reporter.states("a1") == [AgentState.OFFLINE]

    def test_delete_removes_everything(self, controller, fake_host, reporter):
        controller.create(make_request(extra_files=[{"path": "USER.md", "content": "u"}]))
        controller.delete("a1")

        assert fake_host.paths_under(STATE_DIR) == []
        assert UNIT_PATH not in fake_host.files
        assert "clawdgod-a1" not in fake_host.enabled
        assert reporter.states("a1")[-1] == AgentState.DELETED
        assert controller.get_stats("a1") is None

    def test_delete_is_idempotent(self, controller, fake_host, reporter):
        controller.delete("never-existed")
        controller.delete("never-existed")

        assert fake_host.files == {}
        assert reporter.states("never-existed") == [AgentState.DELETED, AgentState.DELETED]

    def test_delete_releases_port(self, fake_host, reporter, config):
        reservations = PortReservations()
        ctl = LifecycleController(fake_host, reporter, config, reservations=reservations)
        ctl.create(make_request())
        assert "a1" in reservations.snapshot()

        ctl.delete("a1")
        assert "a1" not in reservations.snapshot()


class TestInspect:
    """Tests for stats, logs, and file updates."""

    def test_stats_after_create(self, controller, fake_host):
        address = controller.create(make_request())
        stats = controller.get_stats("a1")

        assert stats.status == "active"
        assert stats.address == address
        assert stats.gateway_url == "http://203.0.113.7:18856"
        assert stats.pid == 4242
        assert stats.memory == "50MB"
        assert stats.uptime.startswith("Sat 2026-10-17")

    def test_stats_unknown_agent(self, controller):
        assert controller.get_stats("nobody") is None

    def test_stats_stopped_agent(self, controller):
        controller.create(make_request())
        controller.stop("a1")

        stats = controller.get_stats("a1")
        assert stats.status == "inactive"
        assert stats.memory == "0MB"
        assert stats.pid == 0

    def test_is_running(self, controller):
        assert controller.is_running("a1") is False
        controller.create(make_request())
        assert controller.is_running("a1") is True

    def test_get_logs(self, controller, fake_host):
        fake_host.journal = "line one\nline two"
        assert controller.get_logs("a1", 2) == "line one\nline two"
        assert "journalctl -u clawdgod-a1 --no-pager -n 2 2>&1" in fake_host.commands

    def test_update_files_writes_workspace_only(self, controller, fake_host):
        controller.update_files("a1", [
            {"path": "SOUL.md", "content": "new soul"},
            {"path": "notes/today.md", "content": "todo"},
        ])

        assert fake_host.files[f"{STATE_DIR}/workspace/SOUL.md"] == "new soul"
        assert fake_host.files[f"{STATE_DIR}/workspace/notes/today.md"] == "todo"
        assert fake_host.systemctl_calls() == []

    def test_update_files_rejects_traversal(self, controller, fake_host):
        with pytest.raises(ValidationError):
            controller.update_files("a1", [{"path": "../../etc/passwd", "content": "x"}])
        assert fake_host.files == {}


class TestAgentLocks:
    """Tests for per-agent locks."""

    def test_same_agent_same_lock(self):
        locks = AgentLocks()
        assert locks.for_agent("a1") is locks.for_agent("a1")

    def test_different_agents_different_locks(self):
        locks = AgentLocks()
        assert locks.for_agent("a1") is not locks.for_agent("a2")
