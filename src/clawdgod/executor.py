"""
Host command execution: run shell commands and write files on the agent host.

Two interchangeable backends:

- ``LocalExecutor`` runs commands through ``sh -c`` on this machine, for
  deployments where the orchestrator shares the host with its agents.
- ``SSHExecutor`` opens a key-authenticated paramiko connection per call
  and uses SFTP for file writes.

A nonzero exit code is a successful execution of a failing command and is
returned as a ``CommandResult``. Only failing to reach or authenticate to the
host raises ``HostConnectionError``.

Usage:
    from clawdgod.executor import build_executor
    executor = build_executor(config)
    result = executor.execute("systemctl is-active clawdgod-a1")
    executor.write_file("/root/.openclaw-agent-a1/.env", "KEY=value")
"""

from __future__ import annotations

import logging
import posixpath
import shlex
import socket
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import paramiko

from .config import OrchestratorConfig

logger = logging.getLogger(__name__)


class ExecutorError(Exception):
    """A host operation could not be carried out."""


class HostConnectionError(ExecutorError):
    """The host could not be reached or refused our credentials."""


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one shell command.

    Attributes:
        stdout: Trimmed standard output.
        stderr: Trimmed standard error.
        exit_code: Process exit status.
    """

    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class HostExecutor:
    """Interface shared by all executor backends.

    Attributes:
        host: Externally reachable address of the host, used to build the
            agent's public address.
    """

    host: str = "127.0.0.1"

    def execute(self, command: str) -> CommandResult:
        """Run a shell command on the host.

        Args:
            command: Shell command line.

        Returns:
            CommandResult, whatever the exit code.

        Raises:
            HostConnectionError: If the host is unreachable.
        """
        raise NotImplementedError

    def write_file(self, path: str, content: str) -> None:
        """Write a UTF-8 text file, creating parent directories.

        Args:
            path: Absolute path on the host.
            content: File content.

        Raises:
            HostConnectionError: If the host is unreachable.
            ExecutorError: If the write itself fails.
        """
        raise NotImplementedError


class LocalExecutor(HostExecutor):
    """Run commands on the machine the orchestrator lives on.

    Args:
        host: Public address of this machine.
        timeout: Seconds before a command is abandoned.
    """

    def __init__(self, host: str = "127.0.0.1", timeout: float = 60.0) -> None:
        self.host = host
        self._timeout = timeout

    def execute(self, command: str) -> CommandResult:
        logger.debug("local exec: %s", command)
        try:
            proc = subprocess.run(
                ["sh", "-c", command],
                capture_output=True,
                text=True,
                timeout=self._timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise ExecutorError(f"Command timed out after {self._timeout}s: {command}") from exc
        return CommandResult(
            stdout=(proc.stdout or "").strip(),
            stderr=(proc.stderr or "").strip(),
            exit_code=proc.returncode,
        )

    def write_file(self, path: str, content: str) -> None:
        target = Path(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        except OSError as exc:
            raise ExecutorError(f"Failed to write {path}: {exc}") from exc


class SSHExecutor(HostExecutor):
    """Run commands on a remote host over SSH.

    A fresh connection is opened and closed for every call; nothing is
    held between calls.

    Args:
        host: Hostname or IP of the agent host.
        username: SSH login.
        key_filename: Path to the private key.
        port: SSH port.
        timeout: Connect and command timeout in seconds.
    """

    def __init__(
        self,
        host: str,
        username: str = "root",
        key_filename: Optional[str] = None,
        port: int = 22,
        timeout: float = 60.0,
    ) -> None:
        self.host = host
        self._username = username
        self._key_filename = str(Path(key_filename).expanduser()) if key_filename else None
        self._port = port
        self._timeout = timeout

    def _connect(self) -> paramiko.SSHClient:
        """Open an authenticated SSH connection.

        Raises:
            HostConnectionError: On DNS, network, or authentication failure.
        """
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                self.host,
                port=self._port,
                username=self._username,
                key_filename=self._key_filename,
                timeout=self._timeout,
                allow_agent=self._key_filename is None,
                look_for_keys=self._key_filename is None,
            )
        except paramiko.AuthenticationException as exc:
            client.close()
            raise HostConnectionError(
                f"SSH authentication failed for {self._username}@{self.host}: {exc}"
            ) from exc
        except (paramiko.SSHException, socket.error) as exc:
            client.close()
            raise HostConnectionError(f"Cannot reach {self.host}:{self._port}: {exc}") from exc
        return client

    def execute(self, command: str) -> CommandResult:
        logger.debug("ssh exec on %s: %s", self.host, command)
        client = self._connect()
        try:
            _, stdout, stderr = client.exec_command(command, timeout=self._timeout)
            out = stdout.read().decode("utf-8", errors="replace")
            err = stderr.read().decode("utf-8", errors="replace")
            exit_code = stdout.channel.recv_exit_status()
        except socket.timeout as exc:
            raise ExecutorError(f"Command timed out on {self.host}: {command}") from exc
        except paramiko.SSHException as exc:
            raise HostConnectionError(f"SSH session to {self.host} failed: {exc}") from exc
        finally:
            client.close()
        return CommandResult(stdout=out.strip(), stderr=err.strip(), exit_code=exit_code)

    def write_file(self, path: str, content: str) -> None:
        parent = posixpath.dirname(path)
        if parent:
            result = self.execute(f"mkdir -p {shlex.quote(parent)}")
            if not result.ok:
                raise ExecutorError(f"Failed to create {parent}: {result.stderr}")

        client = self._connect()
        try:
            sftp = client.open_sftp()
            try:
                with sftp.open(path, "w") as fh:
                    fh.write(content.encode("utf-8"))
            finally:
                sftp.close()
        except IOError as exc:
            raise ExecutorError(f"Failed to write {path} on {self.host}: {exc}") from exc
        except paramiko.SSHException as exc:
            raise HostConnectionError(f"SFTP to {self.host} failed: {exc}") from exc
        finally:
            client.close()


def build_executor(config: OrchestratorConfig) -> HostExecutor:
    """Create the executor backend selected by the configuration.

    Args:
        config: Orchestrator configuration.

    Returns:
        A LocalExecutor or SSHExecutor.
    """
    if config.transport == "ssh":
        return SSHExecutor(
            host=config.node_host,
            username=config.ssh_user,
            key_filename=config.ssh_key,
            port=config.ssh_port,
            timeout=config.command_timeout,
        )
    return LocalExecutor(host=config.node_host, timeout=config.command_timeout)
