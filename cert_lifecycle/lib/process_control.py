"""Process lifecycle control for the reverse proxy and ACME agent containers.

Drives ``docker compose`` through ``subprocess``: start, health-check, exec,
one-off run, and stop of compose services.
"""

import shutil
import socket
import subprocess
import time
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from .config import LifecycleConfig
from .errors import AgentUnavailable
from .logging_config import LOGGER


@dataclass
class ProcessResult:
    """Captured outcome of one external command."""

    argv: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return f"{self.stdout}\n{self.stderr}"

    def tail(self, lines: int = 15) -> str:
        """Last non-blank output lines, for diagnostics."""
        text = [line for line in self.output.splitlines() if line.strip()]
        return "\n".join(text[-lines:])


class ComposeRunner:
    """Runs compose commands for one project directory and profile."""

    def __init__(self, config: LifecycleConfig) -> None:
        self.config = config
        self.project_dir: Path = config.project_dir
        self.base = [*config.compose_command, "--profile", config.compose_profile]

    def _execute(self, argv: Sequence[str]) -> ProcessResult:
        argv = list(argv)
        LOGGER.debug("Running: %s", " ".join(argv))
        try:
            completed = subprocess.run(
                argv,
                cwd=self.project_dir,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as e:
            raise AgentUnavailable(f"command not found: {argv[0]}") from e
        except PermissionError as e:
            raise AgentUnavailable(f"command not executable: {argv[0]}") from e
        result = ProcessResult(argv, completed.returncode, completed.stdout, completed.stderr)
        if not result.ok:
            LOGGER.debug("Exit code %d from %s", result.returncode, argv[0])
        return result

    def compose(self, *args: str) -> ProcessResult:
        return self._execute([*self.base, *args])

    def check_available(self) -> None:
        """Fail fast when the container runtime is missing or its daemon is down.

        Raises:
            AgentUnavailable: If the CLI is not on PATH or ``docker info`` fails
        """
        executable = self.config.compose_command[0]
        if shutil.which(executable) is None:
            raise AgentUnavailable(f"command not found: {executable}")
        result = self._execute([executable, "info"])
        if not result.ok:
            raise AgentUnavailable(
                f"{executable} is not running or not reachable", action="start the Docker daemon"
            )

    def start(self, service: str) -> ProcessResult:
        """Start ``service`` detached without its dependencies.

        Older compose releases reject ``--no-deps`` on ``up``; those get a
        plain ``up -d`` instead.

        Raises:
            AgentUnavailable: If the service cannot be started
        """
        result = self.compose("up", "-d", "--no-deps", service)
        if not result.ok:
            LOGGER.warning("Starting %s with --no-deps failed, retrying without it", service)
            result = self.compose("up", "-d", service)
        if not result.ok:
            raise AgentUnavailable(f"cannot start service {service}:\n{result.tail()}")
        return result

    def is_running(self, service: str) -> bool:
        result = self.compose("ps", "--status", "running", "--services")
        if not result.ok:
            return False
        return service in result.stdout.split()

    def wait_until_ready(
        self,
        service: str,
        timeout: float,
        tcp_check: tuple[str, int] | None = None,
        interval: float = 1.0,
    ) -> None:
        """Block until ``service`` is running and, if given, ``tcp_check`` accepts TCP.

        Raises:
            AgentUnavailable: If the service is not ready within ``timeout`` seconds
        """
        deadline = time.monotonic() + timeout
        while True:
            if self.is_running(service) and (tcp_check is None or _port_open(*tcp_check)):
                LOGGER.debug("Service %s is ready", service)
                return
            if time.monotonic() >= deadline:
                target = f"{service} ({tcp_check[0]}:{tcp_check[1]})" if tcp_check else service
                raise AgentUnavailable(f"service {target} not ready after {timeout:.0f}s")
            time.sleep(interval)

    def exec(self, service: str, argv: Sequence[str]) -> ProcessResult:
        return self.compose("exec", "-T", service, *argv)

    def run(self, service: str, argv: Sequence[str]) -> ProcessResult:
        """Run a one-off container of ``service`` and remove it afterwards."""
        return self.compose("run", "--rm", service, *argv)

    def stop(self, service: str) -> ProcessResult:
        return self.compose("stop", service)


def _port_open(host: str, port: int, timeout: float = 1.0) -> bool:
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False
