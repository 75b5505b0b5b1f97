"""
Docker Compose Integration

Starts and stops the stack through the Compose CLI and reports container
status through the Docker SDK. Compose receives the loaded environment map
as its subprocess environment; nothing is exported into this process.
"""

import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

import docker
from docker.errors import DockerException

from .cancellation import CancellationToken
from .process import ExecutionResult, execute_with_timeout

logger = logging.getLogger(__name__)

PROJECT_LABEL = "com.docker.compose.project"
SERVICE_LABEL = "com.docker.compose.service"


class ComposeError(Exception):
    """Raised when a Compose command fails."""

    def __init__(self, message: str, result: Optional[ExecutionResult] = None):
        super().__init__(message)
        self.result = result


@dataclass
class ContainerStatus:
    """Runtime status of one stack container."""

    name: str
    service: Optional[str]
    state: str
    health: Optional[str] = None
    ports: Dict[str, List[str]] = field(default_factory=dict)

    @property
    def running(self) -> bool:
        return self.state == "running"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "service": self.service,
            "state": self.state,
            "health": self.health,
            "ports": self.ports,
        }


def resolve_compose_command() -> List[str]:
    """Prefer the ``docker compose`` plugin, fall back to ``docker-compose``."""
    if shutil.which("docker"):
        return ["docker", "compose"]
    if shutil.which("docker-compose"):
        return ["docker-compose"]
    return ["docker", "compose"]


def _published_ports(raw_ports: Optional[Mapping[str, Any]]) -> Dict[str, List[str]]:
    ports: Dict[str, List[str]] = {}
    for container_port, bindings in (raw_ports or {}).items():
        if not bindings:
            continue
        ports[container_port] = [b.get("HostPort", "") for b in bindings if b.get("HostPort")]
    return ports


class ComposeRunner:
    """
    Thin wrapper around ``docker compose`` for one project.

    Args:
        compose_file: Path to the compose definition
        project_name: Compose project name, also used to find containers
        timeout_seconds: Upper bound for a single compose command
        runner: Command executor, replaceable in tests
        docker_client: Docker SDK client for status queries
    """

    def __init__(
        self,
        compose_file: Path,
        project_name: str,
        timeout_seconds: int = 300,
        runner: Callable[..., ExecutionResult] = execute_with_timeout,
        docker_client: Optional[docker.DockerClient] = None,
        compose_command: Optional[List[str]] = None,
    ):
        self.compose_file = Path(compose_file)
        self.project_name = project_name
        self.timeout_seconds = timeout_seconds
        self._runner = runner
        self._client = docker_client
        self.compose_command = compose_command or resolve_compose_command()

    def _command(self, *args: str) -> List[str]:
        return [
            *self.compose_command,
            "-f",
            str(self.compose_file),
            "-p",
            self.project_name,
            *args,
        ]

    def _run(
        self,
        args: List[str],
        environment: Mapping[str, str],
        cancel: Optional[CancellationToken] = None,
    ) -> ExecutionResult:
        env = {**os.environ, **environment}
        result = self._runner(
            self._command(*args),
            timeout_seconds=self.timeout_seconds,
            cwd=str(self.compose_file.parent),
            env=env,
            cancel=cancel,
        )
        if not result.success:
            detail = result.stderr.strip().splitlines()[-1:] or ["no output"]
            reason = "timed out" if result.timed_out else f"exit code {result.exit_code}"
            raise ComposeError(
                f"'{' '.join(self.compose_command)} {args[0]}' failed ({reason}): {detail[0]}",
                result=result,
            )
        return result

    def up(
        self, environment: Mapping[str, str], cancel: Optional[CancellationToken] = None
    ) -> ExecutionResult:
        """
        Start the stack detached.

        Raises:
            ComposeError: If the compose file is missing or the command fails
            OperationCancelled: If ``cancel`` fires while compose is running
        """
        if not self.compose_file.exists():
            raise ComposeError(f"Compose file not found: {self.compose_file}")
        logger.info(f"Starting stack '{self.project_name}' from {self.compose_file}")
        return self._run(["up", "-d"], environment, cancel)

    def down(
        self,
        environment: Mapping[str, str],
        remove_volumes: bool = False,
        cancel: Optional[CancellationToken] = None,
    ) -> ExecutionResult:
        """Stop and remove the stack containers."""
        args = ["down"]
        if remove_volumes:
            args.append("--volumes")
        logger.info(f"Stopping stack '{self.project_name}'")
        return self._run(args, environment, cancel)

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def container_status(self) -> List[ContainerStatus]:
        """
        List the project's containers with state, health and published ports.

        Raises:
            ComposeError: If the Docker daemon cannot be queried
        """
        try:
            containers = self.client.containers.list(
                all=True, filters={"label": f"{PROJECT_LABEL}={self.project_name}"}
            )
        except DockerException as e:
            raise ComposeError(f"Cannot query container status: {e}") from e

        statuses = []
        for container in containers:
            attrs = container.attrs or {}
            health = (attrs.get("State") or {}).get("Health") or {}
            statuses.append(
                ContainerStatus(
                    name=container.name,
                    service=(container.labels or {}).get(SERVICE_LABEL),
                    state=container.status,
                    health=health.get("Status"),
                    ports=_published_ports(container.ports),
                )
            )
        return sorted(statuses, key=lambda s: s.name)
