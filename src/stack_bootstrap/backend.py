"""
Resource Backend Interface

This module defines the capability set the resource ensurer needs from the
outside world and the local implementation used in production. Every
mutating call returns a BackendResult instead of raising, so callers branch
on a typed outcome rather than inspecting exit codes.

Capabilities:
- path_exists / is_directory: filesystem queries
- create_directory / set_permissions / write_file: filesystem mutations
- volume_exists / create_volume: container runtime named volumes
- network_exists / create_network: container runtime networks
- ping: container runtime reachability

Platform differences (permission APIs on Windows, the Docker client
location) stay inside LocalBackend.
"""

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import docker
from docker.errors import APIError, DockerException, NotFound
from docker.types import IPAMConfig, IPAMPool

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackendResult:
    """Success or failure of a single backend call."""

    ok: bool
    reason: Optional[str] = None

    @classmethod
    def success(cls) -> "BackendResult":
        return cls(ok=True)

    @classmethod
    def failure(cls, reason: str) -> "BackendResult":
        return cls(ok=False, reason=reason)

    def __bool__(self) -> bool:
        return self.ok


class RuntimeUnavailableError(Exception):
    """Raised when the container runtime cannot be reached."""

    pass


class ResourceBackend(ABC):
    """
    Abstract capability set backing the resource ensurer.

    Implementations must not raise for expected failures (permission
    denied, runtime errors); they report them through BackendResult.
    """

    @abstractmethod
    def path_exists(self, path: Path) -> bool:
        pass

    @abstractmethod
    def is_directory(self, path: Path) -> bool:
        pass

    @abstractmethod
    def create_directory(self, path: Path, mode: int) -> BackendResult:
        pass

    @abstractmethod
    def set_permissions(self, path: Path, mode: int) -> BackendResult:
        pass

    @abstractmethod
    def write_file(self, path: Path, content: str, mode: int) -> BackendResult:
        pass

    @abstractmethod
    def volume_exists(self, name: str) -> bool:
        pass

    @abstractmethod
    def create_volume(self, name: str) -> BackendResult:
        pass

    @abstractmethod
    def network_exists(self, name: str) -> bool:
        pass

    @abstractmethod
    def create_network(self, name: str, subnet: Optional[str] = None) -> BackendResult:
        pass

    @abstractmethod
    def ping(self) -> Dict[str, Any]:
        """
        Check container runtime reachability.

        Returns:
            Runtime details such as the server version

        Raises:
            RuntimeUnavailableError: If the runtime does not respond
        """
        pass


class LocalBackend(ResourceBackend):
    """
    Filesystem and Docker Engine backed implementation.

    The Docker client is created lazily so filesystem-only operations work
    on machines without a reachable daemon.
    """

    def __init__(self, docker_client: Optional[docker.DockerClient] = None, base_dir: Optional[Path] = None):
        self._client = docker_client
        self.base_dir = Path(base_dir) if base_dir else Path.cwd()

    def resolve(self, path: Path) -> Path:
        path = Path(path).expanduser()
        if not path.is_absolute():
            path = self.base_dir / path
        return path

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise RuntimeUnavailableError(f"Docker is not running or not accessible: {e}") from e
        return self._client

    # Filesystem

    def path_exists(self, path: Path) -> bool:
        return self.resolve(path).exists()

    def is_directory(self, path: Path) -> bool:
        return self.resolve(path).is_dir()

    def create_directory(self, path: Path, mode: int) -> BackendResult:
        target = self.resolve(path)
        try:
            target.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            return BackendResult.failure(f"Cannot create directory {target}: {e}")
        return self.set_permissions(target, mode)

    def set_permissions(self, path: Path, mode: int) -> BackendResult:
        target = self.resolve(path)
        if os.name == "nt":
            # NTFS ignores POSIX bits beyond read-only; nothing to apply
            return BackendResult.success()
        try:
            os.chmod(target, mode)
        except OSError as e:
            return BackendResult.failure(f"Cannot set permissions {oct(mode)} on {target}: {e}")
        return BackendResult.success()

    def write_file(self, path: Path, content: str, mode: int) -> BackendResult:
        target = self.resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
            # Final mode is in place before any content lands, even when
            # an existing file was looser
            fd = os.open(target, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
            if os.name != "nt":
                try:
                    os.fchmod(fd, mode)
                except OSError:
                    os.close(fd)
                    raise
            with os.fdopen(fd, "w", encoding="utf-8", newline="") as handle:
                handle.write(content)
        except OSError as e:
            return BackendResult.failure(f"Cannot write file {target}: {e}")
        return self.set_permissions(target, mode)

    # Container runtime

    def volume_exists(self, name: str) -> bool:
        try:
            self.client.volumes.get(name)
            return True
        except NotFound:
            return False
        except (DockerException, RuntimeUnavailableError) as e:
            logger.debug(f"Volume lookup failed for {name}: {e}")
            return False

    def create_volume(self, name: str) -> BackendResult:
        try:
            self.client.volumes.create(name=name)
        except (APIError, DockerException, RuntimeUnavailableError) as e:
            return BackendResult.failure(f"Cannot create volume {name}: {e}")
        return BackendResult.success()

    def network_exists(self, name: str) -> bool:
        try:
            self.client.networks.get(name)
            return True
        except NotFound:
            return False
        except (DockerException, RuntimeUnavailableError) as e:
            logger.debug(f"Network lookup failed for {name}: {e}")
            return False

    def create_network(self, name: str, subnet: Optional[str] = None) -> BackendResult:
        ipam = None
        if subnet:
            ipam = IPAMConfig(pool_configs=[IPAMPool(subnet=subnet)])
        try:
            self.client.networks.create(name, driver="bridge", ipam=ipam)
        except (APIError, DockerException, RuntimeUnavailableError) as e:
            return BackendResult.failure(f"Cannot create network {name}: {e}")
        return BackendResult.success()

    def ping(self) -> Dict[str, Any]:
        try:
            self.client.ping()
            version = self.client.version()
        except DockerException as e:
            raise RuntimeUnavailableError(f"Docker is not running or not accessible: {e}") from e
        return {
            "server_version": version.get("Version", "unknown"),
            "api_version": version.get("ApiVersion", "unknown"),
            "os": version.get("Os", "unknown"),
        }
