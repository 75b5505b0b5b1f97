"""
Stack Bootstrapper - bring up a local MCP container stack

This package loads a stack's .env file, idempotently ensures the
directories, volumes, network and secret files it needs, starts it through
Docker Compose and waits for its health endpoint.
"""

__version__ = "1.0.0"
__description__ = "Bootstrap, health-check and tear down a local MCP container stack"

from .env_loader import EnvironmentMap, EnvLoadResult, load_env_file
from .health import HealthCheckConfig, HealthCheckResult, HealthPoller, HealthStatus
from .resources import (
    DirectorySpec,
    NetworkSpec,
    ResourceEnsurer,
    ResourceState,
    SecretFileSpec,
    VolumeSpec,
)

__all__ = [
    "EnvironmentMap",
    "EnvLoadResult",
    "load_env_file",
    "HealthCheckConfig",
    "HealthCheckResult",
    "HealthPoller",
    "HealthStatus",
    "DirectorySpec",
    "NetworkSpec",
    "ResourceEnsurer",
    "ResourceState",
    "SecretFileSpec",
    "VolumeSpec",
    "__version__",
    "__description__",
]
