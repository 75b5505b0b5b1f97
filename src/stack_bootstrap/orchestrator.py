"""
Bootstrap Orchestrator

Sequences the bootstrap stages and records what happened in a
BootstrapReport:

1. load the environment file over the built-in defaults
2. resolve resource specs (manifest or built-in set)
3. preflight: the container runtime must answer when volumes, networks or
   compose are involved
4. ensure resources; any failed required resource aborts before compose
5. start the stack through Docker Compose
6. poll the health endpoint
7. report container status (best effort)

Health timeouts are reported as warnings with their own exit code; the
orchestrator takes no corrective action.
"""

import logging
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Callable, Dict, List, Optional

import requests

from .backend import ResourceBackend
from .cancellation import CancellationToken, OperationCancelled
from .compose import ComposeError, ComposeRunner, ContainerStatus
from .config import DEFAULT_ENVIRONMENT, Config
from .diagnostics import check_container_runtime
from .env_loader import EnvFileError, EnvLoadResult, EnvironmentMap, load_env_file
from .health import HealthCheckConfig, HealthCheckResult, HealthPoller
from .manifest import ManifestError, default_resources, load_manifest
from .resources import (
    EnsureReport,
    NetworkSpec,
    ResourceEnsurer,
    ResourceOutcome,
    ResourceSpec,
    ResourceState,
    VolumeSpec,
)

logger = logging.getLogger(__name__)


class ExitCode(IntEnum):
    OK = 0
    CONFIG_ERROR = 2
    RESOURCE_FAILED = 3
    HEALTH_TIMED_OUT = 4
    RUNTIME_UNAVAILABLE = 5
    COMPOSE_FAILED = 6
    CANCELLED = 130


@dataclass
class BootstrapReport:
    """Record of one bootstrap run."""

    exit_code: ExitCode = ExitCode.OK
    stage: str = "init"
    error: Optional[str] = None
    env: Optional[EnvLoadResult] = None
    resources: EnsureReport = field(default_factory=EnsureReport)
    stack_started: bool = False
    health: Optional[HealthCheckResult] = None
    containers: List[ContainerStatus] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.exit_code is ExitCode.OK

    def fail(self, exit_code: ExitCode, message: str) -> "BootstrapReport":
        self.exit_code = exit_code
        self.error = message
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "exit_code": int(self.exit_code),
            "stage": self.stage,
            "error": self.error,
            "env_file": str(self.env.source_path) if self.env and self.env.source_path else None,
            "env_file_found": bool(self.env and self.env.file_found),
            "env_parsed_lines": self.env.parsed_lines if self.env else 0,
            "resources": [o.to_dict() for o in self.resources.outcomes],
            "stack_started": self.stack_started,
            "health": self.health.to_dict() if self.health else None,
            "containers": [c.to_dict() for c in self.containers],
        }


class StackBootstrapper:
    """
    Runs the bootstrap sequence.

    Args:
        config: Resolved configuration
        backend: Resource backend (filesystem + container runtime)
        compose: Compose runner; None when the stack is started elsewhere
        session_factory: Builds the HTTP session for health polling
        cancel: Shared cancellation token
    """

    def __init__(
        self,
        config: Config,
        backend: ResourceBackend,
        compose: Optional[ComposeRunner] = None,
        session_factory: Callable[[], requests.Session] = requests.Session,
        cancel: Optional[CancellationToken] = None,
        defaults: Optional[Dict[str, str]] = None,
    ):
        self.config = config
        self.backend = backend
        self.compose = compose
        self.session_factory = session_factory
        self.cancel = cancel or CancellationToken()
        self.defaults = DEFAULT_ENVIRONMENT if defaults is None else defaults

    def run(self) -> BootstrapReport:
        report = BootstrapReport()
        try:
            return self._run(report)
        except OperationCancelled as e:
            if e.partial:
                report.resources.outcomes = list(e.partial)
            logger.warning(f"Bootstrap cancelled during {report.stage}: {e}")
            return report.fail(ExitCode.CANCELLED, str(e))

    def _run(self, report: BootstrapReport) -> BootstrapReport:
        report.stage = "environment"
        try:
            report.env = load_env_file(self.config.env_path, self.defaults)
        except EnvFileError as e:
            logger.error(str(e))
            return report.fail(ExitCode.CONFIG_ERROR, str(e))

        if not report.env.file_found:
            message = f"Environment file not found: {report.env.source_path}"
            if self.config.require_env_file:
                logger.error(message)
                return report.fail(ExitCode.CONFIG_ERROR, message)
            logger.warning(f"{message}; continuing with built-in defaults")
        else:
            logger.info(f"Loaded {report.env.parsed_lines} variables from {report.env.source_path}")
        environment = report.env.environment

        report.stage = "manifest"
        try:
            specs = self._resource_specs(environment)
        except ManifestError as e:
            logger.error(str(e))
            return report.fail(ExitCode.CONFIG_ERROR, str(e))

        report.stage = "preflight"
        if self._needs_runtime(specs):
            status = check_container_runtime(self.backend)
            if not status.available:
                logger.error(f"Container runtime unavailable: {status.error}")
                return report.fail(ExitCode.RUNTIME_UNAVAILABLE, status.error or "runtime unavailable")
            logger.info(f"Docker is available (v{status.details.get('server_version', 'unknown')})")

        report.stage = "resources"
        self.cancel.raise_if_cancelled()
        report.resources = ResourceEnsurer(self.backend).ensure_all(specs, environment, self.cancel)
        if not report.resources.ok:
            failed = ", ".join(
                f"{o.spec.kind} {o.spec.label}" for o in report.resources.required_failures
            )
            logger.error(f"Required resources could not be ensured: {failed}")
            logger.error("Not starting the stack")
            return report.fail(ExitCode.RESOURCE_FAILED, f"Required resources failed: {failed}")

        report.stage = "compose"
        if self.compose is not None:
            self.cancel.raise_if_cancelled()
            try:
                self.compose.up(environment, cancel=self.cancel)
            except ComposeError as e:
                logger.error(str(e))
                return report.fail(ExitCode.COMPOSE_FAILED, str(e))
            report.stack_started = True

        report.stage = "health"
        report.health = self.wait_healthy(environment)
        if not report.health.healthy:
            report.fail(
                ExitCode.HEALTH_TIMED_OUT,
                f"Health check timed out after {report.health.elapsed_seconds:.1f}s",
            )
            logger.warning(
                "The stack may need more time. Re-run 'stack-bootstrap health' and "
                "inspect the container logs ('docker compose logs')."
            )

        report.stage = "status"
        report.containers = self._container_status()
        report.stage = "done"
        return report

    def _resource_specs(self, environment: EnvironmentMap) -> List[ResourceSpec]:
        if self.config.manifest_path:
            return load_manifest(self.config.manifest_path)
        return default_resources(environment)

    def _needs_runtime(self, specs: List[ResourceSpec]) -> bool:
        if self.compose is not None:
            return True
        return any(isinstance(spec, (VolumeSpec, NetworkSpec)) for spec in specs)

    def wait_healthy(self, environment: EnvironmentMap) -> HealthCheckResult:
        health_config = HealthCheckConfig(
            url=self.config.health_url_for(environment),
            timeout_seconds=self.config.health_timeout,
            poll_interval_seconds=self.config.health_interval,
            method=self.config.health_method,
        )
        with self.session_factory() as session:
            return HealthPoller(health_config, session=session).poll(self.cancel)

    def _container_status(self) -> List[ContainerStatus]:
        if self.compose is None:
            return []
        try:
            return self.compose.container_status()
        except ComposeError as e:
            logger.warning(str(e))
            return []


def log_summary(report: BootstrapReport) -> None:
    """Log a human-readable summary of a bootstrap run."""
    resources = report.resources
    logger.info("=== Bootstrap Summary ===")
    if report.env is not None:
        logger.info(
            f"Environment: {report.env.source_path or 'defaults only'} "
            f"({'loaded' if report.env.file_found else 'not found'}, "
            f"{report.env.parsed_lines} lines)"
        )
    logger.info(
        "Resources: "
        f"{resources.count(ResourceState.CREATED)} created, "
        f"{resources.count(ResourceState.ALREADY_PRESENT)} present, "
        f"{resources.count(ResourceState.REWRITTEN)} rewritten, "
        f"{resources.count(ResourceState.SKIPPED)} skipped, "
        f"{resources.count(ResourceState.FAILED)} failed"
    )
    for outcome in resources.outcomes:
        if outcome.failed:
            _log_failure(outcome)
    logger.info(f"Stack started: {'yes' if report.stack_started else 'no'}")
    if report.health is not None:
        logger.info(
            f"Health: {report.health.status.value} after {report.health.elapsed_seconds:.1f}s "
            f"({report.health.attempts} attempts)"
        )
    for container in report.containers:
        ports = ", ".join(f"{p}->{','.join(h)}" for p, h in container.ports.items()) or "host network"
        health = f", {container.health}" if container.health else ""
        logger.info(f"Container {container.name}: {container.state}{health} [{ports}]")
    if report.ok:
        logger.info("Bootstrap complete")
    else:
        logger.info(f"Bootstrap finished with exit code {int(report.exit_code)} during {report.stage}")


def _log_failure(outcome: ResourceOutcome) -> None:
    level = logging.ERROR if outcome.spec.required else logging.WARNING
    logger.log(level, f"  {outcome.spec.kind} {outcome.spec.label}: {outcome.reason}")
