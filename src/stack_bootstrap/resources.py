"""
Resource Ensurer

Idempotently ensures the resources a stack needs before it starts:
host directories, named volumes, a named network and secret files.

Resource kinds:
- DirectorySpec: created with parents, mode must not grant group/world write
- VolumeSpec: container runtime named volume
- NetworkSpec: container runtime network with an optional subnet
- SecretFileSpec: written from an environment variable, owner-only mode

Directories, volumes and networks are required: a failure on any of them
means the stack must not be started. Secret files are optional: a missing
source value skips them and a write failure is only a warning.

Specs are processed strictly in the given order, one at a time. Each spec
yields a ResourceOutcome; failures never stop the remaining specs.
"""

import logging
import stat
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import ClassVar, List, Mapping, Optional, Sequence, Union

from .backend import ResourceBackend
from .cancellation import CancellationToken

logger = logging.getLogger(__name__)

GROUP_WORLD_WRITE = stat.S_IWGRP | stat.S_IWOTH
OWNER_READ_WRITE = stat.S_IRUSR | stat.S_IWUSR


class ResourceState(Enum):
    """Result of ensuring a single resource."""

    ALREADY_PRESENT = "already_present"
    CREATED = "created"
    REWRITTEN = "rewritten"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class DirectorySpec:
    kind: ClassVar[str] = "directory"
    required: ClassVar[bool] = True

    path: Path
    mode: int = 0o755

    def __post_init__(self):
        object.__setattr__(self, "path", Path(self.path))
        if self.mode & ~0o7777:
            raise ValueError(f"Invalid directory mode {oct(self.mode)} for {self.path}")
        if self.mode & GROUP_WORLD_WRITE:
            raise ValueError(
                f"Directory mode {oct(self.mode)} for {self.path} grants group/world write"
            )

    @property
    def label(self) -> str:
        return str(self.path)


@dataclass(frozen=True)
class VolumeSpec:
    kind: ClassVar[str] = "volume"
    required: ClassVar[bool] = True

    name: str

    def __post_init__(self):
        if not self.name:
            raise ValueError("Volume name cannot be empty")

    @property
    def label(self) -> str:
        return self.name


@dataclass(frozen=True)
class NetworkSpec:
    kind: ClassVar[str] = "network"
    required: ClassVar[bool] = True

    name: str
    subnet: Optional[str] = None

    def __post_init__(self):
        if not self.name:
            raise ValueError("Network name cannot be empty")

    @property
    def label(self) -> str:
        return self.name


@dataclass(frozen=True)
class SecretFileSpec:
    kind: ClassVar[str] = "secret"
    required: ClassVar[bool] = False

    path: Path
    source_var: str
    mode: int = 0o600

    def __post_init__(self):
        object.__setattr__(self, "path", Path(self.path))
        if not self.source_var:
            raise ValueError(f"Secret file {self.path} needs a source variable")
        if self.mode & ~OWNER_READ_WRITE:
            raise ValueError(
                f"Secret file mode {oct(self.mode)} for {self.path} must be owner read/write only"
            )

    @property
    def label(self) -> str:
        return str(self.path)


ResourceSpec = Union[DirectorySpec, VolumeSpec, NetworkSpec, SecretFileSpec]


@dataclass(frozen=True)
class ResourceOutcome:
    """Pairs a spec with the state it ended in."""

    spec: ResourceSpec
    state: ResourceState
    reason: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.state is ResourceState.FAILED

    @property
    def blocks_startup(self) -> bool:
        return self.failed and self.spec.required

    def to_dict(self) -> dict:
        return {
            "kind": self.spec.kind,
            "resource": self.spec.label,
            "state": self.state.value,
            "required": self.spec.required,
            "reason": self.reason,
        }


@dataclass
class EnsureReport:
    outcomes: List[ResourceOutcome] = field(default_factory=list)

    @property
    def required_failures(self) -> List[ResourceOutcome]:
        return [o for o in self.outcomes if o.blocks_startup]

    @property
    def optional_failures(self) -> List[ResourceOutcome]:
        return [o for o in self.outcomes if o.failed and not o.spec.required]

    @property
    def ok(self) -> bool:
        return not self.required_failures

    def count(self, state: ResourceState) -> int:
        return sum(1 for o in self.outcomes if o.state is state)


class ResourceEnsurer:
    """
    Ensures resource specs against a backend, in order.

    Args:
        backend: Filesystem and container runtime capability set
    """

    def __init__(self, backend: ResourceBackend):
        self.backend = backend

    def ensure_all(
        self,
        specs: Sequence[ResourceSpec],
        environment: Mapping[str, str],
        cancel: Optional[CancellationToken] = None,
    ) -> EnsureReport:
        """
        Ensure every spec exists.

        Args:
            specs: Resources to ensure, processed in this order
            environment: Source of secret file values
            cancel: Checked before each spec

        Returns:
            EnsureReport with one outcome per spec, same order

        Raises:
            OperationCancelled: If cancelled; carries the outcomes so far
        """
        report = EnsureReport()
        for spec in specs:
            if cancel is not None:
                cancel.raise_if_cancelled(partial=list(report.outcomes))

            outcome = self.ensure(spec, environment)
            report.outcomes.append(outcome)
            self._log_outcome(outcome)

        return report

    def ensure(self, spec: ResourceSpec, environment: Mapping[str, str]) -> ResourceOutcome:
        if isinstance(spec, DirectorySpec):
            return self._ensure_directory(spec)
        if isinstance(spec, VolumeSpec):
            return self._ensure_volume(spec)
        if isinstance(spec, NetworkSpec):
            return self._ensure_network(spec)
        if isinstance(spec, SecretFileSpec):
            return self._ensure_secret(spec, environment)
        raise TypeError(f"Unsupported resource spec: {spec!r}")

    def _ensure_directory(self, spec: DirectorySpec) -> ResourceOutcome:
        if self.backend.path_exists(spec.path):
            if self.backend.is_directory(spec.path):
                return ResourceOutcome(spec, ResourceState.ALREADY_PRESENT)
            return ResourceOutcome(
                spec, ResourceState.FAILED, f"{spec.path} exists and is not a directory"
            )

        result = self.backend.create_directory(spec.path, spec.mode)
        if not result:
            return ResourceOutcome(spec, ResourceState.FAILED, result.reason)
        return ResourceOutcome(spec, ResourceState.CREATED)

    def _ensure_volume(self, spec: VolumeSpec) -> ResourceOutcome:
        if self.backend.volume_exists(spec.name):
            return ResourceOutcome(spec, ResourceState.ALREADY_PRESENT)

        result = self.backend.create_volume(spec.name)
        if not result:
            return ResourceOutcome(spec, ResourceState.FAILED, result.reason)
        return ResourceOutcome(spec, ResourceState.CREATED)

    def _ensure_network(self, spec: NetworkSpec) -> ResourceOutcome:
        if self.backend.network_exists(spec.name):
            return ResourceOutcome(spec, ResourceState.ALREADY_PRESENT)

        result = self.backend.create_network(spec.name, spec.subnet)
        if not result:
            return ResourceOutcome(spec, ResourceState.FAILED, result.reason)
        return ResourceOutcome(spec, ResourceState.CREATED)

    def _ensure_secret(self, spec: SecretFileSpec, environment: Mapping[str, str]) -> ResourceOutcome:
        value = environment.get(spec.source_var)
        if not value:
            return ResourceOutcome(
                spec, ResourceState.SKIPPED, f"{spec.source_var} is not set"
            )

        existed = self.backend.path_exists(spec.path)
        result = self.backend.write_file(spec.path, value, spec.mode)
        if not result:
            return ResourceOutcome(spec, ResourceState.FAILED, result.reason)
        return ResourceOutcome(
            spec, ResourceState.REWRITTEN if existed else ResourceState.CREATED
        )

    @staticmethod
    def _log_outcome(outcome: ResourceOutcome) -> None:
        spec = outcome.spec
        if outcome.state is ResourceState.CREATED:
            logger.info(f"Created {spec.kind}: {spec.label}")
        elif outcome.state is ResourceState.REWRITTEN:
            logger.info(f"Rewrote {spec.kind}: {spec.label}")
        elif outcome.state is ResourceState.ALREADY_PRESENT:
            logger.info(f"{spec.kind.capitalize()} exists: {spec.label}")
        elif outcome.state is ResourceState.SKIPPED:
            logger.info(f"Skipped {spec.kind} {spec.label}: {outcome.reason}")
        elif spec.required:
            logger.error(f"Failed to ensure {spec.kind} {spec.label}: {outcome.reason}")
        else:
            logger.warning(f"Failed to ensure optional {spec.kind} {spec.label}: {outcome.reason}")
