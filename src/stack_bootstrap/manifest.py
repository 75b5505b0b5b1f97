"""
Resource manifest loading.

A manifest is a YAML file declaring the resources a stack needs:

    directories:
      - path: data
        mode: "0755"
      - logs
    volumes:
      - mcp-data
    networks:
      - name: mcp-network
        subnet: 172.40.1.0/24
    secrets:
      - path: ~/.docker/mcp/secrets/github_token
        source: GITHUB_TOKEN

Without a manifest the built-in default set for the MCP stack applies.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping

import yaml

from .resources import DirectorySpec, NetworkSpec, ResourceSpec, SecretFileSpec, VolumeSpec

logger = logging.getLogger(__name__)

DEFAULT_DIRECTORIES = ("data", "logs", "cache", "init-db")
DEFAULT_VOLUMES = ("mcp-data", "mcp-logs", "mcp-cache", "mcp-postgres-data")
DEFAULT_NETWORK = "mcp-network"
DEFAULT_SUBNET = "172.40.1.0/24"
DEFAULT_SECRETS_DIR = "~/.docker/mcp/secrets"
DEFAULT_SECRET_SOURCES = {
    "github_token": "GITHUB_TOKEN",
    "gitlab_token": "GITLAB_TOKEN",
    "sentry_token": "SENTRY_TOKEN",
}


class ManifestError(ValueError):
    """Raised when a manifest cannot be read or has invalid entries."""

    def __init__(self, message: str, problems: List[str] | None = None):
        super().__init__(message)
        self.problems = problems or []


def default_resources(environment: Mapping[str, str]) -> List[ResourceSpec]:
    """Built-in resource set: host directories, volumes, network, token files."""
    network = environment.get("MCP_NETWORK") or DEFAULT_NETWORK
    subnet = environment.get("MCP_SUBNET") or DEFAULT_SUBNET
    secrets_dir = Path(environment.get("MCP_SECRETS_DIR") or DEFAULT_SECRETS_DIR)

    specs: List[ResourceSpec] = [DirectorySpec(Path(name)) for name in DEFAULT_DIRECTORIES]
    specs.extend(VolumeSpec(name) for name in DEFAULT_VOLUMES)
    specs.append(NetworkSpec(network, subnet))
    specs.extend(
        SecretFileSpec(secrets_dir / filename, source)
        for filename, source in DEFAULT_SECRET_SOURCES.items()
    )
    return specs


def _parse_mode(raw: Any, default: int) -> int:
    if raw is None:
        return default
    if isinstance(raw, bool):
        raise ValueError(f"invalid mode {raw!r}")
    if isinstance(raw, int):
        # PyYAML already reads an unquoted 0755 as an octal literal
        return raw
    return int(str(raw), 8)


def _entry_mapping(entry: Any, key: str) -> Dict[str, Any]:
    if isinstance(entry, str):
        return {key: entry}
    if isinstance(entry, dict):
        return entry
    raise ValueError(f"entry must be a string or a mapping, got {type(entry).__name__}")


def _build(section: str, entry: Any) -> ResourceSpec:
    if section == "directories":
        data = _entry_mapping(entry, "path")
        return DirectorySpec(Path(data["path"]), _parse_mode(data.get("mode"), 0o755))
    if section == "volumes":
        data = _entry_mapping(entry, "name")
        return VolumeSpec(data["name"])
    if section == "networks":
        data = _entry_mapping(entry, "name")
        return NetworkSpec(data["name"], data.get("subnet"))
    data = _entry_mapping(entry, "path")
    return SecretFileSpec(Path(data["path"]), data.get("source", ""), _parse_mode(data.get("mode"), 0o600))


def parse_manifest(data: Any, source: str = "<manifest>") -> List[ResourceSpec]:
    """
    Build resource specs from parsed manifest data.

    Specs keep manifest order within each section; sections are processed as
    directories, volumes, networks, secrets.

    Raises:
        ManifestError: Listing every invalid entry found
    """
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ManifestError(f"{source}: manifest must be a mapping")

    specs: List[ResourceSpec] = []
    problems: List[str] = []

    unknown = set(data) - {"directories", "volumes", "networks", "secrets"}
    for name in sorted(unknown):
        problems.append(f"unknown section '{name}'")

    for section in ("directories", "volumes", "networks", "secrets"):
        entries = data.get(section) or []
        if not isinstance(entries, list):
            problems.append(f"section '{section}' must be a list")
            continue
        for index, entry in enumerate(entries):
            try:
                specs.append(_build(section, entry))
            except KeyError as e:
                problems.append(f"{section}[{index}]: missing {e.args[0]!r}")
            except (TypeError, ValueError) as e:
                problems.append(f"{section}[{index}]: {e}")

    if problems:
        raise ManifestError(
            f"{source}: {len(problems)} invalid manifest entries: " + "; ".join(problems),
            problems=problems,
        )
    return specs


def load_manifest(path: str | Path) -> List[ResourceSpec]:
    manifest_path = Path(path).expanduser()
    try:
        with open(manifest_path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except OSError as e:
        raise ManifestError(f"Cannot read manifest {manifest_path}: {e}") from e
    except yaml.YAMLError as e:
        raise ManifestError(f"Invalid YAML in manifest {manifest_path}: {e}") from e

    specs = parse_manifest(data, source=str(manifest_path))
    logger.info(f"Loaded {len(specs)} resource specs from {manifest_path}")
    return specs
