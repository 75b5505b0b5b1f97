"""Configuration management for the stack bootstrapper."""

import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

# Built-in defaults table for the environment map; the .env file overrides it
DEFAULT_ENVIRONMENT: Dict[str, str] = {
    "MCP_HOST": "localhost",
    "MCP_PORT": "8811",
    "MCP_SECONDARY_PORT": "8812",
    "HEALTH_ENDPOINT": "/health",
    "MCP_NETWORK": "mcp-network",
    "MCP_SUBNET": "172.40.1.0/24",
    "POSTGRES_PORT": "5432",
    "REDIS_PORT": "6379",
    "LOG_LEVEL": "info",
}

TRUE_VALUES = ("true", "1", "yes", "on")
FALSE_VALUES = ("false", "0", "no", "off")


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    if value.lower() in TRUE_VALUES:
        return True
    if value.lower() in FALSE_VALUES:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value}")


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"Invalid integer value for {name}: {value}") from None


class Config:
    """
    Bootstrapper configuration with environment-driven defaults.

    Values come from ``STACK_*``, ``HEALTH_*`` and ``LOG_*`` environment
    variables; explicit overrides (command-line flags) win over both. The
    object is immutable once constructed.

    Args:
        overrides: Explicit values; ``None`` entries are ignored
    """

    def __init__(self, overrides: Optional[Mapping[str, Any]] = None):
        self._defaults = {
            # Stack layout
            "project_dir": os.environ.get("STACK_PROJECT_DIR", os.getcwd()),
            "env_file": os.environ.get("STACK_ENV_FILE", ".env"),
            "manifest_file": os.environ.get("STACK_MANIFEST", ""),
            "compose_file": os.environ.get("STACK_COMPOSE_FILE", "docker-compose.yml"),
            "project_name": os.environ.get("STACK_PROJECT_NAME", "mcp"),
            "compose_timeout": _env_int("STACK_COMPOSE_TIMEOUT", 300),
            "require_env_file": _env_bool("STACK_REQUIRE_ENV_FILE", False),
            "skip_compose": _env_bool("STACK_SKIP_COMPOSE", False),
            # Health polling
            "health_url": os.environ.get("HEALTH_URL", ""),
            "health_timeout": _env_int("HEALTH_TIMEOUT", 30),
            "health_interval": _env_int("HEALTH_INTERVAL", 2),
            "health_method": os.environ.get("HEALTH_METHOD", "GET").upper(),
            "deadline": _env_int("STACK_DEADLINE", 0),
            # Logging
            "log_level": os.environ.get("LOG_LEVEL", "INFO").upper(),
            "log_dir": os.environ.get("LOG_DIR", ""),
        }

        for key, value in (overrides or {}).items():
            if value is None:
                continue
            if key not in self._defaults:
                raise KeyError(f"Unknown configuration key: {key}")
            self._defaults[key] = value

    def __getattr__(self, name: str) -> Any:
        defaults = self.__dict__.get("_defaults", {})
        if name in defaults:
            return defaults[name]
        raise AttributeError(f"'{self.__class__.__name__}' object has no attribute '{name}'")

    def __setattr__(self, name: str, value: Any) -> None:
        defaults = self.__dict__.get("_defaults")
        if defaults is not None:
            raise AttributeError(f"Configuration is immutable: cannot set '{name}'")
        super().__setattr__(name, value)

    def get(self, key: str, default: Any = None) -> Any:
        return self._defaults.get(key, default)

    def resolve_path(self, value: str) -> Path:
        """Resolve a configured path relative to the project directory."""
        path = Path(value).expanduser()
        if not path.is_absolute():
            path = Path(self.project_dir) / path
        return path

    @property
    def env_path(self) -> Optional[Path]:
        return self.resolve_path(self.env_file) if self.env_file else None

    @property
    def compose_path(self) -> Path:
        return self.resolve_path(self.compose_file)

    @property
    def manifest_path(self) -> Optional[Path]:
        return self.resolve_path(self.manifest_file) if self.manifest_file else None

    def health_url_for(self, environment: Mapping[str, str]) -> str:
        """Configured health URL, or one built from MCP_HOST/MCP_PORT/HEALTH_ENDPOINT."""
        if self.health_url:
            return self.health_url
        host = environment.get("MCP_HOST") or DEFAULT_ENVIRONMENT["MCP_HOST"]
        port = environment.get("MCP_PORT") or DEFAULT_ENVIRONMENT["MCP_PORT"]
        endpoint = environment.get("HEALTH_ENDPOINT") or DEFAULT_ENVIRONMENT["HEALTH_ENDPOINT"]
        if not endpoint.startswith("/"):
            endpoint = "/" + endpoint
        return f"http://{host}:{port}{endpoint}"

    def validate(self) -> List[str]:
        """
        Validate configuration and return list of errors.

        Returns:
            List of validation error messages. Empty list means valid.
        """
        errors = []

        if not Path(self.project_dir).is_dir():
            errors.append(f"Project directory not found: {self.project_dir}")

        if self.health_timeout <= 0:
            errors.append(f"Health timeout must be positive: {self.health_timeout}")
        if self.health_interval <= 0:
            errors.append(f"Health interval must be positive: {self.health_interval}")
        elif self.health_interval > self.health_timeout:
            errors.append(
                f"Health interval ({self.health_interval}s) cannot exceed timeout ({self.health_timeout}s)"
            )
        if self.health_method not in ("GET", "HEAD"):
            errors.append(f"Unsupported health method: {self.health_method}")
        if self.compose_timeout <= 0:
            errors.append(f"Compose timeout must be positive: {self.compose_timeout}")
        if self.deadline < 0:
            errors.append(f"Deadline cannot be negative: {self.deadline}")

        if self.manifest_path and not self.manifest_path.exists():
            errors.append(f"Manifest file not found: {self.manifest_path}")

        return errors

    def to_dict(self) -> Dict[str, Any]:
        return self._defaults.copy()

    def __repr__(self) -> str:
        return f"Config(project_dir={self.project_dir}, project_name={self.project_name})"

    def get_startup_summary(self) -> Dict[str, Any]:
        """Key configuration values for startup logging."""
        return {
            "project_dir": str(self.project_dir),
            "project_name": self.project_name,
            "env_file": str(self.env_path) if self.env_path else "none",
            "manifest": str(self.manifest_path) if self.manifest_path else "built-in",
            "compose_file": "skipped" if self.skip_compose else str(self.compose_path),
            "health_timeout": self.health_timeout,
            "health_interval": self.health_interval,
            "log_level": self.log_level,
        }
