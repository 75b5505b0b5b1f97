"""
Environment File Loader

Parses ``.env`` style files into an immutable EnvironmentMap merged over a
defaults table. The loader never touches ``os.environ``; callers pass the
resulting map explicitly to the components that need it.

File format:
- ``NAME=VALUE`` lines, split on the first ``=``
- blank lines and lines starting with ``#`` are ignored
- a ``#`` outside single or double quotes starts an inline comment

Quoting is not otherwise interpreted: ``A="x y"`` yields the value
``"x y"`` with its quotes.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Iterator, Optional, Tuple, Union

logger = logging.getLogger(__name__)


class EnvFileError(OSError):
    """Raised when an environment file exists but cannot be read."""

    pass


class EnvironmentMap(Mapping):
    """
    Ordered, read-only mapping of environment variable names to values.

    Insertion order follows first appearance (defaults first, then new
    names from the file); the value is always the last one seen.
    """

    __slots__ = ("_data",)

    def __init__(self, data: Optional[Union[Mapping, Iterable[Tuple[str, str]]]] = None):
        merged: Dict[str, str] = {}
        if data is not None:
            items = data.items() if isinstance(data, Mapping) else data
            for name, value in items:
                _validate_name(name)
                merged[name] = str(value)
        object.__setattr__(self, "_data", merged)

    def __getitem__(self, name: str) -> str:
        return self._data[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __setattr__(self, name, value):
        raise AttributeError("EnvironmentMap is immutable")

    def __repr__(self) -> str:
        return f"EnvironmentMap({list(self._data)})"

    def merged_with(self, overrides: Mapping) -> "EnvironmentMap":
        """Return a new map with ``overrides`` applied on top of this one."""
        data = dict(self._data)
        for name, value in overrides.items():
            data[name] = value
        return EnvironmentMap(data)

    def to_dict(self) -> Dict[str, str]:
        return dict(self._data)


@dataclass(frozen=True)
class EnvLoadResult:
    """Outcome of loading an environment file."""

    environment: EnvironmentMap
    parsed_lines: int
    source_path: Optional[Path]
    file_found: bool


def _validate_name(name: str) -> None:
    if not isinstance(name, str) or not name:
        raise ValueError("Environment variable name must be a non-empty string")
    if "=" in name:
        raise ValueError(f"Environment variable name may not contain '=': {name!r}")


def strip_inline_comment(value: str) -> str:
    """
    Truncate ``value`` at the first ``#`` that is not inside quotes.

    This is a best-effort heuristic, so values that legitimately contain an
    unquoted ``#`` (URL fragments, passwords) are cut short.
    """
    quote: Optional[str] = None
    for index, char in enumerate(value):
        if quote:
            if char == quote:
                quote = None
        elif char in ("'", '"'):
            quote = char
        elif char == "#":
            return value[:index]
    return value


def parse_env_line(line: str) -> Optional[Tuple[str, str]]:
    """
    Parse a single line into a (name, value) pair.

    Returns:
        The pair, or None for blank, comment and malformed lines
    """
    stripped = line.strip()
    if not stripped or stripped.startswith("#"):
        return None

    if "=" not in stripped:
        return None

    name, value = stripped.split("=", 1)
    name = name.strip()
    if not name:
        return None

    return name, strip_inline_comment(value).strip()


def parse_env_lines(lines: Iterable[str]) -> Tuple[Dict[str, str], int]:
    """Parse lines into an ordered dict (last wins) and a parsed-line count."""
    values: Dict[str, str] = {}
    parsed = 0
    for line in lines:
        pair = parse_env_line(line)
        if pair is None:
            continue
        name, value = pair
        values[name] = value
        parsed += 1
    return values, parsed


def load_env_file(
    path: Optional[Union[str, Path]],
    defaults: Optional[Mapping] = None,
) -> EnvLoadResult:
    """
    Load an environment file and merge it over ``defaults``.

    Args:
        path: Path to the ``.env`` file, or None to use defaults only
        defaults: Built-in defaults table; file values override it

    Returns:
        EnvLoadResult with the merged map and parsed-line count

    Raises:
        EnvFileError: If the file exists but cannot be read
    """
    base = EnvironmentMap(defaults or {})

    if path is None:
        return EnvLoadResult(environment=base, parsed_lines=0, source_path=None, file_found=False)

    env_path = Path(path).expanduser()
    if not env_path.exists():
        logger.debug(f"Environment file not found: {env_path}")
        return EnvLoadResult(environment=base, parsed_lines=0, source_path=env_path, file_found=False)

    try:
        text = env_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise EnvFileError(f"Cannot read environment file {env_path}: {e}") from e

    values, parsed = parse_env_lines(text.splitlines())
    logger.debug(f"Parsed {parsed} variables from {env_path}")

    return EnvLoadResult(
        environment=base.merged_with(values),
        parsed_lines=parsed,
        source_path=env_path,
        file_found=True,
    )
