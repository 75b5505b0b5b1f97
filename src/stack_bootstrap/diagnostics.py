"""
Stack Diagnostics

Supplementary checks used by the ``health`` command and the bootstrap
preflight:

- container runtime reachability (``docker info`` equivalent)
- MCP tools endpoint availability, with a textual count of ``"name"``
  occurrences in the response body

The tools count is a heuristic over the raw body and never drives control
flow.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from urllib.parse import urlsplit, urlunsplit

import requests

from .backend import ResourceBackend, RuntimeUnavailableError

logger = logging.getLogger(__name__)

TOOLS_PATH = "/tools"


@dataclass
class DiagnosticStatus:
    """Outcome of a single diagnostic check."""

    name: str
    available: bool
    error: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    suggestion: Optional[str] = None


def check_container_runtime(backend: ResourceBackend) -> DiagnosticStatus:
    try:
        details = backend.ping()
    except RuntimeUnavailableError as e:
        return DiagnosticStatus(
            name="docker",
            available=False,
            error=str(e),
            suggestion="Start Docker and retry",
        )
    return DiagnosticStatus(name="docker", available=True, details=details)


def tools_url_for(health_url: str) -> str:
    """Derive the tools endpoint from the health URL's scheme and host."""
    parts = urlsplit(health_url)
    return urlunsplit((parts.scheme, parts.netloc, TOOLS_PATH, "", ""))


def count_tool_names(body: str) -> int:
    return body.count('"name"')


def check_tools_endpoint(
    url: str,
    session: Optional[requests.Session] = None,
    timeout: float = 5.0,
) -> DiagnosticStatus:
    session = session or requests.Session()
    try:
        response = session.get(url, timeout=timeout)
    except requests.RequestException as e:
        return DiagnosticStatus(
            name="tools",
            available=False,
            error=f"{type(e).__name__}: {e}",
            details={"url": url},
            suggestion="Check the server logs; the tools endpoint may be disabled",
        )

    if not response.ok:
        return DiagnosticStatus(
            name="tools",
            available=False,
            error=f"HTTP {response.status_code}",
            details={"url": url},
        )

    return DiagnosticStatus(
        name="tools",
        available=True,
        details={"url": url, "tool_count": count_tool_names(response.text)},
    )
