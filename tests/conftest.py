"""
Pytest configuration and shared fixtures for stack bootstrapper tests.

This module provides an in-memory resource backend, a controllable clock,
a local HTTP endpoint and helpers shared by unit and integration tests.
"""

import tempfile
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path

import pytest

from stack_bootstrap.backend import BackendResult, ResourceBackend, RuntimeUnavailableError


class FakeBackend(ResourceBackend):
    """In-memory backend recording every call."""

    def __init__(self):
        self.directories = {}
        self.files = {}
        self.volumes = set()
        self.networks = {}
        self.fail_paths = set()
        self.fail_volumes = set()
        self.fail_networks = set()
        self.runtime_down = False
        self.calls = []

    def path_exists(self, path):
        path = Path(path)
        return path in self.directories or path in self.files

    def is_directory(self, path):
        return Path(path) in self.directories

    def create_directory(self, path, mode):
        path = Path(path)
        self.calls.append(("create_directory", path, mode))
        if path in self.fail_paths:
            return BackendResult.failure(f"Cannot create directory {path}: permission denied")
        self.directories[path] = mode
        return BackendResult.success()

    def set_permissions(self, path, mode):
        path = Path(path)
        self.calls.append(("set_permissions", path, mode))
        if path in self.directories:
            self.directories[path] = mode
        elif path in self.files:
            self.files[path] = (self.files[path][0], mode)
        return BackendResult.success()

    def write_file(self, path, content, mode):
        path = Path(path)
        self.calls.append(("write_file", path, mode))
        if path in self.fail_paths:
            return BackendResult.failure(f"Cannot write file {path}: read-only file system")
        self.files[path] = (content, mode)
        return BackendResult.success()

    def volume_exists(self, name):
        return name in self.volumes

    def create_volume(self, name):
        self.calls.append(("create_volume", name))
        if name in self.fail_volumes:
            return BackendResult.failure(f"Cannot create volume {name}: daemon error")
        self.volumes.add(name)
        return BackendResult.success()

    def network_exists(self, name):
        return name in self.networks

    def create_network(self, name, subnet=None):
        self.calls.append(("create_network", name, subnet))
        if name in self.fail_networks:
            return BackendResult.failure(f"Cannot create network {name}: pool overlaps")
        self.networks[name] = subnet
        return BackendResult.success()

    def ping(self):
        if self.runtime_down:
            raise RuntimeUnavailableError("Docker is not running or not accessible")
        return {"server_version": "24.0.7", "api_version": "1.43", "os": "linux"}


class FakeClock:
    """Monotonic clock advanced only by sleep()."""

    def __init__(self, start=100.0):
        self.now = start
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def write_env(temp_dir):
    """Write an env file into the temp dir and return its path."""

    def _write(content, name=".env"):
        path = temp_dir / name
        path.write_text(content, encoding="utf-8")
        return path

    return _write


class _HealthHandler(BaseHTTPRequestHandler):
    def do_GET(self):
        server = self.server
        server.requests.append(("GET", self.path))
        status, body = server.responses.get(self.path, (404, b'{"error": "not found"}'))
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def do_HEAD(self):
        server = self.server
        server.requests.append(("HEAD", self.path))
        status, _ = server.responses.get(self.path, (404, b""))
        self.send_response(status)
        self.end_headers()

    def log_message(self, format, *args):
        pass


@pytest.fixture
def http_server():
    """
    Local HTTP server with configurable responses.

    Set ``server.responses[path] = (status, body_bytes)``; ``server.url(path)``
    builds a full URL.
    """
    server = ThreadingHTTPServer(("127.0.0.1", 0), _HealthHandler)
    server.responses = {"/health": (200, b'{"status": "ok"}')}
    server.requests = []
    server.url = lambda path="/health": f"http://127.0.0.1:{server.server_address[1]}{path}"
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield server
    finally:
        server.shutdown()
        server.server_close()


@pytest.fixture
def clean_env(monkeypatch):
    """Remove configuration variables that would leak into Config()."""
    for name in (
        "STACK_PROJECT_DIR", "STACK_ENV_FILE", "STACK_MANIFEST", "STACK_COMPOSE_FILE",
        "STACK_PROJECT_NAME", "STACK_COMPOSE_TIMEOUT", "STACK_REQUIRE_ENV_FILE",
        "STACK_SKIP_COMPOSE", "STACK_DEADLINE", "HEALTH_URL", "HEALTH_TIMEOUT",
        "HEALTH_INTERVAL", "HEALTH_METHOD", "LOG_LEVEL", "LOG_DIR",
    ):
        monkeypatch.delenv(name, raising=False)


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
            item.add_marker(pytest.mark.slow)

        if "docker" in str(item.fspath) or "docker" in item.name.lower():
            item.add_marker(pytest.mark.docker)
