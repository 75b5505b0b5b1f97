"""
Unit tests for the bootstrap orchestrator.
"""

import os
import sys
import threading
import time
from pathlib import Path
from unittest.mock import MagicMock, Mock

import pytest
import requests

from stack_bootstrap.cancellation import CancellationToken
from stack_bootstrap.compose import ComposeError, ComposeRunner, ContainerStatus
from stack_bootstrap.config import Config
from stack_bootstrap.health import HealthStatus
from stack_bootstrap.orchestrator import ExitCode, StackBootstrapper, log_summary
from stack_bootstrap.resources import ResourceState


def _session_factory(status_code=200, error=None):
    session = Mock()
    if error is not None:
        session.request.side_effect = error
    else:
        response = Mock()
        response.status_code = status_code
        session.request.return_value = response
    factory = MagicMock()
    factory.return_value.__enter__.return_value = session
    return factory, session


def _compose():
    compose = Mock(spec=ComposeRunner)
    compose.container_status.return_value = [
        ContainerStatus("mcp-gateway", "mcp-gateway", "running", "healthy", {"8811/tcp": ["8811"]})
    ]
    return compose


@pytest.fixture
def config(temp_dir, clean_env):
    def _config(**overrides):
        values = {"project_dir": str(temp_dir), "health_timeout": 1, "health_interval": 1}
        values.update(overrides)
        return Config(values)

    return _config


class TestStackBootstrapper:
    """Test the bootstrap sequence with fake collaborators."""

    def test_successful_run(self, config, fake_backend, write_env):
        write_env("MCP_PORT=9000\nGITHUB_TOKEN=ghp_abc\n")
        factory, session = _session_factory(200)
        compose = _compose()

        report = StackBootstrapper(config(), fake_backend, compose=compose, session_factory=factory).run()

        assert report.exit_code is ExitCode.OK
        assert report.ok
        assert report.stage == "done"
        assert report.stack_started is True
        assert report.health.status is HealthStatus.HEALTHY
        assert report.containers[0].name == "mcp-gateway"
        assert report.env.file_found
        assert report.env.parsed_lines == 2

        compose.up.assert_called_once()
        environment = compose.up.call_args[0][0]
        assert environment["MCP_PORT"] == "9000"
        assert environment["MCP_HOST"] == "localhost"

        method, url = session.request.call_args[0]
        assert url == "http://localhost:9000/health"

    def test_default_resources_are_ensured(self, config, fake_backend, write_env):
        write_env("GITHUB_TOKEN=ghp_abc\n")
        factory, _ = _session_factory(200)

        report = StackBootstrapper(config(), fake_backend, compose=_compose(), session_factory=factory).run()

        assert Path("data") in fake_backend.directories
        assert "mcp-postgres-data" in fake_backend.volumes
        assert fake_backend.networks == {"mcp-network": "172.40.1.0/24"}
        states = [o.state for o in report.resources.outcomes]
        assert states.count(ResourceState.CREATED) == 10
        assert states.count(ResourceState.SKIPPED) == 2

    def test_required_resource_failure_aborts_before_compose(self, config, fake_backend, write_env):
        write_env("MCP_PORT=8811\n")
        fake_backend.fail_paths.add(Path("data"))
        factory, session = _session_factory(200)
        compose = _compose()

        report = StackBootstrapper(config(), fake_backend, compose=compose, session_factory=factory).run()

        assert report.exit_code is ExitCode.RESOURCE_FAILED
        assert report.stage == "resources"
        assert report.stack_started is False
        assert report.health is None
        compose.up.assert_not_called()
        session.request.assert_not_called()
        # Remaining specs were still attempted
        assert "mcp-data" in fake_backend.volumes

    def test_optional_secret_failure_does_not_abort(self, config, fake_backend, write_env):
        write_env("GITHUB_TOKEN=ghp_abc\n")
        fake_backend.fail_paths.add(Path("~/.docker/mcp/secrets/github_token"))
        factory, _ = _session_factory(200)

        report = StackBootstrapper(config(), fake_backend, compose=_compose(), session_factory=factory).run()

        assert report.exit_code is ExitCode.OK
        assert len(report.resources.optional_failures) == 1

    def test_missing_env_file_uses_defaults(self, config, fake_backend):
        factory, session = _session_factory(200)

        report = StackBootstrapper(config(), fake_backend, compose=_compose(), session_factory=factory).run()

        assert report.ok
        assert report.env.file_found is False
        assert session.request.call_args[0][1] == "http://localhost:8811/health"

    def test_missing_env_file_when_required(self, config, fake_backend):
        factory, _ = _session_factory(200)
        compose = _compose()

        report = StackBootstrapper(
            config(require_env_file=True), fake_backend, compose=compose, session_factory=factory
        ).run()

        assert report.exit_code is ExitCode.CONFIG_ERROR
        assert report.stage == "environment"
        assert fake_backend.calls == []
        compose.up.assert_not_called()

    def test_unreadable_env_file(self, config, fake_backend, temp_dir):
        (temp_dir / ".env").mkdir()
        factory, _ = _session_factory(200)

        report = StackBootstrapper(config(), fake_backend, session_factory=factory).run()

        assert report.exit_code is ExitCode.CONFIG_ERROR
        assert "Cannot read environment file" in report.error

    def test_invalid_manifest(self, config, fake_backend, temp_dir):
        (temp_dir / "stack.yml").write_text("directories:\n  - path: data\n    mode: '0777'\n")
        factory, _ = _session_factory(200)

        report = StackBootstrapper(
            config(manifest_file="stack.yml"), fake_backend, session_factory=factory
        ).run()

        assert report.exit_code is ExitCode.CONFIG_ERROR
        assert report.stage == "manifest"

    def test_runtime_unavailable(self, config, fake_backend):
        fake_backend.runtime_down = True
        factory, _ = _session_factory(200)
        compose = _compose()

        report = StackBootstrapper(config(), fake_backend, compose=compose, session_factory=factory).run()

        assert report.exit_code is ExitCode.RUNTIME_UNAVAILABLE
        assert report.stage == "preflight"
        assert fake_backend.calls == []
        compose.up.assert_not_called()

    def test_filesystem_only_run_skips_preflight(self, config, fake_backend, temp_dir):
        (temp_dir / "stack.yml").write_text("directories:\n  - data\n")
        fake_backend.runtime_down = True
        factory, _ = _session_factory(200)

        report = StackBootstrapper(
            config(manifest_file="stack.yml"), fake_backend, session_factory=factory
        ).run()

        assert report.ok
        assert report.stack_started is False
        assert fake_backend.directories == {Path("data"): 0o755}

    def test_compose_failure(self, config, fake_backend):
        factory, session = _session_factory(200)
        compose = _compose()
        compose.up.side_effect = ComposeError("'docker compose up' failed (exit code 1): boom")

        report = StackBootstrapper(config(), fake_backend, compose=compose, session_factory=factory).run()

        assert report.exit_code is ExitCode.COMPOSE_FAILED
        assert report.stack_started is False
        session.request.assert_not_called()

    def test_health_timeout_has_own_exit_code(self, config, fake_backend):
        factory, _ = _session_factory(error=requests.ConnectionError("refused"))
        compose = _compose()

        report = StackBootstrapper(config(), fake_backend, compose=compose, session_factory=factory).run()

        assert report.exit_code is ExitCode.HEALTH_TIMED_OUT
        assert report.exit_code != ExitCode.RESOURCE_FAILED
        assert report.stack_started is True
        assert report.health.status is HealthStatus.TIMED_OUT
        # Status is still collected after a timeout
        assert report.stage == "done"
        compose.container_status.assert_called_once()

    def test_status_failure_is_not_fatal(self, config, fake_backend):
        factory, _ = _session_factory(200)
        compose = _compose()
        compose.container_status.side_effect = ComposeError("Cannot query container status")

        report = StackBootstrapper(config(), fake_backend, compose=compose, session_factory=factory).run()

        assert report.ok
        assert report.containers == []

    def test_cancelled_before_resources(self, config, fake_backend):
        factory, _ = _session_factory(200)
        cancel = CancellationToken()
        cancel.cancel("Interrupted by SIGINT")

        report = StackBootstrapper(
            config(), fake_backend, compose=_compose(), session_factory=factory, cancel=cancel
        ).run()

        assert report.exit_code is ExitCode.CANCELLED
        assert report.error == "Interrupted by SIGINT"
        assert fake_backend.calls == []

    @pytest.mark.skipif(os.name == "nt", reason="process groups")
    def test_cancel_interrupts_running_compose(self, config, fake_backend, temp_dir):
        """Test that cancelling during a slow compose up stops it and reports partial progress."""
        (temp_dir / "docker-compose.yml").write_text("services: {}\n")
        factory, session = _session_factory(200)
        compose = ComposeRunner(
            temp_dir / "docker-compose.yml",
            "mcp",
            timeout_seconds=60,
            compose_command=[sys.executable, "-c", "import time; time.sleep(30)"],
        )
        cancel = CancellationToken()
        timer = threading.Timer(0.3, cancel.cancel, args=("Interrupted by SIGINT",))

        started = time.monotonic()
        timer.start()
        try:
            report = StackBootstrapper(
                config(), fake_backend, compose=compose, session_factory=factory, cancel=cancel
            ).run()
        finally:
            timer.cancel()

        assert time.monotonic() - started < 5
        assert report.exit_code is ExitCode.CANCELLED
        assert report.stage == "compose"
        assert report.stack_started is False
        assert report.error == "Interrupted by SIGINT"
        assert report.health is None
        session.request.assert_not_called()

    def test_health_url_override(self, config, fake_backend, write_env):
        write_env("MCP_PORT=9000\n")
        factory, session = _session_factory(200)

        StackBootstrapper(
            config(health_url="http://127.0.0.1:7000/ready"), fake_backend, session_factory=factory
        ).run()

        assert session.request.call_args[0][1] == "http://127.0.0.1:7000/ready"

    def test_report_to_dict_and_summary(self, config, fake_backend, write_env):
        write_env("MCP_PORT=9000\n")
        factory, _ = _session_factory(200)

        report = StackBootstrapper(config(), fake_backend, compose=_compose(), session_factory=factory).run()
        data = report.to_dict()

        assert data["exit_code"] == 0
        assert data["env_file_found"] is True
        assert data["health"]["status"] == "healthy"
        assert data["containers"][0]["ports"] == {"8811/tcp": ["8811"]}
        assert len(data["resources"]) == len(report.resources.outcomes)
        log_summary(report)
