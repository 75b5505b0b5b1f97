"""
Integration tests for the bootstrap flow on the local filesystem.

These run without a Docker daemon: the manifest only declares directories
and secret files, and the stack is treated as already running behind a
local HTTP server.
"""

import os
import stat
from unittest.mock import patch

import pytest

from stack_bootstrap.backend import LocalBackend
from stack_bootstrap.config import Config
from stack_bootstrap.main import main
from stack_bootstrap.orchestrator import ExitCode, StackBootstrapper
from stack_bootstrap.resources import ResourceState

posix_only = pytest.mark.skipif(os.name == "nt", reason="POSIX permission bits")


def _config(project_dir, http_server, **overrides):
    values = {
        "project_dir": str(project_dir),
        "manifest_file": "stack.yml",
        "skip_compose": True,
        "health_url": http_server.url(),
        "health_timeout": 2,
        "health_interval": 1,
    }
    values.update(overrides)
    return Config(values)


class TestLocalBackendFilesystem:
    """LocalBackend filesystem operations."""

    def test_create_directory_with_parents(self, tmp_path):
        backend = LocalBackend(base_dir=tmp_path)

        assert backend.create_directory("a/b/c", 0o750)
        assert (tmp_path / "a" / "b" / "c").is_dir()

    @posix_only
    def test_directory_mode(self, tmp_path):
        LocalBackend(base_dir=tmp_path).create_directory("data", 0o700)
        assert stat.S_IMODE((tmp_path / "data").stat().st_mode) == 0o700

    @posix_only
    def test_secret_file_mode_and_content(self, tmp_path):
        backend = LocalBackend(base_dir=tmp_path)

        assert backend.write_file("secrets/token", "s3cret", 0o600)

        path = tmp_path / "secrets" / "token"
        assert path.read_text() == "s3cret"
        assert stat.S_IMODE(path.stat().st_mode) == 0o600

    @posix_only
    def test_existing_loose_file_is_tightened_before_write(self, tmp_path):
        path = tmp_path / "token"
        path.write_text("old")
        os.chmod(path, 0o644)
        modes_at_write = []
        real_fdopen = os.fdopen

        def recording_fdopen(fd, *args, **kwargs):
            modes_at_write.append(stat.S_IMODE(os.fstat(fd).st_mode))
            return real_fdopen(fd, *args, **kwargs)

        backend = LocalBackend(base_dir=tmp_path)
        with patch("stack_bootstrap.backend.os.fdopen", side_effect=recording_fdopen):
            assert backend.write_file("token", "s3cret", 0o600)

        assert modes_at_write == [0o600]
        assert path.read_text() == "s3cret"
        assert stat.S_IMODE(path.stat().st_mode) == 0o600

    def test_write_file_truncates(self, tmp_path):
        backend = LocalBackend(base_dir=tmp_path)
        backend.write_file("token", "a much longer old value", 0o600)
        backend.write_file("token", "new", 0o600)
        assert (tmp_path / "token").read_text() == "new"

    def test_failure_is_reported_not_raised(self, tmp_path):
        (tmp_path / "blocker").write_text("file")
        backend = LocalBackend(base_dir=tmp_path)

        result = backend.create_directory("blocker/child", 0o755)

        assert not result
        assert "Cannot create directory" in result.reason

    def test_absolute_paths_ignore_base_dir(self, tmp_path):
        backend = LocalBackend(base_dir=tmp_path / "elsewhere")
        target = tmp_path / "absolute"
        assert backend.resolve(target) == target


class TestBootstrapFlow:
    """Full bootstrap runs with the real LocalBackend."""

    @posix_only
    def test_bootstrap_then_rerun(self, project_dir, http_server, clean_env):
        config = _config(project_dir, http_server)

        first = StackBootstrapper(config, LocalBackend(base_dir=project_dir)).run()

        assert first.exit_code is ExitCode.OK
        assert [o.state for o in first.resources.outcomes] == [
            ResourceState.CREATED,
            ResourceState.CREATED,
            ResourceState.CREATED,
            ResourceState.SKIPPED,
        ]
        assert stat.S_IMODE((project_dir / "data").stat().st_mode) == 0o750
        token = project_dir / "secrets" / "github_token"
        assert token.read_text() == "ghp_integration"
        assert stat.S_IMODE(token.stat().st_mode) == 0o600
        assert not (project_dir / "secrets" / "gitlab_token").exists()
        assert first.health.healthy

        second = StackBootstrapper(config, LocalBackend(base_dir=project_dir)).run()

        assert [o.state for o in second.resources.outcomes] == [
            ResourceState.ALREADY_PRESENT,
            ResourceState.ALREADY_PRESENT,
            ResourceState.REWRITTEN,
            ResourceState.SKIPPED,
        ]
        assert token.read_text() == "ghp_integration"

    def test_conflicting_file_blocks_startup(self, project_dir, http_server, clean_env):
        (project_dir / "data").write_text("not a directory")
        config = _config(project_dir, http_server)

        report = StackBootstrapper(config, LocalBackend(base_dir=project_dir)).run()

        assert report.exit_code is ExitCode.RESOURCE_FAILED
        assert report.health is None
        assert http_server.requests == []

    def test_cli_health_timeout_exit_code(self, project_dir, http_server, clean_env):
        http_server.responses["/health"] = (503, b'{"status": "starting"}')

        with patch("stack_bootstrap.main.setup_logging"), patch(
            "stack_bootstrap.main.setup_signal_handlers"
        ):
            code = main(
                [
                    "--project-dir", str(project_dir),
                    "bootstrap", "--manifest", "stack.yml", "--skip-compose",
                    "--url", http_server.url(), "--timeout", "1", "--interval", "1",
                ]
            )

        assert code == ExitCode.HEALTH_TIMED_OUT
        assert (project_dir / "logs").is_dir()
