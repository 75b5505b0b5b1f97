"""
Integration test configuration and fixtures.
"""

import uuid

import pytest

import docker
from docker.errors import DockerException, NotFound


@pytest.fixture(scope="session")
def docker_available():
    """Check if Docker is available for testing."""
    try:
        client = docker.from_env()
        client.ping()
        return True
    except DockerException:
        return False


@pytest.fixture(scope="session")
def docker_client(docker_available):
    """Provide Docker client for integration tests."""
    if not docker_available:
        pytest.skip("Docker not available")

    return docker.from_env()


@pytest.fixture
def resource_name():
    """Unique resource name; anything created under it is removed afterwards."""
    return f"stack-bootstrap-test-{uuid.uuid4().hex[:8]}"


@pytest.fixture
def cleanup_docker(docker_client, resource_name):
    yield resource_name

    for collection in (docker_client.volumes, docker_client.networks):
        try:
            collection.get(resource_name).remove()
        except NotFound:
            pass


@pytest.fixture
def project_dir(tmp_path):
    """Project directory with an env file and a filesystem-only manifest."""
    (tmp_path / ".env").write_text(
        "# integration stack\n"
        "MCP_HOST=127.0.0.1\n"
        "GITHUB_TOKEN=ghp_integration # inline comment\n"
    )
    (tmp_path / "stack.yml").write_text(
        "directories:\n"
        "  - path: data\n"
        "    mode: '0750'\n"
        "  - logs\n"
        "secrets:\n"
        "  - path: secrets/github_token\n"
        "    source: GITHUB_TOKEN\n"
        "  - path: secrets/gitlab_token\n"
        "    source: GITLAB_TOKEN\n"
    )
    return tmp_path
