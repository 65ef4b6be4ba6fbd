"""
Pytest configuration and shared fixtures for the orchestration tests.

This file is automatically loaded by pytest and provides shared fixtures
that can be used across all test files.
"""

from unittest.mock import MagicMock

import pytest

from stack_orchestration.health.docker_client import ContainerInfo, DockerClient
from stack_orchestration.profiles.loader import ProfileCatalog, ProfileCatalogLoader
from stack_orchestration.profiles.models import Profile
from stack_orchestration.state.models import InstallationState, ServiceEntry
from stack_orchestration.state.store import SharedStateStore


def make_catalog(*profiles, legacy_ids=None) -> ProfileCatalog:
    """Build a catalog from plain dicts."""
    return ProfileCatalog([Profile(**p) for p in profiles], legacy_ids=legacy_ids)


def running(name, health=None) -> ContainerInfo:
    status = "Up 5 minutes" + (f" ({health})" if health else "")
    return ContainerInfo(name=name, state="running", status=status, health=health)


def exited(name) -> ContainerInfo:
    return ContainerInfo(name=name, state="exited", status="Exited (1) 2 minutes ago", health=None)


@pytest.fixture
def catalog() -> ProfileCatalog:
    """The bundled profile catalog."""
    loaded = ProfileCatalogLoader().load()
    assert loaded is not None
    return loaded


@pytest.fixture
def state_path(tmp_path):
    return tmp_path / ".kaspa-aio" / "installation-state.json"


@pytest.fixture
def store(state_path):
    s = SharedStateStore(state_path, debounce_seconds=0.05, poll_interval_seconds=0.1, use_polling=True)
    yield s
    s.close()


@pytest.fixture
def installed_state():
    """Node plus both indexers and the apps that use them."""
    profiles = ["kaspa-node", "kasia-indexer", "kasia-app", "k-indexer-bundle", "k-social-app"]
    services = [
        ServiceEntry(name="kaspa-node", profile="kaspa-node", running=True, exists=True),
        ServiceEntry(name="kasia-indexer", profile="kasia-indexer", running=True, exists=True),
        ServiceEntry(name="kasia-app", profile="kasia-app", running=True, exists=True),
        ServiceEntry(name="timescaledb-kindexer", profile="k-indexer-bundle", running=True, exists=True),
        ServiceEntry(name="k-indexer", profile="k-indexer-bundle", running=True, exists=True),
        ServiceEntry(name="k-social", profile="k-social-app", running=False, exists=True),
    ]
    return InstallationState.create(profiles, services, {"KASPA_NETWORK": "mainnet"})


@pytest.fixture
def mock_docker():
    """DockerClient mock; async methods become AsyncMocks through the spec."""
    docker = MagicMock(spec=DockerClient)
    docker.is_available.return_value = True
    docker.list_containers.return_value = {}
    docker.get_container.return_value = None
    docker.logs.return_value = "line 1\nline 2"
    docker.version.return_value = "Docker version 27.0.3"
    docker.run.return_value = (0, "Docker Compose version v2.29.1", "")
    docker.exec.return_value = (0, "accepting connections", "")
    docker.container_stats.return_value = {}
    docker.log_stream_command.side_effect = lambda c, tail=50: ["docker", "logs", "-f", f"--tail={tail}", c]
    return docker
