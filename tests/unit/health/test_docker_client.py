"""DockerClient parsing tests. The docker CLI itself is mocked."""

from unittest.mock import AsyncMock, patch

import pytest

from stack_orchestration.health.docker_client import DockerClient, parse_health

PS_OUTPUT = (
    "kaspa-node\trunning\tUp 2 hours (healthy)\n"
    "kasia-indexer\trunning\tUp 3 minutes (health: starting)\n"
    "k-indexer\texited\tExited (137) 5 minutes ago\n"
    "portainer\trunning\tUp 2 hours\n"
)


def fake_run(responses):
    async def run(*args, timeout=None):
        for prefix, response in responses.items():
            if args[:len(prefix)] == prefix:
                return response
        return (1, "", "unexpected command")
    return run


@pytest.mark.parametrize("status,expected", [
    ("Up 2 hours (healthy)", "healthy"),
    ("Up 1 minute (unhealthy)", "unhealthy"),
    ("Up 3 seconds (health: starting)", "starting"),
    ("Up 2 hours", None),
    ("", None),
])
def test_parse_health(status, expected):
    assert parse_health(status) == expected


@pytest.mark.asyncio
async def test_list_containers_parses_ps_output():
    client = DockerClient()
    responses = {("version",): (0, "27.0.3", ""), ("ps",): (0, PS_OUTPUT, "")}

    with patch.object(client, "run", AsyncMock(side_effect=fake_run(responses))):
        containers = await client.list_containers()

    assert set(containers) == {"kaspa-node", "kasia-indexer", "k-indexer", "portainer"}
    assert containers["kaspa-node"].running and containers["kaspa-node"].health == "healthy"
    assert containers["kasia-indexer"].health == "starting"
    assert not containers["k-indexer"].running
    assert containers["portainer"].health is None


@pytest.mark.asyncio
async def test_unavailable_daemon_returns_none_and_is_cached():
    client = DockerClient()
    run = AsyncMock(return_value=(1, "", "Cannot connect to the Docker daemon"))

    with patch.object(client, "run", run):
        assert await client.list_containers() is None
        assert await client.list_containers() is None

    assert run.await_count == 1


@pytest.mark.asyncio
async def test_missing_binary_reports_unavailable():
    client = DockerClient(binary="definitely-not-docker-binary")

    assert await client.is_available() is False
    code, _, _ = await client.run("ps")
    assert code == -1


@pytest.mark.asyncio
async def test_logs_and_stats():
    client = DockerClient()
    responses = {
        ("version",): (0, "27.0.3", ""),
        ("logs",): (0, "out line\n", "err line\n"),
        ("stats",): (0, "kaspa-node\t12.5%\t1.2GiB / 8GiB\t15.0%\n", ""),
    }

    with patch.object(client, "run", AsyncMock(side_effect=fake_run(responses))):
        assert await client.logs("kaspa-node", tail=10) == "out line\nerr line\n"
        stats = await client.container_stats()

    assert stats == {"kaspa-node": {"cpu": "12.5%", "memory": "1.2GiB / 8GiB", "memoryPercent": "15.0%"}}


def test_log_stream_command():
    assert DockerClient().log_stream_command("kaspa-node", tail=20) == [
        "docker", "logs", "-f", "--tail=20", "kaspa-node",
    ]
