"""
StackOrchestrator tests.

Real resolver, store, health monitor and fallback engine; docker, the node
prober and the broadcaster are mocked so no background loops or network
calls run.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from conftest import running
from stack_orchestration.broadcast.manager import EventBroadcaster
from stack_orchestration.core.errors import Corrupt, Invalid, NotFound, Ok
from stack_orchestration.core.orchestrator import Role, StackOrchestrator
from stack_orchestration.core.settings import StackSettings
from stack_orchestration.networking.prober import ConnectionResult, NodeRpcProber
from stack_orchestration.state.models import Phase


@pytest.fixture
def settings(state_path):
    return StackSettings(state_path=state_path)


@pytest.fixture
def mock_broadcaster():
    broadcaster = MagicMock(spec=EventBroadcaster)
    broadcaster.registry = MagicMock()
    broadcaster.registry.live.return_value = []
    return broadcaster


@pytest.fixture
def mock_prober():
    prober = MagicMock(spec=NodeRpcProber)
    prober.get_status.return_value = {"configuredPort": 16110}
    return prober


@pytest.fixture
def orchestrator(settings, catalog, store, mock_docker, mock_prober, mock_broadcaster):
    return StackOrchestrator(
        settings,
        role=Role.INSTALLER,
        catalog=catalog,
        store=store,
        docker=mock_docker,
        node_prober=mock_prober,
        broadcaster=mock_broadcaster,
    )


class TestInstallationRecord:

    def test_get_state_before_install(self, orchestrator):
        assert isinstance(orchestrator.get_state(), NotFound)
        assert orchestrator.installed_profiles() == []
        assert orchestrator.get_status()["state"] == "not_found"

    def test_record_installation(self, orchestrator, store):
        result = orchestrator.record_installation(["kasia-app", "kaspa-node"], {"PUBLIC_NODE": True})

        assert isinstance(result, Ok)
        state = store.read().value
        assert set(state.profiles.selected) == {"kaspa-node", "kasia-app"}
        assert state.profiles.selected[0] == "kaspa-node"
        assert state.configuration == {"KASPA_NETWORK": "mainnet", "PUBLIC_NODE": True}
        assert {s.name for s in state.services} == {"kaspa-node", "kasia-app"}
        assert state.summary.missing == 2
        assert state.phase == Phase.COMPLETE
        assert orchestrator.installed_profiles() == state.profiles.selected

    def test_record_installation_migrates_legacy_ids(self, orchestrator):
        result = orchestrator.record_installation(["core", "indexer-services"])

        assert isinstance(result, Ok)
        assert set(result.value.profiles.selected) == {"kaspa-node", "kasia-indexer", "k-indexer-bundle"}
        assert "timescaledb-kindexer" in orchestrator.installed_services()

    def test_record_installation_unknown_profile(self, orchestrator, store):
        result = orchestrator.record_installation(["kaspa-node", "nope"])

        assert isinstance(result, Invalid)
        assert isinstance(store.read(), NotFound)

    def test_corrupt_state_is_reported(self, orchestrator, state_path):
        state_path.parent.mkdir(parents=True)
        state_path.write_text("{ not json")

        assert isinstance(orchestrator.get_state(), Corrupt)
        assert orchestrator.get_status()["state"] == "corrupt"

    @pytest.mark.asyncio
    async def test_sync_services_reads_docker(self, orchestrator, store, mock_docker):
        orchestrator.record_installation(["kaspa-node", "kasia-indexer"])
        mock_docker.list_containers.return_value = {"kaspa-node": running("kaspa-node")}

        result = await orchestrator.sync_services()

        assert isinstance(result, Ok)
        services = {s.name: s for s in store.read().value.services}
        assert services["kaspa-node"].running and services["kaspa-node"].exists
        assert not services["kasia-indexer"].exists
        assert store.read().value.summary.running == 1

    @pytest.mark.asyncio
    async def test_sync_services_without_docker(self, orchestrator, mock_docker):
        orchestrator.record_installation(["kaspa-node"])
        mock_docker.list_containers.return_value = None

        result = await orchestrator.sync_services()

        assert isinstance(result, Invalid)
        assert result.problems[0].code == "docker_unavailable"

    @pytest.mark.asyncio
    async def test_set_operator_busy(self, orchestrator, store):
        orchestrator.record_installation(["kaspa-node"])

        assert isinstance(await orchestrator.set_operator_busy(True), Ok)
        assert store.read().value.operator_busy is True

    @pytest.mark.asyncio
    async def test_installer_actions_use_async_file_io(self, orchestrator, store, mock_docker):
        orchestrator.record_installation(["kaspa-node"])
        mock_docker.list_containers.return_value = {"kaspa-node": running("kaspa-node")}

        with patch.object(store, "read", side_effect=AssertionError("blocking read")), \
                patch.object(store, "write", side_effect=AssertionError("blocking write")), \
                patch.object(store, "update", side_effect=AssertionError("blocking update")):
            assert isinstance(await orchestrator.sync_services(), Ok)
            assert isinstance(await orchestrator.set_operator_busy(True), Ok)
            assert isinstance(await orchestrator.add_profile("kasia-indexer"), Ok)
            assert isinstance(await orchestrator.remove_profile("kasia-indexer"), Ok)

        assert store.read().value.revision == 5


class TestProfileChanges:

    @pytest.mark.asyncio
    async def test_add_profile(self, orchestrator, store):
        orchestrator.record_installation(["kaspa-node"])

        result = await orchestrator.add_profile("kasia-indexer")

        assert isinstance(result, Ok)
        state = store.read().value
        assert state.profiles.selected == ["kaspa-node", "kasia-indexer"]
        assert state.profiles.count == 2
        assert {s.name for s in state.services} == {"kaspa-node", "kasia-indexer"}

    @pytest.mark.asyncio
    async def test_add_conflicting_profile(self, orchestrator, store):
        orchestrator.record_installation(["kaspa-node"])
        revision = store.read().value.revision

        result = await orchestrator.add_profile("kaspa-archive-node")

        assert isinstance(result, Invalid)
        assert "profile_conflict" in {p.code for p in result.problems}
        assert store.read().value.revision == revision

    @pytest.mark.asyncio
    async def test_add_profile_without_installation(self, orchestrator):
        assert isinstance(await orchestrator.add_profile("kaspa-node"), NotFound)

    @pytest.mark.asyncio
    async def test_remove_profile(self, orchestrator, store):
        orchestrator.record_installation(["kaspa-node", "kasia-indexer"])

        result = await orchestrator.remove_profile("kasia-indexer")

        assert isinstance(result, Ok)
        assert store.read().value.profiles.selected == ["kaspa-node"]
        assert [s.name for s in store.read().value.services] == ["kaspa-node"]

    @pytest.mark.asyncio
    async def test_remove_last_prerequisite_is_rejected(self, orchestrator):
        orchestrator.record_installation(["kaspa-node", "kasia-indexer"])

        result = await orchestrator.remove_profile("kaspa-node")

        assert isinstance(result, Invalid)
        assert "prerequisite_lost" in {p.code for p in result.problems}

    def test_validate_addition_uses_recorded_installation(self, orchestrator):
        orchestrator.record_installation(["kaspa-node"])

        result = orchestrator.validate_addition("k-social-app")

        assert not result.can_add
        assert "missing_dependency" in {p.code for p in result.errors}

    def test_list_profiles_flags_installed(self, orchestrator):
        orchestrator.record_installation(["kaspa-node"])

        profiles = {p["id"]: p for p in orchestrator.list_profiles()}

        assert profiles["kaspa-node"]["installed"] is True
        assert profiles["kasia-app"]["installed"] is False

    def test_startup_order(self, orchestrator):
        result = orchestrator.startup_order(["k-social-app", "k-indexer-bundle", "kaspa-node"])

        assert isinstance(result, Ok)
        assert result.value.index("kaspa-node") < result.value.index("k-indexer-bundle")
        assert result.value.index("k-indexer-bundle") < result.value.index("k-social-app")

    def test_get_profile(self, orchestrator):
        assert orchestrator.get_profile("kasia-app")["services"] == ["kasia-app"]
        assert orchestrator.get_profile("nope") is None


class TestMonitorRole:

    def test_monitor_opens_state_read_only(self, settings, catalog, mock_docker, mock_prober, mock_broadcaster):
        orchestrator = StackOrchestrator(
            settings, role=Role.MONITOR, catalog=catalog, docker=mock_docker,
            node_prober=mock_prober, broadcaster=mock_broadcaster,
        )
        try:
            result = orchestrator.record_installation(["kaspa-node"])

            assert isinstance(result, Invalid)
            assert result.problems[0].code == "read_only"
            assert not settings.state_path.exists()
        finally:
            orchestrator.store.close()

    def test_monitor_reads_installer_writes(self, orchestrator, settings, catalog, mock_docker, mock_prober,
                                            mock_broadcaster):
        orchestrator.record_installation(["kaspa-node"])
        monitor = StackOrchestrator(
            settings, role=Role.MONITOR, catalog=catalog, docker=mock_docker,
            node_prober=mock_prober, broadcaster=mock_broadcaster,
        )
        try:
            assert isinstance(monitor.get_state(), Ok)
            assert monitor.installed_profiles() == ["kaspa-node"]
        finally:
            monitor.store.close()


class TestEvents:

    @pytest.mark.asyncio
    async def test_state_change_is_broadcast(self, orchestrator, store, mock_broadcaster):
        written = orchestrator.record_installation(["kaspa-node"])

        await orchestrator._on_state_changed(written)

        message = mock_broadcaster.broadcast.await_args.args[0]
        assert message["type"] == "state_changed"
        assert message["status"] == "ok"
        assert message["state"]["profiles"]["selected"] == ["kaspa-node"]

    @pytest.mark.asyncio
    async def test_state_removal_is_broadcast(self, orchestrator, mock_broadcaster):
        await orchestrator._on_state_changed(NotFound("gone"))

        message = mock_broadcaster.broadcast.await_args.args[0]
        assert message == {"type": "state_changed", "status": "not_found"}
        assert orchestrator.state is None

    @pytest.mark.asyncio
    async def test_node_disconnect_starts_retry(self, orchestrator, mock_broadcaster, mock_prober):
        down = ConnectionResult(False, error="Cannot connect to Kaspa node")

        await orchestrator._on_node_status(down)
        await orchestrator._on_node_status(down)

        assert mock_broadcaster.broadcast.await_count == 1
        assert mock_broadcaster.broadcast.await_args.args[0]["type"] == "node_connection"
        mock_prober.start_retry.assert_called_once()

    @pytest.mark.asyncio
    async def test_node_reconnect_broadcasts_once(self, orchestrator, mock_broadcaster, mock_prober):
        await orchestrator._on_node_status(ConnectionResult(True, candidate=16110))
        await orchestrator._on_node_status(ConnectionResult(True, candidate=16110))

        assert mock_broadcaster.broadcast.await_count == 1
        mock_prober.start_retry.assert_not_called()

    @pytest.mark.asyncio
    async def test_health_poll_skipped_without_observers(self, orchestrator, mock_broadcaster):
        await orchestrator._on_health_poll({})

        mock_broadcaster.broadcast_service_update.assert_not_called()

    @pytest.mark.asyncio
    async def test_service_logs(self, orchestrator, mock_docker):
        assert await orchestrator.service_logs("kaspa-node", 10) == "line 1\nline 2"
        mock_docker.logs.assert_awaited_with("kaspa-node", 10)
        assert await orchestrator.service_logs("nope") is None

    def test_cross_launch_links(self, orchestrator):
        links = orchestrator.cross_launch_links("kasia-app")

        assert links["add"] == "http://localhost:3000/?action=add&profile=kasia-app&returnUrl=http%3A%2F%2Flocalhost%3A8080"
        assert links["reconfigure"].startswith("http://localhost:3000/?action=modify")
