"""
StackOrchestrator wires the orchestration components together for one process.

Two processes run it: the installer, which owns writes to the installation
record, and the monitoring console, which opens the record read-only and
watches it. All components are created here (or injected) and nothing is
shared through module-level state, so several orchestrators can coexist in
one interpreter.

This is a pure business logic class with no FastAPI dependencies; the API
layer is created separately by api.create_app.
"""

import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from stack_orchestration.broadcast.manager import EventBroadcaster
from stack_orchestration.core.errors import Corrupt, ErrorKind, Invalid, NotFound, Ok, Problem
from stack_orchestration.core.settings import StackSettings
from stack_orchestration.fallback.engine import FallbackEngine
from stack_orchestration.health.docker_client import DockerClient
from stack_orchestration.health.monitor import HealthMonitor, HealthVerdict
from stack_orchestration.networking.cross_launch import CrossLaunchNavigator
from stack_orchestration.networking.prober import ConnectionResult, NodeRpcProber, StatusPoller
from stack_orchestration.profiles.loader import ProfileCatalog, ProfileCatalogLoader
from stack_orchestration.profiles.resolver import AdditionResult, DependencyResolver, RemovalResult
from stack_orchestration.state.models import FallbackStrategy, InstallationState, Phase, ServiceEntry
from stack_orchestration.state.store import ReadResult, SharedStateStore

logger = logging.getLogger(__name__)


class Role(str, Enum):
    INSTALLER = "installer"
    MONITOR = "monitor"


class StackOrchestrator:
    """
    Owns the resolver, state store, prober, health monitor, fallback engine and
    broadcaster for one process, and runs their background loops.
    """

    def __init__(
        self,
        settings: Optional[StackSettings] = None,
        role: Role = Role.MONITOR,
        catalog: Optional[ProfileCatalog] = None,
        store: Optional[SharedStateStore] = None,
        docker: Optional[DockerClient] = None,
        node_prober: Optional[NodeRpcProber] = None,
        health: Optional[HealthMonitor] = None,
        fallback: Optional[FallbackEngine] = None,
        broadcaster: Optional[EventBroadcaster] = None,
    ):
        self.settings = settings or StackSettings()
        self.role = role
        s = self.settings

        self.catalog = catalog or ProfileCatalogLoader().load(s.catalog_path)
        if self.catalog is None:
            raise RuntimeError(f"Profile catalog could not be loaded from {s.catalog_path or 'package data'}")
        self.resolver = DependencyResolver(self.catalog)

        self.store = store or SharedStateStore(
            s.state_path,
            debounce_seconds=s.state_debounce_seconds,
            poll_interval_seconds=s.state_poll_interval_seconds,
            read_only=role == Role.MONITOR or s.read_only_state,
        )
        self.docker = docker or DockerClient(timeout=s.docker_timeout_seconds)
        self.node_prober = node_prober or NodeRpcProber(
            host=s.node_host,
            configured_port=s.node_rpc_port,
            timeout=s.probe_timeout_seconds,
            retry_interval=s.node_retry_interval_seconds,
        )
        self.health = health or HealthMonitor(
            self.catalog,
            self.docker,
            node_prober=self.node_prober,
            services_provider=self.installed_services,
            poll_interval=s.service_poll_interval_seconds,
            node_p2p_port=s.node_p2p_port,
        )
        self.fallback = fallback or FallbackEngine(
            self.resolver, self.store, self.health, self.docker, failure_threshold=s.failure_threshold
        )
        self.broadcaster = broadcaster or EventBroadcaster(
            self.docker,
            self.catalog,
            heartbeat_interval=s.heartbeat_interval_seconds,
            default_update_interval_ms=s.default_update_interval_ms,
            inactive_timeout=s.inactive_cleanup_seconds,
            log_idle_grace=s.log_idle_grace_seconds,
            log_kill_grace=s.log_kill_grace_seconds,
        )
        self.navigator = CrossLaunchNavigator(s.wizard_url, s.dashboard_url)
        self.node_status = StatusPoller(
            self.node_prober.connect, s.node_status_poll_seconds, on_result=self._on_node_status, name="node-rpc"
        )

        self._state: Optional[InstallationState] = None
        self._state_status = "unknown"
        self._unwatch: Optional[Callable[[], None]] = None
        self._node_connected: Optional[bool] = None
        self._started = False

    # ===== Lifecycle =====

    async def start(self):
        """Start background tasks"""
        if self._started:
            return
        self._started = True
        self._apply_read_result(await self.store.aread())
        await self.fallback.restore_persisted()

        self.health.add_listener(self.fallback.record_check)
        self.health.add_poll_listener(self._on_health_poll)
        self.fallback.add_listener(self.broadcaster.broadcast)
        self._unwatch = self.store.watch(self._on_state_changed)

        await self.broadcaster.start()
        await self.health.start()
        self.node_status.start()
        logger.info(f"StackOrchestrator started as {self.role.value}")

    async def stop(self):
        """Stop background tasks"""
        if self._unwatch is not None:
            self._unwatch()
            self._unwatch = None
        await self.node_status.stop()
        await self.node_prober.aclose()
        await self.health.stop()
        await self.broadcaster.shutdown()
        self.store.close()
        self._started = False
        logger.info("StackOrchestrator stopped")

    # ===== Installation state =====

    def _apply_read_result(self, result: ReadResult) -> None:
        if isinstance(result, Ok):
            self._state = result.value
            self._state_status = "ok"
        elif isinstance(result, NotFound):
            self._state = None
            self._state_status = "not_found"
        else:
            self._state = None
            self._state_status = "corrupt"
            logger.error("Installation state is corrupt: %s", "; ".join(p.message for p in result.problems))

    async def _on_state_changed(self, result: ReadResult) -> None:
        self._apply_read_result(result)
        message: Dict[str, Any] = {"type": "state_changed", "status": self._state_status}
        if isinstance(result, Ok):
            message["state"] = result.value.to_document()
        elif isinstance(result, Corrupt):
            message["problems"] = [p.to_dict() for p in result.problems]
        await self.broadcaster.broadcast(message)

    def _remember(self, result):
        if isinstance(result, Ok):
            self._state = result.value
            self._state_status = "ok"
        return result

    @property
    def state(self) -> Optional[InstallationState]:
        return self._state

    def get_state(self) -> ReadResult:
        result = self.store.read()
        self._apply_read_result(result)
        return result

    def has_installation(self) -> bool:
        return self.store.has_installation()

    def installed_profiles(self) -> List[str]:
        return list(self._state.profiles.selected) if self._state else []

    def installed_services(self) -> List[str]:
        if self._state is None:
            return []
        if self._state.services:
            return [s.name for s in self._state.services]
        return [s.name for s in self.catalog.services(self._state.profiles.selected)]

    def record_installation(
        self, profile_ids: List[str], configuration: Optional[Dict[str, Any]] = None,
        phase: Phase = Phase.COMPLETE,
    ) -> Union[Ok[InstallationState], Invalid]:
        """Persist a fresh installation record for a validated profile selection."""
        profile_ids = self.catalog.migrate_ids(profile_ids)
        order = self.resolver.startup_order_for(profile_ids)
        if not isinstance(order, Ok):
            return order
        selected = [p.id for p in order.value]
        defaults: Dict[str, Any] = {}
        for profile in order.value:
            defaults.update(profile.configuration)
        defaults.update(configuration or {})
        services = self._service_entries(selected)
        return self._remember(self.store.write(InstallationState.create(selected, services, defaults, phase)))

    def _service_entries(self, profile_ids: List[str],
                         running: Optional[Dict[str, bool]] = None) -> List[ServiceEntry]:
        entries: List[ServiceEntry] = []
        seen = set()
        for profile in self.catalog.all():
            if profile.id not in profile_ids:
                continue
            for service in profile.services:
                if service.name in seen:
                    continue
                seen.add(service.name)
                state = (running or {}).get(service.container)
                entries.append(ServiceEntry(
                    name=service.name,
                    profile=profile.id,
                    running=bool(state),
                    exists=state is not None,
                    container_name=service.container,
                    ports=[service.health_check.port] if service.health_check and service.health_check.port else [],
                ))
        return entries

    async def sync_services(self):
        """Refresh running/exists flags in the record from docker."""
        current = await self.store.aread()
        if not isinstance(current, Ok):
            return current
        containers = await self.docker.list_containers()
        if containers is None:
            return Invalid([Problem(ErrorKind.CONNECTIVITY, "docker_unavailable", "Docker not available")])
        running = {name: info.running for name, info in containers.items()}
        entries = self._service_entries(current.value.profiles.selected, running)
        return self._remember(await self.store.aupdate({"services": [e.model_dump(by_alias=True) for e in entries]}))

    async def add_profile(self, profile_id: str) -> Union[Ok[InstallationState], NotFound, Corrupt, Invalid]:
        current = await self.store.aread()
        if not isinstance(current, Ok):
            return current
        validation = self.validate_addition(profile_id, current.value.profiles.selected)
        if not validation.can_add:
            return Invalid(validation.errors)
        return await self._update_selection([*current.value.profiles.selected, profile_id], current.value)

    async def remove_profile(self, profile_id: str) -> Union[Ok[InstallationState], NotFound, Corrupt, Invalid]:
        current = await self.store.aread()
        if not isinstance(current, Ok):
            return current
        validation = self.resolver.validate_removal(profile_id, current.value.profiles.selected)
        if not validation.can_remove:
            return Invalid(validation.errors)
        remaining = [p for p in current.value.profiles.selected if p != profile_id]
        return await self._update_selection(remaining, current.value)

    async def _update_selection(self, profile_ids: List[str], state: InstallationState):
        order = self.resolver.startup_order_for(profile_ids)
        if not isinstance(order, Ok):
            return order
        selected = [p.id for p in order.value]
        previous = {s.name: s for s in state.services}
        entries = []
        for entry in self._service_entries(selected):
            entries.append(previous.get(entry.name, entry).model_copy(update={"profile": entry.profile}))
        return self._remember(await self.store.aupdate({
            "profiles": selected,
            "services": [e.model_dump(by_alias=True) for e in entries],
        }))

    async def set_operator_busy(self, busy: bool):
        return self._remember(await self.store.aupdate({"operatorBusy": busy}))

    # ===== Profiles =====

    def _node_healthy(self) -> Optional[bool]:
        verdicts = []
        for name, verdict in self.health.latest.items():
            descriptor = self.catalog.get_service(name)
            if descriptor is not None and descriptor.satisfies("kaspa-node"):
                verdicts.append(verdict)
        if not verdicts:
            return None
        return any(v.healthy for v in verdicts)

    def validate_addition(self, profile_id: str, current: Optional[List[str]] = None) -> AdditionResult:
        current = self.installed_profiles() if current is None else current
        return self.resolver.validate_addition(profile_id, current, node_healthy=self._node_healthy())

    def validate_removal(self, profile_id: str, current: Optional[List[str]] = None) -> RemovalResult:
        current = self.installed_profiles() if current is None else current
        return self.resolver.validate_removal(profile_id, current)

    def list_profiles(self) -> List[Dict[str, Any]]:
        installed = set(self.installed_profiles())
        return [{**p.to_api_response(), "installed": p.id in installed} for p in self.catalog.all()]

    def get_profile(self, profile_id: str) -> Optional[Dict[str, Any]]:
        profile = self.catalog.get(profile_id)
        return profile.to_api_response() if profile else None

    def profile_graph(self, profile_ids: Optional[List[str]] = None) -> Dict[str, Any]:
        return self.resolver.export_graph(profile_ids if profile_ids is not None else self.installed_profiles() or None)

    def startup_order(self, profile_ids: List[str]) -> Union[Ok[List[str]], Invalid]:
        order = self.resolver.startup_order_for(self.catalog.migrate_ids(profile_ids))
        if not isinstance(order, Ok):
            return order
        return Ok([p.id for p in order.value])

    # ===== Health =====

    async def service_statuses(self, refresh: bool = False) -> Dict[str, HealthVerdict]:
        if refresh or not self.health.latest:
            return await self.health.check_services(self.installed_services())
        return dict(self.health.latest)

    async def service_status(self, service: str) -> HealthVerdict:
        return await self.health.get_status(service)

    async def service_logs(self, service: str, tail: int = 100) -> Optional[str]:
        descriptor = self.catalog.get_service(service)
        if descriptor is None:
            return None
        return await self.docker.logs(descriptor.container, tail)

    async def reconnect_node(self) -> ConnectionResult:
        """Forget the cached port and probe the full chain again."""
        self.node_prober.clear_cache()
        return await self.node_status.poll_once()

    async def _on_health_poll(self, verdicts: Dict[str, HealthVerdict]) -> None:
        if not self.broadcaster.registry.live():
            return
        await self.broadcaster.broadcast_service_update([v.to_dict() for v in verdicts.values()])
        stats = await self.docker.container_stats()
        if stats is not None:
            await self.broadcaster.broadcast_resource_update({"containers": stats})

    async def node_connection(self) -> ConnectionResult:
        latest = self.node_status.latest
        if latest is not None:
            return latest
        return await self.node_prober.connect()

    async def _on_node_status(self, result: ConnectionResult) -> None:
        previously = self._node_connected
        self._node_connected = result.connected
        if result.connected == previously:
            return
        await self.broadcaster.broadcast({"type": "node_connection", "data": result.to_dict()})
        if not result.connected:
            logger.warning(result.error)
            self.node_prober.start_retry(self._on_node_recovered)

    async def _on_node_recovered(self, result: ConnectionResult) -> None:
        await self.broadcaster.broadcast_alert({
            "severity": "info",
            "message": f"Kaspa node reachable again on port {result.port}",
        })

    # ===== Fallback =====

    async def choose_fallback(self, service: str, strategy: FallbackStrategy):
        return await self.fallback.choose(service, strategy)

    async def revert_fallback(self, service: str):
        return await self.fallback.revert_to_local(service)

    def fallback_status(self) -> Dict[str, Any]:
        status = self.fallback.get_status()
        status["active"] = self._state.fallback.model_dump(mode="json", by_alias=True) if self._state and self._state.fallback else None
        return status

    async def troubleshoot(self, service: str) -> Dict[str, Any]:
        verdict = self.health.latest.get(service)
        if verdict is None:
            verdict = await self.health.get_status(service)
        return await self.fallback.troubleshooting_info(service, verdict)

    # ===== Cross launch =====

    def cross_launch_links(self, profile_id: str) -> Dict[str, str]:
        return {
            "add": self.navigator.add_profile_url(profile_id),
            "modify": self.navigator.modify_profile_url(profile_id),
            "remove": self.navigator.remove_profile_url(profile_id),
            "reconfigure": self.navigator.reconfigure_url(),
        }

    def get_status(self) -> Dict[str, Any]:
        return {
            "role": self.role.value,
            "state": self._state_status,
            "profiles": self.installed_profiles(),
            "health": self.health.summary(),
            "node": self.node_prober.get_status(),
            "fallback": self.fallback.get_status(),
            "broadcast": self.broadcaster.get_stats(),
        }
