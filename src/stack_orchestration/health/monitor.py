"""
Service and node health monitoring.

A service's verdict comes from docker container state plus, when the service
declares one, its own health check. Node services are judged on RPC and P2P
reachability; sync progress only produces a warning so dependents are not
held back by a long initial sync.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx

from stack_orchestration.networking.prober import NodeRpcProber, rpc_result
from stack_orchestration.profiles.loader import ProfileCatalog
from stack_orchestration.profiles.models import HealthCheckSpec, HealthCheckType, ServiceDescriptor
from stack_orchestration.state.models import utc_now_iso
from .docker_client import ContainerInfo, DockerClient

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 10.0


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    STOPPED = "stopped"
    STARTING = "starting"
    NOT_FOUND = "not_found"


class FailureReason(str, Enum):
    CONTAINER_NOT_FOUND = "container_not_found"
    CONTAINER_NOT_RUNNING = "container_not_running"
    HEALTH_CHECK_FAILED = "health_check_failed"
    DETECTION_ERROR = "detection_error"


@dataclass
class SubCheck:
    name: str
    ok: bool
    required: bool = True
    message: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result = {"name": self.name, "ok": self.ok, "required": self.required}
        if self.message:
            result["message"] = self.message
        if self.details:
            result["details"] = self.details
        return result


@dataclass
class HealthVerdict:
    service: str
    status: HealthStatus
    checked_at: str = field(default_factory=utc_now_iso)
    message: Optional[str] = None
    reason: Optional[FailureReason] = None
    sub_checks: Dict[str, SubCheck] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY

    @property
    def failed(self) -> bool:
        """Starting services are neither healthy nor failed."""
        return self.status in (HealthStatus.UNHEALTHY, HealthStatus.STOPPED, HealthStatus.NOT_FOUND)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "service": self.service,
            "status": self.status.value,
            "checkedAt": self.checked_at,
        }
        if self.message:
            result["message"] = self.message
        if self.reason:
            result["reason"] = self.reason.value
        if self.sub_checks:
            result["checks"] = {name: check.to_dict() for name, check in self.sub_checks.items()}
        if self.warnings:
            result["warnings"] = list(self.warnings)
        return result


VerdictListener = Callable[[HealthVerdict], Any]


class HealthMonitor:
    """Classifies service health and polls installed services on an interval."""

    def __init__(
        self,
        catalog: ProfileCatalog,
        docker: DockerClient,
        node_prober: Optional[NodeRpcProber] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        services_provider: Optional[Callable[[], List[str]]] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        node_p2p_port: int = 16111,
        retry_attempts: int = 3,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 30.0,
    ):
        self.catalog = catalog
        self.docker = docker
        self.node_prober = node_prober
        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=10.0)
        self._services_provider = services_provider or (lambda: [])
        self.poll_interval = poll_interval
        self.node_p2p_port = node_p2p_port
        self.retry_attempts = retry_attempts
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.latest: Dict[str, HealthVerdict] = {}
        self._listeners: List[VerdictListener] = []
        self._poll_listeners: List[Callable[[Dict[str, HealthVerdict]], Any]] = []
        self._poll_task: Optional[asyncio.Task] = None

    # ===== Single service =====

    async def get_status(self, service_name: str) -> HealthVerdict:
        descriptor = self.catalog.get_service(service_name)
        if descriptor is None:
            return HealthVerdict(service_name, HealthStatus.NOT_FOUND, message=f"Unknown service {service_name}")

        containers = await self.docker.list_containers()
        if containers is None:
            return HealthVerdict(service_name, HealthStatus.NOT_FOUND, message="Docker not available",
                                 reason=FailureReason.DETECTION_ERROR)

        info = containers.get(descriptor.container)
        return await self._classify(descriptor, info)

    async def _classify(self, descriptor: ServiceDescriptor, info: Optional[ContainerInfo]) -> HealthVerdict:
        name = descriptor.name
        if info is None:
            return HealthVerdict(name, HealthStatus.NOT_FOUND, message="Container not found",
                                 reason=FailureReason.CONTAINER_NOT_FOUND)
        if not info.running:
            return HealthVerdict(name, HealthStatus.STOPPED, message=f"Container {info.state}: {info.status}",
                                 reason=FailureReason.CONTAINER_NOT_RUNNING)
        if info.health == "starting":
            return HealthVerdict(name, HealthStatus.STARTING, message="Container health check starting")

        spec = descriptor.health_check
        if spec is None or spec.type == HealthCheckType.CONTAINER:
            if info.health == "unhealthy":
                return HealthVerdict(name, HealthStatus.UNHEALTHY, message="Container reports unhealthy",
                                     reason=FailureReason.HEALTH_CHECK_FAILED)
            return HealthVerdict(name, HealthStatus.HEALTHY, message="Container running")

        if spec.type == HealthCheckType.RPC and descriptor.critical:
            return await self.check_node(descriptor)

        ok, detail = await self.check_with_retry(descriptor)
        if ok:
            return HealthVerdict(name, HealthStatus.HEALTHY, message=detail)
        return HealthVerdict(name, HealthStatus.UNHEALTHY, message=detail, reason=FailureReason.HEALTH_CHECK_FAILED)

    async def check_with_retry(self, descriptor: ServiceDescriptor) -> Tuple[bool, str]:
        """Run the declared check with exponential backoff between attempts."""
        detail = "no attempts made"
        for attempt in range(1, self.retry_attempts + 1):
            ok, detail = await self.run_check(descriptor)
            if ok:
                return True, detail
            if attempt < self.retry_attempts:
                delay = min(self.retry_base_delay * (2 ** (attempt - 1)), self.retry_max_delay)
                logger.debug(f"Health check for {descriptor.name} failed ({detail}), retrying in {delay}s")
                await asyncio.sleep(delay)
        return False, detail

    async def run_check(self, descriptor: ServiceDescriptor) -> Tuple[bool, str]:
        spec = descriptor.health_check
        try:
            if spec.type == HealthCheckType.HTTP:
                response = await self._http_client.get(spec.url, timeout=spec.timeout)
                if response.status_code < 400:
                    return True, f"HTTP {response.status_code}"
                return False, f"HTTP {response.status_code}"
            if spec.type == HealthCheckType.RPC:
                await self._http_client.post(spec.url, json={"method": "ping", "params": {}}, timeout=spec.timeout)
                return True, "RPC responding"
            if spec.type == HealthCheckType.TCP:
                return await self._tcp_check(spec.host, spec.port, spec.timeout)
            if spec.type == HealthCheckType.POSTGRES:
                code, out, err = await self.docker.exec(
                    descriptor.container, "pg_isready", "-h", "localhost", timeout=spec.timeout
                )
                return code == 0, (out or err).strip() or f"pg_isready exited {code}"
        except httpx.TimeoutException:
            return False, "timeout"
        except httpx.HTTPError as e:
            return False, str(e) or e.__class__.__name__
        return True, "Container running"

    async def _tcp_check(self, host: str, port: int, timeout: float) -> Tuple[bool, str]:
        try:
            _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
        except asyncio.TimeoutError:
            return False, f"{host}:{port} timeout"
        except OSError as e:
            return False, f"{host}:{port} {e.strerror or e}"
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True, f"{host}:{port} accepting connections"

    # ===== Node =====

    async def check_node(self, descriptor: ServiceDescriptor) -> HealthVerdict:
        """RPC and P2P are required; sync only warns."""
        spec: HealthCheckSpec = descriptor.health_check
        checks: Dict[str, SubCheck] = {}
        warnings: List[str] = []

        dag_info: Optional[Dict[str, Any]] = None
        try:
            dag_info = await self._node_rpc(spec, "getBlockDagInfo")
            checks["rpc"] = SubCheck("rpc", True, message="RPC responding")
        except (httpx.HTTPError, ValueError) as e:
            checks["rpc"] = SubCheck("rpc", False, message=str(e) or "RPC not responding")

        p2p_ok, p2p_detail = await self._tcp_check(spec.host, self.node_p2p_port, spec.timeout)
        checks["p2p"] = SubCheck("p2p", p2p_ok, message=p2p_detail)

        if dag_info is not None:
            synced = bool(dag_info.get("isSynced", False))
            blocks = dag_info.get("blockCount")
            headers = dag_info.get("headerCount")
            progress = round(blocks / headers * 100) if blocks and headers else None
            checks["sync"] = SubCheck("sync", synced, required=False,
                                      message="Synced" if synced else "Node is still syncing",
                                      details={"blockCount": blocks, "headerCount": headers, "progress": progress})
            if not synced:
                warnings.append(f"Node is syncing ({progress}%)" if progress is not None else "Node is syncing")

        failed = [c for c in checks.values() if c.required and not c.ok]
        if failed:
            return HealthVerdict(
                descriptor.name,
                HealthStatus.UNHEALTHY,
                message="; ".join(f"{c.name}: {c.message}" for c in failed),
                reason=FailureReason.HEALTH_CHECK_FAILED,
                sub_checks=checks,
                warnings=warnings,
            )
        return HealthVerdict(descriptor.name, HealthStatus.HEALTHY, message="Node healthy",
                             sub_checks=checks, warnings=warnings)

    async def _node_rpc(self, spec: HealthCheckSpec, method: str) -> Dict[str, Any]:
        if self.node_prober is not None:
            return await self.node_prober.rpc_call(method)
        response = await self._http_client.post(
            spec.url, json={"jsonrpc": "2.0", "method": method, "params": [], "id": 1}, timeout=spec.timeout
        )
        response.raise_for_status()
        return rpc_result(response.json())

    # ===== Polling =====

    async def check_services(self, service_names: List[str]) -> Dict[str, HealthVerdict]:
        """Check several services against a single docker listing."""
        containers = await self.docker.list_containers()
        verdicts: Dict[str, HealthVerdict] = {}

        async def one(name: str) -> HealthVerdict:
            descriptor = self.catalog.get_service(name)
            if descriptor is None:
                return HealthVerdict(name, HealthStatus.NOT_FOUND, message=f"Unknown service {name}")
            if containers is None:
                return HealthVerdict(name, HealthStatus.NOT_FOUND, message="Docker not available",
                                     reason=FailureReason.DETECTION_ERROR)
            return await self._classify(descriptor, containers.get(descriptor.container))

        results = await asyncio.gather(*(one(n) for n in service_names), return_exceptions=True)
        for name, result in zip(service_names, results):
            if isinstance(result, Exception):
                logger.error(f"Health check for {name} raised: {result}")
                result = HealthVerdict(name, HealthStatus.NOT_FOUND, message=str(result),
                                       reason=FailureReason.DETECTION_ERROR)
            verdicts[name] = result
        return verdicts

    def add_listener(self, listener: VerdictListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def add_poll_listener(self, listener: Callable[[Dict[str, HealthVerdict]], Any]) -> None:
        """Called once per poll with every verdict of that poll."""
        self._poll_listeners.append(listener)

    async def poll_once(self) -> Dict[str, HealthVerdict]:
        verdicts = await self.check_services(list(self._services_provider()))
        self.latest = verdicts
        for verdict in verdicts.values():
            for listener in list(self._listeners):
                try:
                    outcome = listener(verdict)
                    if asyncio.iscoroutine(outcome):
                        await outcome
                except Exception:
                    logger.exception(f"Health listener failed for {verdict.service}")
        for listener in list(self._poll_listeners):
            try:
                outcome = listener(verdicts)
                if asyncio.iscoroutine(outcome):
                    await outcome
            except Exception:
                logger.exception("Health poll listener failed")
        return verdicts

    async def _poll_loop(self) -> None:
        while True:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Health poll failed: {e}")
            await asyncio.sleep(self.poll_interval)

    async def start(self) -> None:
        if self._poll_task is None or self._poll_task.done():
            self._poll_task = asyncio.create_task(self._poll_loop())
            logger.info(f"Health monitor polling every {self.poll_interval}s")

    async def stop(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._owns_client:
            await self._http_client.aclose()

    def summary(self) -> Dict[str, Any]:
        counts = {status.value: 0 for status in HealthStatus}
        for verdict in self.latest.values():
            counts[verdict.status.value] += 1
        return {"total": len(self.latest), **counts}
