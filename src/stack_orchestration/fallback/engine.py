"""
Failure handling for foundational services.

Each tracked service (the node, and indexers that have public replacements)
runs through the state machine

    healthy -> degraded -> awaiting_decision
            -> public_fallback_active | troubleshooting | retrying
            -> healthy | skipped

A service is only considered failed after ``failure_threshold`` consecutive
failed checks. Activating the public fallback rewrites the configuration of
every service that depends on the failed one and persists a FallbackRecord.
Going back to the local service always needs an explicit revert.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import shutil
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from stack_orchestration.core.errors import ErrorKind, Invalid, NotFound, Ok, Problem, Corrupt
from stack_orchestration.health.docker_client import DockerClient
from stack_orchestration.health.monitor import FailureReason, HealthMonitor, HealthVerdict
from stack_orchestration.profiles.resolver import DependencyResolver
from stack_orchestration.state.models import FallbackRecord, FallbackStrategy, utc_now_iso
from stack_orchestration.state.store import SharedStateStore
from .endpoints import NODE_FALLBACK_FLAGS, PUBLIC_ENDPOINTS, endpoints_for, is_node_service

logger = logging.getLogger(__name__)

SERVICE_OVERRIDES_KEY = "serviceOverrides"
TROUBLESHOOT_LOG_LINES = 100


class FallbackState(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    AWAITING_DECISION = "awaiting_decision"
    PUBLIC_FALLBACK_ACTIVE = "public_fallback_active"
    TROUBLESHOOTING = "troubleshooting"
    RETRYING = "retrying"
    SKIPPED = "skipped"


DECISION_STATES = {FallbackState.DEGRADED, FallbackState.AWAITING_DECISION, FallbackState.TROUBLESHOOTING}


@dataclass(frozen=True)
class StrategyOption:
    strategy: FallbackStrategy
    title: str
    description: str
    recommended: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategy": self.strategy.value,
            "title": self.title,
            "description": self.description,
            "recommended": self.recommended,
        }


STRATEGY_OPTIONS = [
    StrategyOption(
        FallbackStrategy.CONTINUE_PUBLIC,
        "Continue with public endpoint",
        "Point dependent services at a public endpoint while the local service is repaired",
        recommended=True,
    ),
    StrategyOption(
        FallbackStrategy.TROUBLESHOOT,
        "Troubleshoot",
        "Collect logs and diagnostics, keep the service in its degraded state",
    ),
    StrategyOption(
        FallbackStrategy.RETRY,
        "Retry",
        "Run the health check again, waiting longer after each retry",
    ),
    StrategyOption(
        FallbackStrategy.SKIP,
        "Skip",
        "Continue without this service",
    ),
]


@dataclass
class ServiceTracker:
    service: str
    state: FallbackState = FallbackState.HEALTHY
    consecutive_failures: int = 0
    last_verdict: Optional[HealthVerdict] = None
    retry_count: int = 0
    last_retry_at: Optional[float] = None
    local_recovered: bool = False
    changed_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "service": self.service,
            "state": self.state.value,
            "consecutiveFailures": self.consecutive_failures,
            "retryCount": self.retry_count,
            "localRecovered": self.local_recovered,
            "changedAt": self.changed_at,
        }
        if self.last_verdict is not None:
            result["lastVerdict"] = self.last_verdict.to_dict()
        if self.state in DECISION_STATES:
            result["options"] = [o.to_dict() for o in STRATEGY_OPTIONS]
        return result


FallbackListener = Callable[[Dict[str, Any]], Any]


class FallbackEngine:
    """Drives the per-service failure state machine."""

    def __init__(
        self,
        resolver: DependencyResolver,
        store: SharedStateStore,
        health: HealthMonitor,
        docker: DockerClient,
        failure_threshold: int = 3,
        retry_base_delay: float = 5.0,
        retry_max_delay: float = 60.0,
        public_endpoints: Optional[Dict[str, Dict[str, str]]] = None,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self.resolver = resolver
        self.catalog = resolver.catalog
        self.store = store
        self.health = health
        self.docker = docker
        self.failure_threshold = failure_threshold
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.public_endpoints = PUBLIC_ENDPOINTS if public_endpoints is None else public_endpoints
        self._trackers: Dict[str, ServiceTracker] = {}
        self._listeners: List[FallbackListener] = []

    # ===== Tracking =====

    def is_tracked(self, service_name: str) -> bool:
        return bool(endpoints_for(service_name, self.catalog, self.public_endpoints))

    def tracker(self, service_name: str) -> ServiceTracker:
        if service_name not in self._trackers:
            self._trackers[service_name] = ServiceTracker(service_name)
        return self._trackers[service_name]

    def state_of(self, service_name: str) -> FallbackState:
        tracker = self._trackers.get(service_name)
        return tracker.state if tracker else FallbackState.HEALTHY

    def add_listener(self, listener: FallbackListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    async def _transition(self, tracker: ServiceTracker, new_state: FallbackState, **extra: Any) -> None:
        previous = tracker.state
        if previous == new_state:
            return
        tracker.state = new_state
        tracker.changed_at = utc_now_iso()
        logger.info(f"Fallback state for {tracker.service}: {previous.value} -> {new_state.value}")
        event = {
            "type": "fallback_update",
            "service": tracker.service,
            "previous": previous.value,
            "state": new_state.value,
            "timestamp": tracker.changed_at,
            **extra,
        }
        if new_state in DECISION_STATES:
            event["options"] = [o.to_dict() for o in STRATEGY_OPTIONS]
        await self._emit(event)

    async def _emit(self, event: Dict[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                outcome = listener(event)
                if asyncio.iscoroutine(outcome):
                    await outcome
            except Exception:
                logger.exception("Fallback listener failed")

    async def record_check(self, verdict: HealthVerdict) -> Optional[FallbackState]:
        """
        Feed one health verdict into the state machine.

        Returns the service's state afterwards, or None for untracked services.
        """
        if not self.is_tracked(verdict.service):
            return None
        tracker = self.tracker(verdict.service)
        tracker.last_verdict = verdict
        state = tracker.state

        if state == FallbackState.PUBLIC_FALLBACK_ACTIVE:
            recovered = verdict.healthy
            if recovered and not tracker.local_recovered:
                tracker.local_recovered = True
                await self._emit({
                    "type": "fallback_update",
                    "service": tracker.service,
                    "state": state.value,
                    "localRecovered": True,
                    "message": f"{tracker.service} is healthy again; revert to the local endpoint when ready",
                    "timestamp": utc_now_iso(),
                })
            elif not recovered:
                tracker.local_recovered = False
            return tracker.state

        if state in (FallbackState.SKIPPED, FallbackState.RETRYING):
            return tracker.state

        if verdict.healthy:
            tracker.consecutive_failures = 0
            tracker.retry_count = 0
            tracker.last_retry_at = None
            await self._transition(tracker, FallbackState.HEALTHY)
            return tracker.state

        if not verdict.failed:
            return tracker.state

        tracker.consecutive_failures += 1
        if state == FallbackState.HEALTHY and tracker.consecutive_failures >= self.failure_threshold:
            reason = verdict.reason.value if verdict.reason else None
            await self._transition(tracker, FallbackState.DEGRADED, reason=reason, message=verdict.message)
            await self._transition(tracker, FallbackState.AWAITING_DECISION, reason=reason, message=verdict.message)
        return tracker.state

    # ===== Decisions =====

    async def choose(self, service_name: str, strategy: FallbackStrategy) -> Union[Ok[Any], NotFound, Corrupt, Invalid]:
        """Apply the operator's chosen strategy for a failed service."""
        if not self.is_tracked(service_name):
            return Invalid([Problem(
                ErrorKind.NOT_FOUND, "not_tracked", f"{service_name} has no fallback handling", {"service": service_name}
            )])
        tracker = self.tracker(service_name)
        if tracker.state not in DECISION_STATES:
            return Invalid([Problem(
                ErrorKind.VALIDATION,
                "no_decision_pending",
                f"{service_name} is {tracker.state.value}; no decision is pending",
                {"service": service_name, "state": tracker.state.value},
            )])

        if strategy == FallbackStrategy.CONTINUE_PUBLIC:
            return await self._activate_public(tracker)
        if strategy == FallbackStrategy.TROUBLESHOOT:
            info = await self.troubleshooting_info(service_name, tracker.last_verdict)
            await self._transition(tracker, FallbackState.TROUBLESHOOTING)
            return Ok(info)
        if strategy == FallbackStrategy.RETRY:
            return Ok(await self._retry(tracker))
        if strategy == FallbackStrategy.SKIP:
            await self._transition(tracker, FallbackState.SKIPPED)
            return Ok(tracker.to_dict())
        raise ValueError(f"Unhandled strategy {strategy}")

    async def _activate_public(self, tracker: ServiceTracker):
        current = await self.store.aread()
        if not isinstance(current, Ok):
            return current
        state = current.value
        if state.fallback is not None and state.fallback.failed_service != tracker.service:
            return Invalid([Problem(
                ErrorKind.VALIDATION,
                "fallback_active",
                f"A fallback for {state.fallback.failed_service} is already active; revert it first",
                {"service": state.fallback.failed_service},
            )])

        affected = self.resolver.dependents_closure(tracker.service, state.profiles.selected)
        endpoints = endpoints_for(tracker.service, self.catalog, self.public_endpoints)
        settings: Dict[str, Any] = dict(endpoints)
        if is_node_service(tracker.service, self.catalog):
            settings.update(NODE_FALLBACK_FLAGS)

        configuration = copy.deepcopy(state.configuration)
        previous = {k: configuration[k] for k in settings if k in configuration}
        overrides = configuration.setdefault(SERVICE_OVERRIDES_KEY, {})
        for service in affected:
            previous_override = overrides.get(service, {})
            previous.setdefault(SERVICE_OVERRIDES_KEY, {})[service] = copy.deepcopy(previous_override)
            overrides[service] = {**previous_override, **endpoints}
        configuration.update(settings)

        reason = tracker.last_verdict.reason.value if tracker.last_verdict and tracker.last_verdict.reason else None
        record = FallbackRecord(
            failed_service=tracker.service,
            strategy=FallbackStrategy.CONTINUE_PUBLIC,
            reason=reason,
            redirected_services=affected,
            endpoints=endpoints,
            previous_configuration=previous,
        )
        written = await self.store.awrite(
            state.model_copy(update={"configuration": configuration, "fallback": record}),
            expected_revision=state.revision,
        )
        if not isinstance(written, Ok):
            return written

        tracker.local_recovered = False
        await self._transition(
            tracker, FallbackState.PUBLIC_FALLBACK_ACTIVE,
            redirectedServices=affected, endpoints=endpoints,
        )
        logger.warning(f"{tracker.service} failed; redirected {len(affected)} services to public endpoints")
        return Ok(record)

    async def _retry(self, tracker: ServiceTracker) -> Dict[str, Any]:
        delay = 0.0
        if tracker.last_retry_at is not None:
            backoff = min(self.retry_base_delay * (2 ** (tracker.retry_count - 1)), self.retry_max_delay)
            delay = max(0.0, backoff - (time.monotonic() - tracker.last_retry_at))

        await self._transition(tracker, FallbackState.RETRYING)
        try:
            if delay:
                logger.info(f"Waiting {delay:.1f}s before retrying {tracker.service}")
                await asyncio.sleep(delay)
            verdict = await self.health.get_status(tracker.service)
        except asyncio.CancelledError:
            await self._transition(tracker, FallbackState.AWAITING_DECISION)
            raise
        finally:
            tracker.retry_count += 1
            tracker.last_retry_at = time.monotonic()

        tracker.last_verdict = verdict
        if verdict.healthy:
            tracker.consecutive_failures = 0
            tracker.retry_count = 0
            tracker.last_retry_at = None
            await self._transition(tracker, FallbackState.HEALTHY)
        else:
            await self._transition(tracker, FallbackState.AWAITING_DECISION,
                                   reason=verdict.reason.value if verdict.reason else None)
        return {"verdict": verdict.to_dict(), "state": tracker.state.value, "retryCount": tracker.retry_count}

    async def revert_to_local(self, service_name: str) -> Union[Ok[Any], NotFound, Corrupt, Invalid]:
        """
        Point dependents back at the local service.

        Only allowed once the local service passes its health check again.
        """
        tracker = self._trackers.get(service_name)
        if tracker is None or tracker.state not in (FallbackState.PUBLIC_FALLBACK_ACTIVE, FallbackState.SKIPPED):
            return Invalid([Problem(
                ErrorKind.VALIDATION, "no_fallback_active", f"No fallback is active for {service_name}",
                {"service": service_name},
            )])

        verdict = await self.health.get_status(service_name)
        tracker.last_verdict = verdict
        if not verdict.healthy:
            return Invalid([Problem(
                ErrorKind.CONNECTIVITY,
                "local_unhealthy",
                f"{service_name} is {verdict.status.value}; restore it before reverting",
                {"service": service_name, "status": verdict.status.value},
            )])

        if tracker.state == FallbackState.PUBLIC_FALLBACK_ACTIVE:
            current = await self.store.aread()
            if not isinstance(current, Ok):
                return current
            state = current.value
            configuration = restore_configuration(state.configuration, state.fallback)
            written = await self.store.awrite(
                state.model_copy(update={"configuration": configuration, "fallback": None}),
                expected_revision=state.revision,
            )
            if not isinstance(written, Ok):
                return written

        tracker.consecutive_failures = 0
        tracker.retry_count = 0
        tracker.last_retry_at = None
        tracker.local_recovered = False
        await self._transition(tracker, FallbackState.HEALTHY)
        logger.info(f"Reverted dependents of {service_name} to the local endpoint")
        return Ok(tracker.to_dict())

    async def restore_persisted(self) -> Optional[FallbackRecord]:
        """Resume an active fallback recorded by a previous run."""
        current = await self.store.aread()
        if not isinstance(current, Ok) or current.value.fallback is None:
            return None
        record = current.value.fallback
        tracker = self.tracker(record.failed_service)
        tracker.state = FallbackState.PUBLIC_FALLBACK_ACTIVE
        tracker.changed_at = record.activated_at
        logger.info(f"Resumed public fallback for {record.failed_service}")
        return record

    # ===== Troubleshooting =====

    async def troubleshooting_info(self, service_name: str, verdict: Optional[HealthVerdict]) -> Dict[str, Any]:
        reason = verdict.reason if verdict else None
        descriptor = self.catalog.get_service(service_name)
        container = descriptor.container if descriptor else service_name
        logs = await self.docker.logs(container, TROUBLESHOOT_LOG_LINES)
        return {
            "service": service_name,
            "failure": verdict.to_dict() if verdict else None,
            "steps": troubleshooting_steps(service_name, reason, verdict),
            "logs": logs if logs is not None else "Logs unavailable",
            "diagnostics": await self.system_diagnostics(),
        }

    async def system_diagnostics(self) -> Dict[str, Any]:
        diagnostics: Dict[str, Any] = {"timestamp": utc_now_iso(), "docker": {}, "system": {}}
        diagnostics["docker"]["available"] = await self.docker.is_available()
        diagnostics["docker"]["version"] = await self.docker.version()
        code, out, _ = await self.docker.run("compose", "version")
        diagnostics["docker"]["composeVersion"] = out.strip() if code == 0 else None
        containers = await self.docker.list_containers()
        if containers is not None:
            diagnostics["docker"]["runningContainers"] = sum(1 for c in containers.values() if c.running)
        usage = shutil.disk_usage(str(self.store.path.parent if self.store.path.parent.exists() else "."))
        diagnostics["system"]["disk"] = {
            "totalGb": round(usage.total / 1e9, 1),
            "freeGb": round(usage.free / 1e9, 1),
        }
        return diagnostics

    def get_status(self) -> Dict[str, Any]:
        return {
            "failureThreshold": self.failure_threshold,
            "services": {name: tracker.to_dict() for name, tracker in self._trackers.items()},
        }


def restore_configuration(configuration: Dict[str, Any], record: Optional[FallbackRecord]) -> Dict[str, Any]:
    """Undo the configuration changes made when a fallback was activated."""
    restored = copy.deepcopy(configuration)
    if record is None:
        return restored
    previous = record.previous_configuration
    applied = list(record.endpoints)
    if "KASPA_NODE_RPC_URL" in record.endpoints:
        applied.extend(NODE_FALLBACK_FLAGS)
    for key in applied:
        if key in previous:
            restored[key] = previous[key]
        else:
            restored.pop(key, None)

    overrides = restored.get(SERVICE_OVERRIDES_KEY, {})
    previous_overrides = previous.get(SERVICE_OVERRIDES_KEY, {})
    for service in record.redirected_services:
        if previous_overrides.get(service):
            overrides[service] = previous_overrides[service]
        else:
            overrides.pop(service, None)
    if SERVICE_OVERRIDES_KEY in restored and not overrides:
        restored.pop(SERVICE_OVERRIDES_KEY)
    return restored


def troubleshooting_steps(service: str, reason: Optional[FailureReason],
                          verdict: Optional[HealthVerdict] = None) -> List[Dict[str, Any]]:
    if reason == FailureReason.CONTAINER_NOT_FOUND:
        steps = [
            ("Verify Docker Compose configuration", "Check that the service is defined in docker-compose.yml",
             {"command": "docker compose config"}),
            ("Check profile selection", "Ensure the profile providing this service is selected",
             {"action": "review_profiles"}),
            ("Rebuild service", "Rebuild the service from scratch", {"command": f"docker compose build {service}"}),
        ]
    elif reason == FailureReason.CONTAINER_NOT_RUNNING:
        steps = [
            ("Check container logs", "Review logs for error messages", {"action": "view_logs"}),
            ("Check resource availability", "Ensure there is enough CPU, memory and disk space",
             {"action": "check_resources"}),
            ("Restart service", "Try restarting the service", {"command": f"docker compose restart {service}"}),
        ]
    elif reason == FailureReason.HEALTH_CHECK_FAILED:
        failed = {}
        if verdict is not None:
            failed = {name: c.message for name, c in verdict.sub_checks.items() if c.required and not c.ok}
        steps = [
            ("Review health check failures", "Check which health checks failed", {"details": failed}),
            ("Check network connectivity", "Verify network configuration and port availability",
             {"action": "check_network"}),
            ("Wait for initialization", "Some services take time to fully initialize", {"action": "wait_and_retry"}),
        ]
    else:
        steps = [
            ("Review error message", verdict.message if verdict and verdict.message else "Unknown failure",
             {"action": "review_error"}),
            ("Check documentation", "Consult the service documentation", {"action": "view_docs"}),
            ("Export diagnostics", "Share diagnostic information if the problem persists",
             {"action": "export_diagnostics"}),
        ]
    return [
        {"step": idx, "title": title, "description": description, **extra}
        for idx, (title, description, extra) in enumerate(steps, start=1)
    ]
