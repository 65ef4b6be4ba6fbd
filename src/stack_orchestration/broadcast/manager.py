"""
Event broadcast layer.

Fans out service status, resource and log events to connected observers.
Observers subscribe to topics: ``updates:services``, ``updates:resources`` and
``logs:<service>``. Log topics are backed by the shared LogStreamPool.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Dict, List, Optional

from stack_orchestration.health.docker_client import DockerClient
from stack_orchestration.profiles.loader import ProfileCatalog
from stack_orchestration.state.models import utc_now_iso
from .connections import (
    MIN_UPDATE_INTERVAL_MS,
    RESOURCES_TOPIC,
    SERVICES_TOPIC,
    Closer,
    Connection,
    ConnectionRegistry,
    Sender,
    logs_topic,
)
from .log_streams import LogStreamError, LogStreamPool, detect_level

logger = logging.getLogger(__name__)

GOING_AWAY = 1001
DEFAULT_LOG_LINES = 50
MAX_LOG_LINES = 1000


class EventBroadcaster:
    """Connection registry, topic fan-out and heartbeat."""

    def __init__(
        self,
        docker: DockerClient,
        catalog: Optional[ProfileCatalog] = None,
        heartbeat_interval: float = 30.0,
        default_update_interval_ms: int = 5000,
        inactive_timeout: float = 300.0,
        cleanup_interval: float = 300.0,
        log_idle_grace: float = 30.0,
        log_kill_grace: float = 5.0,
        log_pool: Optional[LogStreamPool] = None,
    ):
        self.docker = docker
        self.catalog = catalog
        self.heartbeat_interval = heartbeat_interval
        self.default_update_interval_ms = default_update_interval_ms
        self.inactive_timeout = inactive_timeout
        self.cleanup_interval = cleanup_interval
        self.registry = ConnectionRegistry()
        self.log_pool = log_pool or LogStreamPool(
            self._spawn_log_process,
            idle_grace=log_idle_grace,
            kill_grace=log_kill_grace,
        )
        self.log_pool.set_handlers(self._on_log_line, self._on_log_end)
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._cleanup_task: Optional[asyncio.Task] = None
        self.started_at = time.time()
        self.total_connections = 0
        self.dropped_connections = 0

    # ===== Lifecycle =====

    async def start(self) -> None:
        if self._heartbeat_task is None:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info("Event broadcaster started")

    async def shutdown(self) -> None:
        """Stop timers, terminate log streams and close every connection."""
        for task in (self._heartbeat_task, self._cleanup_task):
            if task is not None:
                task.cancel()
        await asyncio.gather(
            *(t for t in (self._heartbeat_task, self._cleanup_task) if t is not None),
            return_exceptions=True,
        )
        self._heartbeat_task = None
        self._cleanup_task = None

        await self.log_pool.shutdown()
        for connection in self.registry.all():
            await connection.close(GOING_AWAY, "Server shutting down")
            self.registry.remove(connection.id)
        logger.info("Event broadcaster stopped")

    # ===== Connections =====

    async def register(self, sender: Sender, closer: Optional[Closer] = None,
                       connection_id: Optional[str] = None) -> Connection:
        connection = self.registry.add(Connection(
            sender, closer, connection_id=connection_id, update_interval_ms=self.default_update_interval_ms
        ))
        self.total_connections += 1
        logger.info(f"Connection {connection.id} registered ({len(self.registry)} active)")
        await connection.send({
            "type": "connected",
            "connectionId": connection.id,
            "timestamp": utc_now_iso(),
            "updateInterval": connection.update_interval_ms,
        })
        return connection

    async def unregister(self, connection_id: str, immediate: bool = False) -> None:
        """Forget a connection; its log streams stop after the idle grace period."""
        connection = self.registry.remove(connection_id)
        if connection is None:
            return
        connection.topics.clear()
        await self.log_pool.release_all(connection_id, immediate=immediate)
        logger.info(f"Connection {connection_id} unregistered ({len(self.registry)} active)")

    async def _drop(self, connection: Connection, reason: str) -> None:
        logger.info(f"Dropping connection {connection.id}: {reason}")
        self.dropped_connections += 1
        await connection.close(GOING_AWAY, reason)
        await self.unregister(connection.id)

    # ===== Delivery =====

    async def broadcast(self, message: Dict[str, Any]) -> int:
        """Send to every live connection. Returns the number delivered."""
        delivered = 0
        for connection in self.registry.live():
            if await connection.send(message):
                delivered += 1
        await self._reap_closed()
        return delivered

    async def broadcast_to_subscribers(self, topic: str, message: Dict[str, Any]) -> int:
        """Send to connections subscribed to topic, respecting their update interval."""
        delivered = 0
        now = time.monotonic()
        for connection in self.registry.subscribers(topic):
            if not connection.due(topic, now):
                continue
            if await connection.send(message, topic=topic):
                delivered += 1
        await self._reap_closed()
        return delivered

    async def broadcast_service_update(self, services: List[Dict[str, Any]]) -> int:
        return await self.broadcast_to_subscribers(SERVICES_TOPIC, {
            "type": "service_update", "data": services, "timestamp": utc_now_iso(),
        })

    async def broadcast_resource_update(self, resources: Dict[str, Any]) -> int:
        return await self.broadcast_to_subscribers(RESOURCES_TOPIC, {
            "type": "resource_update", "data": resources, "timestamp": utc_now_iso(),
        })

    async def broadcast_alert(self, alert: Dict[str, Any]) -> int:
        return await self.broadcast({"type": "alert", "data": alert, "timestamp": utc_now_iso()})

    async def _reap_closed(self) -> None:
        for connection in self.registry.all():
            if connection.closed:
                await self.unregister(connection.id)

    # ===== Inbound messages =====

    async def handle_message(self, connection_id: str, raw: Any) -> None:
        """Dispatch one client message. Problems are reported back, never raised."""
        connection = self.registry.get(connection_id)
        if connection is None:
            return
        connection.touch()

        if isinstance(raw, (str, bytes)):
            try:
                raw = json.loads(raw)
            except json.JSONDecodeError:
                await self._error(connection, "Invalid JSON message")
                return
        if not isinstance(raw, dict) or "type" not in raw:
            await self._error(connection, "Message must be an object with a type")
            return

        kind = raw["type"]
        try:
            if kind == "ping":
                await connection.send({"type": "pong", "timestamp": utc_now_iso()})
            elif kind == "pong":
                pass
            elif kind == "subscribe_logs":
                await self.subscribe_logs(connection, raw.get("serviceName"), raw.get("lines", DEFAULT_LOG_LINES))
            elif kind == "unsubscribe_logs":
                await self.unsubscribe_logs(connection, raw.get("serviceName"))
            elif kind == "subscribe_updates":
                await self.subscribe_updates(connection, raw)
            elif kind == "unsubscribe_updates":
                connection.topics.difference_update({SERVICES_TOPIC, RESOURCES_TOPIC})
            elif kind == "visibility_change":
                connection.hidden = bool(raw.get("hidden"))
                await connection.send({
                    "type": "visibility_ack",
                    "hidden": connection.hidden,
                    "effectiveInterval": connection.effective_interval_ms,
                })
            else:
                await self._error(connection, f"Unknown message type: {kind}")
        except Exception as e:
            logger.exception(f"Failed to handle {kind} from {connection.id}")
            await self._error(connection, f"Failed to handle {kind}: {e}")

    async def _error(self, connection: Connection, message: str) -> None:
        await connection.send({"type": "error", "message": message, "timestamp": utc_now_iso()})

    async def subscribe_updates(self, connection: Connection, request: Dict[str, Any]) -> None:
        frequency = request.get("frequency")
        if frequency is not None:
            try:
                connection.set_update_interval(int(frequency))
            except (TypeError, ValueError):
                await self._error(connection, f"Update frequency must be at least {MIN_UPDATE_INTERVAL_MS}ms")
                return
        if request.get("services", True):
            connection.topics.add(SERVICES_TOPIC)
        if request.get("resources", True):
            connection.topics.add(RESOURCES_TOPIC)
        await connection.send({
            "type": "updates_subscribed",
            "topics": sorted(t for t in connection.topics if t in (SERVICES_TOPIC, RESOURCES_TOPIC)),
            "frequency": connection.update_interval_ms,
        })

    async def subscribe_logs(self, connection: Connection, service: Optional[str], lines: Any = DEFAULT_LOG_LINES) -> None:
        if not service:
            await self._error(connection, "serviceName is required")
            return
        if self.catalog is not None and self.catalog.get_service(service) is None:
            await connection.send({"type": "log_error", "serviceName": service, "error": f"Unknown service {service}"})
            return
        try:
            tail = max(0, min(int(lines), MAX_LOG_LINES))
        except (TypeError, ValueError):
            tail = DEFAULT_LOG_LINES

        topic = logs_topic(service)
        if topic in connection.topics:
            return
        connection.topics.add(topic)
        descriptor = self.catalog.get_service(service) if self.catalog is not None else None
        try:
            await self.log_pool.acquire(service, connection.id, descriptor.container if descriptor else service, tail)
        except LogStreamError as e:
            connection.topics.discard(topic)
            await connection.send({"type": "log_error", "serviceName": service, "error": str(e)})
            return
        await connection.send({"type": "log_subscribed", "serviceName": service, "lines": tail})

    async def unsubscribe_logs(self, connection: Connection, service: Optional[str]) -> None:
        if not service:
            await self._error(connection, "serviceName is required")
            return
        connection.topics.discard(logs_topic(service))
        stopped = await self.log_pool.release(service, connection.id, immediate=True)
        if stopped:
            await connection.send({
                "type": "log_stream_stopped", "serviceName": service, "stats": self.log_pool.stats(),
            })
        else:
            await connection.send({"type": "log_unsubscribed", "serviceName": service})

    # ===== Log stream callbacks =====

    async def _spawn_log_process(self, container: str, tail: int) -> asyncio.subprocess.Process:
        command = self.docker.log_stream_command(container, tail)
        return await asyncio.create_subprocess_exec(
            *command, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE,
        )

    async def _on_log_line(self, service: str, line: str, stream: str) -> None:
        await self.broadcast_to_subscribers(logs_topic(service), {
            "type": "log",
            "serviceName": service,
            "data": line,
            "stream": stream,
            "level": detect_level(line, stream),
            "timestamp": utc_now_iso(),
        })

    async def _on_log_end(self, service: str, returncode: Optional[int]) -> None:
        topic = logs_topic(service)
        await self.broadcast_to_subscribers(topic, {
            "type": "log_stream_ended", "serviceName": service, "code": returncode, "timestamp": utc_now_iso(),
        })
        for connection in self.registry.subscribers(topic):
            connection.topics.discard(topic)

    # ===== Heartbeat & cleanup =====

    async def heartbeat(self) -> int:
        """One heartbeat round. Returns the number of connections dropped."""
        dropped = 0
        for connection in self.registry.all():
            if connection.closed or not connection.alive:
                await self._drop(connection, "heartbeat timeout")
                dropped += 1
                continue
            connection.alive = False
            if not await connection.send({"type": "ping", "timestamp": utc_now_iso()}):
                await self._drop(connection, "heartbeat send failed")
                dropped += 1
        return dropped

    async def cleanup_inactive(self) -> int:
        cutoff = time.monotonic() - self.inactive_timeout
        stale = [c for c in self.registry.all() if c.last_activity < cutoff]
        for connection in stale:
            await self._drop(connection, "inactive")
        return len(stale)

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self.heartbeat()
            except Exception:
                logger.exception("Heartbeat round failed")

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval)
            try:
                await self.cleanup_inactive()
            except Exception:
                logger.exception("Connection cleanup failed")

    # ===== Stats =====

    def get_stats(self) -> Dict[str, Any]:
        topics: Dict[str, int] = {}
        for connection in self.registry.all():
            for topic in connection.topics:
                topics[topic] = topics.get(topic, 0) + 1
        return {
            "activeConnections": len(self.registry),
            "totalConnections": self.total_connections,
            "droppedConnections": self.dropped_connections,
            "hiddenConnections": sum(1 for c in self.registry.all() if c.hidden),
            "topics": topics,
            "logStreams": self.log_pool.stats(),
            "uptimeSeconds": round(time.time() - self.started_at, 1),
        }
