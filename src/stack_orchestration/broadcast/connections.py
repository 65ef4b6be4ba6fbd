"""
Connection registry for event observers.

Each connection keeps a liveness flag for the heartbeat, the set of topics it
subscribed to and its own update interval. Hidden observers (a background
browser tab) are throttled to a slower interval.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

logger = logging.getLogger(__name__)

SERVICES_TOPIC = "updates:services"
RESOURCES_TOPIC = "updates:resources"
LOGS_TOPIC_PREFIX = "logs:"

MIN_UPDATE_INTERVAL_MS = 1000
HIDDEN_INTERVAL_MULTIPLIER = 4
HIDDEN_MIN_INTERVAL_MS = 20000

Sender = Callable[[Dict[str, Any]], Awaitable[None]]
Closer = Callable[[int, str], Awaitable[None]]


def logs_topic(service_name: str) -> str:
    return f"{LOGS_TOPIC_PREFIX}{service_name}"


def is_update_topic(topic: str) -> bool:
    return topic in (SERVICES_TOPIC, RESOURCES_TOPIC)


class Connection:
    """One connected observer."""

    def __init__(self, sender: Sender, closer: Optional[Closer] = None,
                 connection_id: Optional[str] = None, update_interval_ms: int = 5000):
        self.id = connection_id or uuid.uuid4().hex[:12]
        self._sender = sender
        self._closer = closer
        self.alive = True
        self.closed = False
        self.hidden = False
        self.topics: Set[str] = set()
        self.update_interval_ms = max(MIN_UPDATE_INTERVAL_MS, update_interval_ms)
        self.connected_at = time.time()
        self.last_activity = time.monotonic()
        self._last_sent: Dict[str, float] = {}
        self.messages_sent = 0

    @property
    def effective_interval_ms(self) -> int:
        if self.hidden:
            return max(self.update_interval_ms * HIDDEN_INTERVAL_MULTIPLIER, HIDDEN_MIN_INTERVAL_MS)
        return self.update_interval_ms

    @property
    def log_services(self) -> List[str]:
        return sorted(t[len(LOGS_TOPIC_PREFIX):] for t in self.topics if t.startswith(LOGS_TOPIC_PREFIX))

    def set_update_interval(self, interval_ms: int) -> None:
        if interval_ms < MIN_UPDATE_INTERVAL_MS:
            raise ValueError(f"Update frequency must be at least {MIN_UPDATE_INTERVAL_MS}ms")
        self.update_interval_ms = interval_ms

    def touch(self) -> None:
        """Any inbound traffic proves the observer is alive."""
        self.alive = True
        self.last_activity = time.monotonic()

    def due(self, topic: str, now: Optional[float] = None) -> bool:
        """Whether a throttled update for topic may be sent now."""
        if not is_update_topic(topic):
            return True
        now = time.monotonic() if now is None else now
        last = self._last_sent.get(topic)
        return last is None or (now - last) * 1000 >= self.effective_interval_ms

    async def send(self, message: Dict[str, Any], topic: Optional[str] = None) -> bool:
        """Deliver a message. Returns False if the connection is closed or the send failed."""
        if self.closed:
            return False
        try:
            await self._sender(message)
        except Exception as e:
            logger.warning(f"Send to connection {self.id} failed: {e}")
            self.closed = True
            return False
        self.messages_sent += 1
        if topic is not None:
            self._last_sent[topic] = time.monotonic()
        return True

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self.closed:
            return
        self.closed = True
        if self._closer is not None:
            try:
                await self._closer(code, reason)
            except Exception as e:
                logger.debug(f"Closing connection {self.id} failed: {e}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "alive": self.alive,
            "hidden": self.hidden,
            "topics": sorted(self.topics),
            "updateIntervalMs": self.update_interval_ms,
            "effectiveIntervalMs": self.effective_interval_ms,
            "connectedAt": self.connected_at,
            "messagesSent": self.messages_sent,
        }


class ConnectionRegistry:
    """Connections by id with topic lookup."""

    def __init__(self):
        self._connections: Dict[str, Connection] = {}

    def add(self, connection: Connection) -> Connection:
        self._connections[connection.id] = connection
        return connection

    def remove(self, connection_id: str) -> Optional[Connection]:
        return self._connections.pop(connection_id, None)

    def get(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def all(self) -> List[Connection]:
        return list(self._connections.values())

    def live(self) -> List[Connection]:
        return [c for c in self._connections.values() if not c.closed]

    def subscribers(self, topic: str) -> List[Connection]:
        return [c for c in self._connections.values() if topic in c.topics and not c.closed]

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, connection_id: str) -> bool:
        return connection_id in self._connections
