"""
Ref-counted pool of log-tailing subprocesses.

At most one `docker logs -f` process runs per service, shared by every
subscriber of that service. The process stops when the last subscriber
releases it: immediately for an explicit unsubscribe, or after an idle grace
period when the last subscriber merely disconnected.
"""

from __future__ import annotations

import asyncio
import logging
import re
import signal
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

logger = logging.getLogger(__name__)

DEFAULT_IDLE_GRACE = 30.0
DEFAULT_KILL_GRACE = 5.0

Spawner = Callable[[str, int], Awaitable[asyncio.subprocess.Process]]
LineHandler = Callable[[str, str, str], Awaitable[Any]]
EndHandler = Callable[[str, Optional[int]], Awaitable[Any]]

_LEVEL_PATTERNS = [
    ("error", re.compile(r"\b(error|fatal|panic|critical)\b", re.IGNORECASE)),
    ("warn", re.compile(r"\b(warn|warning)\b", re.IGNORECASE)),
    ("debug", re.compile(r"\b(debug|trace)\b", re.IGNORECASE)),
]


def detect_level(line: str, stream: str = "stdout") -> str:
    for level, pattern in _LEVEL_PATTERNS:
        if pattern.search(line):
            return level
    return "error" if stream == "stderr" and "info" not in line.lower() else "info"


@dataclass
class LogStream:
    service: str
    container: str
    tail: int
    subscribers: Set[str] = field(default_factory=set)
    process: Optional[asyncio.subprocess.Process] = None
    ready: asyncio.Event = field(default_factory=asyncio.Event)
    readers: List[asyncio.Task] = field(default_factory=list)
    idle_task: Optional[asyncio.Task] = None
    watcher: Optional[asyncio.Task] = None
    started_at: float = field(default_factory=time.time)
    lines: int = 0
    stopping: bool = False
    error: Optional[str] = None

    @property
    def refcount(self) -> int:
        return len(self.subscribers)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "service": self.service,
            "container": self.container,
            "subscribers": self.refcount,
            "pid": self.process.pid if self.process else None,
            "lines": self.lines,
            "uptimeSeconds": round(time.time() - self.started_at, 1),
            "idle": self.idle_task is not None,
        }


class LogStreamError(Exception):
    """The log-tailing process could not be started."""


class LogStreamPool:
    """Acquire-by-service, ref-counted log tails."""

    def __init__(
        self,
        spawn: Spawner,
        on_line: Optional[LineHandler] = None,
        on_end: Optional[EndHandler] = None,
        idle_grace: float = DEFAULT_IDLE_GRACE,
        kill_grace: float = DEFAULT_KILL_GRACE,
    ):
        self._spawn = spawn
        self._on_line = on_line
        self._on_end = on_end
        self.idle_grace = idle_grace
        self.kill_grace = kill_grace
        self._streams: Dict[str, LogStream] = {}
        self.started_total = 0

    def set_handlers(self, on_line: Optional[LineHandler], on_end: Optional[EndHandler]) -> None:
        self._on_line = on_line
        self._on_end = on_end

    def get(self, service: str) -> Optional[LogStream]:
        return self._streams.get(service)

    def refcount(self, service: str) -> int:
        stream = self._streams.get(service)
        return stream.refcount if stream else 0

    @property
    def active_services(self) -> List[str]:
        return list(self._streams)

    async def acquire(self, service: str, subscriber_id: str, container: Optional[str] = None,
                      tail: int = 50) -> LogStream:
        """
        Add a subscriber to the service's stream, starting it if needed.

        Concurrent acquirers of a stream that is still starting wait for it
        instead of spawning a second process.
        """
        stream = self._streams.get(service)
        if stream is not None:
            stream.subscribers.add(subscriber_id)
            self._cancel_idle(stream)
            await stream.ready.wait()
            if stream.error is not None:
                raise LogStreamError(stream.error)
            return stream

        stream = LogStream(service=service, container=container or service, tail=tail)
        stream.subscribers.add(subscriber_id)
        self._streams[service] = stream
        try:
            stream.process = await self._spawn(stream.container, tail)
        except Exception as e:
            stream.error = f"Failed to start log stream for {service}: {e}"
            self._streams.pop(service, None)
            stream.ready.set()
            logger.error(stream.error)
            raise LogStreamError(stream.error) from e

        self.started_total += 1
        stream.ready.set()
        if stream.stopping:
            # Released by every subscriber while the process was starting.
            stream.stopping = False
            await self._stop(stream)
            return stream
        logger.info(f"Started log stream for {service} (pid {stream.process.pid})")
        stream.readers = [
            asyncio.create_task(self._pump(stream, stream.process.stdout, "stdout")),
            asyncio.create_task(self._pump(stream, stream.process.stderr, "stderr")),
        ]
        stream.watcher = asyncio.create_task(self._watch_exit(stream))
        return stream

    async def release(self, service: str, subscriber_id: str, immediate: bool = True) -> bool:
        """
        Drop a subscriber.

        Returns True if the stream was stopped (or scheduled to stop) because
        this was its last subscriber.
        """
        stream = self._streams.get(service)
        if stream is None or subscriber_id not in stream.subscribers:
            return False
        stream.subscribers.discard(subscriber_id)
        if stream.refcount > 0:
            return False
        if immediate:
            await self._stop(stream)
        else:
            self._schedule_idle_stop(stream)
        return True

    async def release_all(self, subscriber_id: str, immediate: bool = False) -> List[str]:
        released = []
        for service in list(self._streams):
            if await self.release(service, subscriber_id, immediate=immediate):
                released.append(service)
        return released

    def _cancel_idle(self, stream: LogStream) -> None:
        if stream.idle_task is not None:
            stream.idle_task.cancel()
            stream.idle_task = None

    def _schedule_idle_stop(self, stream: LogStream) -> None:
        self._cancel_idle(stream)

        async def stop_later() -> None:
            await asyncio.sleep(self.idle_grace)
            stream.idle_task = None
            if stream.refcount == 0 and self._streams.get(stream.service) is stream:
                logger.info(f"Log stream for {stream.service} idle for {self.idle_grace}s, stopping")
                await self._stop(stream)

        stream.idle_task = asyncio.create_task(stop_later())

    async def _pump(self, stream: LogStream, reader: Optional[asyncio.StreamReader], name: str) -> None:
        if reader is None:
            return
        while True:
            raw = await reader.readline()
            if not raw:
                return
            text = raw.decode(errors="replace").rstrip("\r\n")
            if not text:
                continue
            stream.lines += 1
            if self._on_line is not None:
                try:
                    await self._on_line(stream.service, text, name)
                except Exception:
                    logger.exception(f"Log line handler failed for {stream.service}")

    async def _watch_exit(self, stream: LogStream) -> None:
        returncode = await stream.process.wait()
        await asyncio.gather(*stream.readers, return_exceptions=True)
        if stream.stopping:
            return
        if self._streams.get(stream.service) is stream:
            self._streams.pop(stream.service)
        self._cancel_idle(stream)
        logger.info(f"Log stream for {stream.service} ended with code {returncode}")
        if self._on_end is not None:
            try:
                await self._on_end(stream.service, returncode)
            except Exception:
                logger.exception(f"Log end handler failed for {stream.service}")

    async def _stop(self, stream: LogStream) -> None:
        """SIGTERM, then SIGKILL if the process ignores it for kill_grace seconds."""
        if stream.stopping:
            return
        stream.stopping = True
        self._cancel_idle(stream)
        if self._streams.get(stream.service) is stream:
            self._streams.pop(stream.service)

        process = stream.process
        if process is not None and process.returncode is None:
            try:
                process.send_signal(signal.SIGTERM)
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(process.wait(), timeout=self.kill_grace)
            except asyncio.TimeoutError:
                logger.warning(f"Log stream for {stream.service} ignored SIGTERM, killing")
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()

        # _stop may run inside a reader via the line handler; never await ourselves
        readers = [t for t in stream.readers if t is not asyncio.current_task()]
        for task in readers:
            task.cancel()
        await asyncio.gather(*readers, return_exceptions=True)
        logger.info(f"Stopped log stream for {stream.service} after {stream.lines} lines")

    async def shutdown(self) -> None:
        streams = list(self._streams.values())
        await asyncio.gather(*(self._stop(s) for s in streams), return_exceptions=True)

    def stats(self) -> Dict[str, Any]:
        return {
            "activeStreams": len(self._streams),
            "startedTotal": self.started_total,
            "streams": {name: s.to_dict() for name, s in self._streams.items()},
        }
