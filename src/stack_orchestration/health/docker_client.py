"""
Thin async wrapper around the docker CLI.

Every call carries a timeout. When the docker daemon cannot be reached the
client reports it as unavailable instead of raising, and that answer is cached
for a short while so a stopped daemon is not hammered by every poll.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

AVAILABILITY_TTL = 30.0
_HEALTH_RE = re.compile(r"\((healthy|unhealthy|health: starting|starting)\)")


@dataclass
class ContainerInfo:
    name: str
    state: str
    status: str
    health: Optional[str] = None

    @property
    def running(self) -> bool:
        return self.state == "running"


def parse_health(status: str) -> Optional[str]:
    """Docker health from a `docker ps` status column like 'Up 3 minutes (healthy)'."""
    match = _HEALTH_RE.search(status or "")
    if not match:
        return None
    value = match.group(1)
    return "starting" if "starting" in value else value


class DockerClient:
    """Queries container state through the docker CLI."""

    def __init__(self, timeout: float = 10.0, availability_ttl: float = AVAILABILITY_TTL, binary: str = "docker"):
        self.timeout = timeout
        self.availability_ttl = availability_ttl
        self.binary = binary
        self._available: Optional[bool] = None
        self._checked_at = 0.0

    async def run(self, *args: str, timeout: Optional[float] = None) -> Tuple[int, str, str]:
        """Run a docker command. Returns (returncode, stdout, stderr); -1 on timeout or spawn failure."""
        try:
            proc = await asyncio.create_subprocess_exec(
                self.binary, *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError) as e:
            logger.debug(f"Cannot run {self.binary}: {e}")
            return -1, "", str(e)

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout or self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.warning(f"docker {' '.join(args)} timed out after {timeout or self.timeout}s")
            return -1, "", "timeout"
        return proc.returncode, stdout.decode(errors="replace"), stderr.decode(errors="replace")

    async def is_available(self) -> bool:
        now = time.monotonic()
        if self._available is not None and now - self._checked_at < self.availability_ttl:
            return self._available
        code, _, err = await self.run("version", "--format", "{{.Server.Version}}")
        self._available = code == 0
        self._checked_at = now
        if not self._available:
            logger.warning(f"Docker not available: {err.strip() or 'unknown error'}")
        return self._available

    def invalidate(self) -> None:
        self._available = None

    async def list_containers(self) -> Optional[Dict[str, ContainerInfo]]:
        """All containers by name, or None when docker is unavailable."""
        if not await self.is_available():
            return None
        code, out, err = await self.run("ps", "-a", "--format", "{{.Names}}\t{{.State}}\t{{.Status}}")
        if code != 0:
            logger.error(f"docker ps failed: {err.strip()}")
            self.invalidate()
            return None
        containers: Dict[str, ContainerInfo] = {}
        for line in out.splitlines():
            parts = line.split("\t")
            if len(parts) < 3 or not parts[0]:
                continue
            name, state, status = parts[0], parts[1].lower(), parts[2]
            containers[name] = ContainerInfo(name=name, state=state, status=status, health=parse_health(status))
        return containers

    async def get_container(self, name: str) -> Optional[ContainerInfo]:
        containers = await self.list_containers()
        return (containers or {}).get(name)

    async def exec(self, container: str, *command: str, timeout: Optional[float] = None) -> Tuple[int, str, str]:
        return await self.run("exec", container, *command, timeout=timeout)

    async def logs(self, container: str, tail: int = 100) -> Optional[str]:
        code, out, err = await self.run("logs", f"--tail={tail}", container)
        if code != 0:
            logger.warning(f"Failed to read logs for {container}: {err.strip()}")
            return None
        # docker writes container stderr to our stderr
        return out + err

    async def version(self) -> Optional[str]:
        code, out, _ = await self.run("--version")
        return out.strip() if code == 0 else None

    def log_stream_command(self, container: str, tail: int = 50) -> List[str]:
        return [self.binary, "logs", "-f", f"--tail={tail}", container]

    async def container_stats(self) -> Optional[Dict[str, Dict[str, str]]]:
        """CPU and memory usage per running container, from `docker stats --no-stream`."""
        if not await self.is_available():
            return None
        code, out, err = await self.run(
            "stats", "--no-stream", "--format", "{{.Name}}\t{{.CPUPerc}}\t{{.MemUsage}}\t{{.MemPerc}}"
        )
        if code != 0:
            logger.warning(f"docker stats failed: {err.strip()}")
            return None
        stats: Dict[str, Dict[str, str]] = {}
        for line in out.splitlines():
            parts = line.split("\t")
            if len(parts) < 4:
                continue
            stats[parts[0]] = {"cpu": parts[1], "memory": parts[2], "memoryPercent": parts[3]}
        return stats
