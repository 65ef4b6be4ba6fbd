"""
Ordered endpoint probing with a cached winner.

EndpointProber tries candidates strictly in declared order and remembers the
first one that answers. Later connect() calls go straight to that candidate and
only walk the full list again when it stops answering. NodeRpcProber applies
this to the node's RPC ports.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, Sequence, TypeVar

import httpx

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RETRY_INTERVAL = 30.0
NODE_FALLBACK_PORTS = (16110, 16111)


@dataclass
class ProbeOutcome:
    reachable: bool
    detail: Optional[str] = None
    url: Optional[str] = None


@dataclass
class ProbeAttempt:
    candidate: Any
    error: Optional[str]
    latency_ms: float

    def to_dict(self) -> Dict[str, Any]:
        return {"candidate": self.candidate, "error": self.error, "latencyMs": round(self.latency_ms, 1)}


@dataclass
class ConnectionResult:
    connected: bool
    candidate: Any = None
    url: Optional[str] = None
    latency_ms: Optional[float] = None
    attempts: List[ProbeAttempt] = field(default_factory=list)
    error: Optional[str] = None
    from_cache: bool = False

    @property
    def port(self) -> Optional[int]:
        return self.candidate if isinstance(self.candidate, int) else None

    @property
    def failed_attempts(self) -> List[ProbeAttempt]:
        return [a for a in self.attempts if a.error is not None]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "connected": self.connected,
            "candidate": self.candidate,
            "url": self.url,
            "latencyMs": round(self.latency_ms, 1) if self.latency_ms is not None else None,
            "fromCache": self.from_cache,
            "error": self.error,
            "attempts": [a.to_dict() for a in self.attempts],
        }


class EndpointProber(Generic[T]):
    """Try ordered candidates, cache the winner, retry while disconnected."""

    def __init__(
        self,
        probe: Callable[[T], Awaitable[ProbeOutcome]],
        candidates: Sequence[T],
        retry_interval: float = DEFAULT_RETRY_INTERVAL,
        name: str = "endpoint",
    ):
        self._probe = probe
        self._candidates: List[T] = list(dict.fromkeys(candidates))
        self.retry_interval = retry_interval
        self.name = name
        self.logger = logging.getLogger(__name__)
        self._cached: Optional[T] = None
        self._retry_task: Optional[asyncio.Task] = None

    @property
    def candidates(self) -> List[T]:
        return list(self._candidates)

    @property
    def cached_candidate(self) -> Optional[T]:
        return self._cached

    @property
    def retry_active(self) -> bool:
        return self._retry_task is not None and not self._retry_task.done()

    def set_candidates(self, candidates: Sequence[T]) -> None:
        """Replace the candidate list and forget the cached winner."""
        self._candidates = list(dict.fromkeys(candidates))
        self.clear_cache()

    def clear_cache(self) -> None:
        self._cached = None

    async def _attempt(self, candidate: T) -> tuple[ProbeAttempt, ProbeOutcome]:
        started = time.perf_counter()
        try:
            outcome = await self._probe(candidate)
        except Exception as e:
            outcome = ProbeOutcome(False, detail=str(e) or e.__class__.__name__)
        latency = (time.perf_counter() - started) * 1000
        error = None if outcome.reachable else (outcome.detail or "unreachable")
        return ProbeAttempt(candidate, error, latency), outcome

    async def connect(self, candidates: Optional[Sequence[T]] = None) -> ConnectionResult:
        """
        Connect to the first reachable candidate.

        Args:
            candidates: Ordered candidates for this call, the configured list if omitted

        Returns:
            ConnectionResult describing the winner or every failed attempt
        """
        ordered = list(dict.fromkeys(candidates)) if candidates is not None else list(self._candidates)
        attempts: List[ProbeAttempt] = []

        cached = self._cached
        if cached is not None and cached in ordered:
            attempt, outcome = await self._attempt(cached)
            attempts.append(attempt)
            if outcome.reachable:
                return ConnectionResult(True, cached, outcome.url, attempt.latency_ms, attempts, from_cache=True)
            self.logger.info("Cached %s %s stopped answering: %s", self.name, cached, attempt.error)
            self._cached = None

        for candidate in ordered:
            if candidate == cached:
                continue
            attempt, outcome = await self._attempt(candidate)
            attempts.append(attempt)
            if outcome.reachable:
                self._cached = candidate
                if candidate != ordered[0]:
                    self.logger.info("Connected to %s via fallback %s", self.name, candidate)
                return ConnectionResult(True, candidate, outcome.url, attempt.latency_ms, attempts)

        summary = ", ".join(f"{a.candidate} ({a.error})" for a in attempts) or "no candidates"
        return ConnectionResult(
            False,
            attempts=attempts,
            error=f"Failed to connect to {self.name} on any candidate: {summary}",
        )

    def start_retry(self, on_recovered: Optional[Callable[[ConnectionResult], Any]] = None) -> bool:
        """
        Re-probe the full list every retry_interval until a candidate answers.

        on_recovered (sync or async) is called once with the winning result,
        then the loop stops. Returns False if a retry loop is already running.
        """
        if self.retry_active:
            return False
        self._retry_task = asyncio.create_task(self._retry_loop(on_recovered))
        self.logger.info("Retrying %s every %ss", self.name, self.retry_interval)
        return True

    async def _retry_loop(self, on_recovered) -> None:
        while True:
            await asyncio.sleep(self.retry_interval)
            result = await self.connect()
            if not result.connected:
                self.logger.debug("Retry for %s failed: %s", self.name, result.error)
                continue
            self.logger.info("%s recovered on %s", self.name, result.candidate)
            if on_recovered is not None:
                try:
                    outcome = on_recovered(result)
                    if asyncio.iscoroutine(outcome):
                        await outcome
                except Exception:
                    self.logger.exception("Recovery callback for %s failed", self.name)
            return

    async def stop_retry(self) -> None:
        task, self._retry_task = self._retry_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    def get_status(self) -> Dict[str, Any]:
        return {
            "candidates": self.candidates,
            "cached": self._cached,
            "retryActive": self.retry_active,
            "retryInterval": self.retry_interval,
        }


class StatusPoller(Generic[T]):
    """Runs a check on a short fixed cadence and keeps the latest result.

    Independent of any reconnect loop, so a recovered endpoint shows up on the
    next tick rather than the next retry.
    """

    def __init__(self, check: Callable[[], Awaitable[T]], interval: float,
                 on_result: Optional[Callable[[T], Any]] = None, name: str = "status"):
        self._check = check
        self.interval = interval
        self._on_result = on_result
        self.name = name
        self.latest: Optional[T] = None
        self.last_checked: Optional[float] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def poll_once(self) -> T:
        result = await self._check()
        self.latest = result
        self.last_checked = time.time()
        if self._on_result is not None:
            outcome = self._on_result(result)
            if asyncio.iscoroutine(outcome):
                await outcome
        return result

    async def _loop(self) -> None:
        while True:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Status poll %s failed", self.name)
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if not self.running:
            self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass


class RpcError(ValueError):
    """The node answered with a JSON-RPC error object."""


def rpc_result(body: Any) -> Dict[str, Any]:
    """Unwrap a JSON-RPC response body, raising RpcError for error replies."""
    if not isinstance(body, dict):
        return {}
    error = body.get("error")
    if error is not None:
        message = error.get("message", error) if isinstance(error, dict) else error
        raise RpcError(f"RPC error: {message}")
    return body.get("result", body)


def build_port_chain(configured_port: int, fallback_ports: Sequence[int] = NODE_FALLBACK_PORTS) -> List[int]:
    """Configured port first, then fallbacks without duplicates."""
    chain = [configured_port]
    chain.extend(p for p in fallback_ports if p not in chain)
    return chain


class NodeRpcProber(EndpointProber[int]):
    """Port fallback for the local node's JSON RPC endpoint."""

    def __init__(
        self,
        host: str = "localhost",
        configured_port: int = NODE_FALLBACK_PORTS[0],
        fallback_ports: Sequence[int] = NODE_FALLBACK_PORTS,
        timeout: float = 5.0,
        retry_interval: float = DEFAULT_RETRY_INTERVAL,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.host = host
        self.configured_port = configured_port
        self.fallback_ports = list(fallback_ports)
        self.timeout = timeout
        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)
        super().__init__(self._probe_port, build_port_chain(configured_port, self.fallback_ports),
                         retry_interval=retry_interval, name="Kaspa node")

    def url_for(self, port: int) -> str:
        return f"http://{self.host}:{port}"

    async def _probe_port(self, port: int) -> ProbeOutcome:
        url = self.url_for(port)
        try:
            await self._http_client.post(url, json={"method": "ping", "params": {}}, timeout=self.timeout)
        except httpx.TimeoutException:
            return ProbeOutcome(False, detail="timeout", url=url)
        except httpx.TransportError as e:
            return ProbeOutcome(False, detail=str(e) or e.__class__.__name__, url=url)
        # Any HTTP response, including errors, means something is listening.
        return ProbeOutcome(True, url=url)

    async def rpc_call(self, method: str, params: Optional[list] = None) -> Dict[str, Any]:
        """JSON-RPC call against the working port. Raises httpx errors."""
        result = await self.connect()
        if not result.connected:
            raise httpx.ConnectError(result.error or "node unreachable")
        response = await self._http_client.post(
            self.url_for(result.port),
            json={"jsonrpc": "2.0", "method": method, "params": params or [], "id": 1},
            timeout=self.timeout,
        )
        response.raise_for_status()
        return rpc_result(response.json())

    def set_configured_port(self, port: int) -> None:
        self.configured_port = port
        self.set_candidates(build_port_chain(port, self.fallback_ports))

    def get_status(self) -> Dict[str, Any]:
        return {
            "configuredPort": self.configured_port,
            "cachedPort": self.cached_candidate,
            "portChain": self.candidates,
            "retryActive": self.retry_active,
            "retryInterval": self.retry_interval,
        }

    async def aclose(self) -> None:
        await self.stop_retry()
        if self._owns_client:
            await self._http_client.aclose()
