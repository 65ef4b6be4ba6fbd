"""EndpointProber and NodeRpcProber unit tests.

Node ports are faked with httpx.MockTransport; nothing listens on the network.
"""

import asyncio

import httpx
import pytest

from stack_orchestration.networking.prober import (
    EndpointProber,
    NodeRpcProber,
    ProbeOutcome,
    RpcError,
    StatusPoller,
    build_port_chain,
    rpc_result,
)


class FakePorts:
    """Answers JSON-RPC on the open ports, refuses connections on the rest."""

    def __init__(self, open_ports):
        self.open_ports = set(open_ports)
        self.calls = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request.url.port)
        if request.url.port not in self.open_ports:
            raise httpx.ConnectError("Connection refused", request=request)
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": {"isSynced": True}})


def make_node_prober(ports: FakePorts, configured_port=16112, retry_interval=30.0):
    client = httpx.AsyncClient(transport=httpx.MockTransport(ports.handler))
    return NodeRpcProber(
        host="kaspa-node", configured_port=configured_port, retry_interval=retry_interval, http_client=client
    )


def test_port_chain_configured_first_without_duplicates():
    assert build_port_chain(16112) == [16112, 16110, 16111]
    assert build_port_chain(16111) == [16111, 16110]
    assert build_port_chain(16110) == [16110, 16111]


@pytest.mark.asyncio
async def test_falls_back_to_last_port_after_two_failures():
    ports = FakePorts({16111})
    prober = make_node_prober(ports)

    result = await prober.connect()

    assert result.connected
    assert result.port == 16111
    assert result.url == "http://kaspa-node:16111"
    assert [a.candidate for a in result.failed_attempts] == [16112, 16110]
    assert ports.calls == [16112, 16110, 16111]


@pytest.mark.asyncio
async def test_cached_port_is_tried_first():
    ports = FakePorts({16111})
    prober = make_node_prober(ports)
    await prober.connect()
    ports.calls.clear()

    result = await prober.connect()

    assert result.from_cache
    assert ports.calls == [16111]
    assert prober.get_status()["cachedPort"] == 16111


@pytest.mark.asyncio
async def test_cached_port_failure_reprobes_remaining_candidates():
    ports = FakePorts({16111})
    prober = make_node_prober(ports)
    await prober.connect()
    ports.open_ports = {16110}
    ports.calls.clear()

    result = await prober.connect()

    assert result.connected
    assert result.port == 16110
    assert ports.calls == [16111, 16112, 16110]


@pytest.mark.asyncio
async def test_clear_cache_forces_full_probe():
    ports = FakePorts({16110, 16111})
    prober = make_node_prober(ports, configured_port=16111)
    await prober.connect()
    prober.clear_cache()
    ports.calls.clear()

    await prober.connect()

    assert ports.calls == [16111]
    assert prober.cached_candidate == 16111


@pytest.mark.asyncio
async def test_all_ports_down_reports_every_attempt():
    prober = make_node_prober(FakePorts(set()))

    result = await prober.connect()

    assert not result.connected
    assert result.port is None
    assert len(result.attempts) == 3
    assert "16112" in result.error and "16111" in result.error
    assert prober.cached_candidate is None


@pytest.mark.asyncio
async def test_http_error_status_still_counts_as_reachable():
    def handler(request):
        return httpx.Response(500, text="method not found")

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    prober = NodeRpcProber(configured_port=16110, http_client=client)

    assert (await prober.connect()).connected


@pytest.mark.asyncio
async def test_rpc_call_uses_working_port():
    ports = FakePorts({16110})
    prober = make_node_prober(ports)

    result = await prober.rpc_call("getBlockDagInfo")

    assert result == {"isSynced": True}
    assert ports.calls[-1] == 16110


@pytest.mark.asyncio
async def test_rpc_call_raises_when_unreachable():
    prober = make_node_prober(FakePorts(set()))

    with pytest.raises(httpx.ConnectError):
        await prober.rpc_call("getBlockDagInfo")


@pytest.mark.asyncio
async def test_rpc_call_raises_on_error_reply():
    def handler(request):
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "error": {"code": -1, "message": "node is pruned"}})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    prober = NodeRpcProber(configured_port=16110, http_client=client)

    with pytest.raises(RpcError, match="node is pruned"):
        await prober.rpc_call("getBlockDagInfo")


def test_rpc_result_unwraps_result():
    assert rpc_result({"jsonrpc": "2.0", "id": 1, "result": {"blockCount": 5}}) == {"blockCount": 5}
    assert rpc_result({"jsonrpc": "2.0", "id": 1, "error": None, "result": {}}) == {}
    assert rpc_result([1, 2]) == {}
    with pytest.raises(RpcError, match="RPC error: busy"):
        rpc_result({"error": "busy"})


@pytest.mark.asyncio
async def test_set_configured_port_resets_chain():
    prober = make_node_prober(FakePorts({16110}))
    await prober.connect()

    prober.set_configured_port(16111)

    assert prober.candidates == [16111, 16110]
    assert prober.cached_candidate is None


@pytest.mark.asyncio
async def test_retry_loop_recovers_and_stops():
    up = {"value": False}

    async def probe(candidate):
        return ProbeOutcome(up["value"], detail=None if up["value"] else "down")

    prober = EndpointProber(probe, ["a"], retry_interval=0.05, name="test")
    recovered = asyncio.Event()
    results = []

    def on_recovered(result):
        results.append(result)
        recovered.set()

    assert prober.start_retry(on_recovered)
    assert not prober.start_retry(on_recovered)
    await asyncio.sleep(0.12)
    up["value"] = True
    await asyncio.wait_for(recovered.wait(), timeout=2)
    await asyncio.sleep(0)

    assert results[0].candidate == "a"
    assert not prober.retry_active


@pytest.mark.asyncio
async def test_stop_retry_cancels_loop():
    async def probe(candidate):
        return ProbeOutcome(False, detail="down")

    prober = EndpointProber(probe, ["a"], retry_interval=0.01)
    prober.start_retry()

    await prober.stop_retry()

    assert not prober.retry_active


@pytest.mark.asyncio
async def test_probe_exception_is_a_failed_attempt():
    async def probe(candidate):
        if candidate == "bad":
            raise RuntimeError("boom")
        return ProbeOutcome(True)

    prober = EndpointProber(probe, ["bad", "good"])

    result = await prober.connect()

    assert result.candidate == "good"
    assert result.attempts[0].error == "boom"


@pytest.mark.asyncio
async def test_status_poller_keeps_latest_and_notifies():
    counter = {"n": 0}
    seen = []

    async def check():
        counter["n"] += 1
        return counter["n"]

    poller = StatusPoller(check, interval=0.02, on_result=seen.append)
    poller.start()
    await asyncio.sleep(0.1)
    await poller.stop()

    assert poller.latest == counter["n"]
    assert seen[-1] == poller.latest
    assert len(seen) >= 3
    assert not poller.running
