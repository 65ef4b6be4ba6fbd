"""
Node connection API routes
"""

from fastapi import APIRouter


def create_router(orchestrator):
    """Create node connection routes"""
    router = APIRouter()

    @router.get("/connection")
    async def get_connection():
        """Most recent connection result for the node RPC endpoint."""
        return (await orchestrator.node_connection()).to_dict()

    @router.get("/ports")
    async def get_port_status():
        """Configured port, cached working port, fallback chain and retry state."""
        return orchestrator.node_prober.get_status()

    @router.post("/reconnect")
    async def reconnect():
        """Drop the cached port and probe the whole chain again."""
        return (await orchestrator.reconnect_node()).to_dict()

    return router
