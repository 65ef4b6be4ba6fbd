"""
Management API routes
Liveness and a combined status view
"""

from fastapi import APIRouter


def create_router(orchestrator):
    """Create management routes"""
    router = APIRouter()

    @router.get("/health")
    async def health():
        """Liveness probe for the API process itself."""
        return {"status": "ok"}

    @router.get("/api/status")
    async def status():
        """Role, installed profiles, health summary, node port, fallback and connection stats."""
        return orchestrator.get_status()

    return router
