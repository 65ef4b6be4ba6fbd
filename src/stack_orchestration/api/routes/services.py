"""
Service health API routes
"""

from fastapi import APIRouter, HTTPException


def create_router(orchestrator):
    """Create service health routes"""
    router = APIRouter()

    @router.get("/status")
    async def list_service_status(refresh: bool = False):
        """Latest health verdict for every installed service.

        The verdicts come from the last poll unless `refresh=true`.
        """
        verdicts = await orchestrator.service_statuses(refresh=refresh)
        return {
            "services": [v.to_dict() for v in verdicts.values()],
            "total": len(verdicts),
        }

    @router.get("/{service_name}/status")
    async def get_service_status(service_name: str):
        """Classify one service now."""
        return (await orchestrator.service_status(service_name)).to_dict()

    @router.get("/{service_name}/logs")
    async def get_service_logs(service_name: str, tail: int = 100):
        """Last lines of a service's container log"""
        logs = await orchestrator.service_logs(service_name, tail)
        if logs is None:
            raise HTTPException(status_code=404, detail=f"Logs for {service_name} not available")
        return {"service": service_name, "logs": logs}

    return router
