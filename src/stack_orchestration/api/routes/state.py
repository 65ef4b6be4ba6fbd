"""
Installation state API routes
"""

from fastapi import APIRouter

from stack_orchestration.api.schemas import InstallationRequest, OperatorBusyRequest, unwrap


def create_router(orchestrator):
    """Create installation state routes"""
    router = APIRouter()

    @router.get("")
    def get_state():
        """The persisted installation record. 404 when nothing is installed, 500 when it is corrupt."""
        return unwrap(orchestrator.get_state())

    @router.get("/exists")
    def has_installation():
        """Whether a valid installation record exists."""
        return {"installed": orchestrator.has_installation()}

    @router.post("")
    def record_installation(request: InstallationRequest):
        """Record a completed installation (installer only)."""
        return unwrap(orchestrator.record_installation(request.profiles, request.configuration))

    @router.post("/sync")
    async def sync_services():
        """Refresh service running/exists flags from docker (installer only)."""
        return unwrap(await orchestrator.sync_services())

    @router.put("/operator-busy")
    async def set_operator_busy(request: OperatorBusyRequest):
        """Mark the installer as busy so the console holds back reconfiguration actions."""
        return unwrap(await orchestrator.set_operator_busy(request.busy))

    return router
