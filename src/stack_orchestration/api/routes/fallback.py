"""
Fallback API routes
Operator decisions for failed foundational services
"""

from fastapi import APIRouter

from stack_orchestration.api.schemas import FallbackDecisionRequest, unwrap
from stack_orchestration.fallback import STRATEGY_OPTIONS


def create_router(orchestrator):
    """Create fallback routes"""
    router = APIRouter()

    @router.get("")
    async def get_fallback_status():
        """Per-service fallback state plus the active fallback record, if any."""
        return orchestrator.fallback_status()

    @router.get("/options")
    async def list_options():
        """Strategies offered once a service reaches awaiting_decision."""
        return [o.to_dict() for o in STRATEGY_OPTIONS]

    @router.post("/choose")
    async def choose(request: FallbackDecisionRequest):
        """Apply a strategy to a service that is awaiting a decision.

        `continue-public` redirects every dependent service to the public
        endpoint and persists the fallback record; `troubleshoot` returns logs
        and diagnostics; `retry` re-runs the check with backoff; `skip-node`
        leaves the service down.
        """
        return unwrap(await orchestrator.choose_fallback(request.service, request.strategy))

    @router.post("/{service_name}/revert")
    async def revert(service_name: str):
        """Switch dependents back to the local service. Requires a healthy check first."""
        return unwrap(await orchestrator.revert_fallback(service_name))

    @router.get("/{service_name}/troubleshoot")
    async def troubleshoot(service_name: str):
        """Logs, diagnostics and suggested steps for a service"""
        return await orchestrator.troubleshoot(service_name)

    return router
