"""
Cross-launch API routes
Hand-off links between the monitoring console and the installation wizard
"""

from fastapi import APIRouter

from stack_orchestration.api.schemas import DecodeRequest, unwrap
from stack_orchestration.networking.cross_launch import CrossLaunchContext, decode_context


def create_router(orchestrator):
    """Create cross-launch routes"""
    router = APIRouter()

    @router.post("/encode")
    async def encode(context: CrossLaunchContext):
        """Encode a launch context into a query string and wizard URL."""
        return {
            "query": context.encode(),
            "url": orchestrator.navigator.wizard_url_for(context),
        }

    @router.post("/decode")
    async def decode(request: DecodeRequest):
        """Decode a launch context from a URL or query string."""
        context = unwrap(decode_context(request.url))
        return context.model_dump(mode="json", by_alias=True, exclude_none=True)

    @router.get("/links/{profile_id}")
    async def links(profile_id: str):
        """Wizard URLs for adding, modifying or removing a profile."""
        return orchestrator.cross_launch_links(profile_id)

    return router
