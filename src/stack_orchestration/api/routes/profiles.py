"""
Profile API routes
Catalog queries, dependency graph and add/remove validation
"""

from fastapi import APIRouter, HTTPException

from stack_orchestration.api.schemas import ProfileChangeRequest, SelectionRequest, unwrap


def create_router(orchestrator):
    """Create profile routes"""
    router = APIRouter()

    @router.get("")
    async def list_profiles():
        """List every catalog profile, flagging the installed ones."""
        return orchestrator.list_profiles()

    @router.get("/graph")
    async def installed_graph():
        """Dependency graph of the installed profiles (the whole catalog when nothing is installed)."""
        return orchestrator.profile_graph()

    @router.post("/graph")
    async def selection_graph(request: SelectionRequest):
        """Dependency graph for an arbitrary selection, including transitive dependencies."""
        return orchestrator.profile_graph(request.profiles)

    @router.post("/startup-order")
    async def startup_order(request: SelectionRequest):
        """Start order for a selection. Cycles are reported as 400."""
        return {"order": unwrap(orchestrator.startup_order(request.profiles))}

    @router.post("/validate-addition")
    async def validate_addition(request: ProfileChangeRequest):
        """Check whether a profile can be added to the current (or given) installation.

        Returns `canAdd`, blocking `errors`, non-blocking `warnings` and the
        `integration` block with the new services and resulting start order.
        """
        return orchestrator.validate_addition(request.profile, request.current).to_dict()

    @router.post("/validate-removal")
    async def validate_removal(request: ProfileChangeRequest):
        """Check whether a profile can be removed, and what else it would affect."""
        return orchestrator.validate_removal(request.profile, request.current).to_dict()

    @router.post("/add")
    async def add_profile(request: ProfileChangeRequest):
        """Validate and record a profile addition (installer only)."""
        return unwrap(await orchestrator.add_profile(request.profile))

    @router.post("/remove")
    async def remove_profile(request: ProfileChangeRequest):
        """Validate and record a profile removal (installer only)."""
        return unwrap(await orchestrator.remove_profile(request.profile))

    @router.get("/{profile_id}")
    async def get_profile(profile_id: str):
        """Get a single profile"""
        profile = orchestrator.get_profile(profile_id)
        if profile is None:
            raise HTTPException(status_code=404, detail=f"Profile {profile_id} not found")
        return profile

    return router
