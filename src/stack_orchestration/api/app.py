"""
Main FastAPI application factory for the stack orchestration API
"""

from fastapi import FastAPI
import logging

logger = logging.getLogger(__name__)


def create_app(orchestrator) -> FastAPI:
    """
    Create and configure the FastAPI application

    Args:
        orchestrator: StackOrchestrator instance

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title="Kaspa Stack Orchestration",
        version="0.1.0",
        description="Profile resolution, health monitoring and fallback handling for the Kaspa all-in-one stack"
    )

    @app.on_event("startup")
    async def startup_event():
        await orchestrator.start()
        logger.info("Stack orchestration started")

    @app.on_event("shutdown")
    async def shutdown_event():
        await orchestrator.stop()
        logger.info("Stack orchestration stopped")

    from .routes import management, profiles, state, services, node, fallback, cross_launch, events

    app.include_router(management.create_router(orchestrator), tags=["Management"])
    app.include_router(profiles.create_router(orchestrator), prefix="/api/profiles", tags=["Profiles"])
    app.include_router(state.create_router(orchestrator), prefix="/api/state", tags=["State"])
    app.include_router(services.create_router(orchestrator), prefix="/api/services", tags=["Services"])
    app.include_router(node.create_router(orchestrator), prefix="/api/node", tags=["Node"])
    app.include_router(fallback.create_router(orchestrator), prefix="/api/fallback", tags=["Fallback"])
    app.include_router(cross_launch.create_router(orchestrator), prefix="/api/cross-launch", tags=["Cross Launch"])
    app.include_router(events.create_router(orchestrator), tags=["Events"])

    return app
