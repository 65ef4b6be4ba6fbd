"""
Event stream WebSocket route
"""

import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)


def create_router(orchestrator):
    """Create the event stream route"""
    router = APIRouter()

    @router.websocket("/ws")
    async def event_stream(websocket: WebSocket):
        """Live service updates, resource stats, alerts and log lines.

        Clients send JSON messages (`ping`, `subscribe_logs`, `subscribe_updates`,
        `visibility_change`, ...) and receive JSON events.
        """
        broadcaster = orchestrator.broadcaster
        await websocket.accept()

        async def close(code: int, reason: str):
            await websocket.close(code=code, reason=reason)

        connection = await broadcaster.register(websocket.send_json, close)
        try:
            while True:
                message = await websocket.receive_text()
                await broadcaster.handle_message(connection.id, message)
        except WebSocketDisconnect:
            logger.debug(f"Connection {connection.id} disconnected")
        finally:
            await broadcaster.unregister(connection.id)

    return router
