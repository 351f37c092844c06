"""
WebSocket routes for engine status updates.

Pushes the engine status to loading indicators whenever it changes, until
the engine is ready or has failed.
"""
import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from engine import LifecycleState

from ..config import STATUS_POLL_INTERVAL_SECONDS
from ..services.engine_service import get_engine_service

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws/engine")
async def engine_status(websocket: WebSocket):
    """
    Stream engine status changes.

    Every message is ``{"type": "status", "status": {...}}``; the last one is
    followed by ``{"type": "complete"}`` once the engine is ready or failed.
    """
    await websocket.accept()

    service = get_engine_service()
    last = None

    try:
        while True:
            status = service.status()
            payload = status.model_dump(mode="json")
            if payload != last:
                await websocket.send_json({"type": "status", "status": payload})
                last = payload

            if status.is_ready or status.state is LifecycleState.FAILED:
                await websocket.send_json({"type": "complete", "ready": status.is_ready})
                break

            await asyncio.sleep(STATUS_POLL_INTERVAL_SECONDS)

    except WebSocketDisconnect:
        logger.debug("Status subscriber disconnected")
        return

    await websocket.close()
