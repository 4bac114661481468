"""
Media stream WebSocket routes
Twilio connects here after the call's TwiML opens a bidirectional stream.
"""

from typing import Optional
from fastapi import APIRouter, WebSocket

from callbridge.core.logging import get_logger
from callbridge.models.call import CallDirection
from callbridge.services.relay import AudioRelay

logger = get_logger(__name__)

router = APIRouter(tags=["media"])


async def _relay(websocket: WebSocket, direction: CallDirection, agent_id: Optional[str]) -> None:
    await websocket.accept()
    logger.info(f"[Server] Twilio connected to {direction.value} media stream")

    relay = AudioRelay(websocket, direction=direction, agent_id=agent_id)
    await relay.run(websocket.iter_text())

    logger.info(f"[Server] {direction.value} media stream for {relay.call_sid} finished")


@router.websocket("/media-stream")
async def media_stream(websocket: WebSocket, agent_id: Optional[str] = None):
    await _relay(websocket, CallDirection.INBOUND, agent_id)


@router.websocket("/outbound-media-stream")
async def outbound_media_stream(websocket: WebSocket, agent_id: Optional[str] = None):
    await _relay(websocket, CallDirection.OUTBOUND, agent_id)
