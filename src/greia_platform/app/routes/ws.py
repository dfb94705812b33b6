"""WebSocket endpoint for private real-time channels."""

import logging
import uuid

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect, status

from greia_platform.app.auth import actor_from_token
from greia_platform.services.realtime import manager, user_channel

logger = logging.getLogger(__name__)
router = APIRouter(tags=["websocket"])


@router.websocket("/ws/{channel}")
async def channel_websocket(websocket: WebSocket, channel: str, token: str = Query("")):
    """Subscribe to a channel. Users may only join their own private channel."""
    actor = actor_from_token(token)
    if actor is None or (not actor.is_admin and channel != user_channel(actor.id)):
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    client_id = str(uuid.uuid4())
    await manager.connect(websocket, client_id, channel)
    logger.info("Client %s (user %s) joined %s", client_id, actor.id, channel)
    try:
        while True:
            # Inbound messages are ignored; the socket is publish-only
            await websocket.receive_text()
    except WebSocketDisconnect:
        manager.disconnect(client_id)
        logger.info("Client %s left %s", client_id, channel)
