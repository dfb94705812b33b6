"""In-process real-time channels over WebSockets.

Clients subscribe to a channel (``private-user-<id>``) through the
``/ws/{channel}`` endpoint; the fan-out coordinator publishes to it.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import WebSocket

logger = logging.getLogger(__name__)

USER_CHANNEL_PREFIX = "private-user-"


def user_channel(user_id: str) -> str:
    return f"{USER_CHANNEL_PREFIX}{user_id}"


class ConnectionManager:
    """Manages WebSocket connections grouped by channel.

    Publishing to a channel with no subscribers is a no-op. A socket that
    fails to receive is dropped from every channel.
    """

    def __init__(self):
        # client_id -> WebSocket
        self.active_connections: dict[str, WebSocket] = {}
        # channel -> set of client_ids
        self.channels: dict[str, set[str]] = {}

    async def connect(self, websocket: WebSocket, client_id: str, channel: Optional[str] = None):
        """Accept a WebSocket and optionally subscribe it to a channel."""
        await websocket.accept()
        self.active_connections[client_id] = websocket
        if channel:
            self.subscribe(client_id, channel)

    def subscribe(self, client_id: str, channel: str):
        self.channels.setdefault(channel, set()).add(client_id)

    def disconnect(self, client_id: str):
        """Remove a client from all channels and drop its connection."""
        self.active_connections.pop(client_id, None)
        for channel in list(self.channels):
            members = self.channels[channel]
            members.discard(client_id)
            if not members:
                del self.channels[channel]

    def subscriber_count(self, channel: str) -> int:
        return len(self.channels.get(channel, set()))

    async def publish(self, channel: str, event: str, payload: dict) -> int:
        """Send an event to every subscriber of a channel. Returns deliveries."""
        message = {
            "channel": channel,
            "event": event,
            "data": payload,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        delivered = 0
        disconnected: list[str] = []
        for cid in list(self.channels.get(channel, set())):
            ws = self.active_connections.get(cid)
            if ws is None:
                continue
            try:
                await ws.send_json(message)
                delivered += 1
            except Exception:
                logger.warning("Publish to %s failed for client %s, removing", channel, cid)
                disconnected.append(cid)
        for cid in disconnected:
            self.disconnect(cid)
        logger.debug("Published %s to %s (%d delivered)", event, channel, delivered)
        return delivered


manager = ConnectionManager()
