"""Web status bridge: REST endpoints and socket.io broadcasts."""

from droppilot.web.broadcaster import WebSocketBroadcaster


__all__ = ["WebSocketBroadcaster"]
