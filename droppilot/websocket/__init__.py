"""
PubSub websocket connections.

This package provides the websocket pool that spreads topic subscriptions
over as many connections as needed.
"""

from __future__ import annotations

from droppilot.websocket.pool import WebsocketPool
from droppilot.websocket.websocket import Websocket


__all__ = [
    "Websocket",
    "WebsocketPool",
]
