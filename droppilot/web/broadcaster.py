"""WebSocket broadcaster for real-time updates to web clients."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict
from typing import TYPE_CHECKING, Any

from fastapi.encoders import jsonable_encoder

from droppilot.models import AuthError, AutoSwitch, DropClaimed, MinutesEarned


if TYPE_CHECKING:
    from socketio import AsyncServer

    from droppilot.core.events import EventHub


logger = logging.getLogger("DropPilot")

EVENT_NAMES: dict[type, str] = {
    MinutesEarned: "minutes_earned",
    DropClaimed: "drop_claimed",
    AuthError: "auth_error",
    AutoSwitch: "auto_switch",
}


class WebSocketBroadcaster:
    """Manages broadcasting messages to all connected web clients via Socket.IO.

    Orchestrator events are forwarded under their socket.io event names,
    see `EVENT_NAMES`.
    """

    def __init__(self):
        self._sio: AsyncServer | None = None  # Will be set by the webapp
        self._pending: set[asyncio.Task[None]] = set()

    def set_socketio(self, sio: AsyncServer):
        """Set the Socket.IO server instance for broadcasting."""
        self._sio = sio

    def attach(self, events: EventHub) -> None:
        for event_type in EVENT_NAMES:
            events.subscribe(event_type, self.forward)

    def detach(self, events: EventHub) -> None:
        for event_type in EVENT_NAMES:
            events.unsubscribe(event_type, self.forward)

    def forward(self, event: Any) -> None:
        """Schedule an orchestrator event for broadcasting."""
        name = EVENT_NAMES[type(event)]
        self.schedule(name, asdict(event))

    def schedule(self, event: str, data: Any) -> None:
        if self._sio is None:
            return
        task = asyncio.create_task(self.emit(event, data))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def emit(self, event: str, data: Any):
        """Emit an event to all connected clients.

        Args:
            event: The event name to emit
            data: The data payload to send with the event
        """
        if self._sio:
            logger.debug(f"Broadcasting {event}")
            await self._sio.emit(event, jsonable_encoder(data))
