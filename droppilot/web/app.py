from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Literal

import socketio
from fastapi import FastAPI, HTTPException
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from yarl import URL

from droppilot.version import __version__
from droppilot.web.broadcaster import WebSocketBroadcaster


if TYPE_CHECKING:
    import uvicorn

    from droppilot.core.farmer import DropFarmer


logger = logging.getLogger("DropPilot")

# Create FastAPI app
app = FastAPI(title="DropPilot", version=__version__)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Create Socket.IO server
sio = socketio.AsyncServer(
    async_mode="asgi", cors_allowed_origins="*", logger=False, engineio_logger=False
)

# Wrap with ASGI app
socket_app = socketio.ASGIApp(sio, app)

# Global references (set by __main__)
farmer: DropFarmer | None = None
broadcaster: WebSocketBroadcaster = WebSocketBroadcaster()
_server_instance: uvicorn.Server | None = None


def set_farmer(instance: DropFarmer | None) -> None:
    """
    Called by the entry point to connect the web bridge to the orchestrator.

    Parameters
    ----------
    instance : DropFarmer | None
        The orchestrator to expose, or None to disconnect the current one.
    """
    global farmer
    if farmer is not None:
        broadcaster.detach(farmer.events)
    farmer = instance
    broadcaster.set_socketio(sio)
    if instance is not None:
        broadcaster.attach(instance.events)


def _get_farmer() -> DropFarmer:
    if farmer is None:
        raise HTTPException(status_code=503, detail="Orchestrator not initialized")
    return farmer


def snapshot() -> dict[str, Any]:
    return jsonable_encoder(_get_farmer().state_snapshot())


async def publish_state() -> None:
    """Push a full state snapshot to every connected client."""
    if farmer is not None:
        await broadcaster.emit("state_update", farmer.state_snapshot())


# Pydantic models for API
class SettingsUpdate(BaseModel):
    proxy: str | None = None
    connection_quality: int | None = Field(default=None, ge=1, le=6)
    priority_games: list[str] | None = None
    exclude_games: list[str] | None = None
    obey_priority: bool | None = None
    auto_claim: bool | None = None
    auto_select: bool | None = None
    auto_switch: bool | None = None
    refresh_min_seconds: int | None = Field(default=None, ge=0)
    refresh_max_seconds: int | None = Field(default=None, ge=0)
    user_pubsub: bool | None = None
    tracker_mode: Literal["polling", "ws", "hybrid"] | None = None

    def changes(self) -> dict[str, Any]:
        """
        Return the fields that were actually sent, ready to apply on `Settings`.

        Returns
        -------
        dict[str, Any]
            Setting names mapped to their new values, with the proxy parsed into a URL.
        """
        changes = self.model_dump(exclude_unset=True, exclude_none=True)
        if "proxy" in changes:
            changes["proxy"] = URL(changes["proxy"].strip())
        return changes


class WatchRequest(BaseModel):
    channel_id: str


# ==================== REST API Endpoints ====================


@app.get("/api/state")
async def get_state():
    """Get the current orchestrator state"""
    return snapshot()


@app.post("/api/settings")
async def update_settings(update: SettingsUpdate):
    """Update application settings"""
    instance = _get_farmer()
    changes = update.changes()
    if (
        changes.get("refresh_min_seconds", instance.settings.refresh_min_seconds)
        > changes.get("refresh_max_seconds", instance.settings.refresh_max_seconds)
    ):
        raise HTTPException(
            status_code=422, detail="refresh_min_seconds can't exceed refresh_max_seconds"
        )
    instance.apply_settings(changes)
    await publish_state()
    return {"success": True, "state": snapshot()}


@app.post("/api/watch")
async def watch_channel(request: WatchRequest):
    """Start watching a channel from the current list"""
    instance = _get_farmer()
    if not instance.allow_watching:
        raise HTTPException(status_code=409, detail="Not logged in")
    if not instance.user_watch(request.channel_id):
        raise HTTPException(status_code=404, detail="Channel not found")
    await publish_state()
    return {"success": True}


@app.post("/api/stop")
async def stop_watching():
    """Stop watching and pause auto-select"""
    _get_farmer().user_stop()
    await publish_state()
    return {"success": True}


@app.post("/api/refresh")
async def trigger_refresh():
    """Trigger an inventory refresh"""
    _get_farmer().request_refresh(force_loading=True)
    return {"success": True}


# ==================== Socket.IO Events ====================


@sio.event
async def connect(sid, environ):
    """Client connected"""
    logger.info(f"Web client connected: {sid}")
    # Send initial state to new client
    if farmer is not None:
        await sio.emit("state_update", snapshot(), room=sid)


@sio.event
async def disconnect(sid):
    """Client disconnected"""
    logger.info(f"Web client disconnected: {sid}")


@sio.event
async def request_refresh(sid):
    """Client requested an inventory refresh"""
    if farmer is not None:
        farmer.request_refresh(force_loading=True)


async def state_pusher(interval: float = 5.0) -> None:
    """Periodically publish the full state, so the UI stays in sync between events."""
    while True:
        await asyncio.sleep(interval)
        await publish_state()


async def run_server(host: str = "0.0.0.0", port: int = 8080):
    """Run the web server until `shutdown_server` is called."""
    global _server_instance
    import uvicorn

    config = uvicorn.Config(socket_app, host=host, port=port, log_level="info", access_log=False)
    server = uvicorn.Server(config)
    _server_instance = server
    pusher = asyncio.create_task(state_pusher())
    try:
        await server.serve()
    finally:
        pusher.cancel()
        _server_instance = None


async def shutdown_server():
    """Gracefully shutdown the web server"""
    if _server_instance:
        logger.info("Setting server.should_exit = True")
        _server_instance.should_exit = True
        # uvicorn checks should_exit periodically
        await asyncio.sleep(0.1)
