from __future__ import annotations

import math
from collections import abc
from dataclasses import dataclass
from enum import Enum
from typing import Any

from droppilot.models.channel import TrackerState


class PubSubEventKind(str, Enum):
    DROP_PROGRESS = "drop-progress"
    DROP_CLAIM = "drop-claim"
    NOTIFICATION = "notification"


@dataclass(frozen=True)
class PubSubEvent:
    kind: PubSubEventKind
    at: float
    topic: str
    message_type: str
    drop_id: str | None = None
    drop_instance_id: str | None = None
    current_progress_min: float | None = None
    required_progress_min: float | None = None
    notification_type: str | None = None


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass(frozen=True)
class PubSubStatus:
    state: TrackerState = TrackerState.IDLE
    connection_state: ConnectionState = ConnectionState.DISCONNECTED
    listening: bool = False
    reconnect_attempts: int = 0
    last_message_at: float | None = None
    last_error_at: float | None = None
    last_error_message: str | None = None
    events: int = 0
    user_id: str | None = None


class StreamEventKind(str, Enum):
    STREAM_UP = "stream-up"
    STREAM_DOWN = "stream-down"
    VIEWERS = "viewers"


@dataclass(frozen=True)
class StreamEvent:
    kind: StreamEventKind
    channel_id: str
    viewers: int | None = None


def _text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    return value.strip() or None


def _number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return float(value)


def _first(data: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None


def parse_user_event(
    topic: str,
    payload: Any,
    at: float,
    notification_types: abc.Collection[str],
) -> PubSubEvent | None:
    """
    Turn a decoded user topic message into an event.

    Returns None for anything that isn't a drop progress, a drop claim
    or a notification of one of the `notification_types`.
    An empty `notification_types` accepts every notification.
    """
    if not isinstance(payload, dict):
        return None
    message_type = _text(payload.get("type"))
    if message_type is None:
        return None
    data = payload.get("data")
    if not isinstance(data, dict):
        data = {}
    if topic.startswith("user-drop-events."):
        drop_id = _text(_first(data, "drop_id", "dropId"))
        if message_type == "drop-progress":
            return PubSubEvent(
                PubSubEventKind.DROP_PROGRESS,
                at,
                topic,
                message_type,
                drop_id=drop_id,
                current_progress_min=_number(
                    _first(data, "current_progress_min", "currentProgressMin")
                ),
                required_progress_min=_number(
                    _first(data, "required_progress_min", "requiredProgressMin")
                ),
            )
        if message_type == "drop-claim":
            return PubSubEvent(
                PubSubEventKind.DROP_CLAIM,
                at,
                topic,
                message_type,
                drop_id=drop_id,
                drop_instance_id=_text(_first(data, "drop_instance_id", "dropInstanceId")),
            )
        return None
    if not topic.startswith("onsite-notifications.") or message_type != "create-notification":
        return None
    notification = data.get("notification")
    if not isinstance(notification, dict):
        return None
    notification_type = _text(notification.get("type"))
    if notification_type is None:
        return None
    if notification_types and notification_type not in notification_types:
        return None
    return PubSubEvent(
        PubSubEventKind.NOTIFICATION,
        at,
        topic,
        message_type,
        notification_type=notification_type,
    )


def parse_stream_event(channel_id: str, payload: Any) -> StreamEvent | None:
    """Turn a decoded playback topic message into a stream state or viewer count change."""
    if not isinstance(payload, dict):
        return None
    message_type = (_text(payload.get("type")) or "").lower()
    if message_type == "stream-down":
        return StreamEvent(StreamEventKind.STREAM_DOWN, channel_id)
    if message_type == "stream-up":
        return StreamEvent(StreamEventKind.STREAM_UP, channel_id)
    viewers = _number(_first(payload, "viewers", "viewer_count", "viewers_count", "view_count"))
    if viewers is None or viewers < 0:
        return None
    return StreamEvent(StreamEventKind.VIEWERS, channel_id, viewers=int(viewers))
