"""Core constants, enums, and type definitions for DropPilot."""

from __future__ import annotations

import logging
from collections import abc
from copy import deepcopy
from datetime import timedelta
from enum import Enum, auto
from typing import Any, Literal


# Logging special levels
CALL: int = logging.INFO - 1
logging.addLevelName(CALL, "CALL")

# Logging configuration
LOGGING_LEVELS = {
    0: logging.ERROR,
    1: logging.WARNING,
    2: logging.INFO,
    3: CALL,
    4: logging.DEBUG,
}
FILE_FORMATTER = logging.Formatter(
    "{asctime}.{msecs:03.0f}:\t{levelname:>7}:\t{filename}:{lineno}:\t{message}",
    style="{",
    datefmt="%Y-%m-%d %H:%M:%S",
)
OUTPUT_FORMATTER = logging.Formatter("{levelname}: {message}", style="{", datefmt="%H:%M:%S")

# Type aliases
JsonType = dict[str, Any]

# Remote request limits
CHUNK_SIZE = 20
CHANNELS_LIMIT = 20

# Intervals and Delays
WATCH_INTERVAL = timedelta(seconds=59)
WATCH_JITTER = timedelta(seconds=8)
CLAIM_RETRY_INTERVAL = timedelta(seconds=90)
CLAIM_REFRESH_DELAY = timedelta(seconds=1.2)
CHANGES_DISPLAY_TIME = timedelta(seconds=1.4)
CHANNELS_REFRESH_INTERVAL = timedelta(minutes=5)
RECENT_INVENTORY_WINDOW = timedelta(seconds=30)
AUTO_SWITCH_DISPLAY_TIME = timedelta(seconds=12)
PROGRESS_TICK = timedelta(seconds=1)
MIN_REFRESH_INTERVAL = timedelta(seconds=60)
AUTH_ERROR_WINDOW = timedelta(minutes=2)
AUTH_RETRY_DELAY = timedelta(minutes=1)

# PubSub
PUBSUB_URL = "wss://pubsub-edge.twitch.tv/v1"
MAX_WEBSOCKETS = 8
WS_TOPICS_LIMIT = 50
TRACKED_CHANNEL_TOPICS = 180
PING_INTERVAL = timedelta(minutes=4)
PING_TIMEOUT = timedelta(seconds=10)
RECONNECT_MAX_DELAY = timedelta(minutes=1)
# inventory refreshes triggered by pubsub events, as (minimum gap, delay) pairs
PROGRESS_RECONCILE = (timedelta(seconds=30), timedelta(seconds=15))
STALE_PROGRESS_RECONCILE = (timedelta(seconds=30), timedelta(seconds=10))
UNMATCHED_PROGRESS_RECONCILE = (timedelta(seconds=10), timedelta(seconds=1.5))
CLAIM_RECONCILE = (timedelta(seconds=2), timedelta(seconds=0.45))
NOTIFICATION_TYPES = frozenset(
    ("user_drop_reward_reminder_notification", "quests_viewer_reward_campaign_earned_emote")
)
TRACKER_MODES = ("polling", "ws", "hybrid")


class State(Enum):
    """Application state machine states."""

    IDLE = auto()
    AUTHENTICATE = auto()
    INVENTORY_FETCH = auto()
    EXIT = auto()


class ErrorCode(str, Enum):
    """Stable error codes surfaced together with a human readable message."""

    REQUEST_FAILED = "request.failed"
    GQL_FAILED = "gql.failed"
    SPADE_FETCH_FAILED = "spade.fetch_failed"
    SPADE_URL_MISSING = "spade.url_missing"
    WATCH_MISSING_LOGIN = "watch.missing_login"
    WATCH_OFFLINE = "watch.offline"
    WATCH_MISSING_IDS = "watch.missing_ids"
    WATCH_PING_FAILED = "watch.ping_failed"
    GAME_SLUG_MISSING = "game.slug_missing"
    INVENTORY_EMPTY = "inventory.empty"
    INVENTORY_FETCH_FAILED = "inventory.fetch_failed"
    INVENTORY_INVALID_RESPONSE = "inventory.invalid_response"
    CLAIM_MISSING_ID = "claim.missing_id"
    CLAIM_FAILED = "claim.failed"
    PROFILE_FETCH_FAILED = "profile.fetch_failed"
    PROFILE_INVALID_RESPONSE = "profile.invalid_response"
    CHANNELS_FETCH_FAILED = "channels.fetch_failed"
    CHANNELS_INVALID_RESPONSE = "channels.invalid_response"
    PUBSUB_FAILED = "pubsub.failed"


class GQLOperation(JsonType):
    """GraphQL operation with persisted query hash."""

    def __init__(self, name: str, sha256: str, *, variables: JsonType | None = None):
        super().__init__(
            operationName=name,
            extensions={
                "persistedQuery": {
                    "version": 1,
                    "sha256Hash": sha256,
                }
            },
        )
        if variables is not None:
            self.__setitem__("variables", variables)

    def with_variables(self, variables: JsonType) -> GQLOperation:
        """Create a copy with merged variables."""
        from .paths import _merge_vars

        modified = deepcopy(self)
        if "variables" in self:
            existing_variables: JsonType = modified["variables"]
            _merge_vars(existing_variables, variables)
        else:
            modified["variables"] = variables
        return modified


TopicProcess = abc.Callable[[str, JsonType], Any]


class WebsocketTopic:
    """Represents a websocket topic subscription."""

    def __init__(
        self,
        category: Literal["User", "Channel"],
        topic_name: str,
        target_id: str,
        process: TopicProcess,
    ):
        assert target_id
        self._id: str = self.as_str(category, topic_name, target_id)
        self._target_id = target_id
        self._process: TopicProcess = process

    @classmethod
    def as_str(cls, category: Literal["User", "Channel"], topic_name: str, target_id: str) -> str:
        return f"{WEBSOCKET_TOPICS[category][topic_name]}.{target_id}"

    def __call__(self, message: JsonType):
        return self._process(self._target_id, message)

    def __str__(self) -> str:
        return self._id

    def __repr__(self) -> str:
        return f"Topic({self._id})"

    def __eq__(self, other) -> bool:
        if isinstance(other, WebsocketTopic):
            return self._id == other._id
        elif isinstance(other, str):
            return self._id == other
        return NotImplemented

    def __hash__(self) -> int:
        return hash((self.__class__.__name__, self._id))


WEBSOCKET_TOPICS: dict[str, dict[str, str]] = {
    "User": {  # Using user_id
        "Drops": "user-drop-events",
        "Notifications": "onsite-notifications",
    },
    "Channel": {  # Using channel_id
        "StreamState": "video-playback-by-id",
    },
}
