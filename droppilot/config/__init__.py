"""Configuration package for DropPilot."""

from __future__ import annotations

from .client_info import ClientInfo, ClientType

# Re-export all public symbols for convenience
from .constants import (
    AUTH_ERROR_WINDOW,
    AUTH_RETRY_DELAY,
    AUTO_SWITCH_DISPLAY_TIME,
    CALL,
    CHANGES_DISPLAY_TIME,
    CHANNELS_LIMIT,
    CHANNELS_REFRESH_INTERVAL,
    CHUNK_SIZE,
    CLAIM_RECONCILE,
    CLAIM_REFRESH_DELAY,
    CLAIM_RETRY_INTERVAL,
    FILE_FORMATTER,
    LOGGING_LEVELS,
    MAX_WEBSOCKETS,
    MIN_REFRESH_INTERVAL,
    NOTIFICATION_TYPES,
    OUTPUT_FORMATTER,
    PING_INTERVAL,
    PING_TIMEOUT,
    PROGRESS_RECONCILE,
    PROGRESS_TICK,
    PUBSUB_URL,
    RECENT_INVENTORY_WINDOW,
    RECONNECT_MAX_DELAY,
    STALE_PROGRESS_RECONCILE,
    TRACKED_CHANNEL_TOPICS,
    TRACKER_MODES,
    UNMATCHED_PROGRESS_RECONCILE,
    WATCH_INTERVAL,
    WATCH_JITTER,
    WEBSOCKET_TOPICS,
    WS_TOPICS_LIMIT,
    ErrorCode,
    GQLOperation,
    JsonType,
    State,
    TopicProcess,
    WebsocketTopic,
)
from .operations import GQL_OPERATIONS
from .paths import (
    COOKIES_PATH,
    DATA_DIR,
    LOG_DIR,
    SETTINGS_PATH,
    STATS_PATH,
    _merge_vars,
)


__all__ = [
    # constants.py
    "CALL",
    "FILE_FORMATTER",
    "OUTPUT_FORMATTER",
    "LOGGING_LEVELS",
    "State",
    "ErrorCode",
    "JsonType",
    "GQLOperation",
    "CHUNK_SIZE",
    "CHANNELS_LIMIT",
    "WATCH_INTERVAL",
    "WATCH_JITTER",
    "CLAIM_RETRY_INTERVAL",
    "CLAIM_REFRESH_DELAY",
    "CHANGES_DISPLAY_TIME",
    "CHANNELS_REFRESH_INTERVAL",
    "RECENT_INVENTORY_WINDOW",
    "AUTO_SWITCH_DISPLAY_TIME",
    "PROGRESS_TICK",
    "MIN_REFRESH_INTERVAL",
    "AUTH_ERROR_WINDOW",
    "AUTH_RETRY_DELAY",
    "PUBSUB_URL",
    "MAX_WEBSOCKETS",
    "WS_TOPICS_LIMIT",
    "TRACKED_CHANNEL_TOPICS",
    "PING_INTERVAL",
    "PING_TIMEOUT",
    "RECONNECT_MAX_DELAY",
    "PROGRESS_RECONCILE",
    "STALE_PROGRESS_RECONCILE",
    "UNMATCHED_PROGRESS_RECONCILE",
    "CLAIM_RECONCILE",
    "NOTIFICATION_TYPES",
    "TRACKER_MODES",
    "TopicProcess",
    "WebsocketTopic",
    "WEBSOCKET_TOPICS",
    # paths.py
    "DATA_DIR",
    "LOG_DIR",
    "COOKIES_PATH",
    "SETTINGS_PATH",
    "STATS_PATH",
    "_merge_vars",
    # client_info.py
    "ClientInfo",
    "ClientType",
    # operations.py
    "GQL_OPERATIONS",
]
