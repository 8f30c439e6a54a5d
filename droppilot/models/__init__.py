"""Domain models for drop farming."""

from droppilot.models.channel import (
    ChannelCache,
    ChannelDiff,
    ChannelEntry,
    TrackerState,
    TrackerStatus,
    WatchingTarget,
    build_channel_diff,
    is_fresh_cache,
    merge_channel_list,
)
from droppilot.models.events import (
    ActiveDropInfo,
    AuthError,
    AutoSwitch,
    AutoSwitchInfo,
    ClaimKind,
    ClaimStatus,
    DropClaimed,
    ErrorInfo,
    HeartbeatStats,
    MinutesEarned,
    TargetSummary,
)
from droppilot.models.inventory import (
    DropCategory,
    DropStatus,
    InventoryChanges,
    InventoryItem,
    InventoryPatch,
    InventoryState,
    InventoryStatus,
    active_drop_sort_key,
    apply_drop_claim,
    apply_drop_progress,
    diff_inventory,
    total_earned_minutes,
)
from droppilot.models.priority import PriorityPlan, build_priority_plan
from droppilot.models.profile import Profile
from droppilot.models.pubsub import (
    ConnectionState,
    PubSubEvent,
    PubSubEventKind,
    PubSubStatus,
    StreamEvent,
    StreamEventKind,
    parse_stream_event,
    parse_user_event,
)


__all__ = [
    "DropStatus",
    "DropCategory",
    "InventoryItem",
    "InventoryState",
    "InventoryStatus",
    "InventoryChanges",
    "InventoryPatch",
    "apply_drop_progress",
    "apply_drop_claim",
    "diff_inventory",
    "total_earned_minutes",
    "active_drop_sort_key",
    "ChannelEntry",
    "ChannelCache",
    "ChannelDiff",
    "WatchingTarget",
    "TrackerState",
    "TrackerStatus",
    "build_channel_diff",
    "merge_channel_list",
    "is_fresh_cache",
    "PriorityPlan",
    "build_priority_plan",
    "Profile",
    "PubSubEvent",
    "PubSubEventKind",
    "PubSubStatus",
    "ConnectionState",
    "StreamEvent",
    "StreamEventKind",
    "parse_user_event",
    "parse_stream_event",
    "ErrorInfo",
    "ClaimKind",
    "ClaimStatus",
    "MinutesEarned",
    "DropClaimed",
    "AuthError",
    "AutoSwitchInfo",
    "AutoSwitch",
    "HeartbeatStats",
    "ActiveDropInfo",
    "TargetSummary",
]
