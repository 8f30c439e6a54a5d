"""
Services composing the drop farming orchestrator.
"""

from __future__ import annotations

from droppilot.services.channel_service import ChannelTracker
from droppilot.services.inventory_service import InventoryReconciler
from droppilot.services.maintenance import InventoryRefreshScheduler
from droppilot.services.progress import ProgressProjector, project, target_progress
from droppilot.services.pubsub_service import UserPubSub
from droppilot.services.stats_service import StatsStore
from droppilot.services.target_selector import TargetSelector
from droppilot.services.watch_service import WatchHeartbeat


__all__ = [
    "InventoryReconciler",
    "TargetSelector",
    "ChannelTracker",
    "WatchHeartbeat",
    "ProgressProjector",
    "InventoryRefreshScheduler",
    "StatsStore",
    "UserPubSub",
    "project",
    "target_progress",
]
