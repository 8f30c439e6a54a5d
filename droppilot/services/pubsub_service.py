"""
PubSub service: listens to the user's drop events and notifications,
patching the inventory as they come in.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import timedelta
from time import time
from typing import TYPE_CHECKING

from droppilot.config import (
    CALL,
    CLAIM_RECONCILE,
    NOTIFICATION_TYPES,
    PROGRESS_RECONCILE,
    STALE_PROGRESS_RECONCILE,
    UNMATCHED_PROGRESS_RECONCILE,
    WebsocketTopic,
)
from droppilot.models import PubSubEvent, PubSubEventKind, PubSubStatus, parse_user_event


if TYPE_CHECKING:
    from droppilot.config import JsonType
    from droppilot.core.farmer import DropFarmer


logger = logging.getLogger("DropPilot")


def _seconds(window: tuple[timedelta, timedelta]) -> tuple[float, float]:
    gap, delay = window
    return (gap.total_seconds(), delay.total_seconds())


class UserPubSub:
    """
    Service responsible for the user's real-time drop events.

    Handles:
    - Subscribing to the drop events and notifications topics of the logged in user
    - Patching drop progress and claims into the inventory
    - Scheduling inventory refreshes that confirm the patched state
    """

    def __init__(self, farmer: DropFarmer) -> None:
        self._farmer = farmer
        self.user_id: str | None = None
        self.notification_types: frozenset[str] = NOTIFICATION_TYPES
        self.events: int = 0
        self.last_event: PubSubEvent | None = None
        # tunables, as (minimum gap, delay) pairs in seconds
        self.progress_reconcile: tuple[float, float] = _seconds(PROGRESS_RECONCILE)
        self.stale_progress_reconcile: tuple[float, float] = _seconds(STALE_PROGRESS_RECONCILE)
        self.unmatched_reconcile: tuple[float, float] = _seconds(UNMATCHED_PROGRESS_RECONCILE)
        self.claim_reconcile: tuple[float, float] = _seconds(CLAIM_RECONCILE)
        # drop ID -> highest progress received
        self._progress: dict[str, float] = {}

    @property
    def active(self) -> bool:
        return self.user_id is not None

    def topic_names(self) -> list[str]:
        if self.user_id is None:
            return []
        return [
            WebsocketTopic.as_str("User", "Drops", self.user_id),
            WebsocketTopic.as_str("User", "Notifications", self.user_id),
        ]

    def start(self, user_id: str) -> None:
        """Listen to the events of the given user, unless disabled in the settings."""
        if not self._farmer.settings.user_pubsub:
            self.stop()
            return
        if self.user_id == user_id:
            return
        self.stop()
        self.user_id = user_id
        logger.info(f"Listening to real-time drop events for user {user_id}")
        self._farmer.websockets.add_topics(
            [
                WebsocketTopic("User", "Drops", user_id, self.process_drops),
                WebsocketTopic("User", "Notifications", user_id, self.process_notifications),
            ]
        )

    def stop(self) -> None:
        if self.user_id is None:
            return
        logger.info("Stopped listening to real-time drop events")
        self._farmer.websockets.remove_topics(self.topic_names())
        self.user_id = None
        self._progress.clear()

    def process_drops(self, user_id: str, message: JsonType) -> None:
        """
        Process drop progress and claim updates.

        Args:
            user_id: The user ID the topic belongs to
            message: The decoded message payload, examples:
                - {"type": "drop-progress", "data": {"drop_id": ..., "current_progress_min": 3}}
                - {"type": "drop-claim", "data": {"drop_id": ..., "drop_instance_id": ...}}
        """
        topic = WebsocketTopic.as_str("User", "Drops", user_id)
        self.handle(parse_user_event(topic, message, time(), self.notification_types))

    def process_notifications(self, user_id: str, message: JsonType) -> None:
        topic = WebsocketTopic.as_str("User", "Notifications", user_id)
        self.handle(parse_user_event(topic, message, time(), self.notification_types))

    def handle(self, event: PubSubEvent | None) -> None:
        if event is None:
            return
        self.events += 1
        self.last_event = event
        inventory = self._farmer.inventory
        if event.kind is PubSubEventKind.DROP_PROGRESS:
            drop_id = event.drop_id
            progress = event.current_progress_min
            logger.log(
                CALL,
                f"Drop progress from pubsub: {drop_id} "
                f"({progress}/{event.required_progress_min})",
            )
            patched = False
            if drop_id is not None and progress is not None:
                progress = max(0.0, progress)
                if progress <= self._progress.get(drop_id, -1.0):
                    # nothing new, but the inventory might be lagging behind
                    self._schedule(False, self.stale_progress_reconcile)
                    return
                self._progress[drop_id] = progress
                patched = inventory.apply_progress(drop_id, progress)
            self._schedule(False, self.progress_reconcile if patched else self.unmatched_reconcile)
        elif event.kind is PubSubEventKind.DROP_CLAIM:
            logger.log(CALL, f"Drop claim from pubsub: {event.drop_id} ({event.drop_instance_id})")
            inventory.apply_claim(event.drop_id, event.drop_instance_id)
            self._schedule(True, self.claim_reconcile)
        else:
            logger.info(f"Drop notification received: {event.notification_type}")
            self._schedule(True, self.claim_reconcile)

    def _schedule(self, force_loading: bool, window: tuple[float, float]) -> None:
        min_gap, delay = window
        self._farmer.inventory.schedule_reconcile(
            force_loading=force_loading, min_gap=min_gap, delay=delay
        )

    def status(self) -> PubSubStatus:
        return replace(
            self._farmer.websockets.status(self.topic_names()),
            events=self.events,
            user_id=self.user_id,
        )
