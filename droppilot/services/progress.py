"""
Live progress projection between inventory polls.

The projection is display-only: it never writes into the inventory.
"""

from __future__ import annotations

import asyncio
import logging
from time import time
from typing import TYPE_CHECKING

from droppilot.config import PROGRESS_TICK
from droppilot.models import ActiveDropInfo
from droppilot.utils import ScheduledTask, task_wrapper


if TYPE_CHECKING:
    from droppilot.core.farmer import DropFarmer
    from droppilot.models import InventoryItem, TargetSummary


logger = logging.getLogger("DropPilot")


def project(drop: InventoryItem, last_fetched_at: float | None, now: float) -> ActiveDropInfo:
    """
    Extrapolate a drop's progress from the last inventory snapshot.

    Args:
        drop: The drop, as of the last snapshot
        last_fetched_at: Epoch timestamp of the snapshot, None if unknown
        now: Current epoch timestamp

    Returns:
        The projected drop state. Elapsed time never projects past completion.
    """
    base_remaining = max(0, drop.required_minutes - drop.earned_minutes)
    elapsed = 0.0
    if last_fetched_at is not None:
        elapsed = min(max(0.0, (now - last_fetched_at) / 60), base_remaining)
    remaining = max(0.0, drop.required_minutes - drop.earned_minutes - elapsed)
    return ActiveDropInfo(
        id=drop.id,
        title=drop.title,
        required_minutes=drop.required_minutes,
        earned_minutes=drop.earned_minutes,
        virtual_earned=drop.earned_minutes + elapsed,
        remaining_minutes=remaining,
        eta=now + remaining * 60 if remaining > 0 else None,
        drop_instance_id=drop.drop_instance_id,
        campaign_id=drop.campaign_id,
    )


def target_progress(summary: TargetSummary, elapsed_minutes: float = 0) -> float:
    """Campaign-level completion percentage of the target game, capped at 100."""
    if summary.required_minutes <= 0:
        return 0.0
    earned = min(summary.earned_minutes + max(0.0, elapsed_minutes), summary.required_minutes)
    return min(100.0, earned / summary.required_minutes * 100)


class ProgressProjector:
    """
    Keeps a live projection of the active drop while watching.

    The tick runs only while a channel is watched and the active drop is incomplete.
    """

    def __init__(self, farmer: DropFarmer) -> None:
        self._farmer = farmer
        self.info: ActiveDropInfo | None = None
        self.tick_interval: float = PROGRESS_TICK.total_seconds()
        self._tick: ScheduledTask[None] = ScheduledTask("progress-tick")

    @property
    def ticking(self) -> bool:
        return self._tick.active

    def update(self) -> ActiveDropInfo | None:
        now = time()
        drop = self._farmer.selector.active_drop(now)
        if drop is None:
            self.info = None
            self._tick.cancel()
            return None
        self.info = project(drop, self._farmer.inventory.fetched_at, now)
        if self._farmer.watching is not None and self.info.remaining_minutes > 0:
            self._tick.ensure(drop.id, self._tick_loop)
        else:
            self._tick.cancel()
        return self.info

    @task_wrapper
    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self.tick_interval)
            self.update()

    def stop(self) -> None:
        self._tick.cancel()
        self.info = None
