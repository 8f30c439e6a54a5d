"""
Maintenance service for periodic inventory reloads.

While authenticated, the inventory is re-fetched on a jittered schedule,
so that progress and new campaigns show up without any user action.
"""

from __future__ import annotations

import asyncio
import logging
import random
from time import time
from typing import TYPE_CHECKING, Literal

from droppilot.config import CALL, MIN_REFRESH_INTERVAL
from droppilot.utils import ScheduledTask, task_wrapper


if TYPE_CHECKING:
    from droppilot.core.farmer import DropFarmer


logger = logging.getLogger("DropPilot")

RefreshMode = Literal["watching", "idle"]


class InventoryRefreshScheduler:
    """
    Service responsible for periodic inventory reloads.

    Handles:
    - Jittered reload scheduling between the configured bounds
    - Restarting the schedule when the watching mode changes
    - Cancelling it when the session is lost
    """

    def __init__(self, farmer: DropFarmer) -> None:
        """
        Initialize the maintenance service.

        Args:
            farmer: The orchestrator instance
        """
        self._farmer = farmer
        self.mode: RefreshMode | None = None
        self.last_run: float | None = None
        self.next_at: float | None = None
        self._task: ScheduledTask[None] = ScheduledTask("inventory-refresh")

    @property
    def min_delay(self) -> float:
        return max(MIN_REFRESH_INTERVAL.total_seconds(), self._farmer.settings.refresh_min_seconds)

    @property
    def max_delay(self) -> float:
        return max(self.min_delay, self._farmer.settings.refresh_max_seconds)

    def next_delay(self, *, first: bool = False) -> float:
        """
        The first run waits the minimum delay,
        later ones add a random amount up to the configured spread.
        """
        min_delay = self.min_delay
        if first:
            return min_delay
        return min_delay + random.uniform(0, max(1.0, self.max_delay - min_delay))

    def update(self) -> None:
        """Start, restart or stop the schedule, based on the orchestrator state."""
        farmer = self._farmer
        if not farmer.authenticated:
            self.stop()
            return
        mode: RefreshMode = "watching" if farmer.watching is not None else "idle"
        self.mode = mode
        self._task.ensure(mode, self._run)

    @task_wrapper(critical=True)
    async def _run(self) -> None:
        first = True
        while True:
            delay = self.next_delay(first=first)
            first = False
            self.next_at = time() + delay
            logger.log(CALL, f"Inventory auto-refresh ({self.mode}) in {round(delay)}s")
            await asyncio.sleep(delay)
            self.last_run = time()
            await self._farmer.inventory.refresh()

    def snapshot(self) -> dict[str, object]:
        return {"mode": self.mode, "last_run": self.last_run, "next_at": self.next_at}

    def stop(self) -> None:
        self._task.cancel()
        self.mode = None
        self.last_run = None
        self.next_at = None
