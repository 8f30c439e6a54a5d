"""Farming statistics, persisted between runs."""

from __future__ import annotations

import logging
from time import time
from typing import TYPE_CHECKING, TypedDict

from droppilot.config import STATS_PATH
from droppilot.models import DropClaimed, MinutesEarned
from droppilot.utils import json_load, json_save


if TYPE_CHECKING:
    from pathlib import Path

    from droppilot.core.events import EventHub


logger = logging.getLogger("DropPilot")


class StatsFile(TypedDict):
    total_minutes: int
    total_claims: int
    claims_by_game: dict[str, int]
    last_minute_at: float
    last_claim_at: float


default_stats: StatsFile = {
    "total_minutes": 0,
    "total_claims": 0,
    "claims_by_game": {},
    "last_minute_at": 0.0,
    "last_claim_at": 0.0,
}


class StatsStore:
    def __init__(self, path: Path = STATS_PATH) -> None:
        self._path = path
        self._stats: StatsFile = json_load(path, default_stats)
        self._altered: bool = False

    def attach(self, events: EventHub) -> None:
        events.subscribe(MinutesEarned, self.on_minutes_earned)
        events.subscribe(DropClaimed, self.on_drop_claimed)

    def on_minutes_earned(self, event: MinutesEarned) -> None:
        if event.delta <= 0:
            return
        self._stats["total_minutes"] += event.delta
        self._stats["last_minute_at"] = time()
        self._altered = True

    def on_drop_claimed(self, event: DropClaimed) -> None:
        by_game = self._stats["claims_by_game"]
        by_game[event.game] = by_game.get(event.game, 0) + 1
        self._stats["total_claims"] += 1
        self._stats["last_claim_at"] = time()
        self._altered = True
        # claims are rare, persist them right away
        self.save()

    def snapshot(self) -> StatsFile:
        return {
            "total_minutes": self._stats["total_minutes"],
            "total_claims": self._stats["total_claims"],
            "claims_by_game": dict(self._stats["claims_by_game"]),
            "last_minute_at": self._stats["last_minute_at"],
            "last_claim_at": self._stats["last_claim_at"],
        }

    def reset(self) -> None:
        self._stats = {**default_stats, "claims_by_game": {}}
        self._altered = True

    def save(self, *, force: bool = False) -> None:
        if self._altered or force:
            json_save(self._path, self._stats, sort=True)
            self._altered = False
            logger.debug(f"Stats saved: {self._stats['total_minutes']} minutes")
