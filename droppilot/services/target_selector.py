"""
Target selection: which game to farm, and which of its drops is the active one.
"""

from __future__ import annotations

import logging
from collections import abc
from time import time
from typing import TYPE_CHECKING

from droppilot.exceptions import AuthInvalid, RemoteError
from droppilot.models import (
    AuthError,
    DropStatus,
    ErrorInfo,
    InventoryItem,
    InventoryStatus,
    PriorityPlan,
    TargetSummary,
    active_drop_sort_key,
)
from droppilot.utils import deduplicate


if TYPE_CHECKING:
    from droppilot.core.farmer import DropFarmer


logger = logging.getLogger("DropPilot")


def normalize_games(games: abc.Iterable[str]) -> list[str]:
    return deduplicate(name for game in games if (name := game.strip()))


class TargetSelector:
    """
    Service responsible for picking the game to farm.

    Handles:
    - Remote priority plan fetching
    - Priority order derivation (plan, then user list, then actionable games)
    - Active target game selection, honoring the strict priority mode
    - Active drop selection and campaign summaries for the target game
    """

    def __init__(self, farmer: DropFarmer) -> None:
        self._farmer = farmer
        self.plan: PriorityPlan | None = None
        self.plan_error: ErrorInfo | None = None
        self.priority_order: list[str] = []
        self.active_target_game: str | None = None

    def _items(self) -> tuple[InventoryItem, ...]:
        return self._farmer.inventory.items

    def fallback_games(self, now: float) -> list[str]:
        """Games with at least one actionable drop, in encounter order."""
        exclude = set(self._farmer.settings.exclude_games)
        return deduplicate(
            item.game for item in self._items() if item.is_actionable(now, exclude)
        )

    def compute_priority_order(self, now: float) -> list[str]:
        if self.plan is not None and self.plan.order:
            return list(self.plan.order)
        if user_games := normalize_games(self._farmer.settings.priority_games):
            return user_games
        return self.fallback_games(now)

    def has_actionable(self, game: str, now: float) -> bool:
        exclude = set(self._farmer.settings.exclude_games)
        return any(
            item.game == game and item.is_actionable(now, exclude) for item in self._items()
        )

    def reconcile(self) -> str | None:
        """
        Recompute the priority order and the active target game.

        Called by the orchestrator on every inventory, plan or settings change.
        The target is only ever changed while the inventory is ready.
        """
        now = time()
        self.priority_order = self.compute_priority_order(now)
        if self._farmer.inventory.state.status != InventoryStatus.READY:
            return self.active_target_game
        exclude = set(self._farmer.settings.exclude_games)
        actionable = [
            game
            for game in self.priority_order
            if game not in exclude and self.has_actionable(game, now)
        ]
        current = self.active_target_game
        if not actionable:
            if current is not None:
                logger.info("No actionable drops left, clearing the target game")
                self._set_target(None)
            if self._farmer.watching is not None:
                self._farmer.stop_watching(skip_refresh=True)
            return None
        best = actionable[0]
        if current is None:
            self._set_target(best)
        elif not self.has_actionable(current, now):
            logger.info(f"{current} has no actionable drops left")
            self._set_target(best)
        elif self._farmer.settings.obey_priority and current != best:
            logger.info(f"Priority switch: {current} -> {best}")
            self._set_target(best)
        return self.active_target_game

    def _set_target(self, game: str | None) -> None:
        if game == self.active_target_game:
            return
        self.active_target_game = game
        if game is not None:
            logger.info(f"Target game: {game}")
        self._farmer.target_changed(game)

    def set_target(self, game: str) -> None:
        """Select the target game manually."""
        self._set_target(game)

    async def refresh_plan(self) -> PriorityPlan | None:
        """
        Fetch the remote priority plan. On failure, the previous plan is kept.
        """
        games = normalize_games(self._farmer.settings.priority_games)
        try:
            plan = await self._farmer.gateway.fetch_priority_plan(games)
        except AuthInvalid as exc:
            logger.warning(f"Priority plan rejected, session is invalid: {exc.message}")
            self._farmer.events.emit(AuthError(exc.message))
            return self.plan
        except RemoteError as exc:
            logger.error(f"Priority plan fetch failed: {exc.code.value}: {exc.message}")
            self.plan_error = ErrorInfo(exc.code.value, exc.message)
            return self.plan
        if not isinstance(plan, PriorityPlan):
            logger.error("Priority plan response was invalid")
            return self.plan
        self.plan = plan
        self.plan_error = None
        if plan.missing_priority:
            logger.info(f"Priority games without drops: {', '.join(plan.missing_priority)}")
        return plan

    def target_drops(self, now: float) -> list[InventoryItem]:
        game = self.active_target_game
        if game is None:
            return []
        return [item for item in self._items() if item.game == game and item.is_actionable(now)]

    def active_drop(self, now: float | None = None) -> InventoryItem | None:
        """
        The drop being farmed right now: nearest future deadline,
        then earliest start, then least remaining minutes, then title.
        """
        if now is None:
            now = time()
        candidates = self.target_drops(now)
        if not candidates:
            return None
        return min(candidates, key=lambda item: active_drop_sort_key(item, now))

    def target_summary(self, now: float | None = None) -> TargetSummary | None:
        game = self.active_target_game
        if game is None:
            return None
        if now is None:
            now = time()
        game_items = [item for item in self._items() if item.game == game]
        # drops of one campaign share the watched minutes, so take the max per campaign
        required: dict[str, int] = {}
        earned: dict[str, int] = {}
        for item in game_items:
            key = item.campaign_id or item.id
            required[key] = max(required.get(key, 0), item.required_minutes)
            earned[key] = max(earned.get(key, 0), item.earned_minutes)
        return TargetSummary(
            game=game,
            target_drops=len(self.target_drops(now)),
            total_drops=len(game_items),
            claimed_drops=sum(1 for item in game_items if item.status == DropStatus.CLAIMED),
            required_minutes=sum(required.values()),
            earned_minutes=sum(earned.values()),
        )

    def can_watch_target(self, game: str | None = None) -> bool:
        if game is None:
            game = self.active_target_game
        return game is not None and self.has_actionable(game, time())

    def reset(self) -> None:
        self.plan = None
        self.plan_error = None
        self.priority_order = []
        self.active_target_game = None
