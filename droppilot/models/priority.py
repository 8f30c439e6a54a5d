from __future__ import annotations

from collections import abc
from dataclasses import dataclass

from droppilot.models.inventory import DropStatus, InventoryItem
from droppilot.utils import deduplicate


@dataclass(frozen=True)
class PriorityPlan:
    order: tuple[str, ...] = ()
    available_games: tuple[str, ...] = ()
    missing_priority: tuple[str, ...] = ()
    total_active_drops: int = 0


def build_priority_plan(
    items: abc.Iterable[InventoryItem], priority_games: abc.Iterable[str]
) -> PriorityPlan:
    """
    Intersect the user's priority list with the games that still have unclaimed drops.

    Priority games come first, in priority order, then the other available games
    in the order they were first seen.
    """
    active = [item for item in items if item.status != DropStatus.CLAIMED]
    available = deduplicate(item.game for item in active)
    priority = deduplicate(priority_games)
    available_set = set(available)
    ordered = [game for game in priority if game in available_set]
    ordered_set = set(ordered)
    ordered.extend(game for game in available if game not in ordered_set)
    return PriorityPlan(
        order=tuple(ordered),
        available_games=tuple(available),
        missing_priority=tuple(game for game in priority if game not in available_set),
        total_active_drops=len(active),
    )
