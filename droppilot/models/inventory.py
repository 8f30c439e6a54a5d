from __future__ import annotations

import math
from collections import abc
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum

from droppilot.models.events import ErrorInfo


class DropStatus(str, Enum):
    LOCKED = "locked"
    PROGRESS = "progress"
    CLAIMED = "claimed"


class DropCategory(str, Enum):
    EXCLUDED = "excluded"
    FINISHED = "finished"
    EXPIRED = "expired"
    NOT_LINKED = "not-linked"
    IN_PROGRESS = "in-progress"
    UPCOMING = "upcoming"


ACTIONABLE_CATEGORIES = frozenset((DropCategory.IN_PROGRESS, DropCategory.UPCOMING))


@dataclass(frozen=True)
class InventoryItem:
    id: str
    game: str
    title: str
    required_minutes: int
    earned_minutes: int
    status: DropStatus
    campaign_id: str | None = None
    drop_instance_id: str | None = None
    linked: bool | None = None
    campaign_status: str | None = None
    starts_at: datetime | None = None
    ends_at: datetime | None = None
    excluded: bool = False

    def __repr__(self) -> str:
        return (
            f"InventoryItem({self.title!r}, {self.game!r}, "
            f"{self.earned_minutes}/{self.required_minutes}, {self.status.value})"
        )

    @property
    def has_claim_ref(self) -> bool:
        return bool(self.drop_instance_id or self.campaign_id)

    @property
    def remaining_minutes(self) -> int:
        return max(0, self.required_minutes - self.earned_minutes)

    @property
    def progress_done(self) -> bool:
        return self.required_minutes == 0 or self.earned_minutes >= self.required_minutes

    @property
    def is_claimable(self) -> bool:
        return self.status != DropStatus.CLAIMED and self.has_claim_ref and self.progress_done

    def category(self, now: float) -> DropCategory:
        """
        Classify the drop at the given epoch timestamp.

        The checks are ordered, the first one that applies wins.
        """
        if self.excluded:
            return DropCategory.EXCLUDED
        if self.status == DropStatus.CLAIMED:
            return DropCategory.FINISHED
        if self.campaign_status == "EXPIRED" or (
            self.ends_at is not None and self.ends_at.timestamp() < now
        ):
            return DropCategory.EXPIRED
        if self.linked is False and self.status == DropStatus.LOCKED and self.earned_minutes <= 0:
            return DropCategory.NOT_LINKED
        if self.status == DropStatus.PROGRESS:
            return DropCategory.IN_PROGRESS
        return DropCategory.UPCOMING

    def is_actionable(self, now: float, exclude_games: abc.Collection[str] = ()) -> bool:
        return self.game not in exclude_games and self.category(now) in ACTIONABLE_CATEGORIES

    def clamped(self) -> InventoryItem:
        """Return the item with `earned_minutes` clamped into `[0, required_minutes]`."""
        if self.status == DropStatus.CLAIMED:
            earned = self.required_minutes
        else:
            earned = min(max(0, self.earned_minutes), self.required_minutes)
        if earned == self.earned_minutes:
            return self
        return replace(self, earned_minutes=earned)

    def with_claimed(self) -> InventoryItem:
        return replace(self, status=DropStatus.CLAIMED, earned_minutes=self.required_minutes)


def total_earned_minutes(items: abc.Iterable[InventoryItem]) -> int:
    return sum(item.earned_minutes for item in items)


def _deadline_key(item: InventoryItem, now: float) -> float:
    if item.ends_at is None:
        return math.inf
    stamp = item.ends_at.timestamp()
    # deadlines already in the past sort last, same as missing ones
    return stamp if stamp >= now else math.inf


def active_drop_sort_key(item: InventoryItem, now: float) -> tuple[float, float, int, str]:
    """
    Sorting key picking the drop to farm:
    nearest future deadline, then earliest start, then least remaining minutes, then title.
    """
    starts = item.starts_at.timestamp() if item.starts_at is not None else math.inf
    return (_deadline_key(item, now), starts, item.remaining_minutes, item.title)


class InventoryStatus(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    ERROR = "error"


@dataclass(frozen=True)
class InventoryState:
    status: InventoryStatus = InventoryStatus.IDLE
    items: tuple[InventoryItem, ...] = ()
    error: ErrorInfo | None = None
    refreshing: bool = False


@dataclass(frozen=True)
class InventoryChanges:
    added: frozenset[str] = field(default_factory=frozenset)
    updated: frozenset[str] = field(default_factory=frozenset)

    def __bool__(self) -> bool:
        return bool(self.added or self.updated)


def diff_inventory(
    previous: abc.Iterable[InventoryItem], current: abc.Iterable[InventoryItem]
) -> InventoryChanges:
    """
    Compare two snapshots.

    An item is added when its id wasn't present before,
    and updated when its earned minutes or status changed.
    """
    before: dict[str, InventoryItem] = {item.id: item for item in previous}
    added: set[str] = set()
    updated: set[str] = set()
    for item in current:
        old = before.get(item.id)
        if old is None:
            added.add(item.id)
        elif old.earned_minutes != item.earned_minutes or old.status != item.status:
            updated.add(item.id)
    return InventoryChanges(frozenset(added), frozenset(updated))


@dataclass(frozen=True)
class InventoryPatch:
    """The outcome of applying a real-time update. `updated_id` is None when nothing changed."""

    items: tuple[InventoryItem, ...]
    updated_id: str | None = None
    delta_minutes: int = 0
    claimed: InventoryItem | None = None

    @property
    def changed(self) -> bool:
        return self.updated_id is not None


def apply_drop_progress(
    items: tuple[InventoryItem, ...], drop_id: str, progress: float
) -> InventoryPatch:
    """
    Move the drop's earned minutes up to `progress`.

    The other in-progress drops of the same campaign advance with it.
    Progress never goes backwards and stays clamped to the required minutes.
    """
    target = next((item for item in items if item.id == drop_id), None)
    if target is None:
        return InventoryPatch(items)
    campaign_id = (target.campaign_id or "").strip()
    progress = max(0, int(progress))
    patched: list[InventoryItem] = []
    updated_id: str | None = None
    delta = 0
    for item in items:
        if item.id != target.id and (
            not campaign_id
            or (item.campaign_id or "").strip() != campaign_id
            or item.status != DropStatus.PROGRESS
        ):
            patched.append(item)
            continue
        required = max(0, item.required_minutes)
        previous = max(0, item.earned_minutes)
        earned = min(required, max(previous, progress))
        status = item.status
        if status == DropStatus.LOCKED and earned > 0:
            status = DropStatus.PROGRESS
        if earned == previous and status == item.status:
            patched.append(item)
            continue
        delta += earned - previous
        if updated_id is None or item.id == target.id:
            updated_id = item.id
        patched.append(replace(item, earned_minutes=earned, status=status))
    if updated_id is None:
        return InventoryPatch(items)
    return InventoryPatch(tuple(patched), updated_id, delta)


def apply_drop_claim(
    items: tuple[InventoryItem, ...], drop_id: str | None, drop_instance_id: str | None
) -> InventoryPatch:
    """Mark the drop matching either ID as claimed."""
    index = next(
        (
            i
            for i, item in enumerate(items)
            if (drop_id and item.id == drop_id)
            or (drop_instance_id and item.drop_instance_id == drop_instance_id)
        ),
        None,
    )
    if index is None:
        return InventoryPatch(items)
    target = items[index]
    claimed = target.with_claimed()
    if claimed == target:
        return InventoryPatch(items)
    patched = items[:index] + (claimed,) + items[index + 1 :]
    return InventoryPatch(
        patched,
        claimed.id,
        max(0, claimed.earned_minutes - target.earned_minutes),
        claimed,
    )
