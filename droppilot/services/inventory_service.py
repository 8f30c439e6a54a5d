"""
Inventory service: fetches, reconciles and auto-claims the drops inventory.

Refreshes are coalesced, so that at most one inventory fetch is in flight at a time.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from time import time
from typing import TYPE_CHECKING

from droppilot.config import (
    CALL,
    CHANGES_DISPLAY_TIME,
    CLAIM_REFRESH_DELAY,
    CLAIM_RETRY_INTERVAL,
    ErrorCode,
)
from droppilot.exceptions import AuthInvalid, ExitRequest, InvalidResponse, RemoteError
from droppilot.models import (
    AuthError,
    ClaimKind,
    ClaimStatus,
    DropClaimed,
    DropStatus,
    ErrorInfo,
    InventoryChanges,
    InventoryItem,
    InventoryPatch,
    InventoryState,
    InventoryStatus,
    MinutesEarned,
    apply_drop_claim,
    apply_drop_progress,
    diff_inventory,
    total_earned_minutes,
)
from droppilot.utils import ScheduledTask, task_wrapper


if TYPE_CHECKING:
    from droppilot.core.farmer import DropFarmer


logger = logging.getLogger("DropPilot")


class InventoryReconciler:
    """
    Service responsible for the drops inventory.

    Handles:
    - Coalesced inventory refreshes (one in flight, one queued at most)
    - Monotonic progress merging within a session
    - Added/updated change sets for display
    - Minutes earned accounting
    - Auto-claiming with a per-drop retry cooldown
    - Real-time progress and claim patches, followed by a debounced refresh
    """

    def __init__(self, farmer: DropFarmer) -> None:
        """
        Initialize the inventory service.

        Args:
            farmer: The orchestrator instance
        """
        self._farmer = farmer
        self.state: InventoryState = InventoryState()
        self.changes: InventoryChanges = InventoryChanges()
        self.fetched_at: float | None = None
        self.claim_status: ClaimStatus | None = None
        # drop ID -> last claim attempt timestamp
        self.claim_attempts: dict[str, float] = {}
        # tunables, in seconds
        self.claim_retry: float = CLAIM_RETRY_INTERVAL.total_seconds()
        self.claim_refresh_delay: float = CLAIM_REFRESH_DELAY.total_seconds()
        self.changes_display: float = CHANGES_DISPLAY_TIME.total_seconds()
        # drop ID -> highest earned minutes seen this session
        self._progress: dict[str, int] = {}
        self._total_minutes: int | None = None
        self._in_flight: bool = False
        # None means nothing is queued, otherwise it's the accumulated force_loading flag
        self._pending: bool | None = None
        self._generation: int = 0
        self._passes: int = 0
        self._changes_clear: ScheduledTask[None] = ScheduledTask("inventory-changes")
        self._followup: ScheduledTask[None] = ScheduledTask("claim-followup")
        self._reconcile: ScheduledTask[None] = ScheduledTask("pubsub-reconcile")
        self._reconcile_due: float = 0.0
        self._reconcile_force: bool = False
        self._last_reconcile_at: float = 0.0

    @property
    def items(self) -> tuple[InventoryItem, ...]:
        return self.state.items

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def followup_scheduled(self) -> bool:
        return self._followup.active

    def is_recent(self, window: float, now: float | None = None) -> bool:
        """Whether the last successful fetch happened less than `window` seconds ago."""
        if self.fetched_at is None:
            return False
        if now is None:
            now = time()
        return now - self.fetched_at < window

    async def refresh(self, force_loading: bool = False) -> None:
        """
        Fetch the inventory, unless a fetch is already in flight.

        Calls made while a fetch is in flight are merged into a single follow-up pass,
        which runs right after the current one finishes.

        Args:
            force_loading: Show the loading state even if there are items to display
        """
        if self._in_flight:
            self._pending = bool(self._pending) or force_loading
            logger.debug(f"Inventory fetch in flight, queueing a pass ({force_loading=})")
            return
        self._in_flight = True
        try:
            await self._pass(force_loading)
            while self._pending is not None:
                queued_force, self._pending = self._pending, None
                await self._pass(queued_force)
        finally:
            self._in_flight = False

    async def _pass(self, force_loading: bool) -> None:
        generation = self._generation
        self._passes += 1
        pass_id = self._passes
        previous = self.state
        previous_items = previous.items
        if force_loading or not previous_items:
            self.state = InventoryState(InventoryStatus.LOADING, previous_items)
        else:
            self.state = replace(previous, refreshing=True)
        logger.log(CALL, f"Fetching inventory ({force_loading=})")
        try:
            fetched = await self._farmer.gateway.fetch_inventory()
            if not isinstance(fetched, list) or not all(
                isinstance(item, InventoryItem) for item in fetched
            ):
                raise InvalidResponse(
                    ErrorCode.INVENTORY_INVALID_RESPONSE, "Inventory response was invalid"
                )
        except AuthInvalid as exc:
            if generation != self._generation:
                return
            logger.warning(f"Inventory fetch rejected, session is invalid: {exc.message}")
            self.state = InventoryState(InventoryStatus.IDLE)
            self._farmer.events.emit(AuthError(exc.message))
            return
        except RemoteError as exc:
            if generation != self._generation:
                return
            logger.error(f"Inventory fetch failed: {exc.code.value}: {exc.message}")
            self.state = InventoryState(
                InventoryStatus.ERROR,
                previous_items,
                ErrorInfo(exc.code.value, exc.message),
            )
            return
        except ExitRequest:
            raise
        except Exception as exc:
            # never leave the state at loading
            logger.exception("Inventory fetch crashed")
            if generation == self._generation:
                self.state = InventoryState(
                    InventoryStatus.ERROR,
                    previous_items,
                    ErrorInfo(ErrorCode.INVENTORY_FETCH_FAILED.value, repr(exc)),
                )
            return
        if generation != self._generation:
            # reset happened while fetching, the result is stale
            logger.debug("Discarding a stale inventory result")
            return

        items = self._merge_progress(fetched)
        self._apply(previous_items, items, pass_id)
        if self._farmer.settings.auto_claim:
            await self._auto_claim(generation, pass_id)
        if generation == self._generation:
            self._farmer.inventory_updated()

    def _merge_progress(self, fetched: list[InventoryItem]) -> tuple[InventoryItem, ...]:
        merged: list[InventoryItem] = []
        for item in fetched:
            item = item.clamped()
            if item.status != DropStatus.CLAIMED:
                seen = self._progress.get(item.id)
                if seen is not None and seen > item.earned_minutes:
                    item = replace(item, earned_minutes=seen).clamped()
            self._progress[item.id] = max(self._progress.get(item.id, 0), item.earned_minutes)
            merged.append(item)
        return tuple(merged)

    def _apply(
        self,
        previous_items: tuple[InventoryItem, ...],
        items: tuple[InventoryItem, ...],
        pass_id: int,
    ) -> None:
        total = total_earned_minutes(items)
        if self._total_minutes is not None and (delta := total - self._total_minutes) > 0:
            logger.info(f"Earned {delta} minutes")
            self._farmer.events.emit(MinutesEarned(delta))
        self._total_minutes = total
        self.changes = diff_inventory(previous_items, items)
        self.state = InventoryState(InventoryStatus.READY, items)
        self.fetched_at = time()
        logger.info(
            f"Inventory: {len(items)} drops, {total} minutes "
            f"(+{len(self.changes.added)}, ~{len(self.changes.updated)})"
        )
        if self.changes:
            self._changes_clear.start(pass_id, self._clear_changes())
        else:
            self._changes_clear.cancel()

    async def _clear_changes(self) -> None:
        await asyncio.sleep(self.changes_display)
        self.changes = InventoryChanges()

    async def _auto_claim(self, generation: int, pass_id: int) -> None:
        claimable = [item for item in self.state.items if item.is_claimable]
        if not claimable:
            return
        scheduled_followup = False
        for drop in claimable:
            if generation != self._generation:
                return
            now = time()
            last = self.claim_attempts.get(drop.id)
            if last is not None and now - last < self.claim_retry:
                logger.debug(f"Skipping claim of {drop.title}, attempted {now - last:.0f}s ago")
                continue
            self.claim_attempts[drop.id] = now
            try:
                await self._farmer.gateway.claim_drop(
                    drop.drop_instance_id, drop.id, drop.campaign_id
                )
            except AuthInvalid as exc:
                logger.warning(f"Claim rejected, session is invalid: {exc.message}")
                self._farmer.events.emit(AuthError(exc.message))
                return
            except RemoteError as exc:
                logger.warning(f"Claim of {drop.title} failed: {exc.code.value}: {exc.message}")
                self.claim_status = ClaimStatus(
                    ClaimKind.ERROR,
                    exc.message or "Drop claim failed",
                    time(),
                    code=exc.code.value,
                    title=drop.title,
                )
                continue
            except ExitRequest:
                raise
            except Exception as exc:
                logger.exception(f"Claim of {drop.title} crashed")
                self.claim_status = ClaimStatus(
                    ClaimKind.ERROR,
                    repr(exc),
                    time(),
                    code=ErrorCode.CLAIM_FAILED.value,
                    title=drop.title,
                )
                continue
            logger.info(f"Claimed: {drop.title} ({drop.game})")
            self._farmer.events.emit(DropClaimed(drop.title, drop.game))
            self.claim_status = ClaimStatus(
                ClaimKind.SUCCESS, f"Auto-claimed: {drop.title}", time(), title=drop.title
            )
            self._mark_claimed(drop.id)
            if not scheduled_followup:
                scheduled_followup = True
                self._followup.start(pass_id, self._claim_followup())

    def _mark_claimed(self, drop_id: str) -> None:
        # optimistic local transition, the follow-up refresh overwrites it
        self.state = replace(
            self.state,
            items=tuple(
                item.with_claimed() if item.id == drop_id else item for item in self.state.items
            ),
        )

    @task_wrapper
    async def _claim_followup(self) -> None:
        await asyncio.sleep(self.claim_refresh_delay)
        # detach, so that a follow-up scheduled by this very refresh doesn't cancel us
        self._followup.release()
        logger.log(CALL, "Refreshing inventory after a claim")
        await self.refresh(force_loading=True)

    # Real-time updates

    def _patchable(self) -> tuple[InventoryItem, ...]:
        if self.state.status not in (InventoryStatus.READY, InventoryStatus.ERROR):
            return ()
        return self.state.items

    def apply_progress(self, drop_id: str, progress: float) -> bool:
        """
        Patch the progress of a drop, without waiting for the next inventory fetch.

        Returns:
            Whether anything changed
        """
        items = self._patchable()
        if not items:
            return False
        patch = apply_drop_progress(items, drop_id, progress)
        if not patch.changed:
            return False
        for item in patch.items:
            if item.status != DropStatus.CLAIMED:
                self._progress[item.id] = max(self._progress.get(item.id, 0), item.earned_minutes)
        self._apply_patch(patch)
        return True

    def apply_claim(self, drop_id: str | None, drop_instance_id: str | None) -> bool:
        """
        Mark a drop claimed elsewhere as claimed.

        Returns:
            Whether anything changed
        """
        items = self._patchable()
        if not items:
            return False
        patch = apply_drop_claim(items, drop_id, drop_instance_id)
        if not patch.changed:
            return False
        self._apply_patch(patch)
        if patch.claimed is not None and self._farmer.settings.auto_claim:
            claimed = patch.claimed
            logger.info(f"Claimed: {claimed.title} ({claimed.game})")
            self._farmer.events.emit(DropClaimed(claimed.title, claimed.game))
        return True

    def _apply_patch(self, patch: InventoryPatch) -> None:
        assert patch.updated_id is not None
        self.state = replace(self.state, items=patch.items)
        self._total_minutes = total_earned_minutes(patch.items)
        if patch.delta_minutes > 0:
            logger.info(f"Earned {patch.delta_minutes} minutes")
            self._farmer.events.emit(MinutesEarned(patch.delta_minutes))
        self.changes = replace(self.changes, updated=self.changes.updated | {patch.updated_id})
        self._changes_clear.start(("patch", patch.updated_id), self._clear_changes())
        self._farmer.inventory_updated()

    def schedule_reconcile(self, *, force_loading: bool, min_gap: float, delay: float) -> None:
        """
        Refresh the inventory after `delay` seconds, and no sooner than `min_gap` seconds
        after the previous refresh scheduled through here.

        A pending refresh is only ever moved earlier, never postponed.
        """
        self._reconcile_force = self._reconcile_force or force_loading
        now = time()
        due = max(now + delay, self._last_reconcile_at + min_gap)
        if self._reconcile.active and due >= self._reconcile_due:
            return
        self._reconcile_due = due
        self._reconcile.start(due, self._delayed_reconcile(due - now))

    @property
    def reconcile_scheduled(self) -> bool:
        return self._reconcile.active

    @task_wrapper
    async def _delayed_reconcile(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._reconcile.release()
        self._last_reconcile_at = time()
        force_loading, self._reconcile_force = self._reconcile_force, False
        logger.log(CALL, "Reconciling inventory after real-time updates")
        await self.refresh(force_loading)

    def reset(self) -> None:
        """Forget everything tied to the current session."""
        self._generation += 1
        self.state = InventoryState()
        self.changes = InventoryChanges()
        self.fetched_at = None
        self.claim_status = None
        self.claim_attempts.clear()
        self._progress.clear()
        self._total_minutes = None
        self._pending = None
        self._changes_clear.cancel()
        self._followup.cancel()
        self._reconcile.cancel()
        self._reconcile_force = False
        self._last_reconcile_at = 0.0

    def stop(self) -> None:
        self._changes_clear.cancel()
        self._followup.cancel()
        self._reconcile.cancel()
