from __future__ import annotations

import asyncio
import logging
from collections import abc, deque
from contextlib import suppress
from dataclasses import asdict
from functools import partial
from time import time
from typing import TYPE_CHECKING, Any

from droppilot.config import AUTH_ERROR_WINDOW, AUTH_RETRY_DELAY, State
from droppilot.config.settings import default_settings
from droppilot.exceptions import AuthInvalid, ExitRequest, RemoteError
from droppilot.core.events import EventHub
from droppilot.models import AuthError, WatchingTarget
from droppilot.services import (
    ChannelTracker,
    InventoryReconciler,
    InventoryRefreshScheduler,
    ProgressProjector,
    TargetSelector,
    UserPubSub,
    WatchHeartbeat,
    target_progress,
)
from droppilot.websocket import WebsocketPool


if TYPE_CHECKING:
    from droppilot.api.gateway import RemoteGateway
    from droppilot.config.settings import Settings
    from droppilot.models import ChannelEntry, Profile
    from droppilot.services import StatsStore


logger = logging.getLogger("DropPilot")

REFRESH_SETTINGS = frozenset(("refresh_min_seconds", "refresh_max_seconds"))
SELECTION_SETTINGS = frozenset(
    ("priority_games", "exclude_games", "obey_priority", "auto_select", "auto_switch")
)


class DropFarmer:
    """
    The orchestrator: owns the watched channel and wires the services together.

    Services never set `watching` directly, they call `start_watching`,
    `stop_watching` or `switch_watching` instead.
    """

    def __init__(
        self,
        settings: Settings,
        gateway: RemoteGateway | None = None,
        *,
        stats: StatsStore | None = None,
    ):
        self.settings: Settings = settings
        if gateway is None:
            from droppilot.api import TwitchGateway

            gateway = TwitchGateway(settings)
        self.gateway: RemoteGateway = gateway
        self.events = EventHub()
        # State management
        self._state: State = State.IDLE
        self._state_change = asyncio.Event()
        self.profile: Profile | None = None
        self.authenticated: bool = False
        self.watching: WatchingTarget | None = None
        # a manual stop pauses auto-select until something is watched again
        self._auto_select_paused: bool = False
        # Auth error tracking
        self.auth_error_window: float = AUTH_ERROR_WINDOW.total_seconds()
        self.auth_retry_delay: float = AUTH_RETRY_DELAY.total_seconds()
        self._auth_errors: deque[float] = deque()
        self._refresh_tasks: set[asyncio.Task[None]] = set()
        # Services
        self.inventory: InventoryReconciler = InventoryReconciler(self)
        self.selector: TargetSelector = TargetSelector(self)
        self.tracker: ChannelTracker = ChannelTracker(self)
        self.heartbeat: WatchHeartbeat = WatchHeartbeat(self)
        self.projector: ProgressProjector = ProgressProjector(self)
        self.scheduler: InventoryRefreshScheduler = InventoryRefreshScheduler(self)
        self.websockets: WebsocketPool = WebsocketPool(self)
        self.pubsub: UserPubSub = UserPubSub(self)
        self.stats: StatsStore | None = stats
        if stats is not None:
            stats.attach(self.events)
        self.events.subscribe(AuthError, self._on_auth_error)

    @property
    def state(self) -> State:
        return self._state

    @property
    def allow_watching(self) -> bool:
        return self.authenticated and self._state is not State.EXIT

    @property
    def auto_select_enabled(self) -> bool:
        return bool(self.settings.auto_select) and not self._auto_select_paused

    def change_state(self, state: State) -> None:
        """Change the current state of the orchestrator."""
        if self._state is not State.EXIT:
            # prevent state changing once we switch to exit state
            self._state = state
        self._state_change.set()

    def state_change(self, state: State) -> abc.Callable[[], None]:
        """Return a callable that changes state when invoked."""
        return partial(self.change_state, state)

    def close(self) -> None:
        """
        Called when the application is requested to close,
        usually by a signal or the web interface.
        """
        self.change_state(State.EXIT)

    def save(self, *, force: bool = False) -> None:
        self.settings.save(force=force)
        if self.stats is not None:
            self.stats.save(force=force)

    # Watching

    def start_watching(self, channel: ChannelEntry, refresh: bool = True) -> None:
        target = WatchingTarget.from_channel(channel)
        self._auto_select_paused = False
        if self.watching is not None and self.watching.id == target.id:
            return
        logger.info(f"Watching {target.display_name} ({target.game})")
        self.watching = target
        self.heartbeat.set_target(target)
        self.projector.update()
        self.scheduler.update()
        if refresh:
            self.request_refresh()

    def stop_watching(self, skip_refresh: bool = False) -> None:
        """
        Stop watching. A soft stop (skip_refresh) doesn't trigger an inventory refresh.
        """
        if self.watching is None:
            return
        logger.info(f"Stopped watching {self.watching.display_name}")
        self.watching = None
        self.heartbeat.set_target(None)
        self.projector.update()
        self.scheduler.update()
        if not skip_refresh:
            self.request_refresh()

    def switch_watching(self, channel: ChannelEntry) -> None:
        self.start_watching(channel, refresh=False)

    def user_stop(self) -> None:
        """A stop requested by the user, auto-select won't pick a channel right back."""
        self._auto_select_paused = True
        self.stop_watching()

    def user_watch(self, channel_id: str) -> bool:
        for channel in self.tracker.channels:
            if channel.id == channel_id:
                self.start_watching(channel)
                return True
        return False

    # Reconciliation

    def request_refresh(self, force_loading: bool = False) -> asyncio.Task[None]:
        task = asyncio.create_task(self.inventory.refresh(force_loading))
        # hold a reference until it's done
        self._refresh_tasks.add(task)
        task.add_done_callback(self._refresh_tasks.discard)
        return task

    def inventory_updated(self) -> None:
        """Called by the inventory service after every successful pass."""
        self.selector.reconcile()
        self.projector.update()
        self.tracker.evaluate()

    def target_changed(self, game: str | None) -> None:
        """Called by the selector whenever the target game changes."""
        self.tracker.track(game)
        self.projector.update()

    async def refresh_plan(self) -> None:
        await self.selector.refresh_plan()
        self.selector.reconcile()

    def apply_settings(self, changes: dict[str, Any]) -> None:
        """Apply a settings update and re-run everything depending on it."""
        applied: set[str] = set()
        for name, value in changes.items():
            if value is None:
                continue
            setattr(self.settings, name, value)
            applied.add(name)
        if not applied:
            return
        logger.info(f"Settings updated: {', '.join(sorted(applied))}")
        self.settings.save()
        if "priority_games" in applied and self.authenticated:
            task = asyncio.create_task(self.refresh_plan())
            self._refresh_tasks.add(task)
            task.add_done_callback(self._refresh_tasks.discard)
        if applied & SELECTION_SETTINGS:
            self.selector.reconcile()
            self.tracker.evaluate()
        if applied & REFRESH_SETTINGS and self.authenticated:
            self.scheduler.stop()
            self.scheduler.update()
        if "user_pubsub" in applied and self.profile is not None:
            if self.settings.user_pubsub:
                self.pubsub.start(self.profile.id)
            else:
                self.pubsub.stop()
        if "tracker_mode" in applied:
            self.tracker.set_mode(self.settings.tracker_mode)

    # Authentication

    def _on_auth_error(self, event: AuthError) -> None:
        now = time()
        logger.warning(f"Authentication error: {event.message or 'session rejected'}")
        self.stop_watching(skip_refresh=True)
        self._auth_errors.append(now)
        while self._auth_errors and now - self._auth_errors[0] > self.auth_error_window:
            self._auth_errors.popleft()
        if len(self._auth_errors) > 1:
            self.deauthenticate()

    def deauthenticate(self) -> None:
        """Drop the session and every piece of state tied to it."""
        logger.error("Repeated authentication errors, logging out")
        self.authenticated = False
        self.profile = None
        self._auth_errors.clear()
        self.gateway.invalidate()
        self.stop_watching(skip_refresh=True)
        self.scheduler.stop()
        self.pubsub.stop()
        self.inventory.reset()
        self.tracker.stop()
        self.selector.reset()
        self.projector.stop()
        self.change_state(State.AUTHENTICATE)

    # Main loop

    async def run(self) -> None:
        """Main entry point, runs until exit is requested."""
        try:
            await self._run()
        except ExitRequest:
            pass

    async def _wait_state_change(self, timeout: float) -> None:
        self._state_change.clear()
        with suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._state_change.wait(), timeout)

    async def _run(self) -> None:
        """
        Authenticate, fetch the plan and inventory, then idle while services do their work.
        """
        self.change_state(State.AUTHENTICATE)
        while True:
            state = self._state
            if state is State.EXIT:
                break
            elif state is State.AUTHENTICATE:
                try:
                    self.profile = await self.gateway.fetch_profile()
                except AuthInvalid as exc:
                    logger.error(
                        f"Not logged in: {exc.message}. "
                        f"Retrying in {round(self.auth_retry_delay)}s"
                    )
                    await self._wait_state_change(self.auth_retry_delay)
                    continue
                except RemoteError as exc:
                    logger.error(f"Profile fetch failed: {exc.code.value}: {exc.message}")
                    await self._wait_state_change(self.auth_retry_delay)
                    continue
                self.authenticated = True
                logger.info(f"Logged in as {self.profile.login}")
                self.websockets.start()
                self.pubsub.start(self.profile.id)
                self.change_state(State.INVENTORY_FETCH)
            elif state is State.INVENTORY_FETCH:
                await self.selector.refresh_plan()
                await self.inventory.refresh(force_loading=True)
                self.scheduler.update()
                self.save()
                if self._state is State.INVENTORY_FETCH:
                    self.change_state(State.IDLE)
            elif state is State.IDLE:
                # clear the flag and wait until it's set again
                self._state_change.clear()
                await self._state_change.wait()

    async def shutdown(self) -> None:
        start_time = time()
        self.close()
        self.stop_watching(skip_refresh=True)
        self.scheduler.stop()
        self.tracker.stop()
        self.projector.stop()
        self.inventory.stop()
        for task in list(self._refresh_tasks):
            task.cancel()
        self._refresh_tasks.clear()
        self.pubsub.stop()
        await self.websockets.stop(clear_topics=True)
        self.save()
        await self.gateway.close()
        # give aiohttp a moment to close the connections
        await asyncio.sleep(max(0.0, start_time + 0.5 - time()))

    # Status

    def settings_snapshot(self) -> dict[str, Any]:
        settings = {name: getattr(self.settings, name) for name in default_settings}
        settings["proxy"] = str(settings["proxy"])
        return settings

    def state_snapshot(self) -> dict[str, Any]:
        now = time()
        inventory = self.inventory
        summary = self.selector.target_summary(now)
        active = self.projector.info
        return {
            "state": self._state.name,
            "profile": asdict(self.profile) if self.profile is not None else None,
            "watching": asdict(self.watching) if self.watching is not None else None,
            "target_game": self.selector.active_target_game,
            "priority_order": list(self.selector.priority_order),
            "inventory": {
                "status": inventory.state.status,
                "refreshing": inventory.state.refreshing,
                "error": asdict(inventory.state.error) if inventory.state.error else None,
                "items": [asdict(item) for item in inventory.items],
                "fetched_at": inventory.fetched_at,
                "changes": {
                    "added": sorted(inventory.changes.added),
                    "updated": sorted(inventory.changes.updated),
                },
            },
            "claim_status": (
                asdict(inventory.claim_status) if inventory.claim_status is not None else None
            ),
            "active_drop": asdict(active) if active is not None else None,
            "target_summary": asdict(summary) if summary is not None else None,
            "target_progress": (
                target_progress(summary) if summary is not None else None
            ),
            "heartbeat": asdict(self.heartbeat.stats),
            "channels": [asdict(channel) for channel in self.tracker.channels],
            "channel_error": (
                asdict(self.tracker.channel_error) if self.tracker.channel_error else None
            ),
            "tracker": asdict(self.tracker.status),
            "pubsub": asdict(self.pubsub.status()),
            "auto_switch": (
                asdict(self.tracker.auto_switch) if self.tracker.auto_switch else None
            ),
            "auto_refresh": self.scheduler.snapshot(),
            "stats": self.stats.snapshot() if self.stats is not None else None,
            "settings": self.settings_snapshot(),
        }
