"""
Channel service: tracks live channels for the target game,
auto-selects a channel to watch and switches away from channels that went offline.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from time import time
from typing import TYPE_CHECKING

from droppilot.config import (
    AUTO_SWITCH_DISPLAY_TIME,
    CALL,
    CHANNELS_REFRESH_INTERVAL,
    RECENT_INVENTORY_WINDOW,
    TRACKED_CHANNEL_TOPICS,
    TRACKER_MODES,
    ErrorCode,
    WebsocketTopic,
)
from droppilot.exceptions import AuthInvalid, InvalidResponse, RemoteError
from droppilot.models import (
    AuthError,
    AutoSwitch,
    AutoSwitchInfo,
    ChannelCache,
    ChannelDiff,
    ChannelEntry,
    ErrorInfo,
    StreamEventKind,
    TrackerState,
    TrackerStatus,
    build_channel_diff,
    is_fresh_cache,
    merge_channel_list,
    parse_stream_event,
)
from droppilot.utils import ScheduledTask, task_wrapper


if TYPE_CHECKING:
    from droppilot.config import JsonType
    from droppilot.core.farmer import DropFarmer


logger = logging.getLogger("DropPilot")


def normalize_tracker_mode(mode: object) -> str:
    if isinstance(mode, str) and (mode := mode.strip().lower()) in TRACKER_MODES:
        return mode
    return "polling"


class ChannelTracker:
    """
    Service responsible for the channel list of the target game.

    Handles:
    - Cached channel fetching, with a freshness window per game
    - Periodic re-checks while a target game is tracked
    - Channel list diffs
    - Auto-select and auto-switch requests to the orchestrator
    - Triggering inventory refreshes after channel fetches
    - Stream state and viewer updates over pubsub, in the ws and hybrid modes
    """

    def __init__(self, farmer: DropFarmer) -> None:
        """
        Initialize the channel service.

        Args:
            farmer: The orchestrator instance
        """
        self._farmer = farmer
        self.game: str | None = None
        self.channels: list[ChannelEntry] = []
        self.cache: ChannelCache | None = None
        self.diff: ChannelDiff | None = None
        self.channel_error: ErrorInfo | None = None
        self.auto_switch: AutoSwitchInfo | None = None
        self.mode: str = normalize_tracker_mode(farmer.settings.tracker_mode)
        self.status: TrackerStatus = TrackerStatus(mode=self.mode)
        # tunables, in seconds
        self.refresh_interval: float = CHANNELS_REFRESH_INTERVAL.total_seconds()
        self.cache_window: float = CHANNELS_REFRESH_INTERVAL.total_seconds()
        self.recent_inventory_window: float = RECENT_INVENTORY_WINDOW.total_seconds()
        self.auto_switch_display: float = AUTO_SWITCH_DISPLAY_TIME.total_seconds()
        self._in_flight: set[str] = set()
        self._request_seq: int = 0
        self._applied_seq: int = 0
        self._interval: ScheduledTask[None] = ScheduledTask("channel-interval")
        self._switch_display: ScheduledTask[None] = ScheduledTask("auto-switch-display")
        # channel ID -> last fetched entry, for the channels with a stream state topic
        self._known: dict[str, ChannelEntry] = {}
        self._subscribed: set[str] = set()

    @property
    def active(self) -> bool:
        return self._interval.active

    def track(self, game: str | None) -> None:
        """
        Follow the channels of the given game.

        The periodic re-check runs only while a game is set and watching is allowed.
        Changing the game restarts it.
        """
        self.game = game
        if game is None or not self._farmer.allow_watching:
            self._interval.cancel()
            return
        self._interval.ensure(game, lambda: self._interval_loop(game))

    @task_wrapper(critical=True)
    async def _interval_loop(self, game: str) -> None:
        while True:
            await self.get_channels(game)
            await asyncio.sleep(self.refresh_interval)

    async def get_channels(self, game: str, force: bool = False) -> list[ChannelEntry]:
        """
        Return the channel list of a game, fetching it unless the cache is fresh.

        Args:
            game: The game to list channels of
            force: Skip the cache check

        Returns:
            The current channel list. On errors, the previous list is returned.
        """
        now = time()
        if not force and is_fresh_cache(self.cache, game, now, self.cache_window):
            assert self.cache is not None
            return list(self.cache.entries)
        if game in self._in_flight:
            logger.debug(f"Channel fetch for {game} already in flight")
            return list(self.channels)
        self._in_flight.add(game)
        self._request_seq += 1
        seq = self._request_seq
        tracked = self.game
        self.status = replace(
            self.status, last_request_at=now, requests=self.status.requests + 1
        )
        logger.log(CALL, f"Fetching channels for {game}")
        try:
            entries = await self._farmer.gateway.fetch_channels(game)
            if not isinstance(entries, list) or not all(
                isinstance(entry, ChannelEntry) for entry in entries
            ):
                raise InvalidResponse(
                    ErrorCode.CHANNELS_INVALID_RESPONSE, "Channel list response was invalid"
                )
        except AuthInvalid as exc:
            logger.warning(f"Channel fetch rejected, session is invalid: {exc.message}")
            self.clear()
            self._farmer.events.emit(AuthError(exc.message))
            return []
        except RemoteError as exc:
            if self._is_stale(tracked, seq):
                return list(self.channels)
            logger.error(f"Channel fetch for {game} failed: {exc.code.value}: {exc.message}")
            failed_at = time()
            self.channel_error = ErrorInfo(exc.code.value, exc.message)
            self.status = replace(
                self.status,
                state=TrackerState.ERROR,
                last_error_at=failed_at,
                last_error_message=exc.message,
                failures=self.status.failures + 1,
            )
            return list(self.channels)
        finally:
            self._in_flight.discard(game)
        if self._is_stale(tracked, seq):
            logger.debug(f"Discarding a stale channel list for {game}")
            return list(self.channels)
        self._applied_seq = seq
        self._apply(game, entries, time())
        return list(self.channels)

    def _is_stale(self, tracked: str | None, seq: int) -> bool:
        return self.game != tracked or seq < self._applied_seq

    def _apply(self, game: str, entries: list[ChannelEntry], now: float) -> None:
        previous = self.channels
        # a different game isn't "everything went offline", diff against nothing
        game_switch = bool(previous and entries) and previous[0].game != entries[0].game
        base = [] if game_switch else previous
        merged = merge_channel_list(base, entries)
        self.diff = build_channel_diff(base, merged, now)
        if self.diff is not None:
            logger.debug(
                f"Channels for {game}: +{len(self.diff.added_ids)} "
                f"-{len(self.diff.removed_ids)} ~{len(self.diff.updated_ids)}"
            )
        self.channels = merged
        self.cache = ChannelCache(game, now, tuple(merged))
        self.channel_error = None
        self.status = replace(self.status, state=TrackerState.OK, last_success_at=now)
        self._known = {entry.id: entry for entry in merged}
        self._sync_topics()
        selecting = self.should_auto_select()
        self.evaluate()
        if not selecting and not self._farmer.inventory.is_recent(
            self.recent_inventory_window, now
        ):
            self._farmer.request_refresh()

    def should_auto_select(self) -> bool:
        farmer = self._farmer
        return (
            farmer.watching is None
            and bool(self.channels)
            and farmer.allow_watching
            and farmer.auto_select_enabled
            and farmer.selector.can_watch_target(self.game)
        )

    def evaluate(self) -> None:
        """Request auto-select or auto-switch from the orchestrator, if needed."""
        farmer = self._farmer
        watching = farmer.watching
        if watching is None:
            if self.should_auto_select():
                channel = self.channels[0]
                logger.info(f"Auto-selecting {channel.display_name}")
                farmer.start_watching(channel)
            return
        if any(entry.id == watching.id for entry in self.channels):
            return
        if not self.channels:
            logger.info(f"{watching.display_name} is gone and no channels are left")
            farmer.stop_watching()
            return
        settings = farmer.settings
        # strict priority mode switches even with auto-switch off, as long as the target is farmable
        forced = settings.obey_priority and farmer.selector.can_watch_target(self.game)
        if not (settings.auto_switch or forced):
            return
        channel = self.channels[0]
        info = AutoSwitchInfo(
            at=time(),
            reason="priority" if forced else "offline",
            from_channel=(watching.id, watching.display_name),
            to_channel=(channel.id, channel.display_name),
        )
        logger.info(
            f"Auto-switch ({info.reason}): {watching.display_name} -> {channel.display_name}"
        )
        farmer.switch_watching(channel)
        self.auto_switch = info
        self._switch_display.start(info.at, self._clear_auto_switch())
        farmer.events.emit(AutoSwitch(info))

    async def _clear_auto_switch(self) -> None:
        await asyncio.sleep(self.auto_switch_display)
        self.auto_switch = None

    def clear(self) -> None:
        """Drop all channel state. Responses still in flight are discarded."""
        self.channels = []
        self.cache = None
        self.diff = None
        self.channel_error = None
        self.auto_switch = None
        self.status = TrackerStatus(mode=self.mode)
        self._applied_seq = self._request_seq + 1
        self._switch_display.cancel()
        self._sync_topics()
        self._known.clear()

    def stop(self) -> None:
        self._interval.cancel()
        self.game = None
        self.clear()

    # Stream state topics

    @property
    def uses_pubsub(self) -> bool:
        return self.mode != "polling"

    def set_mode(self, mode: object) -> None:
        """Switch the tracker mode. Polling carries on in every mode."""
        mode = normalize_tracker_mode(mode)
        if mode == self.mode:
            return
        logger.info(f"Channel tracker mode: {mode}")
        self.mode = mode
        self.status = replace(self.status, mode=mode)
        self._sync_topics()

    def _sync_topics(self) -> None:
        wanted: set[str] = set()
        if self.uses_pubsub and self._farmer.allow_watching:
            wanted = {entry.id for entry in self.channels[:TRACKED_CHANNEL_TOPICS]}
        pool = self._farmer.websockets
        removed = self._subscribed - wanted
        if removed:
            pool.remove_topics(
                WebsocketTopic.as_str("Channel", "StreamState", channel_id)
                for channel_id in removed
            )
        added = wanted - self._subscribed
        if added:
            pool.add_topics(
                WebsocketTopic("Channel", "StreamState", channel_id, self.process_stream_state)
                for channel_id in added
            )
        self._subscribed = wanted
        self.status = replace(self.status, subscriptions=len(wanted))

    def process_stream_state(self, channel_id: str, message: JsonType) -> None:
        """
        Process stream state and viewer count updates of a listed channel.

        Args:
            channel_id: The channel ID the topic belongs to
            message: The decoded message payload, examples:
                - {"type": "stream-down", "server_time": 1631226004.513}
                - {"type": "viewcount", "server_time": 1631226004.513, "viewers": 123}
        """
        event = parse_stream_event(channel_id, message)
        if event is None or not self.uses_pubsub:
            return
        current = {entry.id: entry for entry in self.channels}
        if event.kind is StreamEventKind.STREAM_DOWN:
            if channel_id not in current:
                return
            logger.info(f"{current[channel_id].display_name} went offline")
            entries = [entry for entry in self.channels if entry.id != channel_id]
        elif event.kind is StreamEventKind.STREAM_UP:
            known = self._known.get(channel_id)
            if known is None or channel_id in current:
                return
            logger.info(f"{known.display_name} went back online")
            # keep the order of the last fetch
            entries = [
                current.get(cid, entry)
                for cid, entry in self._known.items()
                if cid in current or cid == channel_id
            ]
        else:
            entry = current.get(channel_id)
            if entry is None or event.viewers is None or entry.viewers == event.viewers:
                return
            updated = replace(entry, viewers=event.viewers)
            self._known[channel_id] = updated
            entries = [updated if e.id == channel_id else e for e in self.channels]
        self._patch(entries, event.kind.value)

    def _patch(self, entries: list[ChannelEntry], reason: str) -> None:
        now = time()
        diff = build_channel_diff(self.channels, entries, now, reason=reason, source="ws")
        if diff is None:
            return
        self.diff = diff
        self.channels = entries
        if self.cache is not None:
            self.cache = replace(self.cache, entries=tuple(entries))
        self.status = replace(self.status, state=TrackerState.OK, last_success_at=now)
        self.evaluate()
