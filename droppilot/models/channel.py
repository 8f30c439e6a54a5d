from __future__ import annotations

from collections import abc
from dataclasses import dataclass, field
from enum import Enum


@dataclass(frozen=True)
class ChannelEntry:
    id: str
    login: str
    display_name: str
    title: str
    viewers: int
    game: str
    language: str = ""
    thumbnail: str | None = None
    stream_id: str | None = None

    def __repr__(self) -> str:
        return f"Channel({self.display_name}, {self.viewers} viewers)"


@dataclass(frozen=True)
class WatchingTarget:
    id: str
    display_name: str
    game: str
    login: str
    channel_id: str
    stream_id: str | None = None

    @classmethod
    def from_channel(cls, channel: ChannelEntry) -> WatchingTarget:
        return cls(
            id=channel.id,
            display_name=channel.display_name,
            game=channel.game,
            login=channel.login,
            channel_id=channel.id,
            stream_id=channel.stream_id,
        )


@dataclass(frozen=True)
class ChannelDiff:
    at: float
    added_ids: frozenset[str] = field(default_factory=frozenset)
    removed_ids: frozenset[str] = field(default_factory=frozenset)
    updated_ids: frozenset[str] = field(default_factory=frozenset)
    title_changed_ids: frozenset[str] = field(default_factory=frozenset)
    viewer_delta_by_id: dict[str, int] = field(default_factory=dict)
    reason: str = "snapshot"  # "snapshot", "stream-up", "stream-down" or "viewers"
    source: str = "fetch"  # "fetch" or "ws"


def build_channel_diff(
    previous: abc.Sequence[ChannelEntry],
    current: abc.Sequence[ChannelEntry],
    at: float,
    *,
    reason: str = "snapshot",
    source: str = "fetch",
) -> ChannelDiff | None:
    """Diff two channel snapshots by id. Returns None when nothing changed."""
    before = {entry.id: entry for entry in previous}
    after = {entry.id: entry for entry in current}
    added = frozenset(after.keys() - before.keys())
    removed = frozenset(before.keys() - after.keys())
    updated: set[str] = set()
    title_changed: set[str] = set()
    viewer_delta: dict[str, int] = {}
    for cid, entry in after.items():
        old = before.get(cid)
        if old is None:
            continue
        if old.title != entry.title:
            title_changed.add(cid)
            updated.add(cid)
        if old.viewers != entry.viewers:
            viewer_delta[cid] = entry.viewers - old.viewers
            updated.add(cid)
    if not (added or removed or updated):
        return None
    return ChannelDiff(
        at=at,
        added_ids=added,
        removed_ids=removed,
        updated_ids=frozenset(updated),
        title_changed_ids=frozenset(title_changed),
        viewer_delta_by_id=viewer_delta,
        reason=reason,
        source=source,
    )


def merge_channel_list(
    previous: abc.Sequence[ChannelEntry], current: abc.Sequence[ChannelEntry]
) -> list[ChannelEntry]:
    # keep the previous instances of entries that didn't change at all
    before = {entry.id: entry for entry in previous}
    return [
        old if (old := before.get(entry.id)) is not None and old == entry else entry
        for entry in current
    ]


@dataclass(frozen=True)
class ChannelCache:
    game: str
    fetched_at: float
    entries: tuple[ChannelEntry, ...]


def is_fresh_cache(cache: ChannelCache | None, game: str, now: float, window: float) -> bool:
    return (
        cache is not None
        and cache.game == game
        and bool(cache.entries)
        and now - cache.fetched_at < window
    )


class TrackerState(str, Enum):
    IDLE = "idle"
    OK = "ok"
    ERROR = "error"


@dataclass(frozen=True)
class TrackerStatus:
    state: TrackerState = TrackerState.IDLE
    mode: str = "polling"
    last_request_at: float | None = None
    last_success_at: float | None = None
    last_error_at: float | None = None
    last_error_message: str | None = None
    requests: int = 0
    failures: int = 0
    subscriptions: int = 0
