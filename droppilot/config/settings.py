from __future__ import annotations

from typing import TYPE_CHECKING, Any, TypedDict

from yarl import URL

from droppilot.config import SETTINGS_PATH
from droppilot.utils import json_load, json_save


if TYPE_CHECKING:
    from typing import Any as ParsedArgs  # Avoid circular import


class SettingsFile(TypedDict):
    proxy: URL
    connection_quality: int
    priority_games: list[str]
    exclude_games: list[str]
    obey_priority: bool
    auto_claim: bool
    auto_select: bool
    auto_switch: bool
    refresh_min_seconds: int
    refresh_max_seconds: int
    user_pubsub: bool
    tracker_mode: str


default_settings: SettingsFile = {
    "proxy": URL(),
    "connection_quality": 1,
    "priority_games": [],
    "exclude_games": [],
    "obey_priority": False,
    "auto_claim": True,
    "auto_select": True,
    "auto_switch": True,
    "refresh_min_seconds": 120,
    "refresh_max_seconds": 240,
    "user_pubsub": True,
    "tracker_mode": "polling",
}


class Settings:
    # from args
    log: bool
    web: bool
    port: int
    # args properties
    debug_gql: int
    logging_level: int
    # from settings file
    proxy: URL
    connection_quality: int
    priority_games: list[str]
    exclude_games: list[str]
    obey_priority: bool
    auto_claim: bool
    auto_select: bool
    auto_switch: bool
    refresh_min_seconds: int
    refresh_max_seconds: int
    user_pubsub: bool
    tracker_mode: str

    PASSTHROUGH = ("_settings", "_args", "_altered")

    def __init__(self, args: ParsedArgs):
        self._settings: SettingsFile = json_load(SETTINGS_PATH, default_settings)
        self._args: ParsedArgs = args
        self._altered: bool = False

    # default logic of reading settings is to check args first, then the settings file
    def __getattr__(self, name: str, /) -> Any:
        if name in self.PASSTHROUGH:
            # passthrough
            return getattr(super(), name)
        elif hasattr(self._args, name):
            return getattr(self._args, name)
        elif name in self._settings:
            return self._settings[name]  # type: ignore[literal-required]
        return getattr(super(), name)

    def __setattr__(self, name: str, value: Any, /) -> None:
        if name in self.PASSTHROUGH:
            # passthrough
            return super().__setattr__(name, value)
        elif name in self._settings:
            self._settings[name] = value  # type: ignore[literal-required]
            self._altered = True
            return
        raise TypeError(f"{name} is missing a custom setter")

    def __delattr__(self, name: str, /) -> None:
        raise RuntimeError("settings can't be deleted")

    @property
    def altered(self) -> bool:
        return self._altered

    def alter(self) -> None:
        self._altered = True

    def save(self, *, force: bool = False) -> None:
        if self._altered or force:
            json_save(SETTINGS_PATH, self._settings, sort=True)
            self._altered = False
