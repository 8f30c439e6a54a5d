"""
Remote gateway: the operations the orchestrator consumes.

Every operation either returns its payload, raises AuthInvalid,
or raises RemoteError carrying a stable error code.
"""

from __future__ import annotations

import asyncio
import logging
import re
from base64 import b64encode
from collections import abc
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Protocol

import aiohttp
from dateutil.parser import isoparse

from droppilot.api.gql_client import GQLClient
from droppilot.api.http_client import HTTPClient
from droppilot.auth import AuthState
from droppilot.config import CHUNK_SIZE, GQL_OPERATIONS, ClientType, ErrorCode
from droppilot.exceptions import (
    AuthInvalid,
    ClaimFailed,
    ExitRequest,
    InvalidResponse,
    MinerException,
    RemoteError,
)
from droppilot.models import (
    ChannelEntry,
    DropStatus,
    InventoryItem,
    PriorityPlan,
    Profile,
    build_priority_plan,
)
from droppilot.utils import chunk, json_minify


if TYPE_CHECKING:
    from datetime import datetime

    from droppilot.config import ClientInfo, JsonType
    from droppilot.config.settings import Settings


logger = logging.getLogger("DropPilot")

SETTINGS_PATTERN = re.compile(r'src="(https://[\w.]+/config/settings\.[0-9a-f]{32}\.js)"', re.I)
SPADE_PATTERN = re.compile(
    r'"(?:spade|beacon)_?url": ?"(https://video-edge-[.\w\-/]+\.ts(?:\?allow_stream=true)?)"',
    re.I,
)
CLAIM_OK_STATUSES = frozenset(
    ("ELIGIBLE_FOR_ALL", "DROP_INSTANCE_ALREADY_CLAIMED", "ALREADY_CLAIMED")
)
_CLAIMED_STATUSES = frozenset(("claimed", "fulfilled", "ended", "complete", "completed"))
_PROGRESS_STATUSES = frozenset(("in_progress", "active", "progress"))
_REQUIRED_KEYS = (
    "requiredMinutesWatched", "required_minutes", "requiredMinutes", "minutesWatchedRequired"
)


class RemoteGateway(Protocol):
    async def fetch_profile(self) -> Profile:
        ...

    async def fetch_inventory(self) -> list[InventoryItem]:
        ...

    async def fetch_channels(self, game: str) -> list[ChannelEntry]:
        ...

    async def fetch_priority_plan(self, priority_games: abc.Sequence[str]) -> PriorityPlan:
        ...

    async def send_watch_ping(
        self, channel_id: str, login: str, stream_id: str | None = None
    ) -> None:
        ...

    async def claim_drop(
        self, drop_instance_id: str | None, drop_id: str, campaign_id: str | None
    ) -> None:
        ...

    async def get_session(self) -> aiohttp.ClientSession:
        ...

    async def pubsub_token(self) -> str:
        ...

    def invalidate(self) -> None:
        ...

    async def close(self) -> None:
        ...


def map_drop_status(raw_status: str | None, drop: JsonType) -> DropStatus:
    status = (raw_status or "").lower()
    if status in _CLAIMED_STATUSES:
        return DropStatus.CLAIMED
    if status in _PROGRESS_STATUSES:
        return DropStatus.PROGRESS
    if (drop.get("self") or {}).get("isClaimed"):
        return DropStatus.CLAIMED
    return DropStatus.LOCKED


def _required_minutes(drop: JsonType) -> int:
    # some schemas expose several required fields, the smallest positive one wins
    candidates: list[float] = []
    for key in _REQUIRED_KEYS:
        try:
            value = float(drop.get(key))  # type: ignore[arg-type]
        except (TypeError, ValueError):
            continue
        if value > 0:
            candidates.append(value)
    return int(min(candidates)) if candidates else 0


def _parse_date(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return isoparse(value)
    except ValueError:
        return None


def build_inventory_item(campaign: JsonType, drop: JsonType) -> InventoryItem:
    """Map a single campaign drop into an InventoryItem."""
    drop_self: JsonType = drop.get("self") or {}
    game: str = (campaign.get("game") or {}).get("displayName") or "Unknown game"
    watched: int = int(drop_self.get("currentMinutesWatched") or 0)
    raw_status = drop_self.get("status") or drop_self.get("state") or drop.get("status")
    is_claimed: bool = drop_self.get("isClaimed") is True
    required = _required_minutes(drop)
    status = map_drop_status(raw_status, drop)
    if status == DropStatus.CLAIMED and required > 0 and watched == 0:
        # claimed drops report full progress
        watched = required
    progress_done = required > 0 and watched >= required
    if is_claimed:
        status = DropStatus.CLAIMED
    elif progress_done and status != DropStatus.CLAIMED:
        status = DropStatus.PROGRESS
    elif watched > 0 and status == DropStatus.LOCKED:
        status = DropStatus.PROGRESS
    allow_disabled = (campaign.get("allow") or {}).get("isEnabled") is False
    return InventoryItem(
        id=drop["id"],
        game=game,
        title=drop.get("name") or drop["id"],
        required_minutes=required,
        earned_minutes=min(required, watched) if required > 0 else watched,
        status=status,
        campaign_id=campaign.get("id"),
        drop_instance_id=drop_self.get("dropInstanceID") or drop_self.get("dropInstanceId"),
        linked=bool((campaign.get("self") or {}).get("isAccountConnected", False)),
        campaign_status=campaign.get("status"),
        starts_at=_parse_date(campaign.get("startAt") or drop.get("startAt")),
        ends_at=_parse_date(campaign.get("endAt") or drop.get("endAt")),
        excluded=allow_disabled and watched <= 0 and not is_claimed,
    )


def build_channel_entry(node: JsonType, game: str) -> ChannelEntry:
    broadcaster: JsonType = node.get("broadcaster") or {}
    settings: JsonType = broadcaster.get("broadcastSettings") or {}
    return ChannelEntry(
        id=str(broadcaster.get("id") or node["id"]),
        login=broadcaster.get("login") or broadcaster.get("displayName") or "",
        display_name=broadcaster.get("displayName") or broadcaster.get("login") or "unknown",
        title=settings.get("title") or "",
        viewers=int(node.get("viewersCount") or 0),
        game=game,
        language=broadcaster.get("language") or "",
        thumbnail=node.get("previewImageURL"),
        stream_id=str(node["id"]) if node.get("id") else None,
    )


def _campaign_nodes(raw: Any) -> list[JsonType]:
    if isinstance(raw, dict):
        raw = raw.get("edges") or []
    nodes: list[JsonType] = []
    for entry in raw or []:
        if not isinstance(entry, dict):
            continue
        node = entry.get("node", entry)
        if isinstance(node, dict) and node.get("id"):
            nodes.append(node)
    return nodes


@contextmanager
def _failure_code(code: ErrorCode) -> abc.Iterator[None]:
    """
    Re-label request failures with the code of the operation being performed.

    Anything the transport or the payload decoding can raise ends up as a `RemoteError`,
    so that callers only ever have to handle `AuthInvalid` and `RemoteError`.
    """
    try:
        yield
    except (AuthInvalid, ExitRequest, InvalidResponse):
        raise
    except RemoteError as exc:
        if exc.code in (ErrorCode.REQUEST_FAILED, ErrorCode.GQL_FAILED):
            raise RemoteError(code, exc.message) from exc
        raise
    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
        raise RemoteError(code, f"Request failed: {exc!r}") from exc
    except (KeyError, TypeError, ValueError, MinerException) as exc:
        # ValueError covers undecodable text and JSON bodies
        raise InvalidResponse(code, f"Unexpected response shape: {exc!r}") from exc


class TwitchGateway:
    """
    RemoteGateway implementation over the GQL API.

    Handles:
    - Profile restoration through token validation
    - Inventory building from the inventory, dashboard and details operations
    - Drops-enabled channel listing for a game
    - Minute-watched beacons
    - Drop claiming
    """

    def __init__(self, settings: Settings, client_type: ClientInfo = ClientType.WEB):
        self._client_type = client_type
        self.http = HTTPClient(settings, client_type)
        self.auth = AuthState(self.http, client_type)
        self.gql = GQLClient(self.http, self.auth, client_type)
        self._spade_cache: dict[str, str] = {}

    def invalidate(self) -> None:
        self.auth.invalidate()

    async def close(self) -> None:
        await self.http.close()

    async def get_session(self) -> aiohttp.ClientSession:
        return await self.http.get_session()

    async def pubsub_token(self) -> str:
        """The access token PubSub LISTEN requests are authorized with."""
        with _failure_code(ErrorCode.PUBSUB_FAILED):
            auth = await self.auth.validate()
        return auth.access_token

    async def fetch_profile(self) -> Profile:
        with _failure_code(ErrorCode.PROFILE_FETCH_FAILED):
            auth = await self.auth.validate()
        return Profile(id=str(auth.user_id), login=auth.login, display_name=auth.login)

    async def _fetch_campaigns(self) -> list[JsonType]:
        inventory_response, dashboard_response = await self.gql.request(
            [GQL_OPERATIONS["Inventory"], GQL_OPERATIONS["Campaigns"]]
        )
        inventory: JsonType = (
            (inventory_response.get("data") or {}).get("currentUser") or {}
        ).get("inventory") or {}
        in_progress = _campaign_nodes(
            inventory.get("dropCampaignsInProgress") or inventory.get("dropCampaigns")
        )
        available = _campaign_nodes(
            ((dashboard_response.get("data") or {}).get("currentUser") or {}).get("dropCampaigns")
        )
        logger.debug(f"Campaigns: {len(in_progress)} in progress, {len(available)} available")
        campaigns: dict[str, JsonType] = {c["id"]: c for c in available}
        for campaign in in_progress:
            # inventory data takes precedence, it carries the progress
            if (base := campaigns.get(campaign["id"])) is not None:
                campaigns[campaign["id"]] = GQLClient.merge_data(campaign, base)
            else:
                campaigns[campaign["id"]] = campaign
        if not campaigns:
            raise RemoteError(ErrorCode.INVENTORY_EMPTY, "No campaigns returned")
        return list(campaigns.values())

    async def _enrich_campaigns(self, campaigns: list[JsonType]) -> list[JsonType]:
        auth = await self.auth.validate()
        by_id: dict[str, JsonType] = {c["id"]: c for c in campaigns}
        for ids in chunk(by_id.keys(), CHUNK_SIZE):
            responses = await self.gql.request(
                [
                    GQL_OPERATIONS["CampaignDetails"].with_variables(
                        {"channelLogin": str(auth.user_id), "dropID": cid}
                    )
                    for cid in ids
                ]
            )
            for response in responses:
                details = ((response.get("data") or {}).get("user") or {}).get("dropCampaign")
                if not details or (base := by_id.get(details.get("id"))) is None:
                    continue
                base_drops = {d["id"]: d for d in base.get("timeBasedDrops") or []}
                drops: list[JsonType] = []
                for drop in details.get("timeBasedDrops") or base_drops.values():
                    if (base_drop := base_drops.get(drop["id"])) is not None and base_drop is not drop:
                        merged = GQLClient.merge_data(drop, base_drop)
                        # keep the progress info from the inventory
                        merged["self"] = base_drop.get("self") or drop.get("self")
                        drops.append(merged)
                    else:
                        drops.append(drop)
                merged_campaign = GQLClient.merge_data(details, base)
                merged_campaign["timeBasedDrops"] = drops
                by_id[details["id"]] = merged_campaign
        return list(by_id.values())

    async def fetch_inventory(self) -> list[InventoryItem]:
        with _failure_code(ErrorCode.INVENTORY_FETCH_FAILED):
            campaigns = await self._enrich_campaigns(await self._fetch_campaigns())
        items: list[InventoryItem] = []
        drops_count = 0
        with _failure_code(ErrorCode.INVENTORY_INVALID_RESPONSE):
            for campaign in campaigns:
                for drop in campaign.get("timeBasedDrops") or []:
                    drops_count += 1
                    items.append(build_inventory_item(campaign, drop))
        if not items:
            raise RemoteError(
                ErrorCode.INVENTORY_EMPTY,
                f"No drops found in {len(campaigns)} campaigns ({drops_count} drops)",
            )
        logger.debug(f"Built {len(items)} inventory items")
        return items

    async def fetch_priority_plan(self, priority_games: abc.Sequence[str]) -> PriorityPlan:
        return build_priority_plan(await self.fetch_inventory(), priority_games)

    async def _resolve_slug(self, game: str) -> str | None:
        response = await self.gql.request(
            GQL_OPERATIONS["SlugRedirect"].with_variables({"name": game})
        )
        game_data: JsonType = (response.get("data") or {}).get("game") or {}
        return game_data.get("slug") or game_data.get("displayName") or game_data.get("name")

    async def _channels_with_drops(self, channel_ids: list[str]) -> set[str]:
        eligible: set[str] = set()
        for ids in chunk(channel_ids, CHUNK_SIZE):
            responses = await self.gql.request(
                [
                    GQL_OPERATIONS["AvailableDrops"].with_variables({"channelID": cid})
                    for cid in ids
                ]
            )
            for response in responses:
                channel = (response.get("data") or {}).get("channel") or {}
                if channel.get("id") and channel.get("viewerDropCampaigns"):
                    eligible.add(str(channel["id"]))
        return eligible

    async def fetch_channels(self, game: str) -> list[ChannelEntry]:
        with _failure_code(ErrorCode.CHANNELS_FETCH_FAILED):
            slug = await self._resolve_slug(game)
            if not slug:
                raise RemoteError(ErrorCode.GAME_SLUG_MISSING, f"Game slug missing for {game}")
            response = await self.gql.request(
                GQL_OPERATIONS["GameDirectory"].with_variables({"slug": slug})
            )
        with _failure_code(ErrorCode.CHANNELS_INVALID_RESPONSE):
            edges = ((response.get("data") or {}).get("game") or {}).get("streams") or {}
            channels = [
                build_channel_entry(node, game)
                for edge in edges.get("edges") or []
                if (node := (edge or {}).get("node"))
                and ((node.get("broadcaster") or {}).get("broadcastSettings") or {}).get(
                    "isDropsEnabled"
                ) is not False
            ]
        try:
            with _failure_code(ErrorCode.CHANNELS_FETCH_FAILED):
                eligible = await self._channels_with_drops([c.id for c in channels])
        except RemoteError as exc:
            logger.debug(f"Available drops filter failed: {exc.message}")
        else:
            if eligible:
                channels = [c for c in channels if c.id in eligible]
        return channels

    async def _spade_url(self, login: str) -> str:
        if (cached := self._spade_cache.get(login)) is not None:
            return cached
        with _failure_code(ErrorCode.SPADE_FETCH_FAILED):
            async with self.http.request(
                "GET", self._client_type.CLIENT_URL / login
            ) as response:
                if response.status >= 400:
                    raise RemoteError(
                        ErrorCode.SPADE_FETCH_FAILED, f"Spade fetch failed ({response.status})"
                    )
                streamer_html: str = await response.text(encoding="utf8")
            match = SPADE_PATTERN.search(streamer_html)
            if match is None:
                settings_match = SETTINGS_PATTERN.search(streamer_html)
                if settings_match is None:
                    raise RemoteError(ErrorCode.SPADE_URL_MISSING, "Spade URL missing")
                async with self.http.request("GET", settings_match.group(1)) as response:
                    if response.status >= 400:
                        raise RemoteError(
                            ErrorCode.SPADE_FETCH_FAILED,
                            f"Spade fetch failed ({response.status})",
                        )
                    settings_js: str = await response.text(encoding="utf8")
                match = SPADE_PATTERN.search(settings_js)
                if match is None:
                    raise RemoteError(ErrorCode.SPADE_URL_MISSING, "Spade URL missing")
        spade_url = match.group(1)
        self._spade_cache[login] = spade_url
        return spade_url

    async def send_watch_ping(
        self, channel_id: str, login: str, stream_id: str | None = None
    ) -> None:
        login = (login or "").strip()
        if not login:
            raise RemoteError(ErrorCode.WATCH_MISSING_LOGIN, "Watch login missing")
        with _failure_code(ErrorCode.WATCH_PING_FAILED):
            response = await self.gql.request(
                GQL_OPERATIONS["GetStreamInfo"].with_variables({"channel": login})
            )
            user: JsonType = (response.get("data") or {}).get("user") or {}
        stream: JsonType | None = user.get("stream")
        if not stream:
            raise RemoteError(ErrorCode.WATCH_OFFLINE, "Watch stream offline")
        spade_url = await self._spade_url(login)
        with _failure_code(ErrorCode.WATCH_PING_FAILED):
            auth = await self.auth.validate()
        broadcast_id = stream.get("id") or stream_id
        channel = user.get("id") or channel_id
        if not broadcast_id or not channel:
            raise RemoteError(ErrorCode.WATCH_MISSING_IDS, "Watch identifiers missing")
        payload = [
            {
                "event": "minute-watched",
                "properties": {
                    "broadcast_id": str(broadcast_id),
                    "channel_id": str(channel),
                    "channel": login,
                    "hidden": False,
                    "live": True,
                    "location": "channel",
                    "logged_in": True,
                    "muted": False,
                    "player": "site",
                    "user_id": auth.user_id,
                },
            }
        ]
        data = {"data": b64encode(json_minify(payload).encode("utf8")).decode("utf8")}
        with _failure_code(ErrorCode.WATCH_PING_FAILED):
            async with self.http.request("POST", spade_url, data=data) as response:
                if response.status == 204:
                    return
                text = (await response.text()).strip()
        # the beacon URL may have rotated
        self._spade_cache.pop(login, None)
        raise RemoteError(
            ErrorCode.WATCH_PING_FAILED,
            f"Watch ping failed: {text}" if text else f"Watch ping failed ({response.status})",
        )

    async def claim_drop(
        self, drop_instance_id: str | None, drop_id: str, campaign_id: str | None
    ) -> None:
        claim_id = drop_instance_id
        if not claim_id and drop_id and campaign_id:
            with _failure_code(ErrorCode.CLAIM_FAILED):
                auth = await self.auth.validate()
            claim_id = f"{auth.user_id}#{campaign_id}#{drop_id}"
        if not claim_id:
            raise RemoteError(ErrorCode.CLAIM_MISSING_ID, "Claim id missing")
        with _failure_code(ErrorCode.CLAIM_FAILED):
            response = await self.gql.request(
                GQL_OPERATIONS["ClaimDrop"].with_variables(
                    {"input": {"dropInstanceID": claim_id}}
                )
            )
        result: JsonType = (response.get("data") or {}).get("claimDropRewards") or {}
        status = result.get("status") or (result.get("payload") or {}).get("status") or result.get(
            "error"
        )
        if status not in CLAIM_OK_STATUSES:
            logger.debug(f"Claim failed: {claim_id=}, {status=}")
            raise ClaimFailed(f"Claim failed: {status}" if status else None)
        logger.debug(f"Claim succeeded: {claim_id=}, {status=}")
