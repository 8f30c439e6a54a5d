import asyncio
import unittest
from contextlib import asynccontextmanager
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import aiohttp

from droppilot.api.gateway import (
    TwitchGateway,
    _failure_code,
    build_channel_entry,
    build_inventory_item,
    map_drop_status,
)
from droppilot.config import ErrorCode
from droppilot.exceptions import AuthInvalid, ClaimFailed, InvalidResponse, RemoteError
from droppilot.models import DropStatus
from tests.fakes import make_settings


CAMPAIGN = {
    "id": "camp1",
    "status": "ACTIVE",
    "game": {"displayName": "Game A"},
    "self": {"isAccountConnected": True},
    "startAt": "2024-01-01T00:00:00Z",
    "endAt": "2024-02-01T00:00:00Z",
}


class TestMapping(unittest.TestCase):
    def test_status_mapping(self):
        self.assertEqual(map_drop_status("Fulfilled", {}), DropStatus.CLAIMED)
        self.assertEqual(map_drop_status("completed", {}), DropStatus.CLAIMED)
        self.assertEqual(map_drop_status("IN_PROGRESS", {}), DropStatus.PROGRESS)
        self.assertEqual(map_drop_status("active", {}), DropStatus.PROGRESS)
        self.assertEqual(map_drop_status(None, {}), DropStatus.LOCKED)
        self.assertEqual(
            map_drop_status("whatever", {"self": {"isClaimed": True}}), DropStatus.CLAIMED
        )

    def test_inventory_item(self):
        drop = {
            "id": "d1",
            "name": "Cool Hat",
            "requiredMinutesWatched": 120,
            "self": {"currentMinutesWatched": 30, "dropInstanceID": "inst1"},
        }
        item = build_inventory_item(CAMPAIGN, drop)
        self.assertEqual(item.id, "d1")
        self.assertEqual(item.title, "Cool Hat")
        self.assertEqual(item.game, "Game A")
        self.assertEqual(item.required_minutes, 120)
        self.assertEqual(item.earned_minutes, 30)
        # watched minutes on a locked drop mean progress
        self.assertEqual(item.status, DropStatus.PROGRESS)
        self.assertEqual(item.drop_instance_id, "inst1")
        self.assertEqual(item.campaign_id, "camp1")
        self.assertTrue(item.linked)
        self.assertEqual(item.campaign_status, "ACTIVE")
        self.assertEqual(item.starts_at.year, 2024)
        self.assertEqual(item.ends_at.month, 2)
        self.assertFalse(item.excluded)

    def test_claimed_drop_reports_full_progress(self):
        drop = {"id": "d1", "requiredMinutesWatched": 60, "self": {"status": "claimed"}}
        item = build_inventory_item(CAMPAIGN, drop)
        self.assertEqual(item.status, DropStatus.CLAIMED)
        self.assertEqual(item.earned_minutes, 60)
        self.assertEqual(item.title, "d1")

    def test_finished_unclaimed_drop_is_in_progress(self):
        drop = {"id": "d1", "requiredMinutesWatched": 60, "self": {"currentMinutesWatched": 90}}
        item = build_inventory_item(CAMPAIGN, drop)
        self.assertEqual(item.status, DropStatus.PROGRESS)
        self.assertEqual(item.earned_minutes, 60)

    def test_smallest_positive_required_minutes(self):
        drop = {"id": "d1", "requiredMinutesWatched": 0, "requiredMinutes": "45", "required_minutes": 90}
        self.assertEqual(build_inventory_item(CAMPAIGN, drop).required_minutes, 45)

    def test_disabled_campaign_is_excluded(self):
        campaign = {**CAMPAIGN, "allow": {"isEnabled": False}, "self": {}}
        item = build_inventory_item(campaign, {"id": "d1", "requiredMinutesWatched": 60})
        self.assertTrue(item.excluded)
        self.assertFalse(item.linked)

    def test_channel_entry(self):
        node = {
            "id": 555,
            "viewersCount": 1234,
            "previewImageURL": "https://example.com/thumb.jpg",
            "broadcaster": {
                "id": "42",
                "login": "streamer",
                "displayName": "Streamer",
                "language": "en",
                "broadcastSettings": {"title": "Farming"},
            },
        }
        entry = build_channel_entry(node, "Game A")
        self.assertEqual(entry.id, "42")
        self.assertEqual(entry.login, "streamer")
        self.assertEqual(entry.display_name, "Streamer")
        self.assertEqual(entry.title, "Farming")
        self.assertEqual(entry.viewers, 1234)
        self.assertEqual(entry.stream_id, "555")
        self.assertEqual(entry.game, "Game A")


class TestFailureCode(unittest.TestCase):
    def test_generic_failure_is_relabelled(self):
        with self.assertRaises(RemoteError) as ctx:
            with _failure_code(ErrorCode.CHANNELS_FETCH_FAILED):
                raise RemoteError(ErrorCode.REQUEST_FAILED, "timeout")
        self.assertEqual(ctx.exception.code, ErrorCode.CHANNELS_FETCH_FAILED)
        self.assertEqual(ctx.exception.message, "timeout")

    def test_specific_failure_is_kept(self):
        with self.assertRaises(RemoteError) as ctx:
            with _failure_code(ErrorCode.CHANNELS_FETCH_FAILED):
                raise RemoteError(ErrorCode.GAME_SLUG_MISSING)
        self.assertEqual(ctx.exception.code, ErrorCode.GAME_SLUG_MISSING)

    def test_shape_errors_become_invalid_response(self):
        with self.assertRaises(InvalidResponse) as ctx:
            with _failure_code(ErrorCode.INVENTORY_INVALID_RESPONSE):
                {}["missing"]
        self.assertEqual(ctx.exception.code, ErrorCode.INVENTORY_INVALID_RESPONSE)

    def test_auth_passes_through(self):
        with self.assertRaises(AuthInvalid):
            with _failure_code(ErrorCode.CLAIM_FAILED):
                raise AuthInvalid()

    def test_transport_errors_become_remote_errors(self):
        for exc in (aiohttp.ClientConnectionError("reset"), asyncio.TimeoutError()):
            with self.subTest(exc=exc):
                with self.assertRaises(RemoteError) as ctx:
                    with _failure_code(ErrorCode.WATCH_PING_FAILED):
                        raise exc
                self.assertEqual(ctx.exception.code, ErrorCode.WATCH_PING_FAILED)

    def test_decoding_errors_become_invalid_response(self):
        with self.assertRaises(InvalidResponse) as ctx:
            with _failure_code(ErrorCode.SPADE_FETCH_FAILED):
                b"\xff".decode("utf8")
        self.assertEqual(ctx.exception.code, ErrorCode.SPADE_FETCH_FAILED)


class TestTwitchGateway(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.gateway = TwitchGateway(make_settings())
        self.gateway.gql = MagicMock(request=AsyncMock())
        self.gateway.auth = MagicMock(
            validate=AsyncMock(return_value=SimpleNamespace(user_id=7, login="viewer"))
        )

    async def test_fetch_profile(self):
        profile = await self.gateway.fetch_profile()
        self.assertEqual((profile.id, profile.login, profile.display_name), ("7", "viewer", "viewer"))

    def serve(self, response=None, error=None):
        @asynccontextmanager
        async def request(*args, **kwargs):
            if error is not None:
                raise error
            yield response

        self.gateway.http = MagicMock(request=request)
        self.gateway.gql.request.return_value = {
            "data": {"user": {"id": "c1", "stream": {"id": "s1"}}}
        }

    async def test_watch_ping_undecodable_page(self):
        page = MagicMock(
            status=200,
            text=AsyncMock(side_effect=UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid")),
        )
        self.serve(page)
        with self.assertRaises(RemoteError) as ctx:
            await self.gateway.send_watch_ping("c1", "login1")
        self.assertEqual(ctx.exception.code, ErrorCode.SPADE_FETCH_FAILED)

    async def test_watch_ping_connection_error(self):
        self.serve(error=aiohttp.ClientConnectionError("reset"))
        with self.assertRaises(RemoteError) as ctx:
            await self.gateway.send_watch_ping("c1", "login1")
        self.assertEqual(ctx.exception.code, ErrorCode.SPADE_FETCH_FAILED)

    async def test_claim_with_instance_id(self):
        self.gateway.gql.request.return_value = {
            "data": {"claimDropRewards": {"status": "ELIGIBLE_FOR_ALL"}}
        }
        await self.gateway.claim_drop("inst1", "d1", "camp1")
        operation = self.gateway.gql.request.await_args.args[0]
        self.assertEqual(operation["variables"]["input"]["dropInstanceID"], "inst1")

    async def test_claim_builds_fallback_id(self):
        self.gateway.gql.request.return_value = {
            "data": {"claimDropRewards": {"status": "DROP_INSTANCE_ALREADY_CLAIMED"}}
        }
        await self.gateway.claim_drop(None, "d1", "camp1")
        operation = self.gateway.gql.request.await_args.args[0]
        self.assertEqual(operation["variables"]["input"]["dropInstanceID"], "7#camp1#d1")

    async def test_claim_missing_id(self):
        with self.assertRaises(RemoteError) as ctx:
            await self.gateway.claim_drop(None, "d1", None)
        self.assertEqual(ctx.exception.code, ErrorCode.CLAIM_MISSING_ID)
        self.gateway.gql.request.assert_not_awaited()

    async def test_claim_rejected(self):
        self.gateway.gql.request.return_value = {
            "data": {"claimDropRewards": {"status": "DROP_INSTANCE_NOT_FOUND"}}
        }
        with self.assertRaises(ClaimFailed):
            await self.gateway.claim_drop("inst1", "d1", "camp1")

    async def test_claim_request_failure(self):
        self.gateway.gql.request.side_effect = RemoteError(ErrorCode.GQL_FAILED, "bad")
        with self.assertRaises(RemoteError) as ctx:
            await self.gateway.claim_drop("inst1", "d1", "camp1")
        self.assertEqual(ctx.exception.code, ErrorCode.CLAIM_FAILED)

    async def test_channels_missing_slug(self):
        self.gateway.gql.request.return_value = {"data": {"game": None}}
        with self.assertRaises(RemoteError) as ctx:
            await self.gateway.fetch_channels("Game A")
        self.assertEqual(ctx.exception.code, ErrorCode.GAME_SLUG_MISSING)

    def _directory(self, *ids):
        return {
            "data": {
                "game": {
                    "streams": {
                        "edges": [
                            {
                                "node": {
                                    "id": f"s{cid}",
                                    "viewersCount": 10,
                                    "broadcaster": {
                                        "id": cid,
                                        "login": f"login{cid}",
                                        "displayName": f"Channel{cid}",
                                        "broadcastSettings": {"title": "t"},
                                    },
                                }
                            }
                            for cid in ids
                        ]
                    }
                }
            }
        }

    async def test_channels_filtered_by_available_drops(self):
        self.gateway.gql.request.side_effect = [
            {"data": {"game": {"slug": "game-a"}}},
            self._directory("1", "2"),
            [
                {"data": {"channel": {"id": "1", "viewerDropCampaigns": None}}},
                {"data": {"channel": {"id": "2", "viewerDropCampaigns": [{"id": "camp1"}]}}},
            ],
        ]
        channels = await self.gateway.fetch_channels("Game A")
        self.assertEqual([c.id for c in channels], ["2"])

    async def test_channels_filter_failure_is_ignored(self):
        self.gateway.gql.request.side_effect = [
            {"data": {"game": {"slug": "game-a"}}},
            self._directory("1", "2"),
            RemoteError(ErrorCode.GQL_FAILED),
        ]
        channels = await self.gateway.fetch_channels("Game A")
        self.assertEqual([c.id for c in channels], ["1", "2"])

    async def test_inventory_empty(self):
        self.gateway.gql.request.return_value = [
            {"data": {"currentUser": {"inventory": {}}}},
            {"data": {"currentUser": {"dropCampaigns": []}}},
        ]
        with self.assertRaises(RemoteError) as ctx:
            await self.gateway.fetch_inventory()
        self.assertEqual(ctx.exception.code, ErrorCode.INVENTORY_EMPTY)

    async def test_inventory_merges_progress(self):
        inventory_campaign = {
            "id": "camp1",
            "timeBasedDrops": [
                {"id": "d1", "self": {"currentMinutesWatched": 20}},
            ],
        }
        dashboard_campaign = {
            "id": "camp1",
            "game": {"displayName": "Game A"},
            "status": "ACTIVE",
            "timeBasedDrops": [{"id": "d1", "name": "Hat", "requiredMinutesWatched": 60}],
        }
        details = {
            "data": {
                "user": {
                    "dropCampaign": {
                        "id": "camp1",
                        "timeBasedDrops": [
                            {"id": "d1", "name": "Hat", "requiredMinutesWatched": 60}
                        ],
                    }
                }
            }
        }
        self.gateway.gql.request.side_effect = [
            [
                {"data": {"currentUser": {"inventory": {"dropCampaignsInProgress": [inventory_campaign]}}}},
                {"data": {"currentUser": {"dropCampaigns": [dashboard_campaign]}}},
            ],
            [details],
        ]
        items = await self.gateway.fetch_inventory()
        self.assertEqual(len(items), 1)
        item = items[0]
        self.assertEqual((item.game, item.title, item.required_minutes), ("Game A", "Hat", 60))
        self.assertEqual(item.earned_minutes, 20)
        self.assertEqual(item.status, DropStatus.PROGRESS)

    async def test_priority_plan(self):
        self.gateway.fetch_inventory = AsyncMock(return_value=[])
        plan = await self.gateway.fetch_priority_plan(["Game A"])
        self.assertEqual(plan.missing_priority, ("Game A",))


if __name__ == "__main__":
    unittest.main()
