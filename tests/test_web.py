import asyncio
import unittest
from unittest.mock import AsyncMock, MagicMock, patch

from fastapi import HTTPException
from pydantic import ValidationError
from yarl import URL

from droppilot.core.events import EventHub
from droppilot.models import AutoSwitch, AutoSwitchInfo, InventoryState, MinutesEarned
from droppilot.web import WebSocketBroadcaster
from droppilot.web import app as webapp
from droppilot.web.app import (
    SettingsUpdate,
    WatchRequest,
    get_state,
    stop_watching,
    trigger_refresh,
    update_settings,
    watch_channel,
)
from tests.fakes import make_channel, make_farmer, make_item, stop_farmer


class TestSettingsUpdate(unittest.TestCase):
    def test_only_sent_fields(self):
        update = SettingsUpdate(priority_games=["Game A"], auto_switch=False)
        self.assertEqual(update.changes(), {"priority_games": ["Game A"], "auto_switch": False})

    def test_proxy_is_parsed(self):
        update = SettingsUpdate(proxy=" http://proxy:3128 ")
        self.assertEqual(update.changes(), {"proxy": URL("http://proxy:3128")})

    def test_validation(self):
        with self.assertRaises(ValidationError):
            SettingsUpdate(connection_quality=0)
        with self.assertRaises(ValidationError):
            SettingsUpdate(refresh_min_seconds=-1)
        with self.assertRaises(ValidationError):
            SettingsUpdate(tracker_mode="push")

    def test_pubsub_fields(self):
        update = SettingsUpdate(user_pubsub=False, tracker_mode="hybrid")
        self.assertEqual(update.changes(), {"user_pubsub": False, "tracker_mode": "hybrid"})


class TestEndpoints(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.sio_patcher = patch.object(webapp.sio, "emit", new=AsyncMock())
        self.sio_emit = self.sio_patcher.start()
        self.farmer = make_farmer()
        self.farmer.request_refresh = MagicMock()
        webapp.set_farmer(self.farmer)

    async def asyncTearDown(self):
        webapp.set_farmer(None)
        self.sio_patcher.stop()
        stop_farmer(self.farmer)

    async def test_get_state(self):
        self.farmer.inventory.state = InventoryState(items=(make_item("d1"),))
        state = await get_state()
        self.assertEqual(state["state"], "IDLE")
        self.assertEqual(state["inventory"]["status"], "idle")
        self.assertEqual(state["inventory"]["items"][0]["status"], "progress")
        self.assertEqual(state["settings"]["proxy"], "")

    async def test_not_initialized(self):
        webapp.set_farmer(None)
        with self.assertRaises(HTTPException) as ctx:
            await get_state()
        self.assertEqual(ctx.exception.status_code, 503)

    async def test_update_settings(self):
        result = await update_settings(SettingsUpdate(exclude_games=["Game B"]))
        self.assertTrue(result["success"])
        self.assertEqual(self.farmer.settings.exclude_games, ["Game B"])
        self.sio_emit.assert_awaited()
        self.assertEqual(self.sio_emit.await_args.args[0], "state_update")

    async def test_update_settings_bad_bounds(self):
        with self.assertRaises(HTTPException) as ctx:
            await update_settings(SettingsUpdate(refresh_min_seconds=500))
        self.assertEqual(ctx.exception.status_code, 422)
        self.assertEqual(self.farmer.settings.refresh_min_seconds, 120)

    async def test_watch(self):
        self.farmer.tracker.channels = [make_channel("1")]
        self.assertEqual(await watch_channel(WatchRequest(channel_id="1")), {"success": True})
        self.assertEqual(self.farmer.watching.id, "1")
        with self.assertRaises(HTTPException) as ctx:
            await watch_channel(WatchRequest(channel_id="2"))
        self.assertEqual(ctx.exception.status_code, 404)

    async def test_watch_requires_login(self):
        self.farmer.authenticated = False
        with self.assertRaises(HTTPException) as ctx:
            await watch_channel(WatchRequest(channel_id="1"))
        self.assertEqual(ctx.exception.status_code, 409)

    async def test_stop(self):
        self.farmer.start_watching(make_channel("1"), refresh=False)
        await stop_watching()
        self.assertIsNone(self.farmer.watching)
        self.assertFalse(self.farmer.auto_select_enabled)

    async def test_refresh(self):
        await trigger_refresh()
        self.farmer.request_refresh.assert_called_once_with(force_loading=True)


class TestBroadcaster(unittest.IsolatedAsyncioTestCase):
    async def test_forwards_events(self):
        sio = MagicMock(emit=AsyncMock())
        events = EventHub()
        broadcaster = WebSocketBroadcaster()
        broadcaster.set_socketio(sio)
        broadcaster.attach(events)
        events.emit(MinutesEarned(3))
        info = AutoSwitchInfo(1.0, "offline", ("1", "Channel1"), ("2", "Channel2"))
        events.emit(AutoSwitch(info))
        await asyncio.sleep(0.01)
        sio.emit.assert_any_await("minutes_earned", {"delta": 3})
        name, payload = sio.emit.await_args.args
        self.assertEqual(name, "auto_switch")
        self.assertEqual(payload["info"]["to_channel"], ["2", "Channel2"])
        broadcaster.detach(events)
        events.emit(MinutesEarned(1))
        await asyncio.sleep(0.01)
        self.assertEqual(sio.emit.await_count, 2)

    async def test_no_server(self):
        broadcaster = WebSocketBroadcaster()
        broadcaster.schedule("state_update", {})
        await broadcaster.emit("state_update", {})


if __name__ == "__main__":
    unittest.main()
