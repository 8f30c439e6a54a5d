import asyncio
import unittest
from unittest.mock import AsyncMock, MagicMock, patch

from droppilot.config import State
from droppilot.exceptions import AuthInvalid
from droppilot.models import AuthError, InventoryState, InventoryStatus, PriorityPlan, Profile
from tests.fakes import make_channel, make_farmer, make_item, stop_farmer


class TestWatching(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.farmer = make_farmer()
        self.farmer.request_refresh = MagicMock()

    async def asyncTearDown(self):
        stop_farmer(self.farmer)

    async def test_start_watching(self):
        channel = make_channel("1", stream_id="s1")
        self.farmer.start_watching(channel)
        watching = self.farmer.watching
        self.assertEqual((watching.id, watching.login, watching.stream_id), ("1", "login1", "s1"))
        self.assertIs(self.farmer.heartbeat.target, watching)
        self.assertEqual(self.farmer.scheduler.mode, "watching")
        self.farmer.request_refresh.assert_called_once_with()
        # the same channel again changes nothing
        self.farmer.start_watching(channel)
        self.farmer.request_refresh.assert_called_once_with()

    async def test_switch_watching_skips_refresh(self):
        self.farmer.switch_watching(make_channel("2"))
        self.assertEqual(self.farmer.watching.id, "2")
        self.farmer.request_refresh.assert_not_called()

    async def test_stop_watching(self):
        self.farmer.start_watching(make_channel("1"), refresh=False)
        self.farmer.stop_watching(skip_refresh=True)
        self.assertIsNone(self.farmer.watching)
        self.assertIsNone(self.farmer.heartbeat.target)
        self.assertEqual(self.farmer.scheduler.mode, "idle")
        self.farmer.request_refresh.assert_not_called()
        self.farmer.start_watching(make_channel("1"), refresh=False)
        self.farmer.stop_watching()
        self.farmer.request_refresh.assert_called_once_with()

    async def test_user_stop_pauses_auto_select(self):
        self.farmer.start_watching(make_channel("1"))
        self.farmer.user_stop()
        self.assertIsNone(self.farmer.watching)
        self.assertFalse(self.farmer.auto_select_enabled)
        self.farmer.start_watching(make_channel("2"))
        self.assertTrue(self.farmer.auto_select_enabled)

    async def test_user_watch(self):
        self.farmer.tracker.channels = [make_channel("1"), make_channel("2")]
        self.assertTrue(self.farmer.user_watch("2"))
        self.assertEqual(self.farmer.watching.id, "2")
        self.assertFalse(self.farmer.user_watch("3"))

    async def test_allow_watching(self):
        self.assertTrue(self.farmer.allow_watching)
        self.farmer.close()
        self.assertFalse(self.farmer.allow_watching)
        # exit can't be left
        self.farmer.change_state(State.IDLE)
        self.assertIs(self.farmer.state, State.EXIT)


class TestAuthErrors(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.farmer = make_farmer()
        self.farmer.request_refresh = MagicMock()
        self.farmer.inventory.state = InventoryState(InventoryStatus.READY, (make_item("d1"),))
        self.farmer.selector.active_target_game = "Game A"

    async def asyncTearDown(self):
        stop_farmer(self.farmer)

    async def test_single_error_stops_watching(self):
        self.farmer.start_watching(make_channel("1"), refresh=False)
        self.farmer.events.emit(AuthError("expired"))
        self.assertIsNone(self.farmer.watching)
        self.assertTrue(self.farmer.authenticated)
        self.farmer.gateway.invalidate.assert_not_called()

    async def test_repeated_errors_deauthenticate(self):
        self.farmer.scheduler.update()
        self.farmer.events.emit(AuthError())
        self.farmer.events.emit(AuthError())
        self.assertFalse(self.farmer.authenticated)
        self.assertIs(self.farmer.state, State.AUTHENTICATE)
        self.farmer.gateway.invalidate.assert_called_once_with()
        self.assertEqual(self.farmer.inventory.state.status, InventoryStatus.IDLE)
        self.assertEqual(self.farmer.inventory.items, ())
        self.assertIsNone(self.farmer.selector.active_target_game)
        self.assertIsNone(self.farmer.scheduler.mode)
        self.assertFalse(self.farmer.tracker.active)

    async def test_errors_outside_window(self):
        with patch("droppilot.core.farmer.time", return_value=1000.0):
            self.farmer.events.emit(AuthError())
        with patch("droppilot.core.farmer.time", return_value=1000.0 + 121):
            self.farmer.events.emit(AuthError())
        self.assertTrue(self.farmer.authenticated)
        self.farmer.gateway.invalidate.assert_not_called()


class TestRunLoop(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.farmer = make_farmer()
        self.farmer.authenticated = False
        self.gateway = self.farmer.gateway

    async def asyncTearDown(self):
        stop_farmer(self.farmer)

    async def test_run_and_close(self):
        self.gateway.fetch_priority_plan.return_value = PriorityPlan(order=("Game A",))
        self.gateway.fetch_inventory.return_value = [make_item("d1", "Game A")]
        run = asyncio.create_task(self.farmer.run())
        await asyncio.sleep(0.05)
        self.assertTrue(self.farmer.authenticated)
        self.assertEqual(self.farmer.profile, Profile("1", "viewer", "viewer"))
        self.assertIs(self.farmer.state, State.IDLE)
        self.assertEqual(self.farmer.selector.priority_order, ["Game A"])
        self.assertEqual(self.farmer.selector.active_target_game, "Game A")
        self.assertEqual(self.farmer.scheduler.mode, "idle")
        self.farmer.settings.save.assert_called()
        self.farmer.close()
        await asyncio.wait_for(run, 1)

    async def test_retries_authentication(self):
        self.farmer.auth_retry_delay = 0.01
        self.gateway.fetch_profile.side_effect = [AuthInvalid("no token"), Profile("1", "a", "a")]
        run = asyncio.create_task(self.farmer.run())
        await asyncio.sleep(0.1)
        self.assertTrue(self.farmer.authenticated)
        self.assertEqual(self.gateway.fetch_profile.await_count, 2)
        self.farmer.close()
        await asyncio.wait_for(run, 1)

    async def test_shutdown(self):
        self.farmer.authenticated = True
        self.farmer.start_watching(make_channel("1"), refresh=False)
        await self.farmer.shutdown()
        self.assertIs(self.farmer.state, State.EXIT)
        self.assertIsNone(self.farmer.watching)
        self.gateway.close.assert_awaited_once()


class TestReconciliation(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.farmer = make_farmer()
        self.gateway = self.farmer.gateway

    async def asyncTearDown(self):
        stop_farmer(self.farmer)

    async def test_inventory_leads_to_watching(self):
        self.farmer.heartbeat.interval = 60
        self.gateway.fetch_inventory.return_value = [make_item("d1", "Game A")]
        self.gateway.fetch_channels.return_value = [make_channel("1", stream_id="s1")]
        await self.farmer.request_refresh()
        await asyncio.sleep(0.05)
        self.assertEqual(self.farmer.selector.active_target_game, "Game A")
        self.gateway.fetch_channels.assert_awaited_with("Game A")
        self.assertEqual(self.farmer.watching.id, "1")
        self.gateway.send_watch_ping.assert_awaited_with("1", "login1", "s1")
        self.assertEqual(self.farmer.projector.info.id, "d1")
        self.assertTrue(self.farmer.projector.ticking)

    async def test_finished_target_stops_watching(self):
        self.farmer.inventory.state = InventoryState(InventoryStatus.READY, (make_item("d1"),))
        self.farmer.selector.active_target_game = "Game A"
        self.farmer.start_watching(make_channel("1"), refresh=False)
        self.gateway.fetch_inventory.return_value = [make_item("d1", earned=60)]
        self.farmer.inventory.claim_refresh_delay = 60
        await self.farmer.request_refresh()
        self.assertIsNone(self.farmer.selector.active_target_game)
        self.assertIsNone(self.farmer.watching)

    async def test_apply_settings(self):
        self.farmer.refresh_plan = AsyncMock()
        self.farmer.scheduler.update()
        task = self.farmer.scheduler._task.task
        self.farmer.apply_settings(
            {"priority_games": ["Game B"], "refresh_min_seconds": 300, "auto_claim": None}
        )
        await asyncio.sleep(0)
        self.assertEqual(self.farmer.settings.priority_games, ["Game B"])
        self.assertEqual(self.farmer.settings.refresh_min_seconds, 300)
        self.assertTrue(self.farmer.settings.auto_claim)
        self.farmer.settings.save.assert_called_once_with()
        self.farmer.refresh_plan.assert_awaited_once_with()
        self.assertIsNot(self.farmer.scheduler._task.task, task)

    async def test_apply_empty_settings(self):
        self.farmer.apply_settings({"proxy": None})
        self.farmer.settings.save.assert_not_called()

    async def test_apply_pubsub_settings(self):
        self.farmer.profile = Profile("1", "viewer", "viewer")
        self.farmer.apply_settings({"user_pubsub": True, "tracker_mode": "hybrid"})
        self.assertEqual(
            self.farmer.websockets.topics, {"user-drop-events.1", "onsite-notifications.1"}
        )
        self.assertEqual(self.farmer.tracker.mode, "hybrid")
        self.farmer.apply_settings({"user_pubsub": False})
        self.assertEqual(self.farmer.websockets.topics, frozenset())
        self.assertIsNone(self.farmer.pubsub.user_id)
        await self.farmer.websockets.stop(clear_topics=True)

    async def test_snapshot(self):
        self.farmer.inventory.state = InventoryState(InventoryStatus.READY, (make_item("d1"),))
        self.farmer.selector.active_target_game = "Game A"
        snapshot = self.farmer.state_snapshot()
        self.assertEqual(snapshot["target_game"], "Game A")
        self.assertEqual(snapshot["inventory"]["status"], InventoryStatus.READY)
        self.assertEqual(snapshot["inventory"]["items"][0]["id"], "d1")
        self.assertEqual(snapshot["target_summary"]["total_drops"], 1)
        self.assertEqual(snapshot["target_progress"], 0.0)
        self.assertIsNone(snapshot["watching"])
        self.assertEqual(snapshot["settings"]["proxy"], "")
        self.assertEqual(snapshot["pubsub"]["connection_state"], "disconnected")
        self.assertFalse(snapshot["pubsub"]["listening"])
        self.assertIsNone(snapshot["pubsub"]["user_id"])
        self.assertEqual(snapshot["tracker"]["mode"], "polling")


if __name__ == "__main__":
    unittest.main()
