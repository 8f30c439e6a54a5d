import unittest
from time import time
from unittest.mock import MagicMock

from droppilot.config import ErrorCode
from droppilot.exceptions import AuthInvalid, RemoteError
from droppilot.models import (
    AuthError,
    DropStatus,
    InventoryState,
    InventoryStatus,
    PriorityPlan,
    WatchingTarget,
)
from droppilot.services.target_selector import normalize_games
from tests.fakes import at, make_farmer, make_item, stop_farmer


class TestTargetSelector(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.farmer = make_farmer()
        self.farmer.target_changed = MagicMock()
        self.farmer.stop_watching = MagicMock()
        self.selector = self.farmer.selector

    async def asyncTearDown(self):
        stop_farmer(self.farmer)

    def set_items(self, *items, status=InventoryStatus.READY):
        self.farmer.inventory.state = InventoryState(status, tuple(items))

    def test_normalize_games(self):
        self.assertEqual(normalize_games([" A ", "B", "", "A", "  "]), ["A", "B"])

    def test_priority_order_sources(self):
        self.set_items(make_item("d1", "Game B"), make_item("d2", "Game A"))
        now = time()
        # fallback: actionable games in encounter order
        self.assertEqual(self.selector.compute_priority_order(now), ["Game B", "Game A"])
        # user list
        self.farmer.settings.priority_games = ["Game A ", "Game C"]
        self.assertEqual(self.selector.compute_priority_order(now), ["Game A", "Game C"])
        # remote plan wins
        self.selector.plan = PriorityPlan(order=("Game C", "Game B"))
        self.assertEqual(self.selector.compute_priority_order(now), ["Game C", "Game B"])

    def test_reconcile_picks_first_actionable(self):
        self.farmer.settings.priority_games = ["Game X", "Game B", "Game A"]
        self.set_items(
            make_item("d1", "Game X", status=DropStatus.CLAIMED, earned=60),
            make_item("d2", "Game A"),
            make_item("d3", "Game B"),
        )
        self.assertEqual(self.selector.reconcile(), "Game B")
        self.farmer.target_changed.assert_called_once_with("Game B")

    def test_reconcile_skips_excluded_games(self):
        self.farmer.settings.exclude_games = ["Game A"]
        self.set_items(make_item("d1", "Game A"), make_item("d2", "Game B"))
        self.assertEqual(self.selector.reconcile(), "Game B")

    def test_reconcile_waits_for_ready_inventory(self):
        self.set_items(make_item("d1", "Game A"), status=InventoryStatus.LOADING)
        self.assertIsNone(self.selector.reconcile())
        self.farmer.target_changed.assert_not_called()

    def test_current_target_is_kept(self):
        self.set_items(make_item("d1", "Game A"), make_item("d2", "Game B"))
        self.selector.active_target_game = "Game B"
        self.assertEqual(self.selector.reconcile(), "Game B")
        self.farmer.target_changed.assert_not_called()

    def test_obey_priority_switches_target(self):
        self.farmer.settings.obey_priority = True
        self.set_items(make_item("d1", "Game A"), make_item("d2", "Game B"))
        self.selector.active_target_game = "Game B"
        self.assertEqual(self.selector.reconcile(), "Game A")
        self.farmer.target_changed.assert_called_once_with("Game A")

    def test_obey_priority_skips_games_without_drops(self):
        self.farmer.settings.obey_priority = True
        self.farmer.settings.priority_games = ["A", "B"]
        self.set_items(
            make_item("d1", "A", status=DropStatus.CLAIMED, earned=60),
            make_item("d2", "B"),
        )
        self.assertEqual(self.selector.reconcile(), "B")
        self.farmer.target_changed.assert_called_once_with("B")
        # re-evaluating keeps B, since A still has nothing to farm
        self.assertEqual(self.selector.reconcile(), "B")
        self.farmer.target_changed.assert_called_once_with("B")

    def test_manual_target_without_drops_is_replaced(self):
        self.set_items(make_item("d1", "Game B"))
        self.selector.set_target("Game A")
        self.farmer.target_changed.reset_mock()
        self.assertEqual(self.selector.reconcile(), "Game B")
        self.farmer.target_changed.assert_called_once_with("Game B")

    def test_finished_target_moves_on(self):
        self.set_items(
            make_item("d1", "Game A", status=DropStatus.CLAIMED, earned=60),
            make_item("d2", "Game B"),
        )
        self.selector.active_target_game = "Game A"
        self.assertEqual(self.selector.reconcile(), "Game B")

    def test_nothing_actionable_clears_target_and_stops(self):
        self.set_items(make_item("d1", "Game A", status=DropStatus.CLAIMED, earned=60))
        self.selector.active_target_game = "Game A"
        self.farmer.watching = WatchingTarget("c1", "Channel1", "Game A", "login1", "c1")
        self.assertIsNone(self.selector.reconcile())
        self.farmer.target_changed.assert_called_once_with(None)
        self.farmer.stop_watching.assert_called_once_with(skip_refresh=True)

    def test_expired_and_unlinked_drops_are_not_actionable(self):
        now = time()
        self.set_items(
            make_item("d1", "Game A", ends_at=at(now - 60)),
            make_item("d2", "Game B", status=DropStatus.LOCKED, linked=False),
            make_item("d3", "Game C", campaign_status="EXPIRED"),
        )
        self.assertIsNone(self.selector.reconcile())

    def test_active_drop_ordering(self):
        now = time()
        self.set_items(
            make_item("d1", "Game A", ends_at=at(now + 7200)),
            make_item("d2", "Game A", ends_at=at(now + 3600), starts_at=at(now - 60)),
            make_item("d3", "Game A", ends_at=at(now + 3600), starts_at=at(now - 600)),
            make_item("d4", "Game B", ends_at=at(now + 60)),
        )
        self.selector.active_target_game = "Game A"
        self.assertEqual(self.selector.active_drop(now).id, "d3")

    def test_active_drop_least_remaining(self):
        self.set_items(
            make_item("d1", "Game A", earned=10),
            make_item("d2", "Game A", earned=50),
        )
        self.selector.active_target_game = "Game A"
        self.assertEqual(self.selector.active_drop().id, "d2")

    def test_target_summary_takes_max_per_campaign(self):
        self.set_items(
            make_item("d1", "Game A", required=60, earned=60, campaign_id="c1",
                      status=DropStatus.CLAIMED),
            make_item("d2", "Game A", required=120, earned=60, campaign_id="c1"),
            make_item("d3", "Game A", required=30, earned=10, campaign_id="c2"),
            make_item("d4", "Game B", required=30, earned=10),
        )
        self.selector.active_target_game = "Game A"
        summary = self.selector.target_summary()
        self.assertEqual(summary.total_drops, 3)
        self.assertEqual(summary.target_drops, 2)
        self.assertEqual(summary.claimed_drops, 1)
        self.assertEqual(summary.required_minutes, 150)
        self.assertEqual(summary.earned_minutes, 70)

    def test_no_summary_without_target(self):
        self.assertIsNone(self.selector.target_summary())
        self.assertIsNone(self.selector.active_drop())
        self.assertFalse(self.selector.can_watch_target())

    async def test_refresh_plan(self):
        plan = PriorityPlan(order=("Game A",), available_games=("Game A",))
        self.farmer.gateway.fetch_priority_plan.return_value = plan
        self.farmer.settings.priority_games = [" Game A", "Game A"]
        self.assertIs(await self.selector.refresh_plan(), plan)
        self.farmer.gateway.fetch_priority_plan.assert_awaited_once_with(["Game A"])
        self.assertIs(self.selector.plan, plan)

    async def test_refresh_plan_failure_keeps_previous_plan(self):
        plan = PriorityPlan(order=("Game A",))
        self.selector.plan = plan
        self.farmer.gateway.fetch_priority_plan.side_effect = RemoteError(
            ErrorCode.INVENTORY_FETCH_FAILED
        )
        self.assertIs(await self.selector.refresh_plan(), plan)
        self.assertEqual(self.selector.plan_error.code, "inventory.fetch_failed")

    async def test_refresh_plan_auth_error(self):
        events = []
        self.farmer.events.subscribe(AuthError, events.append)
        self.farmer.gateway.fetch_priority_plan.side_effect = AuthInvalid()
        self.assertIsNone(await self.selector.refresh_plan())
        self.assertEqual(events, [AuthError(None)])


if __name__ == "__main__":
    unittest.main()
