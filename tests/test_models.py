import unittest
from time import time

from droppilot.models import (
    DropCategory,
    DropStatus,
    build_channel_diff,
    build_priority_plan,
    diff_inventory,
    is_fresh_cache,
    merge_channel_list,
    ChannelCache,
)
from tests.fakes import at, make_channel, make_item


class TestInventoryItem(unittest.TestCase):
    def test_categories(self):
        now = time()
        cases = [
            (make_item("d", excluded=True, status=DropStatus.CLAIMED), DropCategory.EXCLUDED),
            (make_item("d", status=DropStatus.CLAIMED), DropCategory.FINISHED),
            (make_item("d", ends_at=at(now - 1)), DropCategory.EXPIRED),
            (make_item("d", campaign_status="EXPIRED"), DropCategory.EXPIRED),
            (
                make_item("d", status=DropStatus.LOCKED, linked=False),
                DropCategory.NOT_LINKED,
            ),
            (
                make_item("d", status=DropStatus.LOCKED, linked=False, earned=5),
                DropCategory.UPCOMING,
            ),
            (make_item("d", ends_at=at(now + 60)), DropCategory.IN_PROGRESS),
            (make_item("d", status=DropStatus.LOCKED), DropCategory.UPCOMING),
        ]
        for item, category in cases:
            with self.subTest(item=item, category=category):
                self.assertEqual(item.category(now), category)

    def test_actionable_respects_excluded_games(self):
        item = make_item("d", "Game A")
        self.assertTrue(item.is_actionable(time()))
        self.assertFalse(item.is_actionable(time(), {"Game A"}))

    def test_claimable(self):
        self.assertTrue(make_item("d", earned=60).is_claimable)
        self.assertTrue(make_item("d", required=0).is_claimable)
        self.assertFalse(make_item("d", earned=59).is_claimable)
        self.assertFalse(make_item("d", earned=60, campaign_id=None).is_claimable)
        self.assertFalse(make_item("d", earned=60, status=DropStatus.CLAIMED).is_claimable)

    def test_clamped(self):
        cases = [
            (make_item("d", earned=75), 60),
            (make_item("d", earned=-3), 0),
            (make_item("d", earned=30), 30),
            (make_item("d", required=0, earned=12), 0),
            (make_item("d", earned=10, status=DropStatus.CLAIMED), 60),
        ]
        for item, earned in cases:
            with self.subTest(item=item):
                clamped = item.clamped()
                self.assertEqual(clamped.earned_minutes, earned)
                self.assertLessEqual(clamped.earned_minutes, clamped.required_minutes)

    def test_with_claimed(self):
        item = make_item("d", earned=40).with_claimed()
        self.assertEqual(item.status, DropStatus.CLAIMED)
        self.assertEqual(item.earned_minutes, 60)

    def test_diff_inventory(self):
        previous = [make_item("a", earned=1), make_item("b", earned=1)]
        current = [
            make_item("a", earned=1),
            make_item("b", earned=1, status=DropStatus.CLAIMED),
            make_item("c"),
        ]
        changes = diff_inventory(previous, current)
        self.assertEqual(changes.added, {"c"})
        self.assertEqual(changes.updated, {"b"})
        self.assertFalse(diff_inventory(current, current))


class TestPriorityPlan(unittest.TestCase):
    def test_plan(self):
        items = [
            make_item("1", "Game C"),
            make_item("2", "Game B"),
            make_item("3", "Game A"),
            make_item("4", "Game D", status=DropStatus.CLAIMED),
        ]
        plan = build_priority_plan(items, ["Game A", "Game D", "Game A"])
        self.assertEqual(plan.order, ("Game A", "Game C", "Game B"))
        self.assertEqual(plan.available_games, ("Game C", "Game B", "Game A"))
        self.assertEqual(plan.missing_priority, ("Game D",))
        self.assertEqual(plan.total_active_drops, 3)

    def test_empty(self):
        plan = build_priority_plan([], [])
        self.assertEqual(plan.order, ())
        self.assertEqual(plan.total_active_drops, 0)


class TestChannels(unittest.TestCase):
    def test_diff(self):
        previous = [make_channel("1", viewers=10), make_channel("2")]
        current = [make_channel("1", viewers=15, title="New title"), make_channel("3")]
        diff = build_channel_diff(previous, current, 100.0)
        self.assertEqual(diff.added_ids, {"3"})
        self.assertEqual(diff.removed_ids, {"2"})
        self.assertEqual(diff.updated_ids, {"1"})
        self.assertEqual(diff.title_changed_ids, {"1"})
        self.assertEqual(diff.viewer_delta_by_id, {"1": 5})
        self.assertIsNone(build_channel_diff(current, current, 100.0))

    def test_merge_keeps_unchanged_instances(self):
        old = make_channel("1")
        merged = merge_channel_list([old], [make_channel("1"), make_channel("2")])
        self.assertIs(merged[0], old)
        self.assertEqual([c.id for c in merged], ["1", "2"])

    def test_cache_freshness(self):
        cache = ChannelCache("Game A", 100.0, (make_channel("1"),))
        self.assertTrue(is_fresh_cache(cache, "Game A", 150.0, 60))
        self.assertFalse(is_fresh_cache(cache, "Game A", 160.0, 60))
        self.assertFalse(is_fresh_cache(cache, "Game B", 150.0, 60))
        self.assertFalse(is_fresh_cache(ChannelCache("Game A", 100.0, ()), "Game A", 150.0, 60))
        self.assertFalse(is_fresh_cache(None, "Game A", 150.0, 60))


if __name__ == "__main__":
    unittest.main()
