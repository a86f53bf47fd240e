import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from entity_store import EntityStore, QueryStatus
from event_bus import ENTRY_INVALIDATED, ENTRY_UPDATED


KEY = ("chat", "p1")


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class TestEntityStore(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.store = EntityStore(clock=self.clock)

    def test_get_missing_is_none(self) -> None:
        self.assertIsNone(self.store.get(KEY))

    def test_set_newer_generation_replaces(self) -> None:
        self.assertTrue(self.store.set(KEY, ["a"], 1))
        self.assertTrue(self.store.set(KEY, ["a", "b"], 2))
        entry = self.store.get(KEY)
        self.assertEqual(entry.value, ["a", "b"])
        self.assertEqual(entry.generation, 2)
        self.assertEqual(entry.status, QueryStatus.FRESH)
        self.assertEqual(entry.fetched_at, 100.0)

    def test_equal_generation_replaces(self) -> None:
        self.store.set(KEY, ["a"], 1)
        self.assertTrue(self.store.set(KEY, ["b"], 1))
        self.assertEqual(self.store.get(KEY).value, ["b"])

    def test_older_generation_is_rejected_and_logged(self) -> None:
        self.store.set(KEY, ["new"], 3)
        with self.assertLogs("teamsync.store", level="WARNING") as logs:
            applied = self.store.set(KEY, ["old"], 2)
        self.assertFalse(applied)
        self.assertEqual(self.store.get(KEY).value, ["new"])
        self.assertIn("STALE_WRITE", logs.output[0])

    def test_invalidate_keeps_data_and_bumps_epoch(self) -> None:
        self.store.set(KEY, ["a"], 1)
        matched = self.store.invalidate(KEY)
        self.assertEqual(matched, [KEY])
        entry = self.store.get(KEY)
        self.assertEqual(entry.value, ["a"])
        self.assertTrue(entry.stale)
        self.assertEqual(entry.status, QueryStatus.STALE)
        self.assertEqual(self.store.epoch(KEY), 1)

    def test_invalidate_by_prefix(self) -> None:
        self.store.set(("chat", "p1"), [], 1)
        self.store.set(("chat", "p2"), [], 1)
        self.store.set(("projectMembers", "p1"), [], 1)
        matched = self.store.invalidate(("chat",))
        self.assertEqual(sorted(matched), [("chat", "p1"), ("chat", "p2")])
        self.assertFalse(self.store.get(("projectMembers", "p1")).stale)
        self.assertEqual(self.store.epoch(("projectMembers", "p1")), 0)

    def test_write_from_before_invalidation_stays_stale(self) -> None:
        self.store.set(KEY, ["a"], 1)
        issued_epoch = self.store.epoch(KEY)
        self.store.invalidate(KEY)
        self.assertTrue(self.store.set(KEY, ["b"], issued_epoch + 1))
        entry = self.store.get(KEY)
        self.assertEqual(entry.value, ["b"])
        self.assertTrue(entry.stale)
        self.assertTrue(self.store.set(KEY, ["c"], self.store.epoch(KEY) + 1))
        self.assertFalse(self.store.get(KEY).stale)

    def test_freshness_follows_clock(self) -> None:
        self.store.set(KEY, ["a"], 1)
        self.assertTrue(self.store.get(KEY).is_fresh(self.clock(), 1000))
        self.clock.now += 1.5
        self.assertFalse(self.store.get(KEY).is_fresh(self.clock(), 1000))

    def test_listeners_notified_on_set_and_invalidate(self) -> None:
        events = []
        self.store.subscribe(KEY, lambda evt: events.append(evt["name"]))
        self.store.set(KEY, ["a"], 1)
        self.store.invalidate(KEY)
        self.assertEqual(events, [ENTRY_UPDATED, ENTRY_INVALIDATED])

    def test_unsubscribe_stops_notifications(self) -> None:
        events = []

        def listener(evt: dict) -> None:
            events.append(evt)

        self.store.subscribe(KEY, listener)
        self.assertEqual(self.store.listener_count(KEY), 1)
        self.assertTrue(self.store.unsubscribe(KEY, listener))
        self.store.set(KEY, ["a"], 1)
        self.assertEqual(events, [])

    def test_fetch_bookkeeping(self) -> None:
        handle = object()
        self.store.begin_fetch(KEY, handle)
        self.assertEqual(self.store.get(KEY).status, QueryStatus.FETCHING)
        self.assertIs(self.store.in_flight(KEY), handle)
        self.store.set(KEY, ["a"], 1)
        self.assertEqual(self.store.get(KEY).status, QueryStatus.FETCHING)
        self.store.end_fetch(KEY, handle)
        entry = self.store.get(KEY)
        self.assertIsNone(entry.in_flight)
        self.assertEqual(entry.status, QueryStatus.FRESH)

    def test_failed_fetch_keeps_last_value(self) -> None:
        self.store.set(KEY, ["a"], 1)
        handle = object()
        self.store.begin_fetch(KEY, handle)
        with self.assertLogs("teamsync.store", level="WARNING"):
            self.store.fail_fetch(KEY, RuntimeError("down"))
        self.store.end_fetch(KEY, handle)
        entry = self.store.get(KEY)
        self.assertEqual(entry.value, ["a"])
        self.assertEqual(entry.status, QueryStatus.ERROR)
        self.assertFalse(entry.is_fresh(self.clock(), 10_000))

    def test_end_fetch_ignores_other_handles(self) -> None:
        first = object()
        self.store.begin_fetch(KEY, first)
        self.store.end_fetch(KEY, object())
        self.assertIs(self.store.in_flight(KEY), first)

    def test_clear(self) -> None:
        self.store.set(KEY, ["a"], 1)
        self.store.clear()
        self.assertIsNone(self.store.get(KEY))
        self.assertEqual(self.store.keys(), [])


if __name__ == "__main__":
    unittest.main()
