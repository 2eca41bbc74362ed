from __future__ import annotations

import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from activity_queue.aggregates import AggregateInfo, SqliteAggregateLookup, is_historical, select_relevant_aggregates
from activity_queue.conflicts import ConflictResolver
from activity_queue.db import (
    claim_item,
    connect,
    get_activity_item,
    get_batch_item,
    get_item,
    init_db,
    parse_iso,
)
from activity_queue.debounce import Debouncer
from activity_queue.enqueue import enqueue_activity
from activity_queue.errors import EventValidationError

GRACE = timedelta(minutes=5)
T0 = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now


def _info(aggregate_id: str, *, closed: bool = False, minutes_ago: int = 0) -> AggregateInfo:
    return AggregateInfo(
        aggregate_id=aggregate_id,
        owner_group_id="org-1",
        primary_entity_id="prospect-1",
        closed=closed,
        updated_at=T0 - timedelta(minutes=minutes_ago),
    )


class HistoricalClassificationTests(unittest.TestCase):
    def test_no_watermark_is_always_historical(self) -> None:
        self.assertTrue(is_historical(T0, None, grace=GRACE, now=T0))

    def test_events_inside_grace_period_are_real_time(self) -> None:
        watermark = T0 - timedelta(minutes=1)
        self.assertFalse(is_historical(watermark - timedelta(minutes=4), watermark, grace=GRACE, now=T0))
        self.assertTrue(is_historical(watermark - timedelta(minutes=6), watermark, grace=GRACE, now=T0))

    def test_future_watermark_is_clamped_to_now(self) -> None:
        watermark = T0 + timedelta(hours=1)
        self.assertFalse(is_historical(T0 - timedelta(minutes=1), watermark, grace=GRACE, now=T0))
        self.assertTrue(is_historical(T0 - timedelta(minutes=6), watermark, grace=GRACE, now=T0))


class AggregateSelectionTests(unittest.TestCase):
    def test_single_aggregate_is_used_even_when_closed(self) -> None:
        only = _info("opp-1", closed=True)
        self.assertEqual(select_relevant_aggregates([only]), [only])

    def test_single_open_aggregate_wins(self) -> None:
        open_one = _info("opp-open", minutes_ago=60)
        closed = _info("opp-closed", closed=True, minutes_ago=1)
        self.assertEqual(select_relevant_aggregates([closed, open_one]), [open_one])

    def test_most_recent_open_aggregate_wins(self) -> None:
        older = _info("opp-old", minutes_ago=30)
        newer = _info("opp-new", minutes_ago=2)
        closed = _info("opp-closed", closed=True)
        self.assertEqual(select_relevant_aggregates([older, closed, newer]), [newer])

    def test_most_recent_closed_when_all_closed(self) -> None:
        older = _info("opp-old", closed=True, minutes_ago=30)
        newer = _info("opp-new", closed=True, minutes_ago=2)
        self.assertEqual(select_relevant_aggregates([older, newer]), [newer])

    def test_no_aggregates(self) -> None:
        self.assertEqual(select_relevant_aggregates([]), [])


class ConflictResolverTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.db_path = Path(self.tmp.name) / "activity_queue.db"
        init_db(self.db_path)
        self.clock = FakeClock(T0)
        self.lookup = SqliteAggregateLookup(self.db_path, clock=self.clock)
        self.lookup.register("opp-1", owner_group_id="org-1", primary_entity_id="prospect-1")
        self.debouncer = Debouncer(self.db_path, self.lookup, clock=self.clock)
        self.resolver = ConflictResolver(self.db_path, self.lookup, self.debouncer, clock=self.clock)

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def _event(self, source_event_id: str, ts: datetime, entity_id: str = "prospect-1") -> dict:
        return {
            "source_event_id": source_event_id,
            "source_event_kind": "email",
            "entity_id": entity_id,
            "owner_group_id": "org-1",
            "timestamp": ts,
        }

    def _activity_count(self) -> int:
        with connect(self.db_path) as conn:
            return int(conn.execute("SELECT COUNT(*) FROM queue_items WHERE kind = 'activity'").fetchone()[0])

    def test_entity_without_aggregates_is_enqueued(self) -> None:
        resolution = self.resolver.handle(self._event("m-1", T0, entity_id="prospect-unknown"))

        self.assertEqual(resolution.decision, "enqueued")
        self.assertEqual(resolution.aggregate_ids, [])
        self.assertTrue(resolution.created)
        self.assertEqual(resolution.item["entity_id"], "prospect-unknown")

    def test_real_time_event_without_batch_is_enqueued(self) -> None:
        self.lookup.set_watermark("opp-1", T0 - timedelta(minutes=1))

        resolution = self.resolver.handle(self._event("m-1", T0 - timedelta(minutes=2)))

        self.assertEqual(resolution.decision, "enqueued")
        self.assertEqual(resolution.aggregate_ids, ["opp-1"])
        self.assertIsNotNone(get_activity_item(self.db_path, source_event_id="m-1", source_event_kind="email"))
        self.assertIsNone(get_batch_item(self.db_path, "opp-1"))

    def test_real_time_event_during_batch_is_appended(self) -> None:
        self.lookup.set_watermark("opp-1", T0)
        batch = self.debouncer.schedule_reprocessing("opp-1", "contact added")

        resolution = self.resolver.handle(self._event("m-1", T0))

        self.assertEqual(resolution.decision, "appended")
        self.assertEqual(self._activity_count(), 0)
        self.assertEqual(get_batch_item(self.db_path, "opp-1")["version"], batch["version"])

    def test_historical_event_without_batch_schedules_and_folds_pending_items(self) -> None:
        self.lookup.set_watermark("opp-1", T0)
        earlier = enqueue_activity(self.db_path, self._event("m-0", T0 - timedelta(minutes=1)), now=T0)

        resolution = self.resolver.handle(self._event("m-1", T0 - timedelta(days=2)))

        self.assertEqual(resolution.decision, "scheduled")
        self.assertEqual(resolution.item["aggregate_id"], "opp-1")
        self.assertEqual(resolution.item["debounce_reason"], "historical activity")
        self.assertIsNone(get_activity_item(self.db_path, source_event_id="m-1", source_event_kind="email"))
        folded = get_item(self.db_path, earlier.item["id"])
        self.assertEqual(folded["status"], "completed")
        self.assertIn("opp-1", folded["error_message"])

    def test_aggregate_without_watermark_treats_events_as_historical(self) -> None:
        resolution = self.resolver.handle(self._event("m-1", T0))

        self.assertEqual(resolution.decision, "scheduled")
        self.assertEqual(self._activity_count(), 0)

    def test_historical_event_during_running_batch_restarts_it(self) -> None:
        self.lookup.set_watermark("opp-1", T0)
        batch = self.debouncer.schedule_reprocessing("opp-1", "contact added")
        claim_item(self.db_path, batch["id"], owner="node-a", now=parse_iso(batch["scheduled_for"]))

        resolution = self.resolver.handle(self._event("m-1", T0 - timedelta(hours=3)))

        self.assertEqual(resolution.decision, "restarted")
        self.assertEqual(resolution.item["id"], batch["id"])
        self.assertEqual(resolution.item["status"], "pending")
        self.assertEqual(resolution.item["debounce_reason"], "historical activity during batch")
        self.assertEqual(self._activity_count(), 0)

    def test_duplicate_event_returns_existing_item(self) -> None:
        self.lookup.set_watermark("opp-1", T0)
        first = self.resolver.handle(self._event("m-1", T0))
        second = self.resolver.handle(self._event("m-1", T0))

        self.assertTrue(first.created)
        self.assertFalse(second.created)
        self.assertEqual(first.item["id"], second.item["id"])

    def test_batch_conflict_covers_every_member_entity(self) -> None:
        self.lookup.add_member("opp-1", "prospect-2")
        self.assertFalse(self.lookup.active_batch_conflict("prospect-2")["pending"])

        self.debouncer.schedule_reprocessing("opp-1", "contact added")

        conflict = self.lookup.active_batch_conflict("prospect-2")
        self.assertTrue(conflict["pending"])
        self.assertFalse(conflict["running"])
        self.assertEqual([a["aggregate_id"] for a in conflict["aggregates"]], ["opp-1"])

    def test_invalid_event_is_rejected_before_any_write(self) -> None:
        event = self._event("m-1", T0)
        event["owner_group_id"] = ""

        with self.assertRaises(EventValidationError):
            self.resolver.handle(event)
        self.assertEqual(self._activity_count(), 0)
        self.assertIsNone(get_batch_item(self.db_path, "opp-1"))


if __name__ == "__main__":
    unittest.main()
