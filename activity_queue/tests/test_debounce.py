from __future__ import annotations

import tempfile
import threading
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest import mock

from activity_queue import debounce
from activity_queue.aggregates import SqliteAggregateLookup
from activity_queue.db import (
    claim_item,
    connect,
    get_batch_item,
    init_db,
    mark_completed,
    mark_failed,
    parse_iso,
    to_iso,
)
from activity_queue.debounce import Debouncer
from activity_queue.errors import UnknownAggregateError

WINDOW_MS = 5 * 60 * 1000


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class DebouncerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.db_path = Path(self.tmp.name) / "activity_queue.db"
        init_db(self.db_path)
        self.clock = FakeClock(datetime(2026, 10, 19, 10, 0, tzinfo=timezone.utc))
        self.lookup = SqliteAggregateLookup(self.db_path, clock=self.clock)
        self.lookup.register("opp-1", owner_group_id="org-1", primary_entity_id="prospect-1")
        self.debouncer = Debouncer(self.db_path, self.lookup, window_ms=WINDOW_MS, clock=self.clock)

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def _batch_rows(self, aggregate_id: str) -> int:
        with connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM queue_items WHERE kind = 'batch_reprocess' AND aggregate_id = ?",
                (aggregate_id,),
            ).fetchone()
        return int(row[0])

    def _claim(self, item: dict) -> dict:
        return claim_item(self.db_path, item["id"], owner="node-a", now=parse_iso(item["scheduled_for"]))

    def test_first_request_creates_pending_row(self) -> None:
        item = self.debouncer.schedule_reprocessing("opp-1", "contact added")

        self.assertEqual(item["status"], "pending")
        self.assertEqual(item["entity_id"], "prospect-1")
        self.assertEqual(item["owner_group_id"], "org-1")
        self.assertEqual(item["debounce_reason"], "contact added")
        self.assertEqual(item["scheduled_for"], to_iso(self.clock.now + timedelta(milliseconds=WINDOW_MS)))

    def test_second_request_pushes_deadline_out(self) -> None:
        first = self.debouncer.schedule_reprocessing("opp-1", "r1")
        self.clock.advance(seconds=1)
        second = self.debouncer.schedule_reprocessing("opp-1", "r2")

        self.assertEqual(first["id"], second["id"])
        self.assertEqual(self._batch_rows("opp-1"), 1)
        stored = get_batch_item(self.db_path, "opp-1")
        self.assertEqual(stored["debounce_reason"], "r2")
        self.assertEqual(stored["scheduled_for"], to_iso(self.clock.now + timedelta(milliseconds=WINDOW_MS)))

    def test_batch_priority_sorts_after_activities(self) -> None:
        item = self.debouncer.schedule_reprocessing("opp-1", "r1")
        now_ms = int(self.clock.now.timestamp() * 1000)
        self.assertGreaterEqual(item["priority"], now_ms + 1_000_000)

    def test_processing_row_is_left_alone(self) -> None:
        item = self.debouncer.schedule_reprocessing("opp-1", "r1")
        claimed = self._claim(item)

        self.clock.advance(minutes=1)
        result = self.debouncer.schedule_reprocessing("opp-1", "r2")

        self.assertEqual(result["status"], "processing")
        self.assertEqual(result["version"], claimed["version"])
        self.assertEqual(result["debounce_reason"], "r1")

    def test_completed_row_is_reset_in_place(self) -> None:
        item = self.debouncer.schedule_reprocessing("opp-1", "r1")
        claimed = self._claim(item)
        self.assertTrue(mark_completed(self.db_path, item["id"], version=claimed["version"], now=self.clock.now))

        self.clock.advance(minutes=10)
        result = self.debouncer.schedule_reprocessing("opp-1", "r2")

        self.assertEqual(result["id"], item["id"])
        self.assertEqual(result["status"], "pending")
        self.assertIsNone(result["processing_completed_at"])
        self.assertIsNone(result["processing_owner"])
        self.assertEqual(result["scheduled_for"], to_iso(self.clock.now + timedelta(milliseconds=WINDOW_MS)))
        self.assertEqual(self._batch_rows("opp-1"), 1)

    def test_failed_row_is_reset_with_fresh_retry_budget(self) -> None:
        item = self.debouncer.schedule_reprocessing("opp-1", "r1")
        with connect(self.db_path) as conn:
            conn.execute("UPDATE queue_items SET max_retries = 0 WHERE id = ?", (item["id"],))
            conn.commit()
        claimed = self._claim(item)
        failed = mark_failed(self.db_path, item["id"], version=claimed["version"], error="boom", now=self.clock.now)
        self.assertEqual(failed["status"], "failed")

        result = self.debouncer.schedule_reprocessing("opp-1", "r2")

        self.assertEqual(result["status"], "pending")
        self.assertEqual(result["retry_count"], 0)
        self.assertIsNone(result["error_message"])

    def test_lost_insert_race_returns_winning_row(self) -> None:
        winner = self.debouncer.schedule_reprocessing("opp-1", "r1")
        real_get = debounce.get_batch_item
        calls: list[str] = []

        def stale_first_read(db_path, aggregate_id):
            calls.append(aggregate_id)
            if len(calls) == 1:
                return None
            return real_get(db_path, aggregate_id)

        self.clock.advance(seconds=2)
        with mock.patch("activity_queue.debounce.get_batch_item", side_effect=stale_first_read):
            result = self.debouncer.schedule_reprocessing("opp-1", "r2")

        self.assertEqual(len(calls), 2)
        self.assertEqual(result["id"], winner["id"])
        self.assertEqual(result["debounce_reason"], "r2")
        self.assertEqual(self._batch_rows("opp-1"), 1)

    def test_lost_version_race_rereads_and_retries(self) -> None:
        self.debouncer.schedule_reprocessing("opp-1", "r1")
        real_reschedule = debounce.reschedule_batch_item
        calls: list[str] = []

        def lose_once(db_path, item_id, **kwargs):
            calls.append(item_id)
            if len(calls) == 1:
                return None
            return real_reschedule(db_path, item_id, **kwargs)

        with mock.patch("activity_queue.debounce.reschedule_batch_item", side_effect=lose_once):
            result = self.debouncer.schedule_reprocessing("opp-1", "r2")

        self.assertEqual(len(calls), 2)
        self.assertEqual(result["debounce_reason"], "r2")

    def test_concurrent_callers_leave_one_row(self) -> None:
        barrier = threading.Barrier(4)
        results: list[dict] = []
        errors: list[BaseException] = []
        lock = threading.Lock()

        def call(reason: str) -> None:
            debouncer = Debouncer(self.db_path, self.lookup, window_ms=WINDOW_MS)
            barrier.wait()
            try:
                item = debouncer.schedule_reprocessing("opp-1", reason)
            except BaseException as exc:  # pragma: no cover
                with lock:
                    errors.append(exc)
                return
            with lock:
                results.append(item)

        threads = [threading.Thread(target=call, args=(f"r{i}",)) for i in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(10)

        self.assertEqual(errors, [])
        self.assertEqual(len(results), 4)
        self.assertEqual(len({item["id"] for item in results}), 1)
        self.assertEqual(self._batch_rows("opp-1"), 1)

    def test_cancel_deletes_only_pending_rows(self) -> None:
        self.debouncer.schedule_reprocessing("opp-1", "r1")
        self.assertTrue(self.debouncer.cancel_reprocessing("opp-1"))
        self.assertIsNone(get_batch_item(self.db_path, "opp-1"))
        self.assertFalse(self.debouncer.cancel_reprocessing("opp-1"))

        item = self.debouncer.schedule_reprocessing("opp-1", "r2")
        self._claim(item)
        self.assertFalse(self.debouncer.cancel_reprocessing("opp-1"))
        self.assertEqual(get_batch_item(self.db_path, "opp-1")["status"], "processing")

    def test_unknown_aggregate_raises(self) -> None:
        with self.assertRaises(UnknownAggregateError):
            self.debouncer.schedule_reprocessing("opp-missing", "r1")

    def test_restart_of_pending_row_reschedules_in_place(self) -> None:
        item = self.debouncer.schedule_reprocessing("opp-1", "r1")
        self.clock.advance(minutes=2)
        restarted = self.debouncer.restart_batch_processing("opp-1")

        self.assertEqual(restarted["id"], item["id"])
        self.assertEqual(restarted["status"], "pending")
        self.assertEqual(restarted["debounce_reason"], "historical activity during batch")
        self.assertEqual(restarted["scheduled_for"], to_iso(self.clock.now + timedelta(milliseconds=WINDOW_MS)))

    def test_restart_of_processing_row_cancels_without_consuming_retries(self) -> None:
        item = self.debouncer.schedule_reprocessing("opp-1", "r1")
        claimed = self._claim(item)

        restarted = self.debouncer.restart_batch_processing("opp-1", "manual restart")

        self.assertEqual(restarted["id"], item["id"])
        self.assertEqual(restarted["status"], "pending")
        self.assertEqual(restarted["retry_count"], 0)
        self.assertEqual(restarted["debounce_reason"], "manual restart")
        self.assertGreater(restarted["version"], claimed["version"])
        self.assertFalse(mark_completed(self.db_path, item["id"], version=claimed["version"]))


if __name__ == "__main__":
    unittest.main()
