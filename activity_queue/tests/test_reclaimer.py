from __future__ import annotations

import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from activity_queue.db import (
    claim_next_activity,
    get_item,
    init_db,
    insert_activity_item,
    mark_completed,
    mark_failed,
)
from activity_queue.reclaimer import StuckItemReclaimer

T0 = datetime(2026, 10, 19, 8, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now


class ReclaimerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.db_path = Path(self.tmp.name) / "activity_queue.db"
        init_db(self.db_path)
        self.clock = FakeClock(T0)
        self.reclaimer = StuckItemReclaimer(
            self.db_path,
            stuck_timeout_ms=5 * 60 * 1000,
            retention_days=7,
            clock=self.clock,
        )

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def _insert(self, source_event_id: str, entity_id: str = "prospect-1", max_retries: int = 3) -> dict:
        _, item = insert_activity_item(
            self.db_path,
            entity_id=entity_id,
            owner_group_id="org-1",
            source_event_id=source_event_id,
            source_event_kind="calendar",
            event_timestamp=T0,
            priority=1,
            max_retries=max_retries,
            now=T0,
        )
        return item

    def test_stuck_item_is_reset_and_claimable_again(self) -> None:
        self._insert("ev-1")
        claimed = claim_next_activity(self.db_path, "prospect-1", owner="node-dead", now=T0)

        self.clock.now = T0 + timedelta(minutes=4)
        self.assertEqual(self.reclaimer.run_once(), {"reset": 0, "purged": 0})

        self.clock.now = T0 + timedelta(minutes=6)
        self.assertEqual(self.reclaimer.run_once(), {"reset": 1, "purged": 0})

        stored = get_item(self.db_path, claimed["id"])
        self.assertEqual(stored["status"], "pending")
        self.assertIsNone(stored["processing_owner"])
        self.assertIsNone(stored["processing_started_at"])
        self.assertEqual(stored["retry_count"], 0)

        reclaimed = claim_next_activity(self.db_path, "prospect-1", owner="node-b", now=self.clock.now)
        self.assertEqual(reclaimed["id"], claimed["id"])
        self.assertEqual(reclaimed["processing_owner"], "node-b")

    def test_late_completion_after_reset_is_ignored(self) -> None:
        self._insert("ev-1")
        claimed = claim_next_activity(self.db_path, "prospect-1", owner="node-slow", now=T0)

        self.clock.now = T0 + timedelta(minutes=10)
        self.reclaimer.reset_stuck()

        self.assertFalse(mark_completed(self.db_path, claimed["id"], version=claimed["version"]))
        self.assertIsNone(mark_failed(self.db_path, claimed["id"], version=claimed["version"], error="late"))
        self.assertEqual(get_item(self.db_path, claimed["id"])["status"], "pending")

    def test_retention_purges_only_old_completed_items(self) -> None:
        old_done = self._insert("old-done", entity_id="p-1")
        recent_done = self._insert("recent-done", entity_id="p-2")
        old_failed = self._insert("old-failed", entity_id="p-3", max_retries=0)

        for item, finished_at in ((old_done, T0 - timedelta(days=8)), (recent_done, T0 - timedelta(days=1))):
            claimed = claim_next_activity(self.db_path, item["entity_id"], owner="node-a", now=finished_at)
            self.assertTrue(mark_completed(self.db_path, claimed["id"], version=claimed["version"], now=finished_at))

        claimed = claim_next_activity(self.db_path, "p-3", owner="node-a", now=T0 - timedelta(days=9))
        failed = mark_failed(
            self.db_path,
            claimed["id"],
            version=claimed["version"],
            error="analytics rejected",
            now=T0 - timedelta(days=9),
        )
        self.assertEqual(failed["status"], "failed")

        self.assertEqual(self.reclaimer.purge_completed(), 1)

        self.assertIsNone(get_item(self.db_path, old_done["id"]))
        self.assertIsNotNone(get_item(self.db_path, recent_done["id"]))
        self.assertIsNotNone(get_item(self.db_path, old_failed["id"]))


if __name__ == "__main__":
    unittest.main()
