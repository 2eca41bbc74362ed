from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any
from uuid import uuid4

KIND_ACTIVITY = "activity"
KIND_BATCH = "batch_reprocess"

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

CANCELLED_MESSAGE = "cancelled"
# Batch rows sort after every activity row, even one timestamped in the near future.
BATCH_PRIORITY_OFFSET_MS = 1_000_000


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso(dt: datetime) -> str:
    return ensure_utc(dt).isoformat(timespec="milliseconds")


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return ensure_utc(datetime.fromisoformat(value))


def epoch_ms(dt: datetime) -> int:
    return int(ensure_utc(dt).timestamp() * 1000)


@contextmanager
def connect(db_path: Path):
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, timeout=10.0)
    try:
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA foreign_keys=ON;")
        yield conn
    finally:
        conn.close()


def init_db(db_path: Path) -> None:
    with connect(db_path) as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS queue_items (
                id TEXT PRIMARY KEY,
                kind TEXT NOT NULL CHECK (kind IN ('activity', 'batch_reprocess')),
                entity_id TEXT NOT NULL,
                owner_group_id TEXT NOT NULL,
                source_event_id TEXT,
                source_event_kind TEXT,
                event_timestamp TEXT,
                aggregate_id TEXT,
                scheduled_for TEXT,
                debounce_reason TEXT,
                status TEXT NOT NULL DEFAULT 'pending'
                    CHECK (status IN ('pending', 'processing', 'completed', 'failed')),
                priority INTEGER NOT NULL,
                added_at TEXT NOT NULL,
                processing_started_at TEXT,
                processing_completed_at TEXT,
                error_message TEXT,
                retry_count INTEGER NOT NULL DEFAULT 0,
                max_retries INTEGER NOT NULL DEFAULT 3,
                processing_owner TEXT,
                version INTEGER NOT NULL DEFAULT 1,
                CHECK (
                    kind != 'activity'
                    OR (source_event_id IS NOT NULL AND source_event_kind IS NOT NULL AND event_timestamp IS NOT NULL)
                ),
                CHECK (kind != 'batch_reprocess' OR aggregate_id IS NOT NULL)
            );
            """
        )
        conn.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS uq_queue_activity_source
            ON queue_items(source_event_id, source_event_kind) WHERE kind = 'activity';
            """
        )
        conn.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS uq_queue_batch_aggregate
            ON queue_items(aggregate_id) WHERE kind = 'batch_reprocess';
            """
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_queue_entity_status_priority ON queue_items(entity_id, status, priority);"
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_queue_status_priority ON queue_items(status, priority);")
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_queue_started_status ON queue_items(processing_started_at, status);"
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_queue_kind_status_scheduled ON queue_items(kind, status, scheduled_for);"
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS aggregates (
                id TEXT PRIMARY KEY,
                owner_group_id TEXT NOT NULL,
                primary_entity_id TEXT NOT NULL,
                watermark TEXT,
                closed INTEGER NOT NULL DEFAULT 0,
                updated_at TEXT NOT NULL
            );
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS aggregate_members (
                aggregate_id TEXT NOT NULL REFERENCES aggregates(id) ON DELETE CASCADE,
                entity_id TEXT NOT NULL,
                PRIMARY KEY (aggregate_id, entity_id)
            );
            """
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_aggregate_members_entity ON aggregate_members(entity_id);"
        )
        conn.commit()


def _row_dict(row: sqlite3.Row | None) -> dict[str, Any] | None:
    if row is None:
        return None
    return {k: row[k] for k in row.keys()}


def _fetch_item(conn: sqlite3.Connection, item_id: str) -> dict[str, Any] | None:
    row = conn.execute("SELECT * FROM queue_items WHERE id = ?", (item_id,)).fetchone()
    return _row_dict(row)


def get_item(db_path: Path, item_id: str) -> dict[str, Any] | None:
    with connect(db_path) as conn:
        return _fetch_item(conn, item_id)


# --- activity items ---------------------------------------------------------


def get_activity_item(db_path: Path, *, source_event_id: str, source_event_kind: str) -> dict[str, Any] | None:
    with connect(db_path) as conn:
        row = conn.execute(
            """
            SELECT * FROM queue_items
            WHERE kind = 'activity' AND source_event_id = ? AND source_event_kind = ?
            """,
            (source_event_id, source_event_kind),
        ).fetchone()
    return _row_dict(row)


def insert_activity_item(
    db_path: Path,
    *,
    entity_id: str,
    owner_group_id: str,
    source_event_id: str,
    source_event_kind: str,
    event_timestamp: datetime,
    priority: int,
    max_retries: int = 3,
    now: datetime | None = None,
) -> tuple[bool, dict[str, Any]]:
    item_id = str(uuid4())
    now_iso = to_iso(now or utc_now())

    with connect(db_path) as conn:
        conn.execute("BEGIN IMMEDIATE")
        try:
            conn.execute(
                """
                INSERT INTO queue_items(
                    id, kind, entity_id, owner_group_id, source_event_id, source_event_kind,
                    event_timestamp, status, priority, added_at, max_retries
                )
                VALUES(?, 'activity', ?, ?, ?, ?, ?, 'pending', ?, ?, ?)
                """,
                (
                    item_id,
                    entity_id,
                    owner_group_id,
                    source_event_id,
                    source_event_kind,
                    to_iso(event_timestamp),
                    int(priority),
                    now_iso,
                    int(max_retries),
                ),
            )
            item = _fetch_item(conn, item_id)
            conn.commit()
            return True, item
        except sqlite3.IntegrityError:
            row = conn.execute(
                """
                SELECT * FROM queue_items
                WHERE kind = 'activity' AND source_event_id = ? AND source_event_kind = ?
                """,
                (source_event_id, source_event_kind),
            ).fetchone()
            conn.rollback()
            if row is None:
                raise
            return False, _row_dict(row)


def entities_with_pending_activities(db_path: Path) -> list[str]:
    with connect(db_path) as conn:
        rows = conn.execute(
            """
            SELECT entity_id, MIN(priority) AS first_priority
            FROM queue_items
            WHERE kind = 'activity' AND status = 'pending'
            GROUP BY entity_id
            ORDER BY first_priority ASC
            """
        ).fetchall()
    return [row["entity_id"] for row in rows]


def list_pending_activities(db_path: Path, entity_id: str) -> list[dict[str, Any]]:
    with connect(db_path) as conn:
        rows = conn.execute(
            """
            SELECT * FROM queue_items
            WHERE kind = 'activity' AND entity_id = ? AND status = 'pending'
            ORDER BY priority ASC, added_at ASC
            """,
            (entity_id,),
        ).fetchall()
    return [_row_dict(row) for row in rows]


def count_pending_activities(db_path: Path, entity_id: str) -> int:
    with connect(db_path) as conn:
        row = conn.execute(
            "SELECT COUNT(*) FROM queue_items WHERE kind = 'activity' AND entity_id = ? AND status = 'pending'",
            (entity_id,),
        ).fetchone()
    return int(row[0])


def entity_is_processing(db_path: Path, entity_id: str) -> bool:
    with connect(db_path) as conn:
        row = conn.execute(
            """
            SELECT 1 FROM queue_items
            WHERE kind = 'activity' AND entity_id = ? AND status = 'processing'
            LIMIT 1
            """,
            (entity_id,),
        ).fetchone()
    return row is not None


def mark_entity_activities_completed_by_batch(
    db_path: Path,
    entity_id: str,
    *,
    reason: str,
    now: datetime | None = None,
) -> int:
    with connect(db_path) as conn:
        updated = conn.execute(
            """
            UPDATE queue_items
            SET status = 'completed', processing_completed_at = ?, error_message = ?, version = version + 1
            WHERE kind = 'activity' AND entity_id = ? AND status = 'pending'
            """,
            (to_iso(now or utc_now()), reason[:2000], entity_id),
        ).rowcount
        conn.commit()
    return int(updated)


# --- claiming and finishing ---------------------------------------------------


def claim_item(
    db_path: Path,
    item_id: str,
    *,
    owner: str,
    now: datetime | None = None,
) -> dict[str, Any] | None:
    # A batch row rescheduled after it was listed as ready is not claimable yet.
    now_iso = to_iso(now or utc_now())
    with connect(db_path) as conn:
        updated = conn.execute(
            """
            UPDATE queue_items
            SET status = 'processing', processing_owner = ?, processing_started_at = ?,
                processing_completed_at = NULL, version = version + 1
            WHERE id = ? AND status = 'pending'
              AND (kind != 'batch_reprocess' OR scheduled_for IS NULL OR scheduled_for <= ?)
            """,
            (owner, now_iso, item_id, now_iso),
        ).rowcount
        if updated != 1:
            conn.commit()
            return None
        item = _fetch_item(conn, item_id)
        conn.commit()
        return item


def claim_next_activity(
    db_path: Path,
    entity_id: str,
    *,
    owner: str,
    now: datetime | None = None,
) -> dict[str, Any] | None:
    with connect(db_path) as conn:
        conn.execute("BEGIN IMMEDIATE")
        busy = conn.execute(
            """
            SELECT 1 FROM queue_items
            WHERE kind = 'activity' AND entity_id = ? AND status = 'processing'
            LIMIT 1
            """,
            (entity_id,),
        ).fetchone()
        if busy is not None:
            conn.commit()
            return None

        row = conn.execute(
            """
            SELECT id FROM queue_items
            WHERE kind = 'activity' AND entity_id = ? AND status = 'pending'
            ORDER BY priority ASC, added_at ASC
            LIMIT 1
            """,
            (entity_id,),
        ).fetchone()
        if row is None:
            conn.commit()
            return None

        updated = conn.execute(
            """
            UPDATE queue_items
            SET status = 'processing', processing_owner = ?, processing_started_at = ?,
                processing_completed_at = NULL, version = version + 1
            WHERE id = ? AND status = 'pending'
            """,
            (owner, to_iso(now or utc_now()), row["id"]),
        ).rowcount
        if updated != 1:
            conn.commit()
            return None
        item = _fetch_item(conn, row["id"])
        conn.commit()
        return item


def mark_completed(
    db_path: Path,
    item_id: str,
    *,
    version: int,
    now: datetime | None = None,
) -> bool:
    with connect(db_path) as conn:
        updated = conn.execute(
            """
            UPDATE queue_items
            SET status = 'completed', processing_completed_at = ?, error_message = NULL,
                version = version + 1
            WHERE id = ? AND version = ? AND status = 'processing'
            """,
            (to_iso(now or utc_now()), item_id, int(version)),
        ).rowcount
        conn.commit()
    return updated == 1


def mark_failed(
    db_path: Path,
    item_id: str,
    *,
    version: int,
    error: str,
    now: datetime | None = None,
) -> dict[str, Any] | None:
    now_iso = to_iso(now or utc_now())
    with connect(db_path) as conn:
        conn.execute("BEGIN IMMEDIATE")
        row = conn.execute(
            """
            SELECT retry_count, max_retries FROM queue_items
            WHERE id = ? AND version = ? AND status = 'processing'
            """,
            (item_id, int(version)),
        ).fetchone()
        if row is None:
            conn.commit()
            return None

        retry_count = int(row["retry_count"]) + 1
        should_retry = retry_count <= int(row["max_retries"])
        conn.execute(
            """
            UPDATE queue_items
            SET status = ?, retry_count = ?, error_message = ?, processing_started_at = NULL,
                processing_owner = NULL, processing_completed_at = ?, version = version + 1
            WHERE id = ?
            """,
            (
                STATUS_PENDING if should_retry else STATUS_FAILED,
                retry_count,
                error[:2000],
                None if should_retry else now_iso,
                item_id,
            ),
        )
        item = _fetch_item(conn, item_id)
        conn.commit()
        return item


def mark_cancelled(
    db_path: Path,
    item_id: str,
    *,
    version: int,
    now: datetime | None = None,
) -> bool:
    with connect(db_path) as conn:
        updated = conn.execute(
            """
            UPDATE queue_items
            SET status = 'failed', error_message = ?, processing_completed_at = ?,
                processing_owner = NULL, version = version + 1
            WHERE id = ? AND version = ? AND status = 'processing'
            """,
            (CANCELLED_MESSAGE, to_iso(now or utc_now()), item_id, int(version)),
        ).rowcount
        conn.commit()
    return updated == 1


def release_item(db_path: Path, item_id: str, *, version: int) -> bool:
    """Hand a claimed item back to pending untouched, for a worker shutting down."""
    with connect(db_path) as conn:
        updated = conn.execute(
            """
            UPDATE queue_items
            SET status = 'pending', processing_started_at = NULL, processing_owner = NULL,
                version = version + 1
            WHERE id = ? AND version = ? AND status = 'processing'
            """,
            (item_id, int(version)),
        ).rowcount
        conn.commit()
    return updated == 1


def reset_stuck_items(
    db_path: Path,
    *,
    stuck_timeout: timedelta,
    now: datetime | None = None,
) -> int:
    cutoff = to_iso((now or utc_now()) - stuck_timeout)
    with connect(db_path) as conn:
        updated = conn.execute(
            """
            UPDATE queue_items
            SET status = 'pending', processing_started_at = NULL, processing_owner = NULL,
                version = version + 1
            WHERE status = 'processing' AND processing_started_at < ?
            """,
            (cutoff,),
        ).rowcount
        conn.commit()
    return int(updated)


def cleanup_completed_items(
    db_path: Path,
    *,
    older_than_days: int = 7,
    now: datetime | None = None,
) -> int:
    cutoff = to_iso((now or utc_now()) - timedelta(days=older_than_days))
    with connect(db_path) as conn:
        deleted = conn.execute(
            "DELETE FROM queue_items WHERE status = 'completed' AND processing_completed_at < ?",
            (cutoff,),
        ).rowcount
        conn.commit()
    return int(deleted)


# --- batch reprocessing items ----------------------------------------------------


def get_batch_item(db_path: Path, aggregate_id: str) -> dict[str, Any] | None:
    with connect(db_path) as conn:
        row = conn.execute(
            "SELECT * FROM queue_items WHERE kind = 'batch_reprocess' AND aggregate_id = ?",
            (aggregate_id,),
        ).fetchone()
    return _row_dict(row)


def _next_batch_priority(conn: sqlite3.Connection, now: datetime) -> int:
    row = conn.execute("SELECT MAX(priority) FROM queue_items WHERE kind = 'activity'").fetchone()
    highest_activity = int(row[0]) if row[0] is not None else 0
    return max(epoch_ms(now) + BATCH_PRIORITY_OFFSET_MS, highest_activity + 1)


def insert_batch_item(
    db_path: Path,
    *,
    aggregate_id: str,
    entity_id: str,
    owner_group_id: str,
    reason: str,
    scheduled_for: datetime,
    max_retries: int = 3,
    now: datetime | None = None,
) -> dict[str, Any] | None:
    """Insert the single batch row of an aggregate.

    Returns None when a concurrent writer inserted the row first.
    """
    now = now or utc_now()
    item_id = str(uuid4())
    with connect(db_path) as conn:
        conn.execute("BEGIN IMMEDIATE")
        try:
            conn.execute(
                """
                INSERT INTO queue_items(
                    id, kind, entity_id, owner_group_id, aggregate_id, scheduled_for,
                    debounce_reason, status, priority, added_at, max_retries
                )
                VALUES(?, 'batch_reprocess', ?, ?, ?, ?, ?, 'pending', ?, ?, ?)
                """,
                (
                    item_id,
                    entity_id,
                    owner_group_id,
                    aggregate_id,
                    to_iso(scheduled_for),
                    reason[:500],
                    _next_batch_priority(conn, now),
                    to_iso(now),
                    int(max_retries),
                ),
            )
        except sqlite3.IntegrityError:
            conn.rollback()
            return None
        item = _fetch_item(conn, item_id)
        conn.commit()
        return item


def reschedule_batch_item(
    db_path: Path,
    item_id: str,
    *,
    version: int,
    reason: str,
    scheduled_for: datetime,
    now: datetime | None = None,
) -> dict[str, Any] | None:
    with connect(db_path) as conn:
        updated = conn.execute(
            """
            UPDATE queue_items
            SET scheduled_for = ?, debounce_reason = ?, added_at = ?, version = version + 1
            WHERE id = ? AND version = ? AND status = 'pending'
            """,
            (to_iso(scheduled_for), reason[:500], to_iso(now or utc_now()), item_id, int(version)),
        ).rowcount
        if updated != 1:
            conn.commit()
            return None
        item = _fetch_item(conn, item_id)
        conn.commit()
        return item


def reset_batch_item(
    db_path: Path,
    item_id: str,
    *,
    version: int,
    reason: str,
    scheduled_for: datetime,
    now: datetime | None = None,
) -> dict[str, Any] | None:
    now = now or utc_now()
    with connect(db_path) as conn:
        conn.execute("BEGIN IMMEDIATE")
        updated = conn.execute(
            """
            UPDATE queue_items
            SET status = 'pending', scheduled_for = ?, debounce_reason = ?, added_at = ?, priority = ?,
                processing_started_at = NULL, processing_completed_at = NULL, processing_owner = NULL,
                error_message = NULL, retry_count = 0, version = version + 1
            WHERE id = ? AND version = ? AND status IN ('completed', 'failed')
            """,
            (
                to_iso(scheduled_for),
                reason[:500],
                to_iso(now),
                _next_batch_priority(conn, now),
                item_id,
                int(version),
            ),
        ).rowcount
        if updated != 1:
            conn.commit()
            return None
        item = _fetch_item(conn, item_id)
        conn.commit()
        return item


def delete_pending_batch_item(db_path: Path, aggregate_id: str) -> bool:
    with connect(db_path) as conn:
        deleted = conn.execute(
            """
            DELETE FROM queue_items
            WHERE kind = 'batch_reprocess' AND aggregate_id = ? AND status = 'pending'
            """,
            (aggregate_id,),
        ).rowcount
        conn.commit()
    return deleted == 1


def cancel_running_batch(
    db_path: Path,
    aggregate_id: str,
    *,
    now: datetime | None = None,
) -> dict[str, Any] | None:
    with connect(db_path) as conn:
        conn.execute("BEGIN IMMEDIATE")
        row = conn.execute(
            """
            SELECT id FROM queue_items
            WHERE kind = 'batch_reprocess' AND aggregate_id = ? AND status = 'processing'
            """,
            (aggregate_id,),
        ).fetchone()
        if row is None:
            conn.commit()
            return None
        conn.execute(
            """
            UPDATE queue_items
            SET status = 'failed', error_message = ?, processing_completed_at = ?,
                processing_owner = NULL, version = version + 1
            WHERE id = ?
            """,
            (CANCELLED_MESSAGE, to_iso(now or utc_now()), row["id"]),
        )
        item = _fetch_item(conn, row["id"])
        conn.commit()
        return item


def ready_batch_items(db_path: Path, *, now: datetime | None = None) -> list[dict[str, Any]]:
    with connect(db_path) as conn:
        rows = conn.execute(
            """
            SELECT * FROM queue_items
            WHERE kind = 'batch_reprocess' AND status = 'pending' AND scheduled_for <= ?
            ORDER BY scheduled_for ASC
            """,
            (to_iso(now or utc_now()),),
        ).fetchall()
    return [_row_dict(row) for row in rows]


def batch_status(db_path: Path, aggregate_id: str) -> dict[str, Any]:
    item = get_batch_item(db_path, aggregate_id)
    status = item["status"] if item else None
    return {
        "pending": status == STATUS_PENDING,
        "running": status == STATUS_PROCESSING,
        "scheduled_for": item["scheduled_for"] if status == STATUS_PENDING else None,
    }


def aggregate_activity_in_processing(db_path: Path, aggregate_id: str, entity_id: str) -> str | None:
    """Entity of the aggregate (primary or member) with an activity in processing, if any."""
    with connect(db_path) as conn:
        row = conn.execute(
            """
            SELECT entity_id FROM queue_items
            WHERE kind = 'activity' AND status = 'processing'
              AND (
                entity_id = ?
                OR entity_id IN (SELECT entity_id FROM aggregate_members WHERE aggregate_id = ?)
              )
            LIMIT 1
            """,
            (entity_id, aggregate_id),
        ).fetchone()
    return row["entity_id"] if row else None


def batch_conflict_for_entity(db_path: Path, entity_id: str) -> dict[str, Any]:
    with connect(db_path) as conn:
        rows = conn.execute(
            """
            SELECT aggregate_id, status, scheduled_for FROM queue_items
            WHERE kind = 'batch_reprocess'
              AND status IN ('pending', 'processing')
              AND (
                entity_id = ?
                OR aggregate_id IN (SELECT aggregate_id FROM aggregate_members WHERE entity_id = ?)
              )
            ORDER BY scheduled_for ASC
            """,
            (entity_id, entity_id),
        ).fetchall()
    aggregates = [_row_dict(row) for row in rows]
    return {
        "pending": any(a["status"] == STATUS_PENDING for a in aggregates),
        "running": any(a["status"] == STATUS_PROCESSING for a in aggregates),
        "aggregates": aggregates,
    }


# --- monitoring -----------------------------------------------------------------


def get_stats(db_path: Path, *, now: datetime | None = None) -> dict[str, Any]:
    now_iso = to_iso(now or utc_now())
    with connect(db_path) as conn:
        totals = {
            (row["kind"], row["status"]): row["count"]
            for row in conn.execute(
                "SELECT kind, status, COUNT(*) AS count FROM queue_items GROUP BY kind, status"
            )
        }
        ready = conn.execute(
            """
            SELECT COUNT(*) FROM queue_items
            WHERE kind = 'batch_reprocess' AND status = 'pending' AND scheduled_for <= ?
            """,
            (now_iso,),
        ).fetchone()[0]
        oldest = conn.execute(
            """
            SELECT added_at FROM queue_items
            WHERE kind = 'activity' AND status = 'pending'
            ORDER BY added_at ASC LIMIT 1
            """
        ).fetchone()

    batch_pending = totals.get((KIND_BATCH, STATUS_PENDING), 0)
    return {
        "activities": {
            "pending": totals.get((KIND_ACTIVITY, STATUS_PENDING), 0),
            "processing": totals.get((KIND_ACTIVITY, STATUS_PROCESSING), 0),
            "completed": totals.get((KIND_ACTIVITY, STATUS_COMPLETED), 0),
            "failed": totals.get((KIND_ACTIVITY, STATUS_FAILED), 0),
        },
        "batch_reprocessing": {
            "ready": int(ready),
            "scheduled": batch_pending - int(ready),
            "processing": totals.get((KIND_BATCH, STATUS_PROCESSING), 0),
            "completed": totals.get((KIND_BATCH, STATUS_COMPLETED), 0),
            "failed": totals.get((KIND_BATCH, STATUS_FAILED), 0),
        },
        "total": sum(totals.values()),
        "oldest_pending_activity_at": oldest["added_at"] if oldest else None,
    }


# --- aggregate directory --------------------------------------------------------


def upsert_aggregate(
    db_path: Path,
    *,
    aggregate_id: str,
    owner_group_id: str,
    primary_entity_id: str,
    closed: bool = False,
    now: datetime | None = None,
) -> None:
    now_iso = to_iso(now or utc_now())
    with connect(db_path) as conn:
        conn.execute("BEGIN IMMEDIATE")
        conn.execute(
            """
            INSERT INTO aggregates(id, owner_group_id, primary_entity_id, watermark, closed, updated_at)
            VALUES(?, ?, ?, NULL, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                owner_group_id = excluded.owner_group_id,
                primary_entity_id = excluded.primary_entity_id,
                closed = excluded.closed,
                updated_at = excluded.updated_at
            """,
            (aggregate_id, owner_group_id, primary_entity_id, 1 if closed else 0, now_iso),
        )
        conn.execute(
            "INSERT OR IGNORE INTO aggregate_members(aggregate_id, entity_id) VALUES(?, ?)",
            (aggregate_id, primary_entity_id),
        )
        conn.commit()


def add_aggregate_member(db_path: Path, *, aggregate_id: str, entity_id: str) -> bool:
    with connect(db_path) as conn:
        inserted = conn.execute(
            "INSERT OR IGNORE INTO aggregate_members(aggregate_id, entity_id) VALUES(?, ?)",
            (aggregate_id, entity_id),
        ).rowcount
        conn.commit()
    return inserted == 1


def get_aggregate(db_path: Path, aggregate_id: str) -> dict[str, Any] | None:
    with connect(db_path) as conn:
        row = conn.execute("SELECT * FROM aggregates WHERE id = ?", (aggregate_id,)).fetchone()
    return _row_dict(row)


def list_aggregate_members(db_path: Path, aggregate_id: str) -> list[str]:
    with connect(db_path) as conn:
        rows = conn.execute(
            "SELECT entity_id FROM aggregate_members WHERE aggregate_id = ? ORDER BY entity_id",
            (aggregate_id,),
        ).fetchall()
    return [row["entity_id"] for row in rows]


def list_aggregates_for_entity(db_path: Path, entity_id: str) -> list[dict[str, Any]]:
    with connect(db_path) as conn:
        rows = conn.execute(
            """
            SELECT a.* FROM aggregates a
            JOIN aggregate_members m ON m.aggregate_id = a.id
            WHERE m.entity_id = ?
            ORDER BY a.updated_at DESC
            """,
            (entity_id,),
        ).fetchall()
    return [_row_dict(row) for row in rows]


def set_aggregate_watermark(
    db_path: Path,
    aggregate_id: str,
    *,
    watermark: datetime,
    now: datetime | None = None,
) -> bool:
    with connect(db_path) as conn:
        updated = conn.execute(
            "UPDATE aggregates SET watermark = ?, updated_at = ? WHERE id = ?",
            (to_iso(watermark), to_iso(now or utc_now()), aggregate_id),
        ).rowcount
        conn.commit()
    return updated == 1


def advance_aggregate_watermark(
    db_path: Path,
    aggregate_id: str,
    *,
    watermark: datetime,
    now: datetime | None = None,
) -> bool:
    """Move the watermark forward only; an older value leaves it unchanged."""
    watermark_iso = to_iso(watermark)
    with connect(db_path) as conn:
        updated = conn.execute(
            """
            UPDATE aggregates SET watermark = ?, updated_at = ?
            WHERE id = ? AND (watermark IS NULL OR watermark < ?)
            """,
            (watermark_iso, to_iso(now or utc_now()), aggregate_id, watermark_iso),
        ).rowcount
        conn.commit()
    return updated == 1
