from __future__ import annotations

import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable

from .aggregates import AggregateLookup
from .collaborators import CancellationRegistry
from .config import DEFAULT_DEBOUNCE_WINDOW_MS
from .db import (
    STATUS_PENDING,
    STATUS_PROCESSING,
    cancel_running_batch,
    delete_pending_batch_item,
    get_batch_item,
    insert_batch_item,
    reschedule_batch_item,
    reset_batch_item,
    utc_now,
)
from .errors import RaceConditionConflict, UnknownAggregateError
from .logs import log

MAX_WRITE_ATTEMPTS = 5


class Debouncer:
    """Keeps exactly one batch reprocessing row per aggregate.

    Every write is conditional on the row version read just before it, so a
    concurrent writer makes the write miss instead of clobbering; the loop then
    re-reads and applies the same rule to the fresh row.
    """

    def __init__(
        self,
        db_path: Path,
        lookup: AggregateLookup,
        *,
        window_ms: int = DEFAULT_DEBOUNCE_WINDOW_MS,
        max_retries: int = 3,
        registry: CancellationRegistry | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db_path = db_path
        self.lookup = lookup
        self.window = timedelta(milliseconds=window_ms)
        self.max_retries = max_retries
        self.registry = registry
        self.clock = clock

    def schedule_reprocessing(self, aggregate_id: str, reason: str = "structural change") -> dict[str, Any]:
        info = self.lookup.describe(aggregate_id)
        if info is None:
            raise UnknownAggregateError(f"unknown aggregate: {aggregate_id}")

        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            now = self.clock()
            scheduled_for = now + self.window
            row = get_batch_item(self.db_path, aggregate_id)

            if row is None:
                item = insert_batch_item(
                    self.db_path,
                    aggregate_id=aggregate_id,
                    entity_id=info.primary_entity_id,
                    owner_group_id=info.owner_group_id,
                    reason=reason,
                    scheduled_for=scheduled_for,
                    max_retries=self.max_retries,
                    now=now,
                )
                if item is not None:
                    log("batch reprocessing scheduled", aggregate_id=aggregate_id, reason=reason,
                        scheduled_for=item["scheduled_for"])
                    return item
            elif row["status"] == STATUS_PROCESSING:
                log("batch already running, schedule ignored", level=logging.DEBUG, aggregate_id=aggregate_id)
                return row
            elif row["status"] == STATUS_PENDING:
                item = reschedule_batch_item(
                    self.db_path,
                    row["id"],
                    version=row["version"],
                    reason=reason,
                    scheduled_for=scheduled_for,
                    now=now,
                )
                if item is not None:
                    log("batch reprocessing rescheduled", aggregate_id=aggregate_id, reason=reason,
                        scheduled_for=item["scheduled_for"])
                    return item
            else:
                item = reset_batch_item(
                    self.db_path,
                    row["id"],
                    version=row["version"],
                    reason=reason,
                    scheduled_for=scheduled_for,
                    now=now,
                )
                if item is not None:
                    log("batch reprocessing re-armed", aggregate_id=aggregate_id, reason=reason,
                        previous_status=row["status"], scheduled_for=item["scheduled_for"])
                    return item

            log("debounce write lost a race, re-reading", level=logging.DEBUG,
                aggregate_id=aggregate_id, attempt=attempt)

        row = get_batch_item(self.db_path, aggregate_id)
        if row is None:
            raise RaceConditionConflict(f"could not schedule aggregate {aggregate_id}")
        log("debounce attempts exhausted, returning current row", level=logging.WARNING,
            aggregate_id=aggregate_id, status=row["status"])
        return row

    def cancel_reprocessing(self, aggregate_id: str) -> bool:
        deleted = delete_pending_batch_item(self.db_path, aggregate_id)
        if deleted:
            log("batch reprocessing cancelled", aggregate_id=aggregate_id)
        return deleted

    def restart_batch_processing(
        self,
        aggregate_id: str,
        reason: str = "historical activity during batch",
    ) -> dict[str, Any]:
        signalled = self.registry.cancel(aggregate_id) if self.registry else False
        cancelled = cancel_running_batch(self.db_path, aggregate_id, now=self.clock())
        if signalled or cancelled:
            log("running batch cancelled for restart", aggregate_id=aggregate_id,
                signalled=signalled, item_id=cancelled["id"] if cancelled else None)
        return self.schedule_reprocessing(aggregate_id, reason)
