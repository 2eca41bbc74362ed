from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Mapping

from .aggregates import AggregateLookup, is_historical, select_relevant_aggregates
from .config import DEFAULT_HISTORICAL_GRACE_MS
from .db import batch_status, mark_entity_activities_completed_by_batch, utc_now
from .debounce import Debouncer
from .enqueue import enqueue_activity
from .logs import log
from .models import ActivityEvent, Decision, validate_event

RESTART_REASON = "historical activity during batch"
SCHEDULE_REASON = "historical activity"


@dataclass(frozen=True)
class Resolution:
    decision: Decision
    aggregate_ids: list[str] = field(default_factory=list)
    item: dict[str, Any] | None = None
    created: bool = False


class ConflictResolver:
    """Routes each incoming event to the activity track or the batch track."""

    def __init__(
        self,
        db_path: Path,
        lookup: AggregateLookup,
        debouncer: Debouncer,
        *,
        grace_ms: int = DEFAULT_HISTORICAL_GRACE_MS,
        max_retries: int = 3,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db_path = db_path
        self.lookup = lookup
        self.debouncer = debouncer
        self.grace = timedelta(milliseconds=grace_ms)
        self.max_retries = max_retries
        self.clock = clock

    def _enqueue(self, event: ActivityEvent, aggregate_ids: list[str], now: datetime) -> Resolution:
        result = enqueue_activity(self.db_path, event, max_retries=self.max_retries, now=now)
        return Resolution("enqueued", aggregate_ids, result.item, result.created)

    def handle(self, event: ActivityEvent | Mapping[str, Any]) -> Resolution:
        event = validate_event(event)
        now = self.clock()
        aggregates = select_relevant_aggregates(self.lookup.aggregates_for_entity(event.entity_id))
        if not aggregates:
            return self._enqueue(event, [], now)

        to_restart: list[str] = []
        to_schedule: list[str] = []
        to_append: list[str] = []
        for aggregate in aggregates:
            historical = is_historical(event.timestamp, aggregate.watermark, grace=self.grace, now=now)
            state = batch_status(self.db_path, aggregate.aggregate_id)
            active = state["pending"] or state["running"]
            if historical and active:
                to_restart.append(aggregate.aggregate_id)
            elif historical:
                to_schedule.append(aggregate.aggregate_id)
            elif active:
                to_append.append(aggregate.aggregate_id)

        aggregate_ids = [a.aggregate_id for a in aggregates]
        item = None
        for aggregate_id in to_restart:
            item = self.debouncer.restart_batch_processing(aggregate_id, RESTART_REASON)
        if to_schedule:
            superseded = mark_entity_activities_completed_by_batch(
                self.db_path,
                event.entity_id,
                reason=f"superseded by batch reprocessing of {', '.join(to_schedule)}",
                now=now,
            )
            if superseded:
                log("pending activities folded into batch", entity_id=event.entity_id, count=superseded)
            for aggregate_id in to_schedule:
                item = self.debouncer.schedule_reprocessing(aggregate_id, SCHEDULE_REASON)

        if to_restart:
            decision = "restarted"
        elif to_schedule:
            decision = "scheduled"
        elif to_append:
            decision = "appended"
        else:
            return self._enqueue(event, aggregate_ids, now)

        log(
            "activity routed to batch track",
            decision=decision,
            entity_id=event.entity_id,
            source_event_id=event.source_event_id,
            aggregate_ids=aggregate_ids,
        )
        return Resolution(decision, aggregate_ids, item)
