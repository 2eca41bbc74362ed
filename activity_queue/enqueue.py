from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping

from .db import epoch_ms, insert_activity_item
from .logs import log
from .models import ActivityEvent, validate_event


@dataclass(frozen=True)
class EnqueueResult:
    item: dict[str, Any]
    created: bool


def enqueue_activity(
    db_path: Path,
    event: ActivityEvent | Mapping[str, Any],
    *,
    max_retries: int = 3,
    now: datetime | None = None,
) -> EnqueueResult:
    """Persist one activity event as a pending item.

    The priority is the event's epoch millis, so per-entity claiming follows
    event time rather than arrival order. A redelivered event returns the row
    already stored for it.
    """
    event = validate_event(event)
    created, item = insert_activity_item(
        db_path,
        entity_id=event.entity_id,
        owner_group_id=event.owner_group_id,
        source_event_id=event.source_event_id,
        source_event_kind=event.source_event_kind,
        event_timestamp=event.timestamp,
        priority=epoch_ms(event.timestamp),
        max_retries=max_retries,
        now=now,
    )
    if created:
        log(
            "activity enqueued",
            item_id=item["id"],
            entity_id=event.entity_id,
            source_event_id=event.source_event_id,
            priority=item["priority"],
        )
    else:
        log(
            "duplicate activity ignored",
            level=logging.DEBUG,
            item_id=item["id"],
            source_event_id=event.source_event_id,
            status=item["status"],
        )
    return EnqueueResult(item=item, created=created)
