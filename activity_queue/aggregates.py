from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterable, Protocol

from .db import (
    add_aggregate_member,
    batch_conflict_for_entity,
    ensure_utc,
    get_aggregate,
    list_aggregate_members,
    list_aggregates_for_entity,
    parse_iso,
    set_aggregate_watermark,
    upsert_aggregate,
)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class AggregateInfo:
    aggregate_id: str
    owner_group_id: str
    primary_entity_id: str
    closed: bool = False
    watermark: datetime | None = None
    updated_at: datetime | None = None


class AggregateLookup(Protocol):
    def aggregates_for_entity(self, entity_id: str) -> list[AggregateInfo]: ...

    def describe(self, aggregate_id: str) -> AggregateInfo | None: ...

    def last_watermark(self, aggregate_id: str) -> datetime | None: ...

    def active_batch_conflict(self, entity_id: str) -> dict[str, Any]: ...


def _info_from_row(row: dict[str, Any]) -> AggregateInfo:
    return AggregateInfo(
        aggregate_id=row["id"],
        owner_group_id=row["owner_group_id"],
        primary_entity_id=row["primary_entity_id"],
        closed=bool(row["closed"]),
        watermark=parse_iso(row["watermark"]),
        updated_at=parse_iso(row["updated_at"]),
    )


class SqliteAggregateLookup:
    """Aggregate directory kept next to the queue tables."""

    def __init__(self, db_path: Path, clock=None):
        self.db_path = db_path
        self.clock = clock

    def _now(self) -> datetime | None:
        return self.clock() if self.clock else None

    def register(
        self,
        aggregate_id: str,
        *,
        owner_group_id: str,
        primary_entity_id: str,
        closed: bool = False,
        members: Iterable[str] = (),
    ) -> AggregateInfo:
        upsert_aggregate(
            self.db_path,
            aggregate_id=aggregate_id,
            owner_group_id=owner_group_id,
            primary_entity_id=primary_entity_id,
            closed=closed,
            now=self._now(),
        )
        for entity_id in members:
            add_aggregate_member(self.db_path, aggregate_id=aggregate_id, entity_id=entity_id)
        return self.describe(aggregate_id)

    def add_member(self, aggregate_id: str, entity_id: str) -> bool:
        return add_aggregate_member(self.db_path, aggregate_id=aggregate_id, entity_id=entity_id)

    def set_watermark(self, aggregate_id: str, watermark: datetime) -> bool:
        return set_aggregate_watermark(self.db_path, aggregate_id, watermark=watermark, now=self._now())

    def members(self, aggregate_id: str) -> list[str]:
        return list_aggregate_members(self.db_path, aggregate_id)

    def aggregates_for_entity(self, entity_id: str) -> list[AggregateInfo]:
        return [_info_from_row(row) for row in list_aggregates_for_entity(self.db_path, entity_id)]

    def describe(self, aggregate_id: str) -> AggregateInfo | None:
        row = get_aggregate(self.db_path, aggregate_id)
        return _info_from_row(row) if row else None

    def last_watermark(self, aggregate_id: str) -> datetime | None:
        info = self.describe(aggregate_id)
        return info.watermark if info else None

    def active_batch_conflict(self, entity_id: str) -> dict[str, Any]:
        return batch_conflict_for_entity(self.db_path, entity_id)


def _most_recent(aggregates: list[AggregateInfo]) -> AggregateInfo:
    return max(aggregates, key=lambda a: a.updated_at or _EPOCH)


def select_relevant_aggregates(aggregates: list[AggregateInfo]) -> list[AggregateInfo]:
    """Pick the aggregate an entity's event belongs to.

    One aggregate is used as is. Among several: the only open one, else the
    most recently updated open one, else the most recently updated closed one.
    """
    if len(aggregates) <= 1:
        return list(aggregates)
    open_aggregates = [a for a in aggregates if not a.closed]
    if len(open_aggregates) == 1:
        return open_aggregates
    if open_aggregates:
        return [_most_recent(open_aggregates)]
    return [_most_recent(aggregates)]


def is_historical(
    event_ts: datetime,
    watermark: datetime | None,
    *,
    grace: timedelta,
    now: datetime,
) -> bool:
    if watermark is None:
        return True
    watermark = min(ensure_utc(watermark), ensure_utc(now))
    return ensure_utc(event_ts) < watermark - grace
