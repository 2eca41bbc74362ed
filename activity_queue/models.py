from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Mapping

from pydantic import BaseModel, Field, ValidationError, field_validator

from .db import ensure_utc, parse_iso
from .errors import EventValidationError


SourceEventKind = Literal["activity", "email", "calendar"]
Decision = Literal["enqueued", "appended", "restarted", "scheduled"]


class ActivityEvent(BaseModel):
    source_event_id: str = Field(min_length=1, max_length=200)
    source_event_kind: SourceEventKind
    entity_id: str = Field(min_length=1, max_length=200)
    owner_group_id: str = Field(min_length=1, max_length=200)
    timestamp: datetime

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, value: datetime) -> datetime:
        # Naive timestamps are treated as UTC.
        return ensure_utc(value)


def validate_event(data: ActivityEvent | Mapping[str, Any]) -> ActivityEvent:
    if isinstance(data, ActivityEvent):
        return data
    try:
        return ActivityEvent.model_validate(dict(data))
    except ValidationError as exc:
        fields = sorted({str(err["loc"][0]) for err in exc.errors() if err.get("loc")})
        raise EventValidationError(
            f"invalid activity event: {', '.join(fields) or 'payload'}",
            missing=fields,
        ) from exc


def event_from_item(item: Mapping[str, Any]) -> ActivityEvent:
    return ActivityEvent(
        source_event_id=item["source_event_id"],
        source_event_kind=item["source_event_kind"],
        entity_id=item["entity_id"],
        owner_group_id=item["owner_group_id"],
        timestamp=parse_iso(item["event_timestamp"]),
    )


class EventResponse(BaseModel):
    status: Literal["ok", "error"]
    decision: Decision
    aggregate_ids: list[str] = Field(default_factory=list)
    item_id: str | None = None
    created: bool = False


class ReprocessRequest(BaseModel):
    reason: str = Field(default="manual", min_length=1, max_length=500)


class ReprocessResponse(BaseModel):
    status: Literal["ok", "error"]
    aggregate_id: str
    item: dict[str, Any] | None = None
    message: str | None = None


class PendingActivitiesResponse(BaseModel):
    entity_id: str
    count: int
    processing: bool
    batch: dict[str, Any]
    items: list[dict[str, Any]]


class HealthResponse(BaseModel):
    status: Literal["ok", "degraded"]
    service: str
    queue_db: dict[str, Any]
    settings: dict[str, Any]


class AggregateRequest(BaseModel):
    owner_group_id: str = Field(min_length=1, max_length=200)
    primary_entity_id: str = Field(min_length=1, max_length=200)
    closed: bool = False
    members: list[str] = Field(default_factory=list, max_length=500)


class AggregateMemberRequest(BaseModel):
    entity_id: str = Field(min_length=1, max_length=200)


class WatermarkRequest(BaseModel):
    watermark: datetime

    @field_validator("watermark")
    @classmethod
    def normalize_watermark(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class AggregateResponse(BaseModel):
    status: Literal["ok"]
    aggregate_id: str
    owner_group_id: str
    primary_entity_id: str
    closed: bool
    watermark: datetime | None = None
    members: list[str] = Field(default_factory=list)
    batch: dict[str, Any] = Field(default_factory=dict)
