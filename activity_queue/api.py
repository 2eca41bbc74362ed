from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import timedelta
from functools import lru_cache

from fastapi import Depends, FastAPI, HTTPException, status

from .admin_models import AdminActionResponse, CleanupRequest, ResetStuckRequest
from .aggregates import SqliteAggregateLookup
from .config import Settings
from .conflicts import ConflictResolver
from .db import (
    batch_status,
    cleanup_completed_items,
    entity_is_processing,
    get_stats,
    init_db,
    list_pending_activities,
    reset_stuck_items,
)
from .debounce import Debouncer
from .errors import UnknownAggregateError
from .models import (
    ActivityEvent,
    AggregateMemberRequest,
    AggregateRequest,
    AggregateResponse,
    EventResponse,
    HealthResponse,
    PendingActivitiesResponse,
    ReprocessRequest,
    ReprocessResponse,
    WatermarkRequest,
)
from .security import _settings, verify_admin_security, verify_request_security

app = FastAPI(title="Activity Queue API", version="1.0.0")
logging.basicConfig(level=logging.INFO, format="%(asctime)s activity-queue-api %(levelname)s: %(message)s")
_LOG = logging.getLogger("uvicorn.error")


def _log_event(event: str, **fields) -> None:
    payload = {"event": event, **fields}
    _LOG.info(json.dumps(payload, ensure_ascii=False, sort_keys=True, default=str))


@dataclass(frozen=True)
class _Services:
    settings: Settings
    lookup: SqliteAggregateLookup
    debouncer: Debouncer
    resolver: ConflictResolver


@lru_cache(maxsize=1)
def _services() -> _Services:
    settings = _settings()
    init_db(settings.queue_db_path)
    lookup = SqliteAggregateLookup(settings.queue_db_path)
    # Recomputations run in the worker process: a restart from here only resets
    # the row, and the worker's supersession check cancels the running token.
    debouncer = Debouncer(
        settings.queue_db_path,
        lookup,
        window_ms=settings.debounce_window_ms,
        max_retries=settings.max_retries,
    )
    resolver = ConflictResolver(
        settings.queue_db_path,
        lookup,
        debouncer,
        grace_ms=settings.historical_grace_ms,
        max_retries=settings.max_retries,
    )
    return _Services(settings=settings, lookup=lookup, debouncer=debouncer, resolver=resolver)


@app.on_event("startup")
def on_startup() -> None:
    init_db(_settings().queue_db_path)


@app.post("/events", response_model=EventResponse)
def events(
    req: ActivityEvent,
    _: None = Depends(verify_request_security),
):
    resolution = _services().resolver.handle(req)
    item_id = resolution.item["id"] if resolution.item else None
    _log_event(
        "events",
        decision=resolution.decision,
        entity_id=req.entity_id,
        source_event_id=req.source_event_id,
        item_id=item_id,
        created=resolution.created,
    )
    return EventResponse(
        status="ok",
        decision=resolution.decision,
        aggregate_ids=resolution.aggregate_ids,
        item_id=item_id,
        created=resolution.created,
    )


def _aggregate_response(services: _Services, aggregate_id: str) -> AggregateResponse:
    info = services.lookup.describe(aggregate_id)
    if info is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"unknown aggregate: {aggregate_id}")
    return AggregateResponse(
        status="ok",
        aggregate_id=info.aggregate_id,
        owner_group_id=info.owner_group_id,
        primary_entity_id=info.primary_entity_id,
        closed=info.closed,
        watermark=info.watermark,
        members=services.lookup.members(aggregate_id),
        batch=batch_status(services.settings.queue_db_path, aggregate_id),
    )


@app.put("/aggregates/{aggregate_id}", response_model=AggregateResponse)
def upsert_aggregate(
    aggregate_id: str,
    req: AggregateRequest,
    _: None = Depends(verify_request_security),
):
    services = _services()
    services.lookup.register(
        aggregate_id,
        owner_group_id=req.owner_group_id,
        primary_entity_id=req.primary_entity_id,
        closed=req.closed,
        members=req.members,
    )
    _log_event("aggregate_upsert", aggregate_id=aggregate_id, closed=req.closed, members=len(req.members))
    return _aggregate_response(services, aggregate_id)


@app.get("/aggregates/{aggregate_id}", response_model=AggregateResponse)
def get_aggregate(
    aggregate_id: str,
    _: None = Depends(verify_request_security),
):
    return _aggregate_response(_services(), aggregate_id)


@app.post("/aggregates/{aggregate_id}/members", response_model=AggregateResponse)
def add_aggregate_member(
    aggregate_id: str,
    req: AggregateMemberRequest,
    _: None = Depends(verify_request_security),
):
    services = _services()
    if services.lookup.describe(aggregate_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"unknown aggregate: {aggregate_id}")
    added = services.lookup.add_member(aggregate_id, req.entity_id)
    _log_event("aggregate_member_add", aggregate_id=aggregate_id, entity_id=req.entity_id, added=added)
    return _aggregate_response(services, aggregate_id)


@app.put("/aggregates/{aggregate_id}/watermark", response_model=AggregateResponse)
def set_aggregate_watermark(
    aggregate_id: str,
    req: WatermarkRequest,
    _: None = Depends(verify_request_security),
):
    services = _services()
    if not services.lookup.set_watermark(aggregate_id, req.watermark):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"unknown aggregate: {aggregate_id}")
    _log_event("aggregate_watermark", aggregate_id=aggregate_id, watermark=req.watermark)
    return _aggregate_response(services, aggregate_id)


@app.post("/aggregates/{aggregate_id}/reprocess", response_model=ReprocessResponse)
def schedule_reprocess(
    aggregate_id: str,
    req: ReprocessRequest | None = None,
    _: None = Depends(verify_request_security),
):
    reason = req.reason if req else "manual"
    try:
        item = _services().debouncer.schedule_reprocessing(aggregate_id, reason)
    except UnknownAggregateError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    _log_event("aggregate_reprocess", aggregate_id=aggregate_id, reason=reason, item_id=item["id"])
    return ReprocessResponse(status="ok", aggregate_id=aggregate_id, item=item)


@app.delete("/aggregates/{aggregate_id}/reprocess", response_model=ReprocessResponse)
def cancel_reprocess(
    aggregate_id: str,
    _: None = Depends(verify_request_security),
):
    cancelled = _services().debouncer.cancel_reprocessing(aggregate_id)
    _log_event("aggregate_reprocess_cancel", aggregate_id=aggregate_id, cancelled=cancelled)
    return ReprocessResponse(
        status="ok",
        aggregate_id=aggregate_id,
        message="Pending reprocessing cancelled" if cancelled else "Nothing pending to cancel",
    )


@app.post("/aggregates/{aggregate_id}/restart", response_model=ReprocessResponse)
def restart_reprocess(
    aggregate_id: str,
    req: ReprocessRequest | None = None,
    _: None = Depends(verify_request_security),
):
    reason = req.reason if req else "manual restart"
    try:
        item = _services().debouncer.restart_batch_processing(aggregate_id, reason)
    except UnknownAggregateError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    _log_event("aggregate_restart", aggregate_id=aggregate_id, reason=reason, item_id=item["id"])
    return ReprocessResponse(status="ok", aggregate_id=aggregate_id, item=item)


@app.get("/entities/{entity_id}/pending", response_model=PendingActivitiesResponse)
def entity_pending(
    entity_id: str,
    _: None = Depends(verify_request_security),
):
    services = _services()
    db_path = services.settings.queue_db_path
    items = list_pending_activities(db_path, entity_id)
    return PendingActivitiesResponse(
        entity_id=entity_id,
        count=len(items),
        processing=entity_is_processing(db_path, entity_id),
        batch=services.lookup.active_batch_conflict(entity_id),
        items=items,
    )


@app.post("/admin/cleanup", response_model=AdminActionResponse)
def admin_cleanup(
    req: CleanupRequest | None = None,
    _: None = Depends(verify_admin_security),
):
    settings = _services().settings
    days = (req.older_than_days if req else None) or settings.retention_days
    purged = cleanup_completed_items(settings.queue_db_path, older_than_days=days)
    _log_event("admin_cleanup", older_than_days=days, purged=purged, actor=req.actor if req else "admin")
    return AdminActionResponse(
        status="ok",
        action="cleanup",
        affected=purged,
        message=f"Purged completed items older than {days} days",
    )


@app.post("/admin/reset-stuck", response_model=AdminActionResponse)
def admin_reset_stuck(
    req: ResetStuckRequest | None = None,
    _: None = Depends(verify_admin_security),
):
    settings = _services().settings
    timeout_ms = (req.stuck_timeout_ms if req else None) or settings.stuck_timeout_ms
    reset = reset_stuck_items(settings.queue_db_path, stuck_timeout=timedelta(milliseconds=timeout_ms))
    _log_event("admin_reset_stuck", stuck_timeout_ms=timeout_ms, reset=reset, actor=req.actor if req else "admin")
    return AdminActionResponse(
        status="ok",
        action="reset-stuck",
        affected=reset,
        message=f"Reset items processing for more than {timeout_ms} ms",
    )


@app.get("/health", response_model=HealthResponse)
def health(
    _: None = Depends(verify_request_security),
):
    settings = _services().settings
    queue_stats = get_stats(settings.queue_db_path)
    failed = queue_stats["activities"]["failed"] + queue_stats["batch_reprocessing"]["failed"]

    settings_view = {
        "debounce_window_ms": settings.debounce_window_ms,
        "historical_grace_ms": settings.historical_grace_ms,
        "stuck_timeout_ms": settings.stuck_timeout_ms,
        "poll_interval_ms": settings.poll_interval_ms,
        "max_entity_workers": settings.max_entity_workers,
        "max_batch_workers": settings.max_batch_workers,
        "max_retries": settings.max_retries,
        "retention_days": settings.retention_days,
        "allowed_ips": list(settings.allowed_ips),
    }

    return HealthResponse(
        status="degraded" if failed else "ok",
        service="activity-queue-api",
        queue_db={"path": str(settings.queue_db_path), **queue_stats},
        settings=settings_view,
    )
