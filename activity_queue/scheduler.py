from __future__ import annotations

import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Mapping

from pydantic import TypeAdapter, ValidationError

from .collaborators import AggregateRecomputer, AnalyticsProcessor, CancellationRegistry, CancellationToken
from .config import Settings, default_node_id
from .db import (
    advance_aggregate_watermark,
    aggregate_activity_in_processing,
    batch_conflict_for_entity,
    claim_item,
    claim_next_activity,
    count_pending_activities,
    ensure_utc,
    entities_with_pending_activities,
    entity_is_processing,
    get_item,
    get_stats,
    mark_cancelled,
    mark_completed,
    mark_failed,
    parse_iso,
    ready_batch_items,
    release_item,
    to_iso,
    utc_now,
)
from .errors import BatchCancelledError
from .hooks import NullHook, PostProcessingHook
from .logs import log
from .models import event_from_item
from .ticker import Ticker

_DATETIME = TypeAdapter(datetime)


def _error_text(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class _EntityWorker:
    def __init__(self, entity_id: str):
        self.entity_id = entity_id
        self.stop = threading.Event()
        self.thread: threading.Thread | None = None


class EntityWorkerPool:
    """One worker thread per entity with pending activity items.

    Ordering within an entity comes from claim_next_activity: it claims the
    lowest priority item and refuses while another item of the entity is in
    processing, whichever process holds it.
    """

    def __init__(
        self,
        db_path: Path,
        processor: AnalyticsProcessor,
        *,
        hook: PostProcessingHook | None = None,
        owner: str | None = None,
        max_workers: int = 10,
        poll_interval: float = 5.0,
        yield_seconds: float = 0.1,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db_path = db_path
        self.processor = processor
        self.hook = hook or NullHook()
        self.owner = owner or default_node_id()
        self.max_workers = max_workers
        self.poll_interval = poll_interval
        self.yield_seconds = yield_seconds
        self.clock = clock
        self._lock = threading.Lock()
        self._workers: dict[str, _EntityWorker] = {}
        self._stopping = threading.Event()
        self.processed = 0
        self.failed = 0

    def _blocked_by_batch(self, entity_id: str) -> bool:
        conflict = batch_conflict_for_entity(self.db_path, entity_id)
        return conflict["pending"] or conflict["running"]

    def tick(self) -> list[str]:
        started: list[str] = []
        with self._lock:
            active = list(self._workers.values())
        for worker in active:
            if self._blocked_by_batch(worker.entity_id):
                worker.stop.set()

        for entity_id in entities_with_pending_activities(self.db_path):
            if self._stopping.is_set():
                break
            with self._lock:
                if entity_id in self._workers:
                    continue
                if len(self._workers) >= self.max_workers:
                    break
            if self._blocked_by_batch(entity_id):
                continue
            worker = _EntityWorker(entity_id)
            worker.thread = threading.Thread(
                target=self._run_worker,
                args=(worker,),
                name=f"entity-worker-{entity_id}",
                daemon=True,
            )
            with self._lock:
                self._workers[entity_id] = worker
            worker.thread.start()
            started.append(entity_id)
        if started:
            log("entity workers started", level=logging.DEBUG, entities=started)
        return started

    def _run_worker(self, worker: _EntityWorker) -> None:
        try:
            while not worker.stop.is_set() and not self._stopping.is_set():
                outcome = self._step(worker.entity_id, respect_batch=True)
                if outcome in ("blocked", "drained"):
                    break
                if outcome == "busy":
                    worker.stop.wait(self.poll_interval)
                    continue
                worker.stop.wait(self.yield_seconds)
        except Exception as exc:
            log("entity worker crashed", level=logging.ERROR, entity_id=worker.entity_id, error=str(exc))
        finally:
            with self._lock:
                if self._workers.get(worker.entity_id) is worker:
                    del self._workers[worker.entity_id]

    def _step(self, entity_id: str, *, respect_batch: bool) -> str:
        if respect_batch and self._blocked_by_batch(entity_id):
            return "blocked"
        item = claim_next_activity(self.db_path, entity_id, owner=self.owner, now=self.clock())
        if item is None:
            if count_pending_activities(self.db_path, entity_id) and entity_is_processing(self.db_path, entity_id):
                return "busy"
            return "drained"
        return self._execute(item)

    def _execute(self, item: dict[str, Any]) -> str:
        try:
            self.processor.process(event_from_item(item))
        except Exception as exc:
            updated = mark_failed(
                self.db_path,
                item["id"],
                version=item["version"],
                error=_error_text(exc),
                now=self.clock(),
            )
            with self._lock:
                self.failed += 1
            log(
                "activity processing failed",
                level=logging.WARNING,
                item_id=item["id"],
                entity_id=item["entity_id"],
                error=_error_text(exc),
                status=updated["status"] if updated else "stale",
                retry_count=updated["retry_count"] if updated else None,
            )
            return "failed"

        if not mark_completed(self.db_path, item["id"], version=item["version"], now=self.clock()):
            log("activity completion ignored, item was reclaimed", level=logging.WARNING, item_id=item["id"])
            return "stale"
        with self._lock:
            self.processed += 1
        log("activity processed", level=logging.DEBUG, item_id=item["id"], entity_id=item["entity_id"])
        try:
            self.hook.after_activity(item)
        except Exception as exc:
            log("post-processing hook failed", level=logging.WARNING, item_id=item["id"], error=str(exc))
        return "processed"

    def drain_entity(self, entity_id: str, *, respect_batch: bool = True) -> dict[str, int]:
        """Process the entity's pending items inline until it drains or is blocked."""
        counts = {"processed": 0, "failed": 0}
        while True:
            outcome = self._step(entity_id, respect_batch=respect_batch)
            if outcome in counts:
                counts[outcome] += 1
            elif outcome != "stale":
                return counts

    def force_process_entity(self, entity_id: str) -> dict[str, int]:
        log("force processing entity", entity_id=entity_id)
        return self.drain_entity(entity_id, respect_batch=False)

    def join(self, timeout: float | None = None) -> None:
        with self._lock:
            threads = [w.thread for w in self._workers.values() if w.thread is not None]
        for thread in threads:
            thread.join(timeout)

    def start(self) -> None:
        self._stopping.clear()

    def stop(self, timeout: float | None = None) -> None:
        self._stopping.set()
        with self._lock:
            workers = list(self._workers.values())
        for worker in workers:
            worker.stop.set()
        self.join(timeout)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "active_workers": len(self._workers),
                "max_workers": self.max_workers,
                "entities": sorted(self._workers),
                "processed": self.processed,
                "failed": self.failed,
            }


class BatchWorkerPool:
    """One-shot workers for batch reprocessing items whose debounce has elapsed.

    A claimed row can be superseded from another process (a restart through the
    API resets it); every tick compares the running claims with the stored rows
    and cancels the local token of any claim whose row has moved on.
    """

    def __init__(
        self,
        db_path: Path,
        recomputer: AggregateRecomputer,
        *,
        registry: CancellationRegistry | None = None,
        hook: PostProcessingHook | None = None,
        owner: str | None = None,
        max_workers: int = 5,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db_path = db_path
        self.recomputer = recomputer
        self.registry = registry or CancellationRegistry()
        self.hook = hook or NullHook()
        self.owner = owner or default_node_id()
        self.max_workers = max_workers
        self.clock = clock
        self._lock = threading.Lock()
        self._workers: dict[str, threading.Thread] = {}
        self._claims: dict[str, tuple[dict[str, Any], CancellationToken]] = {}
        self._stopping = threading.Event()
        self.completed = 0
        self.failed = 0
        self.cancelled = 0
        self.released = 0

    def tick(self) -> list[str]:
        self.check_superseded()
        started: list[str] = []
        for item in ready_batch_items(self.db_path, now=self.clock()):
            if self._stopping.is_set():
                break
            aggregate_id = item["aggregate_id"]
            with self._lock:
                if aggregate_id in self._workers:
                    continue
                if len(self._workers) >= self.max_workers:
                    break
            busy_entity = aggregate_activity_in_processing(self.db_path, aggregate_id, item["entity_id"])
            if busy_entity is not None:
                log("batch waiting for in-flight activity", level=logging.DEBUG,
                    aggregate_id=aggregate_id, entity_id=busy_entity)
                continue
            thread = threading.Thread(
                target=self._run_worker,
                args=(item,),
                name=f"batch-worker-{aggregate_id}",
                daemon=True,
            )
            with self._lock:
                self._workers[aggregate_id] = thread
            thread.start()
            started.append(aggregate_id)
        return started

    def check_superseded(self) -> list[str]:
        with self._lock:
            claims = list(self._claims.values())
        superseded: list[str] = []
        for claimed, token in claims:
            if token.cancelled:
                continue
            current = get_item(self.db_path, claimed["id"])
            if current is not None and current["version"] == claimed["version"]:
                continue
            token.cancel()
            superseded.append(claimed["aggregate_id"])
            log("running batch superseded, cancelling", item_id=claimed["id"],
                aggregate_id=claimed["aggregate_id"], status=current["status"] if current else None)
        return superseded

    def _run_worker(self, item: dict[str, Any]) -> None:
        aggregate_id = item["aggregate_id"]
        try:
            self.run_item(item)
        except Exception as exc:
            log("batch worker crashed", level=logging.ERROR, aggregate_id=aggregate_id, error=str(exc))
        finally:
            with self._lock:
                if self._workers.get(aggregate_id) is threading.current_thread():
                    del self._workers[aggregate_id]

    def run_item(self, item: dict[str, Any]) -> str:
        claimed = claim_item(self.db_path, item["id"], owner=self.owner, now=self.clock())
        if claimed is None:
            return "lost"
        aggregate_id = claimed["aggregate_id"]
        token = self.registry.register(aggregate_id)
        with self._lock:
            self._claims[aggregate_id] = (claimed, token)
        log("batch reprocessing started", item_id=claimed["id"], aggregate_id=aggregate_id,
            reason=claimed["debounce_reason"])
        try:
            return self._execute(claimed, token)
        finally:
            with self._lock:
                if self._claims.get(aggregate_id, (None, None))[1] is token:
                    del self._claims[aggregate_id]
            self.registry.unregister(aggregate_id, token)

    def _cancel(self, claimed: dict[str, Any]) -> str:
        if self._stopping.is_set():
            # Shutdown: the row goes back to pending with its schedule intact.
            release_item(self.db_path, claimed["id"], version=claimed["version"])
            with self._lock:
                self.released += 1
            log("batch reprocessing released on shutdown", item_id=claimed["id"],
                aggregate_id=claimed["aggregate_id"])
            return "released"
        mark_cancelled(self.db_path, claimed["id"], version=claimed["version"], now=self.clock())
        with self._lock:
            self.cancelled += 1
        log("batch reprocessing cancelled", item_id=claimed["id"], aggregate_id=claimed["aggregate_id"])
        return "cancelled"

    def _advance_watermark(self, claimed: dict[str, Any], result: Any) -> None:
        watermark = parse_iso(claimed["processing_started_at"])
        raw = result.get("watermark") if isinstance(result, Mapping) else None
        if raw:
            try:
                watermark = ensure_utc(_DATETIME.validate_python(raw))
            except ValidationError:
                log("unreadable watermark from recompute, using claim time", level=logging.WARNING,
                    aggregate_id=claimed["aggregate_id"], watermark=raw)
        if advance_aggregate_watermark(self.db_path, claimed["aggregate_id"], watermark=watermark, now=self.clock()):
            log("aggregate watermark advanced", aggregate_id=claimed["aggregate_id"], watermark=to_iso(watermark))

    def _execute(self, claimed: dict[str, Any], token: CancellationToken) -> str:
        try:
            result = self.recomputer.recompute(claimed["aggregate_id"], token)
            token.raise_if_cancelled()
        except BatchCancelledError:
            return self._cancel(claimed)
        except Exception as exc:
            if token.cancelled:
                return self._cancel(claimed)
            updated = mark_failed(
                self.db_path,
                claimed["id"],
                version=claimed["version"],
                error=_error_text(exc),
                now=self.clock(),
            )
            with self._lock:
                self.failed += 1
            log(
                "batch reprocessing failed",
                level=logging.WARNING,
                item_id=claimed["id"],
                aggregate_id=claimed["aggregate_id"],
                error=_error_text(exc),
                status=updated["status"] if updated else "stale",
            )
            return "failed"

        if not mark_completed(self.db_path, claimed["id"], version=claimed["version"], now=self.clock()):
            log("batch completion ignored, item changed meanwhile", level=logging.WARNING,
                item_id=claimed["id"], aggregate_id=claimed["aggregate_id"])
            return "stale"
        self._advance_watermark(claimed, result)
        with self._lock:
            self.completed += 1
        log("batch reprocessing completed", item_id=claimed["id"], aggregate_id=claimed["aggregate_id"])
        try:
            self.hook.after_batch(claimed)
        except Exception as exc:
            log("post-processing hook failed", level=logging.WARNING, item_id=claimed["id"], error=str(exc))
        return "completed"

    def join(self, timeout: float | None = None) -> None:
        with self._lock:
            threads = list(self._workers.values())
        for thread in threads:
            thread.join(timeout)

    def start(self) -> None:
        self._stopping.clear()

    def stop(self, timeout: float | None = None) -> None:
        """Let running recomputations finish within timeout, then release the rest."""
        self._stopping.set()
        self.join(timeout)
        with self._lock:
            tokens = [token for _, token in self._claims.values()]
        for token in tokens:
            token.cancel()
        self.join(timeout)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "active_workers": len(self._workers),
                "max_workers": self.max_workers,
                "aggregates": sorted(self._workers),
                "completed": self.completed,
                "failed": self.failed,
                "cancelled": self.cancelled,
                "released": self.released,
            }


class WorkerScheduler:
    def __init__(
        self,
        db_path: Path,
        processor: AnalyticsProcessor,
        recomputer: AggregateRecomputer,
        *,
        registry: CancellationRegistry | None = None,
        hook: PostProcessingHook | None = None,
        owner: str | None = None,
        max_entity_workers: int = 10,
        max_batch_workers: int = 5,
        poll_interval: float = 5.0,
        yield_seconds: float = 0.1,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db_path = db_path
        self.registry = registry or CancellationRegistry()
        self.owner = owner or default_node_id()
        self.clock = clock
        self.entities = EntityWorkerPool(
            db_path,
            processor,
            hook=hook,
            owner=self.owner,
            max_workers=max_entity_workers,
            poll_interval=poll_interval,
            yield_seconds=yield_seconds,
            clock=clock,
        )
        self.batches = BatchWorkerPool(
            db_path,
            recomputer,
            registry=self.registry,
            hook=hook,
            owner=self.owner,
            max_workers=max_batch_workers,
            clock=clock,
        )
        self._tickers = [
            Ticker("entity-pool", poll_interval, self.entities.tick),
            Ticker("batch-pool", poll_interval, self.batches.tick),
        ]

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        processor: AnalyticsProcessor,
        recomputer: AggregateRecomputer,
        **kwargs,
    ) -> "WorkerScheduler":
        return cls(
            settings.queue_db_path,
            processor,
            recomputer,
            owner=settings.node_id or None,
            max_entity_workers=settings.max_entity_workers,
            max_batch_workers=settings.max_batch_workers,
            poll_interval=settings.poll_interval_seconds,
            yield_seconds=settings.worker_yield_ms / 1000.0,
            **kwargs,
        )

    def start(self) -> None:
        self.entities.start()
        self.batches.start()
        for ticker in self._tickers:
            ticker.start()
        log("worker scheduler started", owner=self.owner)

    def stop(self, timeout: float | None = None) -> None:
        for ticker in self._tickers:
            ticker.stop(timeout)
        self.entities.stop(timeout)
        self.batches.stop(timeout)
        log("worker scheduler stopped", owner=self.owner)

    def tick(self) -> dict[str, list[str]]:
        return {"entities": self.entities.tick(), "batches": self.batches.tick()}

    def join(self, timeout: float | None = None) -> None:
        self.entities.join(timeout)
        self.batches.join(timeout)

    def force_process_entity(self, entity_id: str) -> dict[str, int]:
        return self.entities.force_process_entity(entity_id)

    def worker_stats(self) -> dict[str, Any]:
        return {
            "owner": self.owner,
            "running": any(t.running for t in self._tickers),
            "entity_pool": self.entities.stats(),
            "batch_pool": self.batches.stats(),
        }

    def queue_status(self) -> dict[str, Any]:
        return {
            "queue": get_stats(self.db_path, now=self.clock()),
            "workers": self.worker_stats(),
        }
