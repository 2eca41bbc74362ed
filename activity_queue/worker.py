from __future__ import annotations

import logging
import signal
import sys
import threading

from .aggregates import SqliteAggregateLookup
from .collaborators import CancellationRegistry, HttpAggregateRecomputer, HttpAnalyticsProcessor
from .config import Settings, load_settings
from .db import init_db
from .hooks import ActionPipelineWebhook, NullHook, PostProcessingHook
from .logs import configure_logging, log
from .reclaimer import StuckItemReclaimer
from .scheduler import WorkerScheduler


def build_hook(settings: Settings, lookup: SqliteAggregateLookup) -> PostProcessingHook:
    if not settings.action_pipeline_url:
        return NullHook()
    return ActionPipelineWebhook(
        settings.action_pipeline_url,
        settings.queue_db_path,
        lookup=lookup,
        token=settings.collaborator_token,
        timeout=settings.collaborator_timeout_s,
    )


def build_scheduler(settings: Settings) -> WorkerScheduler:
    lookup = SqliteAggregateLookup(settings.queue_db_path)
    processor = HttpAnalyticsProcessor(
        settings.analytics_url,
        token=settings.collaborator_token,
        timeout=settings.collaborator_timeout_s,
    )
    recomputer = HttpAggregateRecomputer(
        settings.recompute_url,
        token=settings.collaborator_token,
        timeout=settings.collaborator_timeout_s,
    )
    return WorkerScheduler.from_settings(
        settings,
        processor,
        recomputer,
        registry=CancellationRegistry(),
        hook=build_hook(settings, lookup),
    )


def run_worker() -> int:
    configure_logging()
    settings = load_settings()

    missing = [name for name, value in (("ANALYTICS_URL", settings.analytics_url),
                                        ("RECOMPUTE_URL", settings.recompute_url)) if not value]
    if missing:
        log("worker not configured", level=logging.ERROR, missing=missing)
        return 2

    init_db(settings.queue_db_path)
    reclaimer = StuckItemReclaimer.from_settings(settings)
    startup = reclaimer.run_once()
    log("startup reclaim done", **startup)

    scheduler = build_scheduler(settings)
    stop = threading.Event()

    def _handle_signal(signum, _frame):
        log("stop requested", signal=signum)
        stop.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    log("worker started", node_id=settings.node_id, db_path=str(settings.queue_db_path))
    scheduler.start()
    reclaimer.start()
    try:
        while not stop.is_set():
            stop.wait(settings.poll_interval_seconds)
    finally:
        reclaimer.stop(timeout=5.0)
        scheduler.stop(timeout=settings.collaborator_timeout_s)
        log("worker stopped", **scheduler.worker_stats()["entity_pool"])

    return 0


def main() -> None:
    sys.exit(run_worker())


if __name__ == "__main__":
    main()
