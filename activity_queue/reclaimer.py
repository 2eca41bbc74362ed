from __future__ import annotations

import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable

from .config import DEFAULT_RECLAIM_INTERVAL_MS, DEFAULT_STUCK_TIMEOUT_MS, Settings
from .db import cleanup_completed_items, reset_stuck_items, utc_now
from .logs import log
from .ticker import Ticker


class StuckItemReclaimer:
    """Returns items orphaned by a dead worker to the queue and purges old completions."""

    def __init__(
        self,
        db_path: Path,
        *,
        stuck_timeout_ms: int = DEFAULT_STUCK_TIMEOUT_MS,
        retention_days: int = 7,
        interval_ms: int = DEFAULT_RECLAIM_INTERVAL_MS,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db_path = db_path
        self.stuck_timeout = timedelta(milliseconds=stuck_timeout_ms)
        self.retention_days = retention_days
        self.clock = clock
        self._ticker = Ticker("queue-reclaimer", interval_ms / 1000.0, self.run_once)

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "StuckItemReclaimer":
        return cls(
            settings.queue_db_path,
            stuck_timeout_ms=settings.stuck_timeout_ms,
            retention_days=settings.retention_days,
            interval_ms=settings.reclaim_interval_ms,
            **kwargs,
        )

    def reset_stuck(self) -> int:
        reset = reset_stuck_items(self.db_path, stuck_timeout=self.stuck_timeout, now=self.clock())
        if reset:
            log("stuck items reset to pending", level=logging.WARNING, count=reset)
        return reset

    def purge_completed(self, older_than_days: int | None = None) -> int:
        purged = cleanup_completed_items(
            self.db_path,
            older_than_days=older_than_days or self.retention_days,
            now=self.clock(),
        )
        if purged:
            log("completed items purged", count=purged)
        return purged

    def run_once(self) -> dict[str, int]:
        return {"reset": self.reset_stuck(), "purged": self.purge_completed()}

    def start(self) -> None:
        self._ticker.start()

    def stop(self, timeout: float | None = None) -> None:
        self._ticker.stop(timeout)
