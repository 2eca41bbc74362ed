from __future__ import annotations

import logging
import os
import socket
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from .logs import log

DEFAULT_DEBOUNCE_WINDOW_MS = 5 * 60 * 1000
DEFAULT_HISTORICAL_GRACE_MS = 5 * 60 * 1000
DEFAULT_STUCK_TIMEOUT_MS = 5 * 60 * 1000
DEFAULT_POLL_INTERVAL_MS = 5000
DEFAULT_RECLAIM_INTERVAL_MS = 5 * 60 * 1000
DEFAULT_WORKER_YIELD_MS = 100


@dataclass(frozen=True)
class Settings:
    repo_root: Path
    queue_db_path: Path
    debounce_window_ms: int = DEFAULT_DEBOUNCE_WINDOW_MS
    historical_grace_ms: int = DEFAULT_HISTORICAL_GRACE_MS
    stuck_timeout_ms: int = DEFAULT_STUCK_TIMEOUT_MS
    poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS
    reclaim_interval_ms: int = DEFAULT_RECLAIM_INTERVAL_MS
    worker_yield_ms: int = DEFAULT_WORKER_YIELD_MS
    max_entity_workers: int = 10
    max_batch_workers: int = 5
    max_retries: int = 3
    retention_days: int = 7
    node_id: str = ""
    api_token: str = ""
    admin_token: str = ""
    allowed_ips: tuple[str, ...] = ()
    analytics_url: str = ""
    recompute_url: str = ""
    action_pipeline_url: str = ""
    collaborator_token: str = ""
    collaborator_timeout_s: float = 30.0

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval_ms / 1000.0


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        value = None
    if value is None or value < minimum:
        log("invalid setting, using default", level=logging.WARNING, name=name, value=raw, default=default)
        return default
    return value


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        log("invalid setting, using default", level=logging.WARNING, name=name, value=raw, default=default)
        return default
    return value if value > 0 else default


def _env_list(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "")
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def default_node_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


def load_settings() -> Settings:
    load_dotenv()
    repo_root = Path(__file__).resolve().parent.parent
    db_path = os.getenv("QUEUE_DB_PATH") or str(repo_root / "data" / "activity_queue.db")

    return Settings(
        repo_root=repo_root,
        queue_db_path=Path(db_path),
        debounce_window_ms=_env_int("QUEUE_DEBOUNCE_WINDOW_MS", DEFAULT_DEBOUNCE_WINDOW_MS),
        historical_grace_ms=_env_int("QUEUE_HISTORICAL_GRACE_MS", DEFAULT_HISTORICAL_GRACE_MS),
        stuck_timeout_ms=_env_int("QUEUE_STUCK_TIMEOUT_MS", DEFAULT_STUCK_TIMEOUT_MS, minimum=1),
        poll_interval_ms=_env_int("QUEUE_POLL_INTERVAL_MS", DEFAULT_POLL_INTERVAL_MS, minimum=1),
        reclaim_interval_ms=_env_int("QUEUE_RECLAIM_INTERVAL_MS", DEFAULT_RECLAIM_INTERVAL_MS, minimum=1),
        worker_yield_ms=_env_int("QUEUE_WORKER_YIELD_MS", DEFAULT_WORKER_YIELD_MS),
        max_entity_workers=_env_int("QUEUE_MAX_ENTITY_WORKERS", 10, minimum=1),
        max_batch_workers=_env_int("QUEUE_MAX_BATCH_WORKERS", 5, minimum=1),
        max_retries=_env_int("QUEUE_MAX_RETRIES", 3),
        retention_days=_env_int("QUEUE_RETENTION_DAYS", 7, minimum=1),
        node_id=os.getenv("QUEUE_NODE_ID") or default_node_id(),
        api_token=os.getenv("QUEUE_API_TOKEN", "").strip(),
        admin_token=os.getenv("QUEUE_ADMIN_TOKEN", "").strip(),
        allowed_ips=_env_list("QUEUE_ALLOWED_IPS"),
        analytics_url=os.getenv("ANALYTICS_URL", "").strip(),
        recompute_url=os.getenv("RECOMPUTE_URL", "").strip(),
        action_pipeline_url=os.getenv("ACTION_PIPELINE_URL", "").strip(),
        collaborator_token=os.getenv("COLLABORATOR_TOKEN", "").strip(),
        collaborator_timeout_s=_env_float("COLLABORATOR_TIMEOUT_S", 30.0),
    )
