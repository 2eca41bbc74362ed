from __future__ import annotations

import json
import logging
import os

_LOG = logging.getLogger("activity_queue")


def configure_logging(level_name: str | None = None) -> None:
    level_name = (level_name or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s activity-queue %(levelname)s: %(message)s",
    )


def log(msg: str, level: int = logging.INFO, **fields) -> None:
    payload = {"message": msg, **fields}
    _LOG.log(level, json.dumps(payload, ensure_ascii=False, sort_keys=True, default=str))
