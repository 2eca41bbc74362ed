from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterable, Protocol

import requests

from .aggregates import AggregateLookup
from .db import batch_conflict_for_entity
from .logs import log


class PostProcessingHook(Protocol):
    def after_activity(self, item: dict[str, Any]) -> None: ...

    def after_batch(self, item: dict[str, Any]) -> None: ...


class NullHook:
    def after_activity(self, item: dict[str, Any]) -> None:
        return None

    def after_batch(self, item: dict[str, Any]) -> None:
        return None


class CompositeHook:
    def __init__(self, hooks: Iterable[PostProcessingHook]):
        self.hooks = list(hooks)

    def after_activity(self, item: dict[str, Any]) -> None:
        for hook in self.hooks:
            try:
                hook.after_activity(item)
            except Exception as exc:
                log("post-processing hook failed", level=logging.WARNING, hook=type(hook).__name__,
                    item_id=item.get("id"), error=str(exc))

    def after_batch(self, item: dict[str, Any]) -> None:
        for hook in self.hooks:
            try:
                hook.after_batch(item)
            except Exception as exc:
                log("post-processing hook failed", level=logging.WARNING, hook=type(hook).__name__,
                    item_id=item.get("id"), error=str(exc))


class ActionPipelineWebhook:
    """Notifies the action-suggestion service once analytics are up to date.

    After a single activity the call is skipped while a batch is pending or
    running for the entity; that batch reports when it finishes.
    """

    def __init__(
        self,
        url: str,
        db_path: Path,
        *,
        lookup: AggregateLookup | None = None,
        token: str = "",
        timeout: float = 30.0,
        session=None,
    ):
        self.url = url
        self.db_path = db_path
        self.lookup = lookup
        self.token = token
        self.timeout = timeout
        self.session = session or requests.Session()

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _post(self, payload: dict[str, Any]) -> bool:
        try:
            response = self.session.post(self.url, json=payload, headers=self._headers(), timeout=self.timeout)
        except requests.RequestException as exc:
            log("action pipeline unreachable", level=logging.WARNING, error=str(exc), item_id=payload["item_id"])
            return False
        if response.status_code >= 400:
            log("action pipeline rejected notification", level=logging.WARNING,
                status_code=response.status_code, item_id=payload["item_id"])
            return False
        return True

    def after_activity(self, item: dict[str, Any]) -> None:
        conflict = batch_conflict_for_entity(self.db_path, item["entity_id"])
        if conflict["pending"] or conflict["running"]:
            log("action pipeline skipped, batch active", level=logging.DEBUG,
                entity_id=item["entity_id"], item_id=item["id"])
            return
        aggregate_ids = []
        if self.lookup is not None:
            aggregate_ids = [a.aggregate_id for a in self.lookup.aggregates_for_entity(item["entity_id"])]
        self._post(
            {
                "kind": "activity",
                "item_id": item["id"],
                "entity_id": item["entity_id"],
                "owner_group_id": item["owner_group_id"],
                "source_event_id": item["source_event_id"],
                "source_event_kind": item["source_event_kind"],
                "aggregate_ids": aggregate_ids,
            }
        )

    def after_batch(self, item: dict[str, Any]) -> None:
        self._post(
            {
                "kind": "batch_reprocess",
                "item_id": item["id"],
                "entity_id": item["entity_id"],
                "owner_group_id": item["owner_group_id"],
                "aggregate_id": item["aggregate_id"],
            }
        )
