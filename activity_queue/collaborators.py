from __future__ import annotations

import threading
from typing import Any, Protocol

import requests

from .errors import BatchCancelledError, QueueError, TransientProcessingError
from .models import ActivityEvent


class CancellationToken:
    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise BatchCancelledError("recomputation cancelled")


class CancellationRegistry:
    """Tokens of recomputations running in this process, keyed by aggregate id."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tokens: dict[str, CancellationToken] = {}

    def register(self, aggregate_id: str) -> CancellationToken:
        token = CancellationToken()
        with self._lock:
            self._tokens[aggregate_id] = token
        return token

    def unregister(self, aggregate_id: str, token: CancellationToken) -> None:
        with self._lock:
            if self._tokens.get(aggregate_id) is token:
                del self._tokens[aggregate_id]

    def cancel(self, aggregate_id: str) -> bool:
        with self._lock:
            token = self._tokens.get(aggregate_id)
        if token is None:
            return False
        token.cancel()
        return True

    def active(self) -> list[str]:
        with self._lock:
            return sorted(self._tokens)


class AnalyticsProcessor(Protocol):
    def process(self, event: ActivityEvent) -> None: ...


class AggregateRecomputer(Protocol):
    """Recomputes an aggregate from its full history.

    May return a mapping whose optional "watermark" is the newest event
    timestamp the recomputation covered.
    """

    def recompute(self, aggregate_id: str, token: CancellationToken) -> dict[str, Any] | None: ...


def _headers(token: str) -> dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


def _post(session, url: str, payload: dict[str, Any], *, token: str, timeout: float) -> dict[str, Any]:
    try:
        response = session.post(url, json=payload, headers=_headers(token), timeout=timeout)
    except requests.RequestException as exc:
        raise TransientProcessingError(f"{url} unreachable: {exc}") from exc

    if response.status_code >= 500:
        raise TransientProcessingError(f"{url} returned HTTP {response.status_code}")
    if response.status_code >= 400:
        raise QueueError(f"{url} rejected request: HTTP {response.status_code} {response.text[:200]}")

    try:
        return response.json()
    except ValueError:
        return {}


class HttpAnalyticsProcessor:
    def __init__(self, url: str, *, token: str = "", timeout: float = 30.0, session=None):
        self.url = url
        self.token = token
        self.timeout = timeout
        self.session = session or requests.Session()

    def process(self, event: ActivityEvent) -> None:
        _post(
            self.session,
            self.url,
            event.model_dump(mode="json"),
            token=self.token,
            timeout=self.timeout,
        )


class HttpAggregateRecomputer:
    def __init__(self, url: str, *, token: str = "", timeout: float = 30.0, session=None):
        self.url = url
        self.token = token
        self.timeout = timeout
        self.session = session or requests.Session()

    def recompute(self, aggregate_id: str, token: CancellationToken) -> dict[str, Any]:
        token.raise_if_cancelled()
        result = _post(
            self.session,
            self.url,
            {"aggregate_id": aggregate_id},
            token=self.token,
            timeout=self.timeout,
        )
        token.raise_if_cancelled()
        return result
