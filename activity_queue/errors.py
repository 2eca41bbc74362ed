from __future__ import annotations


class QueueError(Exception):
    pass


class EventValidationError(QueueError, ValueError):
    """Event is missing a required field. Rejected before enqueue, never retried."""

    def __init__(self, message: str, missing: list[str] | None = None):
        super().__init__(message)
        self.missing = list(missing or [])


class TransientProcessingError(QueueError):
    """A collaborator call failed; the item is retried up to its max_retries."""


class BatchCancelledError(QueueError):
    """A running recomputation was superseded and unwound."""


class RaceConditionConflict(QueueError):
    """Concurrent writers kept winning; only raised when no row could be read back."""


class UnknownAggregateError(QueueError, LookupError):
    pass
