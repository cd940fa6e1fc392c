"""Error taxonomy for the review scheduler.

復習スケジューラの例外階層。HTTP への変換は FastAPI の例外ハンドラ側でのみ行う。
"""

from __future__ import annotations


class SchedulerError(Exception):
    """Base class for every error raised by the scheduler core."""

    code = "scheduler_error"
    retryable = False


class ValidationError(SchedulerError):
    """Malformed or missing input, rejected before any state is read."""

    code = "validation_error"


class InvalidQuality(ValidationError):
    code = "invalid_quality"

    def __init__(self, raw: object) -> None:
        super().__init__(f"quality must be one of easy, hard, wrong/fail (got {raw!r})")
        self.raw = raw


class NotFoundError(SchedulerError):
    code = "not_found"


class ItemNotFound(NotFoundError):
    """Unknown item id, or an item owned by someone else."""

    def __init__(self, item_id: str) -> None:
        super().__init__(f"review item {item_id!r} not found")
        self.item_id = item_id


class ConcurrencyConflict(SchedulerError):
    """The stored version moved between read and write.

    Retrying the whole review event is safe because the update function is pure.
    """

    code = "concurrency_conflict"
    retryable = True

    def __init__(self, item_id: str, *, expected_version: int, actual_version: int | None) -> None:
        super().__init__(
            f"review item {item_id!r} changed concurrently "
            f"(expected version {expected_version}, found {actual_version})"
        )
        self.item_id = item_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class StoreUnavailable(SchedulerError):
    """Transient infrastructure failure. No partial state was written."""

    code = "store_unavailable"
    retryable = True

    def __init__(self, operation: str, reason: str) -> None:
        super().__init__(f"review store unavailable during {operation}: {reason}")
        self.operation = operation
        self.reason = reason
