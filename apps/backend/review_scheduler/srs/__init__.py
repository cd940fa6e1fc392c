"""Pure scheduling core: update function, mastery rule, due query and stats.

ストアや時計に依存しない部分だけを公開する（ReviewSession は srs.session から import する）。
"""

from .errors import (
    ConcurrencyConflict,
    InvalidQuality,
    ItemNotFound,
    NotFoundError,
    SchedulerError,
    StoreUnavailable,
    ValidationError,
)
from .items import ReviewEvent, ReviewItem, ReviewSource, apply_review, new_review_item
from .mastery import classify_mastery, is_mastery_reached
from .queries import ReviewStats, compute_stats, is_due, select_due
from .scheduling import (
    DEFAULT_POLICY,
    Quality,
    SchedulePolicy,
    ScheduleState,
    initial_schedule,
    parse_quality,
    preview_outcomes,
    schedule_review,
)

__all__ = [
    "ConcurrencyConflict",
    "DEFAULT_POLICY",
    "InvalidQuality",
    "ItemNotFound",
    "NotFoundError",
    "Quality",
    "ReviewEvent",
    "ReviewItem",
    "ReviewSource",
    "ReviewStats",
    "SchedulePolicy",
    "ScheduleState",
    "SchedulerError",
    "StoreUnavailable",
    "ValidationError",
    "apply_review",
    "classify_mastery",
    "compute_stats",
    "initial_schedule",
    "is_due",
    "is_mastery_reached",
    "new_review_item",
    "parse_quality",
    "preview_outcomes",
    "schedule_review",
    "select_due",
]
