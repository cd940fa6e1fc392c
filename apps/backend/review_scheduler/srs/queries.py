"""Due query engine and stats aggregation over one owner's snapshot.

どちらも同じスナップショット（list_items の結果）と同じ today を受け取ることで、
出題リストと件数表示の整合を保つ。
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date

from .items import ReviewItem


@dataclass(frozen=True)
class ReviewStats:
    due_today: int
    total_pending: int
    total_mastered: int


def is_due(item: ReviewItem, today: date) -> bool:
    return item.mastered_at is None and item.next_review_date <= today


def _due_order(item: ReviewItem) -> tuple:
    # next_review_date 昇順 = 期限超過日数の降順。同順位は ease の低い（苦手な）ものを先に。
    return (item.next_review_date, item.ease_factor, item.created_at, item.id)


def select_due(
    items: Iterable[ReviewItem],
    today: date,
    limit: int | None = None,
) -> list[ReviewItem]:
    """Return non-mastered items due on or before ``today``, stalest and weakest first."""

    due = sorted((item for item in items if is_due(item, today)), key=_due_order)
    if limit is not None:
        return due[: max(0, int(limit))]
    return due


def compute_stats(items: Sequence[ReviewItem], today: date) -> ReviewStats:
    due_today = 0
    pending = 0
    mastered = 0
    for item in items:
        if item.mastered_at is not None:
            mastered += 1
            continue
        pending += 1
        if item.next_review_date <= today:
            due_today += 1
    return ReviewStats(due_today=due_today, total_pending=pending, total_mastered=mastered)
