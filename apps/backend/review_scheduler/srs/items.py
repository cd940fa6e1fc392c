"""Review item model and its lifecycle transitions.

ReviewItem は「一度間違えた問題」1件分のスケジュール状態を保持する。
生成は enqueue、更新は apply_review（更新関数 + 習得判定）経由でのみ行う。
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime

from ..id_factory import generate_review_item_id
from .mastery import classify_mastery
from .scheduling import (
    DEFAULT_POLICY,
    Quality,
    SchedulePolicy,
    ScheduleState,
    initial_schedule,
    schedule_review,
)


@dataclass(frozen=True)
class ReviewSource:
    """Reference keys of an externally owned wrong-answer record."""

    source_question_ref: str
    subject_ref: str | None = None
    topic_ref: str | None = None


@dataclass(frozen=True)
class ReviewItem:
    id: str
    owner_id: str
    source_question_ref: str
    subject_ref: str | None
    topic_ref: str | None
    interval: int
    repetition_count: int
    ease_factor: float
    next_review_date: date
    created_at: datetime
    last_reviewed_at: datetime | None = None
    mastered_at: datetime | None = None
    version: int = 1

    @property
    def is_mastered(self) -> bool:
        return self.mastered_at is not None

    def schedule_state(self) -> ScheduleState:
        return ScheduleState(
            interval=self.interval,
            repetition_count=self.repetition_count,
            ease_factor=self.ease_factor,
            next_review_date=self.next_review_date,
        )


@dataclass(frozen=True)
class ReviewEvent:
    """History row written together with every persisted review."""

    item_id: str
    owner_id: str
    quality: Quality
    reviewed_at: datetime
    interval: int
    repetition_count: int
    ease_factor: float
    next_review_date: date
    mastered_at: datetime | None
    version: int


def new_review_item(
    owner_id: str,
    source: ReviewSource,
    now: datetime,
    policy: SchedulePolicy = DEFAULT_POLICY,
) -> ReviewItem:
    """Create the initial state for a newly enqueued wrong answer."""

    state = initial_schedule(now.date(), policy)
    return ReviewItem(
        id=generate_review_item_id(),
        owner_id=owner_id,
        source_question_ref=source.source_question_ref,
        subject_ref=source.subject_ref,
        topic_ref=source.topic_ref,
        interval=state.interval,
        repetition_count=state.repetition_count,
        ease_factor=state.ease_factor,
        next_review_date=state.next_review_date,
        created_at=now,
    )


def apply_review(
    item: ReviewItem,
    quality: Quality,
    now: datetime,
    policy: SchedulePolicy = DEFAULT_POLICY,
) -> tuple[ReviewItem, ReviewEvent]:
    """Compute the reviewed item and its history event.

    The returned item keeps the *read* version; stores bump it on write.
    ``now`` must already be in the review timezone so that ``now.date()`` is
    the student's "today".
    """

    new_state = schedule_review(item.schedule_state(), quality, now.date(), policy)
    mastered_at = classify_mastery(item.mastered_at, new_state, quality, now, policy)
    updated = replace(
        item,
        interval=new_state.interval,
        repetition_count=new_state.repetition_count,
        ease_factor=new_state.ease_factor,
        next_review_date=new_state.next_review_date,
        last_reviewed_at=now,
        mastered_at=mastered_at,
    )
    event = ReviewEvent(
        item_id=item.id,
        owner_id=item.owner_id,
        quality=quality,
        reviewed_at=now,
        interval=new_state.interval,
        repetition_count=new_state.repetition_count,
        ease_factor=new_state.ease_factor,
        next_review_date=new_state.next_review_date,
        mastered_at=mastered_at,
        version=item.version + 1,
    )
    return updated, event
