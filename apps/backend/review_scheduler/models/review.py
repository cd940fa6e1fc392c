from __future__ import annotations

from datetime import date, datetime

from pydantic import BaseModel, Field

from ..srs.items import ReviewEvent, ReviewItem
from ..srs.queries import ReviewStats
from ..srs.session import PreviewOutcome


class ReviewItemResponse(BaseModel):
    """A single review item as shown to the student.

    - version: 採点時に expected_version として送り返すと二重送信を検出できる
    """

    id: str
    source_question_ref: str
    subject_ref: str | None = None
    topic_ref: str | None = None
    interval: int
    repetition_count: int
    ease_factor: float
    next_review_date: date
    last_reviewed_at: datetime | None = None
    mastered_at: datetime | None = None
    created_at: datetime
    is_mastered: bool
    version: int

    @classmethod
    def from_item(cls, item: ReviewItem) -> "ReviewItemResponse":
        return cls(
            id=item.id,
            source_question_ref=item.source_question_ref,
            subject_ref=item.subject_ref,
            topic_ref=item.topic_ref,
            interval=item.interval,
            repetition_count=item.repetition_count,
            ease_factor=item.ease_factor,
            next_review_date=item.next_review_date,
            last_reviewed_at=item.last_reviewed_at,
            mastered_at=item.mastered_at,
            created_at=item.created_at,
            is_mastered=item.is_mastered,
            version=item.version,
        )


class ReviewStatsResponse(BaseModel):
    """進捗の見える化用の統計レスポンス。

    - due_today: 今日出題すべき件数（期限切れを含む、習得済みは除く）
    - total_pending: 未習得の件数
    - total_mastered: 習得済みの件数
    """

    due_today: int
    total_pending: int
    total_mastered: int

    @classmethod
    def from_stats(cls, stats: ReviewStats) -> "ReviewStatsResponse":
        return cls(
            due_today=stats.due_today,
            total_pending=stats.total_pending,
            total_mastered=stats.total_mastered,
        )


class DueBatchResponse(BaseModel):
    """Response model for today's review batch.

    今日の復習対象（期限が来たアイテム）と、同じスナップショットから算出した統計。
    """

    today: date
    items: list[ReviewItemResponse]
    stats: ReviewStatsResponse


class SubmitReviewRequest(BaseModel):
    """復習結果の送信リクエスト。

    - quality: easy | hard | wrong（fail も可）
    - expected_version: 表示していたアイテムの version（任意）
    """

    item_id: str = Field(min_length=1, max_length=256)
    quality: str = Field(min_length=1, max_length=16)
    expected_version: int | None = Field(default=None, ge=1)


class PreviewOutcomeResponse(BaseModel):
    quality: str
    interval: int
    repetition_count: int
    ease_factor: float
    next_review_date: date
    mastered: bool

    @classmethod
    def from_outcome(cls, outcome: PreviewOutcome) -> "PreviewOutcomeResponse":
        return cls(
            quality=outcome.quality.value,
            interval=outcome.state.interval,
            repetition_count=outcome.state.repetition_count,
            ease_factor=outcome.state.ease_factor,
            next_review_date=outcome.state.next_review_date,
            mastered=outcome.mastered,
        )


class ReviewPreviewResponse(BaseModel):
    """各評価を選んだ場合の次回出題日（読み取り専用の試算）。"""

    item: ReviewItemResponse
    today: date
    outcomes: list[PreviewOutcomeResponse]


class ReviewEventResponse(BaseModel):
    quality: str
    reviewed_at: datetime
    interval: int
    repetition_count: int
    ease_factor: float
    next_review_date: date
    mastered_at: datetime | None = None
    version: int

    @classmethod
    def from_event(cls, event: ReviewEvent) -> "ReviewEventResponse":
        return cls(
            quality=event.quality.value,
            reviewed_at=event.reviewed_at,
            interval=event.interval,
            repetition_count=event.repetition_count,
            ease_factor=event.ease_factor,
            next_review_date=event.next_review_date,
            mastered_at=event.mastered_at,
            version=event.version,
        )


class ReviewHistoryResponse(BaseModel):
    item_id: str
    events: list[ReviewEventResponse]


class EnqueueSource(BaseModel):
    source_question_ref: str = Field(min_length=1, max_length=256)
    subject_ref: str | None = Field(default=None, max_length=256)
    topic_ref: str | None = Field(default=None, max_length=256)


class EnqueueRequest(BaseModel):
    """誤答した問題を復習キューへ登録するリクエスト（登録済みの問題はスキップ）。"""

    sources: list[EnqueueSource] = Field(min_length=1, max_length=500)


class EnqueueResponse(BaseModel):
    added: list[ReviewItemResponse]
    already_exists: int


class DeleteBySourceResponse(BaseModel):
    deleted: int
