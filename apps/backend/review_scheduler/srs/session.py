"""Session controller: one review pass over the due items of a single owner.

サーバ側にセッション状態は保存しない。どのカードを表示済みか・何件レビューしたかは
呼び出し側のローカル状態として扱い、ここでは「出題バッチ取得」と「1件ずつの採点」
だけを提供する。
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date

from ..clock import Clock, zone_clock
from ..logging import logger
from ..store.common import ReviewItemStore
from .errors import ConcurrencyConflict, ItemNotFound, ValidationError
from .items import ReviewEvent, ReviewItem, ReviewSource, apply_review, new_review_item
from .mastery import classify_mastery
from .queries import ReviewStats, compute_stats, select_due
from .scheduling import DEFAULT_POLICY, Quality, SchedulePolicy, ScheduleState, parse_quality, preview_outcomes


@dataclass(frozen=True)
class DueBatch:
    today: date
    items: list[ReviewItem]
    stats: ReviewStats


@dataclass(frozen=True)
class PreviewOutcome:
    quality: Quality
    state: ScheduleState
    mastered: bool


@dataclass(frozen=True)
class ReviewPreview:
    item: ReviewItem
    today: date
    outcomes: list[PreviewOutcome]


@dataclass(frozen=True)
class ReviewSubmission:
    """Persisted item plus the mastery transition caused by this review."""

    item: ReviewItem
    newly_mastered: bool
    reentered: bool


@dataclass(frozen=True)
class EnqueueResult:
    added: list[ReviewItem]
    already_exists: int


def _require_text(value: object, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} is required")
    return value.strip()


class ReviewSession:
    """Orchestrates fetch → report → update → persist for one owner at a time."""

    def __init__(
        self,
        store: ReviewItemStore,
        *,
        policy: SchedulePolicy = DEFAULT_POLICY,
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._policy = policy
        self._clock = clock or zone_clock("UTC")

    def _load_owned(self, owner_id: str, item_id: str) -> ReviewItem:
        item = self._store.get_item(item_id)
        # 他人のアイテムは存在しないものとして扱う
        if item is None or item.owner_id != owner_id:
            raise ItemNotFound(item_id)
        return item

    def start(self, owner_id: str, *, limit: int | None = None) -> DueBatch:
        """Fetch the due batch and stats from one snapshot with one resolved ``today``."""

        owner = _require_text(owner_id, "owner_id")
        if limit is not None and limit < 1:
            raise ValidationError("limit must be a positive integer")
        today = self._clock().date()
        snapshot = self._store.list_items(owner)
        items = select_due(snapshot, today, limit)
        stats = compute_stats(snapshot, today)
        logger.info(
            "review_batch_fetched",
            owner_id=owner,
            today=today.isoformat(),
            returned=len(items),
            due_today=stats.due_today,
            total_pending=stats.total_pending,
            total_mastered=stats.total_mastered,
        )
        return DueBatch(today=today, items=items, stats=stats)

    def stats(self, owner_id: str) -> ReviewStats:
        owner = _require_text(owner_id, "owner_id")
        today = self._clock().date()
        return compute_stats(self._store.list_items(owner), today)

    def review_one(
        self,
        owner_id: str,
        item_id: str,
        quality: object,
        *,
        expected_version: int | None = None,
    ) -> ReviewItem:
        """Apply one quality report and return the persisted item."""

        return self.submit(owner_id, item_id, quality, expected_version=expected_version).item

    def submit(
        self,
        owner_id: str,
        item_id: str,
        quality: object,
        *,
        expected_version: int | None = None,
    ) -> ReviewSubmission:
        """Apply one quality report and persist the new state.

        ``expected_version`` is the version the caller displayed; a mismatch means
        the item already moved on (e.g. a retried double-submit) and is rejected.
        """

        parsed = parse_quality(quality)
        owner = _require_text(owner_id, "owner_id")
        key = _require_text(item_id, "item_id")
        if expected_version is not None and expected_version < 1:
            raise ValidationError("expected_version must be a positive integer")

        item = self._load_owned(owner, key)
        if expected_version is not None and expected_version != item.version:
            raise ConcurrencyConflict(
                item.id,
                expected_version=expected_version,
                actual_version=item.version,
            )

        now = self._clock()
        updated, event = apply_review(item, parsed, now, self._policy)
        saved = self._store.save_review(updated, expected_version=item.version, event=event)
        logger.info(
            "review_submitted",
            owner_id=owner,
            item_id=saved.id,
            quality=parsed.value,
            interval=saved.interval,
            ease_factor=saved.ease_factor,
            repetition_count=saved.repetition_count,
            next_review_date=saved.next_review_date.isoformat(),
            mastered=saved.is_mastered,
            version=saved.version,
        )
        newly_mastered = saved.is_mastered and not item.is_mastered
        reentered = item.is_mastered and not saved.is_mastered
        if newly_mastered:
            logger.info("review_item_mastered", owner_id=owner, item_id=saved.id)
        elif reentered:
            logger.info("review_item_reentered", owner_id=owner, item_id=saved.id)
        return ReviewSubmission(item=saved, newly_mastered=newly_mastered, reentered=reentered)

    def preview(self, owner_id: str, item_id: str) -> ReviewPreview:
        """Projected outcome of each quality against the current state, read-only."""

        owner = _require_text(owner_id, "owner_id")
        item = self._load_owned(owner, _require_text(item_id, "item_id"))
        now = self._clock()
        today = now.date()
        outcomes = [
            PreviewOutcome(
                quality=quality,
                state=state,
                mastered=classify_mastery(item.mastered_at, state, quality, now, self._policy) is not None,
            )
            for quality, state in preview_outcomes(item.schedule_state(), today, self._policy).items()
        ]
        return ReviewPreview(item=item, today=today, outcomes=outcomes)

    def enqueue(self, owner_id: str, sources: Iterable[ReviewSource]) -> EnqueueResult:
        """Start spaced review for wrong answers; already queued sources are skipped."""

        owner = _require_text(owner_id, "owner_id")
        unique: dict[str, ReviewSource] = {}
        for source in sources:
            ref = _require_text(source.source_question_ref, "source_question_ref")
            unique.setdefault(ref, ReviewSource(ref, source.subject_ref, source.topic_ref))
        if not unique:
            raise ValidationError("at least one source is required")

        now = self._clock()
        candidates = [new_review_item(owner, src, now, self._policy) for src in unique.values()]
        added = self._store.insert_if_absent(candidates)
        already_exists = len(candidates) - len(added)
        logger.info("review_items_enqueued", owner_id=owner, added=len(added), already_exists=already_exists)
        return EnqueueResult(added=added, already_exists=already_exists)

    def remove_for_source(self, owner_id: str, source_question_ref: str) -> int:
        """Cascade delete triggered when the source wrong-answer record is deleted."""

        owner = _require_text(owner_id, "owner_id")
        ref = _require_text(source_question_ref, "source_question_ref")
        deleted = self._store.delete_by_source(owner, ref)
        logger.info("review_items_deleted", owner_id=owner, source_question_ref=ref, deleted=deleted)
        return deleted

    def history(self, owner_id: str, item_id: str, *, limit: int = 50) -> list[ReviewEvent]:
        owner = _require_text(owner_id, "owner_id")
        item = self._load_owned(owner, _require_text(item_id, "item_id"))
        return self._store.list_events(item.id, limit=limit)
