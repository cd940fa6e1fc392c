from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import UTC, date, datetime
from typing import Any, Protocol

from ..srs.items import ReviewEvent, ReviewItem
from ..srs.scheduling import parse_quality


class ReviewItemStore(Protocol):
    """Persistence contract shared by the SQLite and Firestore backends."""

    def insert_if_absent(self, items: Sequence[ReviewItem]) -> list[ReviewItem]: ...

    def get_item(self, item_id: str) -> ReviewItem | None: ...

    def list_items(self, owner_id: str) -> list[ReviewItem]: ...

    def save_review(
        self, item: ReviewItem, *, expected_version: int, event: ReviewEvent
    ) -> ReviewItem: ...

    def delete_by_source(self, owner_id: str, source_question_ref: str) -> int: ...

    def list_events(self, item_id: str, *, limit: int = 50) -> list[ReviewEvent]: ...


def normalize_non_negative_int(value: Any) -> int:
    """与えられた値を非負整数に正規化する。"""

    try:
        ivalue = int(value)
    except (TypeError, ValueError):
        return 0
    return ivalue if ivalue >= 0 else 0


def _positive_int(value: Any, default: int = 1) -> int:
    try:
        ivalue = int(value)
    except (TypeError, ValueError):
        return default
    return ivalue if ivalue >= 1 else default


def format_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.isoformat()


def parse_datetime(raw: Any) -> datetime | None:
    """Parse a stored ISO timestamp; naive values are read as UTC."""

    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        parsed = raw
    else:
        parsed = datetime.fromisoformat(str(raw))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def parse_date(raw: Any) -> date:
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    return date.fromisoformat(str(raw)[:10])


def item_to_record(item: ReviewItem) -> dict[str, Any]:
    """Flatten a ReviewItem into a storage row/document."""

    return {
        "id": item.id,
        "owner_id": item.owner_id,
        "source_question_ref": item.source_question_ref,
        "subject_ref": item.subject_ref,
        "topic_ref": item.topic_ref,
        "interval_days": int(item.interval),
        "repetition_count": int(item.repetition_count),
        "ease_factor": float(item.ease_factor),
        "next_review_date": item.next_review_date.isoformat(),
        "last_reviewed_at": format_datetime(item.last_reviewed_at),
        "mastered_at": format_datetime(item.mastered_at),
        "created_at": format_datetime(item.created_at),
        "version": int(item.version),
    }


def item_from_record(record: Mapping[str, Any], *, item_id: str | None = None) -> ReviewItem:
    created_at = parse_datetime(record.get("created_at"))
    if created_at is None:
        raise ValueError(f"review item {record.get('id') or item_id!r} has no created_at")
    return ReviewItem(
        id=str(record.get("id") or item_id or ""),
        owner_id=str(record.get("owner_id") or ""),
        source_question_ref=str(record.get("source_question_ref") or ""),
        subject_ref=record.get("subject_ref") or None,
        topic_ref=record.get("topic_ref") or None,
        interval=_positive_int(record.get("interval_days")),
        repetition_count=normalize_non_negative_int(record.get("repetition_count")),
        ease_factor=float(record.get("ease_factor")),
        next_review_date=parse_date(record.get("next_review_date")),
        created_at=created_at,
        last_reviewed_at=parse_datetime(record.get("last_reviewed_at")),
        mastered_at=parse_datetime(record.get("mastered_at")),
        version=_positive_int(record.get("version")),
    )


def event_to_record(event: ReviewEvent) -> dict[str, Any]:
    return {
        "item_id": event.item_id,
        "owner_id": event.owner_id,
        "quality": event.quality.value,
        "reviewed_at": format_datetime(event.reviewed_at),
        "interval_days": int(event.interval),
        "repetition_count": int(event.repetition_count),
        "ease_factor": float(event.ease_factor),
        "next_review_date": event.next_review_date.isoformat(),
        "mastered_at": format_datetime(event.mastered_at),
        "version": int(event.version),
    }


def event_from_record(record: Mapping[str, Any]) -> ReviewEvent:
    reviewed_at = parse_datetime(record.get("reviewed_at"))
    if reviewed_at is None:
        raise ValueError(f"review event for {record.get('item_id')!r} has no reviewed_at")
    return ReviewEvent(
        item_id=str(record.get("item_id") or ""),
        owner_id=str(record.get("owner_id") or ""),
        quality=parse_quality(record.get("quality")),
        reviewed_at=reviewed_at,
        interval=_positive_int(record.get("interval_days")),
        repetition_count=normalize_non_negative_int(record.get("repetition_count")),
        ease_factor=float(record.get("ease_factor")),
        next_review_date=parse_date(record.get("next_review_date")),
        mastered_at=parse_datetime(record.get("mastered_at")),
        version=_positive_int(record.get("version")),
    )
