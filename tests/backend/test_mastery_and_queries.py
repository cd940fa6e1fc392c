from dataclasses import replace
from datetime import UTC, date, datetime, timedelta

import pytest

from review_scheduler.srs.items import ReviewItem, ReviewSource, apply_review, new_review_item
from review_scheduler.srs.mastery import classify_mastery, is_mastery_reached
from review_scheduler.srs.queries import compute_stats, is_due, select_due
from review_scheduler.srs.scheduling import Quality, ScheduleState

TODAY = date(2024, 5, 1)
CREATED = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)


def _item(
    item_id: str,
    *,
    due: date = TODAY,
    ease: float = 2.5,
    mastered: bool = False,
    created_at: datetime = CREATED,
) -> ReviewItem:
    return ReviewItem(
        id=item_id,
        owner_id="owner-1",
        source_question_ref=f"q-{item_id}",
        subject_ref=None,
        topic_ref=None,
        interval=30 if mastered else 3,
        repetition_count=6 if mastered else 1,
        ease_factor=ease,
        next_review_date=due,
        created_at=created_at,
        mastered_at=CREATED if mastered else None,
    )


@pytest.mark.parametrize(
    "reps,interval,expected",
    [(4, 100, False), (5, 21, True), (5, 20, False), (9, 60, True)],
)
def test_mastery_requires_both_gates(reps, interval, expected):
    assert is_mastery_reached(reps, interval) is expected


def test_classify_mastery_keeps_original_timestamp_and_fail_clears():
    earlier = datetime(2024, 3, 1, tzinfo=UTC)
    later = datetime(2024, 4, 1, tzinfo=UTC)
    state = ScheduleState(interval=40, repetition_count=7, ease_factor=2.6, next_review_date=TODAY)

    assert classify_mastery(None, state, Quality.easy, later) == later
    assert classify_mastery(earlier, state, Quality.hard, later) == earlier
    assert classify_mastery(earlier, state, Quality.fail, later) is None


def test_fail_on_mastered_item_returns_it_to_rotation():
    item = replace(_item("m1", mastered=True), interval=30, repetition_count=6)
    now = datetime(2024, 5, 1, 8, 0, tzinfo=UTC)
    updated, event = apply_review(item, Quality.fail, now)

    assert updated.mastered_at is None
    assert updated.next_review_date == date(2024, 5, 2)
    assert event.version == item.version + 1
    assert updated.version == item.version


def test_fifth_success_reaching_21_days_masters_item():
    item = replace(_item("a"), interval=9, repetition_count=4, ease_factor=2.5)
    now = datetime(2024, 5, 1, 8, 0, tzinfo=UTC)
    updated, event = apply_review(item, Quality.easy, now)

    assert updated.interval == 23
    assert updated.repetition_count == 5
    assert updated.mastered_at == now
    assert event.mastered_at == now


def test_due_boundary():
    assert is_due(_item("today", due=TODAY), TODAY)
    assert is_due(_item("overdue", due=TODAY - timedelta(days=3)), TODAY)
    assert not is_due(_item("tomorrow", due=TODAY + timedelta(days=1)), TODAY)
    assert not is_due(_item("mastered", due=TODAY - timedelta(days=10), mastered=True), TODAY)


def test_select_due_orders_stalest_then_weakest_then_oldest():
    items = [
        _item("c", due=TODAY, ease=2.5),
        _item("b", due=TODAY, ease=1.9),
        _item("a", due=TODAY - timedelta(days=4), ease=2.8),
        _item("d", due=TODAY, ease=1.9, created_at=CREATED - timedelta(days=1)),
        _item("future", due=TODAY + timedelta(days=1), ease=1.3),
    ]
    assert [it.id for it in select_due(items, TODAY)] == ["a", "d", "b", "c"]
    assert [it.id for it in select_due(items, TODAY, limit=2)] == ["a", "d"]


def test_stats_for_ten_items():
    mastered = [_item(f"m{i}", mastered=True) for i in range(3)]
    due = [_item(f"d{i}", due=TODAY - timedelta(days=i)) for i in range(4)]
    later = [_item(f"l{i}", due=TODAY + timedelta(days=i + 1)) for i in range(3)]
    stats = compute_stats(mastered + due + later, TODAY)

    assert stats.due_today == 4
    assert stats.total_pending == 7
    assert stats.total_mastered == 3
    assert stats.due_today <= stats.total_pending
    assert stats.total_pending + stats.total_mastered == 10
    assert stats.due_today == len(select_due(mastered + due + later, TODAY))


def test_new_item_is_due_the_next_day(now):
    item = new_review_item("owner-1", ReviewSource("exam-1/q-7", subject_ref="math"), now)

    assert item.id.startswith("ri:")
    assert item.interval == 1
    assert item.repetition_count == 0
    assert item.ease_factor == 2.5
    assert item.next_review_date == date(2024, 5, 2)
    assert item.version == 1
    assert not is_due(item, now.date())
