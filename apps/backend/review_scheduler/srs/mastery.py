from __future__ import annotations

from datetime import datetime

from .scheduling import DEFAULT_POLICY, Quality, SchedulePolicy, ScheduleState


def is_mastery_reached(
    repetition_count: int,
    interval: int,
    policy: SchedulePolicy = DEFAULT_POLICY,
) -> bool:
    """Both gates must hold: a streak on a short interval does not retire an item."""

    return (
        repetition_count >= policy.mastery_min_repetitions
        and interval >= policy.mastery_min_interval_days
    )


def classify_mastery(
    previous_mastered_at: datetime | None,
    new_state: ScheduleState,
    quality: Quality,
    now: datetime,
    policy: SchedulePolicy = DEFAULT_POLICY,
) -> datetime | None:
    """Return the ``mastered_at`` value an item should carry after a review.

    - fail は常に解除して通常ローテーションへ戻す
    - 既に習得済みで条件を満たし続ける場合は元の習得日時を保持する
    """

    if quality is Quality.fail:
        return None
    if not is_mastery_reached(new_state.repetition_count, new_state.interval, policy):
        return None
    return previous_mastered_at or now
