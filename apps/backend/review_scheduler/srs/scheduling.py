"""Interval/ease update function (simplified SM-2).

間違えた問題の復習間隔と易しさ係数（ease）を更新する純粋関数群。
同じ入力からは常に同じ結果を返し、例外は送出しない（境界値はクランプで解決）。

- fail: interval=1, repetition_count=0, ease -= 0.2 (floor 1.3), 翌日に再出題
- hard: interval=round(interval*1.5), repetition_count+=1, ease -= 0.05
- easy: interval=round(interval*ease), repetition_count+=1, ease += 0.05 (ceiling 3.0)
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

from .errors import InvalidQuality

_EASE_QUANTUM = Decimal("0.0001")
_QUALITY_ALIASES = {"wrong": "fail"}


class Quality(str, Enum):
    """Self-reported recall quality for one review."""

    fail = "fail"
    hard = "hard"
    easy = "easy"


def parse_quality(raw: object) -> Quality:
    """Resolve a wire value into a Quality.

    受け付けるのは "easy" / "hard" / "fail" / "wrong" の完全一致のみ（大文字や前後空白は不可）。
    """

    if isinstance(raw, Quality):
        return raw
    if not isinstance(raw, str):
        raise InvalidQuality(raw)
    key = _QUALITY_ALIASES.get(raw, raw)
    try:
        return Quality(key)
    except ValueError as exc:
        raise InvalidQuality(raw) from exc


@dataclass(frozen=True)
class SchedulePolicy:
    """Tunable constants of the scheduler (ease bounds, penalties, mastery gate)."""

    default_ease: float = 2.5
    ease_floor: float = 1.3
    ease_ceiling: float = 3.0
    fail_ease_penalty: float = 0.2
    hard_ease_penalty: float = 0.05
    easy_ease_bonus: float = 0.05
    hard_interval_multiplier: float = 1.5
    max_interval_days: int = 36500
    mastery_min_repetitions: int = 5
    mastery_min_interval_days: int = 21


DEFAULT_POLICY = SchedulePolicy()


@dataclass(frozen=True)
class ScheduleState:
    interval: int
    repetition_count: int
    ease_factor: float
    next_review_date: date


def _dec(value: float) -> Decimal:
    return Decimal(repr(float(value)))


def _round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def _quantize_ease(value: Decimal) -> float:
    return float(value.quantize(_EASE_QUANTUM, rounding=ROUND_HALF_UP))


def _add_days(today: date, days: int) -> date:
    try:
        return today + timedelta(days=days)
    except OverflowError:
        return date.max


def _sanitize_ease(ease_factor: float, policy: SchedulePolicy) -> Decimal:
    try:
        ease = float(ease_factor)
    except (TypeError, ValueError):
        ease = policy.default_ease
    if not math.isfinite(ease):
        ease = policy.default_ease
    ease = min(policy.ease_ceiling, max(policy.ease_floor, ease))
    return _dec(ease)


def _sanitize_interval(interval: int, policy: SchedulePolicy) -> int:
    try:
        value = int(interval)
    except (TypeError, ValueError, OverflowError):
        value = 1
    return min(policy.max_interval_days, max(1, value))


def _clamp_interval(value: int, policy: SchedulePolicy) -> int:
    return min(policy.max_interval_days, max(1, value))


def schedule_review(
    state: ScheduleState,
    quality: Quality,
    today: date,
    policy: SchedulePolicy = DEFAULT_POLICY,
) -> ScheduleState:
    """Return the scheduling state after one review performed on ``today``.

    ``state.next_review_date`` is ignored; the new date is always derived from
    ``today`` so that late reviews are scheduled relative to when they happened.
    """

    interval = _sanitize_interval(state.interval, policy)
    repetitions = max(0, int(state.repetition_count or 0))
    ease = _sanitize_ease(state.ease_factor, policy)
    floor = _dec(policy.ease_floor)
    ceiling = _dec(policy.ease_ceiling)

    if quality is Quality.fail:
        new_ease = max(floor, ease - _dec(policy.fail_ease_penalty))
        return ScheduleState(
            interval=1,
            repetition_count=0,
            ease_factor=_quantize_ease(new_ease),
            next_review_date=_add_days(today, 1),
        )

    hard_interval = _clamp_interval(
        _round_half_up(Decimal(interval) * _dec(policy.hard_interval_multiplier)),
        policy,
    )
    if quality is Quality.hard:
        new_interval = hard_interval
        new_ease = max(floor, ease - _dec(policy.hard_ease_penalty))
    else:
        # easy は hard より短くならない（ease < hard 倍率のときの逆転防止）
        eased = _clamp_interval(_round_half_up(Decimal(interval) * ease), policy)
        new_interval = max(eased, hard_interval)
        new_ease = min(ceiling, ease + _dec(policy.easy_ease_bonus))

    return ScheduleState(
        interval=new_interval,
        repetition_count=repetitions + 1,
        ease_factor=_quantize_ease(new_ease),
        next_review_date=_add_days(today, new_interval),
    )


def preview_outcomes(
    state: ScheduleState,
    today: date,
    policy: SchedulePolicy = DEFAULT_POLICY,
) -> dict[Quality, ScheduleState]:
    """Project the outcome of every quality without committing anything."""

    return {quality: schedule_review(state, quality, today, policy) for quality in Quality}


def initial_schedule(created_on: date, policy: SchedulePolicy = DEFAULT_POLICY) -> ScheduleState:
    """Scheduling state of a freshly enqueued item: due the day after creation."""

    return ScheduleState(
        interval=1,
        repetition_count=0,
        ease_factor=policy.default_ease,
        next_review_date=_add_days(created_on, 1),
    )
