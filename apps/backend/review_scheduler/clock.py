"""Single source of "now" for review operations.

壁時計の読み取りはここだけで行い、各操作の冒頭で一度だけ解決した値を
下位の関数へ明示的に渡す（日付をまたぐ処理でも today がぶれないように）。
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from zoneinfo import ZoneInfo

Clock = Callable[[], datetime]


def zone_clock(timezone_name: str) -> Clock:
    """Return a clock yielding aware datetimes in ``timezone_name``."""

    zone = ZoneInfo(timezone_name)

    def _now() -> datetime:
        return datetime.now(zone)

    return _now


def fixed_clock(moment: datetime) -> Clock:
    """Clock frozen at ``moment``."""

    def _now() -> datetime:
        return moment

    return _now
