from __future__ import annotations

from datetime import datetime, time as dt_time
from zoneinfo import ZoneInfo

_NEW_YORK = ZoneInfo("America/New_York")
_OPEN = dt_time(9, 30)
_CLOSE = dt_time(16, 0)


def is_market_open(now: datetime | None = None) -> bool:
    """
    US regular-session gate, 09:30-16:00 America/New_York (no holiday calendar).
    `now` must be timezone-aware when given.
    """
    now_utc = now or datetime.now(tz=ZoneInfo("UTC"))
    now_local = now_utc.astimezone(_NEW_YORK)
    if now_local.weekday() >= 5:
        return False
    return _OPEN <= now_local.time() <= _CLOSE
