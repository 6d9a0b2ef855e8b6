"""UTC calendar helpers. Day boundaries are always UTC."""

import time
from datetime import date, datetime, timedelta, timezone
from typing import Optional


def utc_now(now: Optional[float] = None) -> datetime:
    return datetime.fromtimestamp(time.time() if now is None else now, timezone.utc)


def utc_today(now: Optional[float] = None) -> date:
    return utc_now(now).date()


def yesterday_of(day: date) -> date:
    return day - timedelta(days=1)


def week_start(day: date) -> date:
    """Monday of the ISO week containing ``day``."""
    return day - timedelta(days=day.weekday())


def epoch_ms(now: Optional[float] = None) -> int:
    return int((time.time() if now is None else now) * 1000)


def minute_index(now: Optional[float] = None) -> int:
    return int((time.time() if now is None else now) // 60)
