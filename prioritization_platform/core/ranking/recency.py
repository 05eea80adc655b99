from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Optional


RECENT_DAYS = 7
AGING_DAYS = 14

RECENT_WEIGHT = 1.0
AGING_WEIGHT = 0.5
STALE_WEIGHT = 0.25


def _aware(ts: datetime) -> datetime:
    # Naive timestamps are taken to be UTC.
    return ts if ts.tzinfo is not None else ts.replace(tzinfo=timezone.utc)


def age_in_days(created_at: datetime, now: Optional[datetime] = None) -> int:
    """Whole days elapsed since `created_at` (never negative)."""
    current = _aware(now) if now is not None else datetime.now(timezone.utc)
    elapsed = (current - _aware(created_at)).total_seconds()
    return max(0, math.floor(elapsed / 86400))


def recency_weight(created_at: datetime, now: Optional[datetime] = None) -> float:
    """Step weight: <=7 days -> 1.0, <=14 days -> 0.5, older -> 0.25."""
    days = age_in_days(created_at, now)
    if days <= RECENT_DAYS:
        return RECENT_WEIGHT
    if days <= AGING_DAYS:
        return AGING_WEIGHT
    return STALE_WEIGHT


def format_relative_time(created_at: datetime, now: Optional[datetime] = None) -> str:
    current = _aware(now) if now is not None else datetime.now(timezone.utc)
    seconds = max(0.0, (current - _aware(created_at)).total_seconds())

    minutes = math.floor(seconds / 60)
    hours = math.floor(seconds / 3600)
    days = math.floor(seconds / 86400)

    if minutes < 1:
        return "just now"
    if minutes < 60:
        return f"{minutes} minute{'s' if minutes != 1 else ''} ago"
    if hours < 24:
        return f"{hours} hour{'s' if hours != 1 else ''} ago"
    if days <= RECENT_DAYS - 1:
        return f"{days} day{'s' if days != 1 else ''} ago"
    return "7+ days ago"
