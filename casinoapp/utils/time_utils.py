"""Timezone-aware datetime helpers used across the casino application."""

from __future__ import annotations

import datetime as dt

UTC = dt.timezone.utc


def now_utc() -> dt.datetime:
    """Return the current time as an aware ``datetime`` in UTC."""

    return dt.datetime.now(UTC)


def ensure_aware_utc(value: dt.datetime) -> dt.datetime:
    """Coerce ``value`` to an aware UTC datetime without altering the instant."""

    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def seconds_until(moment: dt.datetime, *, now: dt.datetime | None = None) -> float:
    """Return the non-negative number of seconds from ``now`` to ``moment``."""

    reference = ensure_aware_utc(now) if now is not None else now_utc()
    delta = (ensure_aware_utc(moment) - reference).total_seconds()
    return max(0.0, delta)


def format_remaining(seconds: float) -> str:
    total = int(max(0, seconds))
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"
