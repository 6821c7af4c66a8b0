"""Time bucketing for report periods.

``resolve_period`` is pure and total: every instant maps to exactly one
bucket, the bucket contains the instant, and all instants of the same
window map to equal ``Period`` values.  Buckets start at local midnight
(or the top of the local hour) in the configured zone and end on the
last representable instant before the next bucket.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone, tzinfo

from report_aggregator.core.enums import Granularity
from report_aggregator.core.models import Period

_RESOLUTION = timedelta(microseconds=1)
_EARLIEST = datetime.min.replace(tzinfo=timezone.utc)
_LATEST = datetime.max.replace(tzinfo=timezone.utc)


def _window_start(local: datetime, granularity: Granularity) -> datetime:
    if granularity == Granularity.DAILY:
        return datetime(local.year, local.month, local.day, tzinfo=local.tzinfo)
    if granularity == Granularity.HOURLY:
        return local.replace(minute=0, second=0, microsecond=0)
    raise ValueError(f"Unsupported granularity: {granularity!r}")


def _next_window_start(start: datetime, granularity: Granularity) -> datetime:
    if granularity == Granularity.DAILY:
        # Wall-clock arithmetic so 23h/25h DST days still end at midnight.
        following = start.date() + timedelta(days=1)
        return datetime(
            following.year, following.month, following.day, tzinfo=start.tzinfo,
        )
    # Hours are fixed-length in UTC.
    try:
        return start.astimezone(timezone.utc) + timedelta(hours=1)
    except OverflowError:
        # Start falls before year 1 in UTC; step the local wall clock.
        return start + timedelta(hours=1)


def resolve_period(
    timestamp: datetime,
    granularity: Granularity = Granularity.DAILY,
    tz: tzinfo = timezone.utc,
) -> Period:
    """Map *timestamp* to the bucket of the given *granularity*.

    Args:
        timestamp: Instant to bucket.  Naive values are taken as UTC.
        granularity: Bucket width.
        tz: Zone whose wall clock defines bucket boundaries.

    Returns:
        A :class:`Period` with UTC bounds such that
        ``period.contains(timestamp)`` holds.
    """
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    try:
        local = timestamp.astimezone(tz)
    except OverflowError:
        # Local wall clock falls outside years 1..9999; bucket on UTC.
        local = timestamp.astimezone(timezone.utc)
    start = _window_start(local, granularity)

    # Buckets touching the edges of the datetime range are clamped to it.
    try:
        utc_start = start.astimezone(timezone.utc)
    except OverflowError:
        utc_start = _EARLIEST
    try:
        end = _next_window_start(start, granularity).astimezone(timezone.utc) - _RESOLUTION
    except OverflowError:
        end = _LATEST
    return Period(start=utc_start, end=end, granularity=granularity)


def daily(timestamp: datetime, tz: tzinfo = timezone.utc) -> Period:
    return resolve_period(timestamp, Granularity.DAILY, tz)


def hourly(timestamp: datetime, tz: tzinfo = timezone.utc) -> Period:
    return resolve_period(timestamp, Granularity.HOURLY, tz)
