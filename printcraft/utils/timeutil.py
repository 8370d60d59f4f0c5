"""Timestamp helpers shared by the job store and the work queue."""

from datetime import datetime, timezone, timedelta


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_iso(offset_seconds: float = 0.0) -> str:
    """
    Current UTC time (plus an optional offset) as a sortable ISO string.

    Microseconds are always rendered so stored timestamps compare correctly
    as plain strings in SQL.
    """
    moment = utc_now() + timedelta(seconds=offset_seconds)
    return moment.isoformat(timespec="microseconds")


def parse_iso(value: str) -> datetime:
    return datetime.fromisoformat(value)
