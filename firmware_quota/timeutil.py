"""Timestamp parsing and compact duration formatting."""

import calendar
import time
from datetime import datetime


def parse_iso8601_utc(text: str) -> int | None:
    """Parse the ``YYYY-MM-DDTHH:MM:SS`` prefix of an ISO 8601 UTC string.

    Fractional seconds, ``Z`` and offsets after the first 19 characters are
    ignored. Returns epoch seconds, or ``None`` when unparsable.
    """
    if not text or len(text) < 19:
        return None
    try:
        parsed = time.strptime(text[:19], "%Y-%m-%dT%H:%M:%S")
    except ValueError:
        return None
    return calendar.timegm(parsed)


def format_duration_compact(seconds: float) -> str:
    total = max(0, int(seconds))
    hours = total // 3600
    minutes = (total % 3600) // 60
    secs = total % 60
    if hours > 0:
        return f"{hours}h {minutes}m"
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def format_duration_tight(seconds: float) -> str:
    total = max(0, int(seconds))
    hours = total // 3600
    minutes = (total % 3600) // 60
    secs = total % 60
    if hours > 99:
        return "99h+"
    if hours > 0:
        return f"{hours}h{minutes}m"
    if minutes > 0:
        return f"{minutes}m{secs}s"
    return f"{secs}s"


def format_timestamp(iso_timestamp: str) -> str:
    """Render an ISO 8601 UTC timestamp in local time, or return it unchanged."""
    epoch = parse_iso8601_utc(iso_timestamp)
    if epoch is None:
        return iso_timestamp
    return datetime.fromtimestamp(epoch).astimezone().strftime("%Y-%m-%d %H:%M:%S %Z")


def local_timestamp_string(epoch: float | None = None) -> str:
    if epoch is None:
        epoch = time.time()
    return datetime.fromtimestamp(epoch).strftime("%Y-%m-%d %H:%M:%S")


def truncate_for_display(text: str, max_len: int) -> str:
    if len(text) <= max_len:
        return text
    return text[:max_len] + "..."
