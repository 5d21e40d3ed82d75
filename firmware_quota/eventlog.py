"""CSV history of successful fetches with coarse event labels."""

import csv
import logging
import os
import time
from pathlib import Path

from .engine import EngineView
from .parser import RESET_UNAVAILABLE, QuotaSnapshot
from .timeutil import local_timestamp_string

lib_logger = logging.getLogger("firmware_quota")

LOG_COLUMNS = ["Timestamp", "Used", "Percentage", "Reset", "Event"]

FIRST_RUN = "FIRST_RUN"
UPDATE = "UPDATE"
QUOTA_RESET = "QUOTA_RESET"
POSSIBLE_RESET = "POSSIBLE_RESET"
HIGH_USAGE = "HIGH_USAGE"

RESET_EVENTS = (QUOTA_RESET, POSSIBLE_RESET)


def detect_event(current: QuotaSnapshot, previous: QuotaSnapshot | None) -> str:
    """Classify ``current`` against the last persisted row."""
    if previous is None or not previous.timestamp:
        return FIRST_RUN

    hours_diff = (current.timestamp - previous.timestamp) / 3600.0

    if current.percentage < previous.percentage - 20.0:
        return QUOTA_RESET
    if hours_diff >= 5.0 and current.percentage < 10.0:
        return POSSIBLE_RESET
    if current.percentage > previous.percentage + 10.0:
        return HIGH_USAGE
    return UPDATE


def read_last_log_entry(path: str | Path) -> QuotaSnapshot | None:
    try:
        with open(path, newline="") as f:
            rows = [row for row in csv.reader(f) if row]
    except FileNotFoundError:
        return None
    except (OSError, UnicodeDecodeError, csv.Error) as e:
        lib_logger.warning(f"Could not read log file {path}: {e}")
        return None

    if rows and rows[0] and rows[0][0] == LOG_COLUMNS[0]:
        rows = rows[1:]
    if not rows:
        return None

    row = rows[-1]
    try:
        timestamp_str, used_str, pct_str, reset_str = row[:4]
        return QuotaSnapshot(
            used_fraction=float(used_str),
            percentage=float(pct_str),
            reset_time=reset_str or RESET_UNAVAILABLE,
            timestamp=time.mktime(time.strptime(timestamp_str, "%Y-%m-%d %H:%M:%S")),
        )
    except (ValueError, OverflowError):
        lib_logger.warning(f"Unreadable last row in {path}: {row!r}")
        return None


def _as_logged(snapshot: QuotaSnapshot) -> QuotaSnapshot:
    """The snapshot as it reads back from a written row."""
    return QuotaSnapshot(
        used_fraction=round(snapshot.used_fraction, 4),
        percentage=round(snapshot.percentage, 2),
        reset_time=snapshot.reset_time or RESET_UNAVAILABLE,
        timestamp=float(int(snapshot.timestamp)),
    )


def write_log_entry(path: str | Path, snapshot: QuotaSnapshot, event: str) -> None:
    """Append one row; the header goes first when the file is new or empty."""
    write_header = not os.path.exists(path) or os.path.getsize(path) == 0
    with open(path, "a", newline="") as f:
        writer = csv.writer(f, lineterminator="\n")
        if write_header:
            writer.writerow(LOG_COLUMNS)
        writer.writerow([
            local_timestamp_string(snapshot.timestamp),
            f"{snapshot.used_fraction:.4f}",
            f"{snapshot.percentage:.2f}",
            snapshot.reset_time,
            event,
        ])


class QuotaLog:
    """Engine listener that appends one row per successful fetch.

    The file is read once for its last row; after that the last written row
    is kept in memory.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.last_event: str | None = None
        self._previous: QuotaSnapshot | None = None
        self._loaded = False

    def record(self, snapshot: QuotaSnapshot) -> str:
        if not self._loaded:
            self._previous = read_last_log_entry(self.path)
            self._loaded = True
        previous = self._previous
        event = detect_event(snapshot, previous)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            write_log_entry(self.path, snapshot, event)
            self._previous = _as_logged(snapshot)
        except OSError as e:
            lib_logger.warning(f"Could not write log file {self.path}: {e}")
        self.last_event = event
        if event in RESET_EVENTS:
            lib_logger.info(f"{event} detected at {snapshot.percentage:.2f}%")
        return event

    def on_snapshot_updated(self, view: EngineView) -> None:
        if view.snapshot is not None:
            self.record(view.snapshot)

    def on_error(self, view: EngineView) -> None:
        pass
