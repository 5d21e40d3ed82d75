"""Decode quota responses into snapshots."""

import json
import time
from dataclasses import dataclass

from .errors import ParseError
from .timeutil import parse_iso8601_utc

RESET_UNAVAILABLE = "N/A"
QUOTA_WINDOW_S = 5 * 60 * 60


@dataclass(frozen=True)
class QuotaSnapshot:
    used_fraction: float
    percentage: float
    reset_time: str = RESET_UNAVAILABLE
    timestamp: float = 0.0

    @property
    def has_reset(self) -> bool:
        return bool(self.reset_time) and self.reset_time != RESET_UNAVAILABLE

    def reset_epoch(self) -> int | None:
        if not self.has_reset:
            return None
        return parse_iso8601_utc(self.reset_time)

    def window_start(self) -> int | None:
        """Start of the 5-hour window this reset time closes, if known."""
        reset = self.reset_epoch()
        if reset is None:
            return None
        start = reset - QUOTA_WINDOW_S
        if start <= 0:
            return None
        return start

    def seconds_until_reset(self, now: float | None = None) -> int | None:
        reset = self.reset_epoch()
        if reset is None:
            return None
        if now is None:
            now = time.time()
        return max(0, int(reset - now))


def parse_quota(body: str, now: float | None = None) -> QuotaSnapshot:
    """Parse ``{"used": <number>, "reset": <iso8601>|null}``.

    Raises ``ParseError`` for malformed JSON or a missing, null or
    non-numeric ``used``.
    """
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, TypeError) as e:
        raise ParseError(f"invalid JSON ({e})") from e

    if not isinstance(data, dict):
        raise ParseError("expected a JSON object")
    used = data.get("used")
    if used is None:
        raise ParseError("missing 'used'")
    if isinstance(used, bool) or not isinstance(used, (int, float)):
        raise ParseError(f"'used' is not a number: {used!r}")

    reset = data.get("reset")
    if reset is not None and not isinstance(reset, str):
        raise ParseError(f"'reset' is not a string: {reset!r}")

    used = float(used)
    return QuotaSnapshot(
        used_fraction=used,
        percentage=used * 100.0,
        reset_time=reset or RESET_UNAVAILABLE,
        timestamp=time.time() if now is None else now,
    )
