import json
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from firmware_quota.client import RequestResult


class FakeClock:
    def __init__(self, start: float = 1_735_700_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeClient:
    """Stands in for QuotaClient; replies from a queue and records headers."""

    def __init__(self, replies=None):
        self.replies = list(replies or [])
        self.headers: list[tuple[str, str]] = []
        self.closed = False

    def queue(self, *replies: RequestResult) -> None:
        self.replies.extend(replies)

    def fetch(self, header: tuple[str, str]) -> RequestResult:
        self.headers.append(header)
        reply = self.replies.pop(0)
        if callable(reply):
            return reply(header)
        return reply

    def close(self) -> None:
        self.closed = True


def ok_body(used, reset=None) -> RequestResult:
    payload = {"used": used}
    if reset is not None:
        payload["reset"] = reset
    return RequestResult(http_status=200, body=json.dumps(payload))


def unauthorized() -> RequestResult:
    return RequestResult(http_status=401, body='{"error": "Unauthorized"}')


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_client() -> FakeClient:
    return FakeClient()
