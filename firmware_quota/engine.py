"""Refresh engine: fetch orchestration, last-good retention and delta tracking.

The engine owns all mutable quota state. A fetch runs in three steps so the
network call can live on a worker thread while state changes stay on the
caller's (UI) thread:

    job = engine.begin()          # drop-if-busy, clears last_error
    outcome = engine.perform(job) # blocking, touches no state
    engine.complete(outcome)      # applies success/failure under the lock

``refresh()`` chains the three for loop-driven callers. Readers get an
immutable ``EngineView`` copied out under the lock.
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Iterator, Protocol

from .auth import AuthMethod, extract_token, resolve
from .client import QuotaClient, RequestResult
from .errors import CredentialMissing, ParseError, QuotaError, classify_result
from .parser import QuotaSnapshot, parse_quota

lib_logger = logging.getLogger("firmware_quota")

DELTA_HISTORY_SIZE = 5
WINDOW_JUMP_TOLERANCE_S = 60
HEURISTIC_RESET_DELTA_PP = -10.0


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DeltaEntry:
    delta_pp: float
    captured_at: float


class DeltaHistory:
    """Fixed-size ring of recent deltas; the oldest entry is overwritten."""

    def __init__(self, capacity: int = DELTA_HISTORY_SIZE):
        self._entries: deque[DeltaEntry] = deque(maxlen=capacity)

    def push(self, delta_pp: float, captured_at: float) -> None:
        self._entries.append(DeltaEntry(delta_pp, captured_at))

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[DeltaEntry]:
        return iter(self._entries)

    def snapshot(self) -> tuple[DeltaEntry, ...]:
        return tuple(self._entries)


@dataclass(frozen=True)
class FetchJob:
    api_key: str
    preferred_method: AuthMethod | None
    generation: int = 0


@dataclass(frozen=True)
class FetchOutcome:
    snapshot: QuotaSnapshot | None = None
    error: QuotaError | None = None
    used_method: AuthMethod | None = None
    result: RequestResult | None = None
    generation: int = 0

    @property
    def ok(self) -> bool:
        return self.snapshot is not None


@dataclass(frozen=True)
class EngineView:
    """Read-only state handed to presentation adapters."""

    status: str
    snapshot: QuotaSnapshot | None
    is_stale: bool
    delta_pp: float | None
    recent_deltas: tuple[DeltaEntry, ...]
    consecutive_failures: int
    last_error: str
    last_success_age: float | None
    last_failure_age: float | None
    seconds_until_next_attempt: int | None
    window_reset_age: float | None
    last_http_status: int
    last_transport_error: str
    fetching: bool

    @property
    def has_data(self) -> bool:
        return self.snapshot is not None

    @property
    def percentage(self) -> float | None:
        return self.snapshot.percentage if self.snapshot else None

    @property
    def used_fraction(self) -> float | None:
        return self.snapshot.used_fraction if self.snapshot else None

    @property
    def reset_time(self) -> str | None:
        return self.snapshot.reset_time if self.snapshot else None

    @property
    def timestamp(self) -> float | None:
        return self.snapshot.timestamp if self.snapshot else None


class EngineListener(Protocol):
    def on_snapshot_updated(self, view: EngineView) -> None: ...

    def on_error(self, view: EngineView) -> None: ...


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class RefreshEngine:
    """Single owner of quota state; safe to read from several threads."""

    def __init__(
        self,
        client: QuotaClient | None = None,
        api_key: str = "",
        refresh_interval: int = 60,
        clock: Callable[[], float] = time.time,
    ):
        self._client = client or QuotaClient()
        self._clock = clock
        self._lock = threading.Lock()
        self._listeners: list[EngineListener] = []
        self._torn_down = threading.Event()

        self._api_key = api_key.strip()
        self.refresh_interval = refresh_interval
        self._next_attempt_at: float | None = None

        self._fetching = False
        self._current: QuotaSnapshot | None = None
        self._last_good: QuotaSnapshot | None = None
        self._last_error = ""
        self._prev_good_pct = 0.0
        self._last_delta_pp = 0.0
        self._last_window_start = 0
        self._window_reset_at = 0.0
        self._history = DeltaHistory()
        self._consecutive_failures = 0
        self._last_success_at = 0.0
        self._last_failure_at = 0.0
        self._last_http_status = 0
        self._last_transport_error = ""
        self._preferred_method: AuthMethod | None = None
        # bumped on every credential change; older fetches are dropped
        self._generation = 0

    # -- listeners ----------------------------------------------------------

    def add_listener(self, listener: EngineListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: EngineListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _notify(self, success: bool) -> None:
        view = self.view()
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                if success:
                    listener.on_snapshot_updated(view)
                else:
                    listener.on_error(view)
            except Exception:
                lib_logger.exception(f"Listener {listener!r} failed")

    # -- properties ---------------------------------------------------------

    @property
    def have_last_good(self) -> bool:
        with self._lock:
            return self._last_good is not None

    @property
    def have_current(self) -> bool:
        with self._lock:
            return self._current is not None

    @property
    def last_good(self) -> QuotaSnapshot | None:
        with self._lock:
            return self._last_good

    @property
    def last_error(self) -> str:
        with self._lock:
            return self._last_error

    @property
    def last_delta_pp(self) -> float:
        with self._lock:
            return self._last_delta_pp

    @property
    def preferred_method(self) -> AuthMethod | None:
        with self._lock:
            return self._preferred_method

    @property
    def consecutive_failures(self) -> int:
        with self._lock:
            return self._consecutive_failures

    @property
    def delta_history(self) -> tuple[DeltaEntry, ...]:
        with self._lock:
            return self._history.snapshot()

    @property
    def is_fetching(self) -> bool:
        with self._lock:
            return self._fetching

    @property
    def torn_down(self) -> bool:
        return self._torn_down.is_set()

    # -- scheduling ---------------------------------------------------------

    def set_refresh_interval(self, seconds: int, minimum: int = 5) -> int:
        seconds = max(minimum, int(seconds))
        with self._lock:
            self.refresh_interval = seconds
        self.schedule_next()
        return seconds

    def schedule_next(self, interval: float | None = None) -> None:
        """Record when the periodic trigger will fire next."""
        if interval is None:
            interval = self.refresh_interval
        with self._lock:
            self._next_attempt_at = self._clock() + interval

    # -- credentials --------------------------------------------------------

    def set_api_key(self, api_key: str) -> None:
        with self._lock:
            self._api_key = api_key.strip()
            self._preferred_method = None
            self._generation += 1
            if self._api_key:
                self._last_error = ""
            else:
                self._current = None
                self._last_error = str(CredentialMissing())

    def reload_api_key(self, loader: Callable[[], str]) -> bool:
        """Re-read the credential; the cached auth method is forgotten."""
        with self._lock:
            self._api_key = ""
            self._generation += 1
        key = loader()
        self.set_api_key(key)
        return bool(key.strip())

    def clear_api_key(self) -> None:
        """Forget the credential and every bit of quota state tied to it."""
        with self._lock:
            self._api_key = ""
            self._preferred_method = None
            self._generation += 1
            self._current = None
            self._last_good = None
            self._history.clear()
            self._last_window_start = 0
            self._last_delta_pp = 0.0
            self._last_success_at = 0.0
            self._window_reset_at = 0.0
            self._last_error = str(CredentialMissing())

    # -- fetch pipeline -----------------------------------------------------

    def begin(self) -> FetchJob | None:
        """Enter the fetching state, or return ``None`` if busy or torn down."""
        if self.torn_down:
            return None
        with self._lock:
            if self._fetching:
                return None
            self._fetching = True
            self._last_error = ""
            return FetchJob(self._api_key, self._preferred_method, self._generation)

    def perform(self, job: FetchJob) -> FetchOutcome:
        """Run the network call and parse. Blocking; never raises QuotaError."""
        if not job.api_key:
            return FetchOutcome(error=CredentialMissing(), generation=job.generation)

        result, used_method = resolve(
            self._client.fetch, job.api_key, extract_token(job.api_key), job.preferred_method
        )
        error = classify_result(result)
        if error is not None:
            return FetchOutcome(error=error, result=result, generation=job.generation)

        try:
            snapshot = parse_quota(result.body, now=self._clock())
        except ParseError as e:
            return FetchOutcome(
                error=e, used_method=used_method, result=result, generation=job.generation
            )
        return FetchOutcome(
            snapshot=snapshot, used_method=used_method, result=result, generation=job.generation
        )

    def complete(self, outcome: FetchOutcome) -> bool:
        """Apply a finished fetch.

        Returns False when the outcome was discarded: the engine was torn down,
        or the credential changed while the request was in flight.
        """
        if self.torn_down:
            lib_logger.debug("Discarding fetch completion after teardown")
            return False
        with self._lock:
            self._fetching = False
            if outcome.generation != self._generation:
                lib_logger.debug("Discarding fetch started with a replaced credential")
                return False
            if outcome.result is not None:
                self._last_http_status = outcome.result.http_status
                self._last_transport_error = outcome.result.transport_error
            if outcome.used_method is not None and outcome.used_method is not self._preferred_method:
                lib_logger.info(f"Using auth method {outcome.used_method.value}")
                self._preferred_method = outcome.used_method
            if outcome.ok:
                self._apply_success(outcome.snapshot)
            else:
                self._apply_failure(outcome.error)
        self._notify(outcome.ok)
        return True

    def refresh(self) -> FetchOutcome | None:
        """Synchronous fetch for loop-driven callers; ``None`` if dropped."""
        job = self.begin()
        if job is None:
            return None
        outcome = self.perform(job)
        self.complete(outcome)
        return outcome

    def _apply_success(self, snapshot: QuotaSnapshot) -> None:
        now = self._clock()

        window_start = snapshot.window_start()
        if window_start is not None:
            if (
                self._last_window_start != 0
                and abs(window_start - self._last_window_start) > WINDOW_JUMP_TOLERANCE_S
            ):
                lib_logger.info("Quota window changed, clearing delta history")
                self._history.clear()
                self._window_reset_at = now
            self._last_window_start = window_start

        prev_pct = self._last_good.percentage if self._last_good is not None else snapshot.percentage
        self._prev_good_pct = prev_pct
        self._last_delta_pp = snapshot.percentage - prev_pct

        # No reset time to compare, but a large drop means the window rolled over
        if (
            window_start is None
            and self._last_good is not None
            and self._last_delta_pp <= HEURISTIC_RESET_DELTA_PP
        ):
            lib_logger.info(
                f"Usage dropped {self._last_delta_pp:+.1f}pp without reset time, "
                "treating as window reset"
            )
            self._history.clear()
            self._window_reset_at = now

        self._history.push(self._last_delta_pp, now)

        self._current = snapshot
        self._last_good = snapshot
        self._last_success_at = now
        self._consecutive_failures = 0
        self._last_error = ""
        lib_logger.debug(
            f"Quota {snapshot.percentage:.2f}% (delta {self._last_delta_pp:+.2f}pp), "
            f"reset {snapshot.reset_time}"
        )

    def _apply_failure(self, error: QuotaError | None) -> None:
        self._last_error = str(error) if error is not None else "Unknown error"
        self._last_failure_at = self._clock()
        self._consecutive_failures += 1
        lib_logger.warning(
            f"Quota refresh failed ({self._consecutive_failures} in a row): {self._last_error}"
        )

    # -- read side ----------------------------------------------------------

    def view(self) -> EngineView:
        now = self._clock()
        with self._lock:
            snapshot = self._last_good or self._current
            have = snapshot is not None
            stale = bool(self._last_error) and have
            if stale:
                status = "STALE"
            elif have:
                status = "OK"
            elif self._last_error:
                status = "ERROR"
            else:
                status = "INIT"

            next_in = None
            if self._next_attempt_at is not None:
                next_in = max(0, int(self._next_attempt_at - now + 0.999))

            return EngineView(
                status=status,
                snapshot=snapshot,
                is_stale=stale,
                delta_pp=self._last_delta_pp if self._last_good is not None else None,
                recent_deltas=self._history.snapshot(),
                consecutive_failures=self._consecutive_failures,
                last_error=self._last_error,
                last_success_age=(now - self._last_success_at) if self._last_good is not None else None,
                last_failure_age=(now - self._last_failure_at) if self._consecutive_failures else None,
                seconds_until_next_attempt=next_in,
                window_reset_age=(now - self._window_reset_at) if self._window_reset_at else None,
                last_http_status=self._last_http_status,
                last_transport_error=self._last_transport_error,
                fetching=self._fetching,
            )

    # -- lifetime -----------------------------------------------------------

    def teardown(self) -> None:
        """Stop accepting fetches; completions arriving later are dropped."""
        self._torn_down.set()
        with self._lock:
            self._listeners.clear()

    def close(self) -> None:
        """Release the HTTP session once no fetch is in flight."""
        self._client.close()
