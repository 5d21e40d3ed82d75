import pytest
from conftest import FakeClient, ok_body, unauthorized

from firmware_quota.auth import AuthMethod
from firmware_quota.client import RequestResult
from firmware_quota.engine import DeltaHistory, FetchOutcome, RefreshEngine
from firmware_quota.errors import CredentialMissing

API_KEY = "fw_api_secret"
RESET_A = "2025-01-01T10:00:00Z"
RESET_B = "2025-01-01T15:00:00Z"


def make_engine(client: FakeClient, clock, api_key: str = API_KEY) -> RefreshEngine:
    return RefreshEngine(client, api_key=api_key, refresh_interval=30, clock=clock)


def deltas(engine: RefreshEngine) -> list[float]:
    return [round(d.delta_pp, 6) for d in engine.delta_history]


class RecordingListener:
    def __init__(self):
        self.events: list[tuple[str, str]] = []

    def on_snapshot_updated(self, view) -> None:
        self.events.append(("ok", view.status))

    def on_error(self, view) -> None:
        self.events.append(("error", view.last_error))


def test_delta_history_keeps_five_most_recent_oldest_first() -> None:
    history = DeltaHistory()
    for i in range(7):
        history.push(float(i), 100.0 + i)

    assert len(history) == 5
    assert [e.delta_pp for e in history] == [2.0, 3.0, 4.0, 5.0, 6.0]


def test_first_success_has_zero_delta(clock) -> None:
    engine = make_engine(FakeClient([ok_body(0.25, RESET_A)]), clock)

    outcome = engine.refresh()

    assert outcome.ok
    assert engine.have_last_good
    assert engine.last_delta_pp == 0.0
    assert deltas(engine) == [0.0]
    assert engine.view().status == "OK"


def test_delta_is_against_previous_success_not_first(clock) -> None:
    client = FakeClient([ok_body(0.10), ok_body(0.30), ok_body(0.25)])
    engine = make_engine(client, clock)

    for _ in range(3):
        engine.refresh()

    assert engine.last_delta_pp == pytest.approx(-5.0)
    assert deltas(engine) == [0.0, 20.0, -5.0]


def test_failures_keep_last_good_and_delta(clock) -> None:
    client = FakeClient([
        ok_body(0.10),
        ok_body(0.20),
        RequestResult(http_status=500, body="boom"),
        RequestResult(transport_error="could not connect", transport_error_detail="refused"),
        RequestResult(http_status=200, body='{"used": null}'),
    ])
    engine = make_engine(client, clock)
    engine.refresh()
    engine.refresh()
    good = engine.last_good

    for _ in range(3):
        outcome = engine.refresh()
        assert not outcome.ok
        assert engine.have_last_good
        assert engine.last_good is good

    assert engine.last_delta_pp == pytest.approx(10.0)
    assert deltas(engine) == [0.0, 10.0]
    assert engine.consecutive_failures == 3

    view = engine.view()
    assert view.status == "STALE"
    assert view.is_stale
    assert view.percentage == pytest.approx(20.0)
    assert view.last_error == "Parse error: missing 'used'"


def test_null_used_without_prior_data_is_error_state(clock) -> None:
    engine = make_engine(FakeClient([RequestResult(http_status=200, body='{"used": null}')]), clock)

    engine.refresh()

    view = engine.view()
    assert not engine.have_last_good
    assert view.status == "ERROR"
    assert view.snapshot is None
    assert view.percentage is None
    assert view.last_error.startswith("Parse error")


def test_window_jump_clears_history(clock) -> None:
    client = FakeClient([ok_body(0.10, RESET_A), ok_body(0.20, RESET_A), ok_body(0.05, RESET_B)])
    engine = make_engine(client, clock)
    engine.refresh()
    engine.refresh()
    assert deltas(engine) == [0.0, 10.0]

    clock.advance(60)
    engine.refresh()

    # Cleared before the push, so only the post-reset delta remains
    assert deltas(engine) == [-15.0]
    assert engine.view().window_reset_age == 0


def test_reset_time_drift_within_tolerance_keeps_history(clock) -> None:
    client = FakeClient([ok_body(0.10, "2025-01-01T10:00:00Z"), ok_body(0.12, "2025-01-01T10:00:45Z")])
    engine = make_engine(client, clock)
    engine.refresh()
    engine.refresh()

    assert deltas(engine) == [0.0, 2.0]
    assert engine.view().window_reset_age is None


def test_jump_with_drop_keeps_triggering_delta(clock) -> None:
    client = FakeClient([ok_body(0.10, RESET_A), ok_body(0.55, RESET_A), ok_body(0.40, RESET_B)])
    engine = make_engine(client, clock)

    for _ in range(3):
        engine.refresh()

    assert engine.last_delta_pp == pytest.approx(-15.0)
    assert deltas(engine) == [-15.0]


def test_large_drop_without_reset_time_is_treated_as_reset(clock) -> None:
    client = FakeClient([ok_body(0.50), ok_body(0.55), ok_body(0.40)])
    engine = make_engine(client, clock)

    for _ in range(3):
        engine.refresh()

    assert deltas(engine) == [-15.0]
    assert engine.view().window_reset_age is not None


def test_small_drop_without_reset_time_keeps_history(clock) -> None:
    client = FakeClient([ok_body(0.50), ok_body(0.41)])
    engine = make_engine(client, clock)
    engine.refresh()
    engine.refresh()

    assert deltas(engine) == [0.0, -9.0]


def test_missing_key_fails_without_network(clock) -> None:
    client = FakeClient()
    engine = make_engine(client, clock, api_key="")

    outcome = engine.refresh()

    assert isinstance(outcome.error, CredentialMissing)
    assert client.headers == []
    assert engine.last_error == "Missing FIRMWARE_API_KEY"
    assert engine.consecutive_failures == 1


def test_auth_method_is_cached_and_reused(clock) -> None:
    client = FakeClient([unauthorized(), ok_body(0.1), ok_body(0.2)])
    engine = make_engine(client, clock)

    engine.refresh()
    assert engine.preferred_method is AuthMethod.BEARER_TOKEN

    engine.refresh()
    assert client.headers[-1] == ("Authorization", "Bearer secret")
    assert len(client.headers) == 3


def test_rejected_cached_method_moves_preference(clock) -> None:
    client = FakeClient([
        unauthorized(), unauthorized(), ok_body(0.1),
        unauthorized(), unauthorized(), ok_body(0.2),
    ])
    engine = make_engine(client, clock)
    engine.refresh()
    assert engine.preferred_method is AuthMethod.X_API_KEY

    engine.refresh()

    assert client.headers[3:] == [
        ("X-API-Key", API_KEY),
        ("Authorization", f"Bearer {API_KEY}"),
        ("Authorization", "Bearer secret"),
    ]
    assert engine.preferred_method is AuthMethod.BEARER_TOKEN


def test_all_methods_unauthorized_reports_auth_failure(clock) -> None:
    engine = make_engine(FakeClient([unauthorized()] * 4), clock)

    engine.refresh()

    assert engine.preferred_method is None
    assert engine.last_error.startswith("Unauthorized after trying all auth methods")


def test_begin_drops_request_while_fetching(clock) -> None:
    engine = make_engine(FakeClient([ok_body(0.1)]), clock)

    job = engine.begin()
    assert job is not None
    assert engine.begin() is None
    assert engine.refresh() is None

    engine.complete(engine.perform(job))
    assert not engine.is_fetching
    assert engine.begin() is not None


def test_begin_clears_error_until_failure_restores_it(clock) -> None:
    client = FakeClient([RequestResult(http_status=502, body=""), RequestResult(http_status=502, body="")])
    engine = make_engine(client, clock)
    engine.refresh()
    assert engine.last_error == "HTTP error: 502"

    job = engine.begin()
    assert engine.last_error == ""
    assert engine.view().fetching

    engine.complete(engine.perform(job))
    assert engine.last_error == "HTTP error: 502"
    assert engine.consecutive_failures == 2


def test_completion_after_teardown_is_discarded(clock) -> None:
    listener = RecordingListener()
    engine = make_engine(FakeClient([ok_body(0.3)]), clock)
    engine.add_listener(listener)

    job = engine.begin()
    outcome = engine.perform(job)
    engine.teardown()

    assert engine.complete(outcome) is False
    assert not engine.have_last_good
    assert listener.events == []
    assert engine.begin() is None


def test_listeners_get_success_and_error(clock) -> None:
    listener = RecordingListener()
    engine = make_engine(FakeClient([ok_body(0.3), RequestResult(http_status=500, body="x")]), clock)
    engine.add_listener(listener)

    engine.refresh()
    engine.refresh()

    assert listener.events == [("ok", "OK"), ("error", "HTTP error: 500: x")]


def test_failing_listener_does_not_break_engine(clock) -> None:
    class Broken:
        def on_snapshot_updated(self, view):
            raise RuntimeError("render failed")

        def on_error(self, view):
            raise RuntimeError("render failed")

    engine = make_engine(FakeClient([ok_body(0.3)]), clock)
    engine.add_listener(Broken())

    assert engine.refresh().ok
    assert engine.have_last_good


def test_clear_key_drops_last_good_and_preference(clock) -> None:
    engine = make_engine(FakeClient([ok_body(0.3, RESET_A)]), clock)
    engine.refresh()

    engine.clear_api_key()

    view = engine.view()
    assert not engine.have_last_good
    assert engine.preferred_method is None
    assert view.status == "ERROR"
    assert view.recent_deltas == ()
    assert view.delta_pp is None
    assert view.last_error == "Missing FIRMWARE_API_KEY"


def test_reload_key_keeps_last_good_and_forgets_method(clock) -> None:
    engine = make_engine(FakeClient([ok_body(0.3)]), clock)
    engine.refresh()
    assert engine.preferred_method is AuthMethod.BEARER_FULL_KEY

    assert engine.reload_api_key(lambda: "fw_api_other")

    assert engine.have_last_good
    assert engine.preferred_method is None
    assert engine.last_error == ""


def test_reload_to_empty_key_reports_missing(clock) -> None:
    engine = make_engine(FakeClient(), clock)

    assert not engine.reload_api_key(lambda: "")
    assert engine.last_error == "Missing FIRMWARE_API_KEY"


def test_view_ages_and_countdown(clock) -> None:
    engine = make_engine(FakeClient([ok_body(0.3)]), clock)
    engine.schedule_next()
    engine.refresh()

    clock.advance(12)
    view = engine.view()

    assert view.last_success_age == 12
    assert view.seconds_until_next_attempt == 18
    assert view.reset_time == "N/A"


def test_set_refresh_interval_enforces_minimum(clock) -> None:
    engine = make_engine(FakeClient(), clock)

    assert engine.set_refresh_interval(2, minimum=15) == 15
    assert engine.refresh_interval == 15
    assert engine.view().seconds_until_next_attempt == 15


def test_outcome_without_error_object_still_counts_as_failure(clock) -> None:
    engine = make_engine(FakeClient(), clock)
    engine.begin()

    engine.complete(FetchOutcome())

    assert engine.last_error == "Unknown error"
    assert engine.consecutive_failures == 1


def test_failure_age_tracks_latest_failure_until_success(clock) -> None:
    engine = make_engine(
        FakeClient([RequestResult(http_status=502, body=""), ok_body(0.2)]), clock
    )
    assert engine.view().last_failure_age is None

    engine.refresh()
    clock.advance(7)
    assert engine.view().last_failure_age == 7

    engine.refresh()
    assert engine.view().last_failure_age is None


def test_fetch_in_flight_during_clear_is_discarded(clock) -> None:
    listener = RecordingListener()
    engine = make_engine(FakeClient([ok_body(0.3, RESET_A)]), clock)
    engine.add_listener(listener)

    job = engine.begin()
    outcome = engine.perform(job)
    engine.clear_api_key()

    assert engine.complete(outcome) is False
    assert not engine.have_last_good
    assert engine.last_error == "Missing FIRMWARE_API_KEY"
    assert engine.preferred_method is None
    assert listener.events == []
    assert not engine.is_fetching


def test_fetch_in_flight_during_key_change_does_not_cache_method(clock) -> None:
    engine = make_engine(FakeClient([unauthorized(), ok_body(0.3), ok_body(0.4)]), clock)

    outcome = engine.perform(engine.begin())
    engine.set_api_key("fw_api_other")

    assert engine.complete(outcome) is False
    assert engine.preferred_method is None
    assert not engine.have_last_good

    assert engine.refresh().ok
    assert engine.last_good.percentage == pytest.approx(40.0)


def test_removed_listener_is_not_notified(clock) -> None:
    listener = RecordingListener()
    engine = make_engine(FakeClient([ok_body(0.3)]), clock)
    engine.add_listener(listener)
    engine.remove_listener(listener)
    engine.remove_listener(listener)

    engine.refresh()

    assert listener.events == []
