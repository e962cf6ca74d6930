from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from route_engine.models.entities import OptimizationStatus, Point
from route_engine.schemas.api import DepotIn, OptimizeRequest, PreviousOptimizationIn, StopIn
from route_engine.services.distance import DistanceProvider
from route_engine.services.optimization import OptimizationEngine, OptimizationRun, optimize
from route_engine.utils.errors import AppError, InputError, OptimizationFailed


DEPART = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


def _engine(settings, service=None) -> OptimizationEngine:
    return OptimizationEngine(settings=settings, provider=DistanceProvider(settings=settings, service=service))


def _unit_square(**overrides) -> OptimizeRequest:
    payload = {
        "depot": DepotIn(lat=0.0, lon=0.0),
        "stops": [
            StopIn(id="A", lat=0.0, lon=1.0),
            StopIn(id="B", lat=1.0, lon=1.0),
            StopIn(id="C", lat=1.0, lon=0.0),
        ],
        "depart_at": DEPART,
    }
    payload.update(overrides)
    return OptimizeRequest(**payload)


def _assert_timing_consistent(result, depart_at):
    previous_departure = depart_at
    for timed in result.timed_stops:
        if timed.skipped:
            continue
        assert timed.arrival == previous_departure + timedelta(minutes=timed.travel_minutes)
        assert timed.departure == timed.arrival + timedelta(minutes=timed.wait_minutes + timed.service_minutes)
        previous_departure = timed.departure


def test_unit_square_visits_perimeter_once(load_settings):
    settings = load_settings()
    engine = _engine(settings)

    result = engine.optimize(_unit_square())

    assert result.status == OptimizationStatus.SUCCEEDED
    assert result.order == ["A", "B", "C"]
    assert result.algorithm == "two_opt"

    estimator = engine.provider.estimator
    corners = [Point(0.0, 0.0), Point(0.0, 1.0), Point(1.0, 1.0), Point(1.0, 0.0), Point(0.0, 0.0)]
    perimeter = sum(estimator.leg(a, b).distance_m for a, b in zip(corners[:-1], corners[1:]))
    assert result.total_distance_m == pytest.approx(perimeter)
    assert result.depot_return.distance_m == pytest.approx(estimator.leg(corners[3], corners[4]).distance_m)
    assert result.depot_return.arrival == result.timed_stops[-1].departure + timedelta(
        minutes=result.depot_return.travel_minutes
    )
    assert result.total_duration_minutes == pytest.approx(
        (result.depot_return.arrival - DEPART).total_seconds() / 60.0
    )
    assert result.used_live_traffic is False
    assert result.unserviceable_stops == []
    assert [t.service_minutes for t in result.timed_stops] == [15.0, 15.0, 15.0]
    _assert_timing_consistent(result, DEPART)


def test_missed_window_is_reported_but_succeeds(load_settings):
    settings = load_settings(ESTIMATE_SPEED_KMH="60", ESTIMATE_ROAD_FACTOR="1.0")
    request = OptimizeRequest(
        depot=DepotIn(lat=0.0, lon=0.0),
        stops=[
            StopIn(
                id="X",
                lat=0.72,
                lon=0.0,
                window_start=datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc),
                window_end=datetime(2026, 3, 2, 9, 10, tzinfo=timezone.utc),
            ),
            StopIn(id="Y", lat=0.0, lon=0.1),
        ],
        depart_at=DEPART,
    )

    result = _engine(settings).optimize(request)

    assert result.status == OptimizationStatus.SUCCEEDED
    assert result.unserviceable_stops == ["X"]
    assert any("X" in warning for warning in result.warnings)
    assert sorted(result.order) == ["X", "Y"]
    assert result.has_time_windows is True
    assert result.algorithm == "time_windows"
    late = next(t for t in result.timed_stops if t.stop_id == "X")
    assert late.arrival > datetime(2026, 3, 2, 9, 10, tzinfo=timezone.utc)
    assert late.skipped is True
    _assert_timing_consistent(result, DEPART)


def test_missed_window_can_be_excluded(load_settings):
    settings = load_settings(ESTIMATE_SPEED_KMH="60", ESTIMATE_ROAD_FACTOR="1.0")
    request = OptimizeRequest(
        depot=DepotIn(lat=0.0, lon=0.0),
        stops=[
            StopIn(
                id="X",
                lat=0.72,
                lon=0.0,
                window_start=datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc),
                window_end=datetime(2026, 3, 2, 9, 10, tzinfo=timezone.utc),
            ),
            StopIn(id="Y", lat=0.0, lon=0.1),
        ],
        depart_at=DEPART,
        exclude_unserviceable=True,
    )

    result = _engine(settings).optimize(request)

    assert result.order == ["Y"]
    assert result.unserviceable_stops == ["X"]
    assert [t.stop_id for t in result.timed_stops] == ["Y"]


def test_forced_first_and_last(load_settings):
    settings = load_settings()
    request = OptimizeRequest(
        depot=DepotIn(lat=1.30, lon=103.80),
        stops=[
            StopIn(id="A", lat=1.31, lon=103.80),
            StopIn(id="B", lat=1.32, lon=103.81),
            StopIn(id="C", lat=1.30, lon=103.83),
            StopIn(id="D", lat=1.35, lon=103.85),
        ],
        forced_first_id="D",
        forced_last_id="B",
        depart_at=DEPART,
    )
    engine = _engine(settings)

    result = engine.optimize(request)

    assert result.order[0] == "D"
    assert result.order[-1] == "B"
    assert sorted(result.order[1:-1]) == ["A", "C"]
    first_leg = engine.provider.estimator.leg(Point(1.30, 103.80), Point(1.35, 103.85))
    assert result.timed_stops[0].travel_minutes == pytest.approx(first_leg.duration_minutes)
    assert result.total_distance_m >= first_leg.distance_m
    _assert_timing_consistent(result, DEPART)


def test_second_call_with_unchanged_stops_skips_provider(load_settings, fake_routes):
    settings = load_settings(DISTANCE_MODE="service")
    service = fake_routes()
    first = _engine(settings, service).optimize(_unit_square())
    assert first.used_live_traffic is True
    calls_after_first = service.matrix_calls
    assert calls_after_first > 0

    engine = _engine(settings, service)
    previous = PreviousOptimizationIn(fingerprint=first.fingerprint, optimized_at=first.optimized_at, result=first)
    run = OptimizationRun()
    second = engine.optimize(_unit_square(previous=previous), run=run)

    assert second.already_optimized is True
    assert second.status == OptimizationStatus.SKIPPED
    assert second.order == first.order
    assert run.status == OptimizationStatus.SKIPPED
    assert engine.provider.service_calls == 0
    assert service.matrix_calls == calls_after_first


def test_skip_without_stored_result_reports_current_order(load_settings):
    settings = load_settings()
    request = _unit_square()
    first = _engine(settings).optimize(request)

    skipped = _engine(settings).optimize(
        _unit_square(previous=PreviousOptimizationIn(fingerprint=first.fingerprint, optimized_at=first.optimized_at))
    )
    assert skipped.already_optimized is True
    assert skipped.order == ["A", "B", "C"]
    assert skipped.fingerprint == first.fingerprint


def test_force_and_forced_endpoints_bypass_the_guard(load_settings):
    settings = load_settings()
    first = _engine(settings).optimize(_unit_square())
    previous = PreviousOptimizationIn(fingerprint=first.fingerprint, optimized_at=first.optimized_at)

    forced = _engine(settings).optimize(_unit_square(previous=previous, force=True))
    assert forced.already_optimized is False
    assert forced.status == OptimizationStatus.SUCCEEDED

    pinned = _engine(settings).optimize(_unit_square(previous=previous, forced_first_id="C"))
    assert pinned.already_optimized is False
    assert pinned.order[0] == "C"


def test_provider_failure_marks_run_failed(load_settings, fake_routes):
    settings = load_settings(DISTANCE_MODE="service")
    run = OptimizationRun()
    with pytest.raises(OptimizationFailed) as exc_info:
        _engine(settings, fake_routes(fail_matrix=True)).optimize(_unit_square(), run=run)
    assert exc_info.value.error_code == "OPTIMIZATION_FAILED"
    assert exc_info.value.details["provider_code"] == "GOOGLE_ROUTES_UNAVAILABLE"
    assert run.status == OptimizationStatus.FAILED
    assert run.history == [OptimizationStatus.REQUESTED, OptimizationStatus.RUNNING, OptimizationStatus.FAILED]


def test_hybrid_retimes_final_order_with_one_call(load_settings, fake_routes):
    settings = load_settings(DISTANCE_MODE="hybrid")
    service = fake_routes(minutes_scale=2.0)
    engine = _engine(settings, service)

    result = engine.optimize(_unit_square())

    assert service.matrix_calls == 0
    assert service.route_calls == 1
    assert result.used_live_traffic is True
    assert result.distance_mode == "hybrid"
    estimate = engine.provider.estimator.leg(Point(0.0, 0.0), Point(0.0, 1.0)).duration_minutes
    assert result.timed_stops[0].travel_minutes == pytest.approx(estimate * 2.0)
    _assert_timing_consistent(result, DEPART)


def test_hybrid_keeps_estimates_when_service_fails(load_settings, fake_routes):
    settings = load_settings(DISTANCE_MODE="hybrid")
    result = _engine(settings, fake_routes(fail_routes=True)).optimize(_unit_square())
    assert result.status == OptimizationStatus.SUCCEEDED
    assert result.used_live_traffic is False
    assert any("estimated" in warning for warning in result.warnings)


def test_stops_without_coordinates_are_reported(load_settings):
    settings = load_settings()
    request = _unit_square(
        stops=[
            StopIn(id="A", lat=0.0, lon=1.0),
            StopIn(id="N"),
            StopIn(id="B", lat=1.0, lon=1.0),
        ]
    )
    result = _engine(settings).optimize(request)
    assert "N" not in result.order
    assert result.unserviceable_stops == ["N"]
    assert any("N" in warning for warning in result.warnings)


def test_default_departure_uses_depot_time(load_settings):
    settings = load_settings()
    request = _unit_square(depot=DepotIn(lat=0.0, lon=0.0, default_departure="7:30"), depart_at=None)
    result = _engine(settings).optimize(request)
    first = result.timed_stops[0]
    start = first.arrival - timedelta(minutes=first.travel_minutes)
    assert (start.hour, start.minute) == (7, 30)
    assert start.utcoffset() == timedelta(0)


def test_default_departure_falls_back_to_setting(load_settings):
    settings = load_settings(DEFAULT_DEPARTURE_TIME="09:30")
    request = _unit_square(depot=DepotIn(lat=0.0, lon=0.0), depart_at=None)
    result = _engine(settings).optimize(request)
    first = result.timed_stops[0]
    start = first.arrival - timedelta(minutes=first.travel_minutes)
    assert (start.hour, start.minute) == (9, 30)


@pytest.mark.parametrize(
    "overrides,code",
    [
        ({"depot": None}, "DEPOT_MISSING"),
        ({"stops": [StopIn(id="A", lat=0.0, lon=1.0)]}, "TOO_FEW_STOPS"),
        ({"forced_first_id": "A", "forced_last_id": "A"}, "FORCED_STOP_DUPLICATE"),
        ({"forced_last_id": "Q"}, "FORCED_STOP_NOT_FOUND"),
    ],
)
def test_input_errors_raise_before_provider_calls(load_settings, fake_routes, overrides, code):
    settings = load_settings(DISTANCE_MODE="service")
    service = fake_routes()
    with pytest.raises(InputError) as exc_info:
        _engine(settings, service).optimize(_unit_square(**overrides))
    assert exc_info.value.error_code == code
    assert exc_info.value.status_code == 400
    assert service.matrix_calls == 0


def test_stop_limit_guardrail(load_settings):
    settings = load_settings(OPTIMIZE_MAX_STOPS="2")
    with pytest.raises(InputError) as exc_info:
        _engine(settings).optimize(_unit_square())
    assert exc_info.value.error_code == "OPTIMIZE_MAX_STOPS_EXCEEDED"
    assert exc_info.value.details == {"stop_count": 3, "max_stops": 2}


def test_run_rejects_invalid_transition():
    run = OptimizationRun()
    run.transition(OptimizationStatus.RUNNING)
    run.transition(OptimizationStatus.SUCCEEDED)
    assert run.is_terminal
    with pytest.raises(AppError) as exc_info:
        run.transition(OptimizationStatus.SKIPPED)
    assert exc_info.value.error_code == "INVALID_STATE_TRANSITION"


def test_module_level_optimize_uses_settings(load_settings):
    load_settings(DISTANCE_MODE="estimate")
    result = optimize(_unit_square())
    assert result.order == ["A", "B", "C"]
    assert result.distance_mode == "estimate"


@pytest.mark.parametrize("enabled", ["true", "false"])
def test_unit_square_order_with_and_without_annealing(load_settings, enabled):
    settings = load_settings(SA_ENABLED=enabled)
    result = _engine(settings).optimize(_unit_square())
    assert result.order == ["A", "B", "C"]
    assert result.algorithm == "two_opt"


def test_hybrid_flags_estimated_leg_after_skipped_stop(load_settings, fake_routes):
    settings = load_settings(DISTANCE_MODE="hybrid", ESTIMATE_SPEED_KMH="60", ESTIMATE_ROAD_FACTOR="1.0")
    service = fake_routes()
    request = OptimizeRequest(
        depot=DepotIn(lat=0.0, lon=0.0),
        stops=[
            StopIn(
                id="X",
                lat=0.72,
                lon=0.0,
                window_start=datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc),
                window_end=datetime(2026, 3, 2, 9, 10, tzinfo=timezone.utc),
            ),
            StopIn(id="Y", lat=0.0, lon=0.1),
        ],
        depart_at=DEPART,
    )

    result = _engine(settings, service).optimize(request)

    assert service.route_calls == 1
    assert result.order == ["X", "Y"]
    assert result.unserviceable_stops == ["X"]
    assert "1 legs after skipped stops use estimated travel times" in result.warnings


def test_hybrid_without_skips_has_no_estimated_legs(load_settings, fake_routes):
    settings = load_settings(DISTANCE_MODE="hybrid")
    result = _engine(settings, fake_routes()).optimize(_unit_square())
    assert not any("skipped stops" in warning for warning in result.warnings)
