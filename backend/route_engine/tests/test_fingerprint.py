from datetime import datetime, timedelta, timezone

from route_engine.models.entities import Point, Stop
from route_engine.schemas.api import StopIn
from route_engine.services.fingerprint import fingerprint, should_skip


WINDOW_START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _stops():
    return [
        Stop(id="a", point=Point(1.30, 103.80), window_start=WINDOW_START, window_end=WINDOW_START + timedelta(hours=1)),
        Stop(id="b", point=Point(1.31, 103.81)),
        Stop(id="c", point=Point(1.32, 103.82)),
    ]


def test_fingerprint_is_deterministic_sha256():
    digest = fingerprint(_stops())
    assert digest == fingerprint(_stops())
    assert len(digest) == 64


def test_fingerprint_changes_with_content_and_order():
    base = fingerprint(_stops())

    moved = _stops()
    moved[1] = Stop(id="b", point=Point(1.31, 103.8100001))
    assert fingerprint(moved) != base

    rewindowed = _stops()
    rewindowed[0] = Stop(id="a", point=Point(1.30, 103.80), window_start=WINDOW_START, window_end=WINDOW_START)
    assert fingerprint(rewindowed) != base

    assert fingerprint(list(reversed(_stops()))) != base


def test_fingerprint_ignores_service_time_and_priority():
    changed = _stops()
    changed[2] = Stop(id="c", point=Point(1.32, 103.82), service_minutes=30, priority=3)
    assert fingerprint(changed) == fingerprint(_stops())


def test_fingerprint_matches_between_request_and_domain_stops():
    request_stops = [
        StopIn(id="a", lat=1.30, lon=103.80, window_start=WINDOW_START, window_end=WINDOW_START + timedelta(hours=1)),
        StopIn(id="b", lat=1.31, lon=103.81),
        StopIn(id="c", lat=1.32, lon=103.82),
    ]
    assert fingerprint(request_stops) == fingerprint(_stops())


def test_fingerprint_normalizes_timezones():
    sgt = timezone(timedelta(hours=8))
    local = [Stop(id="a", point=Point(1.3, 103.8), window_start=WINDOW_START.astimezone(sgt))]
    utc = [Stop(id="a", point=Point(1.3, 103.8), window_start=WINDOW_START)]
    assert fingerprint(local) == fingerprint(utc)


def test_should_skip_rules():
    now = datetime(2026, 3, 2, 7, 0, tzinfo=timezone.utc)
    common = {"current": "x", "previous": "x", "previously_optimized_at": now}
    assert should_skip(**common, force=False, has_forced_endpoints=False) is True
    assert should_skip(**common, force=True, has_forced_endpoints=False) is False
    assert should_skip(**common, force=False, has_forced_endpoints=True) is False
    assert should_skip(current="x", previous="y", previously_optimized_at=now, force=False, has_forced_endpoints=False) is False
    assert should_skip(current="x", previous="x", previously_optimized_at=None, force=False, has_forced_endpoints=False) is False
