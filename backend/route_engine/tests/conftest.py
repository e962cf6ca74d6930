import os

import pytest

os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("REDIS_URL", "redis://localhost:6399/0")
os.environ.setdefault("ROUTE_TIMEZONE", "UTC")
os.environ.setdefault("DISTANCE_MODE", "estimate")
os.environ.setdefault("GOOGLE_ROUTES_API_KEY", "")
os.environ.setdefault("GOOGLE_MAPS_API_KEY", "")

from route_engine.providers import google_routes
from route_engine.services.cache import reset_cache
from route_engine.utils.settings import get_settings


@pytest.fixture(autouse=True)
def _isolate_singletons(monkeypatch):
    get_settings.cache_clear()
    reset_cache()
    monkeypatch.setattr(google_routes, "_PROVIDER", None)
    monkeypatch.setattr(google_routes.GoogleRoutesProvider, "_sleep_backoff", staticmethod(lambda attempt: None))
    yield
    get_settings.cache_clear()
    reset_cache()


@pytest.fixture()
def load_settings(monkeypatch):
    def _load(**values):
        for key, value in values.items():
            monkeypatch.setenv(key, str(value))
        get_settings.cache_clear()
        return get_settings()

    return _load


class FakeRoutesService:
    """Stands in for the Google provider; legs come from the haversine estimate."""

    def __init__(self, estimator, *, fail_matrix=False, fail_routes=False, minutes_scale=1.0):
        self.estimator = estimator
        self.fail_matrix = fail_matrix
        self.fail_routes = fail_routes
        self.minutes_scale = minutes_scale
        self.matrix_calls = 0
        self.route_calls = 0

    def _leg(self, a, b):
        leg = self.estimator.leg(a, b, source="google")
        leg.duration_minutes *= self.minutes_scale
        leg.used_live_traffic = True
        return leg

    def compute_route_matrix(self, origins, destinations, depart_at):
        self.matrix_calls += 1
        if self.fail_matrix:
            raise google_routes.GoogleRoutesError("boom", code="GOOGLE_ROUTES_UNAVAILABLE", retryable=True)
        return [[self._leg(a, b) for b in destinations] for a in origins]

    def compute_routes(self, points, depart_at):
        self.route_calls += 1
        if self.fail_routes:
            raise google_routes.GoogleRoutesError("boom", code="GOOGLE_ROUTES_UNAVAILABLE", retryable=True)
        return [self._leg(a, b) for a, b in zip(points[:-1], points[1:])]

    def compute_leg(self, origin, dest, depart_at):
        return self.compute_routes([origin, dest], depart_at)[0]


@pytest.fixture()
def fake_routes():
    from route_engine.providers.estimate import EstimateProvider

    def _make(**kwargs):
        return FakeRoutesService(EstimateProvider(speed_kmh=30.0, road_factor=1.35), **kwargs)

    return _make
