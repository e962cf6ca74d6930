from __future__ import annotations

import math

from route_engine.models.entities import Leg, Point


EARTH_RADIUS_M = 6_371_000.0


def haversine_m(a: Point, b: Point) -> float:
    """Great-circle distance in metres between two WGS84 points."""
    phi1, phi2 = math.radians(a.lat), math.radians(b.lat)
    d_phi = math.radians(b.lat - a.lat)
    d_lambda = math.radians(b.lon - a.lon)

    h = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))
    return EARTH_RADIUS_M * c


class EstimateProvider:
    """Closed-form leg costs: haversine scaled by a road factor at a fixed speed."""

    def __init__(self, *, speed_kmh: float, road_factor: float = 1.0) -> None:
        if speed_kmh <= 0:
            raise ValueError("speed_kmh must be positive")
        self.speed_m_per_min = speed_kmh * 1000.0 / 60.0
        self.road_factor = float(road_factor)

    def leg(self, a: Point, b: Point, *, source: str = "estimate") -> Leg:
        if a == b:
            return Leg(distance_m=0.0, duration_minutes=0.0, source=source)
        distance_m = haversine_m(a, b) * self.road_factor
        return Leg(
            distance_m=distance_m,
            duration_minutes=distance_m / self.speed_m_per_min,
            used_live_traffic=False,
            source=source,
        )
