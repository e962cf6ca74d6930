from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum

from route_engine.utils.errors import InputError


@dataclass(frozen=True)
class Point:
    lat: float
    lon: float

    def __post_init__(self) -> None:
        lat_value = float(self.lat)
        lon_value = float(self.lon)
        if not (-90 <= lat_value <= 90 and -180 <= lon_value <= 180):
            raise InputError(
                message="Invalid WGS84 coordinate range",
                error_code="INVALID_COORDINATE",
                details={"lat": lat_value, "lon": lon_value},
            )
        object.__setattr__(self, "lat", lat_value)
        object.__setattr__(self, "lon", lon_value)

    def as_tuple(self) -> tuple[float, float]:
        return self.lat, self.lon


@dataclass(frozen=True)
class Stop:
    id: str
    point: Point
    service_minutes: float = 0.0
    window_start: datetime | None = None
    window_end: datetime | None = None
    priority: int = 0

    @property
    def has_window(self) -> bool:
        return self.window_start is not None or self.window_end is not None


@dataclass(frozen=True)
class Depot:
    point: Point
    default_departure: str = "08:00"
    default_service_minutes: float = 15.0


@dataclass
class Leg:
    distance_m: float
    duration_minutes: float
    used_live_traffic: bool = False
    source: str = "estimate"


@dataclass
class CostMatrix:
    """Leg costs between every ordered pair of ``points``.

    ``legs[i][j]`` is ``None`` only when the pair is listed in ``failed``; the
    diagonal is always a zero leg.
    """

    points: list[Point]
    legs: list[list[Leg | None]]
    failed: set[tuple[int, int]] = field(default_factory=set)

    def __len__(self) -> int:
        return len(self.points)

    def leg(self, i: int, j: int) -> Leg | None:
        return self.legs[i][j]

    def distance(self, i: int, j: int) -> float:
        leg = self.legs[i][j]
        return float("inf") if leg is None else leg.distance_m

    def duration(self, i: int, j: int) -> float:
        leg = self.legs[i][j]
        return float("inf") if leg is None else leg.duration_minutes

    @property
    def used_live_traffic(self) -> bool:
        return any(leg is not None and leg.used_live_traffic for row in self.legs for leg in row)


@dataclass
class TimedStop:
    stop_id: str
    sequence: int
    arrival: datetime
    departure: datetime
    travel_minutes: float
    distance_m: float
    service_minutes: float
    wait_minutes: float = 0.0
    late_minutes: float = 0.0
    can_make_window: bool = True
    skipped: bool = False


@dataclass
class DepotReturn:
    arrival: datetime
    travel_minutes: float
    distance_m: float


class OptimizationStatus(str, Enum):
    REQUESTED = "REQUESTED"
    SKIPPED = "SKIPPED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


@dataclass
class OptimizationResult:
    status: OptimizationStatus
    order: list[str]
    timed_stops: list[TimedStop] = field(default_factory=list)
    total_distance_m: float = 0.0
    total_duration_minutes: float = 0.0
    total_wait_minutes: float = 0.0
    unserviceable_stops: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    used_live_traffic: bool = False
    depot_return: DepotReturn | None = None
    fingerprint: str | None = None
    already_optimized: bool = False
    optimized_at: datetime | None = None
    has_time_windows: bool = False
    has_priority_stops: bool = False
    algorithm: str = "two_opt"
    distance_mode: str = "estimate"

    def as_skipped(self) -> "OptimizationResult":
        return replace(
            self,
            status=OptimizationStatus.SKIPPED,
            already_optimized=True,
            order=list(self.order),
            timed_stops=list(self.timed_stops),
            unserviceable_stops=list(self.unserviceable_stops),
            warnings=list(self.warnings),
        )


class StopStatus(str, Enum):
    PENDING = "PENDING"
    IN_TRANSIT = "IN_TRANSIT"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"

    @property
    def is_pending(self) -> bool:
        return self in {StopStatus.PENDING, StopStatus.IN_TRANSIT}


@dataclass
class RouteStop:
    """Stored per-stop trip state, as supplied by the persistence collaborator."""

    id: str
    sequence: int
    point: Point | None
    service_minutes: float | None = None
    status: StopStatus = StopStatus.PENDING
    estimated_arrival: datetime | None = None
    original_estimated_arrival: datetime | None = None
    travel_minutes_from_previous: float | None = None


@dataclass
class ActiveRoute:
    id: str
    depot: Depot | None
    stops: list[RouteStop]
    vehicle_position: Point | None = None
    started_at: datetime | None = None

    def ordered_stops(self) -> list[RouteStop]:
        return sorted(self.stops, key=lambda stop: stop.sequence)


@dataclass
class RecalculatedStop:
    stop_id: str
    arrival: datetime
    travel_minutes: float
    original_arrival: datetime | None
    delay_minutes: float | None
    eta_window_start: datetime
    eta_window_end: datetime
    source: str = "provider"


@dataclass
class RecalculationResult:
    route_id: str
    completed_stop_id: str
    stops: list[RecalculatedStop] = field(default_factory=list)
    depot_return: DepotReturn | None = None
    warnings: list[str] = field(default_factory=list)
    degraded: bool = False
    skipped_reason: str | None = None

    @property
    def updated_stops(self) -> int:
        return len(self.stops)
