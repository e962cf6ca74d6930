from __future__ import annotations

import logging
from datetime import datetime
from typing import Protocol
from zoneinfo import ZoneInfo

from route_engine.models.entities import (
    ActiveRoute,
    DepotReturn,
    Leg,
    Point,
    RecalculatedStop,
    RecalculationResult,
    RouteStop,
)
from route_engine.providers.google_routes import GoogleRoutesError
from route_engine.services.distance import ESTIMATE, DistanceProvider
from route_engine.services.timing import eta_window, minutes, minutes_between
from route_engine.utils.errors import InputError
from route_engine.utils.settings import Settings, get_settings


LOGGER = logging.getLogger(__name__)

SOURCE_PROVIDER = "provider"
SOURCE_ESTIMATE = "estimate"
SOURCE_STORED = "stored"
SOURCE_UNKNOWN = "unknown"


class RouteRepository(Protocol):
    def get_route(self, route_id: str) -> ActiveRoute | None: ...


class InMemoryRouteRepository:
    def __init__(self, routes: list[ActiveRoute] | None = None) -> None:
        self._routes: dict[str, ActiveRoute] = {}
        for route in routes or []:
            self.add(route)

    def add(self, route: ActiveRoute) -> None:
        self._routes[route.id] = route

    def get_route(self, route_id: str) -> ActiveRoute | None:
        return self._routes.get(route_id)


def apply_recalculation(route: ActiveRoute, result: RecalculationResult) -> None:
    """Write revised ETAs onto the stored stops; the original ETA is left alone."""
    by_id = {stop.id: stop for stop in route.stops}
    for revised in result.stops:
        stop = by_id.get(revised.stop_id)
        if stop is None:
            continue
        stop.estimated_arrival = revised.arrival
        stop.travel_minutes_from_previous = revised.travel_minutes


class EtaRecalculationEngine:
    """Re-times the pending stops of an active trip after a stop reaches a terminal status."""

    def __init__(
        self,
        repository: RouteRepository,
        provider: DistanceProvider | None = None,
        *,
        settings: Settings | None = None,
    ) -> None:
        self.repository = repository
        self.settings = settings or get_settings()
        self.provider = provider or DistanceProvider(settings=self.settings)

    def _tz(self) -> ZoneInfo:
        return ZoneInfo(self.settings.route_timezone)

    def _localize(self, value: datetime) -> datetime:
        return value if value.tzinfo else value.replace(tzinfo=self._tz())

    def _service_minutes(self, route: ActiveRoute, stop: RouteStop) -> float:
        if stop.service_minutes is not None:
            return float(stop.service_minutes)
        if route.depot is not None:
            return float(route.depot.default_service_minutes)
        return float(self.settings.default_service_minutes)

    def _fallback_leg(self, origin: Point | None, stop: RouteStop) -> tuple[float, str]:
        if stop.travel_minutes_from_previous is not None:
            return float(stop.travel_minutes_from_previous), SOURCE_STORED
        if origin is not None and stop.point is not None:
            return self.provider.estimator.leg(origin, stop.point).duration_minutes, SOURCE_ESTIMATE
        return 0.0, SOURCE_UNKNOWN

    def _fresh_legs(self, points: list[Point], depart_at: datetime) -> list[Leg]:
        mode = self.provider.resolve_mode(None)
        if mode == ESTIMATE:
            return [self.provider.estimator.leg(a, b) for a, b in zip(points[:-1], points[1:])]
        return self.provider.ordered_legs(points, depart_at)

    def _propagate(
        self,
        route: ActiveRoute,
        *,
        anchor: Point | None,
        depart_at: datetime,
        pending: list[RouteStop],
        allow_fresh: bool,
    ) -> tuple[list[RecalculatedStop], DepotReturn | None, list[str], bool]:
        warnings: list[str] = []
        degraded = False
        include_return = self.settings.return_to_depot and route.depot is not None

        chain: list[Point | None] = [anchor, *(stop.point for stop in pending)]
        if include_return:
            chain.append(route.depot.point)

        fresh: list[Leg] | None = None
        if allow_fresh and all(point is not None for point in chain):
            try:
                fresh = self._fresh_legs(chain, depart_at)
            except GoogleRoutesError as exc:
                degraded = True
                LOGGER.warning("Routing service unavailable for route %s, using stored legs: %s", route.id, exc)
                warnings.append("Routing service unavailable; ETAs use previously known travel times")
        elif allow_fresh:
            degraded = True
            warnings.append("Some locations are unknown; ETAs use previously known travel times")

        fresh_source = SOURCE_ESTIMATE if self.provider.resolve_mode(None) == ESTIMATE else SOURCE_PROVIDER
        window_before = self.settings.eta_window_before_minutes
        window_after = self.settings.eta_window_after_minutes

        revised: list[RecalculatedStop] = []
        current_time = depart_at
        origin = anchor
        for position, stop in enumerate(pending):
            if fresh is not None:
                travel, source = fresh[position].duration_minutes, fresh_source
            else:
                travel, source = self._fallback_leg(origin, stop)
                if source == SOURCE_UNKNOWN:
                    warnings.append(f"No travel time known for stop {stop.id}; assuming it follows immediately")
            arrival = current_time + minutes(travel)
            window_start, window_end = eta_window(arrival, before_minutes=window_before, after_minutes=window_after)
            original = stop.original_estimated_arrival
            revised.append(
                RecalculatedStop(
                    stop_id=stop.id,
                    arrival=arrival,
                    travel_minutes=travel,
                    original_arrival=original,
                    delay_minutes=minutes_between(original, arrival) if original is not None else None,
                    eta_window_start=window_start,
                    eta_window_end=window_end,
                    source=source,
                )
            )
            current_time = arrival + minutes(self._service_minutes(route, stop))
            origin = stop.point if stop.point is not None else origin

        returned: DepotReturn | None = None
        if include_return:
            if fresh is not None:
                back = fresh[-1]
            elif origin is not None:
                back = self.provider.estimator.leg(origin, route.depot.point)
            else:
                back = None
            if back is not None:
                returned = DepotReturn(
                    arrival=current_time + minutes(back.duration_minutes),
                    travel_minutes=back.duration_minutes,
                    distance_m=back.distance_m,
                )
        return revised, returned, warnings, degraded

    def recalculate(self, route_id: str, completed_stop_id: str, completed_at: datetime) -> RecalculationResult:
        route = self.repository.get_route(route_id)
        if route is None:
            raise InputError(
                message=f"Route {route_id} not found",
                error_code="ROUTE_NOT_FOUND",
                status_code=404,
                details={"route_id": route_id},
            )
        ordered = route.ordered_stops()
        completed = next((stop for stop in ordered if stop.id == completed_stop_id), None)
        if completed is None:
            raise InputError(
                message=f"Stop {completed_stop_id} is not on route {route_id}",
                error_code="STOP_NOT_FOUND",
                status_code=404,
                details={"route_id": route_id, "stop_id": completed_stop_id},
            )

        completed_at = self._localize(completed_at)
        result = RecalculationResult(route_id=route.id, completed_stop_id=completed.id)
        pending = [stop for stop in ordered if stop.sequence > completed.sequence and stop.status.is_pending]
        if not pending:
            if self.settings.return_to_depot and route.depot is not None:
                _, returned, warnings, degraded = self._propagate(
                    route,
                    anchor=completed.point or route.vehicle_position,
                    depart_at=completed_at,
                    pending=[],
                    allow_fresh=True,
                )
                result.depot_return = returned
                result.warnings = warnings
                result.degraded = degraded
            result.skipped_reason = "no_remaining_stops"
            LOGGER.info("Route %s has no pending stops after %s", route.id, completed.id)
            return result

        threshold = float(self.settings.eta_deviation_threshold_minutes)
        if threshold > 0 and completed.estimated_arrival is not None:
            expected_done = completed.estimated_arrival + minutes(self._service_minutes(route, completed))
            if abs(minutes_between(expected_done, completed_at)) <= threshold:
                result.skipped_reason = "on_schedule"
                LOGGER.info("Stop %s finished on schedule; ETAs on route %s unchanged", completed.id, route.id)
                return result

        anchor = route.vehicle_position or completed.point
        stops, returned, warnings, degraded = self._propagate(
            route,
            anchor=anchor,
            depart_at=completed_at,
            pending=pending,
            allow_fresh=True,
        )
        result.stops = stops
        result.depot_return = returned
        result.warnings = warnings
        result.degraded = degraded
        LOGGER.info(
            "Recalculated %s ETAs on route %s after stop %s%s",
            result.updated_stops,
            route.id,
            completed.id,
            " (degraded)" if degraded else "",
        )
        return result

    def start_trip(self, route: ActiveRoute, started_at: datetime) -> list[RecalculatedStop]:
        """Time the pending stops from the actual start and record each original ETA once."""
        started_at = self._localize(started_at)
        if route.started_at is None:
            route.started_at = started_at
        pending = [stop for stop in route.ordered_stops() if stop.status.is_pending]
        anchor = route.vehicle_position or (route.depot.point if route.depot is not None else None)
        stops, _, _, _ = self._propagate(
            route,
            anchor=anchor,
            depart_at=started_at,
            pending=pending,
            allow_fresh=False,
        )
        by_id = {stop.id: stop for stop in pending}
        for revised in stops:
            stored = by_id[revised.stop_id]
            stored.estimated_arrival = revised.arrival
            if stored.original_estimated_arrival is None:
                stored.original_estimated_arrival = revised.arrival
        LOGGER.info("Trip started on route %s with %s pending stops", route.id, len(stops))
        return stops
