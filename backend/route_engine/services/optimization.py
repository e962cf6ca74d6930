from __future__ import annotations

import logging
from datetime import datetime, time
from zoneinfo import ZoneInfo

from route_engine.models.entities import CostMatrix, Depot, OptimizationResult, OptimizationStatus, Point, Stop
from route_engine.providers.google_routes import GoogleRoutesError
from route_engine.schemas.api import OptimizeRequest, StopIn
from route_engine.services import pinning
from route_engine.services.distance import HYBRID, DistanceProvider
from route_engine.services.fingerprint import fingerprint, should_skip
from route_engine.services.timing import Timeline, build_timeline, depot_return, minutes_between
from route_engine.services.tour import AnnealingSchedule, solve_tour
from route_engine.services.vrptw import solve_with_time_windows
from route_engine.utils.errors import AppError, InputError, OptimizationFailed
from route_engine.utils.settings import Settings, get_settings


LOGGER = logging.getLogger(__name__)

DEPOT_INDEX = 0
ALGORITHM_TWO_OPT = "two_opt"
ALGORITHM_TIME_WINDOWS = "time_windows"

_TRANSITIONS: dict[OptimizationStatus, set[OptimizationStatus]] = {
    OptimizationStatus.REQUESTED: {OptimizationStatus.SKIPPED, OptimizationStatus.RUNNING},
    OptimizationStatus.RUNNING: {OptimizationStatus.SUCCEEDED, OptimizationStatus.FAILED},
    OptimizationStatus.SKIPPED: set(),
    OptimizationStatus.SUCCEEDED: set(),
    OptimizationStatus.FAILED: set(),
}


class OptimizationRun:
    def __init__(self) -> None:
        self.status = OptimizationStatus.REQUESTED
        self.history: list[OptimizationStatus] = [self.status]

    def transition(self, target: OptimizationStatus) -> None:
        if target not in _TRANSITIONS[self.status]:
            raise AppError(
                message=f"Invalid optimization transition {self.status.value} -> {target.value}",
                error_code="INVALID_STATE_TRANSITION",
                status_code=409,
                stage="OPTIMIZATION",
                details={"from": self.status.value, "to": target.value},
            )
        self.status = target
        self.history.append(target)

    @property
    def is_terminal(self) -> bool:
        return not _TRANSITIONS[self.status]


def _localize(value: datetime | None, tz: ZoneInfo) -> datetime | None:
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=tz)


def resolve_departure(depart_at: datetime | None, *, default_departure: str, tz: ZoneInfo) -> datetime:
    if depart_at is not None:
        return _localize(depart_at, tz)
    hh, mm = (int(part) for part in default_departure.split(":"))
    return datetime.combine(datetime.now(tz).date(), time(hh, mm), tzinfo=tz)


class OptimizationEngine:
    def __init__(self, *, settings: Settings | None = None, provider: DistanceProvider | None = None) -> None:
        self.settings = settings or get_settings()
        self.provider = provider or DistanceProvider(settings=self.settings)

    def validate(self, request: OptimizeRequest) -> None:
        if request.depot is None:
            raise InputError(message="A depot is required to optimize a route", error_code="DEPOT_MISSING")

        min_stops = int(self.settings.optimize_min_stops)
        max_stops = int(self.settings.optimize_max_stops)
        routable = [stop for stop in request.stops if stop.has_coordinates]
        if len(routable) < min_stops:
            raise InputError(
                message=f"At least {min_stops} stops with coordinates are required",
                error_code="TOO_FEW_STOPS",
                details={"stop_count": len(request.stops), "routable_count": len(routable), "min_stops": min_stops},
            )
        if len(request.stops) > max_stops:
            raise InputError(
                message="Optimize request exceeds stop limit; split the route or reduce stops.",
                error_code="OPTIMIZE_MAX_STOPS_EXCEEDED",
                details={"stop_count": len(request.stops), "max_stops": max_stops},
            )

        pinning.validate_forced_endpoints(
            request.stops,
            forced_first_id=request.forced_first_id,
            forced_last_id=request.forced_last_id,
        )

    def optimize(self, request: OptimizeRequest, *, run: OptimizationRun | None = None) -> OptimizationResult:
        run = run or OptimizationRun()
        self.validate(request)

        current = fingerprint(request.stops)
        previous = request.previous
        if should_skip(
            current=current,
            previous=previous.fingerprint if previous else None,
            previously_optimized_at=previous.optimized_at if previous else None,
            force=request.force,
            has_forced_endpoints=request.has_forced_endpoints,
        ):
            run.transition(OptimizationStatus.SKIPPED)
            LOGGER.info("Stops unchanged since %s; skipping optimization", previous.optimized_at.isoformat())
            if previous.result is not None:
                return previous.result.as_skipped()
            return OptimizationResult(
                status=OptimizationStatus.SKIPPED,
                order=[stop.id for stop in request.stops],
                fingerprint=current,
                already_optimized=True,
                optimized_at=previous.optimized_at,
            )

        run.transition(OptimizationStatus.RUNNING)
        LOGGER.info("Optimization started for %s stops", len(request.stops))
        try:
            result = self._solve(request, current)
        except GoogleRoutesError as exc:
            run.transition(OptimizationStatus.FAILED)
            LOGGER.warning("Optimization failed: %s (%s)", exc, exc.code)
            raise OptimizationFailed(
                message=f"Routing service failed: {exc}",
                details={"provider_code": exc.code, "provider_status": exc.status_code, **exc.details},
            ) from exc
        run.transition(OptimizationStatus.SUCCEEDED)
        result.status = OptimizationStatus.SUCCEEDED
        LOGGER.info(
            "Optimization finished: %s stops, %.0f m, %.1f min, %s unserviceable",
            len(result.order),
            result.total_distance_m,
            result.total_duration_minutes,
            len(result.unserviceable_stops),
        )
        return result

    def _to_stop(self, stop_in: StopIn, *, depot: Depot, tz: ZoneInfo) -> Stop:
        service = stop_in.service_minutes
        return Stop(
            id=stop_in.id,
            point=Point(stop_in.lat, stop_in.lon),
            service_minutes=depot.default_service_minutes if service is None else float(service),
            window_start=_localize(stop_in.window_start, tz),
            window_end=_localize(stop_in.window_end, tz),
            priority=stop_in.priority,
        )

    def _solve(self, request: OptimizeRequest, current_fingerprint: str) -> OptimizationResult:
        settings = self.settings
        tz = ZoneInfo(settings.route_timezone)
        depot_in = request.depot
        depot = Depot(
            point=Point(depot_in.lat, depot_in.lon),
            default_departure=depot_in.default_departure or settings.default_departure_time,
            default_service_minutes=(
                float(settings.default_service_minutes)
                if depot_in.default_service_minutes is None
                else float(depot_in.default_service_minutes)
            ),
        )
        depart_at = resolve_departure(request.depart_at, default_departure=depot.default_departure, tz=tz)
        mode = self.provider.resolve_mode(request.mode)

        warnings: list[str] = []
        unserviceable: list[str] = []
        domain_stops: list[Stop] = []
        for stop_in in request.stops:
            if not stop_in.has_coordinates:
                unserviceable.append(stop_in.id)
                warnings.append(f"Stop {stop_in.id} has no coordinates and was left out of the route")
                continue
            domain_stops.append(self._to_stop(stop_in, depot=depot, tz=tz))
        if unserviceable:
            LOGGER.warning("%s stops without coordinates excluded", len(unserviceable))

        stops_by_index = {index: stop for index, stop in enumerate(domain_stops, start=1)}
        stop_indices = list(stops_by_index)
        points = [depot.point] + [stop.point for stop in domain_stops]

        matrix, matrix_warnings = self.provider.cost_matrix(points, depart_at, mode)
        warnings.extend(matrix_warnings)

        has_time_windows = any(stop.has_window for stop in domain_stops)
        has_priority_stops = any(stop.priority > 0 for stop in domain_stops)
        honor_windows = has_time_windows or has_priority_stops

        plan = pinning.plan_endpoints(
            matrix,
            depot_index=DEPOT_INDEX,
            stop_indices=stop_indices,
            stops=stops_by_index,
            forced_first_id=request.forced_first_id,
            forced_last_id=request.forced_last_id,
            depart_at=depart_at,
            honor_windows=honor_windows,
            return_to_depot=settings.return_to_depot,
        )

        if honor_windows:
            solution = solve_with_time_windows(
                matrix,
                origin=plan.origin,
                stop_indices=plan.interior,
                stops=stops_by_index,
                depart_at=plan.interior_depart_at,
                return_index=plan.return_index,
                max_passes=settings.tw_local_search_max_passes,
                cost_tolerance=settings.tw_cost_tolerance,
                time_budget_seconds=settings.tw_time_budget_seconds,
                relocate_window=settings.tw_relocate_window,
            )
            interior_order = solution.order
            if solution.budget_exhausted:
                warnings.append("Time-window search stopped at its time budget; the order may not be fully improved")
            algorithm = ALGORITHM_TIME_WINDOWS
        else:
            tour = solve_tour(
                matrix,
                origin=plan.origin,
                stop_indices=plan.interior,
                return_index=plan.return_index,
                max_iterations=settings.two_opt_max_iterations,
                annealing=self._annealing_schedule(),
            )
            interior_order = tour.order
            algorithm = ALGORITHM_TWO_OPT

        order = pinning.splice(plan, interior_order)

        retimed: set[tuple[int, int]] | None = None
        if mode == HYBRID and order:
            matrix, retimed = self._retime(matrix, order, depart_at, warnings)

        timeline = self._timeline(matrix, order, stops_by_index, depart_at, honor_windows)
        if request.exclude_unserviceable and timeline.unserviceable:
            dropped = set(timeline.unserviceable)
            order = [node for node in order if stops_by_index[node].id not in dropped]
            warnings.extend(timeline.warnings)
            unserviceable.extend(timeline.unserviceable)
            timeline = self._timeline(matrix, order, stops_by_index, depart_at, honor_windows)

        warnings.extend(timeline.warnings)
        unserviceable.extend([stop_id for stop_id in timeline.unserviceable if stop_id not in unserviceable])
        if timeline.unserviceable:
            LOGGER.warning("%s stops cannot be serviced in the computed order", len(timeline.unserviceable))

        total_distance = timeline.total_distance_m
        end_time = timeline.end_time
        returned = None
        if settings.return_to_depot:
            returned = depot_return(matrix, from_index=timeline.last_index, to_index=DEPOT_INDEX, departure=end_time)
            if returned is None:
                warnings.append("Return leg to the depot is unavailable; totals exclude it")
            else:
                total_distance += returned.distance_m
                end_time = returned.arrival

        if retimed is not None:
            estimated = self._estimated_legs(order, timeline, retimed)
            if estimated:
                LOGGER.info("%s legs after skipped stops were not re-timed", len(estimated))
                warnings.append(f"{len(estimated)} legs after skipped stops use estimated travel times")

        return OptimizationResult(
            status=OptimizationStatus.RUNNING,
            order=[stops_by_index[node].id for node in order],
            timed_stops=timeline.timed_stops,
            total_distance_m=total_distance,
            total_duration_minutes=minutes_between(depart_at, end_time),
            total_wait_minutes=timeline.wait_minutes,
            unserviceable_stops=unserviceable,
            warnings=warnings,
            used_live_traffic=matrix.used_live_traffic,
            depot_return=returned,
            fingerprint=current_fingerprint,
            already_optimized=False,
            optimized_at=datetime.now(tz),
            has_time_windows=has_time_windows,
            has_priority_stops=has_priority_stops,
            algorithm=algorithm,
            distance_mode=mode,
        )

    def _annealing_schedule(self) -> AnnealingSchedule | None:
        if not self.settings.sa_enabled:
            return None
        return AnnealingSchedule(
            iterations=self.settings.sa_iterations,
            initial_temperature=self.settings.sa_initial_temperature,
            cooling_rate=self.settings.sa_cooling_rate,
            seed=self.settings.sa_seed,
        )

    @staticmethod
    def _timeline(
        matrix: CostMatrix,
        order: list[int],
        stops: dict[int, Stop],
        depart_at: datetime,
        honor_windows: bool,
    ) -> Timeline:
        return build_timeline(
            matrix=matrix,
            order=order,
            stops=stops,
            origin_index=DEPOT_INDEX,
            depart_at=depart_at,
            honor_windows=honor_windows,
        )

    def _retime(
        self, matrix: CostMatrix, order: list[int], depart_at: datetime, warnings: list[str]
    ) -> tuple[CostMatrix, set[tuple[int, int]] | None]:
        """Swap the estimated legs along ``order`` for routing-service legs; also returns the re-timed pairs."""
        path = [DEPOT_INDEX, *order]
        if self.settings.return_to_depot:
            path.append(DEPOT_INDEX)
        try:
            legs = self.provider.ordered_legs([matrix.points[node] for node in path], depart_at)
        except GoogleRoutesError as exc:
            LOGGER.warning("Live leg timings unavailable, keeping estimates: %s", exc)
            warnings.append("Live travel times were unavailable; estimated times are used")
            return matrix, None

        pairs = list(zip(path[:-1], path[1:]))
        retimed = [list(row) for row in matrix.legs]
        for (a, b), leg in zip(pairs, legs):
            retimed[a][b] = leg
        return CostMatrix(points=list(matrix.points), legs=retimed, failed=set(matrix.failed)), set(pairs)

    def _estimated_legs(
        self, order: list[int], timeline: Timeline, retimed: set[tuple[int, int]]
    ) -> list[tuple[int, int]]:
        """Walked legs the ordered request did not cover, e.g. the leg that bypasses a skipped stop."""
        walked = []
        current = DEPOT_INDEX
        for node, timed in zip(order, timeline.timed_stops):
            walked.append((current, node))
            if not timed.skipped:
                current = node
        if self.settings.return_to_depot:
            walked.append((timeline.last_index, DEPOT_INDEX))
        return [(a, b) for a, b in walked if a != b and (a, b) not in retimed]


def optimize(request: OptimizeRequest, provider: DistanceProvider | None = None) -> OptimizationResult:
    return OptimizationEngine(provider=provider).optimize(request)
