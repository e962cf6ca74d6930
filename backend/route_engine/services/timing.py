from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Sequence

from route_engine.models.entities import CostMatrix, DepotReturn, Stop, TimedStop


TEN_MINUTES = timedelta(minutes=10)


def minutes(value: float) -> timedelta:
    return timedelta(minutes=float(value))


def minutes_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 60.0


@dataclass
class Timeline:
    timed_stops: list[TimedStop]
    start_time: datetime
    end_time: datetime
    last_index: int
    total_distance_m: float = 0.0
    travel_minutes: float = 0.0
    wait_minutes: float = 0.0
    service_minutes: float = 0.0
    unserviceable: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def duration_minutes(self) -> float:
        return minutes_between(self.start_time, self.end_time)


def build_timeline(
    *,
    matrix: CostMatrix,
    order: Sequence[int],
    stops: dict[int, Stop],
    origin_index: int,
    depart_at: datetime,
    sequence_start: int = 1,
    honor_windows: bool = False,
) -> Timeline:
    """Walk ``order`` (matrix indices) from ``origin_index`` accumulating travel and service.

    With ``honor_windows`` the vehicle waits for a window to open, and a stop
    reached after its window closed is reported unserviceable and skipped for
    timing: the next leg starts from the last serviced node.
    """
    timed: list[TimedStop] = []
    current_index = origin_index
    current_time = depart_at
    timeline = Timeline(timed_stops=timed, start_time=depart_at, end_time=depart_at, last_index=origin_index)

    for offset, node in enumerate(order):
        stop = stops[node]
        travel = matrix.duration(current_index, node)
        distance = matrix.distance(current_index, node)
        sequence = sequence_start + offset

        if math.isinf(travel):
            # No leg data reaching this stop; timing continues from the last serviced node.
            timed.append(
                TimedStop(
                    stop_id=stop.id,
                    sequence=sequence,
                    arrival=current_time,
                    departure=current_time,
                    travel_minutes=travel,
                    distance_m=distance,
                    service_minutes=stop.service_minutes,
                    can_make_window=False,
                    skipped=True,
                )
            )
            timeline.unserviceable.append(stop.id)
            timeline.warnings.append(f"Stop {stop.id} has no travel data from the previous stop")
            continue

        arrival = current_time + minutes(travel)

        if honor_windows and stop.window_end is not None and arrival > stop.window_end:
            late = minutes_between(stop.window_end, arrival)
            timed.append(
                TimedStop(
                    stop_id=stop.id,
                    sequence=sequence,
                    arrival=arrival,
                    departure=arrival,
                    travel_minutes=travel,
                    distance_m=distance,
                    service_minutes=stop.service_minutes,
                    late_minutes=late,
                    can_make_window=False,
                    skipped=True,
                )
            )
            timeline.unserviceable.append(stop.id)
            timeline.warnings.append(f"Stop {stop.id} would arrive {late:.0f} min after its window closes")
            continue

        service_start = arrival
        if honor_windows and stop.window_start is not None and arrival < stop.window_start:
            service_start = stop.window_start
        wait = minutes_between(arrival, service_start)
        departure = service_start + minutes(stop.service_minutes)

        timed.append(
            TimedStop(
                stop_id=stop.id,
                sequence=sequence,
                arrival=arrival,
                departure=departure,
                travel_minutes=travel,
                distance_m=distance,
                service_minutes=stop.service_minutes,
                wait_minutes=wait,
            )
        )
        timeline.total_distance_m += distance
        timeline.travel_minutes += travel
        timeline.wait_minutes += wait
        timeline.service_minutes += stop.service_minutes
        current_index = node
        current_time = departure

    timeline.end_time = current_time
    timeline.last_index = current_index
    return timeline


def depot_return(matrix: CostMatrix, *, from_index: int, to_index: int, departure: datetime) -> DepotReturn | None:
    travel = matrix.duration(from_index, to_index)
    if math.isinf(travel):
        return None
    return DepotReturn(
        arrival=departure + minutes(travel),
        travel_minutes=travel,
        distance_m=matrix.distance(from_index, to_index),
    )


def eta_window(arrival: datetime, *, before_minutes: int = 30, after_minutes: int = 30) -> tuple[datetime, datetime]:
    """Display window around an ETA, widened outwards to 10-minute boundaries."""
    raw_start = arrival - timedelta(minutes=before_minutes)
    raw_end = arrival + timedelta(minutes=after_minutes)
    return _floor_ten(raw_start), _ceil_ten(raw_end)


def _floor_ten(value: datetime) -> datetime:
    base = value.replace(minute=0, second=0, microsecond=0)
    return base + ((value - base) // TEN_MINUTES) * TEN_MINUTES


def _ceil_ten(value: datetime) -> datetime:
    floored = _floor_ten(value)
    return floored if floored == value else floored + TEN_MINUTES
