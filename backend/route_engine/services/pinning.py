from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Sequence

from route_engine.models.entities import CostMatrix, Stop
from route_engine.services.timing import build_timeline
from route_engine.utils.errors import InputError


@dataclass
class PinnedPlan:
    """Solver inputs once the forced endpoints are taken out of the stop set."""

    first_index: int | None
    last_index: int | None
    interior: list[int]
    origin: int
    return_index: int | None
    interior_depart_at: datetime

    @property
    def has_forced_endpoints(self) -> bool:
        return self.first_index is not None or self.last_index is not None


def validate_forced_endpoints(
    stops: Sequence[Any],
    *,
    forced_first_id: str | None,
    forced_last_id: str | None,
) -> None:
    """Reject unknown, unlocated or duplicated forced ids before any routing call."""
    if forced_first_id is None and forced_last_id is None:
        return
    if forced_first_id is not None and forced_first_id == forced_last_id:
        raise InputError(
            message="The same stop cannot be forced first and last",
            error_code="FORCED_STOP_DUPLICATE",
            details={"stop_id": forced_first_id},
        )

    by_id = {str(stop.id): stop for stop in stops}
    for role, stop_id in (("first", forced_first_id), ("last", forced_last_id)):
        if stop_id is None:
            continue
        stop = by_id.get(stop_id)
        if stop is None:
            raise InputError(
                message=f"Forced {role} stop {stop_id} is not in the stop list",
                error_code="FORCED_STOP_NOT_FOUND",
                details={"stop_id": stop_id, "role": role},
            )
        if getattr(stop, "lat", None) is None or getattr(stop, "lon", None) is None:
            raise InputError(
                message=f"Forced {role} stop {stop_id} has no coordinates",
                error_code="FORCED_STOP_NOT_FOUND",
                details={"stop_id": stop_id, "role": role, "reason": "missing_coordinates"},
            )


def plan_endpoints(
    matrix: CostMatrix,
    *,
    depot_index: int,
    stop_indices: Sequence[int],
    stops: dict[int, Stop],
    forced_first_id: str | None,
    forced_last_id: str | None,
    depart_at: datetime,
    honor_windows: bool,
    return_to_depot: bool,
) -> PinnedPlan:
    index_by_id = {stops[node].id: node for node in stop_indices}
    first_index = index_by_id.get(forced_first_id) if forced_first_id is not None else None
    last_index = index_by_id.get(forced_last_id) if forced_last_id is not None else None
    pinned = {node for node in (first_index, last_index) if node is not None}
    interior = [node for node in stop_indices if node not in pinned]

    origin = depot_index
    interior_depart_at = depart_at
    if first_index is not None:
        lead = build_timeline(
            matrix=matrix,
            order=[first_index],
            stops=stops,
            origin_index=depot_index,
            depart_at=depart_at,
            honor_windows=honor_windows,
        )
        origin = first_index
        interior_depart_at = lead.timed_stops[0].departure

    if last_index is not None:
        return_index: int | None = last_index
    else:
        return_index = depot_index if return_to_depot else None

    return PinnedPlan(
        first_index=first_index,
        last_index=last_index,
        interior=interior,
        origin=origin,
        return_index=return_index,
        interior_depart_at=interior_depart_at,
    )


def splice(plan: PinnedPlan, interior_order: Sequence[int]) -> list[int]:
    order: list[int] = []
    if plan.first_index is not None:
        order.append(plan.first_index)
    order.extend(interior_order)
    if plan.last_index is not None:
        order.append(plan.last_index)
    return order
