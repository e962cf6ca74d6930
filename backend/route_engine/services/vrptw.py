from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Sequence

from route_engine.models.entities import CostMatrix, Stop
from route_engine.services.timing import Timeline, build_timeline


LOGGER = logging.getLogger(__name__)

IMPROVEMENT_EPSILON = 1e-9


@dataclass
class WindowSolution:
    order: list[int]
    timeline: Timeline
    violations: int
    priority_penalty: int
    cost: float
    moves: int
    budget_exhausted: bool = False


@dataclass
class _Evaluation:
    order: list[int]
    timeline: Timeline
    violations: int
    priority_penalty: int
    cost: float


def seed_order(matrix: CostMatrix, *, origin: int, stop_indices: Sequence[int], stops: dict[int, Stop]) -> list[int]:
    """Priority first, then earliest window start, then closest to the origin."""

    def key(item: tuple[int, int]) -> tuple:
        position, node = item
        stop = stops[node]
        if stop.window_start is None:
            window_key = (1, 0.0)
        else:
            window_key = (0, stop.window_start.timestamp())
        return (-stop.priority, *window_key, matrix.distance(origin, node), position)

    return [node for _, node in sorted(enumerate(stop_indices), key=key)]


def _evaluate(
    matrix: CostMatrix,
    order: list[int],
    *,
    stops: dict[int, Stop],
    origin: int,
    return_index: int | None,
    depart_at: datetime,
) -> _Evaluation:
    timeline = build_timeline(
        matrix=matrix,
        order=order,
        stops=stops,
        origin_index=origin,
        depart_at=depart_at,
        honor_windows=True,
    )
    cost = timeline.total_distance_m
    if return_index is not None:
        cost += matrix.distance(timeline.last_index, return_index)
    penalty = sum(stops[node].priority * position for position, node in enumerate(order))
    return _Evaluation(
        order=order,
        timeline=timeline,
        violations=len(timeline.unserviceable),
        priority_penalty=penalty,
        cost=cost,
    )


def _neighbours(order: list[int], relocate_window: int):
    n = len(order)
    for i in range(n - 1):
        swapped = list(order)
        swapped[i], swapped[i + 1] = swapped[i + 1], swapped[i]
        yield swapped
    for i in range(n):
        for j in range(max(0, i - relocate_window), min(n, i + relocate_window + 1)):
            if abs(j - i) <= 1:
                continue
            moved = list(order)
            node = moved.pop(i)
            moved.insert(j, node)
            yield moved


def _accept(candidate: _Evaluation, current: _Evaluation, tolerance: float) -> bool:
    if candidate.violations > current.violations:
        return False
    if candidate.priority_penalty > current.priority_penalty:
        return False
    if candidate.cost > current.cost * (1.0 + tolerance) + IMPROVEMENT_EPSILON:
        return False
    return (
        candidate.violations < current.violations
        or candidate.priority_penalty < current.priority_penalty
        or candidate.cost < current.cost - IMPROVEMENT_EPSILON
    )


def solve_with_time_windows(
    matrix: CostMatrix,
    *,
    origin: int,
    stop_indices: Sequence[int],
    stops: dict[int, Stop],
    depart_at: datetime,
    return_index: int | None,
    max_passes: int,
    cost_tolerance: float,
    time_budget_seconds: float | None = None,
    relocate_window: int = 10,
) -> WindowSolution:
    """Greedy seed plus a bounded swap/relocate pass.

    A move is kept only when it adds no window violation, does not push
    priority stops later, stays within ``cost_tolerance`` of the current
    distance, and improves at least one of the three. Relocations move a stop
    at most ``relocate_window`` positions. The search stops early, keeping the
    best order so far, once ``time_budget_seconds`` have elapsed.
    """
    deadline = time.monotonic() + time_budget_seconds if time_budget_seconds is not None else None
    seeded = seed_order(matrix, origin=origin, stop_indices=stop_indices, stops=stops)
    current = _evaluate(matrix, seeded, stops=stops, origin=origin, return_index=return_index, depart_at=depart_at)
    seed_violations = current.violations
    moves = 0
    budget_exhausted = False

    for _ in range(max(0, max_passes)):
        improved = False
        for candidate_order in _neighbours(current.order, relocate_window):
            if deadline is not None and time.monotonic() >= deadline:
                budget_exhausted = True
                break
            candidate = _evaluate(
                matrix,
                candidate_order,
                stops=stops,
                origin=origin,
                return_index=return_index,
                depart_at=depart_at,
            )
            if _accept(candidate, current, cost_tolerance):
                current = candidate
                moves += 1
                improved = True
                break
        if budget_exhausted or not improved:
            break

    if budget_exhausted:
        LOGGER.warning("Time-window search hit its %.1fs budget after %s moves", time_budget_seconds, moves)
    LOGGER.info(
        "Time-window solve for %s stops: violations %s -> %s after %s moves",
        len(seeded),
        seed_violations,
        current.violations,
        moves,
    )
    return WindowSolution(
        order=current.order,
        timeline=current.timeline,
        violations=current.violations,
        priority_penalty=current.priority_penalty,
        cost=current.cost,
        moves=moves,
        budget_exhausted=budget_exhausted,
    )
