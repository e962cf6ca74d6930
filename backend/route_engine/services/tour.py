from __future__ import annotations

import logging
import math
import random
from dataclasses import dataclass
from typing import Sequence

from route_engine.models.entities import CostMatrix


LOGGER = logging.getLogger(__name__)

IMPROVEMENT_EPSILON = 1e-9
MIN_TEMPERATURE = 0.1


@dataclass
class AnnealingSchedule:
    iterations: int
    initial_temperature: float = 10000.0
    cooling_rate: float = 0.995
    seed: int = 0


@dataclass
class TourSolution:
    order: list[int]
    construction_cost: float
    cost: float
    iterations: int
    annealed_cost: float | None = None


def path_cost(matrix: CostMatrix, path: Sequence[int]) -> float:
    return sum(matrix.distance(a, b) for a, b in zip(path[:-1], path[1:]))


def _closed_path(origin: int, order: Sequence[int], return_index: int | None) -> list[int]:
    path = [origin, *order]
    if return_index is not None:
        path.append(return_index)
    return path


def nearest_neighbor(matrix: CostMatrix, *, origin: int, candidates: Sequence[int]) -> list[int]:
    """Greedy construction; ties go to the candidate listed first."""
    remaining = list(candidates)
    order: list[int] = []
    current = origin
    while remaining:
        best_pos = 0
        best_cost = matrix.distance(current, remaining[0])
        for pos in range(1, len(remaining)):
            cost = matrix.distance(current, remaining[pos])
            if cost < best_cost:
                best_pos, best_cost = pos, cost
        current = remaining.pop(best_pos)
        order.append(current)
    return order


def two_opt(
    matrix: CostMatrix,
    *,
    origin: int,
    order: Sequence[int],
    return_index: int | None,
    max_iterations: int,
) -> tuple[list[int], int]:
    """Reverse interior segments while that shortens the path.

    The origin and return point stay fixed. A pass scans every segment; the
    loop ends after a pass with no improving reversal or after
    ``max_iterations`` passes.
    """
    path = _closed_path(origin, order, return_index)
    last_interior = len(path) - 2 if return_index is not None else len(path) - 1
    best_cost = path_cost(matrix, path)
    iterations = 0

    improved = True
    while improved and iterations < max_iterations:
        improved = False
        iterations += 1
        for i in range(1, last_interior):
            for j in range(i + 1, last_interior + 1):
                candidate = path[:i] + path[i : j + 1][::-1] + path[j + 1 :]
                candidate_cost = path_cost(matrix, candidate)
                if candidate_cost < best_cost - IMPROVEMENT_EPSILON:
                    path, best_cost = candidate, candidate_cost
                    improved = True

    interior = path[1 : last_interior + 1]
    return interior, iterations


def _random_neighbour(order: list[int], rng: random.Random) -> list[int]:
    i = rng.randrange(len(order) - 1)
    j = rng.randrange(i + 1, len(order))
    if rng.random() < 0.5:
        candidate = list(order)
        candidate[i], candidate[j] = candidate[j], candidate[i]
        return candidate
    return order[:i] + order[i : j + 1][::-1] + order[j + 1 :]


def anneal(
    matrix: CostMatrix,
    *,
    origin: int,
    order: Sequence[int],
    return_index: int | None,
    schedule: AnnealingSchedule,
) -> list[int]:
    """Simulated annealing over swaps and segment reversals of the interior.

    Worse tours are accepted with probability ``exp(-delta / T)`` while the
    temperature decays geometrically. The best tour seen is returned, so the
    result never costs more than ``order``.
    """
    current = list(order)
    if len(current) < 2 or schedule.iterations <= 0:
        return current
    rng = random.Random(schedule.seed)
    current_cost = path_cost(matrix, _closed_path(origin, current, return_index))
    best, best_cost = current, current_cost
    temperature = schedule.initial_temperature

    for _ in range(schedule.iterations):
        if temperature < MIN_TEMPERATURE:
            break
        candidate = _random_neighbour(current, rng)
        candidate_cost = path_cost(matrix, _closed_path(origin, candidate, return_index))
        delta = candidate_cost - current_cost
        if delta < 0 or rng.random() < math.exp(-delta / temperature):
            current, current_cost = candidate, candidate_cost
            if current_cost < best_cost - IMPROVEMENT_EPSILON:
                best, best_cost = current, current_cost
        temperature *= schedule.cooling_rate
    return best


def solve_tour(
    matrix: CostMatrix,
    *,
    origin: int,
    stop_indices: Sequence[int],
    return_index: int | None,
    max_iterations: int,
    annealing: AnnealingSchedule | None = None,
) -> TourSolution:
    """Nearest neighbour, then optional annealing, then 2-opt."""
    construction = nearest_neighbor(matrix, origin=origin, candidates=stop_indices)
    construction_cost = path_cost(matrix, _closed_path(origin, construction, return_index))
    if len(construction) < 2:
        return TourSolution(order=construction, construction_cost=construction_cost, cost=construction_cost, iterations=0)

    current = construction
    annealed_cost = None
    if annealing is not None:
        current = anneal(matrix, origin=origin, order=construction, return_index=return_index, schedule=annealing)
        annealed_cost = path_cost(matrix, _closed_path(origin, current, return_index))

    improved, iterations = two_opt(
        matrix,
        origin=origin,
        order=current,
        return_index=return_index,
        max_iterations=max_iterations,
    )
    cost = path_cost(matrix, _closed_path(origin, improved, return_index))
    LOGGER.info(
        "Tour built for %s stops: nearest-neighbour %.0f m, annealed %s, 2-opt %.0f m after %s passes",
        len(improved),
        construction_cost,
        "skipped" if annealed_cost is None else f"{annealed_cost:.0f} m",
        cost,
        iterations,
    )
    return TourSolution(
        order=improved,
        construction_cost=construction_cost,
        cost=cost,
        iterations=iterations,
        annealed_cost=annealed_cost,
    )
