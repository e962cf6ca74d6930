from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime

from route_engine.models.entities import CostMatrix, Leg, Point
from route_engine.providers.estimate import EstimateProvider
from route_engine.providers.google_routes import GoogleRoutesError, GoogleRoutesProvider, get_google_routes_provider
from route_engine.utils.settings import Settings, get_settings


LOGGER = logging.getLogger(__name__)

ESTIMATE = "estimate"
SERVICE = "service"
HYBRID = "hybrid"


class DistanceProvider:
    """Cost between points, either closed-form or via the routing service.

    Hybrid mode solves on estimates; ``ordered_legs`` then re-times the final
    order against the service.
    """

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        service: GoogleRoutesProvider | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.estimator = EstimateProvider(
            speed_kmh=self.settings.estimate_speed_kmh,
            road_factor=self.settings.estimate_road_factor,
        )
        self._service = service
        self.service_calls = 0

    @property
    def service(self) -> GoogleRoutesProvider:
        if self._service is None:
            self._service = get_google_routes_provider()
        return self._service

    def resolve_mode(self, mode: str | None) -> str:
        resolved = str(mode or self.settings.distance_mode).strip().lower()
        if resolved not in {ESTIMATE, SERVICE, HYBRID}:
            raise ValueError(f"Unknown distance mode: {mode}")
        return resolved

    def cost(self, a: Point, b: Point, depart_at: datetime | None, mode: str | None = None) -> Leg:
        """Single leg; service errors propagate so the caller can decide to fall back."""
        resolved = self.resolve_mode(mode)
        if resolved == ESTIMATE or a == b:
            return self.estimator.leg(a, b)
        self.service_calls += 1
        return self.service.compute_leg(a, b, depart_at)

    def estimate_matrix(self, points: list[Point]) -> CostMatrix:
        legs: list[list[Leg | None]] = [[self.estimator.leg(a, b) for b in points] for a in points]
        return CostMatrix(points=list(points), legs=legs)

    def cost_matrix(
        self,
        points: list[Point],
        depart_at: datetime | None,
        mode: str | None = None,
        *,
        fallback_to_estimate: bool | None = None,
    ) -> tuple[CostMatrix, list[str]]:
        """Full matrix over ``points`` plus warnings for any degraded legs.

        In service mode the matrix is fetched in blocks on a bounded worker
        pool. A block that fails marks only its own legs as failed.
        """
        resolved = self.resolve_mode(mode)
        if resolved in {ESTIMATE, HYBRID}:
            return self.estimate_matrix(points), []

        n = len(points)
        legs: list[list[Leg | None]] = [[None] * n for _ in range(n)]
        for i in range(n):
            legs[i][i] = Leg(distance_m=0.0, duration_minutes=0.0, source="estimate")

        blocks = self._matrix_blocks(n)
        warnings: list[str] = []
        failed: set[tuple[int, int]] = set()
        errors: list[GoogleRoutesError] = []

        def fetch(block: tuple[range, range]) -> tuple[tuple[range, range], list[list[Leg | None]] | None, GoogleRoutesError | None]:
            rows, cols = block
            try:
                part = self.service.compute_route_matrix(
                    [points[i] for i in rows],
                    [points[j] for j in cols],
                    depart_at,
                )
            except GoogleRoutesError as exc:
                return block, None, exc
            return block, part, None

        workers = max(1, min(int(self.settings.google_max_workers), len(blocks)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            outcomes = list(pool.map(fetch, blocks))
        self.service_calls += len(blocks)

        for (rows, cols), part, error in outcomes:
            if error is not None:
                errors.append(error)
            for bi, i in enumerate(rows):
                for bj, j in enumerate(cols):
                    if i == j:
                        continue
                    leg = part[bi][bj] if part is not None else None
                    if leg is None:
                        failed.add((i, j))
                    else:
                        legs[i][j] = leg

        if errors and len(errors) == len(blocks):
            first = errors[0]
            raise GoogleRoutesError(
                "Distance matrix unavailable",
                code=first.code,
                status_code=first.status_code,
                retryable=first.retryable,
                details={"blocks": len(blocks), "cause": first.details},
            ) from first

        if failed:
            LOGGER.warning("Distance matrix incomplete: %s of %s legs failed", len(failed), n * (n - 1))
            use_fallback = self.settings.fallback_to_estimate if fallback_to_estimate is None else fallback_to_estimate
            if use_fallback:
                for i, j in sorted(failed):
                    legs[i][j] = self.estimator.leg(points[i], points[j], source="estimate_fallback")
                warnings.append(f"{len(failed)} travel legs were unavailable from the routing service and were estimated")
                failed = set()
            else:
                warnings.append(f"{len(failed)} travel legs were unavailable from the routing service")

        return CostMatrix(points=list(points), legs=legs, failed=failed), warnings

    def ordered_legs(self, points: list[Point], depart_at: datetime | None) -> list[Leg]:
        """Service legs along a fixed visiting order (one request per chunk)."""
        if len(points) < 2:
            return []
        self.service_calls += 1
        return self.service.compute_routes(points, depart_at)

    def _matrix_blocks(self, n: int) -> list[tuple[range, range]]:
        max_elements = max(1, int(self.settings.google_matrix_max_elements))
        cols_per_block = min(n, max_elements)
        rows_per_block = max(1, max_elements // cols_per_block)
        blocks: list[tuple[range, range]] = []
        for row_start in range(0, n, rows_per_block):
            for col_start in range(0, n, cols_per_block):
                blocks.append(
                    (
                        range(row_start, min(n, row_start + rows_per_block)),
                        range(col_start, min(n, col_start + cols_per_block)),
                    )
                )
        return blocks
