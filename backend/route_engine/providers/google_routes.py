from __future__ import annotations

import json
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any

import httpx

from route_engine.models.entities import Leg, Point
from route_engine.services.cache import CacheBackend, LegCache, get_cache
from route_engine.utils.settings import Settings, get_settings


LOGGER = logging.getLogger(__name__)

GOOGLE_COMPUTE_ROUTES_URL = "https://routes.googleapis.com/directions/v2:computeRoutes"
GOOGLE_COMPUTE_MATRIX_URL = "https://routes.googleapis.com/distanceMatrix/v2:computeRouteMatrix"
ROUTES_FIELD_MASK = "routes.legs.duration,routes.legs.distanceMeters"
MATRIX_FIELD_MASK = "originIndex,destinationIndex,duration,distanceMeters,condition,status"
MAX_INTERMEDIATES_PER_REQUEST = 25
RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


class GoogleRoutesError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        code: str = "GOOGLE_ROUTES_ERROR",
        status_code: int | None = None,
        retryable: bool = False,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.status_code = status_code
        self.retryable = retryable
        self.details = details or {}


ProviderError = GoogleRoutesError


class _TokenBucketLimiter:
    """Blocks callers so that requests leave at no more than ``qps`` on average."""

    def __init__(self, *, qps: float) -> None:
        self._rate = max(0.5, float(qps))
        self._capacity = max(1.0, self._rate)
        self._tokens = self._capacity
        self._stamp = time.monotonic()
        self._lock = threading.Lock()

    def _refill(self, now: float) -> None:
        self._tokens = min(self._capacity, self._tokens + (now - self._stamp) * self._rate)
        self._stamp = now

    def acquire(self) -> None:
        while True:
            with self._lock:
                self._refill(time.monotonic())
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return
                wait_s = (1.0 - self._tokens) / self._rate
            time.sleep(min(0.25, max(0.01, wait_s)))


def parse_google_duration_seconds(value: str | int | float | None) -> int:
    """``"123s"`` / ``"59.6s"`` / numbers to whole seconds."""
    if value is None:
        raise ValueError("Duration value is missing")
    text = str(value).strip().removesuffix("s")
    return max(0, round(float(text)))


def parse_distance_meters(value: Any, *, duration_s: int) -> float:
    """Zero fields are omitted from responses; a missing distance is only valid on a zero-duration leg."""
    if value is None:
        if duration_s == 0:
            return 0.0
        raise ValueError("Distance missing on a leg with non-zero duration")
    return float(value)


def departure_time_field(depart_at: datetime | None, *, now: datetime | None = None) -> str | None:
    """Return the ``departureTime`` to send, or ``None`` to ask for current conditions.

    The Routes API rejects departure instants in the past.
    """
    if depart_at is None:
        return None
    aware = depart_at if depart_at.tzinfo else depart_at.replace(tzinfo=timezone.utc)
    if aware <= (now or datetime.now(timezone.utc)):
        return None
    return aware.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _waypoint(point: Point) -> dict[str, Any]:
    return {"location": {"latLng": {"latitude": point.lat, "longitude": point.lon}}}


def _chunk_path(points: list[Point]) -> list[list[Point]]:
    """Split a long path into overlapping requests that respect the intermediate limit."""
    size = MAX_INTERMEDIATES_PER_REQUEST + 2
    chunks = [points[start : start + size] for start in range(0, max(1, len(points) - 1), size - 1)]
    return [chunk for chunk in chunks if len(chunk) >= 2]


def _error_details(exc: Exception, attempt: int) -> dict[str, Any]:
    details: dict[str, Any] = {"error_type": type(exc).__name__, "error": str(exc), "attempt": attempt}
    if exc.__cause__ is not None:
        details["cause"] = repr(exc.__cause__)
    return details


class GoogleRoutesProvider:
    """Routes API client: ordered legs via computeRoutes, blocks via computeRouteMatrix."""

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        cache: CacheBackend | None = None,
        http: httpx.Client | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.legs = LegCache(
            cache if cache is not None else get_cache(),
            ttl_seconds=max(30, int(self.settings.google_cache_ttl_seconds)),
            routing_preference=self.routing_preference,
        )
        self.http = http or httpx.Client(timeout=max(1, int(self.settings.google_timeout_seconds)))
        self.max_attempts = max(1, int(self.settings.google_max_attempts))
        self._limiter = _TokenBucketLimiter(qps=float(self.settings.google_rate_limit_qps))

    @property
    def enabled(self) -> bool:
        return bool(self.settings.resolved_google_routes_api_key)

    @property
    def routing_preference(self) -> str:
        return self.settings.resolved_google_routing_preference

    @property
    def traffic_aware(self) -> bool:
        return self.routing_preference.startswith("TRAFFIC_AWARE")

    @staticmethod
    def _sleep_backoff(attempt: int) -> None:
        time.sleep(min(3.0, 0.2 * 2**attempt + 0.05))

    def _post(self, *, url: str, payload: dict[str, Any], field_mask: str) -> httpx.Response:
        """POST with retries on timeouts, transport errors and 429/5xx; other 4xx fail at once."""
        api_key = self.settings.resolved_google_routes_api_key
        if not api_key:
            raise GoogleRoutesError("Google Routes API key is not configured", code="GOOGLE_KEY_MISSING")
        headers = {"Content-Type": "application/json", "X-Goog-Api-Key": api_key, "X-Goog-FieldMask": field_mask}

        for attempt in range(1, self.max_attempts + 1):
            self._limiter.acquire()
            cause: Exception | None = None
            try:
                response = self.http.post(url, json=payload, headers=headers)
            except httpx.TimeoutException as exc:
                cause = exc
                error = GoogleRoutesError(
                    "Google Routes request timed out",
                    code="GOOGLE_ROUTES_TIMEOUT",
                    retryable=True,
                    details=_error_details(exc, attempt),
                )
            except httpx.RequestError as exc:
                cause = exc
                error = GoogleRoutesError(
                    "Google Routes request failed",
                    code="GOOGLE_ROUTES_REQUEST_ERROR",
                    retryable=True,
                    details=_error_details(exc, attempt),
                )
            else:
                if response.status_code < 400:
                    return response
                if response.status_code not in RETRYABLE_STATUS_CODES:
                    raise GoogleRoutesError(
                        "Google Routes request rejected",
                        code="GOOGLE_ROUTES_REJECTED",
                        status_code=response.status_code,
                        details={"status_code": response.status_code, "body": response.text[:300]},
                    )
                error = GoogleRoutesError(
                    "Google Routes unavailable",
                    code="GOOGLE_ROUTES_UNAVAILABLE",
                    status_code=response.status_code,
                    retryable=True,
                    details={"status_code": response.status_code, "attempt": attempt},
                )

            if attempt == self.max_attempts:
                LOGGER.warning("Google Routes gave up after %s attempts: %s", attempt, error.code)
                raise error from cause
            LOGGER.info("Google Routes attempt %s failed (%s); retrying", attempt, error.code)
            self._sleep_backoff(attempt)

        raise GoogleRoutesError("Google Routes request failed", code="GOOGLE_ROUTES_ERROR")

    def _base_payload(self, depart_at: datetime | None) -> dict[str, Any]:
        payload: dict[str, Any] = {"travelMode": "DRIVE", "routingPreference": self.routing_preference}
        departure = departure_time_field(depart_at) if self.traffic_aware else None
        if departure is not None:
            payload["departureTime"] = departure
        return payload

    def _effective_departure(self, depart_at: datetime | None) -> datetime | None:
        """The departure actually sent; ``None`` means current conditions."""
        if not self.traffic_aware or departure_time_field(depart_at) is None:
            return None
        return depart_at

    def _leg(self, distance_m: float, duration_s: int) -> Leg:
        return Leg(
            distance_m=distance_m,
            duration_minutes=duration_s / 60.0,
            used_live_traffic=self.traffic_aware,
            source="google",
        )

    @staticmethod
    def parse_compute_routes_payload(payload: Any, *, expected_legs: int) -> list[tuple[float, int]]:
        """Return ``(distance_m, duration_s)`` per leg of the first route."""
        routes = payload.get("routes") if isinstance(payload, dict) else None
        if not routes:
            raise GoogleRoutesError("Google Routes response has no routes", code="GOOGLE_ROUTES_EMPTY")
        legs = routes[0].get("legs") if isinstance(routes[0], dict) else None
        if not isinstance(legs, list):
            raise GoogleRoutesError("Google Routes response has no legs", code="GOOGLE_ROUTES_INVALID")
        if len(legs) != expected_legs:
            raise GoogleRoutesError(
                "Google Routes leg count mismatch",
                code="GOOGLE_LEG_COUNT_MISMATCH",
                details={"expected": expected_legs, "actual": len(legs)},
            )
        try:
            parsed = []
            for leg in legs:
                duration_s = parse_google_duration_seconds(leg["duration"])
                parsed.append((parse_distance_meters(leg.get("distanceMeters"), duration_s=duration_s), duration_s))
            return parsed
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise GoogleRoutesError("Google Routes leg format invalid", code="GOOGLE_ROUTES_INVALID") from exc

    @staticmethod
    def _parse_matrix_elements(raw_text: str) -> list[dict[str, Any]]:
        """Elements from a JSON array body, or from a streamed one-element-per-line body."""
        text = raw_text.strip()
        if not text:
            return []
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError:
            parsed = []
            for line in text.splitlines():
                line = line.strip().strip("[]").rstrip(",")
                if not line:
                    continue
                try:
                    parsed.append(json.loads(line))
                except json.JSONDecodeError:
                    continue
            if not parsed:
                raise GoogleRoutesError("Google matrix response malformed", code="GOOGLE_ROUTES_INVALID")
        if isinstance(parsed, dict):
            parsed = parsed.get("elements") or parsed.get("matrix") or []
        return [item for item in parsed if isinstance(item, dict)]

    def compute_routes(self, points: list[Point], depart_at: datetime | None) -> list[Leg]:
        """Legs along ``points`` in the given order (one leg per consecutive pair)."""
        pairs = list(zip(points[:-1], points[1:]))
        if not pairs:
            return []
        depart_at = self._effective_departure(depart_at)
        cached = [self.legs.get(a, b, depart_at) for a, b in pairs]
        if all(leg is not None for leg in cached):
            return cached

        raw: list[tuple[float, int]] = []
        for chunk in _chunk_path(points):
            payload = self._base_payload(depart_at)
            payload.update(
                origin=_waypoint(chunk[0]),
                destination=_waypoint(chunk[-1]),
                intermediates=[_waypoint(point) for point in chunk[1:-1]],
                computeAlternativeRoutes=False,
                units="METRIC",
            )
            if not payload["intermediates"]:
                del payload["intermediates"]
            response = self._post(url=GOOGLE_COMPUTE_ROUTES_URL, payload=payload, field_mask=ROUTES_FIELD_MASK)
            try:
                body = response.json()
            except ValueError as exc:
                raise GoogleRoutesError("Google Routes response is not JSON", code="GOOGLE_ROUTES_INVALID") from exc
            raw.extend(self.parse_compute_routes_payload(body, expected_legs=len(chunk) - 1))

        legs: list[Leg] = []
        for (a, b), (distance_m, duration_s) in zip(pairs, raw):
            leg = self._leg(distance_m, duration_s)
            self.legs.put(a, b, depart_at, leg, duration_s=duration_s)
            legs.append(leg)
        return legs

    def compute_leg(self, origin: Point, dest: Point, depart_at: datetime | None) -> Leg:
        return self.compute_routes([origin, dest], depart_at)[0]

    def compute_route_matrix(
        self,
        origins: list[Point],
        destinations: list[Point],
        depart_at: datetime | None,
    ) -> list[list[Leg | None]]:
        """One matrix block; elements the service could not route stay ``None``."""
        depart_at = self._effective_departure(depart_at)
        block: list[list[Leg | None]] = [[self.legs.get(a, b, depart_at) for b in destinations] for a in origins]
        if all(leg is not None for row in block for leg in row):
            return block

        payload = self._base_payload(depart_at)
        payload["origins"] = [{"waypoint": _waypoint(point)} for point in origins]
        payload["destinations"] = [{"waypoint": _waypoint(point)} for point in destinations]
        response = self._post(url=GOOGLE_COMPUTE_MATRIX_URL, payload=payload, field_mask=MATRIX_FIELD_MASK)

        for element in self._parse_matrix_elements(response.text):
            i, j = element.get("originIndex", 0), element.get("destinationIndex", 0)
            if not (isinstance(i, int) and isinstance(j, int) and 0 <= i < len(origins) and 0 <= j < len(destinations)):
                continue
            status = element.get("status")
            if isinstance(status, dict) and status.get("code"):
                continue
            if element.get("condition", "ROUTE_EXISTS") != "ROUTE_EXISTS" or element.get("duration") is None:
                continue
            try:
                duration_s = parse_google_duration_seconds(element["duration"])
                distance_m = parse_distance_meters(element.get("distanceMeters"), duration_s=duration_s)
            except (TypeError, ValueError):
                continue
            leg = self._leg(distance_m, duration_s)
            block[i][j] = leg
            self.legs.put(origins[i], destinations[j], depart_at, leg, duration_s=duration_s)

        missing = sum(leg is None for row in block for leg in row)
        if missing:
            LOGGER.warning("Google matrix block incomplete; %s of %s elements missing", missing, len(origins) * len(destinations))
        return block


_PROVIDER: GoogleRoutesProvider | None = None


def get_google_routes_provider() -> GoogleRoutesProvider:
    global _PROVIDER
    if _PROVIDER is None:
        _PROVIDER = GoogleRoutesProvider()
    return _PROVIDER
