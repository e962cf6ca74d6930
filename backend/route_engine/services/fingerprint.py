from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone
from typing import Any, Iterable


FINGERPRINT_VERSION = "v1"


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.isoformat()


def _coordinates(stop: Any) -> tuple[float | None, float | None]:
    point = getattr(stop, "point", None)
    if point is not None:
        return point.lat, point.lon
    lat, lon = getattr(stop, "lat", None), getattr(stop, "lon", None)
    if lat is None or lon is None:
        return None, None
    return float(lat), float(lon)


def fingerprint(stops: Iterable[Any]) -> str:
    """SHA-256 over (id, lat, lon, window start, window end) in the given order.

    Accepts domain stops (``point``) or request stops (``lat``/``lon``). A stop
    without coordinates contributes nulls, so geocoding it later changes the
    digest.
    """
    rows = []
    for stop in stops:
        lat, lon = _coordinates(stop)
        rows.append(
            [
                str(stop.id),
                None if lat is None else repr(float(lat)),
                None if lon is None else repr(float(lon)),
                _iso(stop.window_start),
                _iso(stop.window_end),
            ]
        )
    canonical = json.dumps([FINGERPRINT_VERSION, rows], separators=(",", ":"), ensure_ascii=True)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def should_skip(
    *,
    current: str,
    previous: str | None,
    previously_optimized_at: datetime | None,
    force: bool,
    has_forced_endpoints: bool,
) -> bool:
    if force or has_forced_endpoints:
        return False
    if previous is None or previously_optimized_at is None:
        return False
    return current == previous
