from __future__ import annotations

import json
import logging
import threading
import time
from datetime import datetime

import redis

from route_engine.models.entities import Leg, Point
from route_engine.utils.settings import get_settings


LOGGER = logging.getLogger(__name__)

BUCKET_MINUTES = 10
COORD_PRECISION = 5


class CacheBackend:
    """Raw string store with optional expiry."""

    def read(self, key: str) -> str | None:
        raise NotImplementedError

    def write(self, key: str, raw: str, ttl_seconds: int | None = None) -> None:
        raise NotImplementedError

    def discard(self, key: str) -> None:
        raise NotImplementedError


class RedisCache(CacheBackend):
    def __init__(self, redis_url: str):
        self.client = redis.Redis.from_url(redis_url, decode_responses=True, socket_connect_timeout=1)
        self.client.ping()

    def read(self, key: str) -> str | None:
        return self.client.get(key)

    def write(self, key: str, raw: str, ttl_seconds: int | None = None) -> None:
        self.client.set(key, raw, ex=ttl_seconds or None)

    def discard(self, key: str) -> None:
        self.client.delete(key)


class InMemoryCache(CacheBackend):
    def __init__(self) -> None:
        self._entries: dict[str, tuple[str, float | None]] = {}
        self._lock = threading.Lock()

    def read(self, key: str) -> str | None:
        now = time.monotonic()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            raw, deadline = entry
            if deadline is not None and deadline < now:
                del self._entries[key]
                return None
            return raw

    def write(self, key: str, raw: str, ttl_seconds: int | None = None) -> None:
        deadline = time.monotonic() + ttl_seconds if ttl_seconds else None
        with self._lock:
            self._entries[key] = (raw, deadline)

    def discard(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def departure_bucket(departure: datetime | None) -> str:
    """Weekday plus time of day floored to ten minutes; ``now`` when no departure is given."""
    if departure is None:
        return "now"
    floored = departure.replace(minute=departure.minute - departure.minute % BUCKET_MINUTES, second=0, microsecond=0)
    return f"{floored.weekday()}:{floored:%H:%M}"


class LegCache:
    """Routing-service legs keyed by rounded endpoints, departure bucket and routing preference."""

    def __init__(self, backend: CacheBackend, *, ttl_seconds: int, routing_preference: str) -> None:
        self.backend = backend
        self.ttl_seconds = ttl_seconds
        self.routing_preference = routing_preference

    def key(self, origin: Point, dest: Point, departure: datetime | None) -> str:
        coords = ":".join(str(round(v, COORD_PRECISION)) for v in (*origin.as_tuple(), *dest.as_tuple()))
        return f"route_leg:{coords}:{departure_bucket(departure)}:{self.routing_preference}"

    def get(self, origin: Point, dest: Point, departure: datetime | None) -> Leg | None:
        raw = self.backend.read(self.key(origin, dest, departure))
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            return Leg(
                distance_m=float(data["distance_m"]),
                duration_minutes=float(data["duration_s"]) / 60.0,
                used_live_traffic=bool(data.get("live")),
                source="cache",
            )
        except (KeyError, TypeError, ValueError):
            LOGGER.warning("Discarding unreadable cached leg")
            return None

    def put(self, origin: Point, dest: Point, departure: datetime | None, leg: Leg, *, duration_s: int) -> None:
        raw = json.dumps({"distance_m": leg.distance_m, "duration_s": duration_s, "live": leg.used_live_traffic})
        self.backend.write(self.key(origin, dest, departure), raw, ttl_seconds=self.ttl_seconds)


_CACHE: CacheBackend | None = None


def get_cache() -> CacheBackend:
    global _CACHE
    if _CACHE is None:
        url = get_settings().redis_url
        try:
            _CACHE = RedisCache(url)
        except (redis.RedisError, ValueError) as exc:
            LOGGER.info("Redis unavailable at %s (%s); legs cached in memory", url, exc)
            _CACHE = InMemoryCache()
    return _CACHE


def reset_cache() -> None:
    global _CACHE
    _CACHE = None
