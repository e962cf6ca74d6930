from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from route_engine.models.entities import OptimizationResult


def _validate_hhmm(value: str) -> str:
    try:
        parsed = datetime.strptime(str(value).strip(), "%H:%M")
    except ValueError as exc:
        raise ValueError("default_departure must be HH:MM (24-hour)") from exc
    return parsed.strftime("%H:%M")


class PointIn(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)


class StopIn(BaseModel):
    id: str = Field(min_length=1)
    lat: float | None = Field(default=None, ge=-90, le=90)
    lon: float | None = Field(default=None, ge=-180, le=180)
    service_minutes: float | None = Field(default=None, ge=0)
    window_start: datetime | None = None
    window_end: datetime | None = None
    priority: int = Field(default=0, ge=0)

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> str:
        return str(value).strip() if value is not None else value

    @model_validator(mode="after")
    def ensure_window(self) -> "StopIn":
        if self.window_start is None or self.window_end is None:
            return self
        if (self.window_start.utcoffset() is None) != (self.window_end.utcoffset() is None):
            raise ValueError("window_start and window_end must both carry a UTC offset or both omit it")
        if self.window_end < self.window_start:
            raise ValueError("window_end must not be earlier than window_start")
        return self

    @property
    def has_coordinates(self) -> bool:
        return self.lat is not None and self.lon is not None


class DepotIn(PointIn):
    default_departure: str | None = None
    default_service_minutes: float | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def ensure_departure(self) -> "DepotIn":
        if self.default_departure is not None:
            self.default_departure = _validate_hhmm(self.default_departure)
        return self


class PreviousOptimizationIn(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    fingerprint: str | None = None
    optimized_at: datetime | None = None
    result: OptimizationResult | None = None


class OptimizeRequest(BaseModel):
    """Validated input for one optimize call."""

    depot: DepotIn | None = None
    stops: list[StopIn]
    forced_first_id: str | None = None
    forced_last_id: str | None = None
    depart_at: datetime | None = None
    mode: Literal["estimate", "service", "hybrid"] | None = None
    previous: PreviousOptimizationIn | None = None
    force: bool = False
    exclude_unserviceable: bool = False

    @field_validator("forced_first_id", "forced_last_id", mode="before")
    @classmethod
    def _normalize_forced_id(cls, value: Any) -> str | None:
        if value is None:
            return None
        cleaned = str(value).strip()
        return cleaned or None

    @field_validator("mode", mode="before")
    @classmethod
    def _normalize_mode(cls, value: Any) -> str | None:
        if value is None:
            return None
        return str(value).strip().lower() or None

    @model_validator(mode="after")
    def ensure_unique_ids(self) -> "OptimizeRequest":
        seen: set[str] = set()
        for stop in self.stops:
            if stop.id in seen:
                raise ValueError(f"Duplicate stop id: {stop.id}")
            seen.add(stop.id)
        return self

    @property
    def has_forced_endpoints(self) -> bool:
        return self.forced_first_id is not None or self.forced_last_id is not None
