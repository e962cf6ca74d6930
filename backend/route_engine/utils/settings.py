from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app_env: str = Field(default="dev", alias="APP_ENV")
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")
    route_timezone: str = Field(default="UTC", alias="ROUTE_TIMEZONE")

    distance_mode: Literal["estimate", "service", "hybrid"] = Field(default="estimate", alias="DISTANCE_MODE")
    estimate_speed_kmh: float = Field(default=30.0, gt=0, alias="ESTIMATE_SPEED_KMH")
    estimate_road_factor: float = Field(default=1.35, ge=1.0, alias="ESTIMATE_ROAD_FACTOR")
    fallback_to_estimate: bool = Field(default=True, alias="FALLBACK_TO_ESTIMATE")

    default_service_minutes: int = Field(default=15, ge=0, alias="DEFAULT_SERVICE_MINUTES")
    default_departure_time: str = Field(default="08:00", alias="DEFAULT_DEPARTURE_TIME")
    return_to_depot: bool = Field(default=True, alias="RETURN_TO_DEPOT")

    optimize_min_stops: int = Field(default=2, ge=1, alias="OPTIMIZE_MIN_STOPS")
    optimize_max_stops: int = Field(default=80, ge=1, alias="OPTIMIZE_MAX_STOPS")
    two_opt_max_iterations: int = Field(default=1000, ge=0, alias="TWO_OPT_MAX_ITERATIONS")
    tw_local_search_max_passes: int = Field(default=50, ge=0, alias="TW_LOCAL_SEARCH_MAX_PASSES")
    tw_cost_tolerance: float = Field(default=0.05, ge=0.0, alias="TW_COST_TOLERANCE")
    tw_time_budget_seconds: float = Field(default=2.0, gt=0, alias="TW_TIME_BUDGET_SECONDS")
    tw_relocate_window: int = Field(default=10, ge=1, alias="TW_RELOCATE_WINDOW")

    sa_enabled: bool = Field(default=True, alias="SA_ENABLED")
    sa_iterations: int = Field(default=5000, ge=0, alias="SA_ITERATIONS")
    sa_initial_temperature: float = Field(default=10000.0, gt=0, alias="SA_INITIAL_TEMPERATURE")
    sa_cooling_rate: float = Field(default=0.995, gt=0, lt=1, alias="SA_COOLING_RATE")
    sa_seed: int = Field(default=0, alias="SA_SEED")

    google_routes_api_key: str | None = Field(default=None, alias="GOOGLE_ROUTES_API_KEY")
    google_maps_api_key: str | None = Field(default=None, alias="GOOGLE_MAPS_API_KEY")
    google_routing_preference: str = Field(default="TRAFFIC_AWARE", alias="GOOGLE_ROUTING_PREFERENCE")
    google_timeout_seconds: int = Field(default=20, alias="GOOGLE_TIMEOUT_SECONDS")
    google_rate_limit_qps: float = Field(default=5.0, alias="GOOGLE_RATE_LIMIT_QPS")
    google_max_attempts: int = Field(default=3, ge=1, alias="GOOGLE_MAX_ATTEMPTS")
    google_matrix_max_elements: int = Field(default=25, ge=1, alias="GOOGLE_MATRIX_MAX_ELEMENTS")
    google_max_workers: int = Field(default=4, ge=1, alias="GOOGLE_MAX_WORKERS")
    google_cache_ttl_seconds: int = Field(default=600, alias="GOOGLE_CACHE_TTL_SECONDS")

    eta_deviation_threshold_minutes: float = Field(default=0.0, ge=0.0, alias="ETA_DEVIATION_THRESHOLD_MINUTES")
    eta_window_before_minutes: int = Field(default=30, ge=0, alias="ETA_WINDOW_BEFORE_MINUTES")
    eta_window_after_minutes: int = Field(default=30, ge=0, alias="ETA_WINDOW_AFTER_MINUTES")

    @field_validator("google_routes_api_key", "google_maps_api_key", mode="before")
    @classmethod
    def _normalize_optional_secret(cls, value: object) -> str | None:
        if value is None:
            return None
        cleaned = str(value).strip()
        return cleaned or None

    @field_validator("default_departure_time", mode="before")
    @classmethod
    def _normalize_hhmm(cls, value: object) -> str:
        text = str(value or "").strip()
        hh, _, mm = text.partition(":")
        if not (hh.isdigit() and mm.isdigit() and 0 <= int(hh) < 24 and 0 <= int(mm) < 60):
            raise ValueError("DEFAULT_DEPARTURE_TIME must be HH:MM")
        return f"{int(hh):02d}:{int(mm):02d}"

    @field_validator("distance_mode", mode="before")
    @classmethod
    def _normalize_mode(cls, value: object) -> str:
        return str(value or "estimate").strip().lower()

    @property
    def resolved_google_routes_api_key(self) -> str | None:
        key = self.google_routes_api_key or self.google_maps_api_key
        if key is None:
            return None
        cleaned = str(key).strip()
        return cleaned or None

    @property
    def resolved_google_routing_preference(self) -> str:
        return str(self.google_routing_preference or "TRAFFIC_AWARE").upper()

    @property
    def is_production_mode(self) -> bool:
        return str(self.app_env or "").strip().lower() in {"prod", "production"}

    @model_validator(mode="after")
    def _validate_required_production_settings(self) -> "Settings":
        if self.optimize_max_stops < self.optimize_min_stops:
            raise ValueError("OPTIMIZE_MAX_STOPS must be >= OPTIMIZE_MIN_STOPS.")

        if not self.is_production_mode:
            return self

        if self.distance_mode in {"service", "hybrid"} and not self.resolved_google_routes_api_key:
            raise ValueError(
                "GOOGLE_ROUTES_API_KEY (or GOOGLE_MAPS_API_KEY) is required when DISTANCE_MODE is service or hybrid."
            )
        return self


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
