from route_engine.providers.estimate import EstimateProvider, haversine_m
from route_engine.providers.google_routes import (
    GoogleRoutesError,
    GoogleRoutesProvider,
    ProviderError,
    departure_time_field,
    get_google_routes_provider,
    parse_google_duration_seconds,
)

__all__ = [
    "EstimateProvider",
    "GoogleRoutesError",
    "GoogleRoutesProvider",
    "ProviderError",
    "departure_time_field",
    "get_google_routes_provider",
    "haversine_m",
    "parse_google_duration_seconds",
]
