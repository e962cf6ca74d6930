from route_engine.models.entities import (
    ActiveRoute,
    CostMatrix,
    Depot,
    DepotReturn,
    Leg,
    OptimizationResult,
    OptimizationStatus,
    Point,
    RecalculatedStop,
    RecalculationResult,
    RouteStop,
    Stop,
    StopStatus,
    TimedStop,
)

__all__ = [
    "ActiveRoute",
    "CostMatrix",
    "Depot",
    "DepotReturn",
    "Leg",
    "OptimizationResult",
    "OptimizationStatus",
    "Point",
    "RecalculatedStop",
    "RecalculationResult",
    "RouteStop",
    "Stop",
    "StopStatus",
    "TimedStop",
]
