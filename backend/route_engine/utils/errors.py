from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass
class AppError(Exception):
    message: str
    error_code: str = "APP_ERROR"
    status_code: int = 400
    details: Any = None
    stage: str = "API"

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
            "stage": self.stage,
        }


@dataclass
class InputError(AppError):
    """Rejected caller input; raised before any provider call is made."""

    error_code: str = "INVALID_INPUT"
    status_code: int = 400
    stage: str = "VALIDATION"


@dataclass
class OptimizationFailed(AppError):
    """Provider failure while building the cost matrix or timing the tour."""

    error_code: str = "OPTIMIZATION_FAILED"
    status_code: int = 502
    stage: str = "OPTIMIZATION"
