from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional


@dataclass
class AppError(Exception):
    status_code: int
    code: str
    message: str
    details: Optional[Dict[str, Any]] = None
    retryable: Optional[bool] = None

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "details": self.details or {},
        }
        if self.retryable is not None:
            payload["retryable"] = self.retryable
        return {"error": payload}


class BookingValidationError(AppError):
    """Malformed booking input. Rejected before any state change."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(422, "validation_error", message, details)


class BookingConflictError(AppError):
    """Requested slots are already claimed by another active booking."""

    def __init__(self, conflicts: List[Dict[str, Any]], message: str = "Some of the selected slots are already booked") -> None:
        super().__init__(409, "booking_conflict", message, {"conflicts": conflicts})
        self.conflicts = conflicts


class PaymentProviderError(AppError):
    """Stripe call failed or timed out. Safe to retry."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(502, "payment_provider_unavailable", message, details, retryable=True)


class StorageError(AppError):
    """Transient persistence failure. Safe to retry."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(503, "storage_unavailable", message, details, retryable=True)


def error_response(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {
        "error": {
            "code": code,
            "message": message,
            "details": details or {},
        }
    }
