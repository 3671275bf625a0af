"""
Error types raised by the billing services.

Route handlers let these propagate; app._register_error_handlers turns them
into `{"error": message}` JSON with the matching status.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class BillingError(Exception):
    status = 400

    def __init__(self, message: str, status: Optional[int] = None, **extra: Any):
        super().__init__(message)
        self.message = message
        if status is not None:
            self.status = status
        self.extra = extra

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"error": self.message}
        out.update(self.extra)
        return out


class ValidationFailed(BillingError):
    status = 400


class PaymentRequired(BillingError):
    status = 402


class Forbidden(BillingError):
    status = 403


class NotFound(BillingError):
    status = 404


class Conflict(BillingError):
    status = 409


class ProviderError(BillingError):
    """A payment provider / remote API call failed."""
    status = 502
