"""Error taxonomy for billing operations."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from fastapi import HTTPException, status


@dataclass
class BillingError(Exception):
    """Represents a billing failure surfaced to API callers."""

    code: str
    message: str
    status_code: int = status.HTTP_400_BAD_REQUEST
    detail: Optional[Mapping[str, Any]] = None

    def __post_init__(self) -> None:
        base_detail: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.detail:
            base_detail.update(self.detail)
        object.__setattr__(self, "_payload", base_detail)
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        return self._payload

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=dict(self.payload))


@dataclass
class BillingNotFoundError(BillingError, LookupError):
    """A billing account, subscription or plan does not exist."""

    code: str = "not_found"
    message: str = "Not found"
    status_code: int = status.HTTP_404_NOT_FOUND


@dataclass
class BillingBadRequestError(BillingError, ValueError):
    """The request conflicts with the current billing state."""

    code: str = "bad_request"
    message: str = "Bad request"
    status_code: int = status.HTTP_400_BAD_REQUEST


@dataclass
class GatewayError(BillingError):
    """The payment gateway rejected or failed a call.

    ``retryable`` marks failures that may succeed when the same call is
    repeated with the same idempotency key.
    """

    code: str = "gateway_error"
    message: str = "Payment gateway error"
    status_code: int = status.HTTP_502_BAD_GATEWAY
    retryable: bool = False


@dataclass
class GatewayTimeoutError(GatewayError):
    """The gateway did not answer in time; the call outcome is unknown."""

    code: str = "gateway_timeout"
    message: str = "Payment gateway timed out"
    status_code: int = status.HTTP_504_GATEWAY_TIMEOUT
    retryable: bool = True


__all__ = [
    "BillingBadRequestError",
    "BillingError",
    "BillingNotFoundError",
    "GatewayError",
    "GatewayTimeoutError",
]
