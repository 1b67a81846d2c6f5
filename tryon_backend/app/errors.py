"""Domain errors surfaced by the credit core and converted at the API edge."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from fastapi import HTTPException, status


@dataclass
class TryOnError(Exception):
    """Base class for actionable failures surfaced to API callers."""

    code: str
    message: str
    status_code: int = status.HTTP_400_BAD_REQUEST
    detail: Optional[Mapping[str, Any]] = None
    request_id: Optional[str] = None

    def __post_init__(self) -> None:
        super().__init__(self.message)

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        body: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.detail:
            body["details"] = dict(self.detail)
        return {"error": body, "requestId": self.request_id}

    def with_request_id(self, request_id: Optional[str]) -> "TryOnError":
        if request_id and not self.request_id:
            self.request_id = request_id
        return self

    def to_http_exception(self, request_id: Optional[str] = None) -> HTTPException:
        """Convert the domain error into a FastAPI HTTPException."""

        self.with_request_id(request_id)
        headers = {"X-Request-ID": self.request_id} if self.request_id else None
        return HTTPException(status_code=self.status_code, detail=dict(self.payload), headers=headers)


@dataclass
class InsufficientCreditsError(TryOnError):
    """No grant source and no overage headroom can cover one more unit."""

    code: str = "insufficient_credits"
    message: str = "Not enough credits to start this generation."
    status_code: int = status.HTTP_402_PAYMENT_REQUIRED
    account_id: Optional[str] = None
    breakdown: Mapping[str, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        detail: Dict[str, Any] = dict(self.detail or {})
        detail.setdefault("accountId", self.account_id)
        detail.setdefault("creditBreakdown", dict(self.breakdown))
        self.detail = detail
        super().__post_init__()


@dataclass
class CacheComputationError(TryOnError):
    """The synthesis collaborator failed; the reservation has been released.

    ``cause`` keeps the underlying exception for logs. It is not part of the
    payload because provider messages are not safe to show to shoppers.
    """

    code: str = "generation_failed"
    message: str = "The image could not be generated. No credit was charged."
    status_code: int = status.HTTP_502_BAD_GATEWAY
    cache_key: Optional[str] = None
    cause: Optional[BaseException] = None

    def __post_init__(self) -> None:
        detail: Dict[str, Any] = dict(self.detail or {})
        if self.cause is not None:
            detail.setdefault("reason", type(self.cause).__name__)
        self.detail = detail
        super().__post_init__()


@dataclass
class GenerationTimeoutError(TryOnError):
    """The caller stopped waiting; the shared computation keeps running."""

    code: str = "generation_timeout"
    message: str = "The generation is still running. Retry shortly to fetch the cached result."
    status_code: int = status.HTTP_504_GATEWAY_TIMEOUT
    cache_key: Optional[str] = None


@dataclass
class SyncInconsistencyError(TryOnError):
    """External subscription state cannot be mapped to a known plan."""

    code: str = "sync_inconsistent"
    message: str = "Subscription state does not match any configured plan."
    status_code: int = status.HTTP_409_CONFLICT


@dataclass
class SubscriptionProviderError(TryOnError):
    """The subscription-of-record could not be read."""

    code: str = "subscription_unavailable"
    message: str = "The subscription provider could not be reached."
    status_code: int = status.HTTP_502_BAD_GATEWAY


@dataclass
class ReservationStateError(TryOnError):
    """A reservation transition violated its lifecycle."""

    code: str = "reservation_state"
    message: str = "Reservation is not in a state that allows this operation."
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    reservation_id: Optional[str] = None

    def __post_init__(self) -> None:
        detail: Dict[str, Any] = dict(self.detail or {})
        if self.reservation_id:
            detail.setdefault("reservationId", self.reservation_id)
        self.detail = detail
        super().__post_init__()


@dataclass
class CouponError(TryOnError):
    """Coupon code rejected during validation or redemption."""

    code: str = "invalid_code"
    message: str = "Coupon code is invalid."
    status_code: int = status.HTTP_400_BAD_REQUEST


def http_error(exc: Exception, request_id: Optional[str]) -> HTTPException:
    """Map a service-layer exception onto the API error envelope."""

    if isinstance(exc, TryOnError):
        return exc.to_http_exception(request_id)
    if isinstance(exc, LookupError):
        error = TryOnError(code="not_found", message=str(exc).strip("'\""), status_code=status.HTTP_404_NOT_FOUND)
    elif isinstance(exc, ValueError):
        error = TryOnError(code="invalid_request", message=str(exc))
    else:
        raise TypeError(f"Unsupported exception type: {type(exc).__name__}") from exc
    return error.to_http_exception(request_id)


__all__ = [
    "CacheComputationError",
    "CouponError",
    "GenerationTimeoutError",
    "InsufficientCreditsError",
    "ReservationStateError",
    "SubscriptionProviderError",
    "SyncInconsistencyError",
    "TryOnError",
    "http_error",
]
