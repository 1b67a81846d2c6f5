"""API routes exposing credit balances and grant flows."""
from __future__ import annotations

from typing import Optional
from uuid import uuid4

from fastapi import APIRouter, Request, status

from ..errors import TryOnError, http_error
from ..schemas.credits import (
    BalanceResponse,
    CouponRedeemRequest,
    GrantResponse,
    OpenAccountRequest,
    PurchaseFulfilRequest,
)
from ..services import tryon as tryon_services

router = APIRouter(prefix="/api/credits", tags=["credits"])


def _request_id(request: Request) -> str:
    request_id: Optional[str] = getattr(request.state, "request_id", None)
    return request_id or uuid4().hex


def _balance_response(account_id: str, request_id: str) -> BalanceResponse:
    ledger = tryon_services.get_ledger()
    balance = ledger.get_balance(account_id)
    return BalanceResponse.build(
        balance,
        account=ledger.get_account(account_id),
        unit_price=ledger.unit_price,
        request_id=request_id,
    )


@router.post("/accounts", response_model=BalanceResponse, status_code=status.HTTP_201_CREATED)
def open_account(payload: OpenAccountRequest, request: Request) -> BalanceResponse:
    """Create the account with its one-time trial grant. Repeat calls are no-ops."""

    request_id = _request_id(request)
    ledger = tryon_services.get_ledger()
    try:
        ledger.open_account(payload.account_id)
        return _balance_response(payload.account_id, request_id)
    except (TryOnError, LookupError, ValueError) as exc:
        raise http_error(exc, request_id) from exc


@router.get("/{account_id}/balance", response_model=BalanceResponse)
def get_balance(account_id: str, request: Request) -> BalanceResponse:
    request_id = _request_id(request)
    try:
        return _balance_response(account_id, request_id)
    except (TryOnError, LookupError, ValueError) as exc:
        raise http_error(exc, request_id) from exc


@router.post("/coupons/redeem", response_model=GrantResponse)
def redeem_coupon(payload: CouponRedeemRequest, request: Request) -> GrantResponse:
    request_id = _request_id(request)
    service = tryon_services.get_coupon_service()
    try:
        redemption = service.redeem(payload.account_id, payload.code, request_id=request_id)
    except (TryOnError, LookupError, ValueError) as exc:
        raise http_error(exc, request_id) from exc
    return GrantResponse.from_redemption(redemption, request_id)


@router.post("/purchases/fulfil", response_model=GrantResponse)
def fulfil_purchase(payload: PurchaseFulfilRequest, request: Request) -> GrantResponse:
    request_id = _request_id(request)
    service = tryon_services.get_purchase_service()
    try:
        fulfilment = service.fulfil(
            payload.account_id,
            payload.package_id,
            payload.purchase_id,
            request_id=request_id,
        )
    except (TryOnError, LookupError, ValueError) as exc:
        raise http_error(exc, request_id) from exc
    return GrantResponse.from_fulfilment(fulfilment, request_id)

