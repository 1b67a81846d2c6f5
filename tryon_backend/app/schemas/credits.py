"""API schemas for credit endpoints."""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ..credits import Account, CouponRedemption, CreditBalance, CreditBreakdown, PurchaseFulfilment
from ..credits.sources import OverageSourceDescriptor


class OpenAccountRequest(BaseModel):
    account_id: str = Field(alias="accountId", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class CouponRedeemRequest(BaseModel):
    account_id: str = Field(alias="accountId", min_length=1)
    code: str

    model_config = ConfigDict(populate_by_name=True)


class PurchaseFulfilRequest(BaseModel):
    account_id: str = Field(alias="accountId", min_length=1)
    package_id: str = Field(alias="packageId", min_length=1)
    purchase_id: str = Field(alias="purchaseId", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class OverageResponse(BaseModel):
    units_used: int = Field(alias="unitsUsed")
    remaining_units: int = Field(alias="remainingUnits")
    unit_price: Decimal = Field(alias="unitPrice")
    charged_amount: Decimal = Field(alias="chargedAmount")
    cap_amount: Decimal = Field(alias="capAmount")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_balance(cls, balance: CreditBalance, unit_price: Decimal) -> "OverageResponse":
        overage = OverageSourceDescriptor(unit_price=unit_price)
        return cls(
            units_used=balance.overage_units_used,
            remaining_units=overage.available_units(balance),
            unit_price=unit_price,
            charged_amount=overage.charged_amount(balance),
            cap_amount=balance.overage_cap_amount,
        )


class BalanceResponse(BaseModel):
    request_id: Optional[str] = Field(alias="requestId", default=None)
    account_id: str = Field(alias="accountId")
    balance: int
    credit_breakdown: CreditBreakdown = Field(alias="creditBreakdown")
    overage: OverageResponse
    plan_handle: Optional[str] = Field(alias="planHandle", default=None)
    period_start: Optional[datetime] = Field(alias="periodStart", default=None)
    period_end: Optional[datetime] = Field(alias="periodEnd", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def build(
        cls,
        balance: CreditBalance,
        *,
        account: Optional[Account],
        unit_price: Decimal,
        request_id: Optional[str],
    ) -> "BalanceResponse":
        return cls(
            request_id=request_id,
            account_id=balance.account_id,
            balance=balance.grant_total,
            credit_breakdown=balance.breakdown(),
            overage=OverageResponse.from_balance(balance, unit_price),
            plan_handle=account.plan_handle if account else None,
            period_start=account.period_start if account else None,
            period_end=account.period_end if account else None,
        )


class GrantResponse(BaseModel):
    request_id: Optional[str] = Field(alias="requestId", default=None)
    account_id: str = Field(alias="accountId")
    credits_added: int = Field(alias="creditsAdded")
    duplicate: bool = False
    code: Optional[str] = None
    package_id: Optional[str] = Field(alias="packageId", default=None)
    credit_breakdown: CreditBreakdown = Field(alias="creditBreakdown")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_redemption(cls, redemption: CouponRedemption, request_id: Optional[str]) -> "GrantResponse":
        return cls(
            request_id=request_id,
            account_id=redemption.account_id,
            credits_added=redemption.units_added,
            duplicate=redemption.duplicate,
            code=redemption.code,
            credit_breakdown=redemption.balance.breakdown(),
        )

    @classmethod
    def from_fulfilment(cls, fulfilment: PurchaseFulfilment, request_id: Optional[str]) -> "GrantResponse":
        return cls(
            request_id=request_id,
            account_id=fulfilment.account_id,
            credits_added=fulfilment.units_added,
            duplicate=fulfilment.duplicate,
            package_id=fulfilment.package_id,
            credit_breakdown=fulfilment.balance.breakdown(),
        )
