"""Static catalog definitions for plans, usage pricing, packages and coupons."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Optional

TRIAL_UNITS = 100


@dataclass(frozen=True)
class PlanDefinition:
    """A recurring plan and the units it includes each period."""

    handle: str
    display_name: str
    price_amount: Decimal
    currency_code: str
    interval: str
    included_units: int
    trial_days: int = 0

    @property
    def is_annual(self) -> bool:
        return self.interval == "ANNUAL"

    def matches_price(self, amount: Optional[Decimal], currency_code: Optional[str]) -> bool:
        """Unknown price fields are tolerated; present ones must agree."""

        if currency_code is not None and currency_code.upper() != self.currency_code:
            return False
        if amount is not None and Decimal(amount) != self.price_amount:
            return False
        return True


@dataclass(frozen=True)
class UsagePricing:
    """Overage billing terms applied once the included balances run out."""

    unit_price: Decimal
    currency_code: str
    capped_amount: Decimal


@dataclass(frozen=True)
class CreditPackage:
    """One-time purchasable bundle of units."""

    package_id: str
    display_name: str
    units: int
    price_amount: Decimal
    currency_code: str = "USD"


@dataclass(frozen=True)
class CouponDefinition:
    """A redeemable code granting coupon units."""

    code: str
    units: int
    per_account_limit: int
    expires_at: Optional[datetime] = None
    active: bool = True
    description: str = ""

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now > self.expires_at


PLAN_CATALOG: Dict[str, PlanDefinition] = {
    "pro-monthly": PlanDefinition(
        handle="pro-monthly",
        display_name="Plan Standard",
        price_amount=Decimal("23.00"),
        currency_code="USD",
        interval="EVERY_30_DAYS",
        included_units=100,
        trial_days=15,
    ),
    "pro-annual": PlanDefinition(
        handle="pro-annual",
        display_name="Plan Standard",
        price_amount=Decimal("180.00"),
        currency_code="USD",
        interval="ANNUAL",
        included_units=100,
        trial_days=15,
    ),
}

USAGE_PRICING = UsagePricing(
    unit_price=Decimal("0.20"),
    currency_code="USD",
    capped_amount=Decimal("50.00"),
)

CREDIT_PACKAGES: Dict[str, CreditPackage] = {
    "small": CreditPackage(package_id="small", display_name="50 Credits", units=50, price_amount=Decimal("10.00")),
    "medium": CreditPackage(package_id="medium", display_name="100 Credits", units=100, price_amount=Decimal("18.00")),
    "large": CreditPackage(package_id="large", display_name="200 Credits", units=200, price_amount=Decimal("32.00")),
}

COUPON_CATALOG: Dict[str, CouponDefinition] = {
    "WELCOME50": CouponDefinition(
        code="WELCOME50",
        units=50,
        per_account_limit=1,
        expires_at=datetime(2024, 12, 31, 23, 59, 59, tzinfo=timezone.utc),
        description="Welcome bonus - 50 free credits",
    ),
    "REFERRAL100": CouponDefinition(
        code="REFERRAL100",
        units=100,
        per_account_limit=1,
        description="Referral bonus - 100 free credits",
    ),
    "HOLIDAY25": CouponDefinition(
        code="HOLIDAY25",
        units=25,
        per_account_limit=3,
        expires_at=datetime(2024, 12, 25, 23, 59, 59, tzinfo=timezone.utc),
        description="Holiday special - 25 credits (3 uses per account)",
    ),
}


def get_credit_package(package_id: str) -> CreditPackage:
    try:
        return CREDIT_PACKAGES[package_id.strip().lower()]
    except KeyError as exc:
        raise KeyError(f"Unknown credit package: {package_id}") from exc


__all__ = [
    "COUPON_CATALOG",
    "CREDIT_PACKAGES",
    "CouponDefinition",
    "CreditPackage",
    "PLAN_CATALOG",
    "PlanDefinition",
    "TRIAL_UNITS",
    "USAGE_PRICING",
    "UsagePricing",
    "get_credit_package",
]
