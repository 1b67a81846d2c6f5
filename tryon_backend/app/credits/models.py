"""Domain models for the credit ledger."""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CreditSource(str, Enum):
    """Balance sources in the order they are consumed."""

    TRIAL = "trial"
    COUPON = "coupon"
    PLAN = "plan"
    PURCHASED = "purchased"
    OVERAGE = "overage"

    @property
    def is_grant(self) -> bool:
        return self is not CreditSource.OVERAGE


class ReservationStatus(str, Enum):
    """Lifecycle of a provisional withdrawal."""

    HELD = "held"
    COMMITTED = "committed"
    RELEASED = "released"


class LedgerEntryType(str, Enum):
    """Kinds of rows written to the append-only credit ledger."""

    GRANT = "grant"
    PLAN_RESET = "plan_reset"
    RESERVE = "reserve"
    COMMIT = "commit"
    RELEASE = "release"
    OVERAGE_RESET = "overage_reset"


class CreditBreakdown(BaseModel):
    """Per-source view of the grant balances, exposed to callers."""

    trial: int = 0
    coupon: int = 0
    plan: int = 0
    purchased: int = 0
    total: int = 0

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def as_dict(self) -> Dict[str, int]:
        return {
            "trial": self.trial,
            "coupon": self.coupon,
            "plan": self.plan,
            "purchased": self.purchased,
            "total": self.total,
        }


class CreditBalance(BaseModel):
    """Committed balance of one account across all sources."""

    account_id: str
    trial_units: int = Field(default=0, ge=0)
    coupon_units: int = Field(default=0, ge=0)
    plan_units: int = Field(default=0, ge=0)
    purchased_units: int = Field(default=0, ge=0)
    overage_units_used: int = Field(default=0, ge=0)
    overage_cap_amount: Decimal = Field(default=Decimal("0"), ge=0)
    version: int = Field(default=0, ge=0)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def grant_total(self) -> int:
        return self.trial_units + self.coupon_units + self.plan_units + self.purchased_units

    def breakdown(self) -> CreditBreakdown:
        return CreditBreakdown(
            trial=self.trial_units,
            coupon=self.coupon_units,
            plan=self.plan_units,
            purchased=self.purchased_units,
            total=self.grant_total,
        )


class Account(BaseModel):
    """One storefront installation and its current billing period."""

    account_id: str
    plan_handle: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    installed_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class Reservation(BaseModel):
    """One unit provisionally withdrawn from a named source."""

    reservation_id: str
    account_id: str
    source: CreditSource
    status: ReservationStatus = ReservationStatus.HELD
    request_id: Optional[str] = None
    cache_key: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    resolved_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def is_held(self) -> bool:
        return self.status == ReservationStatus.HELD


class LedgerEntry(BaseModel):
    """Append-only audit row; ``units`` is the signed change to ``source``."""

    entry_id: str
    account_id: str
    entry_type: LedgerEntryType
    source: Optional[CreditSource] = None
    units: int = 0
    reservation_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class GrantResult(BaseModel):
    """Outcome of a grant call, flagging idempotent replays."""

    account_id: str
    source: CreditSource
    units: int
    duplicate: bool = False
    balance: CreditBalance

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class CreditAuditEventType(str, Enum):
    """Audit event categories emitted by the credit core."""

    ACCOUNT_OPENED = "account_opened"
    CREDITS_GRANTED = "credits_granted"
    PLAN_RESET = "plan_reset"
    OVERAGE_PERIOD_RESET = "overage_period_reset"
    RESERVATION_RELEASED = "reservation_released"
    RESERVATION_STATE_VIOLATION = "reservation_state_violation"
    STALE_RESERVATION_RELEASED = "stale_reservation_released"
    SUBSCRIPTION_SYNCED = "subscription_synced"
    SUBSCRIPTION_INCONSISTENT = "subscription_inconsistent"
    COUPON_REDEEMED = "coupon_redeemed"
    PURCHASE_FULFILLED = "purchase_fulfilled"


class CreditAuditEvent(BaseModel):
    """Structured audit event for analytics and support tooling."""

    event_type: CreditAuditEventType
    account_id: str
    request_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)
