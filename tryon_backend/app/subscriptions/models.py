"""Domain models for subscription reconciliation."""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class SubscriptionStatus(str, Enum):
    """Lifecycle states reported by the subscription-of-record."""

    PENDING = "pending"
    ACTIVE = "active"
    FROZEN = "frozen"
    CANCELLED = "cancelled"
    DECLINED = "declined"
    EXPIRED = "expired"


class SubscriptionSnapshot(BaseModel):
    """Last-known external subscription state for one account."""

    plan_handle: Optional[str] = None
    status: SubscriptionStatus
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    included_units: Optional[int] = Field(default=None, ge=0)
    subscription_id: Optional[str] = None
    price_amount: Optional[Decimal] = None
    currency_code: Optional[str] = None
    # Start of the window plan units belong to; monthly inside an annual period.
    credit_period_start: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE


class SyncAction(str, Enum):
    INITIALIZED = "initialized"
    PLAN_CHANGED = "plan_changed"
    RENEWED = "renewed"
    CANCELLED = "cancelled"
    NO_ACTION = "no_action"


class MutationKind(str, Enum):
    RESET_PLAN = "reset_plan"
    RESET_OVERAGE = "reset_overage"


class LedgerMutation(BaseModel):
    """One absolute ledger change derived from a reconciliation."""

    kind: MutationKind
    plan_units: Optional[int] = Field(default=None, ge=0)
    cap_amount: Optional[Decimal] = Field(default=None, ge=0)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @classmethod
    def reset_plan(cls, plan_units: int) -> "LedgerMutation":
        return cls(kind=MutationKind.RESET_PLAN, plan_units=plan_units)

    @classmethod
    def reset_overage(cls, cap_amount: Decimal) -> "LedgerMutation":
        return cls(kind=MutationKind.RESET_OVERAGE, cap_amount=cap_amount)


class Reconciliation(BaseModel):
    """Pure result of comparing the stored and fetched snapshots.

    ``snapshot`` is what should be stored afterwards; ``None`` means nothing
    is stored for the account.
    """

    action: SyncAction
    snapshot: Optional[SubscriptionSnapshot] = None
    mutations: Tuple[LedgerMutation, ...] = ()
    reason: str = ""

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class SyncOutcome(BaseModel):
    account_id: str
    action: SyncAction
    snapshot: Optional[SubscriptionSnapshot] = None
    mutations: Tuple[LedgerMutation, ...] = ()
    reason: str = ""
    error: Optional[Dict[str, Any]] = None
    request_id: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


__all__ = [
    "LedgerMutation",
    "MutationKind",
    "Reconciliation",
    "SubscriptionSnapshot",
    "SubscriptionStatus",
    "SyncAction",
    "SyncOutcome",
]
