"""API schemas for subscription sync endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..subscriptions import SubscriptionSnapshot, SubscriptionStatus, SyncAction, SyncOutcome


class SyncRequest(BaseModel):
    account_id: str = Field(alias="accountId", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class SnapshotResponse(BaseModel):
    plan_handle: Optional[str] = Field(alias="planHandle", default=None)
    status: SubscriptionStatus
    period_start: Optional[datetime] = Field(alias="periodStart", default=None)
    period_end: Optional[datetime] = Field(alias="periodEnd", default=None)
    included_units: Optional[int] = Field(alias="includedUnits", default=None)
    credit_period_start: Optional[datetime] = Field(alias="creditPeriodStart", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_snapshot(cls, snapshot: SubscriptionSnapshot) -> "SnapshotResponse":
        return cls(
            plan_handle=snapshot.plan_handle,
            status=snapshot.status,
            period_start=snapshot.period_start,
            period_end=snapshot.period_end,
            included_units=snapshot.included_units,
            credit_period_start=snapshot.credit_period_start,
        )


class SyncResponse(BaseModel):
    request_id: Optional[str] = Field(alias="requestId", default=None)
    account_id: str = Field(alias="accountId")
    action: SyncAction
    reason: str = ""
    snapshot: Optional[SnapshotResponse] = None
    error: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_outcome(cls, outcome: SyncOutcome) -> "SyncResponse":
        return cls(
            request_id=outcome.request_id,
            account_id=outcome.account_id,
            action=outcome.action,
            reason=outcome.reason,
            snapshot=SnapshotResponse.from_snapshot(outcome.snapshot) if outcome.snapshot else None,
            error=outcome.error,
        )
