"""Pure reconciliation of stored versus fetched subscription snapshots.

The function never reads the clock or the ledger itself: the same pair of
snapshots and the same ``now`` always yield the same action, target snapshot
and mutations, so a sync can be invoked any number of times without
re-granting or re-clearing units.
"""
from __future__ import annotations

from datetime import datetime
from typing import Mapping, Optional

from ..credits.catalog import PlanDefinition, UsagePricing
from ..errors import SyncInconsistencyError
from .models import LedgerMutation, Reconciliation, SubscriptionSnapshot, SubscriptionStatus, SyncAction


def _moved_forward(new: Optional[datetime], old: Optional[datetime]) -> bool:
    return new is not None and (old is None or new > old)


def _moved_back(new: Optional[datetime], old: Optional[datetime]) -> bool:
    return new is not None and old is not None and new < old


def _credit_period_start(
    plan: PlanDefinition,
    period_start: Optional[datetime],
    now: Optional[datetime],
) -> Optional[datetime]:
    """Annual plans refill on the first day of each calendar month."""

    if not plan.is_annual or now is None or period_start is None:
        return period_start
    month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return max(period_start, month_start)


def _resolve_plan(fetched: SubscriptionSnapshot, plans: Mapping[str, PlanDefinition]) -> PlanDefinition:
    plan = plans.get(fetched.plan_handle or "")
    if plan is None:
        raise SyncInconsistencyError(
            message=f"Subscription plan {fetched.plan_handle!r} is not configured.",
            detail={"planHandle": fetched.plan_handle, "subscriptionId": fetched.subscription_id},
        )
    if not plan.matches_price(fetched.price_amount, fetched.currency_code):
        raise SyncInconsistencyError(
            message="Subscription price does not match the configured plan.",
            detail={
                "planHandle": plan.handle,
                "expectedAmount": str(plan.price_amount),
                "expectedCurrency": plan.currency_code,
                "amount": None if fetched.price_amount is None else str(fetched.price_amount),
                "currency": fetched.currency_code,
            },
        )
    return plan


def reconcile(
    stored: Optional[SubscriptionSnapshot],
    fetched: Optional[SubscriptionSnapshot],
    *,
    plans: Mapping[str, PlanDefinition],
    usage_pricing: UsagePricing,
    now: Optional[datetime] = None,
) -> Reconciliation:
    """Classify a sync and derive the absolute ledger mutations it requires.

    ``now`` drives the monthly credit periods of annual plans; without it
    plan units follow the billing period only.

    Raises :class:`SyncInconsistencyError` when an active subscription cannot
    be mapped onto a configured plan; the caller decides how to surface it.
    """

    stored_active = stored is not None and stored.is_active

    if fetched is None or not fetched.is_active:
        if not stored_active:
            return Reconciliation(action=SyncAction.NO_ACTION, snapshot=stored, reason="no active subscription")
        tombstone = fetched or stored.model_copy(update={"status": SubscriptionStatus.CANCELLED})
        return Reconciliation(
            action=SyncAction.CANCELLED,
            snapshot=tombstone,
            mutations=(LedgerMutation.reset_plan(0), LedgerMutation.reset_overage(0)),
            reason="subscription no longer active",
        )

    plan = _resolve_plan(fetched, plans)
    units = plan.included_units if fetched.included_units is None else fetched.included_units
    resolved = fetched.model_copy(
        update={
            "included_units": units,
            "currency_code": fetched.currency_code.upper() if fetched.currency_code else None,
            "credit_period_start": _credit_period_start(plan, fetched.period_start, now),
        }
    )
    open_period = LedgerMutation.reset_overage(usage_pricing.capped_amount)

    tombstone_period = None if stored is None or stored_active else stored.period_start
    if tombstone_period is not None and not _moved_forward(resolved.period_start, tombstone_period):
        return Reconciliation(action=SyncAction.NO_ACTION, snapshot=stored, reason="snapshot predates the cancellation")

    if not stored_active:
        return Reconciliation(
            action=SyncAction.INITIALIZED,
            snapshot=resolved,
            mutations=(LedgerMutation.reset_plan(units), open_period),
            reason="first active subscription",
        )

    if _moved_back(resolved.period_start, stored.period_start):
        return Reconciliation(action=SyncAction.NO_ACTION, snapshot=stored, reason="out-of-order snapshot ignored")

    if resolved.plan_handle != stored.plan_handle:
        mutations = [LedgerMutation.reset_plan(units)]
        if resolved.period_start != stored.period_start:
            mutations.append(open_period)
        return Reconciliation(
            action=SyncAction.PLAN_CHANGED,
            snapshot=resolved,
            mutations=tuple(mutations),
            reason=f"plan changed from {stored.plan_handle} to {resolved.plan_handle}",
        )

    if _moved_forward(resolved.period_start, stored.period_start):
        return Reconciliation(
            action=SyncAction.RENEWED,
            snapshot=resolved,
            mutations=(LedgerMutation.reset_plan(units), open_period),
            reason="billing period renewed",
        )

    stored_credit_start = stored.credit_period_start or stored.period_start
    if _moved_forward(resolved.credit_period_start, stored_credit_start):
        return Reconciliation(
            action=SyncAction.RENEWED,
            snapshot=resolved,
            mutations=(LedgerMutation.reset_plan(units), open_period),
            reason="monthly credit period renewed",
        )
    if stored_credit_start is not None:
        # A lagging clock never rewinds the credit period.
        resolved = resolved.model_copy(update={"credit_period_start": stored_credit_start})

    if resolved.included_units != stored.included_units:
        return Reconciliation(
            action=SyncAction.PLAN_CHANGED,
            snapshot=resolved,
            mutations=(LedgerMutation.reset_plan(units),),
            reason="included units changed",
        )

    if resolved == stored:
        return Reconciliation(action=SyncAction.NO_ACTION, snapshot=stored, reason="unchanged")
    return Reconciliation(action=SyncAction.NO_ACTION, snapshot=resolved, reason="non-material change")


__all__ = ["reconcile"]
