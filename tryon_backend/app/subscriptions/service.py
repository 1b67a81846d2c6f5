"""Sync engine applying reconciliations to the credit ledger."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Mapping, Optional, Protocol

from ..concurrency import KeyedLock
from ..credits.catalog import PLAN_CATALOG, USAGE_PRICING, PlanDefinition, UsagePricing
from ..credits.ledger import CreditEventLogger, CreditLedger
from ..credits.models import CreditAuditEvent, CreditAuditEventType
from ..errors import SyncInconsistencyError
from .models import MutationKind, Reconciliation, SubscriptionSnapshot, SyncAction, SyncOutcome
from .reconcile import reconcile
from .repository import SnapshotRepository

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubscriptionProvider(Protocol):
    """External subscription-of-record. Only the sync engine calls it."""

    def fetch_active_subscription(self, account_id: str) -> Optional[SubscriptionSnapshot]:
        ...


@dataclass
class SubscriptionSyncEngine:
    """Idempotent reconciliation of plan units against the subscription-of-record.

    Ledger mutations are applied before the snapshot is stored. Plan and
    overage resets are absolute, so replaying a sync after a crash between
    the two steps lands on the same balances.
    """

    ledger: CreditLedger
    provider: SubscriptionProvider
    snapshots: SnapshotRepository
    event_logger: Optional[CreditEventLogger] = None
    plans: Mapping[str, PlanDefinition] = field(default_factory=lambda: dict(PLAN_CATALOG))
    usage_pricing: UsagePricing = USAGE_PRICING
    clock: Callable[[], datetime] = _utcnow
    _locks: KeyedLock = field(default_factory=KeyedLock, init=False, repr=False)

    def sync(self, account_id: str, *, request_id: Optional[str] = None) -> SyncOutcome:
        self.ledger.get_balance(account_id)

        with self._locks.hold(account_id):
            stored = self.snapshots.get(account_id)
            fetched = self.provider.fetch_active_subscription(account_id)
            try:
                result = reconcile(
                    stored,
                    fetched,
                    plans=self.plans,
                    usage_pricing=self.usage_pricing,
                    now=self.clock(),
                )
            except SyncInconsistencyError as exc:
                return self._inconsistent(account_id, stored, exc, request_id)

            self._apply(account_id, result)
            if result.snapshot is not None and result.snapshot != stored:
                self.snapshots.save(account_id, result.snapshot)

        if result.action == SyncAction.NO_ACTION:
            logger.debug("Subscription sync for %s: %s", account_id, result.reason)
        else:
            logger.info(
                "Subscription sync for %s: %s (%s)",
                account_id,
                result.action.value,
                result.reason,
                extra={"request_id": request_id},
            )
            self._audit(
                CreditAuditEventType.SUBSCRIPTION_SYNCED,
                account_id,
                request_id,
                action=result.action.value,
                plan_handle=result.snapshot.plan_handle if result.snapshot else None,
                reason=result.reason,
            )

        return SyncOutcome(
            account_id=account_id,
            action=result.action,
            snapshot=result.snapshot,
            mutations=result.mutations,
            reason=result.reason,
            request_id=request_id,
        )

    def _apply(self, account_id: str, result: Reconciliation) -> None:
        snapshot = result.snapshot
        active = snapshot is not None and snapshot.is_active
        for mutation in result.mutations:
            if mutation.kind == MutationKind.RESET_PLAN:
                self.ledger.reset_plan(
                    account_id,
                    mutation.plan_units or 0,
                    reason=result.action.value,
                    plan_handle=snapshot.plan_handle if active else None,
                    period_start=snapshot.period_start if active else None,
                    period_end=snapshot.period_end if active else None,
                )
            elif mutation.kind == MutationKind.RESET_OVERAGE:
                self.ledger.reset_overage(account_id, cap_amount=mutation.cap_amount or Decimal("0"))

    def _inconsistent(
        self,
        account_id: str,
        stored: Optional[SubscriptionSnapshot],
        exc: SyncInconsistencyError,
        request_id: Optional[str],
    ) -> SyncOutcome:
        exc.with_request_id(request_id)
        logger.warning(
            "Subscription for %s cannot be reconciled: %s",
            account_id,
            exc.message,
            extra={"request_id": request_id, "detail": dict(exc.detail or {})},
        )
        self._audit(
            CreditAuditEventType.SUBSCRIPTION_INCONSISTENT,
            account_id,
            request_id,
            message=exc.message,
        )
        return SyncOutcome(
            account_id=account_id,
            action=SyncAction.NO_ACTION,
            snapshot=stored,
            reason="inconsistent subscription state",
            error=dict(exc.payload["error"]),
            request_id=request_id,
        )

    def _audit(
        self,
        event_type: CreditAuditEventType,
        account_id: str,
        request_id: Optional[str],
        **metadata: Optional[str],
    ) -> None:
        if self.event_logger is None:
            return
        self.event_logger.log(
            CreditAuditEvent(
                event_type=event_type,
                account_id=account_id,
                request_id=request_id,
                metadata={key: value for key, value in metadata.items() if value is not None},
            )
        )


__all__ = ["SubscriptionProvider", "SubscriptionSyncEngine"]
