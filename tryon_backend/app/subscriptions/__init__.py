"""Subscription package reconciling plan units with the subscription-of-record."""

from .models import (
    LedgerMutation,
    MutationKind,
    Reconciliation,
    SubscriptionSnapshot,
    SubscriptionStatus,
    SyncAction,
    SyncOutcome,
)
from .reconcile import reconcile
from .repository import InMemorySnapshotRepository, PostgresSnapshotRepository, SnapshotRepository
from .service import SubscriptionProvider, SubscriptionSyncEngine

__all__ = [
    "InMemorySnapshotRepository",
    "LedgerMutation",
    "MutationKind",
    "PostgresSnapshotRepository",
    "Reconciliation",
    "SnapshotRepository",
    "SubscriptionProvider",
    "SubscriptionSnapshot",
    "SubscriptionStatus",
    "SubscriptionSyncEngine",
    "SyncAction",
    "SyncOutcome",
    "reconcile",
]
