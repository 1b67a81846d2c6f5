"""Credit ledger package: balances, reservations and grant flows."""

from .catalog import (
    COUPON_CATALOG,
    CREDIT_PACKAGES,
    PLAN_CATALOG,
    TRIAL_UNITS,
    USAGE_PRICING,
    CouponDefinition,
    CreditPackage,
    PlanDefinition,
    UsagePricing,
)
from .coupons import CouponRedemption, CouponService
from .ledger import CreditEventLogger, CreditLedger, LedgerRepository, LedgerTransaction
from .models import (
    Account,
    CreditAuditEvent,
    CreditAuditEventType,
    CreditBalance,
    CreditBreakdown,
    CreditSource,
    GrantResult,
    LedgerEntry,
    LedgerEntryType,
    Reservation,
    ReservationStatus,
)
from .purchases import CreditPurchaseService, PurchaseFulfilment
from .repository import InMemoryLedgerRepository, PostgresLedgerRepository
from .sources import GrantSourceDescriptor, OverageSourceDescriptor, default_source_order

__all__ = [
    "Account",
    "COUPON_CATALOG",
    "CREDIT_PACKAGES",
    "CouponDefinition",
    "CouponRedemption",
    "CouponService",
    "CreditAuditEvent",
    "CreditAuditEventType",
    "CreditBalance",
    "CreditBreakdown",
    "CreditEventLogger",
    "CreditLedger",
    "CreditPackage",
    "CreditPurchaseService",
    "CreditSource",
    "GrantResult",
    "GrantSourceDescriptor",
    "InMemoryLedgerRepository",
    "LedgerEntry",
    "LedgerEntryType",
    "LedgerRepository",
    "LedgerTransaction",
    "OverageSourceDescriptor",
    "PLAN_CATALOG",
    "PlanDefinition",
    "PostgresLedgerRepository",
    "PurchaseFulfilment",
    "Reservation",
    "ReservationStatus",
    "TRIAL_UNITS",
    "USAGE_PRICING",
    "UsagePricing",
    "default_source_order",
]
