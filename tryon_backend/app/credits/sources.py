"""Ordered balance sources consulted by :meth:`CreditLedger.reserve`.

Each descriptor knows how to read, withdraw and restore one unit for a single
source on an immutable :class:`CreditBalance`. The ledger walks the tuple once
per reservation, so adding or reordering a tier only changes the tuple.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_CEILING, Decimal
from typing import Dict, Protocol, Sequence, Tuple

from .models import CreditBalance, CreditSource


class SourceDescriptor(Protocol):
    source: CreditSource

    def available_units(self, balance: CreditBalance) -> int:
        ...

    def withdraw(self, balance: CreditBalance) -> CreditBalance:
        ...

    def restore(self, balance: CreditBalance) -> CreditBalance:
        ...


@dataclass(frozen=True)
class GrantSourceDescriptor:
    """A prepaid balance that is decremented on use."""

    source: CreditSource

    @property
    def field_name(self) -> str:
        return f"{self.source.value}_units"

    def available_units(self, balance: CreditBalance) -> int:
        return getattr(balance, self.field_name)

    def withdraw(self, balance: CreditBalance) -> CreditBalance:
        current = self.available_units(balance)
        if current < 1:
            raise ValueError(f"{self.source.value} balance is exhausted")
        return balance.model_copy(update={self.field_name: current - 1})

    def restore(self, balance: CreditBalance) -> CreditBalance:
        return balance.model_copy(update={self.field_name: self.available_units(balance) + 1})


@dataclass(frozen=True)
class OverageSourceDescriptor:
    """Pay-per-unit usage past the included balances, capped per period.

    A unit is available while ``used * unit_price`` is still below the cap.
    A non-positive price disables overage entirely.
    """

    unit_price: Decimal
    source: CreditSource = CreditSource.OVERAGE

    def max_units(self, balance: CreditBalance) -> int:
        if self.unit_price <= 0 or balance.overage_cap_amount <= 0:
            return 0
        ratio = balance.overage_cap_amount / self.unit_price
        return int(ratio.to_integral_value(rounding=ROUND_CEILING))

    def available_units(self, balance: CreditBalance) -> int:
        return max(0, self.max_units(balance) - balance.overage_units_used)

    def charged_amount(self, balance: CreditBalance) -> Decimal:
        return self.unit_price * balance.overage_units_used

    def withdraw(self, balance: CreditBalance) -> CreditBalance:
        if self.available_units(balance) < 1:
            raise ValueError("overage cap reached")
        return balance.model_copy(update={"overage_units_used": balance.overage_units_used + 1})

    def restore(self, balance: CreditBalance) -> CreditBalance:
        return balance.model_copy(update={"overage_units_used": max(0, balance.overage_units_used - 1)})


def default_source_order(unit_price: Decimal) -> Tuple[SourceDescriptor, ...]:
    """Trial first, then coupon, plan, purchased and finally capped overage."""

    return (
        GrantSourceDescriptor(CreditSource.TRIAL),
        GrantSourceDescriptor(CreditSource.COUPON),
        GrantSourceDescriptor(CreditSource.PLAN),
        GrantSourceDescriptor(CreditSource.PURCHASED),
        OverageSourceDescriptor(unit_price=unit_price),
    )


def index_by_source(descriptors: Sequence[SourceDescriptor]) -> Dict[CreditSource, SourceDescriptor]:
    indexed: Dict[CreditSource, SourceDescriptor] = {}
    for descriptor in descriptors:
        if descriptor.source in indexed:
            raise ValueError(f"Duplicate source descriptor for {descriptor.source.value}")
        indexed[descriptor.source] = descriptor
    return indexed


__all__ = [
    "GrantSourceDescriptor",
    "OverageSourceDescriptor",
    "SourceDescriptor",
    "default_source_order",
    "index_by_source",
]
