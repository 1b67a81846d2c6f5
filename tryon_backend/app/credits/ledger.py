"""Per-account credit ledger: reservations, grants and plan resets."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import ContextManager, Dict, Optional, Protocol, Sequence, Tuple
from uuid import uuid4

from ..errors import InsufficientCreditsError, ReservationStateError
from .catalog import TRIAL_UNITS, USAGE_PRICING
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
from .sources import SourceDescriptor, default_source_order, index_by_source

logger = logging.getLogger("credits")


class LedgerTransaction(Protocol):
    """Reads and writes scoped to one locked account.

    Writes become visible only when the surrounding ``transaction`` block
    exits cleanly; an exception discards all of them.
    """

    def get_account(self) -> Optional[Account]:
        ...

    def save_account(self, account: Account) -> Account:
        ...

    def get_balance(self) -> Optional[CreditBalance]:
        ...

    def save_balance(self, balance: CreditBalance) -> CreditBalance:
        ...

    def get_reservation(self, reservation_id: str) -> Optional[Reservation]:
        ...

    def save_reservation(self, reservation: Reservation) -> Reservation:
        ...

    def append_entry(self, entry: LedgerEntry) -> LedgerEntry:
        ...

    def has_idempotency_key(self, key: str) -> bool:
        ...

    def count_idempotency_keys(self, prefix: str) -> int:
        ...


class LedgerRepository(Protocol):
    """Persistence operations required by the credit ledger."""

    def transaction(self, account_id: str) -> ContextManager[LedgerTransaction]:
        ...

    def get_account(self, account_id: str) -> Optional[Account]:
        ...

    def get_balance(self, account_id: str) -> Optional[CreditBalance]:
        ...

    def get_reservation(self, reservation_id: str) -> Optional[Reservation]:
        ...

    def list_entries(self, account_id: str) -> Sequence[LedgerEntry]:
        ...

    def list_held_reservations(self, *, created_before: datetime) -> Sequence[Reservation]:
        ...


class CreditEventLogger(Protocol):
    """Captures structured credit audit events."""

    def log(self, event: CreditAuditEvent) -> None:
        ...


@dataclass
class CreditLedger:
    """Linearizes every balance mutation of an account through its repository."""

    repository: LedgerRepository
    event_logger: Optional[CreditEventLogger] = None
    unit_price: Decimal = USAGE_PRICING.unit_price
    trial_units: int = TRIAL_UNITS
    sources: Tuple[SourceDescriptor, ...] = ()
    _by_source: Dict[CreditSource, SourceDescriptor] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if not self.sources:
            self.sources = default_source_order(self.unit_price)
        self._by_source = index_by_source(self.sources)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _emit(self, event_type: CreditAuditEventType, account_id: str, **metadata: object) -> None:
        if self.event_logger is None:
            return
        request_id = metadata.pop("request_id", None)
        self.event_logger.log(
            CreditAuditEvent(
                event_type=event_type,
                account_id=account_id,
                request_id=str(request_id) if request_id else None,
                metadata={key: str(value) for key, value in metadata.items() if value is not None},
            )
        )

    def _entry(
        self,
        account_id: str,
        entry_type: LedgerEntryType,
        *,
        source: Optional[CreditSource] = None,
        units: int = 0,
        reservation_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> LedgerEntry:
        return LedgerEntry(
            entry_id=f"le_{uuid4().hex}",
            account_id=account_id,
            entry_type=entry_type,
            source=source,
            units=units,
            reservation_id=reservation_id,
            idempotency_key=idempotency_key,
            metadata=metadata or {},
            occurred_at=self._now(),
        )

    def _bump(self, balance: CreditBalance) -> CreditBalance:
        return balance.model_copy(update={"version": balance.version + 1, "updated_at": self._now()})

    @staticmethod
    def _require_balance(tx: LedgerTransaction, account_id: str) -> CreditBalance:
        balance = tx.get_balance()
        if balance is None:
            raise LookupError(f"Unknown account: {account_id}")
        return balance

    # -- account lifecycle -------------------------------------------------

    def open_account(
        self,
        account_id: str,
        *,
        trial_units: Optional[int] = None,
        overage_cap_amount: Decimal = Decimal("0"),
    ) -> CreditBalance:
        """Create the balance row on install and grant the trial once."""

        units = self.trial_units if trial_units is None else trial_units
        if units < 0:
            raise ValueError("trial_units must be >= 0")
        trial_key = f"trial:{account_id}"

        with self.repository.transaction(account_id) as tx:
            balance = tx.get_balance()
            created = balance is None
            if created:
                tx.save_account(Account(account_id=account_id, installed_at=self._now()))
                balance = CreditBalance(
                    account_id=account_id,
                    overage_cap_amount=overage_cap_amount,
                    updated_at=self._now(),
                )
            if tx.has_idempotency_key(trial_key):
                return balance
            balance = self._bump(balance.model_copy(update={"trial_units": balance.trial_units + units}))
            balance = tx.save_balance(balance)
            tx.append_entry(
                self._entry(
                    account_id,
                    LedgerEntryType.GRANT,
                    source=CreditSource.TRIAL,
                    units=units,
                    idempotency_key=trial_key,
                    metadata={"reason": "trial"},
                )
            )

        logger.info("Opened credit account %s with %s trial units", account_id, units)
        self._emit(CreditAuditEventType.ACCOUNT_OPENED, account_id, trial_units=units, created=created)
        return balance

    # -- reservations ------------------------------------------------------

    def reserve(
        self,
        account_id: str,
        *,
        request_id: Optional[str] = None,
        cache_key: Optional[str] = None,
    ) -> Reservation:
        """Withdraw one unit from the first source with capacity."""

        with self.repository.transaction(account_id) as tx:
            balance = self._require_balance(tx, account_id)
            for descriptor in self.sources:
                if descriptor.available_units(balance) > 0:
                    break
            else:
                logger.info(
                    "Insufficient credits for %s",
                    account_id,
                    extra={"account_id": account_id, "request_id": request_id},
                )
                raise InsufficientCreditsError(
                    account_id=account_id,
                    breakdown=balance.breakdown().as_dict(),
                    request_id=request_id,
                )

            tx.save_balance(self._bump(descriptor.withdraw(balance)))
            reservation = tx.save_reservation(
                Reservation(
                    reservation_id=f"res_{uuid4().hex}",
                    account_id=account_id,
                    source=descriptor.source,
                    request_id=request_id,
                    cache_key=cache_key,
                    created_at=self._now(),
                )
            )
            tx.append_entry(
                self._entry(
                    account_id,
                    LedgerEntryType.RESERVE,
                    source=descriptor.source,
                    units=-1,
                    reservation_id=reservation.reservation_id,
                )
            )

        logger.debug(
            "Reserved one %s unit for %s",
            reservation.source.value,
            account_id,
            extra={"reservation_id": reservation.reservation_id, "request_id": request_id},
        )
        return reservation

    def commit(self, reservation: Reservation) -> Reservation:
        """Finalize a held reservation. Committing twice is a no-op."""

        with self.repository.transaction(reservation.account_id) as tx:
            current = tx.get_reservation(reservation.reservation_id)
            if current is None:
                raise LookupError(f"Unknown reservation: {reservation.reservation_id}")
            if current.status == ReservationStatus.COMMITTED:
                return current
            if current.status == ReservationStatus.RELEASED:
                raise self._state_violation(current, "commit")

            committed = tx.save_reservation(
                current.model_copy(update={"status": ReservationStatus.COMMITTED, "resolved_at": self._now()})
            )
            tx.append_entry(
                self._entry(
                    current.account_id,
                    LedgerEntryType.COMMIT,
                    source=current.source,
                    reservation_id=current.reservation_id,
                )
            )
        return committed

    def release(self, reservation: Reservation, *, reason: str = "generation_failed") -> Reservation:
        """Return the unit to the source it was taken from. Releasing twice is a no-op."""

        with self.repository.transaction(reservation.account_id) as tx:
            current = tx.get_reservation(reservation.reservation_id)
            if current is None:
                raise LookupError(f"Unknown reservation: {reservation.reservation_id}")
            if current.status == ReservationStatus.RELEASED:
                return current
            if current.status == ReservationStatus.COMMITTED:
                raise self._state_violation(current, "release")
            released = self._release_held(tx, current, reason=reason)

        logger.info(
            "Released %s unit for %s (%s)",
            released.source.value,
            released.account_id,
            reason,
            extra={"reservation_id": released.reservation_id, "request_id": released.request_id},
        )
        self._emit(
            CreditAuditEventType.RESERVATION_RELEASED,
            released.account_id,
            request_id=released.request_id,
            reservation_id=released.reservation_id,
            source=released.source.value,
            reason=reason,
        )
        return released

    def _release_held(self, tx: LedgerTransaction, current: Reservation, *, reason: str) -> Reservation:
        balance = self._require_balance(tx, current.account_id)
        tx.save_balance(self._bump(self._by_source[current.source].restore(balance)))
        released = tx.save_reservation(
            current.model_copy(update={"status": ReservationStatus.RELEASED, "resolved_at": self._now()})
        )
        tx.append_entry(
            self._entry(
                current.account_id,
                LedgerEntryType.RELEASE,
                source=current.source,
                units=1,
                reservation_id=current.reservation_id,
                metadata={"reason": reason},
            )
        )
        return released

    def _state_violation(self, reservation: Reservation, operation: str) -> ReservationStateError:
        logger.error(
            "Refusing to %s reservation %s in state %s",
            operation,
            reservation.reservation_id,
            reservation.status.value,
            extra={"account_id": reservation.account_id, "request_id": reservation.request_id},
        )
        self._emit(
            CreditAuditEventType.RESERVATION_STATE_VIOLATION,
            reservation.account_id,
            request_id=reservation.request_id,
            reservation_id=reservation.reservation_id,
            operation=operation,
            status=reservation.status.value,
        )
        return ReservationStateError(
            message=f"Cannot {operation} a {reservation.status.value} reservation.",
            reservation_id=reservation.reservation_id,
            request_id=reservation.request_id,
        )

    def release_stale_reservations(self, *, max_age: timedelta) -> int:
        """Force-release reservations left held for longer than ``max_age``."""

        cutoff = self._now() - max_age
        released = 0
        for candidate in self.repository.list_held_reservations(created_before=cutoff):
            with self.repository.transaction(candidate.account_id) as tx:
                current = tx.get_reservation(candidate.reservation_id)
                if current is None or not current.is_held:
                    continue
                self._release_held(tx, current, reason="stale")
            released += 1
            logger.warning(
                "Released stale reservation %s for %s",
                candidate.reservation_id,
                candidate.account_id,
                extra={"request_id": candidate.request_id},
            )
            self._emit(
                CreditAuditEventType.STALE_RESERVATION_RELEASED,
                candidate.account_id,
                request_id=candidate.request_id,
                reservation_id=candidate.reservation_id,
                source=candidate.source.value,
            )
        return released

    # -- grants and resets -------------------------------------------------

    def grant(
        self,
        account_id: str,
        source: CreditSource,
        units: int,
        *,
        reason: str,
        idempotency_key: Optional[str] = None,
    ) -> GrantResult:
        """Increase one grant source. A repeated idempotency key changes nothing."""

        if not source.is_grant:
            raise ValueError("Overage cannot be granted")
        if units < 1:
            raise ValueError("units must be >= 1")

        with self.repository.transaction(account_id) as tx:
            balance = self._require_balance(tx, account_id)
            if idempotency_key and tx.has_idempotency_key(idempotency_key):
                logger.info("Ignoring duplicate grant %s for %s", idempotency_key, account_id)
                return GrantResult(account_id=account_id, source=source, units=units, duplicate=True, balance=balance)

            descriptor = self._by_source[source]
            updated = balance.model_copy(update={f"{source.value}_units": descriptor.available_units(balance) + units})
            updated = tx.save_balance(self._bump(updated))
            tx.append_entry(
                self._entry(
                    account_id,
                    LedgerEntryType.GRANT,
                    source=source,
                    units=units,
                    idempotency_key=idempotency_key,
                    metadata={"reason": reason},
                )
            )

        logger.info("Granted %s %s units to %s (%s)", units, source.value, account_id, reason)
        self._emit(
            CreditAuditEventType.CREDITS_GRANTED,
            account_id,
            source=source.value,
            units=units,
            reason=reason,
            idempotency_key=idempotency_key,
        )
        return GrantResult(account_id=account_id, source=source, units=units, balance=updated)

    def reset_plan(
        self,
        account_id: str,
        plan_units: int,
        *,
        reason: str,
        plan_handle: Optional[str] = None,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
    ) -> CreditBalance:
        """Set plan units to the confirmed entitlement; leftovers are discarded."""

        if plan_units < 0:
            raise ValueError("plan_units must be >= 0")

        with self.repository.transaction(account_id) as tx:
            balance = self._require_balance(tx, account_id)
            previous = balance.plan_units
            updated = tx.save_balance(self._bump(balance.model_copy(update={"plan_units": plan_units})))
            tx.append_entry(
                self._entry(
                    account_id,
                    LedgerEntryType.PLAN_RESET,
                    source=CreditSource.PLAN,
                    units=plan_units - previous,
                    metadata={"reason": reason, "previous": str(previous)},
                )
            )
            account = tx.get_account() or Account(account_id=account_id)
            tx.save_account(
                account.model_copy(
                    update={"plan_handle": plan_handle, "period_start": period_start, "period_end": period_end}
                )
            )

        logger.info(
            "Reset plan units for %s from %s to %s (%s)",
            account_id,
            previous,
            plan_units,
            reason,
        )
        self._emit(
            CreditAuditEventType.PLAN_RESET,
            account_id,
            previous=previous,
            plan_units=plan_units,
            reason=reason,
            plan_handle=plan_handle,
        )
        return updated

    def reset_overage(self, account_id: str, *, cap_amount: Decimal) -> CreditBalance:
        """Start a new overage period with a zeroed usage counter."""

        if cap_amount < 0:
            raise ValueError("cap_amount must be >= 0")

        with self.repository.transaction(account_id) as tx:
            balance = self._require_balance(tx, account_id)
            previous_used = balance.overage_units_used
            updated = tx.save_balance(
                self._bump(balance.model_copy(update={"overage_units_used": 0, "overage_cap_amount": cap_amount}))
            )
            tx.append_entry(
                self._entry(
                    account_id,
                    LedgerEntryType.OVERAGE_RESET,
                    source=CreditSource.OVERAGE,
                    metadata={"previous_used": str(previous_used), "cap_amount": str(cap_amount)},
                )
            )

        self._emit(
            CreditAuditEventType.OVERAGE_PERIOD_RESET,
            account_id,
            previous_used=previous_used,
            cap_amount=cap_amount,
        )
        return updated

    # -- reads -------------------------------------------------------------

    def get_balance(self, account_id: str) -> CreditBalance:
        balance = self.repository.get_balance(account_id)
        if balance is None:
            raise LookupError(f"Unknown account: {account_id}")
        return balance

    def get_breakdown(self, account_id: str) -> CreditBreakdown:
        return self.get_balance(account_id).breakdown()

    def get_account(self, account_id: str) -> Account:
        account = self.repository.get_account(account_id)
        if account is None:
            raise LookupError(f"Unknown account: {account_id}")
        return account

    def get_reservation(self, reservation_id: str) -> Optional[Reservation]:
        return self.repository.get_reservation(reservation_id)

    def list_entries(self, account_id: str) -> Sequence[LedgerEntry]:
        return self.repository.list_entries(account_id)

    def count_grants(self, account_id: str, key_prefix: str) -> int:
        """Number of grants recorded under idempotency keys starting with ``key_prefix``."""

        with self.repository.transaction(account_id) as tx:
            return tx.count_idempotency_keys(key_prefix)


__all__ = ["CreditEventLogger", "CreditLedger", "LedgerRepository", "LedgerTransaction"]
