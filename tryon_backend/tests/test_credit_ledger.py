"""Unit tests for the credit ledger."""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List

import pytest

from tryon_backend.app.credits import (
    CreditAuditEvent,
    CreditAuditEventType,
    CreditLedger,
    CreditSource,
    InMemoryLedgerRepository,
    LedgerEntryType,
    ReservationStatus,
)
from tryon_backend.app.credits.ledger import CreditEventLogger
from tryon_backend.app.errors import InsufficientCreditsError, ReservationStateError


class RecordingEventLogger(CreditEventLogger):
    def __init__(self) -> None:
        self.events: List[CreditAuditEvent] = []

    def log(self, event: CreditAuditEvent) -> None:
        self.events.append(event)

    def types(self) -> List[CreditAuditEventType]:
        return [event.event_type for event in self.events]


@pytest.fixture()
def events() -> RecordingEventLogger:
    return RecordingEventLogger()


@pytest.fixture()
def ledger(events: RecordingEventLogger) -> CreditLedger:
    return CreditLedger(repository=InMemoryLedgerRepository(), event_logger=events, unit_price=Decimal("0.20"))


def test_open_account_grants_trial_once(ledger: CreditLedger, events: RecordingEventLogger):
    first = ledger.open_account("shop-1")
    second = ledger.open_account("shop-1")

    assert first.trial_units == 100
    assert second.trial_units == 100
    assert ledger.get_balance("shop-1").trial_units == 100
    assert ledger.get_account("shop-1").plan_handle is None
    grants = [entry for entry in ledger.list_entries("shop-1") if entry.entry_type == LedgerEntryType.GRANT]
    assert len(grants) == 1
    assert grants[0].idempotency_key == "trial:shop-1"
    assert events.types() == [CreditAuditEventType.ACCOUNT_OPENED]


def test_reserve_consumes_sources_in_priority_order(ledger: CreditLedger):
    ledger.open_account("shop-1", trial_units=1)
    ledger.grant("shop-1", CreditSource.COUPON, 1, reason="test")
    ledger.reset_plan("shop-1", 1, reason="test")

    sources = [ledger.reserve("shop-1").source for _ in range(3)]

    assert sources == [CreditSource.TRIAL, CreditSource.COUPON, CreditSource.PLAN]
    balance = ledger.get_balance("shop-1")
    assert (balance.trial_units, balance.coupon_units, balance.plan_units) == (0, 0, 0)


def test_reserve_falls_through_to_purchased_then_overage(ledger: CreditLedger):
    ledger.open_account("shop-1", trial_units=0, overage_cap_amount=Decimal("0.40"))
    ledger.grant("shop-1", CreditSource.PURCHASED, 1, reason="test")

    sources = [ledger.reserve("shop-1").source for _ in range(3)]

    assert sources == [CreditSource.PURCHASED, CreditSource.OVERAGE, CreditSource.OVERAGE]
    assert ledger.get_balance("shop-1").overage_units_used == 2


def test_reserve_fails_with_breakdown_when_everything_is_exhausted(ledger: CreditLedger):
    ledger.open_account("shop-1", trial_units=1)
    ledger.reserve("shop-1", request_id="req-1")

    with pytest.raises(InsufficientCreditsError) as exc_info:
        ledger.reserve("shop-1", request_id="req-2")

    error = exc_info.value
    assert error.status_code == 402
    assert error.request_id == "req-2"
    assert error.payload["error"]["details"]["creditBreakdown"] == {
        "trial": 0,
        "coupon": 0,
        "plan": 0,
        "purchased": 0,
        "total": 0,
    }


def test_overage_stops_once_cap_is_reached(ledger: CreditLedger):
    ledger.open_account("shop-1", trial_units=0, overage_cap_amount=Decimal("1.00"))

    for _ in range(5):
        ledger.commit(ledger.reserve("shop-1"))

    with pytest.raises(InsufficientCreditsError):
        ledger.reserve("shop-1")
    assert ledger.get_balance("shop-1").overage_units_used == 5


def test_overage_allows_the_unit_that_crosses_an_uneven_cap():
    ledger = CreditLedger(repository=InMemoryLedgerRepository(), unit_price=Decimal("0.30"))
    ledger.open_account("shop-1", trial_units=0, overage_cap_amount=Decimal("1.00"))

    for _ in range(4):
        ledger.reserve("shop-1")

    with pytest.raises(InsufficientCreditsError):
        ledger.reserve("shop-1")


def test_overage_disabled_without_a_cap(ledger: CreditLedger):
    ledger.open_account("shop-1", trial_units=0)

    with pytest.raises(InsufficientCreditsError):
        ledger.reserve("shop-1")


def test_reserve_unknown_account_raises_lookup_error(ledger: CreditLedger):
    with pytest.raises(LookupError):
        ledger.reserve("missing")


def test_commit_is_idempotent(ledger: CreditLedger):
    ledger.open_account("shop-1", trial_units=2)
    reservation = ledger.reserve("shop-1")

    first = ledger.commit(reservation)
    second = ledger.commit(reservation)

    assert first.status == ReservationStatus.COMMITTED
    assert second.status == ReservationStatus.COMMITTED
    assert ledger.get_balance("shop-1").trial_units == 1
    commits = [entry for entry in ledger.list_entries("shop-1") if entry.entry_type == LedgerEntryType.COMMIT]
    assert len(commits) == 1


def test_release_restores_unit_once(ledger: CreditLedger, events: RecordingEventLogger):
    ledger.open_account("shop-1", trial_units=2)
    reservation = ledger.reserve("shop-1")

    ledger.release(reservation)
    ledger.release(reservation)

    assert ledger.get_balance("shop-1").trial_units == 2
    assert ledger.get_reservation(reservation.reservation_id).status == ReservationStatus.RELEASED
    assert events.types().count(CreditAuditEventType.RESERVATION_RELEASED) == 1


def test_release_after_commit_is_a_state_violation(ledger: CreditLedger, events: RecordingEventLogger):
    ledger.open_account("shop-1")
    reservation = ledger.commit(ledger.reserve("shop-1", request_id="req-9"))

    with pytest.raises(ReservationStateError) as exc_info:
        ledger.release(reservation)

    assert exc_info.value.request_id == "req-9"
    assert exc_info.value.payload["error"]["details"]["reservationId"] == reservation.reservation_id
    assert CreditAuditEventType.RESERVATION_STATE_VIOLATION in events.types()
    assert ledger.get_balance("shop-1").trial_units == 99


def test_commit_after_release_is_a_state_violation(ledger: CreditLedger):
    ledger.open_account("shop-1")
    reservation = ledger.reserve("shop-1")
    ledger.release(reservation)

    with pytest.raises(ReservationStateError):
        ledger.commit(reservation)
    assert ledger.get_balance("shop-1").trial_units == 100


def test_release_returns_unit_to_plan_after_reset(ledger: CreditLedger):
    ledger.open_account("shop-1", trial_units=0)
    ledger.reset_plan("shop-1", 5, reason="initialized")
    reservation = ledger.reserve("shop-1")
    ledger.reset_plan("shop-1", 0, reason="cancelled")

    ledger.release(reservation)

    assert ledger.get_balance("shop-1").plan_units == 1


def test_grant_is_idempotent_by_key(ledger: CreditLedger):
    ledger.open_account("shop-1", trial_units=0)

    first = ledger.grant("shop-1", CreditSource.PURCHASED, 50, reason="package", idempotency_key="purchase:p-1")
    second = ledger.grant("shop-1", CreditSource.PURCHASED, 50, reason="package", idempotency_key="purchase:p-1")

    assert not first.duplicate
    assert second.duplicate
    assert ledger.get_balance("shop-1").purchased_units == 50
    assert ledger.count_grants("shop-1", "purchase:") == 1


def test_grant_rejects_overage_and_non_positive_units(ledger: CreditLedger):
    ledger.open_account("shop-1")

    with pytest.raises(ValueError):
        ledger.grant("shop-1", CreditSource.OVERAGE, 1, reason="test")
    with pytest.raises(ValueError):
        ledger.grant("shop-1", CreditSource.COUPON, 0, reason="test")


def test_reset_plan_sets_absolute_units_and_period(ledger: CreditLedger):
    ledger.open_account("shop-1", trial_units=0)
    start = datetime(2025, 3, 1, tzinfo=timezone.utc)
    ledger.reset_plan("shop-1", 100, reason="initialized", plan_handle="pro-monthly", period_start=start)
    ledger.commit(ledger.reserve("shop-1"))

    ledger.reset_plan("shop-1", 100, reason="renewed", plan_handle="pro-monthly", period_start=start)

    assert ledger.get_balance("shop-1").plan_units == 100
    account = ledger.get_account("shop-1")
    assert account.plan_handle == "pro-monthly"
    assert account.period_start == start
    resets = [entry for entry in ledger.list_entries("shop-1") if entry.entry_type == LedgerEntryType.PLAN_RESET]
    assert [entry.units for entry in resets] == [100, 1]


def test_reset_overage_clears_usage_and_updates_cap(ledger: CreditLedger):
    ledger.open_account("shop-1", trial_units=0, overage_cap_amount=Decimal("1.00"))
    ledger.commit(ledger.reserve("shop-1"))

    balance = ledger.reset_overage("shop-1", cap_amount=Decimal("50.00"))

    assert balance.overage_units_used == 0
    assert balance.overage_cap_amount == Decimal("50.00")


def test_grants_minus_balance_equals_committed_deductions(ledger: CreditLedger):
    ledger.open_account("shop-1", trial_units=3)
    ledger.grant("shop-1", CreditSource.COUPON, 5, reason="coupon")
    ledger.reset_plan("shop-1", 10, reason="initialized")
    ledger.grant("shop-1", CreditSource.PURCHASED, 2, reason="package")

    for index in range(12):
        reservation = ledger.reserve("shop-1")
        if index % 3 == 0:
            ledger.release(reservation)
        else:
            ledger.commit(reservation)
    ledger.reset_plan("shop-1", 4, reason="plan_changed")

    entries = ledger.list_entries("shop-1")
    granted = sum(
        entry.units
        for entry in entries
        if entry.entry_type in (LedgerEntryType.GRANT, LedgerEntryType.PLAN_RESET)
    )
    committed = sum(1 for entry in entries if entry.entry_type == LedgerEntryType.COMMIT)
    net_reserved = sum(
        entry.units for entry in entries if entry.entry_type in (LedgerEntryType.RESERVE, LedgerEntryType.RELEASE)
    )

    assert committed == 8
    assert net_reserved == -committed
    assert granted + net_reserved == ledger.get_balance("shop-1").grant_total


def test_stale_reservations_are_released(ledger: CreditLedger, events: RecordingEventLogger, monkeypatch):
    ledger.open_account("shop-1", trial_units=2)
    stale = ledger.reserve("shop-1")
    committed = ledger.commit(ledger.reserve("shop-1"))

    assert ledger.release_stale_reservations(max_age=timedelta(minutes=30)) == 0

    later = datetime.now(timezone.utc) + timedelta(hours=1)
    monkeypatch.setattr(ledger, "_now", lambda: later)
    assert ledger.release_stale_reservations(max_age=timedelta(minutes=30)) == 1

    assert ledger.get_reservation(stale.reservation_id).status == ReservationStatus.RELEASED
    assert ledger.get_reservation(committed.reservation_id).status == ReservationStatus.COMMITTED
    assert ledger.get_balance("shop-1").trial_units == 1
    assert CreditAuditEventType.STALE_RESERVATION_RELEASED in events.types()


def test_concurrent_reserves_never_overdraw(ledger: CreditLedger):
    ledger.open_account("shop-1", trial_units=10)

    def attempt(_: int) -> bool:
        try:
            ledger.reserve("shop-1")
        except InsufficientCreditsError:
            return False
        return True

    with ThreadPoolExecutor(max_workers=20) as pool:
        outcomes = list(pool.map(attempt, range(40)))

    assert outcomes.count(True) == 10
    assert ledger.get_balance("shop-1").trial_units == 0
    assert ledger.get_balance("shop-1").version == 11
