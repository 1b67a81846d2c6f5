"""Persistence layer for credit ledger domain objects."""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from threading import Lock
from typing import Dict, Iterator, List, Optional, Sequence, Set

import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from ..concurrency import KeyedLock
from ..db import dict_cursor, managed_connection
from .models import (
    Account,
    CreditBalance,
    CreditSource,
    LedgerEntry,
    LedgerEntryType,
    Reservation,
    ReservationStatus,
)


class _InMemoryLedgerTransaction:
    """Stages writes for one account until the transaction block exits."""

    def __init__(self, store: "InMemoryLedgerRepository", account_id: str) -> None:
        self._store = store
        self._account_id = account_id
        self._account: Optional[Account] = None
        self._balance: Optional[CreditBalance] = None
        self._reservations: Dict[str, Reservation] = {}
        self._entries: List[LedgerEntry] = []
        self._keys: Set[str] = set()

    def get_account(self) -> Optional[Account]:
        if self._account is not None:
            return self._account
        return self._store.get_account(self._account_id)

    def save_account(self, account: Account) -> Account:
        self._account = account
        return account

    def get_balance(self) -> Optional[CreditBalance]:
        if self._balance is not None:
            return self._balance
        return self._store.get_balance(self._account_id)

    def save_balance(self, balance: CreditBalance) -> CreditBalance:
        if balance.account_id != self._account_id:
            raise ValueError("Balance belongs to a different account")
        self._balance = balance
        return balance

    def get_reservation(self, reservation_id: str) -> Optional[Reservation]:
        staged = self._reservations.get(reservation_id)
        if staged is not None:
            return staged
        return self._store.get_reservation(reservation_id)

    def save_reservation(self, reservation: Reservation) -> Reservation:
        self._reservations[reservation.reservation_id] = reservation
        return reservation

    def append_entry(self, entry: LedgerEntry) -> LedgerEntry:
        if entry.idempotency_key:
            if self.has_idempotency_key(entry.idempotency_key):
                raise ValueError(f"Duplicate idempotency key: {entry.idempotency_key}")
            self._keys.add(entry.idempotency_key)
        self._entries.append(entry)
        return entry

    def has_idempotency_key(self, key: str) -> bool:
        return key in self._keys or self._store._has_key(key)

    def count_idempotency_keys(self, prefix: str) -> int:
        staged = sum(1 for key in self._keys if key.startswith(prefix))
        return staged + self._store._count_keys(prefix)

    def apply(self) -> None:
        self._store._apply(self)


class InMemoryLedgerRepository:
    """Thread-safe in-memory ledger store for tests and local development."""

    def __init__(self) -> None:
        self._account_locks = KeyedLock()
        self._data_lock = Lock()
        self._accounts: Dict[str, Account] = {}
        self._balances: Dict[str, CreditBalance] = {}
        self._reservations: Dict[str, Reservation] = {}
        self._entries: Dict[str, List[LedgerEntry]] = {}
        self._idempotency_keys: Set[str] = set()

    @contextmanager
    def transaction(self, account_id: str) -> Iterator[_InMemoryLedgerTransaction]:
        with self._account_locks.hold(account_id):
            tx = _InMemoryLedgerTransaction(self, account_id)
            yield tx
            tx.apply()

    def _apply(self, tx: _InMemoryLedgerTransaction) -> None:
        with self._data_lock:
            if tx._account is not None:
                self._accounts[tx._account.account_id] = tx._account
            if tx._balance is not None:
                self._balances[tx._balance.account_id] = tx._balance
            self._reservations.update(tx._reservations)
            for entry in tx._entries:
                self._entries.setdefault(entry.account_id, []).append(entry)
            self._idempotency_keys.update(tx._keys)

    def _has_key(self, key: str) -> bool:
        with self._data_lock:
            return key in self._idempotency_keys

    def _count_keys(self, prefix: str) -> int:
        with self._data_lock:
            return sum(1 for key in self._idempotency_keys if key.startswith(prefix))

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            return self._accounts.get(account_id)

    def get_balance(self, account_id: str) -> Optional[CreditBalance]:
        with self._data_lock:
            return self._balances.get(account_id)

    def get_reservation(self, reservation_id: str) -> Optional[Reservation]:
        with self._data_lock:
            return self._reservations.get(reservation_id)

    def list_entries(self, account_id: str) -> Sequence[LedgerEntry]:
        with self._data_lock:
            return list(self._entries.get(account_id, []))

    def list_held_reservations(self, *, created_before: datetime) -> Sequence[Reservation]:
        with self._data_lock:
            return [
                reservation
                for reservation in self._reservations.values()
                if reservation.is_held and reservation.created_at < created_before
            ]


def _row_to_account(row: dict) -> Account:
    return Account(
        account_id=row["account_id"],
        plan_handle=row.get("plan_handle"),
        period_start=row.get("period_start"),
        period_end=row.get("period_end"),
        installed_at=row["installed_at"],
    )


def _row_to_balance(row: dict) -> CreditBalance:
    return CreditBalance(
        account_id=row["account_id"],
        trial_units=int(row["trial_units"]),
        coupon_units=int(row["coupon_units"]),
        plan_units=int(row["plan_units"]),
        purchased_units=int(row["purchased_units"]),
        overage_units_used=int(row["overage_units_used"]),
        overage_cap_amount=Decimal(row["overage_cap_amount"]),
        version=int(row["version"]),
        updated_at=row["updated_at"],
    )


def _row_to_reservation(row: dict) -> Reservation:
    return Reservation(
        reservation_id=row["reservation_id"],
        account_id=row["account_id"],
        source=CreditSource(row["source"]),
        status=ReservationStatus(row["status"]),
        request_id=row.get("request_id"),
        cache_key=row.get("cache_key"),
        created_at=row["created_at"],
        resolved_at=row.get("resolved_at"),
    )


def _row_to_entry(row: dict) -> LedgerEntry:
    source = row.get("source")
    return LedgerEntry(
        entry_id=row["entry_id"],
        account_id=row["account_id"],
        entry_type=LedgerEntryType(row["entry_type"]),
        source=CreditSource(source) if source else None,
        units=int(row["units"]),
        reservation_id=row.get("reservation_id"),
        idempotency_key=row.get("idempotency_key"),
        metadata=row.get("metadata") or {},
        occurred_at=row["occurred_at"],
    )


class _PostgresLedgerTransaction:
    """Statements executed inside one database transaction holding the account lock."""

    def __init__(self, cursor: PgCursor, account_id: str) -> None:
        self._cursor = cursor
        self._account_id = account_id

    def get_account(self) -> Optional[Account]:
        self._cursor.execute(
            """
            SELECT *
            FROM credit_accounts
            WHERE account_id = %s
            LIMIT 1
            """,
            (self._account_id,),
        )
        row = self._cursor.fetchone()
        return _row_to_account(row) if row else None

    def save_account(self, account: Account) -> Account:
        self._cursor.execute(
            """
            INSERT INTO credit_accounts (account_id, plan_handle, period_start, period_end, installed_at)
            VALUES (%(account_id)s, %(plan_handle)s, %(period_start)s, %(period_end)s, %(installed_at)s)
            ON CONFLICT (account_id) DO UPDATE SET
                plan_handle = EXCLUDED.plan_handle,
                period_start = EXCLUDED.period_start,
                period_end = EXCLUDED.period_end
            RETURNING *
            """,
            {
                "account_id": account.account_id,
                "plan_handle": account.plan_handle,
                "period_start": account.period_start,
                "period_end": account.period_end,
                "installed_at": account.installed_at,
            },
        )
        row = self._cursor.fetchone()
        if not row:
            raise RuntimeError("Failed to persist credit account")
        return _row_to_account(row)

    def get_balance(self) -> Optional[CreditBalance]:
        self._cursor.execute(
            """
            SELECT *
            FROM credit_balances
            WHERE account_id = %s
            FOR UPDATE
            """,
            (self._account_id,),
        )
        row = self._cursor.fetchone()
        return _row_to_balance(row) if row else None

    def save_balance(self, balance: CreditBalance) -> CreditBalance:
        self._cursor.execute(
            """
            INSERT INTO credit_balances (
                account_id,
                trial_units,
                coupon_units,
                plan_units,
                purchased_units,
                overage_units_used,
                overage_cap_amount,
                version,
                updated_at
            )
            VALUES (%(account_id)s, %(trial_units)s, %(coupon_units)s, %(plan_units)s,
                    %(purchased_units)s, %(overage_units_used)s, %(overage_cap_amount)s,
                    %(version)s, %(updated_at)s)
            ON CONFLICT (account_id) DO UPDATE SET
                trial_units = EXCLUDED.trial_units,
                coupon_units = EXCLUDED.coupon_units,
                plan_units = EXCLUDED.plan_units,
                purchased_units = EXCLUDED.purchased_units,
                overage_units_used = EXCLUDED.overage_units_used,
                overage_cap_amount = EXCLUDED.overage_cap_amount,
                version = EXCLUDED.version,
                updated_at = EXCLUDED.updated_at
            WHERE credit_balances.version < EXCLUDED.version
            RETURNING *
            """,
            {
                "account_id": balance.account_id,
                "trial_units": balance.trial_units,
                "coupon_units": balance.coupon_units,
                "plan_units": balance.plan_units,
                "purchased_units": balance.purchased_units,
                "overage_units_used": balance.overage_units_used,
                "overage_cap_amount": balance.overage_cap_amount,
                "version": balance.version,
                "updated_at": balance.updated_at,
            },
        )
        row = self._cursor.fetchone()
        if not row:
            raise RuntimeError(f"Stale balance write for {balance.account_id} at version {balance.version}")
        return _row_to_balance(row)

    def get_reservation(self, reservation_id: str) -> Optional[Reservation]:
        self._cursor.execute(
            """
            SELECT *
            FROM credit_reservations
            WHERE reservation_id = %s AND account_id = %s
            FOR UPDATE
            """,
            (reservation_id, self._account_id),
        )
        row = self._cursor.fetchone()
        return _row_to_reservation(row) if row else None

    def save_reservation(self, reservation: Reservation) -> Reservation:
        self._cursor.execute(
            """
            INSERT INTO credit_reservations (
                reservation_id,
                account_id,
                source,
                status,
                request_id,
                cache_key,
                created_at,
                resolved_at
            )
            VALUES (%(reservation_id)s, %(account_id)s, %(source)s, %(status)s,
                    %(request_id)s, %(cache_key)s, %(created_at)s, %(resolved_at)s)
            ON CONFLICT (reservation_id) DO UPDATE SET
                status = EXCLUDED.status,
                resolved_at = EXCLUDED.resolved_at
            RETURNING *
            """,
            {
                "reservation_id": reservation.reservation_id,
                "account_id": reservation.account_id,
                "source": reservation.source.value,
                "status": reservation.status.value,
                "request_id": reservation.request_id,
                "cache_key": reservation.cache_key,
                "created_at": reservation.created_at,
                "resolved_at": reservation.resolved_at,
            },
        )
        row = self._cursor.fetchone()
        if not row:
            raise RuntimeError("Failed to persist reservation")
        return _row_to_reservation(row)

    def append_entry(self, entry: LedgerEntry) -> LedgerEntry:
        self._cursor.execute(
            """
            INSERT INTO credit_ledger_entries (
                entry_id,
                account_id,
                entry_type,
                source,
                units,
                reservation_id,
                idempotency_key,
                metadata,
                occurred_at
            )
            VALUES (%(entry_id)s, %(account_id)s, %(entry_type)s, %(source)s, %(units)s,
                    %(reservation_id)s, %(idempotency_key)s, %(metadata)s, %(occurred_at)s)
            RETURNING *
            """,
            {
                "entry_id": entry.entry_id,
                "account_id": entry.account_id,
                "entry_type": entry.entry_type.value,
                "source": entry.source.value if entry.source else None,
                "units": entry.units,
                "reservation_id": entry.reservation_id,
                "idempotency_key": entry.idempotency_key,
                "metadata": psycopg2.extras.Json(entry.metadata),
                "occurred_at": entry.occurred_at,
            },
        )
        row = self._cursor.fetchone()
        if not row:
            raise RuntimeError("Failed to append ledger entry")
        return _row_to_entry(row)

    def has_idempotency_key(self, key: str) -> bool:
        self._cursor.execute(
            "SELECT 1 FROM credit_ledger_entries WHERE idempotency_key = %s LIMIT 1",
            (key,),
        )
        return self._cursor.fetchone() is not None

    def count_idempotency_keys(self, prefix: str) -> int:
        self._cursor.execute(
            """
            SELECT COUNT(*) AS total
            FROM credit_ledger_entries
            WHERE account_id = %s AND idempotency_key LIKE %s
            """,
            (self._account_id, prefix.replace("%", r"\%").replace("_", r"\_") + "%"),
        )
        row = self._cursor.fetchone()
        return int(row["total"]) if row else 0


class PostgresLedgerRepository:
    """Concrete repository persisting the credit ledger in PostgreSQL.

    Each transaction takes a transaction-scoped advisory lock on the account
    so that callers racing on an account that has no balance row yet are
    serialized as well; existing rows are additionally locked ``FOR UPDATE``.
    """

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def transaction(self, account_id: str) -> Iterator[_PostgresLedgerTransaction]:
        with managed_connection(self._conn) as (connection, _managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                cursor.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (f"credits:{account_id}",))
                yield _PostgresLedgerTransaction(cursor, account_id)
            finally:
                cursor.close()

    def get_account(self, account_id: str) -> Optional[Account]:
        with dict_cursor(self._conn) as cursor:
            cursor.execute("SELECT * FROM credit_accounts WHERE account_id = %s LIMIT 1", (account_id,))
            row = cursor.fetchone()
            return _row_to_account(row) if row else None

    def get_balance(self, account_id: str) -> Optional[CreditBalance]:
        with dict_cursor(self._conn) as cursor:
            cursor.execute("SELECT * FROM credit_balances WHERE account_id = %s LIMIT 1", (account_id,))
            row = cursor.fetchone()
            return _row_to_balance(row) if row else None

    def get_reservation(self, reservation_id: str) -> Optional[Reservation]:
        with dict_cursor(self._conn) as cursor:
            cursor.execute(
                "SELECT * FROM credit_reservations WHERE reservation_id = %s LIMIT 1",
                (reservation_id,),
            )
            row = cursor.fetchone()
            return _row_to_reservation(row) if row else None

    def list_entries(self, account_id: str) -> List[LedgerEntry]:
        with dict_cursor(self._conn) as cursor:
            cursor.execute(
                """
                SELECT *
                FROM credit_ledger_entries
                WHERE account_id = %s
                ORDER BY occurred_at ASC, entry_id ASC
                """,
                (account_id,),
            )
            rows = cursor.fetchall() or []
            return [_row_to_entry(row) for row in rows]

    def list_held_reservations(self, *, created_before: datetime) -> List[Reservation]:
        with dict_cursor(self._conn) as cursor:
            cursor.execute(
                """
                SELECT *
                FROM credit_reservations
                WHERE status = %s AND created_at < %s
                ORDER BY created_at ASC
                """,
                (ReservationStatus.HELD.value, created_before),
            )
            rows = cursor.fetchall() or []
            return [_row_to_reservation(row) for row in rows]


__all__ = ["InMemoryLedgerRepository", "PostgresLedgerRepository"]
