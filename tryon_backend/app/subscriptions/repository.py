"""Persistence for the last-synchronized subscription snapshot of each account."""
from __future__ import annotations

from decimal import Decimal
from threading import Lock
from typing import Dict, Optional, Protocol

from psycopg2.extensions import connection as PgConnection

from ..db import dict_cursor
from .models import SubscriptionSnapshot, SubscriptionStatus


class SnapshotRepository(Protocol):
    def get(self, account_id: str) -> Optional[SubscriptionSnapshot]:
        ...

    def save(self, account_id: str, snapshot: SubscriptionSnapshot) -> SubscriptionSnapshot:
        ...


class InMemorySnapshotRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._snapshots: Dict[str, SubscriptionSnapshot] = {}

    def get(self, account_id: str) -> Optional[SubscriptionSnapshot]:
        with self._lock:
            return self._snapshots.get(account_id)

    def save(self, account_id: str, snapshot: SubscriptionSnapshot) -> SubscriptionSnapshot:
        with self._lock:
            self._snapshots[account_id] = snapshot
        return snapshot


def _row_to_snapshot(row: dict) -> SubscriptionSnapshot:
    price = row.get("price_amount")
    included = row.get("included_units")
    return SubscriptionSnapshot(
        plan_handle=row.get("plan_handle"),
        status=SubscriptionStatus(row["status"]),
        period_start=row.get("period_start"),
        period_end=row.get("period_end"),
        included_units=int(included) if included is not None else None,
        subscription_id=row.get("subscription_id"),
        price_amount=Decimal(price) if price is not None else None,
        currency_code=row.get("currency_code"),
        credit_period_start=row.get("credit_period_start"),
    )


class PostgresSnapshotRepository:
    """Concrete repository persisting snapshots in PostgreSQL."""

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    def get(self, account_id: str) -> Optional[SubscriptionSnapshot]:
        with dict_cursor(self._conn) as cursor:
            cursor.execute(
                """
                SELECT *
                FROM subscription_snapshots
                WHERE account_id = %s
                LIMIT 1
                """,
                (account_id,),
            )
            row = cursor.fetchone()
            return _row_to_snapshot(row) if row else None

    def save(self, account_id: str, snapshot: SubscriptionSnapshot) -> SubscriptionSnapshot:
        with dict_cursor(self._conn) as cursor:
            cursor.execute(
                """
                INSERT INTO subscription_snapshots (
                    account_id,
                    plan_handle,
                    status,
                    period_start,
                    period_end,
                    included_units,
                    subscription_id,
                    price_amount,
                    currency_code,
                    credit_period_start
                )
                VALUES (%(account_id)s, %(plan_handle)s, %(status)s, %(period_start)s, %(period_end)s,
                        %(included_units)s, %(subscription_id)s, %(price_amount)s, %(currency_code)s,
                        %(credit_period_start)s)
                ON CONFLICT (account_id) DO UPDATE SET
                    plan_handle = EXCLUDED.plan_handle,
                    status = EXCLUDED.status,
                    period_start = EXCLUDED.period_start,
                    period_end = EXCLUDED.period_end,
                    included_units = EXCLUDED.included_units,
                    subscription_id = EXCLUDED.subscription_id,
                    price_amount = EXCLUDED.price_amount,
                    currency_code = EXCLUDED.currency_code,
                    credit_period_start = EXCLUDED.credit_period_start,
                    updated_at = NOW()
                RETURNING *
                """,
                {
                    "account_id": account_id,
                    "plan_handle": snapshot.plan_handle,
                    "status": snapshot.status.value,
                    "period_start": snapshot.period_start,
                    "period_end": snapshot.period_end,
                    "included_units": snapshot.included_units,
                    "subscription_id": snapshot.subscription_id,
                    "price_amount": snapshot.price_amount,
                    "currency_code": snapshot.currency_code,
                    "credit_period_start": snapshot.credit_period_start,
                },
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist subscription snapshot")
            return _row_to_snapshot(row)


__all__ = ["InMemorySnapshotRepository", "PostgresSnapshotRepository", "SnapshotRepository"]
