"""Generation cache with at most one concurrent computation per key.

A true miss claims the key in the store (insert-if-absent), reserves one unit
from the ledger, runs the compute function on the cache's worker pool, and
then either commits the unit and marks the entry done, or releases the unit
and evicts the entry. Every caller for that key, including the initiator,
waits on the same future.
"""
from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Callable, Dict, Optional, Protocol

from psycopg2.extensions import connection as PgConnection

from ..concurrency import KeyedLock
from ..credits.ledger import CreditLedger
from ..credits.models import Reservation
from ..db import dict_cursor
from ..errors import CacheComputationError, GenerationTimeoutError, TryOnError
from .models import CacheEntry, CacheOrigin, CacheOutcome, CacheStatus

logger = logging.getLogger(__name__)

ComputeFn = Callable[[], str]


class GenerationCacheStore(Protocol):
    """Key-value store with atomic claim semantics."""

    def get(self, cache_key: str) -> Optional[CacheEntry]:
        ...

    def insert_if_absent(self, entry: CacheEntry, *, stale_before: Optional[datetime] = None) -> bool:
        """Claim ``entry.cache_key``; an in-flight row older than ``stale_before`` may be taken over."""

    def mark_done(self, claim: CacheEntry, result_ref: str) -> Optional[CacheEntry]:
        """Complete the claim; ``None`` when another initiator took it over."""

    def evict(self, claim: CacheEntry) -> None:
        ...


class InMemoryGenerationCacheStore:
    """Thread-safe in-memory cache store for tests and local development."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._entries: Dict[str, CacheEntry] = {}

    def get(self, cache_key: str) -> Optional[CacheEntry]:
        with self._lock:
            return self._entries.get(cache_key)

    def insert_if_absent(self, entry: CacheEntry, *, stale_before: Optional[datetime] = None) -> bool:
        with self._lock:
            current = self._entries.get(entry.cache_key)
            if current is not None:
                reclaimable = (
                    stale_before is not None
                    and current.status == CacheStatus.IN_FLIGHT
                    and current.created_at < stale_before
                )
                if not reclaimable:
                    return False
            self._entries[entry.cache_key] = entry
            return True

    def mark_done(self, claim: CacheEntry, result_ref: str) -> Optional[CacheEntry]:
        with self._lock:
            current = self._entries.get(claim.cache_key)
            if current is None or current.created_at != claim.created_at or current.is_done:
                return None
            done = current.model_copy(
                update={
                    "status": CacheStatus.DONE,
                    "result_ref": result_ref,
                    "completed_at": datetime.now(timezone.utc),
                }
            )
            self._entries[claim.cache_key] = done
            return done

    def evict(self, claim: CacheEntry) -> None:
        with self._lock:
            current = self._entries.get(claim.cache_key)
            if current is not None and current.created_at == claim.created_at and not current.is_done:
                del self._entries[claim.cache_key]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def _row_to_entry(row: dict) -> CacheEntry:
    return CacheEntry(
        cache_key=row["cache_key"],
        account_id=row["account_id"],
        status=CacheStatus(row["status"]),
        result_ref=row.get("result_ref"),
        created_at=row["created_at"],
        completed_at=row.get("completed_at"),
    )


class PostgresGenerationCacheStore:
    """Cache entries shared by every worker process through PostgreSQL."""

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    def get(self, cache_key: str) -> Optional[CacheEntry]:
        with dict_cursor(self._conn) as cursor:
            cursor.execute("SELECT * FROM generation_cache WHERE cache_key = %s LIMIT 1", (cache_key,))
            row = cursor.fetchone()
            return _row_to_entry(row) if row else None

    def insert_if_absent(self, entry: CacheEntry, *, stale_before: Optional[datetime] = None) -> bool:
        with dict_cursor(self._conn) as cursor:
            cursor.execute(
                """
                INSERT INTO generation_cache (cache_key, account_id, status, result_ref, created_at, completed_at)
                VALUES (%(cache_key)s, %(account_id)s, %(status)s, NULL, %(created_at)s, NULL)
                ON CONFLICT (cache_key) DO UPDATE SET
                    account_id = EXCLUDED.account_id,
                    status = EXCLUDED.status,
                    result_ref = NULL,
                    created_at = EXCLUDED.created_at,
                    completed_at = NULL
                WHERE generation_cache.status = %(in_flight)s
                  AND generation_cache.created_at < %(stale_before)s
                RETURNING cache_key
                """,
                {
                    "cache_key": entry.cache_key,
                    "account_id": entry.account_id,
                    "status": entry.status.value,
                    "created_at": entry.created_at,
                    "in_flight": CacheStatus.IN_FLIGHT.value,
                    "stale_before": stale_before,
                },
            )
            return cursor.fetchone() is not None

    def mark_done(self, claim: CacheEntry, result_ref: str) -> Optional[CacheEntry]:
        with dict_cursor(self._conn) as cursor:
            cursor.execute(
                """
                UPDATE generation_cache
                SET status = %s, result_ref = %s, completed_at = NOW()
                WHERE cache_key = %s AND status = %s AND created_at = %s
                RETURNING *
                """,
                (
                    CacheStatus.DONE.value,
                    result_ref,
                    claim.cache_key,
                    CacheStatus.IN_FLIGHT.value,
                    claim.created_at,
                ),
            )
            row = cursor.fetchone()
            return _row_to_entry(row) if row else None

    def evict(self, claim: CacheEntry) -> None:
        with dict_cursor(self._conn) as cursor:
            cursor.execute(
                """
                DELETE FROM generation_cache
                WHERE cache_key = %s AND status = %s AND created_at = %s
                """,
                (claim.cache_key, CacheStatus.IN_FLIGHT.value, claim.created_at),
            )


@dataclass(frozen=True)
class GenerationTicket:
    """Handle returned by :meth:`GenerationCache.start`."""

    cache_key: str
    account_id: str
    origin: CacheOrigin
    compute_fn: ComputeFn
    request_id: Optional[str] = None
    outcome: Optional[CacheOutcome] = None
    future: Optional["Future[CacheOutcome]"] = None


class GenerationCache:
    """Deduplicates generations and charges at most one unit per key."""

    def __init__(
        self,
        *,
        store: GenerationCacheStore,
        ledger: CreditLedger,
        max_workers: int = 16,
        in_flight_stale_after: Optional[timedelta] = timedelta(minutes=15),
        poll_interval: float = 0.25,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.in_flight_stale_after = in_flight_stale_after
        self.poll_interval = poll_interval
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="generation")
        self._key_locks = KeyedLock()
        self._futures_lock = Lock()
        self._futures: Dict[str, "Future[CacheOutcome]"] = {}

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _stale_before(self) -> Optional[datetime]:
        if self.in_flight_stale_after is None:
            return None
        return self._now() - self.in_flight_stale_after

    def in_flight_count(self) -> int:
        with self._futures_lock:
            return len(self._futures)

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    def get_or_compute(
        self,
        cache_key: str,
        compute_fn: ComputeFn,
        *,
        account_id: str,
        request_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CacheOutcome:
        ticket = self.start(cache_key, compute_fn, account_id=account_id, request_id=request_id)
        return self.wait(ticket, timeout=timeout)

    def start(
        self,
        cache_key: str,
        compute_fn: ComputeFn,
        *,
        account_id: str,
        request_id: Optional[str] = None,
    ) -> GenerationTicket:
        """Resolve the caller's role for ``cache_key`` without blocking on the computation."""

        entry = self.store.get(cache_key)
        if entry is not None and entry.is_done and entry.result_ref:
            return self._cached_ticket(entry, compute_fn, request_id)

        with self._key_locks.hold(cache_key):
            with self._futures_lock:
                future = self._futures.get(cache_key)
            if future is not None:
                return GenerationTicket(cache_key, account_id, CacheOrigin.SHARED, compute_fn, request_id, future=future)

            entry = self.store.get(cache_key)
            if entry is not None and entry.is_done and entry.result_ref:
                return self._cached_ticket(entry, compute_fn, request_id)

            claim = CacheEntry(cache_key=cache_key, account_id=account_id, created_at=self._now())
            if not self.store.insert_if_absent(claim, stale_before=self._stale_before()):
                logger.debug("Cache key %s is being generated by another worker", cache_key)
                return GenerationTicket(cache_key, account_id, CacheOrigin.SHARED, compute_fn, request_id)

            future = Future()
            with self._futures_lock:
                self._futures[cache_key] = future
            self._executor.submit(self._compute, claim, future, compute_fn, request_id)
            return GenerationTicket(cache_key, account_id, CacheOrigin.GENERATED, compute_fn, request_id, future=future)

    def wait(self, ticket: GenerationTicket, *, timeout: Optional[float] = None) -> CacheOutcome:
        """Block until the ticket resolves; ``timeout`` detaches only this caller."""

        if ticket.outcome is not None:
            return ticket.outcome
        if ticket.future is None:
            return self._poll(ticket, timeout)

        try:
            outcome = ticket.future.result(timeout=timeout)
        except FutureTimeoutError:
            logger.info(
                "Caller detached from generation %s after %ss",
                ticket.cache_key,
                timeout,
                extra={"request_id": ticket.request_id},
            )
            raise GenerationTimeoutError(cache_key=ticket.cache_key, request_id=ticket.request_id) from None
        except TryOnError as exc:
            raise replace(exc, request_id=ticket.request_id or exc.request_id) from exc

        if ticket.origin == CacheOrigin.GENERATED:
            return outcome
        return outcome.model_copy(update={"origin": CacheOrigin.SHARED, "units_charged": 0, "reservation_id": None})

    def _cached_ticket(self, entry: CacheEntry, compute_fn: ComputeFn, request_id: Optional[str]) -> GenerationTicket:
        outcome = CacheOutcome(cache_key=entry.cache_key, result_ref=entry.result_ref or "", origin=CacheOrigin.CACHED)
        return GenerationTicket(entry.cache_key, entry.account_id, CacheOrigin.CACHED, compute_fn, request_id, outcome=outcome)

    def _poll(self, ticket: GenerationTicket, timeout: Optional[float]) -> CacheOutcome:
        """Wait for an entry owned by another process to complete or disappear."""

        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            entry = self.store.get(ticket.cache_key)
            stale_before = self._stale_before()
            abandoned = (
                entry is not None
                and not entry.is_done
                and stale_before is not None
                and entry.created_at < stale_before
            )
            if entry is None or abandoned:
                remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
                return self.get_or_compute(
                    ticket.cache_key,
                    ticket.compute_fn,
                    account_id=ticket.account_id,
                    request_id=ticket.request_id,
                    timeout=remaining,
                )
            if entry.is_done and entry.result_ref:
                return CacheOutcome(cache_key=entry.cache_key, result_ref=entry.result_ref, origin=CacheOrigin.SHARED)
            if deadline is not None and time.monotonic() >= deadline:
                raise GenerationTimeoutError(cache_key=ticket.cache_key, request_id=ticket.request_id)
            time.sleep(self.poll_interval)

    def _compute(
        self,
        claim: CacheEntry,
        future: "Future[CacheOutcome]",
        compute_fn: ComputeFn,
        request_id: Optional[str],
    ) -> None:
        reservation: Optional[Reservation] = None
        try:
            reservation = self.ledger.reserve(claim.account_id, request_id=request_id, cache_key=claim.cache_key)
            try:
                result_ref = compute_fn()
            except CacheComputationError:
                raise
            except Exception as exc:
                raise CacheComputationError(cache_key=claim.cache_key, cause=exc, request_id=request_id) from exc

            if self.store.mark_done(claim, result_ref) is None:
                # The reclaiming initiator charges for this key.
                logger.warning("Generation %s was reclaimed before it completed", claim.cache_key)
                self.ledger.release(reservation, reason="reclaimed")
                outcome = CacheOutcome(cache_key=claim.cache_key, result_ref=result_ref, origin=CacheOrigin.GENERATED)
                self._settle(claim.cache_key, future, outcome=outcome)
                return

            reservation = self.ledger.commit(reservation)
            outcome = CacheOutcome(
                cache_key=claim.cache_key,
                result_ref=result_ref,
                origin=CacheOrigin.GENERATED,
                units_charged=1,
                reservation_id=reservation.reservation_id,
            )
        except Exception as exc:
            self._abandon(claim, reservation, exc)
            self._settle(claim.cache_key, future, exception=exc)
            return
        self._settle(claim.cache_key, future, outcome=outcome)

    def _abandon(self, claim: CacheEntry, reservation: Optional[Reservation], exc: Exception) -> None:
        try:
            self.store.evict(claim)
        except Exception:
            logger.exception("Failed to evict cache entry %s", claim.cache_key)

        if reservation is not None and reservation.is_held:
            try:
                self.ledger.release(reservation, reason=getattr(exc, "code", type(exc).__name__))
            except Exception:
                logger.exception("Failed to release reservation %s", reservation.reservation_id)

        log = logger.info if isinstance(exc, TryOnError) and exc.status_code < 500 else logger.warning
        log(
            "Generation %s failed: %s",
            claim.cache_key,
            exc,
            extra={"account_id": claim.account_id},
        )

    def _settle(
        self,
        cache_key: str,
        future: "Future[CacheOutcome]",
        *,
        outcome: Optional[CacheOutcome] = None,
        exception: Optional[BaseException] = None,
    ) -> None:
        with self._futures_lock:
            if self._futures.get(cache_key) is future:
                del self._futures[cache_key]
        if exception is not None:
            future.set_exception(exception)
        else:
            future.set_result(outcome)


__all__ = [
    "ComputeFn",
    "GenerationCache",
    "GenerationCacheStore",
    "GenerationTicket",
    "InMemoryGenerationCacheStore",
    "PostgresGenerationCacheStore",
]
