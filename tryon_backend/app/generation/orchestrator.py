"""Single, batch and combined generation flows on top of the cache."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from threading import BoundedSemaphore
from typing import List, Optional, Protocol, Sequence, Union
from uuid import uuid4

from ..errors import TryOnError
from .cache import ComputeFn, GenerationCache, GenerationTicket
from .keys import build_cache_key, normalize_garment_keys
from .models import (
    BatchItemResult,
    BatchResult,
    BatchSummary,
    GenerationKind,
    GenerationResult,
    ItemError,
    ItemStatus,
    SynthesisResult,
)

logger = logging.getLogger(__name__)


class SynthesisCollaborator(Protocol):
    """External generative model. Never retried automatically."""

    def synthesize(self, subject_asset: bytes, garment_assets: Sequence[bytes]) -> SynthesisResult:
        ...


class AssetStore(Protocol):
    """Persists and loads binary assets by opaque reference."""

    def load(self, ref: str) -> bytes:
        ...

    def save(self, data: bytes, *, content_type: str) -> str:
        ...


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


@dataclass
class GenerationOrchestrator:
    """Fans generation requests out over the cache with bounded synthesis concurrency."""

    cache: GenerationCache
    synthesizer: SynthesisCollaborator
    assets: AssetStore
    max_concurrency: int = 5
    batch_max_items: int = 6
    combined_min_items: int = 2
    combined_max_items: int = 8
    wait_timeout: Optional[float] = None
    _slots: BoundedSemaphore = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self._slots = BoundedSemaphore(self.max_concurrency)

    def _compute_fn(self, subject_key: str, garment_keys: Sequence[str]) -> ComputeFn:
        def compute() -> str:
            subject_asset = self.assets.load(subject_key)
            garment_assets = [self.assets.load(key) for key in garment_keys]
            with self._slots:
                result = self.synthesizer.synthesize(subject_asset, garment_assets)
            logger.debug("Synthesis finished in %sms", result.duration_ms)
            return self.assets.save(result.asset, content_type=result.content_type)

        return compute

    def _start(
        self,
        account_id: str,
        subject_key: str,
        garment_keys: Sequence[str],
        kind: GenerationKind,
        request_id: str,
    ) -> GenerationTicket:
        cache_key = build_cache_key(account_id, subject_key, garment_keys, kind)
        return self.cache.start(
            cache_key,
            self._compute_fn(subject_key.strip(), normalize_garment_keys(garment_keys)),
            account_id=account_id,
            request_id=request_id,
        )

    def generate_single(
        self,
        account_id: str,
        subject_key: str,
        garment_key: str,
        *,
        request_id: Optional[str] = None,
    ) -> GenerationResult:
        request_id = request_id or uuid4().hex
        started = time.monotonic()
        ticket = self._start(account_id, subject_key, [garment_key], GenerationKind.SINGLE, request_id)
        outcome = self.cache.wait(ticket, timeout=self.wait_timeout)
        return GenerationResult(
            account_id=account_id,
            cache_key=outcome.cache_key,
            subject_key=subject_key,
            garment_keys=[garment_key],
            kind=GenerationKind.SINGLE,
            result_ref=outcome.result_ref,
            cached=outcome.cached,
            units_charged=outcome.units_charged,
            duration_ms=_elapsed_ms(started),
            request_id=request_id,
        )

    def generate_batch(
        self,
        account_id: str,
        subject_key: str,
        garment_keys: Sequence[str],
        *,
        request_id: Optional[str] = None,
    ) -> BatchResult:
        """One independent generation per garment; failures stay with their item."""

        if not 1 <= len(garment_keys) <= self.batch_max_items:
            raise ValueError(f"A batch must contain between 1 and {self.batch_max_items} garments")
        if not (subject_key or "").strip():
            raise ValueError("subject_key is required")

        request_id = request_id or uuid4().hex
        started = time.monotonic()
        deadline = None if self.wait_timeout is None else started + self.wait_timeout

        tickets: List[Union[GenerationTicket, Exception]] = []
        for garment_key in garment_keys:
            try:
                tickets.append(self._start(account_id, subject_key, [garment_key], GenerationKind.SINGLE, request_id))
            except Exception as exc:
                tickets.append(exc)

        items: List[BatchItemResult] = []
        for index, (garment_key, ticket) in enumerate(zip(garment_keys, tickets)):
            item_started = time.monotonic()
            if isinstance(ticket, Exception):
                items.append(self._failed_item(index, garment_key, ticket, request_id))
                continue
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            try:
                outcome = self.cache.wait(ticket, timeout=remaining)
            except Exception as exc:
                items.append(self._failed_item(index, garment_key, exc, request_id, cache_key=ticket.cache_key))
                continue
            items.append(
                BatchItemResult(
                    index=index,
                    garment_key=garment_key,
                    status=ItemStatus.SUCCESS,
                    cache_key=outcome.cache_key,
                    result_ref=outcome.result_ref,
                    cached=outcome.cached,
                    units_charged=outcome.units_charged,
                    duration_ms=_elapsed_ms(item_started),
                )
            )

        successful = [item for item in items if item.status == ItemStatus.SUCCESS]
        summary = BatchSummary(
            total=len(items),
            successful=len(successful),
            failed=len(items) - len(successful),
            cached=sum(1 for item in successful if item.cached),
            generated=sum(1 for item in successful if not item.cached),
            units_charged=sum(item.units_charged for item in successful),
            duration_ms=_elapsed_ms(started),
        )
        logger.info(
            "Batch generation finished: %s/%s successful, %s units charged",
            summary.successful,
            summary.total,
            summary.units_charged,
            extra={"account_id": account_id, "request_id": request_id},
        )
        return BatchResult(
            account_id=account_id,
            subject_key=subject_key,
            items=items,
            summary=summary,
            request_id=request_id,
        )

    def _failed_item(
        self,
        index: int,
        garment_key: str,
        exc: Exception,
        request_id: str,
        *,
        cache_key: Optional[str] = None,
    ) -> BatchItemResult:
        if isinstance(exc, TryOnError):
            error = ItemError(code=exc.code, message=exc.message)
        elif isinstance(exc, ValueError):
            error = ItemError(code="invalid_request", message=str(exc))
        else:
            logger.exception(
                "Unexpected failure for batch item %s",
                index,
                exc_info=exc,
                extra={"request_id": request_id},
            )
            error = ItemError(code="generation_failed", message="The image could not be generated.")
        return BatchItemResult(
            index=index,
            garment_key=garment_key,
            status=ItemStatus.ERROR,
            cache_key=cache_key,
            error=error,
        )

    def generate_combined(
        self,
        account_id: str,
        subject_key: str,
        garment_keys: Sequence[str],
        *,
        request_id: Optional[str] = None,
    ) -> GenerationResult:
        """One composite outfit for the whole set; succeeds or fails as a unit."""

        garments = normalize_garment_keys(garment_keys)
        if not self.combined_min_items <= len(garments) <= self.combined_max_items:
            raise ValueError(
                f"A combined outfit needs between {self.combined_min_items} and "
                f"{self.combined_max_items} distinct garments"
            )

        request_id = request_id or uuid4().hex
        started = time.monotonic()
        ticket = self._start(account_id, subject_key, garments, GenerationKind.COMBINED, request_id)
        outcome = self.cache.wait(ticket, timeout=self.wait_timeout)
        return GenerationResult(
            account_id=account_id,
            cache_key=outcome.cache_key,
            subject_key=subject_key,
            garment_keys=garments,
            kind=GenerationKind.COMBINED,
            result_ref=outcome.result_ref,
            cached=outcome.cached,
            units_charged=outcome.units_charged,
            duration_ms=_elapsed_ms(started),
            request_id=request_id,
        )


__all__ = ["AssetStore", "GenerationOrchestrator", "SynthesisCollaborator"]
