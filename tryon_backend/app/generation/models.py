"""Domain models for cached try-on generations."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class GenerationKind(str, Enum):
    SINGLE = "single"
    COMBINED = "combined"


class CacheStatus(str, Enum):
    """Cache entry states. Failed entries are evicted instead of stored."""

    IN_FLIGHT = "in_flight"
    DONE = "done"
    FAILED = "failed"


class CacheOrigin(str, Enum):
    """How a caller obtained its result."""

    CACHED = "cached"
    SHARED = "shared"
    GENERATED = "generated"


class CacheEntry(BaseModel):
    cache_key: str
    account_id: str
    status: CacheStatus = CacheStatus.IN_FLIGHT
    result_ref: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def is_done(self) -> bool:
        return self.status == CacheStatus.DONE


class CacheOutcome(BaseModel):
    """Result handed to every caller of ``get_or_compute``."""

    cache_key: str
    result_ref: str
    origin: CacheOrigin
    units_charged: int = Field(default=0, ge=0, le=1)
    reservation_id: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def cached(self) -> bool:
        return self.origin != CacheOrigin.GENERATED


class SynthesisResult(BaseModel):
    """Output of one synthesis collaborator call."""

    asset: bytes
    content_type: str = "image/jpeg"
    duration_ms: int = Field(default=0, ge=0)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class GenerationResult(BaseModel):
    """A single-garment or combined-outfit result."""

    account_id: str
    cache_key: str
    subject_key: str
    garment_keys: List[str]
    kind: GenerationKind
    result_ref: str
    cached: bool
    units_charged: int
    duration_ms: int
    request_id: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ItemStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


class ItemError(BaseModel):
    code: str
    message: str

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class BatchItemResult(BaseModel):
    """Per-garment outcome inside a batch, in input order."""

    index: int
    garment_key: str
    status: ItemStatus
    cache_key: Optional[str] = None
    result_ref: Optional[str] = None
    cached: bool = False
    units_charged: int = 0
    duration_ms: int = 0
    error: Optional[ItemError] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class BatchSummary(BaseModel):
    total: int
    successful: int
    failed: int
    cached: int
    generated: int
    units_charged: int
    duration_ms: int

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class BatchResult(BaseModel):
    account_id: str
    subject_key: str
    items: List[BatchItemResult]
    summary: BatchSummary
    request_id: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


__all__ = [
    "BatchItemResult",
    "BatchResult",
    "BatchSummary",
    "CacheEntry",
    "CacheOrigin",
    "CacheOutcome",
    "CacheStatus",
    "GenerationKind",
    "GenerationResult",
    "ItemError",
    "ItemStatus",
    "SynthesisResult",
]
