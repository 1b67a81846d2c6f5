"""Generation package: content-addressed cache and batch orchestration."""

from .cache import (
    GenerationCache,
    GenerationCacheStore,
    GenerationTicket,
    InMemoryGenerationCacheStore,
    PostgresGenerationCacheStore,
)
from .keys import build_cache_key, normalize_garment_keys
from .models import (
    BatchItemResult,
    BatchResult,
    BatchSummary,
    CacheEntry,
    CacheOrigin,
    CacheOutcome,
    CacheStatus,
    GenerationKind,
    GenerationResult,
    ItemError,
    ItemStatus,
    SynthesisResult,
)
from .orchestrator import AssetStore, GenerationOrchestrator, SynthesisCollaborator

__all__ = [
    "AssetStore",
    "BatchItemResult",
    "BatchResult",
    "BatchSummary",
    "CacheEntry",
    "CacheOrigin",
    "CacheOutcome",
    "CacheStatus",
    "GenerationCache",
    "GenerationCacheStore",
    "GenerationKind",
    "GenerationOrchestrator",
    "GenerationResult",
    "GenerationTicket",
    "InMemoryGenerationCacheStore",
    "ItemError",
    "ItemStatus",
    "PostgresGenerationCacheStore",
    "SynthesisCollaborator",
    "SynthesisResult",
    "build_cache_key",
    "normalize_garment_keys",
]
