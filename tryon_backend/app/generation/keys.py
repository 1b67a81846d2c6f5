"""Content-addressed cache keys for generation requests."""
from __future__ import annotations

import hashlib
import json
from typing import Iterable, List

from .models import GenerationKind


def normalize_garment_keys(garment_keys: Iterable[str]) -> List[str]:
    """Trim, drop blanks, de-duplicate and sort garment identifiers."""

    normalized = {str(key).strip() for key in garment_keys}
    normalized.discard("")
    return sorted(normalized)


def build_cache_key(
    account_id: str,
    subject_key: str,
    garment_keys: Iterable[str],
    kind: GenerationKind = GenerationKind.SINGLE,
) -> str:
    """SHA-256 over a canonical JSON document; garment order never matters."""

    subject = (subject_key or "").strip()
    if not subject:
        raise ValueError("subject_key is required")
    garments = normalize_garment_keys(garment_keys)
    if not garments:
        raise ValueError("At least one garment key is required")

    document = {
        "account": account_id,
        "kind": GenerationKind(kind).value,
        "subject": subject,
        "garments": garments,
    }
    canonical = json.dumps(document, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


__all__ = ["build_cache_key", "normalize_garment_keys"]
