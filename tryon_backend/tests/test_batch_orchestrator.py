"""Tests for single, batch and combined generation flows."""
from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from typing import Dict, Iterator, List, Sequence, Set

import pytest

from tryon_backend.app.credits import CreditLedger, InMemoryLedgerRepository, LedgerEntryType
from tryon_backend.app.errors import CacheComputationError
from tryon_backend.app.generation import (
    GenerationCache,
    GenerationKind,
    GenerationOrchestrator,
    InMemoryGenerationCacheStore,
    ItemStatus,
    SynthesisResult,
)
from tryon_backend.app.generation.orchestrator import AssetStore, SynthesisCollaborator


class FakeAssetStore(AssetStore):
    def __init__(self) -> None:
        self.saved: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def load(self, ref: str) -> bytes:
        if ref.startswith("missing"):
            raise LookupError(f"Unknown asset: {ref}")
        return ref.encode("utf-8")

    def save(self, data: bytes, *, content_type: str) -> str:
        with self._lock:
            ref = f"results/{len(self.saved)}.jpg"
            self.saved[ref] = data
        return ref


class FakeSynthesizer(SynthesisCollaborator):
    def __init__(self, *, failing: Set[str] = frozenset(), delay: float = 0.0) -> None:
        self.failing = set(failing)
        self.delay = delay
        self.calls: List[List[str]] = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def synthesize(self, subject_asset: bytes, garment_assets: Sequence[bytes]) -> SynthesisResult:
        garments = [asset.decode("utf-8") for asset in garment_assets]
        with self._lock:
            self.calls.append(garments)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            if self.failing.intersection(garments):
                raise RuntimeError(f"model rejected {garments}")
            return SynthesisResult(asset=subject_asset + b"+" + b"+".join(garment_assets), duration_ms=5)
        finally:
            with self._lock:
                self.active -= 1


@pytest.fixture()
def ledger() -> CreditLedger:
    ledger = CreditLedger(repository=InMemoryLedgerRepository(), unit_price=Decimal("0.20"))
    ledger.open_account("shop-1", trial_units=100)
    return ledger


@pytest.fixture()
def cache(ledger: CreditLedger) -> Iterator[GenerationCache]:
    cache = GenerationCache(store=InMemoryGenerationCacheStore(), ledger=ledger, max_workers=16)
    yield cache
    cache.close()


def _orchestrator(cache: GenerationCache, synthesizer: FakeSynthesizer, **kwargs) -> GenerationOrchestrator:
    return GenerationOrchestrator(cache=cache, synthesizer=synthesizer, assets=FakeAssetStore(), **kwargs)


def _count(ledger: CreditLedger, entry_type: LedgerEntryType) -> int:
    return sum(1 for entry in ledger.list_entries("shop-1") if entry.entry_type == entry_type)


def test_generate_single_charges_once_then_serves_cache(cache: GenerationCache, ledger: CreditLedger):
    synthesizer = FakeSynthesizer()
    orchestrator = _orchestrator(cache, synthesizer)

    first = orchestrator.generate_single("shop-1", "subject-1", "dress-1", request_id="req-1")
    second = orchestrator.generate_single("shop-1", "subject-1", "dress-1")

    assert first.kind == GenerationKind.SINGLE
    assert first.request_id == "req-1"
    assert first.units_charged == 1
    assert not first.cached
    assert second.cached
    assert second.units_charged == 0
    assert second.result_ref == first.result_ref
    assert second.request_id
    assert synthesizer.calls == [["dress-1"]]
    assert ledger.get_balance("shop-1").trial_units == 99


def test_generate_single_failure_is_not_charged(cache: GenerationCache, ledger: CreditLedger):
    orchestrator = _orchestrator(cache, FakeSynthesizer(failing={"dress-1"}))

    with pytest.raises(CacheComputationError) as exc_info:
        orchestrator.generate_single("shop-1", "subject-1", "dress-1", request_id="req-7")

    assert exc_info.value.request_id == "req-7"
    assert ledger.get_balance("shop-1").trial_units == 100


def test_batch_refunds_failed_items_only(cache: GenerationCache, ledger: CreditLedger):
    garments = ["g1", "g2", "g3", "g4", "g5", "g6"]
    orchestrator = _orchestrator(cache, FakeSynthesizer(failing={"g2", "g5"}))

    result = orchestrator.generate_batch("shop-1", "subject-1", garments, request_id="req-batch")

    assert [item.index for item in result.items] == [0, 1, 2, 3, 4, 5]
    assert [item.garment_key for item in result.items] == garments
    failed = [item for item in result.items if item.status == ItemStatus.ERROR]
    assert [item.garment_key for item in failed] == ["g2", "g5"]
    assert {item.error.code for item in failed} == {"generation_failed"}
    assert result.summary.successful == 4
    assert result.summary.failed == 2
    assert result.summary.generated == 4
    assert result.summary.units_charged == 4
    assert result.request_id == "req-batch"
    assert _count(ledger, LedgerEntryType.COMMIT) == 4
    assert _count(ledger, LedgerEntryType.RELEASE) == 2
    assert ledger.get_balance("shop-1").trial_units == 96


def test_batch_respects_concurrency_cap(cache: GenerationCache):
    synthesizer = FakeSynthesizer(delay=0.05)
    orchestrator = _orchestrator(cache, synthesizer, max_concurrency=5)

    def run(subject: str):
        return orchestrator.generate_batch("shop-1", subject, ["g1", "g2", "g3", "g4", "g5", "g6"])

    with ThreadPoolExecutor(max_workers=2) as pool:
        results = list(pool.map(run, ["subject-1", "subject-2"]))

    assert all(result.summary.successful == 6 for result in results)
    assert len(synthesizer.calls) == 12
    assert 1 <= synthesizer.max_active <= 5


def test_batch_with_repeated_garment_charges_once(cache: GenerationCache, ledger: CreditLedger):
    synthesizer = FakeSynthesizer(delay=0.02)
    orchestrator = _orchestrator(cache, synthesizer)

    result = orchestrator.generate_batch("shop-1", "subject-1", ["g1", "g1"])

    assert result.summary.successful == 2
    assert result.summary.units_charged == 1
    assert result.summary.cached == 1
    assert len(synthesizer.calls) == 1
    assert ledger.get_balance("shop-1").trial_units == 99


def test_batch_reports_insufficient_credits_per_item(cache: GenerationCache, ledger: CreditLedger):
    ledger.open_account("shop-4", trial_units=4)
    orchestrator = _orchestrator(cache, FakeSynthesizer())

    result = orchestrator.generate_batch("shop-4", "subject-1", ["g1", "g2", "g3", "g4", "g5", "g6"])

    errors = [item.error.code for item in result.items if item.error is not None]
    assert result.summary.successful == 4
    assert errors == ["insufficient_credits", "insufficient_credits"]
    assert ledger.get_balance("shop-4").trial_units == 0


def test_batch_missing_asset_becomes_item_error(cache: GenerationCache, ledger: CreditLedger):
    orchestrator = _orchestrator(cache, FakeSynthesizer())

    result = orchestrator.generate_batch("shop-1", "subject-1", ["g1", "missing-g2"])

    assert [item.status for item in result.items] == [ItemStatus.SUCCESS, ItemStatus.ERROR]
    assert result.items[1].error.code == "generation_failed"
    assert ledger.get_balance("shop-1").trial_units == 99


@pytest.mark.parametrize("garments", [[], ["g1", "g2", "g3", "g4", "g5", "g6", "g7"]])
def test_batch_size_is_bounded(cache: GenerationCache, garments):
    orchestrator = _orchestrator(cache, FakeSynthesizer())

    with pytest.raises(ValueError):
        orchestrator.generate_batch("shop-1", "subject-1", garments)


def test_batch_requires_subject(cache: GenerationCache):
    orchestrator = _orchestrator(cache, FakeSynthesizer())

    with pytest.raises(ValueError):
        orchestrator.generate_batch("shop-1", "  ", ["g1"])


def test_combined_generation_is_one_unit_for_the_whole_outfit(cache: GenerationCache, ledger: CreditLedger):
    synthesizer = FakeSynthesizer()
    orchestrator = _orchestrator(cache, synthesizer)

    first = orchestrator.generate_combined("shop-1", "subject-1", ["top", "skirt", "hat"])
    second = orchestrator.generate_combined("shop-1", "subject-1", ["hat", "top", "skirt", "top"])

    assert first.kind == GenerationKind.COMBINED
    assert first.garment_keys == ["hat", "skirt", "top"]
    assert first.units_charged == 1
    assert second.cached
    assert second.cache_key == first.cache_key
    assert synthesizer.calls == [["hat", "skirt", "top"]]
    assert ledger.get_balance("shop-1").trial_units == 99


def test_combined_and_single_do_not_share_entries(cache: GenerationCache, ledger: CreditLedger):
    orchestrator = _orchestrator(cache, FakeSynthesizer())

    single = orchestrator.generate_single("shop-1", "subject-1", "top")
    combined = orchestrator.generate_combined("shop-1", "subject-1", ["top", "skirt"])

    assert single.cache_key != combined.cache_key
    assert ledger.get_balance("shop-1").trial_units == 98


@pytest.mark.parametrize("garments", [["top"], ["top", "top"], [f"g{index}" for index in range(9)]])
def test_combined_item_count_is_bounded(cache: GenerationCache, garments):
    orchestrator = _orchestrator(cache, FakeSynthesizer())

    with pytest.raises(ValueError):
        orchestrator.generate_combined("shop-1", "subject-1", garments)


def test_combined_failure_releases_the_unit(cache: GenerationCache, ledger: CreditLedger):
    orchestrator = _orchestrator(cache, FakeSynthesizer(failing={"skirt"}))

    with pytest.raises(CacheComputationError):
        orchestrator.generate_combined("shop-1", "subject-1", ["top", "skirt"])

    assert ledger.get_balance("shop-1").trial_units == 100
    assert _count(ledger, LedgerEntryType.RELEASE) == 1
