"""Application wiring for the credit, generation and sync services."""
from __future__ import annotations

import logging
from datetime import timedelta
from functools import lru_cache

from ...config import ServiceConfig, load_service_config
from ..credits import (
    CouponService,
    CreditLedger,
    CreditPurchaseService,
    InMemoryLedgerRepository,
    LedgerRepository,
    PostgresLedgerRepository,
    USAGE_PRICING,
    UsagePricing,
)
from ..generation import (
    GenerationCache,
    GenerationCacheStore,
    GenerationOrchestrator,
    InMemoryGenerationCacheStore,
    PostgresGenerationCacheStore,
)
from ..subscriptions import (
    InMemorySnapshotRepository,
    PostgresSnapshotRepository,
    SnapshotRepository,
    SubscriptionProvider,
    SubscriptionSyncEngine,
)
from .collaborators import (
    FilesystemAssetStore,
    HttpSubscriptionProvider,
    HttpSynthesisClient,
    LoggingCreditEventLogger,
    StaticSubscriptionProvider,
)

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_service_config() -> ServiceConfig:
    return load_service_config()


def get_usage_pricing() -> UsagePricing:
    config = get_service_config()
    return UsagePricing(
        unit_price=config.usage_unit_price,
        currency_code=USAGE_PRICING.currency_code,
        capped_amount=config.usage_capped_amount,
    )


@lru_cache(maxsize=1)
def get_event_logger() -> LoggingCreditEventLogger:
    return LoggingCreditEventLogger()


@lru_cache(maxsize=1)
def get_ledger() -> CreditLedger:
    config = get_service_config()
    repository: LedgerRepository
    if config.uses_postgres:
        repository = PostgresLedgerRepository()
    else:
        repository = InMemoryLedgerRepository()
    return CreditLedger(
        repository=repository,
        event_logger=get_event_logger(),
        unit_price=config.usage_unit_price,
        trial_units=config.trial_units,
    )


@lru_cache(maxsize=1)
def get_coupon_service() -> CouponService:
    return CouponService(ledger=get_ledger())


@lru_cache(maxsize=1)
def get_purchase_service() -> CreditPurchaseService:
    return CreditPurchaseService(ledger=get_ledger())


@lru_cache(maxsize=1)
def get_generation_cache() -> GenerationCache:
    config = get_service_config()
    store: GenerationCacheStore
    if config.uses_postgres:
        store = PostgresGenerationCacheStore()
    else:
        store = InMemoryGenerationCacheStore()
    return GenerationCache(
        store=store,
        ledger=get_ledger(),
        max_workers=config.generation_workers,
        in_flight_stale_after=timedelta(seconds=config.cache_in_flight_stale_seconds),
    )


@lru_cache(maxsize=1)
def get_orchestrator() -> GenerationOrchestrator:
    config = get_service_config()
    return GenerationOrchestrator(
        cache=get_generation_cache(),
        synthesizer=HttpSynthesisClient(config.synthesis_endpoint, timeout=config.synthesis_timeout_seconds),
        assets=FilesystemAssetStore(config.asset_store_root),
        max_concurrency=config.generation_concurrency,
        batch_max_items=config.batch_max_items,
        combined_min_items=config.combined_min_items,
        combined_max_items=config.combined_max_items,
        wait_timeout=config.generation_wait_timeout_seconds,
    )


@lru_cache(maxsize=1)
def get_subscription_provider() -> SubscriptionProvider:
    config = get_service_config()
    if config.subscription_endpoint:
        return HttpSubscriptionProvider(config.subscription_endpoint, timeout=config.subscription_timeout_seconds)
    if config.uses_postgres:
        logger.warning("SUBSCRIPTION_ENDPOINT is not set; subscription sync will only see local snapshots")
    return StaticSubscriptionProvider()


@lru_cache(maxsize=1)
def get_sync_engine() -> SubscriptionSyncEngine:
    config = get_service_config()
    snapshots: SnapshotRepository
    if config.uses_postgres:
        snapshots = PostgresSnapshotRepository()
    else:
        snapshots = InMemorySnapshotRepository()
    return SubscriptionSyncEngine(
        ledger=get_ledger(),
        provider=get_subscription_provider(),
        snapshots=snapshots,
        event_logger=get_event_logger(),
        usage_pricing=get_usage_pricing(),
    )


def release_stale_reservations() -> int:
    """Crash recovery sweep; safe to call on startup and periodically."""

    config = get_service_config()
    released = get_ledger().release_stale_reservations(
        max_age=timedelta(seconds=config.reservation_max_age_seconds)
    )
    if released:
        logger.warning("Released %s stale reservations", released)
    return released


def shutdown_services() -> None:
    if get_generation_cache.cache_info().currsize:
        get_generation_cache().close()


def reset_services() -> None:
    shutdown_services()
    for getter in (
        get_service_config,
        get_event_logger,
        get_ledger,
        get_coupon_service,
        get_purchase_service,
        get_generation_cache,
        get_orchestrator,
        get_subscription_provider,
        get_sync_engine,
    ):
        getter.cache_clear()


__all__ = [
    "get_coupon_service",
    "get_generation_cache",
    "get_ledger",
    "get_orchestrator",
    "get_purchase_service",
    "get_service_config",
    "get_subscription_provider",
    "get_sync_engine",
    "get_usage_pricing",
    "release_stale_reservations",
    "reset_services",
    "shutdown_services",
]
