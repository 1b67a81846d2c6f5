"""Service configuration helpers."""
from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional


@dataclass(frozen=True)
class ServiceConfig:
    """Configuration for the generation credit core and its collaborators."""

    storage_backend: str
    db_host: str
    db_port: int
    db_name: str
    db_user: str
    db_password: str
    db_connect_timeout: int
    usage_unit_price: Decimal
    usage_capped_amount: Decimal
    trial_units: int
    generation_concurrency: int
    generation_workers: int
    batch_max_items: int
    combined_min_items: int
    combined_max_items: int
    generation_wait_timeout_seconds: Optional[float]
    cache_in_flight_stale_seconds: float
    reservation_max_age_seconds: float
    synthesis_endpoint: str
    synthesis_timeout_seconds: float
    subscription_endpoint: str
    subscription_timeout_seconds: float
    asset_store_root: str
    log_level: str

    @property
    def uses_postgres(self) -> bool:
        return self.storage_backend == "postgres"

    def db_config(self) -> Dict[str, Any]:
        """Keyword arguments accepted by ``psycopg2.connect``."""

        return {
            "host": self.db_host,
            "port": self.db_port,
            "dbname": self.db_name,
            "user": self.db_user,
            "password": self.db_password,
            "connect_timeout": self.db_connect_timeout,
        }


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _to_float(value: Optional[str], *, default: Optional[float]) -> Optional[float]:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected float value, got {value!r}") from exc


def _to_decimal(value: Optional[str], *, default: Decimal) -> Decimal:
    if value is None or value == "":
        return default
    try:
        return Decimal(value.strip())
    except InvalidOperation as exc:
        raise ValueError(f"Expected decimal value, got {value!r}") from exc


def _positive(name: str, value: int) -> int:
    if value < 1:
        raise ValueError(f"{name} must be >= 1")
    return value


def load_service_config(env: Optional[Mapping[str, str]] = None) -> ServiceConfig:
    """Load :class:`ServiceConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    storage_backend = (env_mapping.get("STORAGE_BACKEND") or "memory").strip().lower()
    if storage_backend not in {"memory", "postgres"}:
        raise ValueError("STORAGE_BACKEND must be 'memory' or 'postgres'")

    connect_timeout = _to_int(env_mapping.get("DB_CONNECT_TIMEOUT"), default=5)
    if connect_timeout < 0:
        raise ValueError("DB_CONNECT_TIMEOUT must be >= 0")

    combined_min = _positive("COMBINED_MIN_ITEMS", _to_int(env_mapping.get("COMBINED_MIN_ITEMS"), default=2))
    combined_max = _positive("COMBINED_MAX_ITEMS", _to_int(env_mapping.get("COMBINED_MAX_ITEMS"), default=8))
    if combined_min > combined_max:
        raise ValueError("COMBINED_MIN_ITEMS must not exceed COMBINED_MAX_ITEMS")

    wait_timeout = _to_float(env_mapping.get("GENERATION_WAIT_TIMEOUT_SECONDS"), default=None)
    if wait_timeout is not None and wait_timeout <= 0:
        wait_timeout = None

    return ServiceConfig(
        storage_backend=storage_backend,
        db_host=env_mapping.get("DB_HOST", "127.0.0.1"),
        db_port=_to_int(env_mapping.get("DB_PORT"), default=5432),
        db_name=env_mapping.get("DB_NAME", "tryon_db"),
        db_user=env_mapping.get("DB_USER", "tryon_user"),
        db_password=env_mapping.get("DB_PASSWORD", "tryon_pass"),
        db_connect_timeout=connect_timeout,
        usage_unit_price=_to_decimal(env_mapping.get("USAGE_UNIT_PRICE"), default=Decimal("0.20")),
        usage_capped_amount=_to_decimal(env_mapping.get("USAGE_CAPPED_AMOUNT"), default=Decimal("50.00")),
        trial_units=_to_int(env_mapping.get("TRIAL_UNITS"), default=100),
        generation_concurrency=_positive(
            "GENERATION_CONCURRENCY", _to_int(env_mapping.get("GENERATION_CONCURRENCY"), default=5)
        ),
        generation_workers=_positive("GENERATION_WORKERS", _to_int(env_mapping.get("GENERATION_WORKERS"), default=16)),
        batch_max_items=_positive("BATCH_MAX_ITEMS", _to_int(env_mapping.get("BATCH_MAX_ITEMS"), default=6)),
        combined_min_items=combined_min,
        combined_max_items=combined_max,
        generation_wait_timeout_seconds=wait_timeout,
        cache_in_flight_stale_seconds=_to_float(env_mapping.get("CACHE_IN_FLIGHT_STALE_SECONDS"), default=900.0),
        reservation_max_age_seconds=_to_float(env_mapping.get("RESERVATION_MAX_AGE_SECONDS"), default=1800.0),
        synthesis_endpoint=env_mapping.get("SYNTHESIS_ENDPOINT", "http://127.0.0.1:9000/api/fashion-photo"),
        synthesis_timeout_seconds=_to_float(env_mapping.get("SYNTHESIS_TIMEOUT_SECONDS"), default=120.0),
        subscription_endpoint=(env_mapping.get("SUBSCRIPTION_ENDPOINT") or "").strip(),
        subscription_timeout_seconds=_to_float(env_mapping.get("SUBSCRIPTION_TIMEOUT_SECONDS"), default=10.0),
        asset_store_root=env_mapping.get("ASSET_STORE_ROOT", "./var/assets"),
        log_level=(env_mapping.get("LOG_LEVEL") or "INFO").strip().upper(),
    )


__all__ = ["ServiceConfig", "load_service_config"]
