"""Concrete collaborators wired into the generation and sync services."""
from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
import time
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Mapping, Optional, Sequence
from urllib import error as urllib_error
from urllib import parse as urllib_parse
from urllib import request as urllib_request
from uuid import uuid4

from ..credits import PLAN_CATALOG, CreditAuditEvent, CreditEventLogger, PlanDefinition
from ..errors import SubscriptionProviderError
from ..generation import SynthesisResult
from ..subscriptions import SubscriptionSnapshot, SubscriptionStatus

logger = logging.getLogger("credits")
synthesis_logger = logging.getLogger("synthesis")
subscription_logger = logging.getLogger("subscriptions")


class LoggingCreditEventLogger(CreditEventLogger):
    """Event logger forwarding credit audit events to logging."""

    def log(self, event: CreditAuditEvent) -> None:
        logger.info(
            "Credit event %s account=%s request=%s metadata=%s",
            event.event_type.value,
            event.account_id,
            event.request_id,
            event.metadata,
        )


class SynthesisError(RuntimeError):
    """The synthesis endpoint rejected the call or returned an unusable body."""


class HttpSynthesisClient:
    """Posts base64-encoded assets to the synthesis endpoint as JSON."""

    def __init__(self, endpoint: str, *, timeout: float = 120.0, aspect_ratio: str = "1:1") -> None:
        self.endpoint = endpoint
        self.timeout = timeout
        self.aspect_ratio = aspect_ratio

    def _encode(self, data: bytes) -> str:
        return base64.b64encode(data).decode("ascii")

    def synthesize(self, subject_asset: bytes, garment_assets: Sequence[bytes]) -> SynthesisResult:
        body = json.dumps(
            {
                "personImage": self._encode(subject_asset),
                "garmentImages": [self._encode(asset) for asset in garment_assets],
                "aspectRatio": self.aspect_ratio,
            }
        ).encode("utf-8")
        req = urllib_request.Request(
            self.endpoint,
            data=body,
            headers={"Content-Type": "application/json", "Accept": "application/json"},
            method="POST",
        )

        started = time.monotonic()
        try:
            with urllib_request.urlopen(req, timeout=self.timeout) as response:
                payload = json.loads(response.read().decode("utf-8"))
        except (urllib_error.URLError, urllib_error.HTTPError, json.JSONDecodeError, UnicodeDecodeError) as exc:
            synthesis_logger.warning(
                "Synthesis call failed",
                extra={"synthesis_endpoint": self.endpoint, "error": str(exc)},
            )
            raise SynthesisError(str(exc)) from exc
        duration_ms = int((time.monotonic() - started) * 1000)

        if payload.get("status") == "error":
            raise SynthesisError(str(payload.get("error_message") or payload.get("error") or "synthesis failed"))

        image = payload.get("image")
        if not isinstance(image, str) or not image:
            raise SynthesisError("Synthesis response did not contain an image")
        content_type = payload.get("contentType") or "image/jpeg"
        if image.startswith("data:"):
            header, _, image = image.partition(",")
            content_type = header[5:].split(";", 1)[0] or content_type
        try:
            asset = base64.b64decode(image, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise SynthesisError("Synthesis response image is not valid base64") from exc

        return SynthesisResult(asset=asset, content_type=content_type, duration_ms=duration_ms)


_EXTENSIONS: Dict[str, str] = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
}


class FilesystemAssetStore:
    """Content-addressed files under ``root``; the reference is the relative path."""

    def __init__(self, root: str) -> None:
        self.root = Path(root)

    def _resolve(self, ref: str) -> Path:
        path = (self.root / ref).resolve()
        if self.root.resolve() not in path.parents:
            raise LookupError(f"Unknown asset: {ref}")
        return path

    def load(self, ref: str) -> bytes:
        path = self._resolve(ref)
        if not path.is_file():
            raise LookupError(f"Unknown asset: {ref}")
        return path.read_bytes()

    def save(self, data: bytes, *, content_type: str) -> str:
        digest = hashlib.sha256(data).hexdigest()
        ref = f"results/{digest[:2]}/{digest}{_EXTENSIONS.get(content_type, '.bin')}"
        path = self.root / ref
        if not path.exists():
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_name(f"{path.name}.{uuid4().hex}.tmp")
            tmp.write_bytes(data)
            tmp.replace(path)
        return ref


class StaticSubscriptionProvider:
    """In-memory subscription-of-record for local development and tests."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._snapshots: Dict[str, SubscriptionSnapshot] = {}

    def register(self, account_id: str, snapshot: Optional[SubscriptionSnapshot]) -> None:
        with self._lock:
            if snapshot is None:
                self._snapshots.pop(account_id, None)
            else:
                self._snapshots[account_id] = snapshot

    def fetch_active_subscription(self, account_id: str) -> Optional[SubscriptionSnapshot]:
        with self._lock:
            return self._snapshots.get(account_id)


_INTERVAL_DAYS: Dict[str, int] = {
    "EVERY_30_DAYS": 30,
    "ANNUAL": 365,
}


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError as exc:
        raise SubscriptionProviderError(message=f"Invalid subscription timestamp {value!r}.") from exc


class HttpSubscriptionProvider:
    """Reads the subscription-of-record from the billing endpoint.

    ``GET <endpoint>?accountId=<id>`` answers ``{"appSubscription": {...}}``
    or ``{"appSubscription": null}``. The plan handle is matched against the
    catalog by price, currency and interval; when nothing matches the
    subscription ``name`` is kept so reconciliation reports it.
    """

    def __init__(
        self,
        endpoint: str,
        *,
        timeout: float = 10.0,
        plans: Optional[Mapping[str, PlanDefinition]] = None,
    ) -> None:
        self.endpoint = endpoint
        self.timeout = timeout
        self.plans = dict(PLAN_CATALOG if plans is None else plans)

    def fetch_active_subscription(self, account_id: str) -> Optional[SubscriptionSnapshot]:
        query_string = urllib_parse.urlencode({"accountId": account_id})
        req = urllib_request.Request(
            f"{self.endpoint}?{query_string}",
            headers={"Accept": "application/json"},
            method="GET",
        )
        try:
            with urllib_request.urlopen(req, timeout=self.timeout) as response:
                payload = json.loads(response.read().decode("utf-8"))
        except (urllib_error.URLError, urllib_error.HTTPError, json.JSONDecodeError, UnicodeDecodeError) as exc:
            subscription_logger.warning(
                "Subscription lookup failed",
                extra={"account_id": account_id, "subscription_endpoint": self.endpoint, "error": str(exc)},
            )
            raise SubscriptionProviderError(detail={"accountId": account_id}) from exc

        subscription = payload.get("appSubscription") if isinstance(payload, dict) else None
        if not subscription:
            return None
        return self._to_snapshot(subscription)

    def _match_plan(self, amount: Optional[Decimal], currency_code: Optional[str], interval: str) -> Optional[str]:
        for plan in self.plans.values():
            if plan.interval == interval and plan.matches_price(amount, currency_code):
                return plan.handle
        return None

    def _to_snapshot(self, subscription: Mapping[str, Any]) -> SubscriptionSnapshot:
        line_items = subscription.get("lineItems") or [{}]
        pricing = (line_items[0].get("plan") or {}).get("pricingDetails") or {}
        price = pricing.get("price") or {}
        interval = pricing.get("interval") or "EVERY_30_DAYS"
        currency_code = price.get("currencyCode")
        try:
            amount = None if price.get("amount") is None else Decimal(str(price["amount"]))
        except InvalidOperation as exc:
            raise SubscriptionProviderError(message=f"Invalid subscription price {price['amount']!r}.") from exc

        raw_status = str(subscription.get("status") or "")
        try:
            status = SubscriptionStatus(raw_status.lower())
        except ValueError as exc:
            raise SubscriptionProviderError(message=f"Unknown subscription status {raw_status!r}.") from exc

        period_end = _parse_timestamp(subscription.get("currentPeriodEnd"))
        period_start = _parse_timestamp(subscription.get("currentPeriodStart"))
        if period_start is None and period_end is not None:
            period_start = period_end - timedelta(days=_INTERVAL_DAYS.get(interval, 30))

        return SubscriptionSnapshot(
            plan_handle=self._match_plan(amount, currency_code, interval) or subscription.get("name"),
            status=status,
            period_start=period_start,
            period_end=period_end,
            subscription_id=subscription.get("id"),
            price_amount=amount,
            currency_code=currency_code,
        )


__all__ = [
    "FilesystemAssetStore",
    "HttpSubscriptionProvider",
    "HttpSynthesisClient",
    "LoggingCreditEventLogger",
    "StaticSubscriptionProvider",
    "SynthesisError",
]
