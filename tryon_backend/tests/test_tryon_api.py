from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from types import SimpleNamespace
from typing import Sequence

import pytest
from fastapi import HTTPException
from fastapi.exceptions import RequestValidationError

from tryon_backend.app.credits import CouponService, CreditLedger, CreditPurchaseService, InMemoryLedgerRepository
from tryon_backend.app.errors import SubscriptionProviderError
from tryon_backend.app.generation import (
    GenerationCache,
    GenerationOrchestrator,
    InMemoryGenerationCacheStore,
    SynthesisResult,
)
from tryon_backend.app.routes import credits as credits_routes
from tryon_backend.app.routes import generation as generation_routes
from tryon_backend.app.routes import subscriptions as subscriptions_routes
from tryon_backend.app.schemas.credits import CouponRedeemRequest, OpenAccountRequest, PurchaseFulfilRequest
from tryon_backend.app.schemas.generation import (
    BatchGenerationRequest,
    CombinedGenerationRequest,
    GenerationRequest,
)
from tryon_backend.app.schemas.subscriptions import SyncRequest
from tryon_backend.app.services import tryon as tryon_services
from tryon_backend.app.services.collaborators import StaticSubscriptionProvider
from tryon_backend.app.subscriptions import (
    InMemorySnapshotRepository,
    SubscriptionSnapshot,
    SubscriptionStatus,
    SubscriptionSyncEngine,
)


class EchoSynthesizer:
    def synthesize(self, subject_asset: bytes, garment_assets: Sequence[bytes]) -> SynthesisResult:
        if b"broken" in garment_assets:
            raise RuntimeError("model error")
        return SynthesisResult(asset=subject_asset + b"".join(garment_assets), duration_ms=3)


class EchoAssetStore:
    def load(self, ref: str) -> bytes:
        return ref.encode("utf-8")

    def save(self, data: bytes, *, content_type: str) -> str:
        return f"results/{data.decode('utf-8')}.jpg"


def _request(request_id: str = "req-api") -> SimpleNamespace:
    return SimpleNamespace(state=SimpleNamespace(request_id=request_id))


@pytest.fixture()
def services(monkeypatch):
    ledger = CreditLedger(repository=InMemoryLedgerRepository(), unit_price=Decimal("0.20"))
    cache = GenerationCache(store=InMemoryGenerationCacheStore(), ledger=ledger, max_workers=4)
    orchestrator = GenerationOrchestrator(cache=cache, synthesizer=EchoSynthesizer(), assets=EchoAssetStore())
    provider = StaticSubscriptionProvider()
    engine = SubscriptionSyncEngine(ledger=ledger, provider=provider, snapshots=InMemorySnapshotRepository())
    coupons = CouponService(ledger=ledger, clock=lambda: datetime(2024, 6, 1, tzinfo=timezone.utc))

    monkeypatch.setattr(tryon_services, "get_ledger", lambda: ledger)
    monkeypatch.setattr(tryon_services, "get_orchestrator", lambda: orchestrator)
    monkeypatch.setattr(tryon_services, "get_sync_engine", lambda: engine)
    monkeypatch.setattr(tryon_services, "get_coupon_service", lambda: coupons)
    monkeypatch.setattr(tryon_services, "get_purchase_service", lambda: CreditPurchaseService(ledger=ledger))

    yield SimpleNamespace(ledger=ledger, provider=provider)
    cache.close()


def test_open_account_and_read_balance(services):
    opened = credits_routes.open_account(OpenAccountRequest(accountId="shop-1"), _request("req-1"))

    assert opened.request_id == "req-1"
    assert opened.balance == 100
    assert opened.credit_breakdown.trial == 100

    balance = credits_routes.get_balance("shop-1", _request("req-2"))
    body = balance.model_dump(by_alias=True)
    assert body["requestId"] == "req-2"
    assert body["creditBreakdown"] == {"trial": 100, "coupon": 0, "plan": 0, "purchased": 0, "total": 100}
    assert body["overage"]["remainingUnits"] == 0
    assert body["planHandle"] is None


def test_balance_for_unknown_account_is_not_found(services):
    with pytest.raises(HTTPException) as exc_info:
        credits_routes.get_balance("missing", _request("req-404"))

    assert exc_info.value.status_code == 404
    assert exc_info.value.detail["error"]["code"] == "not_found"
    assert exc_info.value.detail["requestId"] == "req-404"


def test_generate_single_reports_charge_and_cache_hit(services):
    services.ledger.open_account("shop-1")
    payload = GenerationRequest(accountId="shop-1", subjectKey="person", garmentKey="dress")

    first = generation_routes.generate_single(payload, _request("req-1"))
    second = generation_routes.generate_single(payload, _request("req-2"))

    assert first.model_dump(by_alias=True)["creditsDeducted"] == 1
    assert first.result_ref == "results/persondress.jpg"
    assert not first.cached
    assert second.cached
    assert second.credits_deducted == 0
    assert second.request_id == "req-2"
    assert services.ledger.get_balance("shop-1").trial_units == 99


def test_generate_single_without_credits_returns_payment_required(services):
    services.ledger.open_account("shop-1", trial_units=0)
    payload = GenerationRequest(accountId="shop-1", subjectKey="person", garmentKey="dress")

    with pytest.raises(HTTPException) as exc_info:
        generation_routes.generate_single(payload, _request("req-402"))

    error = exc_info.value
    assert error.status_code == 402
    assert error.detail["requestId"] == "req-402"
    assert error.detail["error"]["code"] == "insufficient_credits"
    assert error.detail["error"]["details"]["creditBreakdown"]["total"] == 0
    assert error.headers == {"X-Request-ID": "req-402"}


def test_generate_single_failure_returns_bad_gateway(services):
    services.ledger.open_account("shop-1")
    payload = GenerationRequest(accountId="shop-1", subjectKey="person", garmentKey="broken")

    with pytest.raises(HTTPException) as exc_info:
        generation_routes.generate_single(payload, _request())

    assert exc_info.value.status_code == 502
    assert exc_info.value.detail["error"]["code"] == "generation_failed"
    assert services.ledger.get_balance("shop-1").trial_units == 100


def test_generate_batch_returns_per_item_results(services):
    services.ledger.open_account("shop-1")
    payload = BatchGenerationRequest(accountId="shop-1", subjectKey="person", garmentKeys=["a", "broken", "c"])

    response = generation_routes.generate_batch(payload, _request("req-batch"))
    body = response.model_dump(by_alias=True)

    assert body["requestId"] == "req-batch"
    assert [item["status"] for item in body["results"]] == ["success", "error", "success"]
    assert body["results"][1]["error"]["code"] == "generation_failed"
    assert body["summary"]["totalGarments"] == 3
    assert body["summary"]["totalCreditsDeducted"] == 2


def test_generate_batch_over_limit_is_bad_request(services):
    services.ledger.open_account("shop-1")
    payload = BatchGenerationRequest(accountId="shop-1", subjectKey="person", garmentKeys=list("abcdefg"))

    with pytest.raises(HTTPException) as exc_info:
        generation_routes.generate_batch(payload, _request())

    assert exc_info.value.status_code == 400
    assert exc_info.value.detail["error"]["code"] == "invalid_request"


def test_generate_combined(services):
    services.ledger.open_account("shop-1")
    payload = CombinedGenerationRequest(accountId="shop-1", subjectKey="person", garmentKeys=["top", "hat"])

    response = generation_routes.generate_combined(payload, _request())

    assert response.kind.value == "combined"
    assert response.garment_keys == ["hat", "top"]
    assert response.credits_deducted == 1


def test_coupon_and_purchase_routes(services):
    services.ledger.open_account("shop-1", trial_units=0)

    redeemed = credits_routes.redeem_coupon(CouponRedeemRequest(accountId="shop-1", code="welcome50"), _request())
    fulfilled = credits_routes.fulfil_purchase(
        PurchaseFulfilRequest(accountId="shop-1", packageId="small", purchaseId="order-1"),
        _request(),
    )

    assert redeemed.credits_added == 50
    assert redeemed.code == "WELCOME50"
    assert fulfilled.credits_added == 50
    assert fulfilled.credit_breakdown.total == 100

    with pytest.raises(HTTPException) as exc_info:
        credits_routes.redeem_coupon(CouponRedeemRequest(accountId="shop-1", code="WELCOME50"), _request())
    assert exc_info.value.detail["error"]["code"] == "usage_limit_exceeded"


def test_sync_route_initializes_plan(services):
    services.ledger.open_account("shop-1", trial_units=0)
    services.provider.register(
        "shop-1",
        SubscriptionSnapshot(
            plan_handle="pro-monthly",
            status=SubscriptionStatus.ACTIVE,
            period_start=datetime(2025, 3, 1, tzinfo=timezone.utc),
            price_amount=Decimal("23.00"),
            currency_code="USD",
        ),
    )

    response = subscriptions_routes.sync_subscription(SyncRequest(accountId="shop-1"), _request("req-sync"))
    body = response.model_dump(by_alias=True)

    assert body["action"] == "initialized"
    assert body["requestId"] == "req-sync"
    assert body["snapshot"]["includedUnits"] == 100
    assert services.ledger.get_balance("shop-1").plan_units == 100


def test_sync_route_unknown_account_is_not_found(services):
    with pytest.raises(HTTPException) as exc_info:
        subscriptions_routes.sync_subscription(SyncRequest(accountId="missing"), _request())

    assert exc_info.value.status_code == 404


class UnreachableProvider:
    def fetch_active_subscription(self, account_id: str):
        raise SubscriptionProviderError(detail={"accountId": account_id})


def test_sync_route_reports_unreachable_provider(services, monkeypatch):
    services.ledger.open_account("shop-1")
    engine = SubscriptionSyncEngine(
        ledger=services.ledger,
        provider=UnreachableProvider(),
        snapshots=InMemorySnapshotRepository(),
    )
    monkeypatch.setattr(tryon_services, "get_sync_engine", lambda: engine)

    with pytest.raises(HTTPException) as exc_info:
        subscriptions_routes.sync_subscription(SyncRequest(accountId="shop-1"), _request("req-502"))

    assert exc_info.value.status_code == 502
    assert exc_info.value.detail["error"]["code"] == "subscription_unavailable"
    assert exc_info.value.detail["requestId"] == "req-502"


def test_request_id_is_minted_when_middleware_did_not_run(services):
    services.ledger.open_account("shop-1")
    request = SimpleNamespace(state=SimpleNamespace())

    response = credits_routes.get_balance("shop-1", request)

    assert response.request_id


def test_error_envelope_handlers():
    from tryon_backend import main as tryon_main

    request = SimpleNamespace(state=SimpleNamespace(request_id="req-env"))
    envelope = {"error": {"code": "not_found", "message": "Unknown account"}, "requestId": "req-env"}

    response = asyncio.run(tryon_main.envelope_http_exception(request, HTTPException(status_code=404, detail=envelope)))
    assert response.status_code == 404
    assert json.loads(response.body) == envelope

    response = asyncio.run(
        tryon_main.envelope_validation_error(
            request,
            RequestValidationError([{"loc": ("body", "accountId"), "msg": "Field required", "type": "missing"}]),
        )
    )
    body = json.loads(response.body)
    assert response.status_code == 422
    assert body["requestId"] == "req-env"
    assert body["error"]["code"] == "invalid_request"


class ExplodingSyncEngine:
    def sync(self, account_id: str, *, request_id=None):
        raise RuntimeError("connection reset by peer")


def test_unexpected_errors_keep_the_request_id(monkeypatch, caplog):
    from fastapi.testclient import TestClient

    from tryon_backend import main as tryon_main

    monkeypatch.setattr(tryon_services, "get_sync_engine", lambda: ExplodingSyncEngine())
    client = TestClient(tryon_main.app, raise_server_exceptions=False)

    with caplog.at_level(logging.ERROR, logger="tryon"):
        response = client.post("/api/subscriptions/sync", json={"accountId": "shop-1"}, headers={"X-Request-ID": "abc123"})

    assert response.status_code == 500
    assert response.headers["X-Request-ID"] == "abc123"
    assert response.json() == {
        "error": {"code": "internal_error", "message": "An unexpected error occurred."},
        "requestId": "abc123",
    }
    assert "Unhandled error on POST /api/subscriptions/sync" in caplog.text
