"""API routes for subscription reconciliation."""
from __future__ import annotations

from typing import Optional
from uuid import uuid4

from fastapi import APIRouter, Request

from ..errors import TryOnError, http_error
from ..schemas.subscriptions import SyncRequest, SyncResponse
from ..services import tryon as tryon_services

router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])


@router.post("/sync", response_model=SyncResponse)
def sync_subscription(payload: SyncRequest, request: Request) -> SyncResponse:
    """Reconcile the stored plan state with the provider's subscription of record."""

    request_id: Optional[str] = getattr(request.state, "request_id", None) or uuid4().hex
    engine = tryon_services.get_sync_engine()
    try:
        outcome = engine.sync(payload.account_id, request_id=request_id)
    except (TryOnError, LookupError, ValueError) as exc:
        raise http_error(exc, request_id) from exc
    return SyncResponse.from_outcome(outcome)
