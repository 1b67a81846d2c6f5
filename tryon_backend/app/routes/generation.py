"""API routes for try-on generation."""
from __future__ import annotations

from typing import Optional
from uuid import uuid4

from fastapi import APIRouter, Request

from ..errors import TryOnError, http_error
from ..schemas.generation import (
    BatchGenerationRequest,
    BatchGenerationResponse,
    CombinedGenerationRequest,
    GenerationRequest,
    GenerationResponse,
)
from ..services import tryon as tryon_services

router = APIRouter(prefix="/api/generations", tags=["generations"])


def _request_id(request: Request) -> str:
    request_id: Optional[str] = getattr(request.state, "request_id", None)
    return request_id or uuid4().hex


@router.post("/single", response_model=GenerationResponse)
def generate_single(payload: GenerationRequest, request: Request) -> GenerationResponse:
    request_id = _request_id(request)
    orchestrator = tryon_services.get_orchestrator()
    try:
        result = orchestrator.generate_single(
            payload.account_id,
            payload.subject_key,
            payload.garment_key,
            request_id=request_id,
        )
    except (TryOnError, LookupError, ValueError) as exc:
        raise http_error(exc, request_id) from exc
    return GenerationResponse.from_result(result)


@router.post("/batch", response_model=BatchGenerationResponse)
def generate_batch(payload: BatchGenerationRequest, request: Request) -> BatchGenerationResponse:
    request_id = _request_id(request)
    orchestrator = tryon_services.get_orchestrator()
    try:
        result = orchestrator.generate_batch(
            payload.account_id,
            payload.subject_key,
            payload.garment_keys,
            request_id=request_id,
        )
    except (TryOnError, LookupError, ValueError) as exc:
        raise http_error(exc, request_id) from exc
    return BatchGenerationResponse.from_result(result)


@router.post("/combined", response_model=GenerationResponse)
def generate_combined(payload: CombinedGenerationRequest, request: Request) -> GenerationResponse:
    request_id = _request_id(request)
    orchestrator = tryon_services.get_orchestrator()
    try:
        result = orchestrator.generate_combined(
            payload.account_id,
            payload.subject_key,
            payload.garment_keys,
            request_id=request_id,
        )
    except (TryOnError, LookupError, ValueError) as exc:
        raise http_error(exc, request_id) from exc
    return GenerationResponse.from_result(result)
