"""API schemas for generation endpoints."""
from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..generation import BatchItemResult, BatchResult, GenerationKind, GenerationResult, ItemStatus


class GenerationRequest(BaseModel):
    account_id: str = Field(alias="accountId", min_length=1)
    subject_key: str = Field(alias="subjectKey", min_length=1)
    garment_key: str = Field(alias="garmentKey", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class BatchGenerationRequest(BaseModel):
    account_id: str = Field(alias="accountId", min_length=1)
    subject_key: str = Field(alias="subjectKey", min_length=1)
    garment_keys: List[str] = Field(alias="garmentKeys", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class CombinedGenerationRequest(BaseModel):
    account_id: str = Field(alias="accountId", min_length=1)
    subject_key: str = Field(alias="subjectKey", min_length=1)
    garment_keys: List[str] = Field(alias="garmentKeys", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class GenerationResponse(BaseModel):
    request_id: Optional[str] = Field(alias="requestId", default=None)
    cache_key: str = Field(alias="cacheKey")
    kind: GenerationKind
    garment_keys: List[str] = Field(alias="garmentKeys")
    result_ref: str = Field(alias="resultRef")
    cached: bool
    credits_deducted: int = Field(alias="creditsDeducted")
    processing_time: int = Field(alias="processingTime")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: GenerationResult) -> "GenerationResponse":
        return cls(
            request_id=result.request_id,
            cache_key=result.cache_key,
            kind=result.kind,
            garment_keys=list(result.garment_keys),
            result_ref=result.result_ref,
            cached=result.cached,
            credits_deducted=result.units_charged,
            processing_time=result.duration_ms,
        )


class ItemErrorResponse(BaseModel):
    code: str
    message: str


class BatchItemResponse(BaseModel):
    index: int
    garment_key: str = Field(alias="garmentKey")
    status: ItemStatus
    result_ref: Optional[str] = Field(alias="resultRef", default=None)
    cached: bool = False
    credits_deducted: int = Field(alias="creditsDeducted", default=0)
    processing_time: int = Field(alias="processingTime", default=0)
    error: Optional[ItemErrorResponse] = None

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_item(cls, item: BatchItemResult) -> "BatchItemResponse":
        return cls(
            index=item.index,
            garment_key=item.garment_key,
            status=item.status,
            result_ref=item.result_ref,
            cached=item.cached,
            credits_deducted=item.units_charged,
            processing_time=item.duration_ms,
            error=ItemErrorResponse(code=item.error.code, message=item.error.message) if item.error else None,
        )


class BatchSummaryResponse(BaseModel):
    total_garments: int = Field(alias="totalGarments")
    successful: int
    failed: int
    cached: int
    generated: int
    total_credits_deducted: int = Field(alias="totalCreditsDeducted")
    processing_time: int = Field(alias="processingTime")

    model_config = ConfigDict(populate_by_name=True)


class BatchGenerationResponse(BaseModel):
    request_id: Optional[str] = Field(alias="requestId", default=None)
    results: List[BatchItemResponse]
    summary: BatchSummaryResponse

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: BatchResult) -> "BatchGenerationResponse":
        summary = result.summary
        return cls(
            request_id=result.request_id,
            results=[BatchItemResponse.from_item(item) for item in result.items],
            summary=BatchSummaryResponse(
                total_garments=summary.total,
                successful=summary.successful,
                failed=summary.failed,
                cached=summary.cached,
                generated=summary.generated,
                total_credits_deducted=summary.units_charged,
                processing_time=summary.duration_ms,
            ),
        )
