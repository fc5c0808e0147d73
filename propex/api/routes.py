"""REST API routes for propex.

Provides endpoints for:
- Running a single product extraction
- Running a bulk extraction
- Reading persisted job results
- Reading the usage summary
"""

from __future__ import annotations

import base64
import binascii
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from propex.accounting.recorder import UsageSummary, summarize_usage
from propex.pipeline.bulk import run_bulk
from propex.pipeline.job import EngineServices, ExtractionJob
from propex.pipeline.models import (
    ExtractionBatchResult,
    ExtractionRequest,
    JobStatus,
    PdfDocument,
    PropertyDefinition,
    SearchHit,
)

router = APIRouter()


def get_services(request: Request) -> EngineServices:
    return request.app.state.services


# --- Request/Response Models ---


class PdfUpload(BaseModel):
    """A PDF sent inline as base64."""

    name: str
    content_base64: str
    url: str | None = None


class ExtractionBody(BaseModel):
    """Request to extract properties for one product.

    When ``hits`` is omitted, candidate sources come from the search provider.
    """

    article_number: str | None = None
    product_name: str = Field(min_length=1)
    properties: list[PropertyDefinition] = Field(min_length=1)
    hits: list[SearchHit] | None = None
    pdf_documents: list[PdfUpload] = Field(default_factory=list)
    user_id: str | None = None

    def to_request(self) -> ExtractionRequest:
        documents = []
        for upload in self.pdf_documents:
            try:
                data = base64.b64decode(upload.content_base64, validate=True)
            except (binascii.Error, ValueError) as exc:
                raise HTTPException(
                    status_code=400, detail=f"pdf_documents[{upload.name}] is not valid base64"
                ) from exc
            documents.append(PdfDocument(name=upload.name, data=data, url=upload.url))
        return ExtractionRequest(
            article_number=self.article_number,
            product_name=self.product_name,
            properties=self.properties,
            hits=self.hits,
            pdf_documents=documents,
            user_id=self.user_id,
        )


class BulkBody(BaseModel):
    items: list[ExtractionBody] = Field(min_length=1)
    parallelism: int | None = Field(default=None, ge=1)


class BulkResponse(BaseModel):
    results: list[ExtractionBatchResult]
    complete: int
    failed: int


# --- Endpoints ---


@router.post("/extractions", response_model=ExtractionBatchResult)
async def create_extraction(
    body: ExtractionBody, services: EngineServices = Depends(get_services)
) -> ExtractionBatchResult:
    """Run one extraction job to completion and return its result."""
    job = ExtractionJob(body.to_request(), services)
    return await job.run()


@router.post("/extractions/bulk", response_model=BulkResponse)
async def create_bulk_extraction(
    body: BulkBody, services: EngineServices = Depends(get_services)
) -> BulkResponse:
    requests = [item.to_request() for item in body.items]
    results = await run_bulk(requests, services, parallelism=body.parallelism)
    complete = sum(1 for r in results if r.status == JobStatus.COMPLETE)
    return BulkResponse(results=results, complete=complete, failed=len(results) - complete)


@router.get("/extractions/{job_id}", response_model=ExtractionBatchResult)
async def get_extraction(
    job_id: str, services: EngineServices = Depends(get_services)
) -> ExtractionBatchResult:
    if services.store is None:
        raise HTTPException(status_code=404, detail="Result storage is disabled")
    try:
        result = services.store.load(job_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if result is None:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return result


@router.get("/usage", response_model=UsageSummary)
async def get_usage(
    user_id: str | None = Query(default=None),
    since: datetime | None = Query(default=None),
    services: EngineServices = Depends(get_services),
) -> UsageSummary:
    """Aggregate token usage and cost from the usage ledger."""
    if services.recorder is None:
        return UsageSummary()
    return summarize_usage(services.recorder.load(), user_id=user_id, since=since)
