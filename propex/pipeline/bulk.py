"""Bulk extraction: many products, bounded parallelism, isolated failures."""

from __future__ import annotations

import asyncio
import logging

from propex.pipeline.cancellation import CancellationToken
from propex.pipeline.job import EngineServices, ExtractionJob
from propex.pipeline.models import ExtractionBatchResult, ExtractionRequest, JobStatus
from propex.reconcile.reconciler import failed_properties
from propex.telemetry.errors import ErrorCode, emit_structured_error

logger = logging.getLogger(__name__)


async def run_bulk(
    requests: list[ExtractionRequest],
    services: EngineServices,
    parallelism: int | None = None,
    token: CancellationToken | None = None,
) -> list[ExtractionBatchResult]:
    """Run one job per request, at most ``parallelism`` at a time.

    Returns one result per request, in request order. A product that fails
    for any reason gets a failed result; its siblings are unaffected. A
    cancelled token cancels every job that has not finished.
    """
    limit = parallelism or services.config.bulk_parallelism
    if limit < 1:
        raise ValueError("parallelism must be >= 1")
    token = token or CancellationToken()
    slots = asyncio.Semaphore(limit)

    async def _one(index: int, request: ExtractionRequest) -> ExtractionBatchResult:
        async with slots:
            job = ExtractionJob(request, services, token=token)
            try:
                return await job.run()
            except Exception as exc:
                emit_structured_error(
                    logger,
                    code=ErrorCode.BULK_ITEM_FAILED,
                    message=str(exc),
                    suppressed=True,
                    job_id=job.job_id,
                    details={"index": index, "product_name": request.product_name},
                )
                return ExtractionBatchResult(
                    job_id=job.job_id,
                    article_number=request.article_number,
                    product_name=request.product_name,
                    status=JobStatus.FAILED,
                    failure_reason=f"{type(exc).__name__}: {exc}",
                    reconciled_properties=failed_properties(list(request.properties)),
                )

    results = await asyncio.gather(*(_one(i, r) for i, r in enumerate(requests)))
    failed = sum(1 for r in results if r.status != JobStatus.COMPLETE)
    logger.info("Bulk run finished", extra={"products": len(results), "not_complete": failed})
    return list(results)
