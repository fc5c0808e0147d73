"""Extraction job: lifecycle controller for one product.

The job is a finite state machine:

    INIT -> SCORE -> FETCH -> EXTRACT -> RECONCILE -> PERSIST -> COMPLETE

with FAIL and CANCELLED reachable from every non-terminal phase. It holds
no extraction logic itself; each phase delegates to its component and the
job records the transition as a signal.

Source-level failures never fail the job. Batch-level failures (the LLM
call) produce a failed ``ExtractionBatchResult`` with an explicit reason.
Cancellation discards all partial results.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from propex.accounting.accountant import TokenAccountant
from propex.accounting.recorder import UsageRecorder
from propex.ai_engine.engine import LLMService
from propex.config.settings import PropexConfig
from propex.errors import ExtractionError, JobCancelledError
from propex.extraction.batch import BatchedExtractor
from propex.fetch.browser_pool import Renderer
from propex.fetch.fetcher import TieredFetcher
from propex.fetch.http import HttpFetcher
from propex.pdf.adapter import PdfAdapter, discover_pdf_sources
from propex.pipeline.cancellation import CancellationToken
from propex.pipeline.models import (
    ExtractedPropertyClaim,
    ExtractionBatchResult,
    ExtractionRequest,
    FetchResult,
    JobStatus,
    ReconciledProperty,
    Source,
)
from propex.pipeline.phases import TERMINAL_PHASES, VALID_TRANSITIONS, JobPhase
from propex.pipeline.store import ResultStore
from propex.rate_limit import DomainRateLimiter, TokenBucket
from propex.reconcile.reconciler import failed_properties, reconcile
from propex.signals.emitter import SignalEmitter
from propex.signals.types import SignalType
from propex.sources.scorer import score_sources
from propex.sources.search import SearchProvider, collect_hits
from propex.telemetry.errors import ErrorCode, emit_structured_error

logger = logging.getLogger(__name__)


class JobError(Exception):
    """Raised on an illegal job phase transition."""


@dataclass
class EngineServices:
    """Long-lived components shared by every job of one process."""

    config: PropexConfig
    http: HttpFetcher
    llm: LLMService
    renderer: Renderer | None = None
    search: SearchProvider | None = None
    recorder: UsageRecorder | None = None
    store: ResultStore | None = None
    domain_limiter: DomainRateLimiter = field(init=False)
    llm_limiter: TokenBucket = field(init=False)

    def __post_init__(self) -> None:
        limits = self.config.rate_limits
        self.domain_limiter = DomainRateLimiter(limits.domain_rate, limits.domain_burst)
        self.llm_limiter = TokenBucket(limits.llm_rate, limits.llm_burst)


class ExtractionJob:
    """Runs one ``ExtractionRequest`` to a terminal ``ExtractionBatchResult``."""

    def __init__(
        self,
        request: ExtractionRequest,
        services: EngineServices,
        token: CancellationToken | None = None,
        job_id: str | None = None,
    ) -> None:
        self._request = request
        self._services = services
        self._config = services.config
        self._token = token or CancellationToken()
        self._job_id = job_id or f"job_{uuid.uuid4().hex[:12]}"
        self._phase = JobPhase.INIT
        self._start_time: float | None = None

        ledger = services.store.signals_path(self._job_id) if services.store else None
        self._signals = SignalEmitter(job_id=self._job_id, ledger_path=ledger)
        self._accountant = TokenAccountant(
            self._config.pricing,
            recorder=services.recorder,
            signals=self._signals,
            user_id=request.user_id,
        )
        self._pdf = PdfAdapter(
            services.http,
            self._config.timeouts.pdf_download_timeout_s,
            domain_limiter=services.domain_limiter,
        )
        self._fetcher = TieredFetcher(
            services.http,
            services.renderer,
            services.domain_limiter,
            fetch_config=self._config.fetch,
            timeouts=self._config.timeouts,
            pdf_adapter=self._pdf,
            signals=self._signals,
        )
        self._extractor = BatchedExtractor(
            services.llm,
            self._config.extraction,
            self._config.retry,
            limiter=services.llm_limiter,
            signals=self._signals,
        )

        self._sources: list[Source] = []
        self._fetch_results: list[FetchResult] = []
        self._claims: list[ExtractedPropertyClaim] = []
        self._reconciled: list[ReconciledProperty] = []
        self._result: ExtractionBatchResult | None = None

    @property
    def job_id(self) -> str:
        return self._job_id

    @property
    def phase(self) -> JobPhase:
        return self._phase

    @property
    def signals(self) -> SignalEmitter:
        return self._signals

    @property
    def token(self) -> CancellationToken:
        return self._token

    def cancel(self, reason: str = "cancelled by caller") -> None:
        self._token.cancel(reason)

    # --- Phase Transition ---

    async def _transition(self, to_phase: JobPhase, context: dict[str, Any] | None = None) -> None:
        """Every phase transition MUST go through this method."""
        if to_phase not in VALID_TRANSITIONS.get(self._phase, set()):
            raise JobError(f"Invalid transition: {self._phase.value} -> {to_phase.value}")

        from_phase = self._phase
        self._phase = to_phase
        await self._signals.emit_phase_transition(
            from_phase=from_phase.value,
            to_phase=to_phase.value,
            context=context or {},
        )

    def _check_job_timeout(self) -> bool:
        if self._start_time is None:
            return False
        return time.monotonic() - self._start_time > self._config.timeouts.job_timeout_s

    def _elapsed_ms(self) -> int:
        if self._start_time is None:
            return 0
        return round((time.monotonic() - self._start_time) * 1000)

    # --- Main Run Loop ---

    async def run(self) -> ExtractionBatchResult:
        """Execute the job. Never raises; failures are reported in the result."""
        self._start_time = time.monotonic()
        steps = {
            JobPhase.INIT: self._phase_init,
            JobPhase.SCORE: self._phase_score,
            JobPhase.FETCH: self._phase_fetch,
            JobPhase.EXTRACT: self._phase_extract,
            JobPhase.RECONCILE: self._phase_reconcile,
            JobPhase.PERSIST: self._phase_persist,
        }

        try:
            while self._phase not in TERMINAL_PHASES:
                self._token.raise_if_cancelled()
                if self._check_job_timeout():
                    await self._fail("Job timeout exceeded")
                    break
                await steps[self._phase]()
        except JobCancelledError as exc:
            await self._cancelled(str(exc) or self._token.reason)
        except ExtractionError as exc:
            await self._fail(f"Extraction failed: {exc}", exc)
        except Exception as exc:
            logger.exception("Unhandled job failure", extra={"job_id": self._job_id})
            if self._phase not in TERMINAL_PHASES:
                await self._fail(f"Unhandled exception: {exc}")

        assert self._result is not None
        return self._result

    # --- Phase Implementations ---

    async def _phase_init(self) -> None:
        """INIT: validate the request."""
        if not self._request.product_name.strip():
            await self._fail("product_name must not be empty")
            return
        await self._transition(
            JobPhase.SCORE,
            {
                "product_name": self._request.product_name,
                "article_number": self._request.article_number,
                "properties": len(self._request.properties),
            },
        )

    async def _phase_score(self) -> None:
        """SCORE: obtain hits, drop excluded domains, rank and truncate."""
        request = self._request
        scoring = self._config.scoring
        hits = request.hits
        if hits is None:
            if self._services.search is None:
                hits = []
            else:
                hits = await collect_hits(
                    self._services.search,
                    request.article_number,
                    request.product_name,
                    scoring.manufacturer_domains,
                    per_query=scoring.max_results,
                )
        self._sources = score_sources(hits, request.article_number, request.product_name, scoring)
        await self._transition(
            JobPhase.FETCH, {"hits": len(hits), "sources": len(self._sources)}
        )

    async def _phase_fetch(self) -> None:
        """FETCH: resolve every source and every uploaded PDF, all concurrently."""
        request = self._request
        pdf_sources = discover_pdf_sources(
            self._sources, request.article_number, request.product_name
        )
        pdf_urls = {s.url for s in pdf_sources}
        web_sources = [s for s in self._sources if s.url not in pdf_urls]

        # Siblings are always awaited to completion before a failure is re-raised
        outcomes = await asyncio.gather(
            self._fetcher.fetch_all(web_sources, self._token),
            asyncio.gather(*(self._pdf.download(s) for s in pdf_sources)),
            self._pdf.load_documents(list(request.pdf_documents)),
            return_exceptions=True,
        )
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
        web_results, pdf_results, upload_results = outcomes
        self._token.raise_if_cancelled()
        for result in [*pdf_results, *upload_results]:
            await self._signals.emit_source_outcome(result)

        by_url = {r.source.url: r for r in [*web_results, *pdf_results]}
        self._fetch_results = [by_url[s.url] for s in self._sources] + list(upload_results)

        succeeded = sum(1 for r in self._fetch_results if r.success)
        await self._transition(
            JobPhase.EXTRACT,
            {"sources_attempted": len(self._fetch_results), "sources_succeeded": succeeded},
        )

    async def _phase_extract(self) -> None:
        """EXTRACT: one batched LLM call over every successful source."""
        successful = [r for r in self._fetch_results if r.success]
        if successful:
            self._claims = await self._extractor.extract(
                self._request.article_number,
                self._request.product_name,
                list(self._request.properties),
                successful,
                self._accountant,
                self._token,
            )
        else:
            logger.info("No usable sources, skipping LLM call", extra={"job_id": self._job_id})
        await self._transition(JobPhase.RECONCILE, {"claims": len(self._claims)})

    async def _phase_reconcile(self) -> None:
        """RECONCILE: one value per requested property."""
        indexed_sources = [r.source for r in self._fetch_results if r.success]
        self._reconciled = reconcile(
            self._claims,
            list(self._request.properties),
            indexed_sources,
            self._config.extraction.agreement_bonus,
        )
        await self._transition(JobPhase.PERSIST)

    async def _phase_persist(self) -> None:
        """PERSIST: build the batch result and store it."""
        result = self._build_result(JobStatus.COMPLETE, self._reconciled)
        if self._services.store is not None:
            try:
                self._services.store.save(result)
            except OSError as exc:
                emit_structured_error(
                    logger,
                    code=ErrorCode.RESULT_PERSIST_FAILED,
                    message=str(exc),
                    suppressed=False,
                    job_id=self._job_id,
                    phase=self._phase.value,
                )
                await self._fail(f"Result persistence failed: {exc}")
                return
        self._result = result
        await self._transition(JobPhase.COMPLETE)
        await self._signals.emit_job_complete(
            sources_attempted=result.sources_attempted,
            sources_succeeded=result.sources_succeeded,
            duration_ms=result.processing_duration_ms,
            llm_calls=len(result.usage_records),
        )

    # --- Terminal Handling ---

    def _build_result(
        self,
        status: JobStatus,
        properties: list[ReconciledProperty],
        failure_reason: str | None = None,
        error: ExtractionError | None = None,
    ) -> ExtractionBatchResult:
        results = self._fetch_results if status != JobStatus.CANCELLED else []
        return ExtractionBatchResult(
            job_id=self._job_id,
            article_number=self._request.article_number,
            product_name=self._request.product_name,
            status=status,
            failure_reason=failure_reason,
            failure_kind=error.kind if error else None,
            model_name=self._extractor.model_name,
            reconciled_properties=properties,
            fetch_results=results,
            usage_records=self._accountant.records,
            sources_attempted=len(results),
            sources_succeeded=sum(1 for r in results if r.success),
            processing_duration_ms=self._elapsed_ms(),
            completed_at=datetime.now(timezone.utc),
        )

    async def _fail(self, reason: str, error: ExtractionError | None = None) -> None:
        """Transition to FAIL and keep a failed result with the reason."""
        phase_at_failure = self._phase.value
        emit_structured_error(
            logger,
            code=ErrorCode.JOB_FAILED,
            message=reason,
            suppressed=False,
            job_id=self._job_id,
            phase=phase_at_failure,
        )
        self._result = self._build_result(
            JobStatus.FAILED, failed_properties(list(self._request.properties)), reason, error
        )
        if self._services.store is not None and phase_at_failure != JobPhase.PERSIST.value:
            try:
                self._services.store.save(self._result)
            except OSError as exc:
                emit_structured_error(
                    logger,
                    code=ErrorCode.RESULT_PERSIST_FAILED,
                    message=str(exc),
                    suppressed=True,
                    job_id=self._job_id,
                )
        await self._transition(JobPhase.FAIL, {"reason": reason})
        await self._signals.emit_job_failed(reason, phase_at_failure)

    async def _cancelled(self, reason: str) -> None:
        """Discard partial results and transition to CANCELLED."""
        self._claims = []
        self._reconciled = []
        self._result = self._build_result(JobStatus.CANCELLED, [], reason)
        if self._phase not in TERMINAL_PHASES:
            await self._transition(JobPhase.CANCELLED, {"reason": reason})
        await self._signals.emit(SignalType.JOB_CANCELLED, {"reason": reason})
