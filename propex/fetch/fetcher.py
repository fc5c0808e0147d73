"""Tiered content fetcher: resolves every scored source to text or a typed failure.

Each source walks the fetch state machine independently:

    Tier 1: plain HTTP + HTML-to-text, short timeout
    Tier 2: HTTP + embedded client state (Next/Nuxt JSON, JSON-LD), medium timeout
    Tier 3: render in the bounded browser pool, longest timeout

All sources run concurrently and ``fetch_all`` waits for every one of them.
The per-source coroutine never raises, so the result list always holds
exactly one ``FetchResult`` per input source, in input order.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from urllib.parse import urlparse

from propex.config.settings import FetchConfig, TimeoutConfig
from propex.errors import FetchError, FetchErrorKind
from propex.fetch.browser_pool import Renderer
from propex.fetch.content import (
    ContentVerdict,
    assess_content,
    harvest_embedded_state,
    html_to_text,
)
from propex.fetch.http import HttpFetcher, HttpPage
from propex.fetch.states import (
    FAILED_AFTER_TIER,
    NEXT_TIER,
    TERMINAL_STATES,
    FetchState,
    transition,
)
from propex.pdf.adapter import PdfAdapter
from propex.pipeline.cancellation import CancellationToken
from propex.pipeline.models import FetchResult, Source
from propex.rate_limit import DomainRateLimiter
from propex.signals.emitter import SignalEmitter
from propex.telemetry.errors import ErrorCode, emit_structured_error

logger = logging.getLogger(__name__)

_VERDICT_KIND = {
    ContentVerdict.JS_REQUIRED: FetchErrorKind.JS_REQUIRED,
    ContentVerdict.TOO_SHORT: FetchErrorKind.JS_REQUIRED,
    ContentVerdict.BLOCKED: FetchErrorKind.BLOCKED,
}


@dataclass
class _SourceRun:
    """Mutable bookkeeping for one source while it walks the tiers."""

    source: Source
    started: float
    state: FetchState = FetchState.UNTRIED
    tier: int = 1
    html: str | None = None
    last_kind: FetchErrorKind | None = None
    last_detail: str = ""

    def fail(self, tier: int, exc: FetchError) -> None:
        self.last_kind = exc.kind
        self.last_detail = exc.detail
        if exc.kind == FetchErrorKind.DNS_FAILURE:
            # No tier can resolve a host that does not exist
            self.state = transition(self.state, FetchState.FAILED)
        else:
            self.state = transition(self.state, FAILED_AFTER_TIER[tier])


class TieredFetcher:
    """Fetches a list of sources with per-source tier escalation."""

    def __init__(
        self,
        http: HttpFetcher,
        renderer: Renderer | None,
        domain_limiter: DomainRateLimiter,
        *,
        fetch_config: FetchConfig | None = None,
        timeouts: TimeoutConfig | None = None,
        pdf_adapter: PdfAdapter | None = None,
        signals: SignalEmitter | None = None,
    ) -> None:
        self._http = http
        self._renderer = renderer
        self._limiter = domain_limiter
        self._config = fetch_config or FetchConfig()
        self._timeouts = timeouts or TimeoutConfig()
        self._pdf = pdf_adapter
        self._signals = signals

    async def fetch_all(
        self, sources: list[Source], token: CancellationToken | None = None
    ) -> list[FetchResult]:
        """Fetch every source concurrently and collect each outcome.

        Raises:
            JobCancelledError: if the token is set; partial results are discarded.
        """
        if token:
            token.raise_if_cancelled()
        results = await asyncio.gather(*(self.fetch_one(s, token) for s in sources))
        if token:
            token.raise_if_cancelled()
        succeeded = sum(1 for r in results if r.success)
        logger.info(
            "Fetch complete",
            extra={"sources_attempted": len(results), "sources_succeeded": succeeded},
        )
        return list(results)

    async def fetch_one(
        self, source: Source, token: CancellationToken | None = None
    ) -> FetchResult:
        """Walk the tiers for one source. Never raises."""
        run = _SourceRun(source=source, started=time.monotonic())
        try:
            result = await self._walk(run, token)
        except Exception as exc:
            logger.exception("Unexpected fetch failure", extra={"url": source.url})
            result = self._failure(
                run, run.tier, FetchErrorKind.HTTP_ERROR, f"{type(exc).__name__}: {exc}"
            )

        if not result.success and result.error_kind is not None:
            emit_structured_error(
                logger,
                code=ErrorCode.SOURCE_FETCH_FAILED,
                message=result.error_detail,
                suppressed=True,
                details={"url": source.url, "kind": result.error_kind.value},
            )
        if self._signals:
            await self._signals.emit_source_outcome(result)
        return result

    async def _walk(self, run: _SourceRun, token: CancellationToken | None) -> FetchResult:
        while run.state not in TERMINAL_STATES:
            if token and token.cancelled:
                return self._failure(run, run.tier, None, "cancelled")
            tier = NEXT_TIER[run.state]
            if tier == 3 and self._renderer is None:
                run.state = transition(run.state, FetchState.FAILED)
                break
            run.tier = tier
            try:
                outcome = await self._run_tier(run, tier)
            except FetchError as exc:
                logger.debug(
                    "Tier failed",
                    extra={"url": run.source.url, "tier": tier, "kind": exc.kind.value},
                )
                run.fail(tier, exc)
                continue
            if outcome.success or outcome.is_pdf:
                return outcome
        return self._failure(run, run.tier, run.last_kind, run.last_detail)

    async def _run_tier(self, run: _SourceRun, tier: int) -> FetchResult:
        url = run.source.url
        if tier == 1:
            page = await self._get(url, self._timeouts.tier1_timeout_s)
            if page.is_pdf:
                return await self._handoff_pdf(run, page)
            run.html = page.text
            text = html_to_text(run.html)
        elif tier == 2:
            if run.html is None:
                page = await self._get(url, self._timeouts.tier2_timeout_s)
                if page.is_pdf:
                    return await self._handoff_pdf(run, page)
                run.html = page.text
            embedded = harvest_embedded_state(run.html)
            text = html_to_text(run.html)
            if embedded:
                text = f"{text}\n\n[EMBEDDED STATE]\n{embedded}"
        else:
            await self._limiter.acquire(_host(url))
            rendered = await self._renderer.render(url, self._timeouts.tier3_timeout_s)
            run.html = rendered.html
            text = html_to_text(rendered.html)

        assessment = assess_content(run.html, text, self._config.min_content_chars)
        accept_partial = (
            tier == 3 and assessment.verdict == ContentVerdict.TOO_SHORT and assessment.text_length > 0
        )
        if not assessment.sufficient and not accept_partial:
            raise FetchError(
                _VERDICT_KIND[assessment.verdict],
                f"{url}: tier {tier} {assessment.verdict.value.lower()} "
                f"({assessment.text_length} chars)",
            )
        run.state = transition(run.state, FetchState.SUCCEEDED)
        return FetchResult(
            source=run.source,
            tier_used=tier,
            raw_content=text,
            success=True,
            duration_ms=_elapsed_ms(run.started),
        )

    async def _get(self, url: str, timeout_s: float) -> HttpPage:
        await self._limiter.acquire(_host(url))
        return await self._http.get(url, timeout_s=timeout_s)

    async def _handoff_pdf(self, run: _SourceRun, page: HttpPage) -> FetchResult:
        if self._pdf is None:
            raise FetchError(FetchErrorKind.HTTP_ERROR, f"{page.url}: PDF response, no PDF adapter")
        result = await self._pdf.from_bytes(run.source, page.body, run.started)
        run.state = transition(
            run.state, FetchState.SUCCEEDED if result.success else FetchState.FAILED
        )
        return result

    def _failure(
        self,
        run: _SourceRun,
        tier: int,
        kind: FetchErrorKind | None,
        detail: str,
    ) -> FetchResult:
        return FetchResult(
            source=run.source,
            tier_used=tier,
            success=False,
            error_kind=kind,
            error_detail=detail,
            duration_ms=_elapsed_ms(run.started),
        )


def _host(url: str) -> str:
    return urlparse(url).hostname or url


def _elapsed_ms(started: float) -> int:
    return round((time.monotonic() - started) * 1000)
