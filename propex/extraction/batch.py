"""Batched extraction engine: one consolidated LLM call per product.

All successful fetch results go into a single prompt. The response must
match a strict schema; a response that does not gets exactly one stricter
re-prompt before the batch is failed. Rate-limit and transient provider
errors are retried with exponential backoff and jitter up to
``max_retries``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random

from pydantic import BaseModel, Field, ValidationError

from propex.accounting.accountant import TokenAccountant
from propex.ai_engine.engine import LLMService
from propex.config.settings import ExtractionConfig, RetryConfig
from propex.errors import ExtractionError, ExtractionErrorKind
from propex.extraction.prompt import (
    RESPONSE_SCHEMA,
    SYSTEM_INSTRUCTION,
    build_prompt,
    build_reprompt,
)
from propex.pipeline.cancellation import CancellationToken
from propex.pipeline.models import ExtractedPropertyClaim, FetchResult, PropertyDefinition
from propex.rate_limit import TokenBucket
from propex.signals.emitter import SignalEmitter
from propex.signals.types import SignalType

logger = logging.getLogger(__name__)


class ClaimPayload(BaseModel):
    value: str
    confidence: int
    sources: list[int] = Field(default_factory=list)


class PropertyPayload(BaseModel):
    name: str
    claims: list[ClaimPayload] = Field(default_factory=list)


class ExtractionResponse(BaseModel):
    """Wire shape of the model's answer."""

    properties: list[PropertyPayload]


def _strip_fences(text: str) -> str:
    stripped = text.strip()
    if stripped.startswith("```"):
        stripped = stripped.split("\n", 1)[1] if "\n" in stripped else ""
        if stripped.rstrip().endswith("```"):
            stripped = stripped.rstrip()[:-3]
    return stripped.strip()


def parse_response(
    text: str, property_names: list[str], source_count: int
) -> tuple[list[ExtractedPropertyClaim], list[str]]:
    """Validate a raw response against the schema and the batch.

    Returns the claims and a list of problems. Claims are only meaningful when
    the problem list is empty. Property names are matched case-insensitively
    and mapped back to the requested spelling. Every requested property must
    be answered; an empty claims list or an empty value means "not found".
    """
    try:
        payload = ExtractionResponse.model_validate(json.loads(_strip_fences(text)))
    except json.JSONDecodeError as exc:
        return [], [f"response is not valid JSON: {exc.msg}"]
    except ValidationError as exc:
        return [], [
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        ]

    canonical = {name.strip().casefold(): name for name in property_names}
    claims: list[ExtractedPropertyClaim] = []
    problems: list[str] = []
    answered: set[str] = set()
    for prop in payload.properties:
        name = canonical.get(prop.name.strip().casefold())
        if name is None:
            problems.append(f"unknown property {prop.name!r}")
            continue
        answered.add(name)
        for claim in prop.claims:
            value = claim.value.strip()
            if not value:
                continue
            if not 0 <= claim.confidence <= 100:
                problems.append(f"{name}: confidence {claim.confidence} outside 0-100")
                continue
            if not claim.sources:
                problems.append(f"{name}: claim {value!r} cites no source")
                continue
            bad = [i for i in claim.sources if not 0 <= i < source_count]
            if bad:
                problems.append(
                    f"{name}: source indices {bad} outside 0-{source_count - 1}"
                )
                continue
            claims.append(
                ExtractedPropertyClaim(
                    property_name=name,
                    value=value,
                    confidence_percent=claim.confidence,
                    source_indices=frozenset(claim.sources),
                )
            )
    missing = [name for name in property_names if name not in answered]
    if missing:
        problems.append(f"missing properties: {', '.join(missing)}")
    return claims, problems


class BatchedExtractor:
    """Builds the consolidated prompt, calls the LLM and validates the answer."""

    def __init__(
        self,
        llm: LLMService,
        config: ExtractionConfig | None = None,
        retry: RetryConfig | None = None,
        limiter: TokenBucket | None = None,
        signals: SignalEmitter | None = None,
    ) -> None:
        self._llm = llm
        self._config = config or ExtractionConfig()
        self._retry = retry or RetryConfig()
        self._limiter = limiter
        self._signals = signals

    @property
    def model_name(self) -> str:
        return self._llm.model_name

    async def extract(
        self,
        article_number: str | None,
        product_name: str,
        properties: list[PropertyDefinition],
        sources: list[FetchResult],
        accountant: TokenAccountant,
        token: CancellationToken | None = None,
    ) -> list[ExtractedPropertyClaim]:
        """Extract claims for ``properties`` from ``sources`` (indexed in list order).

        Raises:
            ExtractionError: malformed twice, context overflow, or provider
                failure after retries.
            JobCancelledError: the token was set before or after the call.
        """
        if not sources or not properties:
            return []

        budget_chars = int(self._config.context_budget_tokens * self._config.chars_per_token)
        prompt = build_prompt(article_number, product_name, properties, sources, budget_chars)
        if prompt.truncated:
            logger.info(
                "Source content truncated to fit context budget",
                extra={"sources": prompt.source_count, "budget_chars": budget_chars},
            )

        names = [p.name for p in properties]
        text = await self._invoke(prompt.text, accountant, token)
        claims, problems = parse_response(text, names, len(sources))
        if not problems:
            return claims

        logger.warning(
            "Extraction response failed validation, re-prompting",
            extra={"problems": problems[:5]},
        )
        text = await self._invoke(build_reprompt(prompt.text, problems, names), accountant, token)
        claims, problems = parse_response(text, names, len(sources))
        if problems:
            raise ExtractionError(
                ExtractionErrorKind.MALFORMED_RESPONSE,
                "response failed validation after re-prompt: " + "; ".join(problems[:5]),
            )
        return claims

    async def _invoke(
        self, prompt: str, accountant: TokenAccountant, token: CancellationToken | None
    ) -> str:
        attempt = 0
        while True:
            if token:
                token.raise_if_cancelled()
            if self._limiter:
                await self._limiter.acquire()
            await self._emit(
                SignalType.LLM_INVOKED,
                {"model": self.model_name, "attempt": attempt, "prompt_chars": len(prompt)},
            )
            try:
                response = await accountant.call(
                    self._llm,
                    prompt,
                    system_instruction=SYSTEM_INSTRUCTION,
                    response_schema=RESPONSE_SCHEMA,
                )
            except ExtractionError as exc:
                if not exc.retryable or attempt >= self._retry.max_retries:
                    raise
                attempt += 1
                await self._emit(
                    SignalType.RETRY_ATTEMPT,
                    {"attempt": attempt, "kind": exc.kind.value, "detail": exc.detail},
                )
                await self._backoff(attempt)
                continue

            if token:
                token.raise_if_cancelled()
            await self._emit(
                SignalType.LLM_RESPONDED,
                {"model": response.model_name, "response_chars": len(response.text)},
            )
            return response.text

    async def _backoff(self, attempt: int) -> None:
        """Exponential backoff with jitter."""
        base = self._retry.backoff_base_ms / 1000.0
        max_delay = self._retry.backoff_max_ms / 1000.0
        delay = min(base * (2 ** attempt), max_delay)
        if self._retry.jitter:
            delay += random.uniform(0, base)
        await asyncio.sleep(delay)

    async def _emit(self, signal_type: SignalType, payload: dict) -> None:
        if self._signals:
            await self._signals.emit(signal_type, payload)
