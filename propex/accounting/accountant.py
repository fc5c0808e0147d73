"""Token & cost accountant: wraps every LLM call and records what it cost.

Token counts come from the provider's usage metadata. When the provider
reports nothing, the prompt and response are counted with the model's own
tokenizer, or estimated from length if the tokenizer cannot run. Counting
and recording are best-effort: a broken tokenizer or ledger is logged and
never fails the call that produced the usage.
"""

from __future__ import annotations

import logging
import math
import time
import uuid
from datetime import datetime, timezone
from typing import Any

from propex.ai_engine.engine import LLMResponse, LLMService
from propex.accounting.pricing import compute_cost
from propex.accounting.recorder import UsageRecorder
from propex.config.settings import PricingConfig
from propex.pipeline.models import TokenUsageRecord
from propex.signals.emitter import SignalEmitter
from propex.signals.types import SignalType
from propex.telemetry.errors import ErrorCode, emit_structured_error

logger = logging.getLogger(__name__)

# Rough characters-per-token ratio when no tokenizer is available for the model
_CHARS_PER_TOKEN = 4


def generate_api_call_id(now_ms: int | None = None) -> str:
    """``api_<epoch-ms>_<8 hex>``, unique per call."""
    ms = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"api_{ms}_{uuid.uuid4().hex[:8]}"


def _count(llm: LLMService, text: str) -> int:
    """Tokenizer count, or a length estimate when the tokenizer cannot run."""
    try:
        return llm.count_tokens(text)
    except Exception as exc:
        emit_structured_error(
            logger,
            code=ErrorCode.TOKEN_COUNT_FAILED,
            message=f"Local tokenizer unavailable, estimating token count: {exc}",
            suppressed=True,
            details={"model": llm.model_name, "error_type": type(exc).__name__},
        )
        return math.ceil(len(text) / _CHARS_PER_TOKEN)


class TokenAccountant:
    """Wraps LLM calls for one job and keeps the records it produced."""

    def __init__(
        self,
        pricing: PricingConfig,
        recorder: UsageRecorder | None = None,
        signals: SignalEmitter | None = None,
        user_id: str | None = None,
    ) -> None:
        self._pricing = pricing
        self._recorder = recorder
        self._signals = signals
        self._user_id = user_id
        self._records: list[TokenUsageRecord] = []

    @property
    def records(self) -> list[TokenUsageRecord]:
        return list(self._records)

    async def call(
        self,
        llm: LLMService,
        prompt: str,
        *,
        system_instruction: str | None = None,
        response_schema: dict[str, Any] | None = None,
        api_call_type: str = "extraction",
    ) -> LLMResponse:
        """Invoke ``llm`` and account for the call. Provider errors propagate."""
        response = await llm.generate_json(
            prompt,
            system_instruction=system_instruction,
            response_schema=response_schema,
        )
        input_tokens = response.input_tokens
        if input_tokens is None:
            input_tokens = _count(llm, (system_instruction or "") + prompt)
        output_tokens = response.output_tokens
        if output_tokens is None:
            output_tokens = _count(llm, response.text)

        record = self.build_record(
            response.model_name or llm.model_name, input_tokens, output_tokens, api_call_type
        )
        self._records.append(record)
        await self._persist(record)
        return response

    def build_record(
        self, model_name: str, input_tokens: int, output_tokens: int, api_call_type: str
    ) -> TokenUsageRecord:
        input_cost, output_cost, total_cost = compute_cost(
            model_name, input_tokens, output_tokens, self._pricing
        )
        return TokenUsageRecord(
            api_call_id=generate_api_call_id(),
            user_id=self._user_id,
            model_name=model_name,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            input_cost=input_cost,
            output_cost=output_cost,
            total_cost=total_cost,
            api_call_type=api_call_type,
            timestamp=datetime.now(timezone.utc),
        )

    async def _persist(self, record: TokenUsageRecord) -> None:
        if self._recorder is not None:
            try:
                await self._recorder.record(record)
            except Exception as exc:
                emit_structured_error(
                    logger,
                    code=ErrorCode.USAGE_RECORD_FAILED,
                    message=str(exc),
                    suppressed=True,
                    job_id=self._signals.job_id if self._signals else None,
                    details={"api_call_id": record.api_call_id},
                )
        if self._signals:
            await self._signals.emit(
                SignalType.USAGE_RECORDED,
                {
                    "api_call_id": record.api_call_id,
                    "model_name": record.model_name,
                    "input_tokens": record.input_tokens,
                    "output_tokens": record.output_tokens,
                    "total_cost": str(record.total_cost),
                },
            )
