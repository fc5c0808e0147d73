"""Tests for the token accountant that wraps every LLM call."""

import re

import pytest

from fakes import FakeLLM
from propex.accounting.accountant import TokenAccountant, generate_api_call_id
from propex.accounting.recorder import InMemoryUsageRecorder
from propex.config.settings import PricingConfig
from propex.errors import ExtractionError, ExtractionErrorKind
from propex.signals.emitter import SignalEmitter
from propex.signals.types import SignalType


class _BrokenRecorder:
    async def record(self, record):
        raise OSError("ledger unavailable")

    def load(self):
        return []


class _NoTokenizerLLM(FakeLLM):
    def count_tokens(self, text):
        raise NotImplementedError("no local tokenizer")


class _MissingTokenizerPackageLLM(FakeLLM):
    def count_tokens(self, text):
        raise ImportError("No module named 'sentencepiece'")


class TestApiCallId:
    def test_format(self):
        assert re.fullmatch(r"api_1700000000000_[0-9a-f]{8}", generate_api_call_id(1700000000000))

    def test_unique(self):
        assert len({generate_api_call_id(1) for _ in range(100)}) == 100


class TestTokenAccountant:
    @pytest.mark.asyncio
    async def test_records_provider_usage(self):
        recorder = InMemoryUsageRecorder()
        signals = SignalEmitter("job_acct")
        accountant = TokenAccountant(PricingConfig(), recorder, signals, user_id="u-1")
        llm = FakeLLM(["{}"], input_tokens=1000, output_tokens=1000)

        response = await accountant.call(llm, "prompt")

        assert response.text == "{}"
        [record] = recorder.records
        assert record.user_id == "u-1"
        assert record.model_name == "gemini-2.5-flash"
        assert (record.input_tokens, record.output_tokens) == (1000, 1000)
        assert record.total_cost == record.input_cost + record.output_cost
        assert record.api_call_type == "extraction"
        assert accountant.records == [record]
        [signal] = signals.of_type(SignalType.USAGE_RECORDED)
        assert signal.payload["api_call_id"] == record.api_call_id

    @pytest.mark.asyncio
    async def test_counts_locally_when_provider_reports_nothing(self):
        accountant = TokenAccountant(PricingConfig())
        llm = FakeLLM(["one two three"], input_tokens=None, output_tokens=None)
        await accountant.call(llm, "a b c d", system_instruction="x y ")
        [record] = accountant.records
        assert record.input_tokens == 6
        assert record.output_tokens == 3

    @pytest.mark.asyncio
    async def test_estimates_when_tokenizer_unavailable(self):
        accountant = TokenAccountant(PricingConfig())
        llm = _NoTokenizerLLM(["x" * 40], input_tokens=None, output_tokens=None)
        await accountant.call(llm, "y" * 101)
        [record] = accountant.records
        assert record.input_tokens == 26
        assert record.output_tokens == 10

    @pytest.mark.asyncio
    async def test_tokenizer_crash_does_not_fail_the_call(self, caplog):
        accountant = TokenAccountant(PricingConfig())
        llm = _MissingTokenizerPackageLLM(["x" * 40], input_tokens=None, output_tokens=None)
        response = await accountant.call(llm, "y" * 101)
        assert response.text == "x" * 40
        [record] = accountant.records
        assert (record.input_tokens, record.output_tokens) == (26, 10)
        assert any(
            getattr(r, "error_code", None) == "TOKEN_COUNT_FAILED" and r.suppressed
            for r in caplog.records
        )

    @pytest.mark.asyncio
    async def test_recorder_failure_does_not_fail_the_call(self, caplog):
        accountant = TokenAccountant(PricingConfig(), recorder=_BrokenRecorder())
        response = await accountant.call(FakeLLM(["{}"]), "prompt")
        assert response.text == "{}"
        assert len(accountant.records) == 1
        assert "propex_error" in caplog.text

    @pytest.mark.asyncio
    async def test_failed_call_produces_no_record(self):
        accountant = TokenAccountant(PricingConfig())
        llm = FakeLLM([ExtractionError(ExtractionErrorKind.PROVIDER_ERROR, "down")])
        with pytest.raises(ExtractionError):
            await accountant.call(llm, "prompt")
        assert accountant.records == []

    def test_build_record(self):
        accountant = TokenAccountant(PricingConfig(), user_id="u-2")
        record = accountant.build_record("gemini-2.5-pro", 2_000_000, 0, "reprompt")
        assert str(record.input_cost) == "2.50"
        assert record.output_cost == 0
        assert record.api_call_type == "reprompt"
