"""AI Engine: the LLM service behind batched extraction, backed by Vertex AI Gemini.

The engine sends one prompt and returns raw JSON text plus the provider's
usage metadata. It knows nothing about sources or properties; prompt
construction and response validation live in ``propex.extraction``.

Provider failures are classified here so callers can decide on retries:
quota exhaustion is ``rate_limited``, 5xx and deadline errors are retryable
``provider_error``s, and everything else is a non-retryable
``provider_error``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Protocol

from google.api_core import exceptions as google_exceptions

from propex.config.settings import VertexConfig
from propex.errors import ExtractionError, ExtractionErrorKind
from propex.telemetry.errors import ErrorCode, emit_structured_error

logger = logging.getLogger(__name__)

_RETRYABLE_PROVIDER_ERRORS = (
    google_exceptions.ServiceUnavailable,
    google_exceptions.InternalServerError,
    google_exceptions.DeadlineExceeded,
    google_exceptions.BadGateway,
    google_exceptions.GatewayTimeout,
)

_CONTEXT_HINTS = ("token count", "too long", "exceeds the maximum", "context length")


@dataclass
class LLMResponse:
    """Raw model output with whatever usage the provider reported."""

    text: str
    model_name: str
    input_tokens: int | None = None
    output_tokens: int | None = None


class LLMService(Protocol):
    """What the extraction engine needs from a model provider."""

    @property
    def model_name(self) -> str: ...

    async def generate_json(
        self,
        prompt: str,
        *,
        system_instruction: str | None = None,
        response_schema: dict[str, Any] | None = None,
    ) -> LLMResponse: ...

    def count_tokens(self, text: str) -> int: ...


def classify_provider_error(exc: BaseException) -> ExtractionError:
    """Map a provider exception onto the extraction error taxonomy."""
    if isinstance(exc, ExtractionError):
        return exc
    if isinstance(exc, (google_exceptions.ResourceExhausted, google_exceptions.TooManyRequests)):
        return ExtractionError(ExtractionErrorKind.RATE_LIMITED, str(exc), retryable=True)
    if isinstance(exc, _RETRYABLE_PROVIDER_ERRORS):
        return ExtractionError(ExtractionErrorKind.PROVIDER_ERROR, str(exc), retryable=True)
    if isinstance(exc, asyncio.TimeoutError):
        return ExtractionError(ExtractionErrorKind.PROVIDER_ERROR, "LLM call timed out", retryable=True)
    if isinstance(exc, google_exceptions.InvalidArgument) and any(
        hint in str(exc).lower() for hint in _CONTEXT_HINTS
    ):
        return ExtractionError(ExtractionErrorKind.CONTEXT_OVERFLOW, str(exc))
    return ExtractionError(ExtractionErrorKind.PROVIDER_ERROR, f"{type(exc).__name__}: {exc}")


class AIEngine:
    """Vertex AI Gemini client.

    Stateless between calls; one ``GenerativeModel`` is kept per distinct
    system instruction.
    """

    def __init__(self, config: VertexConfig, timeout_s: float = 120.0) -> None:
        self._config = config
        self._timeout_s = timeout_s
        self._models: dict[str | None, Any] = {}
        self._tokenizer: Any = None
        self._initialized = False

    @property
    def model_name(self) -> str:
        return self._config.model

    @property
    def is_available(self) -> bool:
        return self._initialized

    async def initialize(self) -> bool:
        """Initialize the Vertex AI SDK.

        Returns True if initialization succeeds, False otherwise.
        """
        if not self._config.project_id:
            return False

        try:
            import vertexai

            vertexai.init(
                project=self._config.project_id,
                location=self._config.location,
            )
            self._initialized = True
            return True
        except Exception as exc:
            emit_structured_error(
                logger,
                code=ErrorCode.AI_INITIALIZATION_FAILED,
                message=str(exc),
                suppressed=True,
            )
            self._initialized = False
            return False

    def _model(self, system_instruction: str | None) -> Any:
        model = self._models.get(system_instruction)
        if model is None:
            from vertexai.generative_models import GenerativeModel

            model = GenerativeModel(self._config.model, system_instruction=system_instruction)
            self._models[system_instruction] = model
        return model

    async def generate_json(
        self,
        prompt: str,
        *,
        system_instruction: str | None = None,
        response_schema: dict[str, Any] | None = None,
    ) -> LLMResponse:
        """Run one JSON-mode generation.

        Raises:
            ExtractionError: classified provider failure.
        """
        if not self.is_available:
            raise ExtractionError(ExtractionErrorKind.PROVIDER_ERROR, "AI engine not initialized")

        from vertexai.generative_models import GenerationConfig

        try:
            response = await asyncio.wait_for(
                self._model(system_instruction).generate_content_async(
                    prompt,
                    generation_config=GenerationConfig(
                        temperature=self._config.temperature,
                        max_output_tokens=self._config.max_output_tokens,
                        response_mime_type="application/json",
                        response_schema=response_schema,
                    ),
                ),
                timeout=self._timeout_s,
            )
            text = response.text
        except Exception as exc:
            error = classify_provider_error(exc)
            emit_structured_error(
                logger,
                code=ErrorCode.AI_EXTRACTION_FAILED,
                message=str(exc),
                suppressed=error.retryable,
                details={"kind": error.kind.value, "model": self.model_name},
            )
            raise error from exc

        usage = getattr(response, "usage_metadata", None)
        return LLMResponse(
            text=text,
            model_name=self.model_name,
            input_tokens=getattr(usage, "prompt_token_count", None) if usage else None,
            output_tokens=getattr(usage, "candidates_token_count", None) if usage else None,
        )

    def count_tokens(self, text: str) -> int:
        """Count tokens locally with the model's own tokenizer."""
        if self._tokenizer is None:
            from vertexai.preview.tokenization import get_tokenizer_for_model

            self._tokenizer = get_tokenizer_for_model(self._config.model)
        return self._tokenizer.count_tokens(text).total_tokens
