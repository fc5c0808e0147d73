"""Error taxonomy for source-, document- and batch-level failures."""

from __future__ import annotations

from enum import Enum


class FetchErrorKind(str, Enum):
    TIMEOUT = "timeout"
    DNS_FAILURE = "dns_failure"
    HTTP_ERROR = "http_error"
    JS_REQUIRED = "js_required"
    BLOCKED = "blocked"


class PdfErrorKind(str, Enum):
    CORRUPT = "corrupt"
    PASSWORD_PROTECTED = "password_protected"
    UNSUPPORTED_ENCODING = "unsupported_encoding"


class ExtractionErrorKind(str, Enum):
    MALFORMED_RESPONSE = "malformed_response"
    CONTEXT_OVERFLOW = "context_overflow"
    PROVIDER_ERROR = "provider_error"
    RATE_LIMITED = "rate_limited"


class PropexError(Exception):
    """Base class for errors that carry a machine-readable kind."""

    def __init__(self, kind: Enum, detail: str = "") -> None:
        self.kind = kind
        self.detail = detail
        super().__init__(f"{kind.value}: {detail}" if detail else kind.value)


class FetchError(PropexError):
    """One tier failed to produce usable content for a source."""

    kind: FetchErrorKind


class PdfError(PropexError):
    """A PDF document could not be turned into text."""

    kind: PdfErrorKind


class ExtractionError(PropexError):
    """The batched LLM extraction failed for the whole batch."""

    kind: ExtractionErrorKind

    def __init__(
        self, kind: ExtractionErrorKind, detail: str = "", *, retryable: bool = False
    ) -> None:
        super().__init__(kind, detail)
        self.retryable = retryable


class JobCancelledError(Exception):
    """Raised when a job observes its cancellation token."""


class ConsistencyWarning(UserWarning):
    """Sources disagree on a property value.

    Informational only: the reconciler keeps the top-ranked value, reports the
    rest as ``alternate_values`` and logs the warning instead of raising it.
    """

    def __init__(self, property_name: str, values: list[str]) -> None:
        self.property_name = property_name
        self.values = values
        super().__init__(f"{property_name}: sources disagree ({' | '.join(values)})")
