"""Extraction data models: sources, fetch outcomes, claims and reconciled results.

Every record here is immutable once created. Provenance travels with each
value so the UI can show which source said what.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field, computed_field, model_validator

from propex.errors import ExtractionErrorKind, FetchErrorKind, PdfErrorKind

PDF_TIER: Literal["pdf"] = "pdf"

FetchTier = Literal[1, 2, 3, "pdf"]


class DomainCategory(str, Enum):
    MANUFACTURER = "manufacturer"
    EXCLUDED = "excluded"
    NEUTRAL = "neutral"


class SearchHit(BaseModel):
    """A raw search result as returned by the search provider."""

    url: str
    title: str = ""
    snippet: str = ""

    model_config = {"frozen": True}


class Source(BaseModel):
    """A scored candidate source for one extraction job."""

    url: str
    title: str = ""
    snippet: str = ""
    domain_category: DomainCategory = DomainCategory.NEUTRAL
    priority_score: float = Field(ge=0.0, le=1.0, default=0.0)

    model_config = {"frozen": True}

    @property
    def is_manufacturer(self) -> bool:
        return self.domain_category == DomainCategory.MANUFACTURER


class PdfDocument(BaseModel):
    """A PDF handed to the adapter, either uploaded or downloaded."""

    name: str
    data: bytes
    url: str | None = None

    model_config = {"frozen": True}


class FetchResult(BaseModel):
    """Outcome of resolving one source to text. Exactly one per source."""

    source: Source
    tier_used: FetchTier
    raw_content: str = ""
    success: bool
    error_kind: FetchErrorKind | PdfErrorKind | None = None
    error_detail: str = ""
    duration_ms: int = 0

    model_config = {"frozen": True}

    @computed_field  # type: ignore[prop-decorator]
    @property
    def content_length(self) -> int:
        return len(self.raw_content)

    @property
    def is_pdf(self) -> bool:
        return self.tier_used == PDF_TIER


class PropertyDefinition(BaseModel):
    """A property the caller wants extracted, supplied by the property table store."""

    name: str
    description: str = ""
    expected_format: str | None = None
    order_index: int = 0

    model_config = {"frozen": True}


class ExtractedPropertyClaim(BaseModel):
    """One value the model claims for a property, with the sources it cites."""

    property_name: str
    value: str
    confidence_percent: int = Field(ge=0, le=100)
    source_indices: frozenset[int]

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _check_indices(self) -> ExtractedPropertyClaim:
        if not self.source_indices:
            raise ValueError("a claim must cite at least one source")
        if any(i < 0 for i in self.source_indices):
            raise ValueError("source indices must be non-negative")
        return self


class SourceAttribution(BaseModel):
    url: str
    title: str = ""

    model_config = {"frozen": True}


class AlternateValue(BaseModel):
    """A conflicting value retained for fact-checking."""

    value: str
    confidence_percent: int = Field(ge=0, le=100)
    source_attribution: list[SourceAttribution] = Field(default_factory=list)

    model_config = {"frozen": True}


class PropertyStatus(str, Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    INCONSISTENT = "inconsistent"
    EXTRACTION_FAILED = "extraction_failed"


class ReconciledProperty(BaseModel):
    """Final value for one requested property. Produced only by the reconciler."""

    property_name: str
    value: str | None = None
    confidence_percent: int = Field(ge=0, le=100, default=0)
    is_consistent_across_sources: bool = False
    status: PropertyStatus = PropertyStatus.NOT_FOUND
    source_attribution: list[SourceAttribution] = Field(default_factory=list)
    alternate_values: list[AlternateValue] = Field(default_factory=list)

    model_config = {"frozen": True}


class TokenUsageRecord(BaseModel):
    """Usage and cost of one LLM call. Append-only."""

    api_call_id: str
    user_id: str | None = None
    model_name: str
    input_tokens: int = Field(ge=0)
    output_tokens: int = Field(ge=0)
    input_cost: Decimal
    output_cost: Decimal
    total_cost: Decimal
    api_call_type: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _check_total(self) -> TokenUsageRecord:
        if self.total_cost != self.input_cost + self.output_cost:
            raise ValueError("total_cost must equal input_cost + output_cost")
        return self


class JobStatus(str, Enum):
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ExtractionBatchResult(BaseModel):
    """Terminal artifact of one product's extraction job."""

    job_id: str
    article_number: str | None = None
    product_name: str
    status: JobStatus = JobStatus.COMPLETE
    failure_reason: str | None = None
    failure_kind: ExtractionErrorKind | None = None
    model_name: str = ""
    reconciled_properties: list[ReconciledProperty] = Field(default_factory=list)
    fetch_results: list[FetchResult] = Field(default_factory=list)
    usage_records: list[TokenUsageRecord] = Field(default_factory=list)
    sources_attempted: int = 0
    sources_succeeded: int = 0
    processing_duration_ms: int = 0
    completed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = {"frozen": True}


class ExtractionRequest(BaseModel):
    """Everything one product's extraction job needs from the caller.

    Either ``hits`` is given, or the job asks the search provider.
    """

    article_number: str | None = None
    product_name: str
    properties: list[PropertyDefinition]
    hits: list[SearchHit] | None = None
    pdf_documents: list[PdfDocument] = Field(default_factory=list)
    user_id: str | None = None

    model_config = {"frozen": True}
