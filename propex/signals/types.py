"""Signal type definitions for propex observability."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class SignalType(str, Enum):
    """All signal types emitted during an extraction job."""

    PHASE_TRANSITION = "PHASE_TRANSITION"
    SOURCE_FETCHED = "SOURCE_FETCHED"
    SOURCE_FAILED = "SOURCE_FAILED"
    PDF_FAILED = "PDF_FAILED"
    LLM_INVOKED = "LLM_INVOKED"
    LLM_RESPONDED = "LLM_RESPONDED"
    RETRY_ATTEMPT = "RETRY_ATTEMPT"
    USAGE_RECORDED = "USAGE_RECORDED"
    JOB_COMPLETE = "JOB_COMPLETE"
    JOB_FAILED = "JOB_FAILED"
    JOB_CANCELLED = "JOB_CANCELLED"


class Signal(BaseModel):
    """An immutable signal emitted during an extraction job.

    Signals are append-only and cannot be modified after emission.
    """

    sequence: int = Field(description="Monotonic sequence number within the job")
    signal_type: SignalType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    job_id: str
    payload: dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}
