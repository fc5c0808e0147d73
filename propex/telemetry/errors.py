"""Structured error telemetry helpers."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Canonical error codes for operational telemetry."""

    AI_INITIALIZATION_FAILED = "AI_INITIALIZATION_FAILED"
    AI_EXTRACTION_FAILED = "AI_EXTRACTION_FAILED"
    SOURCE_FETCH_FAILED = "SOURCE_FETCH_FAILED"
    PDF_EXTRACTION_FAILED = "PDF_EXTRACTION_FAILED"
    SEARCH_FAILED = "SEARCH_FAILED"
    USAGE_RECORD_FAILED = "USAGE_RECORD_FAILED"
    TOKEN_COUNT_FAILED = "TOKEN_COUNT_FAILED"
    SIGNAL_SUBSCRIBER_FAILURE = "SIGNAL_SUBSCRIBER_FAILURE"
    BROWSER_CLEANUP_FAILED = "BROWSER_CLEANUP_FAILED"
    RESULT_PERSIST_FAILED = "RESULT_PERSIST_FAILED"
    JOB_FAILED = "JOB_FAILED"
    BULK_ITEM_FAILED = "BULK_ITEM_FAILED"


def emit_structured_error(
    logger: logging.Logger,
    *,
    code: ErrorCode,
    message: str,
    suppressed: bool,
    job_id: str | None = None,
    phase: str | None = None,
    details: dict[str, Any] | None = None,
) -> None:
    """Emit a structured telemetry event via logging.

    Suppressed errors were recovered from locally and are logged at WARNING.
    """
    level = logging.WARNING if suppressed else logging.ERROR
    logger.log(
        level,
        "propex_error",
        extra={
            "error_code": code,
            "error_message": message,
            "suppressed": suppressed,
            "job_id": job_id,
            "phase": phase,
            "details": details or {},
        },
    )
