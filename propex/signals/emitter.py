"""Signal emitter: per-job event stream for fetch, LLM and usage outcomes.

Handles emission, persistence, and streaming of Signals.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from propex.pipeline.models import FetchResult
from propex.signals.types import Signal, SignalType
from propex.telemetry.errors import ErrorCode, emit_structured_error

logger = logging.getLogger(__name__)


class SignalEmitter:
    """Emits, persists, and broadcasts signals for a single job.

    Signals are:
    - Immutable once emitted
    - Assigned monotonic sequence numbers
    - Persisted to a JSONL ledger in append-only mode
    - Streamed to subscribers in real time
    """

    def __init__(self, job_id: str, ledger_path: Path | None = None) -> None:
        self._job_id = job_id
        self._sequence = 0
        self._ledger_path = ledger_path
        self._subscribers: list[Callable[[Signal], Any]] = []
        self._signals: list[Signal] = []
        self._lock = asyncio.Lock()

        if self._ledger_path:
            self._ledger_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def job_id(self) -> str:
        return self._job_id

    @property
    def signals(self) -> list[Signal]:
        """Return all emitted signals (read-only copy)."""
        return list(self._signals)

    def of_type(self, signal_type: SignalType) -> list[Signal]:
        return [s for s in self._signals if s.signal_type == signal_type]

    def subscribe(self, callback: Callable[[Signal], Any]) -> None:
        """Register a subscriber for real-time signal streaming."""
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[Signal], Any]) -> None:
        self._subscribers = [s for s in self._subscribers if s is not callback]

    async def emit(self, signal_type: SignalType, payload: dict[str, Any] | None = None) -> Signal:
        """Emit a signal. This is the ONLY way to create signals."""
        async with self._lock:
            self._sequence += 1
            signal = Signal(
                sequence=self._sequence,
                signal_type=signal_type,
                timestamp=datetime.now(timezone.utc),
                job_id=self._job_id,
                payload=payload or {},
            )
            self._signals.append(signal)

        if self._ledger_path:
            self._persist(signal)

        await self._broadcast(signal)
        return signal

    def _persist(self, signal: Signal) -> None:
        line = signal.model_dump_json() + "\n"
        with open(self._ledger_path, "a", encoding="utf-8") as f:
            f.write(line)

    async def _broadcast(self, signal: Signal) -> None:
        for subscriber in self._subscribers:
            try:
                result = subscriber(signal)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as exc:
                emit_structured_error(
                    logger,
                    code=ErrorCode.SIGNAL_SUBSCRIBER_FAILURE,
                    message=str(exc),
                    suppressed=True,
                    job_id=self._job_id,
                    details={"signal_type": signal.signal_type.value},
                )

    async def emit_phase_transition(
        self, from_phase: str, to_phase: str, context: dict[str, Any] | None = None
    ) -> Signal:
        return await self.emit(
            SignalType.PHASE_TRANSITION,
            {"from_phase": from_phase, "to_phase": to_phase, **(context or {})},
        )

    async def emit_source_outcome(self, result: FetchResult) -> Signal:
        """SOURCE_FETCHED / SOURCE_FAILED (PDF_FAILED for documents)."""
        payload = {
            "url": result.source.url,
            "tier_used": result.tier_used,
            "duration_ms": result.duration_ms,
        }
        if result.success:
            payload["content_length"] = result.content_length
            return await self.emit(SignalType.SOURCE_FETCHED, payload)
        payload["error_kind"] = result.error_kind.value if result.error_kind else None
        payload["error_detail"] = result.error_detail
        signal_type = SignalType.PDF_FAILED if result.is_pdf else SignalType.SOURCE_FAILED
        return await self.emit(signal_type, payload)

    async def emit_job_complete(
        self, sources_attempted: int, sources_succeeded: int, duration_ms: int, llm_calls: int
    ) -> Signal:
        return await self.emit(
            SignalType.JOB_COMPLETE,
            {
                "sources_attempted": sources_attempted,
                "sources_succeeded": sources_succeeded,
                "duration_ms": duration_ms,
                "llm_calls": llm_calls,
            },
        )

    async def emit_job_failed(self, failure_reason: str, phase_at_failure: str) -> Signal:
        return await self.emit(
            SignalType.JOB_FAILED,
            {"failure_reason": failure_reason, "phase_at_failure": phase_at_failure},
        )

    @staticmethod
    def load_ledger(ledger_path: Path) -> list[Signal]:
        """Load all signals from a JSONL ledger file."""
        signals = []
        if ledger_path.exists():
            with open(ledger_path, encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if line:
                        signals.append(Signal.model_validate_json(line))
        return signals
