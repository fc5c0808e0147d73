"""Usage record sinks and aggregation."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, Field

from propex.pipeline.models import TokenUsageRecord


class UsageRecorder(Protocol):
    async def record(self, record: TokenUsageRecord) -> None: ...

    def load(self) -> list[TokenUsageRecord]: ...


class InMemoryUsageRecorder:
    """Keeps records in a list. Used by tests and single-process runs."""

    def __init__(self) -> None:
        self._records: list[TokenUsageRecord] = []

    @property
    def records(self) -> list[TokenUsageRecord]:
        return list(self._records)

    async def record(self, record: TokenUsageRecord) -> None:
        self._records.append(record)

    def load(self) -> list[TokenUsageRecord]:
        return self.records


class JsonlUsageRecorder:
    """Append-only JSONL usage ledger."""

    def __init__(self, ledger_path: Path) -> None:
        self._path = ledger_path
        self._path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._path

    async def record(self, record: TokenUsageRecord) -> None:
        line = record.model_dump_json() + "\n"
        # One synchronous write per record; nothing is awaited while the file is open
        with open(self._path, "a", encoding="utf-8") as f:
            f.write(line)

    def load(self) -> list[TokenUsageRecord]:
        records = []
        if self._path.exists():
            with open(self._path, encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if line:
                        records.append(TokenUsageRecord.model_validate_json(line))
        return records


class ModelUsage(BaseModel):
    model_name: str
    calls: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    total_cost: Decimal = Decimal(0)


class UsageSummary(BaseModel):
    """Aggregated usage, overall and per model."""

    calls: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    input_cost: Decimal = Decimal(0)
    output_cost: Decimal = Decimal(0)
    total_cost: Decimal = Decimal(0)
    by_model: dict[str, ModelUsage] = Field(default_factory=dict)


def summarize_usage(
    records: list[TokenUsageRecord],
    user_id: str | None = None,
    since: datetime | None = None,
) -> UsageSummary:
    """Aggregate usage records, optionally for one user or from a point in time."""
    if user_id is not None:
        records = [r for r in records if r.user_id == user_id]
    if since is not None:
        records = [r for r in records if r.timestamp >= since]

    summary = UsageSummary()
    for r in records:
        summary.calls += 1
        summary.input_tokens += r.input_tokens
        summary.output_tokens += r.output_tokens
        summary.input_cost += r.input_cost
        summary.output_cost += r.output_cost
        summary.total_cost += r.total_cost

        stats = summary.by_model.setdefault(r.model_name, ModelUsage(model_name=r.model_name))
        stats.calls += 1
        stats.input_tokens += r.input_tokens
        stats.output_tokens += r.output_tokens
        stats.total_cost += r.total_cost
    return summary
