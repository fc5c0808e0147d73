"""Result store: one JSON document per job, written atomically.

Contract: a reader sees either the previous document or the complete new
one, never a partial write.
"""

from __future__ import annotations

import os
import re
from pathlib import Path

from propex.pipeline.models import ExtractionBatchResult

_JOB_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


class ResultStore:
    """Filesystem-backed store for ``ExtractionBatchResult`` documents."""

    def __init__(self, data_dir: Path) -> None:
        self._results_dir = data_dir / "results"
        self._signals_dir = data_dir / "signals"
        self._results_dir.mkdir(parents=True, exist_ok=True)

    @property
    def results_dir(self) -> Path:
        return self._results_dir

    def _path(self, job_id: str) -> Path:
        if not _JOB_ID_RE.match(job_id):
            raise ValueError(f"invalid job id: {job_id!r}")
        return self._results_dir / f"{job_id}.json"

    def signals_path(self, job_id: str) -> Path:
        self._path(job_id)
        return self._signals_dir / f"{job_id}.jsonl"

    def save(self, result: ExtractionBatchResult) -> Path:
        """Atomically write ``result``: write to temp file then rename."""
        path = self._path(result.job_id)
        temp_path = path.with_suffix(".tmp")
        try:
            temp_path.write_text(result.model_dump_json(indent=2), encoding="utf-8")
            os.replace(temp_path, path)
        except Exception:
            if temp_path.exists():
                temp_path.unlink()
            raise
        return path

    def load(self, job_id: str) -> ExtractionBatchResult | None:
        path = self._path(job_id)
        if not path.exists():
            return None
        return ExtractionBatchResult.model_validate_json(path.read_text(encoding="utf-8"))

    def job_ids(self) -> list[str]:
        return sorted(p.stem for p in self._results_dir.glob("*.json"))
