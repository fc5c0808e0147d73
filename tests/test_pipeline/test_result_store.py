"""Tests for the atomic result store."""

import pytest

from propex.pipeline.models import (
    ExtractionBatchResult,
    FetchResult,
    JobStatus,
    PropertyStatus,
    ReconciledProperty,
    Source,
)
from propex.pipeline.store import ResultStore


def _result(job_id="job_abc123", status=JobStatus.COMPLETE):
    return ExtractionBatchResult(
        job_id=job_id,
        product_name="Aduro 9",
        status=status,
        reconciled_properties=[
            ReconciledProperty(
                property_name="Gewicht",
                value="100 kg",
                confidence_percent=90,
                is_consistent_across_sources=True,
                status=PropertyStatus.FOUND,
            )
        ],
        fetch_results=[
            FetchResult(
                source=Source(url="https://aduro.de/a9"),
                tier_used="pdf",
                raw_content="Gewicht 100 kg",
                success=True,
            )
        ],
        sources_attempted=1,
        sources_succeeded=1,
    )


@pytest.fixture
def store(tmp_path):
    return ResultStore(tmp_path / "data")


class TestResultStore:
    def test_save_then_load(self, store):
        result = _result()
        store.save(result)
        loaded = store.load("job_abc123")
        assert loaded.model_dump() == result.model_dump()
        assert loaded.fetch_results[0].tier_used == "pdf"

    def test_overwrite_replaces_document(self, store):
        store.save(_result())
        store.save(_result(status=JobStatus.FAILED))
        assert store.load("job_abc123").status == JobStatus.FAILED

    def test_no_temp_files_left(self, store):
        store.save(_result())
        assert [p.name for p in store.results_dir.iterdir()] == ["job_abc123.json"]

    def test_missing_job(self, store):
        assert store.load("job_missing") is None

    @pytest.mark.parametrize("job_id", ["../etc/passwd", "job id", "", "a" * 65])
    def test_invalid_job_ids_rejected(self, store, job_id):
        with pytest.raises(ValueError):
            store.load(job_id)

    def test_job_ids_sorted(self, store):
        store.save(_result("job_b"))
        store.save(_result("job_a"))
        assert store.job_ids() == ["job_a", "job_b"]

    def test_signals_path(self, store, tmp_path):
        assert store.signals_path("job_a") == tmp_path / "data" / "signals" / "job_a.jsonl"
