"""Tests for the batch runner: resume, bounded concurrency, fatal abort, summaries."""

import json
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from models import ErrorKind, SourceDocument
from orchestrator import BatchOrchestrator
from pipeline import DocumentPipeline
from storage import ProgressLedger, ResultStore

FAST = {"retry_attempts": 2, "retry_delay": 0, "retry_backoff": 1, "retry_max_delay": 0, "timeout": 5}


def _documents(*ids: str) -> list[SourceDocument]:
    return [SourceDocument(document_id=d, content=f"%PDF {d}".encode()) for d in ids]


def _orchestrator(extractors, spec, tmp_path: Path, concurrency: int = 3, batch_delay: float = 0.0):
    return BatchOrchestrator(
        DocumentPipeline(extractors, spec, **FAST),
        ProgressLedger(tmp_path / "progress.json"),
        ResultStore(tmp_path / "results"),
        concurrency=concurrency,
        batch_delay=batch_delay,
    )


def _ledger(tmp_path: Path) -> list[str]:
    return json.loads((tmp_path / "progress.json").read_text())["completed_documents"]


class TestResume:
    @pytest.mark.asyncio
    async def test_processes_only_remaining(self, scripted, iep_registry, iep_spec, complete_iep, tmp_path):
        ledger = ProgressLedger(tmp_path / "progress.json")
        ledger.load()
        ledger.append("a")
        ledger.append("b")
        extractor = scripted("primary", iep_registry, [complete_iep])

        outcome = await _orchestrator([extractor], iep_spec, tmp_path).run(_documents("a", "b", "c"))

        assert extractor.calls == 1
        assert outcome.skipped == 2
        assert outcome.totals.processed == 1
        assert _ledger(tmp_path) == ["a", "b", "c"]
        assert ResultStore(tmp_path / "results").load("c") is not None
        assert ResultStore(tmp_path / "results").load("a") is None

    @pytest.mark.asyncio
    async def test_no_resume_clears_ledger(self, scripted, iep_registry, iep_spec, complete_iep, tmp_path):
        ledger = ProgressLedger(tmp_path / "progress.json")
        ledger.append("a")
        extractor = scripted("primary", iep_registry, [complete_iep])

        outcome = await _orchestrator([extractor], iep_spec, tmp_path).run(_documents("a", "b"), resume=False)

        assert extractor.calls == 2
        assert outcome.skipped == 0
        assert sorted(_ledger(tmp_path)) == ["a", "b"]

    @pytest.mark.asyncio
    async def test_summary_after_resume_covers_full_history(
        self, scripted, iep_registry, iep_spec, complete_iep, tmp_path,
    ):
        first = scripted("primary", iep_registry, [complete_iep])
        await _orchestrator([first], iep_spec, tmp_path).run(_documents("a", "b"))

        second = scripted("primary", iep_registry, [complete_iep])
        outcome = await _orchestrator([second], iep_spec, tmp_path).run(_documents("a", "b", "c"))

        assert second.calls == 1
        assert outcome.totals.processed == 1
        assert outcome.summary.successful == 3
        assert outcome.summary.total_tokens == 3 * 150
        assert outcome.summary.resumed
        assert json.loads(outcome.summary_path.read_text())["successful"] == 3


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_never_more_than_pool_size_in_flight(
        self, scripted, iep_registry, iep_spec, complete_iep, tracker, tmp_path,
    ):
        extractor = scripted("primary", iep_registry, [complete_iep], delay=0.02, tracker=tracker)

        outcome = await _orchestrator([extractor], iep_spec, tmp_path, concurrency=3).run(
            _documents(*[f"doc-{i}" for i in range(8)])
        )

        assert tracker.peak == 3
        assert outcome.totals.succeeded == 8
        assert len(_ledger(tmp_path)) == 8

    @pytest.mark.asyncio
    async def test_delay_between_batches(self, scripted, iep_registry, iep_spec, complete_iep, tmp_path):
        extractor = scripted("primary", iep_registry, [complete_iep])
        orchestrator = _orchestrator([extractor], iep_spec, tmp_path, concurrency=1, batch_delay=0.05)

        outcome = await orchestrator.run(_documents("a", "b", "c"))

        assert outcome.elapsed_seconds >= 0.09

    def test_pool_size_must_be_positive(self, iep_spec, tmp_path):
        with pytest.raises(ValueError):
            _orchestrator([], iep_spec, tmp_path, concurrency=0)


class TestFailures:
    @pytest.mark.asyncio
    async def test_failed_document_is_settled(self, scripted, iep_registry, iep_spec, complete_iep, tmp_path):
        extractor = scripted("primary", iep_registry, [complete_iep], per_document={"bad": ErrorKind.RATE_LIMITED})

        outcome = await _orchestrator([extractor], iep_spec, tmp_path).run(_documents("good", "bad"))

        assert not outcome.aborted
        assert outcome.totals.succeeded == 1
        assert outcome.totals.failed == 1
        assert sorted(_ledger(tmp_path)) == ["bad", "good"]
        assert outcome.summary.by_error_kind == {"rate_limited": 1}
        assert outcome.summary.failures[0].document_id == "bad"

    @pytest.mark.asyncio
    async def test_fatal_aborts_without_corrupting_ledger(
        self, scripted, iep_registry, iep_spec, complete_iep, tmp_path,
    ):
        extractor = scripted(
            "primary", iep_registry, [complete_iep],
            per_document={"fatal": ErrorKind.FATAL},
            delay={"slow": 5.0},
        )
        orchestrator = _orchestrator([extractor], iep_spec, tmp_path, concurrency=2)

        outcome = await orchestrator.run(_documents("x", "y", "slow", "fatal", "never"))

        assert outcome.aborted
        assert "fatal" in outcome.abort_reason
        assert sorted(_ledger(tmp_path)) == ["x", "y"]
        store = ResultStore(tmp_path / "results")
        assert store.load("slow") is None
        assert store.load("fatal") is None
        assert store.load("never") is None
        assert outcome.summary.aborted
        assert outcome.summary.not_processed == 3
        assert outcome.elapsed_seconds < 5
