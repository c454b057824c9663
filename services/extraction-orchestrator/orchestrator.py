"""Batch runner: drives many documents through DocumentPipeline.

Documents are launched in chunks of at most ``concurrency`` tasks with a
fixed delay between chunks. Ledger appends and result writes happen under
one lock, synchronously, after the document reached a terminal state.
A fatal extractor error cancels the in-flight chunk and stops the batch.
"""

import asyncio
import logging
import time
from collections.abc import Sequence
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel

from models import DocumentRecord, Effort, SourceDocument
from pipeline import BatchAborted, DocumentPipeline
from storage import BatchSummary, ProgressLedger, ResultStore, build_summary

logger = logging.getLogger(__name__)


class RunningTotals(BaseModel):
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    cost_usd: float = 0.0
    tokens: int = 0

    def add(self, record: DocumentRecord) -> None:
        self.processed += 1
        if record.success:
            self.succeeded += 1
        else:
            self.failed += 1
        self.cost_usd = round(self.cost_usd + record.usage.cost_usd, 6)
        self.tokens += record.usage.total_tokens


class BatchOutcome(BaseModel):
    total: int
    skipped: int
    totals: RunningTotals
    aborted: bool = False
    abort_reason: str | None = None
    elapsed_seconds: float
    summary: BatchSummary
    summary_path: Path


class BatchOrchestrator:
    def __init__(
        self,
        pipeline: DocumentPipeline,
        ledger: ProgressLedger,
        store: ResultStore,
        concurrency: int = 3,
        batch_delay: float = 3.0,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.pipeline = pipeline
        self.ledger = ledger
        self.store = store
        self.concurrency = concurrency
        self.batch_delay = batch_delay
        self._lock = asyncio.Lock()
        self._totals = RunningTotals()

    async def run(
        self,
        documents: Sequence[SourceDocument],
        effort: Effort = Effort.MEDIUM,
        resume: bool = True,
    ) -> BatchOutcome:
        started_at = datetime.now(timezone.utc)
        start = time.monotonic()
        self._totals = RunningTotals()

        if resume:
            settled = self.ledger.load()
        else:
            logger.info("Starting fresh: clearing progress ledger %s", self.ledger.path)
            self.ledger.reset()
            settled = set()

        remaining = [d for d in documents if d.document_id not in settled]
        skipped = len(documents) - len(remaining)
        logger.info(
            "Batch of %d documents: %d already settled, %d to process (concurrency=%d, effort=%s)",
            len(documents), skipped, len(remaining), self.concurrency, effort.value,
        )

        abort: BatchAborted | None = None
        chunks = [remaining[i:i + self.concurrency] for i in range(0, len(remaining), self.concurrency)]
        for index, chunk in enumerate(chunks):
            abort = await self._run_chunk(chunk, effort, len(remaining))
            if abort is not None:
                break
            if index < len(chunks) - 1 and self.batch_delay > 0:
                logger.info("Waiting %.1fs before next batch", self.batch_delay)
                await asyncio.sleep(self.batch_delay)

        summary = build_summary(
            self.store,
            [d.document_id for d in documents],
            effort=effort,
            resumed=resume and skipped > 0,
            aborted=abort is not None,
            abort_reason=str(abort) if abort else None,
            started_at=started_at,
        )
        summary_path = self.store.write_summary(summary)
        elapsed = round(time.monotonic() - start, 3)

        if abort is not None:
            logger.error("Batch aborted after %d documents: %s", self._totals.processed, abort)
        else:
            logger.info(
                "Batch finished in %.1fs: %d succeeded, %d failed, cost $%.4f",
                elapsed, self._totals.succeeded, self._totals.failed, self._totals.cost_usd,
            )
        return BatchOutcome(
            total=len(documents),
            skipped=skipped,
            totals=self._totals.model_copy(),
            aborted=abort is not None,
            abort_reason=str(abort) if abort else None,
            elapsed_seconds=elapsed,
            summary=summary,
            summary_path=summary_path,
        )

    async def _run_chunk(
        self, chunk: Sequence[SourceDocument], effort: Effort, total: int
    ) -> BatchAborted | None:
        tasks = [
            asyncio.create_task(self._process(document, effort, total), name=document.document_id)
            for document in chunk
        ]
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)

        failure = next((t.exception() for t in done if t.exception() is not None), None)
        if failure is None:
            return None

        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        if isinstance(failure, BatchAborted):
            return failure
        raise failure

    async def _process(self, document: SourceDocument, effort: Effort, total: int) -> None:
        _, record = await self.pipeline.process(document, effort)
        async with self._lock:
            # no await between these writes: the ledger entry always has a result file behind it
            self.store.save(record)
            self.ledger.append(record.document_id)
            self._totals.add(record)
            totals = self._totals

        status = "ok" if record.success else f"FAILED ({record.error.kind if record.error else 'unknown'})"
        logger.info(
            "[%d/%d] %s %s in %.1fs | %d ok, %d failed, running cost $%.4f",
            totals.processed, total, record.document_id, status, record.duration_seconds,
            totals.succeeded, totals.failed, totals.cost_usd,
        )
