"""Persisted batch state: progress ledger, per-document results, run summaries.

All file access here is synchronous. Callers serialize writes (one writer
at a time); the orchestrator holds a lock around every append.
"""

import json
import logging
import os
import re
from collections.abc import Iterable
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, ValidationError

from models import DocumentRecord, Effort

logger = logging.getLogger(__name__)


def _write_atomic(path: Path, text: str) -> None:
    """Replace ``path`` in one step so readers never see a half-written file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.tmp")
    tmp.write_text(text, encoding="utf-8")
    os.replace(tmp, path)


class ProgressLedger:
    """Document ids that reached a terminal state (completed or failed)."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._completed: list[str] = []

    @property
    def completed(self) -> set[str]:
        return set(self._completed)

    def load(self) -> set[str]:
        """Read the ledger once at batch start; create it if absent."""
        if not self.path.exists():
            self._completed = []
            self._save()
            return set()
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            completed = data.get("completed_documents", [])
            if not isinstance(completed, list):
                raise ValueError(f"completed_documents is {type(completed).__name__}, not a list")
            self._completed = [str(d) for d in completed]
        except (OSError, ValueError, AttributeError) as e:
            logger.warning("Could not load progress file %s (%s), starting fresh", self.path, e)
            self._completed = []
            self._save()
        logger.info("Progress ledger %s: %d documents already settled", self.path, len(self._completed))
        return set(self._completed)

    def reset(self) -> None:
        self._completed = []
        self._save()

    def append(self, document_id: str) -> None:
        if document_id not in self._completed:
            self._completed.append(document_id)
        self._save()

    def _save(self) -> None:
        progress = {
            "completed_documents": self._completed,
            "last_updated": datetime.now(timezone.utc).isoformat(),
        }
        _write_atomic(self.path, json.dumps(progress, indent=2))


def sanitize(document_id: str) -> str:
    stem = Path(document_id).stem if Path(document_id).suffix else document_id
    return re.sub(r"[^a-zA-Z0-9_-]", "_", stem)


class FailureEntry(BaseModel):
    document_id: str
    kind: str
    message: str


class ExtractorBreakdown(BaseModel):
    documents: int = 0
    cost_usd: float = 0.0
    tokens: int = 0


class BatchSummary(BaseModel):
    generated_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    effort: Effort | None = None
    resumed: bool = False
    aborted: bool = False
    abort_reason: str | None = None
    total_documents: int
    successful: int
    failed: int
    not_processed: int
    total_cost_usd: float
    total_tokens: int
    total_processing_seconds: float
    average_cost_per_document: float
    average_tokens_per_document: float
    average_seconds_per_document: float
    average_completeness: float
    valid_documents: int
    by_extractor: dict[str, ExtractorBreakdown]
    by_error_kind: dict[str, int]
    failures: list[FailureEntry]


class ResultStore:
    """One JSON file per document plus one summary file per batch run."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def path_for(self, document_id: str) -> Path:
        return self.directory / f"{sanitize(document_id)}_extraction.json"

    def save(self, record: DocumentRecord) -> Path:
        path = self.path_for(record.document_id)
        _write_atomic(path, record.model_dump_json(indent=2))
        logger.info("Result for %s saved to %s", record.document_id, path)
        return path

    def load(self, document_id: str) -> DocumentRecord | None:
        path = self.path_for(document_id)
        if not path.exists():
            return None
        try:
            return DocumentRecord.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            logger.warning("Could not load result for %s from %s: %s", document_id, path, e)
            return None

    def document_ids(self) -> list[str]:
        """Ids of every readable persisted result, sorted."""
        ids = []
        for path in sorted(self.directory.glob("*_extraction.json")):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("Skipping unreadable result file %s: %s", path, e)
                continue
            if isinstance(data, dict) and isinstance(data.get("document_id"), str):
                ids.append(data["document_id"])
        return sorted(ids)

    def write_summary(self, summary: BatchSummary) -> Path:
        stamp = summary.generated_at.strftime("%Y-%m-%dT%H-%M-%S-%f")
        path = self.directory / f"batch_summary_{stamp}.json"
        _write_atomic(path, summary.model_dump_json(indent=2))
        logger.info("Batch summary saved to %s", path)
        return path


def build_summary(
    store: ResultStore,
    document_ids: Iterable[str],
    effort: Effort | None = None,
    resumed: bool = False,
    aborted: bool = False,
    abort_reason: str | None = None,
    started_at: datetime | None = None,
) -> BatchSummary:
    """Aggregate from the persisted per-document files, not from memory,
    so a summary after a resumed run covers the whole history."""
    ids = list(dict.fromkeys(document_ids))
    records = [r for r in (store.load(d) for d in ids) if r is not None]
    succeeded = [r for r in records if r.success]
    failed = [r for r in records if not r.success]

    # spend covers every settled document; averages are per successful one
    total_cost = round(sum(r.usage.cost_usd for r in records), 6)
    total_tokens = sum(r.usage.total_tokens for r in records)
    success_cost = sum(r.usage.cost_usd for r in succeeded)
    success_tokens = sum(r.usage.total_tokens for r in succeeded)
    total_seconds = round(sum(r.duration_seconds for r in succeeded), 3)
    n = len(succeeded)

    by_extractor: dict[str, ExtractorBreakdown] = {}
    for r in succeeded:
        entry = by_extractor.setdefault(r.source or "unknown", ExtractorBreakdown())
        entry.documents += 1
        entry.cost_usd = round(entry.cost_usd + r.usage.cost_usd, 6)
        entry.tokens += r.usage.total_tokens

    by_error_kind: dict[str, int] = {}
    failures = []
    for r in failed:
        kind = r.error.kind if r.error else "unknown"
        message = r.error.message if r.error else ""
        by_error_kind[kind] = by_error_kind.get(kind, 0) + 1
        failures.append(FailureEntry(document_id=r.document_id, kind=kind, message=message))

    reports = [r.validation for r in succeeded if r.validation is not None]
    now = datetime.now(timezone.utc)
    return BatchSummary(
        generated_at=now,
        started_at=started_at,
        finished_at=now,
        effort=effort,
        resumed=resumed,
        aborted=aborted,
        abort_reason=abort_reason,
        total_documents=len(ids),
        successful=n,
        failed=len(failed),
        not_processed=len(ids) - len(records),
        total_cost_usd=total_cost,
        total_tokens=total_tokens,
        total_processing_seconds=total_seconds,
        average_cost_per_document=round(success_cost / n, 6) if n else 0.0,
        average_tokens_per_document=round(success_tokens / n, 1) if n else 0.0,
        average_seconds_per_document=round(total_seconds / n, 3) if n else 0.0,
        average_completeness=round(sum(r.score for r in reports) / len(reports), 1) if reports else 0.0,
        valid_documents=sum(1 for r in reports if r.valid),
        by_extractor=by_extractor,
        by_error_kind=by_error_kind,
        failures=failures,
    )
