"""One document through the extractor chain, consensus and validation.

Retry policy (per extractor): rate_limited and transient outcomes are
retried with exponential backoff up to the attempt ceiling; a deadline
overrun counts as transient. schema_mismatch and exhausted retries fall
through to the next extractor. fatal aborts via BatchAborted.
"""

import asyncio
import logging
import time
from collections.abc import Sequence
from datetime import datetime, timezone
from enum import Enum

from tenacity import AsyncRetrying, RetryCallState, retry_if_result, stop_after_attempt, wait_exponential

from config import settings
from consensus import ConsensusEngine, NoExtractionAvailable
from extractors import Extractor
from models import (
    BatchJob,
    DocumentRecord,
    Effort,
    ErrorKind,
    ExtractionError,
    ExtractionRequest,
    ExtractionResult,
    FailureInfo,
    JobState,
    SourceDocument,
)
from schema_spec import SchemaSpec
from scoring import DEFAULT_RUBRIC
from validator import SchemaValidator

logger = logging.getLogger(__name__)


class ConsensusMode(str, Enum):
    FALLBACK = "fallback"  # stop at the first extractor that succeeds
    ALL = "all"  # run every extractor, reconcile all successes


class BatchAborted(Exception):
    """A fatal extractor error: the whole batch must stop."""

    def __init__(self, document_id: str, error: ExtractionError):
        super().__init__(f"{document_id}: {error.extractor} reported fatal error: {error.message}")
        self.document_id = document_id
        self.error = error


def _is_retryable(outcome: ExtractionResult | ExtractionError) -> bool:
    return isinstance(outcome, ExtractionError) and outcome.retryable


class DocumentPipeline:
    def __init__(
        self,
        extractors: Sequence[Extractor],
        spec: SchemaSpec,
        mode: ConsensusMode = ConsensusMode.FALLBACK,
        consensus: ConsensusEngine | None = None,
        timeout: float | None = None,
        retry_attempts: int | None = None,
        retry_delay: float | None = None,
        retry_backoff: float | None = None,
        retry_max_delay: float | None = None,
    ):
        self.extractors = list(extractors)
        self.spec = spec
        self.mode = ConsensusMode(mode)
        self.consensus = consensus or ConsensusEngine(
            priority=[e.name for e in self.extractors],
            rubric=spec.scoring or DEFAULT_RUBRIC,
        )
        self.validator = SchemaValidator(spec)
        self._timeout = timeout if timeout is not None else settings.EXTRACT_TIMEOUT_SECONDS
        self._retry_attempts = retry_attempts if retry_attempts is not None else settings.RETRY_ATTEMPTS
        self._max_delay = retry_max_delay if retry_max_delay is not None else settings.RETRY_MAX_DELAY
        self._backoff = wait_exponential(
            multiplier=retry_delay if retry_delay is not None else settings.RETRY_DELAY,
            exp_base=retry_backoff if retry_backoff is not None else settings.RETRY_BACKOFF,
            max=self._max_delay,
        )

    async def process(self, document: SourceDocument, effort: Effort = Effort.MEDIUM) -> tuple[BatchJob, DocumentRecord]:
        """Run one document to a terminal state.

        Raises BatchAborted on a fatal extractor error; nothing is recorded
        for the document in that case.
        """
        start = time.monotonic()
        job = BatchJob(document_id=document.document_id)
        request = ExtractionRequest(
            document_id=document.document_id,
            content=document.content,
            schema_id=self.spec.name,
            effort=effort,
            filename=document.filename,
            media_type=document.media_type,
        )

        job.transition(JobState.EXTRACTING)
        candidates = await self._run_chain(request, job)

        try:
            consensus = self.consensus.reconcile(candidates)
        except NoExtractionAvailable:
            job.transition(JobState.FAILED)
            failure = _failure(job.last_error)
            logger.error("%s failed after %d attempts: [%s] %s",
                         document.document_id, job.attempts, failure.kind, failure.message)
            return job, DocumentRecord(
                document_id=document.document_id,
                schema_id=self.spec.name,
                effort=effort,
                timestamp=datetime.now(timezone.utc),
                success=False,
                state=job.state,
                attempts=job.attempts,
                error=failure,
                usage=job.usage,
                duration_seconds=round(time.monotonic() - start, 3),
            )

        job.transition(JobState.VALIDATING)
        report = self.validator.validate(consensus.tree)
        job.transition(JobState.COMPLETED)

        logger.info(
            "%s completed via %s: completeness %d%%, valid=%s, %d issues",
            document.document_id, consensus.winner, report.score, report.valid, len(report.issues),
        )
        return job, DocumentRecord(
            document_id=document.document_id,
            schema_id=self.spec.name,
            effort=effort,
            timestamp=datetime.now(timezone.utc),
            success=True,
            state=job.state,
            attempts=job.attempts,
            source=consensus.winner,
            consensus_reason=consensus.reason,
            scores=consensus.scores,
            conflicted_fields=consensus.conflicted_fields,
            tree=consensus.tree,
            usage=job.usage,
            duration_seconds=round(time.monotonic() - start, 3),
            validation=report,
        )

    async def _run_chain(self, request: ExtractionRequest, job: BatchJob) -> list[ExtractionResult]:
        candidates: list[ExtractionResult] = []
        for position, extractor in enumerate(self.extractors):
            outcome = await self._extract_with_retry(extractor, request, job)
            if isinstance(outcome, ExtractionResult):
                candidates.append(outcome)
                if self.mode is ConsensusMode.FALLBACK:
                    break
                continue

            job.last_error = outcome
            if outcome.kind is ErrorKind.FATAL:
                logger.error("%s: fatal error from %s: %s", request.document_id, extractor.name, outcome.message)
                raise BatchAborted(request.document_id, outcome)

            remaining = self.extractors[position + 1:]
            if remaining and (self.mode is ConsensusMode.ALL or not candidates):
                logger.warning(
                    "%s: %s gave up (%s), falling back to %s",
                    request.document_id, extractor.name, outcome.kind.value, remaining[0].name,
                )
        return candidates

    async def _extract_with_retry(
        self, extractor: Extractor, request: ExtractionRequest, job: BatchJob
    ) -> ExtractionResult | ExtractionError:
        async def attempt() -> ExtractionResult | ExtractionError:
            if job.attempts:
                job.transition(JobState.EXTRACTING)
            job.attempts += 1
            try:
                outcome = await asyncio.wait_for(extractor.extract(request), timeout=self._timeout)
            except asyncio.TimeoutError:
                return extractor.error(
                    ErrorKind.TRANSIENT, f"Extraction exceeded the {self._timeout:g}s deadline"
                )
            # every attempt counts, including rejected and retried ones
            job.usage = job.usage.plus(outcome.usage)
            return outcome

        retrying = AsyncRetrying(
            retry=retry_if_result(_is_retryable),
            stop=stop_after_attempt(self._retry_attempts),
            wait=self._wait,
            retry_error_callback=lambda state: state.outcome.result(),
            before_sleep=lambda state: self._log_retry(extractor, request, state),
        )
        return await retrying(attempt)

    def _wait(self, state: RetryCallState) -> float:
        """Exponential backoff, never shorter than a provider's retry-after
        and never longer than the configured maximum delay."""
        delay = self._backoff(state)
        outcome = state.outcome
        if outcome is not None and not outcome.failed:
            error = outcome.result()
            if isinstance(error, ExtractionError) and error.retry_after:
                delay = max(delay, error.retry_after)
        return min(delay, self._max_delay)

    def _log_retry(self, extractor: Extractor, request: ExtractionRequest, state: RetryCallState) -> None:
        error = state.outcome.result()
        logger.warning(
            "%s: %s %s, retrying in %.1fs (attempt %d/%d)",
            request.document_id,
            extractor.name,
            error.kind.value,
            state.next_action.sleep,  # type: ignore[union-attr]
            state.attempt_number,
            self._retry_attempts,
        )


def _failure(error: ExtractionError | None) -> FailureInfo:
    if error is None:
        return FailureInfo(kind="no_extraction_available", message="No extractor is configured")
    return FailureInfo(
        kind=error.kind.value,
        message=f"No extraction available; last error from {error.extractor}: {error.message}",
        extractor=error.extractor,
    )
