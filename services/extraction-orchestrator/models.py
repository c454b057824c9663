"""Pydantic models shared by extractors, consensus, validation and the batch runner."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict


class Effort(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ErrorKind(str, Enum):
    """Classification every extractor maps its provider failures onto."""

    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    SCHEMA_MISMATCH = "schema_mismatch"
    FATAL = "fatal"

    @property
    def retryable(self) -> bool:
        return self in (ErrorKind.RATE_LIMITED, ErrorKind.TRANSIENT)


class Usage(BaseModel):
    input_tokens: int = 0
    cached_input_tokens: int = 0
    output_tokens: int = 0
    reasoning_tokens: int = 0
    cost_usd: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens + self.reasoning_tokens

    def plus(self, other: "Usage") -> "Usage":
        return Usage(
            input_tokens=self.input_tokens + other.input_tokens,
            cached_input_tokens=self.cached_input_tokens + other.cached_input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            reasoning_tokens=self.reasoning_tokens + other.reasoning_tokens,
            cost_usd=round(self.cost_usd + other.cost_usd, 6),
        )


class ExtractionRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    document_id: str
    content: bytes
    schema_id: str
    effort: Effort = Effort.MEDIUM
    filename: str | None = None
    media_type: str = "application/pdf"


class ExtractionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    extractor: str
    tree: dict[str, Any]
    usage: Usage = Usage()
    duration_seconds: float = 0.0


class ExtractionError(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: ErrorKind
    extractor: str
    message: str
    status_code: int | None = None
    retry_after: float | None = None  # seconds, when the provider says so
    usage: Usage = Usage()  # billed tokens of a response that was then rejected

    @property
    def retryable(self) -> bool:
        return self.kind.retryable


class SectionScore(BaseModel):
    section: str
    weight: float
    awarded: float = 0.0
    bonus: float = 0.0
    penalty: float = 0.0
    notes: list[str] = []


class ConfidenceScore(BaseModel):
    model_config = ConfigDict(frozen=True)

    score: float
    breakdown: dict[str, SectionScore]


class ConsensusResult(BaseModel):
    tree: dict[str, Any]
    winner: str
    reason: str  # single_candidate | highest_confidence | tie_break_priority
    scores: dict[str, ConfidenceScore]
    conflicted_fields: list[str] = []


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class IssueKind(str, Enum):
    MISSING_REQUIRED = "missing_required"
    TYPE_MISMATCH = "type_mismatch"
    UNEXPECTED_FIELD = "unexpected_field"
    ENUM_VIOLATION = "enum_violation"
    CROSS_REFERENCE = "cross_reference"
    STRUCTURAL = "structural"


class ValidationIssue(BaseModel):
    field: str
    issue: str
    severity: Severity
    kind: IssueKind


class ValidationSummary(BaseModel):
    total_fields: int
    completed_fields: int
    missing_critical_fields: list[str]
    missing_optional_fields: list[str]


class ValidationReport(BaseModel):
    valid: bool
    score: int  # 0-100 completeness
    issues: list[ValidationIssue]
    field_completeness: dict[str, bool]
    summary: ValidationSummary


class JobState(str, Enum):
    PENDING = "pending"
    EXTRACTING = "extracting"
    VALIDATING = "validating"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)


ALLOWED_TRANSITIONS: dict[JobState, set[JobState]] = {
    JobState.PENDING: {JobState.EXTRACTING},
    JobState.EXTRACTING: {JobState.EXTRACTING, JobState.VALIDATING, JobState.FAILED},
    JobState.VALIDATING: {JobState.COMPLETED, JobState.FAILED},
    JobState.COMPLETED: set(),
    JobState.FAILED: set(),
}


class InvalidTransition(Exception):
    """A job was moved between states the lifecycle does not connect."""


class FailureInfo(BaseModel):
    kind: str  # an ErrorKind value or "no_extraction_available"
    message: str
    extractor: str | None = None


class BatchJob(BaseModel):
    document_id: str
    state: JobState = JobState.PENDING
    attempts: int = 0
    last_error: ExtractionError | None = None
    usage: Usage = Usage()
    history: list[JobState] = [JobState.PENDING]

    def transition(self, new_state: JobState) -> None:
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransition(
                f"{self.document_id}: {self.state.value} -> {new_state.value} is not allowed"
            )
        self.state = new_state
        self.history.append(new_state)


class DocumentRecord(BaseModel):
    """Everything persisted for one document once it reaches a terminal state."""

    document_id: str
    schema_id: str
    effort: Effort
    timestamp: datetime
    success: bool
    state: JobState
    attempts: int
    source: str | None = None
    consensus_reason: str | None = None
    scores: dict[str, ConfidenceScore] = {}
    conflicted_fields: list[str] = []
    tree: dict[str, Any] | None = None
    error: FailureInfo | None = None
    usage: Usage = Usage()
    duration_seconds: float = 0.0
    validation: ValidationReport | None = None


class SourceDocument(BaseModel):
    """A document whose content has already been resolved to bytes or text."""

    document_id: str
    content: bytes
    filename: str | None = None
    media_type: str = "application/pdf"
