"""
Pydantic models for fragments, domain analysis, progress sync and tutoring.

Curriculum structures (Task, Phase, LearningPath) live in
`codepath/curriculum/models.py`.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ============================================
# Ingestion / retrieval
# ============================================


class SourceFile(BaseModel):
    """One (filePath, language, content) tuple from the ingestion boundary."""

    file_path: str
    language: str = "text"
    content: str


class CodeFragment(BaseModel):
    """
    A bounded span of source text. Immutable: re-indexing changed content
    produces a new fragment id for the same slot instead of mutating this one.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    repository_id: str
    file_path: str
    ordinal: int
    start_line: int  # 1-based, inclusive
    end_line: int  # 1-based, inclusive
    language: str
    context: str = ""  # enclosing signatures / leading comment outside the window
    content: str
    content_hash: str
    token_count: int = 0

    @property
    def slot(self) -> tuple[str, str, int]:
        return (self.repository_id, self.file_path, self.ordinal)

    def embedding_text(self) -> str:
        parts = [f"# {self.file_path} (lines {self.start_line}-{self.end_line})"]
        if self.context:
            parts.append(self.context)
        parts.append(self.content)
        return "\n".join(parts)


FragmentStatus = Literal["indexed", "index_pending"]


class ScoredFragment(BaseModel):
    fragment: CodeFragment
    score: float


class IndexReport(BaseModel):
    """Per-batch outcome. Partial success is reported, never collapsed."""

    succeeded: int = 0
    unchanged: int = 0
    retired: int = 0
    pending: int = 0
    failed: int = 0
    pending_ids: list[str] = Field(default_factory=list)

    def merge(self, other: "IndexReport") -> "IndexReport":
        return IndexReport(
            succeeded=self.succeeded + other.succeeded,
            unchanged=self.unchanged + other.unchanged,
            retired=self.retired + other.retired,
            pending=self.pending + other.pending,
            failed=self.failed + other.failed,
            pending_ids=self.pending_ids + other.pending_ids,
        )


class RejectedFile(BaseModel):
    file_path: str
    reason: str


class IngestionReport(BaseModel):
    repository_id: str
    files_received: int = 0
    files_accepted: int = 0
    files_rejected: int = 0
    rejected: list[RejectedFile] = Field(default_factory=list)
    fragments_succeeded: int = 0
    fragments_unchanged: int = 0
    fragments_retired: int = 0
    fragments_pending: int = 0
    fragments_failed: int = 0
    status: Literal["ready", "partial", "failed"] = "ready"


# ============================================
# Domain analysis
# ============================================

ComplexityRating = Literal["beginner", "intermediate", "advanced"]


class Domain(BaseModel):
    name: str
    files: list[str]
    key_files: list[str] = Field(default_factory=list)
    complexity_score: float = 0.0
    complexity: ComplexityRating = "beginner"
    position: int = 0  # lower = more foundational
    total_lines: int = 0
    representative_fragment_ids: list[str] = Field(default_factory=list)


class DomainAnalysis(BaseModel):
    repository_id: str
    domains: list[Domain]
    file_imports: dict[str, list[str]] = Field(default_factory=dict)
    file_lines: dict[str, int] = Field(default_factory=dict)
    domain_dependencies: dict[str, list[str]] = Field(default_factory=dict)

    def domain(self, name: str) -> Domain | None:
        for domain in self.domains:
            if domain.name == name:
                return domain
        return None


# ============================================
# Progress sync
# ============================================

ProgressStatus = Literal["not_started", "in_progress", "completed", "blocked"]
PROGRESS_STATUSES: tuple[str, ...] = ("not_started", "in_progress", "blocked", "completed")

# Terminal ordering used by the equal-revision conflict rule
STATUS_RANK: dict[str, int] = {status: rank for rank, status in enumerate(PROGRESS_STATUSES)}

UpdateOrigin = Literal["local", "external"]


class ProgressUpdate(BaseModel):
    """Inbound progress update from the external task client."""

    model_config = ConfigDict(populate_by_name=True)

    learner_id: str = Field(alias="learnerId", min_length=1)
    task_id: str = Field(alias="taskId", min_length=1)
    status: str  # validated by the coordinator so a bad value maps to InvalidStateError
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    time_spent_minutes: int = Field(default=0, alias="timeSpent", ge=0)
    revision: int = Field(ge=0)
    notes: str | None = None
    occurred_at: datetime | None = Field(default=None, alias="occurredAt")

    @field_validator("occurred_at")
    @classmethod
    def assume_utc(cls, v):
        """Naive timestamps are taken as UTC so they compare with stored ones"""
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class ProgressRecord(BaseModel):
    learner_id: str
    task_id: str
    status: ProgressStatus = "not_started"
    started_at: datetime | None = None
    completed_at: datetime | None = None
    updated_at: datetime | None = None
    confidence: float | None = None
    time_spent_minutes: int = 0
    notes: str | None = None
    revision: int = 0  # +1 per accepted write
    sync_revision: int = 0  # highest declared revision accepted
    origin: UpdateOrigin = "local"

    @property
    def key(self) -> tuple[str, str]:
        return (self.learner_id, self.task_id)


class SyncResult(BaseModel):
    accepted: bool
    reason: str
    record: ProgressRecord


class LearnerMetrics(BaseModel):
    learner_id: str
    completed_tasks: int = 0
    in_progress_tasks: int = 0
    blocked_tasks: int = 0
    average_confidence: float | None = None
    total_time_spent_minutes: int = 0
    estimated_minutes_touched: int = 0
    time_ratio: float = 0.0
    confidence_trend: float = 0.0
    risk_score: float = 0.0
    at_risk: bool = False


class ImportResult(BaseModel):
    path_id: str
    changed: bool
    version: int
    added_tasks: list[str] = Field(default_factory=list)
    removed_tasks: list[str] = Field(default_factory=list)
    changed_tasks: list[str] = Field(default_factory=list)
    reopened: list[str] = Field(default_factory=list)


# ============================================
# Tutor
# ============================================


class ConversationExchange(BaseModel):
    question: str
    answer: str
    fragment_ids: list[str] = Field(default_factory=list)
    asked_at: datetime = Field(default_factory=utc_now)


class ConversationContext(BaseModel):
    """Explicit conversation handle threaded through every ask() call."""

    id: str
    repository_id: str
    window: int = Field(default=10, ge=1)
    exchanges: list[ConversationExchange] = Field(default_factory=list)

    def append(self, exchange: ConversationExchange) -> None:
        self.exchanges.append(exchange)
        overflow = len(self.exchanges) - self.window
        if overflow > 0:
            del self.exchanges[:overflow]

    def as_messages(self) -> list[dict]:
        messages = []
        for exchange in self.exchanges:
            messages.append({"role": "user", "content": exchange.question})
            messages.append({"role": "assistant", "content": exchange.answer})
        return messages


class FragmentReference(BaseModel):
    fragment_id: str
    file_path: str
    start_line: int
    end_line: int
    score: float


class TutorResponse(BaseModel):
    answer: str
    references: list[FragmentReference] = Field(default_factory=list)
    confidence: float = 0.0
    low_confidence: bool = False
    degraded: bool = False
    conversation_id: str
