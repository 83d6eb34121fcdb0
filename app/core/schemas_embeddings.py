"""Pydantic schemas for embedding generation, jobs and backfill runs."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class EntityKind(str, Enum):
    """Entity types that carry an embedding column."""

    MESSAGE = "message"
    KNOWLEDGE = "knowledge"
    CATALOG = "catalog"
    CONTEXT = "context"


# Kinds with a queue worker pool. Context windows are embedded inline by the
# summarizer and retrofitted by the reconciler.
QUEUE_KINDS = (EntityKind.MESSAGE, EntityKind.KNOWLEDGE, EntityKind.CATALOG)


def require_queue_kind(kind: EntityKind | str) -> EntityKind:
    """Coerce a kind and reject ones no worker pool would ever claim."""
    kind = EntityKind(kind)
    if kind not in QUEUE_KINDS:
        raise ValueError(f"{kind.value} entities are not embedded through the job queue")
    return kind


class EmbeddingStatus(str, Enum):
    OK = "ok"
    SKIPPED = "skipped"
    ERROR = "error"


class SkipReason(str, Enum):
    """Reasons an entity is not embedded."""

    FEATURE_DISABLED = "feature-disabled"
    ENTITY_NOT_FOUND = "entity-not-found"
    ALREADY_EMBEDDED = "already-embedded"
    NO_CONTENT = "no-content"
    EMPTY_TEXT = "empty-text"
    EMPTY_VECTOR = "empty-vector"


# Reasons persisted as a skip marker so the row is never retried
PERSISTENT_SKIP_REASONS = frozenset(
    {SkipReason.NO_CONTENT.value, SkipReason.EMPTY_TEXT.value, SkipReason.EMPTY_VECTOR.value}
)


class EmbeddingResult(BaseModel):
    """Outcome of one Embedding Generator call."""

    status: EmbeddingStatus
    reason: str | None = None
    dimension: int | None = None
    error: str | None = None
    status_code: int | None = None
    retryable: bool = False
    throttled: bool = False
    provider: str | None = None

    @classmethod
    def ok(cls, dimension: int, provider: str | None = None) -> "EmbeddingResult":
        return cls(status=EmbeddingStatus.OK, dimension=dimension, provider=provider)

    @classmethod
    def skipped(cls, reason: str) -> "EmbeddingResult":
        return cls(status=EmbeddingStatus.SKIPPED, reason=reason)

    @classmethod
    def failed(
        cls,
        error: str,
        status_code: int | None = None,
        retryable: bool = True,
        throttled: bool = False,
        provider: str | None = None,
    ) -> "EmbeddingResult":
        return cls(
            status=EmbeddingStatus.ERROR,
            error=error,
            status_code=status_code,
            retryable=retryable,
            throttled=throttled,
            provider=provider,
        )

    @property
    def is_ok(self) -> bool:
        return self.status == EmbeddingStatus.OK

    @property
    def is_skipped(self) -> bool:
        return self.status == EmbeddingStatus.SKIPPED

    @property
    def is_error(self) -> bool:
        return self.status == EmbeddingStatus.ERROR


class SkipMarker(BaseModel):
    """JSON skip marker stored in the embedding_skip column."""

    model_config = ConfigDict(populate_by_name=True)

    skipped: bool = True
    reason: str
    skipped_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), alias="skippedAt"
    )

    def to_column(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    FAILED = "failed"


def make_job_id(kind: EntityKind | str, entity_id: int) -> str:
    """Deterministic idempotency key for an entity's embedding job."""
    kind_value = kind.value if isinstance(kind, EntityKind) else kind
    return f"{kind_value}:{entity_id}"


class EmbeddingJob(BaseModel):
    """A row of the embedding_jobs table."""

    job_id: str
    kind: EntityKind
    payload: dict[str, Any] = Field(default_factory=dict)
    status: JobStatus = JobStatus.QUEUED
    attempts: int = 0
    max_attempts: int = 3
    last_error: str | None = None
    available_at: datetime | None = None
    locked_until: datetime | None = None

    @property
    def entity_id(self) -> int:
        return int(self.payload["entity_id"])

    @property
    def text(self) -> str | None:
        return self.payload.get("text")


class EnqueueEmbeddingRequest(BaseModel):
    """Upstream producer request: enqueueEmbedding({entityId, kind, text})."""

    entity_id: int = Field(..., alias="entityId", gt=0)
    kind: EntityKind
    text: str | None = None

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("kind")
    @classmethod
    def _queue_kind(cls, value: EntityKind) -> EntityKind:
        return require_queue_kind(value)


class KindReconcileReport(BaseModel):
    """Per-kind counters for one reconciliation run."""

    kind: EntityKind
    batches: int = 0
    embedded: int = 0
    skipped: int = 0
    failed: int = 0
    by_type: dict[str, dict[str, int]] = Field(default_factory=dict)

    def count_type(self, message_type: str | None, outcome: str) -> None:
        bucket = self.by_type.setdefault(message_type or "unknown", {"embedded": 0, "skipped": 0})
        bucket[outcome] += 1


class ReconcileReport(BaseModel):
    """Outcome of a standalone reconciliation run."""

    run_id: str
    started_at: datetime
    finished_at: datetime | None = None
    aborted: bool = False
    abort_reason: str | None = None
    kinds: list[KindReconcileReport] = Field(default_factory=list)

    @property
    def total_embedded(self) -> int:
        return sum(k.embedded for k in self.kinds)
