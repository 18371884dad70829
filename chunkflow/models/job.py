"""Job-level models: derived job status, progress snapshots, ingestion results.

A job is the set of chunks produced by one ingestion of one document.  Its
status is never stored; the job tracker derives it from the distribution of
member chunk statuses every time it is asked.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from chunkflow.models.chunk import ChunkStatus


class JobStatus(str, Enum):  # noqa: UP042
    """Completion state of a job, derived from its chunks."""

    PENDING = "pending"                                 # in flight, nothing vectorized yet
    PARTIAL = "partial"                                 # some vectorized, some in flight
    COMPLETE = "complete"                               # every chunk vectorized
    COMPLETE_WITH_FAILURES = "complete_with_failures"   # all terminal, >= 1 failed

    @property
    def is_finished(self) -> bool:
        return self in (JobStatus.COMPLETE, JobStatus.COMPLETE_WITH_FAILURES)


class JobProgress(BaseModel):
    """Point-in-time snapshot of a job's chunk distribution."""

    model_config = ConfigDict(frozen=True)

    job_id: str
    status: JobStatus
    total: int = Field(ge=0)
    counts: dict[ChunkStatus, int] = Field(default_factory=dict)
    abandoned: bool = False

    @property
    def terminal(self) -> int:
        return self.counts.get(ChunkStatus.VECTORIZED, 0) + self.counts.get(ChunkStatus.FAILED, 0)

    @property
    def percent_complete(self) -> float:
        if not self.total:
            return 0.0
        return round(self.terminal * 100.0 / self.total, 1)


class IngestionResult(BaseModel):
    """Summary of a single document ingestion.

    ``job_id`` is ``None`` when the document was skipped as a duplicate of
    content already stored for the same document.
    """

    model_config = ConfigDict(frozen=True)

    document_id: str
    job_id: str | None = None
    chunks_created: int = Field(default=0, ge=0)
    total_tokens: int = Field(default=0, ge=0)
    duplicate: bool = False
    replaced: bool = False
    ingestion_time: float = Field(default=0.0, ge=0.0)
