"""Chunk data models and the per-chunk status machine.

Defines Pydantic v2 models for chunk records, their token spans and
metadata, and the chunking window configuration.  All models use frozen
config: a status change produces a new :class:`ChunkRecord` through one of
its transition methods (:meth:`ChunkRecord.claim`,
:meth:`ChunkRecord.vectorize`, :meth:`ChunkRecord.fail`), each of which
re-validates the record so an invariant-violating chunk cannot exist.

Status machine::

    queued ──claim──> processing ──success──> vectorized
                        │   ^
                        │   └──claim (backoff elapsed)── retrying
                        ├──failure, retries left──────────> retrying
                        └──failure, terminal──────────────> failed

    processing ──reclaim (stale claim)──> processing

``vectorized`` and ``failed`` are terminal.
"""

from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from chunkflow.utils.errors import InvalidTransitionError


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(tz=timezone.utc)  # noqa: UP017


def compute_checksum(text: str) -> str:
    """Return the SHA-256 hex digest of *text* (UTF-8)."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Language: closed set produced by the language detector.
# ---------------------------------------------------------------------------
class Language(str, Enum):  # noqa: UP042
    """Languages a chunk can be tagged with."""

    EN = "en"
    NL = "nl"
    UNKNOWN = "unknown"


# ---------------------------------------------------------------------------
# ChunkStatus: the state machine.
# ---------------------------------------------------------------------------
class ChunkStatus(str, Enum):  # noqa: UP042
    """Lifecycle status of a single chunk."""

    QUEUED = "queued"
    PROCESSING = "processing"
    VECTORIZED = "vectorized"
    FAILED = "failed"
    RETRYING = "retrying"

    @property
    def is_terminal(self) -> bool:
        return self in (ChunkStatus.VECTORIZED, ChunkStatus.FAILED)

    def can_transition_to(self, target: ChunkStatus) -> bool:
        return target in _TRANSITIONS[self]

    def ensure_transition(self, target: ChunkStatus, chunk_id: str | None = None) -> None:
        """Raise :class:`InvalidTransitionError` unless ``self -> target`` is legal."""
        if not self.can_transition_to(target):
            raise InvalidTransitionError(self.value, target.value, chunk_id=chunk_id)


# processing -> processing is the stale-claim reclaim path.
_TRANSITIONS: dict[ChunkStatus, frozenset[ChunkStatus]] = {
    ChunkStatus.QUEUED: frozenset({ChunkStatus.PROCESSING}),
    ChunkStatus.PROCESSING: frozenset(
        {
            ChunkStatus.PROCESSING,
            ChunkStatus.VECTORIZED,
            ChunkStatus.RETRYING,
            ChunkStatus.FAILED,
        }
    ),
    ChunkStatus.RETRYING: frozenset({ChunkStatus.PROCESSING}),
    ChunkStatus.VECTORIZED: frozenset(),
    ChunkStatus.FAILED: frozenset(),
}

CLAIMABLE_STATUSES: frozenset[ChunkStatus] = frozenset(
    {ChunkStatus.QUEUED, ChunkStatus.RETRYING}
)


# ---------------------------------------------------------------------------
# Token span and metadata
# ---------------------------------------------------------------------------
class TokenRange(BaseModel):
    """Half-open token span ``[start, end)`` within the source document."""

    model_config = ConfigDict(frozen=True)

    start: int = Field(ge=0)
    end: int = Field(ge=1)

    @model_validator(mode="after")
    def _check_order(self) -> TokenRange:
        if self.end <= self.start:
            msg = f"Token range end ({self.end}) must be greater than start ({self.start})"
            raise ValueError(msg)
        return self

    @property
    def length(self) -> int:
        return self.end - self.start


class SourceMetadata(BaseModel):
    """Provenance of the document a chunk was cut from."""

    model_config = ConfigDict(frozen=True)

    source_type: str = Field(description='Kind of source, e.g. "upload", "web", "manual".')
    url: str | None = None
    filename: str | None = None
    title: str | None = None


class ChunkMetadata(SourceMetadata):
    """Source provenance plus the per-chunk fields stamped by the chunker."""

    language: Language = Language.UNKNOWN
    checksum: str = Field(description="SHA-256 hex digest of the chunk text.")
    job_id: str = Field(description="Job that created this chunk.")


class ChunkingConfig(BaseModel):
    """Window configuration for the chunker.

    Validation happens in :class:`~chunkflow.services.chunker.TextChunker`
    so that a bad config surfaces as ``InvalidChunkingConfigError``.
    """

    model_config = ConfigDict(frozen=True)

    max_tokens: int = 1000
    overlap_tokens: int = 0
    # 0 disables tail balancing.
    min_tokens: int = 0


# ---------------------------------------------------------------------------
# ChunkRecord: the unit of work.
# ---------------------------------------------------------------------------
class ChunkRecord(BaseModel):
    """A persisted chunk and its vectorization state.

    Content fields (``text``, ``token_range``, ``metadata``) never change
    after creation; only ``status``, ``vector``, ``error``, ``attempts``,
    ``retry_at``, ``worker_id`` and ``updated_at`` move, and only through
    the transition methods below.
    """

    model_config = ConfigDict(frozen=True)

    chunk_id: str
    document_id: str
    chunk_index: int = Field(ge=0)
    text: str
    token_count: int = Field(ge=1)
    token_range: TokenRange
    metadata: ChunkMetadata
    status: ChunkStatus = ChunkStatus.QUEUED
    vector: list[float] | None = None
    error: str | None = None
    attempts: int = Field(default=0, ge=0)
    retry_at: datetime | None = None
    worker_id: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def _check_invariants(self) -> ChunkRecord:
        if self.token_count != self.token_range.length:
            msg = (
                f"token_count {self.token_count} does not match "
                f"token range length {self.token_range.length}"
            )
            raise ValueError(msg)
        if self.metadata.checksum != compute_checksum(self.text):
            raise ValueError("metadata.checksum does not match chunk text")

        if self.status is ChunkStatus.VECTORIZED:
            if not self.vector:
                raise ValueError("vectorized chunk requires a vector")
            if self.error is not None:
                raise ValueError("vectorized chunk cannot carry an error")
        elif self.status in (ChunkStatus.FAILED, ChunkStatus.RETRYING):
            if self.vector is not None:
                raise ValueError(f"{self.status.value} chunk cannot carry a vector")
            if not self.error:
                raise ValueError(f"{self.status.value} chunk requires an error")
        elif self.vector is not None or self.error is not None:
            raise ValueError(f"{self.status.value} chunk must carry neither vector nor error")

        if (self.retry_at is not None) != (self.status is ChunkStatus.RETRYING):
            raise ValueError("retry_at is set exactly when status is retrying")
        if self.worker_id is not None and self.status is not ChunkStatus.PROCESSING:
            raise ValueError("worker_id is only set while processing")
        return self

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def claim(self, worker_id: str, now: datetime | None = None) -> ChunkRecord:
        """Return a copy owned by *worker_id* in ``processing``."""
        self.status.ensure_transition(ChunkStatus.PROCESSING, self.chunk_id)
        return self._evolve(
            status=ChunkStatus.PROCESSING,
            worker_id=worker_id,
            error=None,
            retry_at=None,
            updated_at=now or utc_now(),
        )

    def vectorize(self, vector: list[float], now: datetime | None = None) -> ChunkRecord:
        """Return a ``vectorized`` copy carrying *vector*."""
        self.status.ensure_transition(ChunkStatus.VECTORIZED, self.chunk_id)
        return self._evolve(
            status=ChunkStatus.VECTORIZED,
            vector=list(vector),
            error=None,
            worker_id=None,
            updated_at=now or utc_now(),
        )

    def fail(
        self,
        error: str,
        next_status: ChunkStatus,
        retry_at: datetime | None = None,
        now: datetime | None = None,
    ) -> ChunkRecord:
        """Return a ``failed`` or ``retrying`` copy with *error* as the latest reason."""
        if next_status not in (ChunkStatus.FAILED, ChunkStatus.RETRYING):
            msg = f"next_status must be failed or retrying, got {next_status.value}"
            raise ValueError(msg)
        self.status.ensure_transition(next_status, self.chunk_id)
        retrying = next_status is ChunkStatus.RETRYING
        if retrying and retry_at is None:
            raise ValueError("retrying requires retry_at")
        return self._evolve(
            status=next_status,
            vector=None,
            error=error,
            attempts=self.attempts + 1 if retrying else self.attempts,
            retry_at=retry_at if retrying else None,
            worker_id=None,
            updated_at=now or utc_now(),
        )

    def _evolve(self, **changes: Any) -> ChunkRecord:
        # model_copy() skips validation; rebuild so the invariants re-run.
        return type(self).model_validate({**self.model_dump(), **changes})
