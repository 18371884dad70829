"""Abstract base class for chunk persistence.

Defines the narrow contract through which the ingestion service, the worker
pool and the job tracker read and write chunk records.  Implementations may
use SQLite (local), PostgreSQL, or an in-process dictionary; the pipeline
only ever depends on this interface.

Concurrency contract
--------------------
:meth:`IChunkStore.claim_next` is the single serialization point of the
pipeline.  It must move each chunk to ``processing`` for at most one caller,
even when callers live in different processes, which is why it is specified
as a per-row compare-and-swap on ``(status, updated_at)`` rather than as an
application-level lock.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime

from chunkflow.models.chunk import ChunkRecord, ChunkStatus


@dataclass(frozen=True)
class ChunkWriteResult:
    """Outcome of writing one chunk in :meth:`IChunkStore.create_batch`."""

    chunk_id: str
    ok: bool
    error: str | None = None


class IChunkStore(ABC):
    """Contract for chunk persistence services.

    All operations are async to support network-backed stores.
    """

    @abstractmethod
    async def initialize(self) -> None:
        """Create tables / indices if they don't exist.  Idempotent."""

    @abstractmethod
    async def close(self) -> None:
        """Release any held connections."""

    @abstractmethod
    async def create_batch(
        self,
        chunks: list[ChunkRecord],
        replace: bool = False,
    ) -> list[ChunkWriteResult]:
        """Persist new chunks, atomically per document.

        Either every chunk of a document is written or none is.  When any
        chunk of a document is rejected (e.g. a duplicate
        ``(document_id, chunk_index)``), every chunk of that document is
        reported as failed; the offending chunk carries the real reason.

        Parameters
        ----------
        chunks:
            Chunk records, normally all ``queued``.
        replace:
            Delete each document's existing chunks in the same transaction
            before inserting.

        Returns
        -------
        list[ChunkWriteResult]
            One result per input chunk, in input order.
        """

    @abstractmethod
    async def claim_next(self, limit: int, worker_id: str) -> list[ChunkRecord]:
        """Atomically claim up to *limit* chunks for *worker_id*.

        Eligible chunks are ``queued`` ones, ``retrying`` ones whose
        ``retry_at`` has passed, and ``processing`` ones whose claim has gone
        stale.  Chunks of abandoned jobs are never claimed.

        Returns
        -------
        list[ChunkRecord]
            The claimed chunks, now ``processing`` and owned by *worker_id*.

        Raises
        ------
        chunkflow.utils.errors.StoreUnavailableError
            When the backing store cannot be reached.
        """

    @abstractmethod
    async def mark_vectorized(
        self,
        chunk_id: str,
        vector: list[float],
        worker_id: str | None = None,
    ) -> ChunkRecord:
        """Move a ``processing`` chunk to ``vectorized``.

        Raises
        ------
        chunkflow.utils.errors.ChunkNotFoundError
            If *chunk_id* is unknown.
        chunkflow.utils.errors.StaleClaimError
            If the chunk is not ``processing`` or, when *worker_id* is given,
            is owned by a different worker.
        """

    @abstractmethod
    async def mark_failed(
        self,
        chunk_id: str,
        error: str,
        next_status: ChunkStatus,
        retry_at: datetime | None = None,
        worker_id: str | None = None,
    ) -> ChunkRecord:
        """Move a ``processing`` chunk to ``failed`` or ``retrying``.

        ``retrying`` increments the chunk's ``attempts`` counter and
        requires *retry_at*.  Raises as :meth:`mark_vectorized`.
        """

    @abstractmethod
    async def get_job_chunk_statuses(self, job_id: str) -> dict[str, ChunkStatus]:
        """Return ``chunk_id -> status`` for every chunk of *job_id*."""

    @abstractmethod
    async def get_chunk(self, chunk_id: str) -> ChunkRecord | None:
        """Return a single chunk, or ``None`` if it does not exist."""

    @abstractmethod
    async def get_document_checksums(self, document_id: str) -> set[str]:
        """Return the checksums of all chunks currently stored for *document_id*."""

    @abstractmethod
    async def abandon_job(self, job_id: str) -> bool:
        """Stop further claims for *job_id*'s chunks.

        In-flight ``processing`` chunks are left alone.  Returns ``False``
        when the job is unknown.
        """

    @abstractmethod
    async def is_job_abandoned(self, job_id: str) -> bool:
        """Return ``True`` if :meth:`abandon_job` was called for *job_id*."""

    @abstractmethod
    def get_provider_name(self) -> str:
        """Return a human-readable identifier for this store."""
