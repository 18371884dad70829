"""In-memory chunk store.

Simple, fast store suitable for tests and single-process development runs.
All mutations happen under one ``asyncio.Lock``, which is what makes
:meth:`MemoryChunkStore.claim_next` exclusive; it offers no protection across
processes.  Use :class:`~chunkflow.providers.store.sqlite_chunk_store.SQLiteChunkStore`
when workers run in separate processes.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog

from chunkflow.interfaces.chunk_store import ChunkWriteResult, IChunkStore
from chunkflow.models.chunk import ChunkRecord, ChunkStatus, utc_now
from chunkflow.utils.errors import ChunkNotFoundError, StaleClaimError

logger = structlog.get_logger(logger_name=__name__)


@dataclass
class _JobRow:
    document_id: str
    chunk_count: int
    created_at: datetime
    abandoned_at: datetime | None = None


class MemoryChunkStore(IChunkStore):
    """Dictionary-backed :class:`IChunkStore`.

    Parameters
    ----------
    stale_after_seconds:
        A ``processing`` chunk whose ``updated_at`` is older than this is
        claimable again.
    clock:
        Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        stale_after_seconds: float = 300.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._stale_after = timedelta(seconds=stale_after_seconds)
        self._clock = clock
        self._chunks: dict[str, ChunkRecord] = {}
        self._jobs: dict[str, _JobRow] = {}
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        logger.debug("memory_chunk_store_initialized")

    async def close(self) -> None:
        return None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create_batch(
        self,
        chunks: list[ChunkRecord],
        replace: bool = False,
    ) -> list[ChunkWriteResult]:
        by_document: dict[str, list[ChunkRecord]] = defaultdict(list)
        for chunk in chunks:
            by_document[chunk.document_id].append(chunk)

        results: dict[str, ChunkWriteResult] = {}
        async with self._lock:
            for document_id, doc_chunks in by_document.items():
                failures = self._validate_document_batch(document_id, doc_chunks, replace)
                if failures:
                    for chunk in doc_chunks:
                        reason = failures.get(chunk.chunk_id, "batch rolled back")
                        results[chunk.chunk_id] = ChunkWriteResult(chunk.chunk_id, False, reason)
                    logger.warning(
                        "chunk_batch_rejected",
                        document_id=document_id,
                        failures=len(failures),
                    )
                    continue

                if replace:
                    self._delete_document(document_id)
                now = self._clock()
                for chunk in doc_chunks:
                    self._chunks[chunk.chunk_id] = chunk
                    results[chunk.chunk_id] = ChunkWriteResult(chunk.chunk_id, True)
                    job = self._jobs.get(chunk.metadata.job_id)
                    if job is None:
                        self._jobs[chunk.metadata.job_id] = _JobRow(document_id, 1, now)
                    else:
                        job.chunk_count += 1
                logger.debug("chunk_batch_created", document_id=document_id, count=len(doc_chunks))

        return [results[chunk.chunk_id] for chunk in chunks]

    async def claim_next(self, limit: int, worker_id: str) -> list[ChunkRecord]:
        if limit <= 0:
            return []
        claimed: list[ChunkRecord] = []
        async with self._lock:
            now = self._clock()
            for chunk_id, chunk in self._chunks.items():
                if len(claimed) >= limit:
                    break
                if not self._is_claimable(chunk, now):
                    continue
                updated = chunk.claim(worker_id, now=now)
                self._chunks[chunk_id] = updated
                claimed.append(updated)
        return claimed

    async def mark_vectorized(
        self,
        chunk_id: str,
        vector: list[float],
        worker_id: str | None = None,
    ) -> ChunkRecord:
        async with self._lock:
            chunk = self._owned(chunk_id, worker_id)
            updated = chunk.vectorize(vector, now=self._clock())
            self._chunks[chunk_id] = updated
            return updated

    async def mark_failed(
        self,
        chunk_id: str,
        error: str,
        next_status: ChunkStatus,
        retry_at: datetime | None = None,
        worker_id: str | None = None,
    ) -> ChunkRecord:
        async with self._lock:
            chunk = self._owned(chunk_id, worker_id)
            updated = chunk.fail(error, next_status, retry_at=retry_at, now=self._clock())
            self._chunks[chunk_id] = updated
            return updated

    async def abandon_job(self, job_id: str) -> bool:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return False
            if job.abandoned_at is None:
                job.abandoned_at = self._clock()
            return True

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_job_chunk_statuses(self, job_id: str) -> dict[str, ChunkStatus]:
        return {
            chunk_id: chunk.status
            for chunk_id, chunk in self._chunks.items()
            if chunk.metadata.job_id == job_id
        }

    async def get_chunk(self, chunk_id: str) -> ChunkRecord | None:
        return self._chunks.get(chunk_id)

    async def get_document_checksums(self, document_id: str) -> set[str]:
        return {
            chunk.metadata.checksum
            for chunk in self._chunks.values()
            if chunk.document_id == document_id
        }

    async def is_job_abandoned(self, job_id: str) -> bool:
        job = self._jobs.get(job_id)
        return job is not None and job.abandoned_at is not None

    def get_provider_name(self) -> str:
        return "memory_chunk_store"

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _is_claimable(self, chunk: ChunkRecord, now: datetime) -> bool:
        job = self._jobs.get(chunk.metadata.job_id)
        if job is not None and job.abandoned_at is not None:
            return False
        if chunk.status is ChunkStatus.QUEUED:
            return True
        if chunk.status is ChunkStatus.RETRYING:
            return chunk.retry_at is not None and chunk.retry_at <= now
        if chunk.status is ChunkStatus.PROCESSING:
            return chunk.updated_at <= now - self._stale_after
        return False

    def _owned(self, chunk_id: str, worker_id: str | None) -> ChunkRecord:
        chunk = self._chunks.get(chunk_id)
        if chunk is None:
            raise ChunkNotFoundError(chunk_id, provider_name=self.get_provider_name())
        if chunk.status is not ChunkStatus.PROCESSING:
            raise StaleClaimError(chunk_id, provider_name=self.get_provider_name())
        if worker_id is not None and chunk.worker_id != worker_id:
            raise StaleClaimError(chunk_id, provider_name=self.get_provider_name())
        return chunk

    def _validate_document_batch(
        self,
        document_id: str,
        chunks: list[ChunkRecord],
        replace: bool,
    ) -> dict[str, str]:
        failures: dict[str, str] = {}
        existing_indexes = set()
        if not replace:
            existing_indexes = {
                c.chunk_index for c in self._chunks.values() if c.document_id == document_id
            }
        seen: set[int] = set()
        for chunk in chunks:
            if chunk.chunk_id in self._chunks and not (
                replace and self._chunks[chunk.chunk_id].document_id == document_id
            ):
                failures[chunk.chunk_id] = f"duplicate chunk_id {chunk.chunk_id}"
            elif chunk.chunk_index in seen or chunk.chunk_index in existing_indexes:
                failures[chunk.chunk_id] = (
                    f"duplicate chunk_index {chunk.chunk_index} for document {document_id}"
                )
            seen.add(chunk.chunk_index)
        return failures

    def _delete_document(self, document_id: str) -> None:
        for chunk_id in [c for c, r in self._chunks.items() if r.document_id == document_id]:
            del self._chunks[chunk_id]
