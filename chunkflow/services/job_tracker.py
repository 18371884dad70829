"""Job-level progress derived from chunk statuses.

A job's status is never stored.  Every call reads the member chunks'
statuses from the store and folds them into a :class:`JobStatus`:

    =========================  ===========================================
    pending                    chunks still in flight, none vectorized yet
    partial                    some chunks vectorized, some still in flight
    complete                   every chunk vectorized
    complete_with_failures     every chunk terminal, at least one failed
    =========================  ===========================================

The tracker only reads; it never changes a chunk.
"""

from __future__ import annotations

import asyncio
import time
from collections import Counter
from collections.abc import Iterable

from chunkflow.interfaces.chunk_store import IChunkStore
from chunkflow.models.chunk import ChunkStatus
from chunkflow.models.job import JobProgress, JobStatus
from chunkflow.utils.errors import JobNotFoundError
from chunkflow.utils.logging import get_logger

logger = get_logger(__name__)


def derive_job_status(statuses: Iterable[ChunkStatus]) -> JobStatus:
    """Fold member chunk statuses into a job status.

    Raises ``ValueError`` for an empty job; callers translate that into
    :class:`JobNotFoundError`.
    """
    counts = Counter(statuses)
    total = sum(counts.values())
    if total == 0:
        raise ValueError("a job must have at least one chunk")

    vectorized = counts[ChunkStatus.VECTORIZED]
    failed = counts[ChunkStatus.FAILED]
    terminal = vectorized + failed
    if terminal < total:
        # Failed chunks alone do not move a job out of pending.
        return JobStatus.PENDING if vectorized == 0 else JobStatus.PARTIAL
    if failed:
        return JobStatus.COMPLETE_WITH_FAILURES
    return JobStatus.COMPLETE


class JobTracker:
    """Read-only view of job completion.

    Parameters
    ----------
    store:
        Chunk store the job's chunks live in.
    """

    def __init__(self, store: IChunkStore) -> None:
        self._store = store

    async def status(self, job_id: str) -> JobStatus:
        """Return the derived status of *job_id*.

        Raises
        ------
        JobNotFoundError
            If the store holds no chunks for *job_id*.
        """
        statuses = await self._store.get_job_chunk_statuses(job_id)
        if not statuses:
            raise JobNotFoundError(job_id)
        return derive_job_status(statuses.values())

    async def progress(self, job_id: str) -> JobProgress:
        """Return a per-status breakdown of *job_id*."""
        statuses = await self._store.get_job_chunk_statuses(job_id)
        if not statuses:
            raise JobNotFoundError(job_id)
        counts = Counter(statuses.values())
        return JobProgress(
            job_id=job_id,
            status=derive_job_status(statuses.values()),
            total=len(statuses),
            counts=dict(counts),
            abandoned=await self._store.is_job_abandoned(job_id),
        )

    async def wait_for_completion(
        self,
        job_id: str,
        timeout: float | None = None,
        poll_interval: float = 1.0,
    ) -> JobProgress:
        """Poll until *job_id* is finished and return its final progress.

        Raises
        ------
        TimeoutError
            If the job is still unfinished after *timeout* seconds.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            progress = await self.progress(job_id)
            if progress.status.is_finished:
                logger.info(
                    "job_finished",
                    job_id=job_id,
                    status=progress.status.value,
                    total=progress.total,
                )
                return progress
            if deadline is not None and time.monotonic() >= deadline:
                raise TimeoutError(
                    f"Job {job_id} still {progress.status.value} after {timeout}s"
                )
            await asyncio.sleep(poll_interval)
