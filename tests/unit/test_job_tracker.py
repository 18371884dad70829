"""Unit tests for JobTracker: derived job status and progress."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from chunkflow.models.chunk import ChunkStatus
from chunkflow.models.job import JobStatus
from chunkflow.providers.store.memory_chunk_store import MemoryChunkStore
from chunkflow.services.job_tracker import JobTracker, derive_job_status
from chunkflow.utils.errors import JobNotFoundError

Q, P, V, F, R = (
    ChunkStatus.QUEUED,
    ChunkStatus.PROCESSING,
    ChunkStatus.VECTORIZED,
    ChunkStatus.FAILED,
    ChunkStatus.RETRYING,
)


class TestDeriveJobStatus:
    @pytest.mark.parametrize(
        ("statuses", "expected"),
        [
            ([Q], JobStatus.PENDING),
            ([Q, P, R], JobStatus.PENDING),
            ([V, Q], JobStatus.PARTIAL),
            ([F, R], JobStatus.PENDING),
            ([F, Q, P], JobStatus.PENDING),
            ([V, F, R], JobStatus.PARTIAL),
            ([V, V, V], JobStatus.COMPLETE),
            ([V, F, V], JobStatus.COMPLETE_WITH_FAILURES),
            ([F], JobStatus.COMPLETE_WITH_FAILURES),
        ],
    )
    def test_rules(self, statuses: list[ChunkStatus], expected: JobStatus) -> None:
        assert derive_job_status(statuses) is expected

    def test_empty_rejected(self) -> None:
        with pytest.raises(ValueError):
            derive_job_status([])


class TestJobTracker:
    async def test_unknown_job(self, memory_store: MemoryChunkStore) -> None:
        tracker = JobTracker(memory_store)
        with pytest.raises(JobNotFoundError):
            await tracker.status("ghost")
        with pytest.raises(JobNotFoundError):
            await tracker.progress("ghost")

    async def test_three_chunk_job_with_one_failure(
        self, memory_store: MemoryChunkStore, make_chunk
    ) -> None:
        chunks = [make_chunk("doc-1", i, job_id="job-3") for i in range(3)]
        await memory_store.create_batch(chunks)
        tracker = JobTracker(memory_store)
        assert await tracker.status("job-3") is JobStatus.PENDING

        claimed = await memory_store.claim_next(3, "w-1")
        await memory_store.mark_vectorized(claimed[0].chunk_id, [1.0], worker_id="w-1")
        assert await tracker.status("job-3") is JobStatus.PARTIAL

        await memory_store.mark_vectorized(claimed[1].chunk_id, [1.0], worker_id="w-1")
        await memory_store.mark_failed(
            claimed[2].chunk_id, "dimension mismatch", ChunkStatus.FAILED, worker_id="w-1"
        )
        assert await tracker.status("job-3") is JobStatus.COMPLETE_WITH_FAILURES

        progress = await tracker.progress("job-3")
        assert progress.total == 3
        assert progress.counts == {ChunkStatus.VECTORIZED: 2, ChunkStatus.FAILED: 1}
        assert progress.percent_complete == 100.0
        assert progress.abandoned is False

    async def test_tracker_is_read_only(self) -> None:
        store = MagicMock()
        store.get_job_chunk_statuses = AsyncMock(return_value={"c-1": ChunkStatus.QUEUED})
        store.is_job_abandoned = AsyncMock(return_value=True)

        progress = await JobTracker(store).progress("job-1")

        assert progress.abandoned is True
        store.mark_vectorized.assert_not_called()
        store.mark_failed.assert_not_called()
        store.claim_next.assert_not_called()


class TestWaitForCompletion:
    async def test_returns_when_finished(self) -> None:
        store = MagicMock()
        store.get_job_chunk_statuses = AsyncMock(
            side_effect=[
                {"c-1": ChunkStatus.QUEUED},
                {"c-1": ChunkStatus.PROCESSING},
                {"c-1": ChunkStatus.VECTORIZED},
            ]
        )
        store.is_job_abandoned = AsyncMock(return_value=False)

        progress = await JobTracker(store).wait_for_completion("job-1", poll_interval=0)

        assert progress.status is JobStatus.COMPLETE
        assert store.get_job_chunk_statuses.await_count == 3

    async def test_times_out(self) -> None:
        store = MagicMock()
        store.get_job_chunk_statuses = AsyncMock(return_value={"c-1": ChunkStatus.QUEUED})
        store.is_job_abandoned = AsyncMock(return_value=False)

        with pytest.raises(TimeoutError):
            await JobTracker(store).wait_for_completion("job-1", timeout=0.05, poll_interval=0.01)
