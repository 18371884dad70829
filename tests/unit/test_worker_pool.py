"""Unit tests for VectorizationWorkerPool."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from chunkflow.models.chunk import ChunkStatus
from chunkflow.models.retry import RetryPolicy
from chunkflow.pipeline.worker_pool import VectorizationWorkerPool, WorkerPoolConfig
from chunkflow.providers.store.memory_chunk_store import MemoryChunkStore
from chunkflow.services.job_tracker import JobTracker
from chunkflow.services.retry_manager import RetryManager
from chunkflow.utils.errors import RateLimitError, StaleClaimError, StoreUnavailableError
from tests.conftest import MockEmbeddingProvider


def _config(**overrides) -> WorkerPoolConfig:
    defaults = {
        "worker_count": 2,
        "claim_batch_size": 1,
        "embed_timeout_seconds": 1.0,
        "poll_interval_seconds": 0.01,
        "claim_backoff_seconds": 0.01,
    }
    defaults.update(overrides)
    return WorkerPoolConfig(**defaults)


class _SlowProvider(MockEmbeddingProvider):
    async def embed_single(self, text: str) -> list[float]:
        self.calls.append(text)
        await asyncio.sleep(5)
        return [0.1] * self.get_dimension()


class _FlakyProvider(MockEmbeddingProvider):
    """Raises RateLimitError for the first *failures* calls."""

    def __init__(self, failures: int, dimension: int = 8) -> None:
        super().__init__(dimension=dimension)
        self._failures = failures

    async def embed_single(self, text: str) -> list[float]:
        self.calls.append(text)
        if len(self.calls) <= self._failures:
            raise RateLimitError("429 too many requests", provider_name="mock")
        return [0.1] * self.get_dimension()


# ======================================================================
# Outcomes
# ======================================================================


class TestOutcomes:
    async def test_vectorizes_all_chunks(
        self, memory_store: MemoryChunkStore, make_chunk, embedding_provider
    ) -> None:
        chunks = [make_chunk("doc-1", i) for i in range(4)]
        await memory_store.create_batch(chunks)
        pool = VectorizationWorkerPool(memory_store, embedding_provider, RetryManager(), _config())

        stats = await pool.run_until_idle()

        assert stats.claimed == 4
        assert stats.vectorized == 4
        for chunk in chunks:
            stored = await memory_store.get_chunk(chunk.chunk_id)
            assert stored.status is ChunkStatus.VECTORIZED
            assert stored.vector == [0.1] * 8
        assert sorted(embedding_provider.calls) == sorted(c.text for c in chunks)

    async def test_dimension_mismatch_fails_without_retry(
        self, memory_store: MemoryChunkStore, make_chunk
    ) -> None:
        chunk = make_chunk()
        await memory_store.create_batch([chunk])
        provider = MockEmbeddingProvider(dimension=8, behaviour=lambda _t: [0.1] * 4)
        pool = VectorizationWorkerPool(memory_store, provider, RetryManager(), _config())

        stats = await pool.run_until_idle()

        stored = await memory_store.get_chunk(chunk.chunk_id)
        assert stored.status is ChunkStatus.FAILED
        assert stored.attempts == 0
        assert stored.vector is None
        assert "expected 8, got 4" in stored.error
        assert stats.failed == 1
        assert stats.retried == 0
        assert len(provider.calls) == 1

    async def test_explicit_expected_dimension_wins(
        self, memory_store: MemoryChunkStore, make_chunk
    ) -> None:
        chunk = make_chunk()
        await memory_store.create_batch([chunk])
        provider = MockEmbeddingProvider(dimension=8)
        pool = VectorizationWorkerPool(
            memory_store, provider, RetryManager(), _config(expected_dimension=16)
        )

        await pool.run_until_idle()

        assert (await memory_store.get_chunk(chunk.chunk_id)).status is ChunkStatus.FAILED

    async def test_empty_vector_fails(self, memory_store: MemoryChunkStore, make_chunk) -> None:
        chunk = make_chunk()
        await memory_store.create_batch([chunk])
        provider = MockEmbeddingProvider(behaviour=lambda _t: [])
        pool = VectorizationWorkerPool(memory_store, provider, RetryManager(), _config())

        await pool.run_until_idle()

        stored = await memory_store.get_chunk(chunk.chunk_id)
        assert stored.status is ChunkStatus.FAILED
        assert "MalformedResponseError" in stored.error

    @pytest.mark.parametrize("bad_value", ["x", None, float("nan"), float("inf"), True])
    async def test_non_numeric_vector_fails(
        self, memory_store: MemoryChunkStore, make_chunk, bad_value
    ) -> None:
        chunk = make_chunk()
        await memory_store.create_batch([chunk])
        provider = MockEmbeddingProvider(behaviour=lambda _t: [0.1] * 7 + [bad_value])
        pool = VectorizationWorkerPool(memory_store, provider, RetryManager(), _config())

        stats = await pool.run_until_idle()

        stored = await memory_store.get_chunk(chunk.chunk_id)
        assert stored.status is ChunkStatus.FAILED
        assert stored.attempts == 0
        assert stored.vector is None
        assert "MalformedResponseError" in stored.error
        assert stats.failed == 1

    async def test_timeout_moves_to_retrying(
        self, memory_store: MemoryChunkStore, make_chunk
    ) -> None:
        chunk = make_chunk()
        await memory_store.create_batch([chunk])
        pool = VectorizationWorkerPool(
            memory_store,
            _SlowProvider(),
            RetryManager(RetryPolicy(base_delay_seconds=30.0)),
            _config(embed_timeout_seconds=0.05),
        )

        stats = await pool.run_until_idle()

        stored = await memory_store.get_chunk(chunk.chunk_id)
        assert stored.status is ChunkStatus.RETRYING
        assert stored.attempts == 1
        assert stored.error == "embedding call timed out"
        assert stored.retry_at is not None
        assert stats.retried == 1

    async def test_transient_failure_then_success(
        self, memory_store: MemoryChunkStore, make_chunk, past_clock
    ) -> None:
        chunk = make_chunk()
        await memory_store.create_batch([chunk])
        provider = _FlakyProvider(failures=2)
        pool = VectorizationWorkerPool(
            memory_store,
            provider,
            RetryManager(RetryPolicy(max_attempts=5), clock=past_clock),
            _config(worker_count=1),
        )

        stats = await pool.run_until_idle()

        stored = await memory_store.get_chunk(chunk.chunk_id)
        assert stored.status is ChunkStatus.VECTORIZED
        assert stored.attempts == 2
        assert stored.error is None
        assert stats.retried == 2
        assert stats.vectorized == 1

    async def test_retries_exhausted(
        self, memory_store: MemoryChunkStore, make_chunk, past_clock
    ) -> None:
        chunk = make_chunk()
        await memory_store.create_batch([chunk])
        provider = _FlakyProvider(failures=100)
        pool = VectorizationWorkerPool(
            memory_store,
            provider,
            RetryManager(RetryPolicy(max_attempts=3), clock=past_clock),
            _config(worker_count=1),
        )

        stats = await pool.run_until_idle()

        stored = await memory_store.get_chunk(chunk.chunk_id)
        assert stored.status is ChunkStatus.FAILED
        assert stored.attempts == 3
        assert "429" in stored.error
        assert len(provider.calls) == 4
        assert stats.retried == 3
        assert stats.failed == 1


# ======================================================================
# Stale claims and store errors
# ======================================================================


class TestStoreInteraction:
    async def test_lost_claim_is_not_an_error(self, make_chunk, embedding_provider) -> None:
        chunk = make_chunk().claim("w-1")
        store = MagicMock()
        store.mark_vectorized = AsyncMock(side_effect=StaleClaimError(chunk.chunk_id))
        pool = VectorizationWorkerPool(store, embedding_provider, RetryManager(), _config())

        result = await pool.process_chunk(chunk, "w-1")

        assert result is None
        assert pool.stats.stale == 1
        assert pool.stats.vectorized == 0

    async def test_chunk_removed_by_reingest_counts_as_lost(
        self, memory_store: MemoryChunkStore, make_chunk, embedding_provider
    ) -> None:
        original = make_chunk("doc-1", 0)
        await memory_store.create_batch([original])
        (claimed,) = await memory_store.claim_next(1, "w-1")
        await memory_store.create_batch([make_chunk("doc-1", 0, text="rewritten")], replace=True)
        pool = VectorizationWorkerPool(memory_store, embedding_provider, RetryManager(), _config())

        assert await pool.process_chunk(claimed, "w-1") is None
        assert pool.stats.stale == 1

    async def test_claim_errors_back_off_and_continue(self, embedding_provider) -> None:
        calls = 0

        async def claim_next(limit: int, worker_id: str) -> list:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise StoreUnavailableError("database is locked")
            return []

        store = MagicMock()
        store.claim_next = claim_next
        store.get_provider_name.return_value = "mock_store"
        pool = VectorizationWorkerPool(
            store, embedding_provider, RetryManager(), _config(worker_count=1)
        )

        await pool.start()
        await asyncio.sleep(0.1)
        assert pool.is_running
        await pool.stop()

        assert calls >= 2
        assert not pool.is_running

    async def test_unexpected_batch_error_keeps_worker_alive(
        self, make_chunk, embedding_provider
    ) -> None:
        chunk = make_chunk().claim("host-w0")
        claims = 0

        async def claim_next(limit: int, worker_id: str) -> list:
            nonlocal claims
            claims += 1
            return [chunk] if claims == 1 else []

        store = MagicMock()
        store.claim_next = claim_next
        store.get_provider_name.return_value = "mock_store"
        store.mark_vectorized = AsyncMock(side_effect=RuntimeError("boom"))
        pool = VectorizationWorkerPool(
            store, embedding_provider, RetryManager(), _config(worker_count=1), "host"
        )

        await pool.start()
        await asyncio.sleep(0.1)
        assert pool.is_running
        await pool.stop()

        assert claims >= 2

    async def test_drain_error_cancels_other_workers(self, embedding_provider) -> None:
        cancelled = asyncio.Event()

        async def claim_next(limit: int, worker_id: str) -> list:
            if worker_id == "host-w0":
                await asyncio.sleep(0.01)
                raise StoreUnavailableError("database is locked")
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.set()
                raise
            return []

        store = MagicMock()
        store.claim_next = claim_next
        pool = VectorizationWorkerPool(
            store, embedding_provider, RetryManager(), _config(worker_count=2), "host"
        )

        with pytest.raises(StoreUnavailableError):
            await pool.run_until_idle()
        assert cancelled.is_set()


# ======================================================================
# Lifecycle
# ======================================================================


class TestLifecycle:
    async def test_context_manager_processes_job(
        self, memory_store: MemoryChunkStore, make_chunk, embedding_provider
    ) -> None:
        chunks = [make_chunk("doc-1", i, job_id="job-1") for i in range(5)]
        await memory_store.create_batch(chunks)
        tracker = JobTracker(memory_store)

        async with VectorizationWorkerPool(
            memory_store, embedding_provider, RetryManager(), _config(worker_count=3)
        ) as pool:
            progress = await tracker.wait_for_completion("job-1", timeout=5, poll_interval=0.01)

        assert progress.counts == {ChunkStatus.VECTORIZED: 5}
        assert pool.stats.vectorized == 5
        assert not pool.is_running

    async def test_start_twice_is_noop(self, memory_store: MemoryChunkStore, embedding_provider) -> None:
        pool = VectorizationWorkerPool(
            memory_store, embedding_provider, RetryManager(), _config(worker_count=2)
        )
        await pool.start()
        tasks = list(pool._tasks)
        await pool.start()
        assert pool._tasks == tasks
        await pool.stop()

    def test_worker_ids_are_unique(self, memory_store: MemoryChunkStore, embedding_provider) -> None:
        pool = VectorizationWorkerPool(
            memory_store,
            embedding_provider,
            RetryManager(),
            _config(worker_count=3),
            worker_prefix="host-1",
        )
        assert pool.worker_ids == ["host-1-w0", "host-1-w1", "host-1-w2"]

    def test_config_validation(self) -> None:
        with pytest.raises(ValueError):
            WorkerPoolConfig(worker_count=0)
