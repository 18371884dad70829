"""End-to-end pipeline tests: ingest -> vectorize -> track.

Uses the real stores, chunker, retry manager and worker pool; only the
tokenizer, language classifier and embedding model are replaced by
in-process doubles.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from chunkflow.config.settings import Settings
from chunkflow.main import build_pipeline
from chunkflow.models.chunk import ChunkStatus, Language, SourceMetadata
from chunkflow.models.job import JobStatus
from chunkflow.providers.store.memory_chunk_store import MemoryChunkStore
from chunkflow.providers.store.sqlite_chunk_store import SQLiteChunkStore
from chunkflow.utils.errors import RateLimitError
from tests.conftest import MockEmbeddingProvider


def _settings(**overrides) -> Settings:
    defaults = {
        "chunk_max_tokens": 6,
        "chunk_overlap_tokens": 0,
        "worker_count": 3,
        "poll_interval_seconds": 0.01,
        "claim_backoff_seconds": 0.01,
        "retry_base_delay_seconds": 0.01,
        "retry_max_delay_seconds": 0.01,
        "retry_max_attempts": 2,
    }
    defaults.update(overrides)
    return Settings(**defaults)


@pytest.fixture(params=["memory", "sqlite"])
async def store(request: pytest.FixtureRequest, tmp_path: Path):
    if request.param == "memory":
        chunk_store = MemoryChunkStore()
    else:
        chunk_store = SQLiteChunkStore(db_path=tmp_path / "chunks.db")
    await chunk_store.initialize()
    yield chunk_store
    await chunk_store.close()


class TestPipeline:
    async def test_bilingual_document_end_to_end(
        self, store, tokenizer, detector, source: SourceMetadata
    ) -> None:
        provider = MockEmbeddingProvider(dimension=4)
        pipeline = build_pipeline(
            _settings(), store=store, tokenizer=tokenizer, detector=detector, provider=provider
        )
        text = "the cat and the dog with de kat en het hond van"

        result = await pipeline.ingestion.ingest_document(text, "doc-1", source)
        assert result.chunks_created == 2
        assert await pipeline.tracker.status(result.job_id) is JobStatus.PENDING

        async with pipeline.pool:
            progress = await pipeline.tracker.wait_for_completion(
                result.job_id, timeout=10, poll_interval=0.01
            )

        assert progress.status is JobStatus.COMPLETE
        statuses = await store.get_job_chunk_statuses(result.job_id)
        chunks = sorted(
            [await store.get_chunk(chunk_id) for chunk_id in statuses],
            key=lambda c: c.chunk_index,
        )
        assert [c.metadata.language for c in chunks] == [Language.EN, Language.NL]
        for chunk in chunks:
            assert chunk.status is ChunkStatus.VECTORIZED
            assert chunk.vector == [0.1] * 4
            assert chunk.error is None

    async def test_dimension_mismatch_gives_complete_with_failures(
        self, store, tokenizer, detector, source: SourceMetadata
    ) -> None:
        def behaviour(text: str) -> list[float]:
            return [0.1] * (2 if "w8" in text.split() else 4)

        provider = MockEmbeddingProvider(dimension=4, behaviour=behaviour)
        pipeline = build_pipeline(
            _settings(chunk_max_tokens=4),
            store=store,
            tokenizer=tokenizer,
            detector=detector,
            provider=provider,
        )
        text = " ".join(f"w{i}" for i in range(12))

        result = await pipeline.ingestion.ingest_document(text, "doc-3", source)
        assert result.chunks_created == 3
        stats = await pipeline.pool.run_until_idle()

        progress = await pipeline.tracker.progress(result.job_id)
        assert progress.status is JobStatus.COMPLETE_WITH_FAILURES
        assert progress.counts == {ChunkStatus.VECTORIZED: 2, ChunkStatus.FAILED: 1}
        assert stats.retried == 0
        assert len(provider.calls) == 3

    async def test_persistent_rate_limit_exhausts_retries(
        self, store, tokenizer, detector, source: SourceMetadata
    ) -> None:
        def behaviour(text: str) -> list[float]:
            raise RateLimitError("rate limit reached", provider_name="mock")

        provider = MockEmbeddingProvider(dimension=4, behaviour=behaviour)
        pipeline = build_pipeline(
            _settings(worker_count=1),
            store=store,
            tokenizer=tokenizer,
            detector=detector,
            provider=provider,
        )

        result = await pipeline.ingestion.ingest_document("alpha beta gamma", "doc-r", source)
        async with pipeline.pool:
            progress = await pipeline.tracker.wait_for_completion(
                result.job_id, timeout=10, poll_interval=0.01
            )

        assert progress.status is JobStatus.COMPLETE_WITH_FAILURES
        (chunk_id,) = (await store.get_job_chunk_statuses(result.job_id)).keys()
        chunk = await store.get_chunk(chunk_id)
        assert chunk.attempts == 2
        assert "rate limit reached" in chunk.error
        assert len(provider.calls) == 3

    async def test_abandoned_job_is_not_processed(
        self, store, tokenizer, detector, source: SourceMetadata
    ) -> None:
        provider = MockEmbeddingProvider(dimension=4)
        pipeline = build_pipeline(
            _settings(), store=store, tokenizer=tokenizer, detector=detector, provider=provider
        )
        dropped = await pipeline.ingestion.ingest_document("one two three", "doc-a", source)
        kept = await pipeline.ingestion.ingest_document("four five six", "doc-b", source)

        await store.abandon_job(dropped.job_id)
        await pipeline.pool.run_until_idle()

        assert await pipeline.tracker.status(kept.job_id) is JobStatus.COMPLETE
        dropped_progress = await pipeline.tracker.progress(dropped.job_id)
        assert dropped_progress.status is JobStatus.PENDING
        assert dropped_progress.abandoned is True
