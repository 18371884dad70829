"""Vectorization worker pool.

A fixed number of asyncio worker tasks pull chunks from the store and turn
them into vectors:

    claim_next ──> embed_single (timeout) ──> validate dimension
        │                 │                        │
        │                 └── error ───────────────┴──> RetryManager.decide
        │                                                   │
        │                            mark_failed(retrying | failed)
        └── nothing claimable: sleep poll_interval           │
                                                        mark_vectorized

Every claimed chunk leaves ``processing`` before its worker moves on,
unless the claim went stale and another worker reclaimed it (the store then
rejects the late write with :class:`StaleClaimError` and the new owner
decides the outcome).

Workers never crash: a failed claim or batch is logged and the worker resumes
after ``claim_backoff_seconds``.  Stopping the pool is graceful: workers
finish the batch they hold, then exit.
"""

from __future__ import annotations

import asyncio
import contextlib
import math
import os
import socket
from dataclasses import asdict, dataclass

import structlog
from pydantic import BaseModel, ConfigDict, Field

from chunkflow.interfaces.chunk_store import IChunkStore
from chunkflow.interfaces.embedding_provider import IEmbeddingProvider
from chunkflow.models.chunk import ChunkRecord, ChunkStatus
from chunkflow.services.retry_manager import RetryManager
from chunkflow.utils.errors import (
    ChunkNotFoundError,
    DimensionMismatchError,
    MalformedResponseError,
    StaleClaimError,
    StoreError,
)
from chunkflow.utils.logging import bind_worker_context, clear_worker_context

logger = structlog.get_logger(logger_name=__name__)


class WorkerPoolConfig(BaseModel):
    """Sizing and timing knobs for :class:`VectorizationWorkerPool`."""

    model_config = ConfigDict(frozen=True)

    worker_count: int = Field(default=4, ge=1)
    claim_batch_size: int = Field(default=1, ge=1)
    embed_timeout_seconds: float = Field(default=30.0, gt=0.0)
    poll_interval_seconds: float = Field(default=1.0, ge=0.0)
    claim_backoff_seconds: float = Field(default=5.0, ge=0.0)
    # 0 = take the provider's reported dimension.
    expected_dimension: int = Field(default=0, ge=0)


@dataclass
class PoolStats:
    """Running counters across all workers of a pool."""

    claimed: int = 0
    vectorized: int = 0
    retried: int = 0
    failed: int = 0
    stale: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


def _default_worker_prefix() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


class VectorizationWorkerPool:
    """Bounded pool of asyncio workers vectorizing queued chunks.

    Parameters
    ----------
    store:
        Chunk store to claim from and write outcomes to.
    provider:
        Embedding provider.
    retry_manager:
        Decides ``retrying`` vs ``failed`` on errors.
    config:
        Pool sizing and timing.
    worker_prefix:
        Prefix for worker ids; defaults to ``<hostname>-<pid>`` so ids are
        unique across processes sharing a store.

    Usage::

        async with VectorizationWorkerPool(store, provider, retries) as pool:
            await tracker.wait_for_completion(job_id)
    """

    def __init__(
        self,
        store: IChunkStore,
        provider: IEmbeddingProvider,
        retry_manager: RetryManager,
        config: WorkerPoolConfig | None = None,
        worker_prefix: str | None = None,
    ) -> None:
        self._store = store
        self._provider = provider
        self._retry_manager = retry_manager
        self._config = config or WorkerPoolConfig()
        self._worker_prefix = worker_prefix or _default_worker_prefix()
        self._expected_dimension = self._config.expected_dimension or provider.get_dimension()
        self._stats = PoolStats()
        self._stop_event = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def stats(self) -> PoolStats:
        return self._stats

    @property
    def is_running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    @property
    def worker_ids(self) -> list[str]:
        return [f"{self._worker_prefix}-w{i}" for i in range(self._config.worker_count)]

    async def start(self) -> None:
        """Spawn the worker tasks.  Calling ``start`` on a running pool is a no-op."""
        if self.is_running:
            return
        self._stop_event.clear()
        self._tasks = [
            asyncio.create_task(self._worker_loop(worker_id), name=worker_id)
            for worker_id in self.worker_ids
        ]
        logger.info(
            "worker_pool_started",
            workers=self._config.worker_count,
            provider=self._provider.get_provider_name(),
            store=self._store.get_provider_name(),
            expected_dimension=self._expected_dimension,
        )

    async def stop(self) -> None:
        """Signal workers to stop and wait for their in-flight batches."""
        self._stop_event.set()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("worker_pool_stopped", **self._stats.as_dict())

    async def __aenter__(self) -> VectorizationWorkerPool:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    async def run_until_idle(self) -> PoolStats:
        """Process claimable chunks until none are left, then return.

        ``retrying`` chunks whose backoff has not elapsed yet are left for a
        later run.  Store errors propagate once the remaining drain tasks are
        cancelled.
        """

        async def _drain(worker_id: str) -> None:
            bind_worker_context(worker_id)
            while True:
                claimed = await self._store.claim_next(self._config.claim_batch_size, worker_id)
                if not claimed:
                    return
                await self._process_batch(claimed, worker_id)

        tasks = [asyncio.create_task(_drain(worker_id)) for worker_id in self.worker_ids]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        logger.info("worker_pool_drained", **self._stats.as_dict())
        return self._stats

    # ------------------------------------------------------------------
    # Chunk processing
    # ------------------------------------------------------------------

    async def process_chunk(self, chunk: ChunkRecord, worker_id: str) -> ChunkRecord | None:
        """Vectorize one claimed chunk and persist the outcome.

        Returns the updated record, or ``None`` if the claim went stale and
        the write was rejected.
        """
        try:
            vector = await asyncio.wait_for(
                self._provider.embed_single(chunk.text),
                timeout=self._config.embed_timeout_seconds,
            )
            self._validate_vector(vector)
        except Exception as exc:  # noqa: BLE001
            return await self._record_failure(chunk, worker_id, exc)

        try:
            updated = await self._store.mark_vectorized(chunk.chunk_id, vector, worker_id=worker_id)
        except (StaleClaimError, ChunkNotFoundError):
            self._stats.stale += 1
            logger.warning("chunk_claim_lost", chunk_id=chunk.chunk_id)
            return None

        self._stats.vectorized += 1
        logger.debug("chunk_vectorized", chunk_id=chunk.chunk_id, job_id=chunk.metadata.job_id)
        return updated

    async def _record_failure(
        self,
        chunk: ChunkRecord,
        worker_id: str,
        exc: Exception,
    ) -> ChunkRecord | None:
        decision = self._retry_manager.decide(chunk, chunk.attempts, exc)
        try:
            updated = await self._store.mark_failed(
                chunk.chunk_id,
                decision.error,
                decision.status,
                retry_at=decision.retry_at,
                worker_id=worker_id,
            )
        except (StaleClaimError, ChunkNotFoundError):
            self._stats.stale += 1
            logger.warning("chunk_claim_lost", chunk_id=chunk.chunk_id, error=decision.error)
            return None

        if updated.status is ChunkStatus.RETRYING:
            self._stats.retried += 1
        else:
            self._stats.failed += 1
        return updated

    def _validate_vector(self, vector: list[float]) -> None:
        if not vector:
            raise MalformedResponseError(
                message="provider returned an empty vector",
                provider_name=self._provider.get_provider_name(),
            )
        if not all(
            isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)
            for value in vector
        ):
            raise MalformedResponseError(
                message="provider returned a vector with non-numeric or non-finite values",
                provider_name=self._provider.get_provider_name(),
            )
        if self._expected_dimension and len(vector) != self._expected_dimension:
            raise DimensionMismatchError(
                expected=self._expected_dimension,
                actual=len(vector),
                provider_name=self._provider.get_provider_name(),
            )

    async def _process_batch(self, chunks: list[ChunkRecord], worker_id: str) -> None:
        self._stats.claimed += len(chunks)
        for chunk in chunks:
            bind_worker_context(worker_id, chunk_id=chunk.chunk_id, job_id=chunk.metadata.job_id)
            await self.process_chunk(chunk, worker_id)
        bind_worker_context(worker_id, chunk_id=None, job_id=None)

    # ------------------------------------------------------------------
    # Worker loop
    # ------------------------------------------------------------------

    async def _worker_loop(self, worker_id: str) -> None:
        bind_worker_context(worker_id)
        logger.debug("worker_started")
        try:
            while not self._stop_event.is_set():
                try:
                    claimed = await self._store.claim_next(
                        self._config.claim_batch_size, worker_id
                    )
                except StoreError as exc:
                    logger.warning(
                        "claim_failed",
                        error=str(exc),
                        backoff_s=self._config.claim_backoff_seconds,
                    )
                    await self._sleep(self._config.claim_backoff_seconds)
                    continue
                except Exception:
                    logger.exception(
                        "claim_crashed",
                        backoff_s=self._config.claim_backoff_seconds,
                    )
                    await self._sleep(self._config.claim_backoff_seconds)
                    continue

                if not claimed:
                    await self._sleep(self._config.poll_interval_seconds)
                    continue

                try:
                    await self._process_batch(claimed, worker_id)
                except StoreError as exc:
                    # Unwritten outcomes stay "processing" and are reclaimed once stale.
                    logger.warning(
                        "outcome_write_failed",
                        error=str(exc),
                        backoff_s=self._config.claim_backoff_seconds,
                    )
                    await self._sleep(self._config.claim_backoff_seconds)
                except Exception:
                    logger.exception(
                        "worker_batch_crashed",
                        backoff_s=self._config.claim_backoff_seconds,
                    )
                    await self._sleep(self._config.claim_backoff_seconds)
        finally:
            logger.debug("worker_stopped")
            clear_worker_context()

    async def _sleep(self, seconds: float) -> None:
        """Sleep up to *seconds*, waking early when the pool is stopping."""
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
