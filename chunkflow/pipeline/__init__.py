"""Vectorization pipeline components."""

from chunkflow.pipeline.worker_pool import PoolStats, VectorizationWorkerPool, WorkerPoolConfig

__all__ = [
    "PoolStats",
    "VectorizationWorkerPool",
    "WorkerPoolConfig",
]
