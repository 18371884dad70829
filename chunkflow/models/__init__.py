"""chunkflow domain models: re-exports all public model classes.

    - chunk.py : Chunk records, the per-chunk status machine, chunking config
    - job.py   : Derived job status, progress snapshots, ingestion results
    - retry.py : Retry policy and retry decisions
"""

from __future__ import annotations

from chunkflow.models.chunk import (
    CLAIMABLE_STATUSES,
    ChunkingConfig,
    ChunkMetadata,
    ChunkRecord,
    ChunkStatus,
    Language,
    SourceMetadata,
    TokenRange,
    compute_checksum,
    utc_now,
)
from chunkflow.models.job import IngestionResult, JobProgress, JobStatus
from chunkflow.models.retry import RetryDecision, RetryPolicy

__all__ = [
    "CLAIMABLE_STATUSES",
    "ChunkMetadata",
    "ChunkRecord",
    "ChunkStatus",
    "ChunkingConfig",
    "IngestionResult",
    "JobProgress",
    "JobStatus",
    "Language",
    "RetryDecision",
    "RetryPolicy",
    "SourceMetadata",
    "TokenRange",
    "compute_checksum",
    "utc_now",
]
