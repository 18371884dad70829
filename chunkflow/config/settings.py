"""Application settings loaded from environment variables via pydantic-settings.

Values are read from two sources, in priority order:

  1. Environment variables, e.g. ``OPENAI_API_KEY=sk-abc123`` or
     ``WORKER_COUNT=8`` (always win)
  2. A ``.env`` file in the working directory (local development)

Field ``openai_api_key`` maps to env var ``OPENAI_API_KEY``; defaults apply
when neither source provides a value.

The typed configs consumed by the pipeline (:class:`ChunkingConfig`,
:class:`RetryPolicy`, :class:`WorkerPoolConfig`) are derived from the flat
settings by the ``*_config`` helpers so that components never read the
environment themselves.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic_settings import BaseSettings, SettingsConfigDict

from chunkflow.utils.errors import ConfigurationError

if TYPE_CHECKING:
    from chunkflow.models.chunk import ChunkingConfig
    from chunkflow.models.retry import RetryPolicy
    from chunkflow.pipeline.worker_pool import WorkerPoolConfig


class Settings(BaseSettings):
    """chunkflow application settings.

    Environment variables override defaults. Loaded from .env file when present.
    """

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # === Embedding provider ===
    # Empty string = "not configured"; the factory in main.py refuses to
    # build the OpenAI provider without a key.
    openai_api_key: str = ""
    openai_base_url: str = ""  # Custom base URL for OpenAI-compatible APIs
    openai_embedding_model: str = "text-embedding-3-large"
    embedding_dimension: int = 0  # 0 = use the model's known dimension

    # === Chunk store ===
    chunk_store_backend: str = "sqlite"  # "sqlite" or "memory"
    chunk_db_path: str = "data/chunks.db"

    # === Chunking ===
    chunk_max_tokens: int = 1000
    chunk_overlap_tokens: int = 150
    chunk_min_tokens: int = 0  # 0 = no tail balancing
    tokenizer_encoding: str = "cl100k_base"

    # === Worker pool ===
    worker_count: int = 4
    claim_batch_size: int = 1
    embed_timeout_seconds: float = 30.0
    poll_interval_seconds: float = 1.0
    claim_backoff_seconds: float = 5.0
    stale_claim_seconds: float = 300.0

    # === Retry / backoff ===
    retry_base_delay_seconds: float = 2.0
    retry_max_delay_seconds: float = 60.0
    retry_max_attempts: int = 5

    # === App config ===
    app_env: str = "development"
    log_level: str = "INFO"

    def chunking_config(self) -> ChunkingConfig:
        """Return the chunker window configuration."""
        from chunkflow.models.chunk import ChunkingConfig

        return ChunkingConfig(
            max_tokens=self.chunk_max_tokens,
            overlap_tokens=self.chunk_overlap_tokens,
            min_tokens=self.chunk_min_tokens,
        )

    def retry_policy(self) -> RetryPolicy:
        """Return the retry/backoff policy."""
        from chunkflow.models.retry import RetryPolicy

        return RetryPolicy(
            base_delay_seconds=self.retry_base_delay_seconds,
            max_delay_seconds=self.retry_max_delay_seconds,
            max_attempts=self.retry_max_attempts,
        )

    def worker_pool_config(self, expected_dimension: int) -> WorkerPoolConfig:
        """Return the worker pool configuration for vectors of *expected_dimension*.

        Raises :class:`ConfigurationError` when a worker could spend longer on
        one claimed batch than the stale-claim threshold, since the batch
        would then be reclaimed and embedded twice.
        """
        from chunkflow.pipeline.worker_pool import WorkerPoolConfig

        worst_case = self.claim_batch_size * self.embed_timeout_seconds
        if worst_case >= self.stale_claim_seconds:
            raise ConfigurationError(
                f"claim_batch_size * embed_timeout_seconds ({worst_case:g}s) must be "
                f"below stale_claim_seconds ({self.stale_claim_seconds:g}s)"
            )

        return WorkerPoolConfig(
            worker_count=self.worker_count,
            claim_batch_size=self.claim_batch_size,
            embed_timeout_seconds=self.embed_timeout_seconds,
            poll_interval_seconds=self.poll_interval_seconds,
            claim_backoff_seconds=self.claim_backoff_seconds,
            expected_dimension=expected_dimension,
        )
