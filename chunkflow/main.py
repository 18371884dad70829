"""Application wiring: builds every component from :class:`Settings`.

Nothing in chunkflow constructs its own collaborators; the factories here
read the settings once and inject the store, tokenizer, embedding provider
and retry policy into the services that need them.  The CLI and tests both
go through :func:`build_pipeline`.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from chunkflow.config.settings import Settings
from chunkflow.interfaces.chunk_store import IChunkStore
from chunkflow.interfaces.embedding_provider import IEmbeddingProvider
from chunkflow.interfaces.tokenizer import ITokenizer
from chunkflow.pipeline.worker_pool import VectorizationWorkerPool
from chunkflow.services.ingestion.chunker import TextChunker
from chunkflow.services.ingestion.ingestion_service import IngestionService
from chunkflow.services.ingestion.language_detector import LanguageDetector
from chunkflow.services.job_tracker import JobTracker
from chunkflow.services.retry_manager import RetryManager
from chunkflow.utils.errors import ConfigurationError

logger = structlog.get_logger(logger_name=__name__)


def build_store(settings: Settings) -> IChunkStore:
    """Return the configured chunk store (not yet initialized)."""
    backend = settings.chunk_store_backend.lower()
    if backend == "sqlite":
        from chunkflow.providers.store.sqlite_chunk_store import SQLiteChunkStore

        return SQLiteChunkStore(
            db_path=settings.chunk_db_path,
            stale_after_seconds=settings.stale_claim_seconds,
        )
    if backend == "memory":
        from chunkflow.providers.store.memory_chunk_store import MemoryChunkStore

        return MemoryChunkStore(stale_after_seconds=settings.stale_claim_seconds)
    raise ConfigurationError(f"Unknown chunk store backend: {settings.chunk_store_backend!r}")


def build_tokenizer(settings: Settings) -> ITokenizer:
    from chunkflow.providers.tokenizer.tiktoken_tokenizer import TiktokenTokenizer

    return TiktokenTokenizer(encoding_name=settings.tokenizer_encoding)


def build_embedding_provider(settings: Settings) -> IEmbeddingProvider:
    """Return the OpenAI(-compatible) embedding provider.

    Raises
    ------
    ConfigurationError
        If no API key is configured, or the model's vector dimension is
        unknown and ``EMBEDDING_DIMENSION`` is not set.
    """
    from chunkflow.providers.embedding.openai_embedding_provider import (
        OpenAIEmbeddingProvider,
    )

    provider = OpenAIEmbeddingProvider(settings=settings)
    if not provider.is_available():
        raise ConfigurationError("OPENAI_API_KEY is not set", provider_name="openai")
    if provider.get_dimension() <= 0:
        raise ConfigurationError(
            f"Unknown dimension for model {settings.openai_embedding_model!r}; "
            "set EMBEDDING_DIMENSION",
            provider_name=provider.get_provider_name(),
        )
    return provider


@dataclass
class Pipeline:
    """The assembled components sharing one store."""

    store: IChunkStore
    ingestion: IngestionService
    tracker: JobTracker
    pool: VectorizationWorkerPool | None = None


def build_pipeline(
    settings: Settings,
    *,
    store: IChunkStore | None = None,
    tokenizer: ITokenizer | None = None,
    provider: IEmbeddingProvider | None = None,
    detector: LanguageDetector | None = None,
    with_workers: bool = True,
) -> Pipeline:
    """Assemble a :class:`Pipeline` from *settings*.

    Any component passed explicitly is used as-is instead of being built.
    With ``with_workers=False`` no embedding provider is needed (ingest-only
    and status commands).
    """
    store = store or build_store(settings)
    chunker = TextChunker(
        tokenizer=tokenizer or build_tokenizer(settings),
        detector=detector or LanguageDetector(),
        config=settings.chunking_config(),
    )
    pipeline = Pipeline(
        store=store,
        ingestion=IngestionService(chunker=chunker, store=store),
        tracker=JobTracker(store),
    )

    if with_workers:
        provider = provider or build_embedding_provider(settings)
        pipeline.pool = VectorizationWorkerPool(
            store=store,
            provider=provider,
            retry_manager=RetryManager(settings.retry_policy()),
            config=settings.worker_pool_config(expected_dimension=provider.get_dimension()),
        )

    logger.info(
        "pipeline_built",
        store=store.get_provider_name(),
        provider=provider.get_provider_name() if provider else None,
        workers=settings.worker_count if with_workers else 0,
    )
    return pipeline
