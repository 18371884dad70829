"""Document ingestion: chunk -> persist as one job.

The :class:`IngestionService` is the entry point for new documents.  It
cuts a document into chunks with :class:`TextChunker` and writes them to the
chunk store in a single :meth:`IChunkStore.create_batch` call, which is what
creates the job.  Vectorization happens later, asynchronously, in the
worker pool.

Re-ingesting the same ``document_id``:

- identical content (every chunk checksum already stored) is skipped and
  reported as ``duplicate``;
- changed content replaces the document's previous chunks atomically.
"""

from __future__ import annotations

import time
import uuid

import structlog

from chunkflow.interfaces.chunk_store import IChunkStore
from chunkflow.models.chunk import SourceMetadata
from chunkflow.models.job import IngestionResult
from chunkflow.services.ingestion.chunker import TextChunker
from chunkflow.utils.errors import ChunkPersistenceError

logger = structlog.get_logger(logger_name=__name__)


class IngestionService:
    """Chunks documents and queues them for vectorization.

    Parameters
    ----------
    chunker:
        Configured :class:`TextChunker`.
    store:
        Chunk persistence backend.
    dedupe:
        When ``True`` (default), skip documents whose content is already
        stored and replace documents whose content changed.  When ``False``
        every call inserts a fresh batch, so re-ingesting a stored document
        fails on the ``(document_id, chunk_index)`` uniqueness rule.
    """

    def __init__(self, chunker: TextChunker, store: IChunkStore, dedupe: bool = True) -> None:
        self._chunker = chunker
        self._store = store
        self._dedupe = dedupe

    async def ingest_document(
        self,
        text: str,
        document_id: str,
        source: SourceMetadata,
        job_id: str | None = None,
    ) -> IngestionResult:
        """Chunk *text* and persist the chunks as one job.

        Raises
        ------
        EmptyDocumentError
            If *text* is empty or whitespace-only.
        ChunkPersistenceError
            If the store rejected the batch; nothing was written.
        """
        start = time.monotonic()
        job_id = job_id or str(uuid.uuid4())
        chunks = self._chunker.chunk(text, document_id, job_id, source)
        total_tokens = chunks[-1].token_range.end

        replace = False
        if self._dedupe:
            existing = await self._store.get_document_checksums(document_id)
            if existing:
                candidate = {c.metadata.checksum for c in chunks}
                if candidate <= existing:
                    logger.info(
                        "ingest_duplicate_skipped",
                        document_id=document_id,
                        chunks=len(chunks),
                    )
                    return IngestionResult(
                        document_id=document_id,
                        total_tokens=total_tokens,
                        duplicate=True,
                        ingestion_time=round(time.monotonic() - start, 3),
                    )
                replace = True

        results = await self._store.create_batch(chunks, replace=replace)
        failures = {r.chunk_id: r.error or "write failed" for r in results if not r.ok}
        if failures:
            logger.error(
                "ingest_batch_failed",
                document_id=document_id,
                job_id=job_id,
                failures=len(failures),
            )
            raise ChunkPersistenceError(
                document_id,
                failures,
                provider_name=self._store.get_provider_name(),
            )

        result = IngestionResult(
            document_id=document_id,
            job_id=job_id,
            chunks_created=len(chunks),
            total_tokens=total_tokens,
            replaced=replace,
            ingestion_time=round(time.monotonic() - start, 3),
        )
        logger.info(
            "ingest_complete",
            document_id=document_id,
            job_id=job_id,
            chunks=result.chunks_created,
            tokens=total_tokens,
            replaced=replace,
            elapsed_s=result.ingestion_time,
        )
        return result
