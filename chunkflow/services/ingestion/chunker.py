"""Token-window chunking with fixed overlap.

Splits a document into :class:`~chunkflow.models.chunk.ChunkRecord` objects
of at most ``max_tokens`` tokens each, measured with the same tokenizer the
embedding model uses.

Windows are laid out over the token stream, not over characters::

    tokens:   0 ........................................ total
    chunk 0:  [0, max)
    chunk 1:            [max - overlap, 2*max - overlap)
    chunk 2:                         [...            , total)

With ``min_tokens`` set, a window that would leave fewer than ``min_tokens``
tokens after it is shortened by the shortfall (never below ``min_tokens``),
so the remainder is spread over the last two windows instead of forming a
tiny tail.

Consecutive windows share exactly ``overlap_tokens`` tokens, the first
window starts at 0 and the last one ends at ``total``, so every token of the
document lands in at least one chunk.  Each chunk's text is the decoded
token span, and its checksum is the SHA-256 of that text.
"""

from __future__ import annotations

import uuid

import structlog

from chunkflow.interfaces.tokenizer import ITokenizer
from chunkflow.models.chunk import (
    ChunkingConfig,
    ChunkMetadata,
    ChunkRecord,
    SourceMetadata,
    TokenRange,
    compute_checksum,
    utc_now,
)
from chunkflow.services.ingestion.language_detector import LanguageDetector
from chunkflow.utils.errors import EmptyDocumentError, InvalidChunkingConfigError

logger = structlog.get_logger(logger_name=__name__)


def validate_chunking_config(config: ChunkingConfig) -> None:
    """Raise :class:`InvalidChunkingConfigError` unless *config* can make progress."""
    if config.max_tokens <= 0:
        raise InvalidChunkingConfigError(
            f"max_tokens must be positive, got {config.max_tokens}"
        )
    if config.overlap_tokens < 0:
        raise InvalidChunkingConfigError(
            f"overlap_tokens must be non-negative, got {config.overlap_tokens}"
        )
    if config.overlap_tokens >= config.max_tokens:
        raise InvalidChunkingConfigError(
            f"overlap_tokens ({config.overlap_tokens}) must be smaller than "
            f"max_tokens ({config.max_tokens})"
        )
    if config.min_tokens < 0:
        raise InvalidChunkingConfigError(
            f"min_tokens must be non-negative, got {config.min_tokens}"
        )
    if config.min_tokens and not config.overlap_tokens < config.min_tokens <= config.max_tokens:
        raise InvalidChunkingConfigError(
            f"min_tokens ({config.min_tokens}) must be greater than overlap_tokens "
            f"({config.overlap_tokens}) and at most max_tokens ({config.max_tokens})"
        )


class TextChunker:
    """Splits document text into overlapping token windows.

    Parameters
    ----------
    tokenizer:
        Tokenizer used to measure and slice the text.
    detector:
        Language detector; called once per emitted chunk.
    config:
        Window size and overlap.  Validated here, so a bad config fails at
        construction rather than at the first document.
    """

    def __init__(
        self,
        tokenizer: ITokenizer,
        detector: LanguageDetector | None = None,
        config: ChunkingConfig | None = None,
    ) -> None:
        self._config = config or ChunkingConfig()
        validate_chunking_config(self._config)
        self._tokenizer = tokenizer
        self._detector = detector or LanguageDetector()

    @property
    def config(self) -> ChunkingConfig:
        return self._config

    def chunk(
        self,
        document_text: str,
        document_id: str,
        job_id: str,
        source_metadata: SourceMetadata,
    ) -> list[ChunkRecord]:
        """Split *document_text* into ``queued`` chunk records.

        Parameters
        ----------
        document_text:
            Full document text.
        document_id:
            Owner of the chunks.
        job_id:
            Stamped into every chunk's metadata.
        source_metadata:
            Provenance copied into every chunk.

        Returns
        -------
        list[ChunkRecord]
            Chunks in emission order (``chunk_index`` 0, 1, 2, ...).

        Raises
        ------
        EmptyDocumentError
            If the text is empty or whitespace-only.
        """
        if not document_text or not document_text.strip():
            raise EmptyDocumentError(f"Document {document_id} has no text to chunk")

        tokens = self._tokenizer.encode(document_text)
        total = len(tokens)
        if total == 0:
            raise EmptyDocumentError(f"Document {document_id} produced no tokens")

        max_tokens = self._config.max_tokens
        overlap = self._config.overlap_tokens
        min_tokens = self._config.min_tokens
        source = source_metadata.model_dump()
        now = utc_now()

        chunks: list[ChunkRecord] = []
        start = 0
        while True:
            end = min(start + max_tokens, total)
            remaining = total - end
            if 0 < remaining < min_tokens:
                # Pull the window back so the tail is not a sliver.
                end = max(start + min_tokens, end - (min_tokens - remaining))
            text = self._tokenizer.decode(tokens[start:end])
            chunks.append(
                ChunkRecord(
                    chunk_id=str(uuid.uuid4()),
                    document_id=document_id,
                    chunk_index=len(chunks),
                    text=text,
                    token_count=end - start,
                    token_range=TokenRange(start=start, end=end),
                    metadata=ChunkMetadata(
                        **source,
                        language=self._detector.detect(text),
                        checksum=compute_checksum(text),
                        job_id=job_id,
                    ),
                    created_at=now,
                    updated_at=now,
                )
            )
            if end >= total:
                break
            start = end - overlap

        logger.info(
            "chunking_complete",
            document_id=document_id,
            job_id=job_id,
            total_tokens=total,
            chunks=len(chunks),
            tokenizer=self._tokenizer.get_name(),
        )
        return chunks
