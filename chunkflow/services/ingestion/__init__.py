"""Document ingestion: **chunk -> tag -> persist**.

1. **Chunk** (chunker.py / TextChunker) -- splits the document into
   overlapping token windows.
2. **Tag** (language_detector.py / LanguageDetector) -- stamps each chunk
   with ``en``, ``nl`` or ``unknown``.
3. **Persist** (ingestion_service.py / IngestionService) -- writes the
   chunks as one ``queued`` job through :class:`IChunkStore`.

Vectorization is not part of ingestion; see :mod:`chunkflow.pipeline`.
"""

from chunkflow.services.ingestion.chunker import TextChunker
from chunkflow.services.ingestion.ingestion_service import IngestionService
from chunkflow.services.ingestion.language_detector import LanguageDetector

__all__ = [
    "IngestionService",
    "LanguageDetector",
    "TextChunker",
]
