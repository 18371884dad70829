"""Interfaces to everything outside the pipeline's own logic.

    Interface            →  Concrete implementations (in chunkflow/providers/)
    ─────────────────────────────────────────────────────────────────────
    IChunkStore          →  SQLiteChunkStore, MemoryChunkStore
    IEmbeddingProvider   →  OpenAIEmbeddingProvider
    ITokenizer           →  TiktokenTokenizer
"""

from chunkflow.interfaces.chunk_store import ChunkWriteResult, IChunkStore
from chunkflow.interfaces.embedding_provider import IEmbeddingProvider
from chunkflow.interfaces.tokenizer import ITokenizer

__all__ = [
    "ChunkWriteResult",
    "IChunkStore",
    "IEmbeddingProvider",
    "ITokenizer",
]
