"""Shared pytest fixtures for the chunkflow test suite."""

from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import timedelta
from pathlib import Path

import pytest

from chunkflow.interfaces.embedding_provider import IEmbeddingProvider
from chunkflow.interfaces.tokenizer import ITokenizer
from chunkflow.models.chunk import (
    ChunkMetadata,
    ChunkRecord,
    ChunkStatus,
    Language,
    SourceMetadata,
    TokenRange,
    compute_checksum,
    utc_now,
)
from chunkflow.providers.store.memory_chunk_store import MemoryChunkStore
from chunkflow.providers.store.sqlite_chunk_store import SQLiteChunkStore
from chunkflow.services.ingestion.language_detector import LanguageDetector

# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class WhitespaceTokenizer(ITokenizer):
    """One token per whitespace-separated word; decode joins with spaces.

    Stands in for tiktoken, which downloads its BPE files on first use.
    """

    def __init__(self) -> None:
        self._vocab: list[str] = []
        self._ids: dict[str, int] = {}

    def encode(self, text: str) -> list[int]:
        tokens = []
        for word in text.split():
            if word not in self._ids:
                self._ids[word] = len(self._vocab)
                self._vocab.append(word)
            tokens.append(self._ids[word])
        return tokens

    def decode(self, tokens: list[int]) -> str:
        return " ".join(self._vocab[t] for t in tokens)

    def get_name(self) -> str:
        return "whitespace"


_DUTCH_WORDS = frozenset({"de", "het", "een", "dit", "niet", "van", "zijn", "wij", "ook", "maar"})
_ENGLISH_WORDS = frozenset(
    {"the", "a", "of", "and", "with", "not", "we", "also", "but", "hello", "world"}
)


class KeywordClassifier:
    """Counts Dutch vs English function words; anything else is ``"fr"``.

    Records every sample it is asked to classify.
    """

    def __init__(self) -> None:
        self.samples: list[str] = []

    def __call__(self, sample: str) -> str:
        self.samples.append(sample)
        words = [w.strip(".,;:!?").lower() for w in sample.split()]
        dutch = sum(w in _DUTCH_WORDS for w in words)
        english = sum(w in _ENGLISH_WORDS for w in words)
        if dutch > english:
            return "nl"
        if english > 0:
            return "en"
        return "fr"


class MockEmbeddingProvider(IEmbeddingProvider):
    """Deterministic in-process embedding provider.

    Parameters
    ----------
    dimension:
        Reported dimension and default vector length.
    behaviour:
        Optional ``text -> vector`` callable; may raise to simulate
        provider failures.
    """

    def __init__(
        self,
        dimension: int = 8,
        behaviour: Callable[[str], list[float]] | None = None,
    ) -> None:
        self._dimension = dimension
        self._behaviour = behaviour
        self.calls: list[str] = []

    async def embed(self, texts: list[str]) -> list[list[float]]:
        return [await self.embed_single(t) for t in texts]

    async def embed_single(self, text: str) -> list[float]:
        self.calls.append(text)
        if self._behaviour is not None:
            return self._behaviour(text)
        return [0.1] * self._dimension

    def get_dimension(self) -> int:
        return self._dimension

    def get_provider_name(self) -> str:
        return "mock_embedding"

    def is_available(self) -> bool:
        return True


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def tokenizer() -> WhitespaceTokenizer:
    return WhitespaceTokenizer()


@pytest.fixture
def keyword_classifier() -> KeywordClassifier:
    return KeywordClassifier()


@pytest.fixture
def detector(keyword_classifier: KeywordClassifier) -> LanguageDetector:
    """Language detector backed by the keyword classifier (no langdetect)."""
    return LanguageDetector(classifier=keyword_classifier)


@pytest.fixture
def embedding_provider() -> MockEmbeddingProvider:
    return MockEmbeddingProvider(dimension=8)


@pytest.fixture
def source() -> SourceMetadata:
    return SourceMetadata(source_type="upload", filename="notes.txt", title="Notes")


@pytest.fixture
async def memory_store() -> MemoryChunkStore:
    store = MemoryChunkStore()
    await store.initialize()
    return store


@pytest.fixture
async def sqlite_store(tmp_path: Path) -> SQLiteChunkStore:
    store = SQLiteChunkStore(db_path=tmp_path / "data" / "chunks.db")
    await store.initialize()
    return store


@pytest.fixture(params=["memory", "sqlite"])
async def chunk_store(request: pytest.FixtureRequest, tmp_path: Path):
    """Both store implementations, for contract tests."""
    if request.param == "memory":
        store = MemoryChunkStore()
    else:
        store = SQLiteChunkStore(db_path=tmp_path / "chunks.db")
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
def make_chunk() -> Callable[..., ChunkRecord]:
    """Factory for valid ``queued`` chunk records.

    ``make_chunk("doc-1", 0, "some text", job_id="job-1")``
    """

    def _make(
        document_id: str = "doc-1",
        chunk_index: int = 0,
        text: str | None = None,
        job_id: str = "job-1",
        chunk_id: str | None = None,
        language: Language = Language.EN,
    ) -> ChunkRecord:
        text = text if text is not None else f"chunk {chunk_index} of {document_id}"
        start = chunk_index * 10
        return ChunkRecord(
            chunk_id=chunk_id or str(uuid.uuid4()),
            document_id=document_id,
            chunk_index=chunk_index,
            text=text,
            token_count=10,
            token_range=TokenRange(start=start, end=start + 10),
            metadata=ChunkMetadata(
                source_type="upload",
                language=language,
                checksum=compute_checksum(text),
                job_id=job_id,
            ),
            status=ChunkStatus.QUEUED,
        )

    return _make


@pytest.fixture
def past_clock() -> Callable:
    """Clock running an hour behind real time.

    Given to a RetryManager, it makes every scheduled ``retry_at`` already
    due, so retries are claimable immediately.
    """
    return lambda: utc_now() - timedelta(hours=1)
