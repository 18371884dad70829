"""Abstract base class for text-embedding service providers.

Defines the contract the vectorization worker pool relies on to turn chunk
text into vectors.  Implementations may wrap OpenAI ``text-embedding-3-*``
or any OpenAI-compatible endpoint; the worker pool never imports a concrete
provider.
"""

from __future__ import annotations

from abc import ABC, abstractmethod


# Concrete implementations:
#   OpenAIEmbeddingProvider: text-embedding-3-large by default (requires API key)
# Located in: chunkflow/providers/embedding/
class IEmbeddingProvider(ABC):
    """Contract for text-embedding services used by the worker pool.

    Providers must be safe to call repeatedly with the same text: a failed
    or timed-out call is retried later by the pool.  Failures are reported
    through the :mod:`chunkflow.utils.errors` provider hierarchy so the
    retry manager can tell a rate limit from a misconfiguration.
    """

    @abstractmethod
    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Generate embedding vectors for a batch of texts.

        Parameters
        ----------
        texts:
            One or more text strings to embed.

        Returns
        -------
        list[list[float]]
            Embedding vectors corresponding positionally to *texts*.

        Raises
        ------
        chunkflow.utils.errors.TransientProviderError
            On timeouts, rate limits, and unreachable endpoints.
        chunkflow.utils.errors.PermanentProviderError
            On rejected requests or malformed responses.
        """

    @abstractmethod
    async def embed_single(self, text: str) -> list[float]:
        """Generate an embedding vector for a single text string."""

    @abstractmethod
    def get_dimension(self) -> int:
        """Return the dimensionality of the embedding vectors.

        This value must remain constant for the lifetime of the provider
        instance.  Example values: ``3072`` (``text-embedding-3-large``),
        ``1536`` (``text-embedding-3-small``).
        """

    @abstractmethod
    def get_provider_name(self) -> str:
        """Return a human-readable identifier for this embedding provider."""

    @abstractmethod
    def is_available(self) -> bool:
        """Return ``True`` if the provider is configured (credentials present)."""
