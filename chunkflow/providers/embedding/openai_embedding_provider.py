"""OpenAI-compatible embedding provider adapter.

Wraps the ``openai`` async client to implement :class:`IEmbeddingProvider`.
Supports both real OpenAI and OpenAI-compatible providers via a custom
``base_url`` and model name setting.

SDK exceptions are translated into the chunkflow provider hierarchy so the
retry manager can classify them:

    openai.RateLimitError           -> RateLimitError            (retry)
    openai.APITimeoutError          -> ProviderTimeoutError      (retry)
    openai.APIConnectionError       -> ProviderUnavailableError  (retry)
    openai.InternalServerError      -> ProviderUnavailableError  (retry)
    any other openai.APIError       -> PermanentProviderError    (terminal)
    response without an embedding   -> MalformedResponseError    (terminal)
"""

from __future__ import annotations

import openai
import structlog

from chunkflow.config.settings import Settings
from chunkflow.interfaces.embedding_provider import IEmbeddingProvider
from chunkflow.utils.errors import (
    MalformedResponseError,
    PermanentProviderError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    RateLimitError,
)

logger = structlog.get_logger(logger_name=__name__)

_OPENAI_BATCH_LIMIT = 2048

# Known embedding model dimensions.
_MODEL_DIMENSIONS: dict[str, int] = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
    "BAAI/bge-base-en-v1.5": 768,
    "BAAI/bge-large-en-v1.5": 1024,
    "intfloat/multilingual-e5-large-instruct": 1024,
}


class OpenAIEmbeddingProvider(IEmbeddingProvider):
    """Embedding provider backed by an OpenAI-compatible embeddings API.

    Uses ``text-embedding-3-large`` (3072 dims) by default.  When
    ``openai_base_url`` is configured, the client points at that URL.
    ``embedding_dimension`` overrides the known model dimension, which is
    required for models not listed in ``_MODEL_DIMENSIONS``.
    """

    def __init__(self, settings: Settings, client: openai.AsyncOpenAI | None = None) -> None:
        self._settings = settings
        self._api_key = settings.openai_api_key

        if client is None:
            client_kwargs: dict = {"api_key": self._api_key or "missing"}
            if settings.openai_base_url:
                client_kwargs["base_url"] = settings.openai_base_url
            # Retries are owned by the pipeline's retry manager, not the SDK.
            client_kwargs["max_retries"] = 0
            client = openai.AsyncOpenAI(**client_kwargs)

        self._client = client
        self._model = settings.openai_embedding_model or "text-embedding-3-large"
        self._dimension = settings.embedding_dimension or _MODEL_DIMENSIONS.get(self._model, 0)
        self._provider_label = (
            "openai-compatible_embedding" if settings.openai_base_url else "openai_embedding"
        )

    # ------------------------------------------------------------------
    # IEmbeddingProvider implementation
    # ------------------------------------------------------------------

    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Generate embedding vectors for a batch of texts.

        Automatically splits into batches of 2048 if the input exceeds the
        per-call limit.
        """
        if not texts:
            return []

        all_embeddings: list[list[float]] = []
        for start in range(0, len(texts), _OPENAI_BATCH_LIMIT):
            batch = texts[start : start + _OPENAI_BATCH_LIMIT]
            response = await self._create(batch)
            data = getattr(response, "data", None) or []
            if len(data) != len(batch):
                raise MalformedResponseError(
                    message=f"expected {len(batch)} embeddings, got {len(data)}",
                    provider_name=self.get_provider_name(),
                )
            for item in data:
                if not item.embedding:
                    raise MalformedResponseError(
                        message="response item carries no embedding vector",
                        provider_name=self.get_provider_name(),
                    )
                all_embeddings.append(list(item.embedding))
            logger.info(
                "openai_embedding_batch",
                model=self._model,
                provider=self._provider_label,
                batch_size=len(batch),
                tokens=response.usage.total_tokens if response.usage else None,
            )
        return all_embeddings

    async def embed_single(self, text: str) -> list[float]:
        """Generate an embedding vector for a single text string."""
        result = await self.embed([text])
        return result[0]

    def get_dimension(self) -> int:
        return self._dimension

    def get_provider_name(self) -> str:
        return self._provider_label

    def is_available(self) -> bool:
        """Return ``True`` if an API key is configured."""
        return bool(self._api_key)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _create(self, batch: list[str]):  # noqa: ANN202 – SDK response type
        """Call the embeddings endpoint, translating SDK errors."""
        name = self.get_provider_name()
        try:
            return await self._client.embeddings.create(input=batch, model=self._model)
        except openai.RateLimitError as exc:
            raise RateLimitError(message=f"rate limited: {exc}", provider_name=name) from exc
        except openai.APITimeoutError as exc:
            raise ProviderTimeoutError(message=f"request timed out: {exc}", provider_name=name) from exc
        except openai.APIConnectionError as exc:
            raise ProviderUnavailableError(message=f"connection failed: {exc}", provider_name=name) from exc
        except openai.InternalServerError as exc:
            raise ProviderUnavailableError(message=f"server error: {exc}", provider_name=name) from exc
        except openai.APIError as exc:
            raise PermanentProviderError(message=f"API error: {exc}", provider_name=name) from exc
