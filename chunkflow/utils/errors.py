"""Custom exception hierarchy for chunkflow.

All application exceptions inherit from :class:`ChunkflowError`, which
carries an optional ``provider_name`` so error handlers can identify which
external collaborator (e.g. "openai", "sqlite") caused the failure.

The hierarchy is organized by pipeline concern:

    ChunkflowError  (base -- catch-all for any chunkflow error)
    +-- InvalidInputError            (rejected before anything is persisted)
    |   +-- EmptyDocumentError
    |   +-- InvalidChunkingConfigError
    +-- ProviderError                (embedding provider failures)
    |   +-- TransientProviderError   (retried with backoff)
    |   |   +-- ProviderTimeoutError
    |   |   +-- RateLimitError
    |   |   +-- ProviderUnavailableError
    |   +-- PermanentProviderError   (terminal on first occurrence)
    |       +-- DimensionMismatchError
    |       +-- MalformedResponseError
    +-- StoreError                   (chunk store failures)
    |   +-- StoreUnavailableError
    |   +-- ChunkNotFoundError
    |   +-- StaleClaimError
    |   +-- ChunkPersistenceError
    +-- InvalidTransitionError       (illegal chunk status change)
    +-- JobNotFoundError
    +-- ConfigurationError

Callers handle errors at the level they care about -- the retry manager
only needs to distinguish :class:`TransientProviderError` from everything
else, while the worker pool backs off on :class:`StoreUnavailableError`.
"""

from __future__ import annotations


class ChunkflowError(Exception):
    """Base exception for all chunkflow errors.

    Every subclass carries a human-readable ``message`` and an optional
    ``provider_name`` identifying which external service triggered the
    error.  ``__str__`` prefixes the provider name in brackets for
    structured log output, e.g. ``[openai] Rate limit exceeded``.
    """

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        provider_name: str | None = None,
    ) -> None:
        self._message = message
        self._provider_name = provider_name
        super().__init__(self._message)

    @property
    def message(self) -> str:
        return self._message

    @property
    def provider_name(self) -> str | None:
        return self._provider_name

    def __str__(self) -> str:
        if self._provider_name:
            return f"[{self._provider_name}] {self._message}"
        return self._message


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------

class InvalidInputError(ChunkflowError):
    """Raised when caller input is rejected before any persistence happens."""

    def __init__(
        self,
        message: str = "Invalid input",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class EmptyDocumentError(InvalidInputError):
    """Raised when a document's text is empty or whitespace-only."""

    def __init__(
        self,
        message: str = "Document text is empty",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class InvalidChunkingConfigError(InvalidInputError):
    """Raised when ``max_tokens`` / ``overlap_tokens`` cannot produce chunks."""

    def __init__(
        self,
        message: str = "Invalid chunking configuration",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


# ---------------------------------------------------------------------------
# Embedding provider errors
# ---------------------------------------------------------------------------

class ProviderError(ChunkflowError):
    """Raised when the embedding provider call fails."""

    def __init__(
        self,
        message: str = "Embedding provider call failed",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class TransientProviderError(ProviderError):
    """A provider failure that is expected to succeed on a later attempt."""

    def __init__(
        self,
        message: str = "Transient embedding provider failure",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class ProviderTimeoutError(TransientProviderError):
    """Raised when a provider call exceeds the per-call timeout."""

    def __init__(
        self,
        message: str = "Embedding provider call timed out",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class RateLimitError(TransientProviderError):
    """Raised when an API rate limit is exceeded.

    The retry manager schedules the chunk again with exponential backoff.
    """

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class ProviderUnavailableError(TransientProviderError):
    """Raised when the embedding service is unreachable or returns a 5xx."""

    def __init__(
        self,
        message: str = "Embedding provider is unavailable",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class PermanentProviderError(ProviderError):
    """A provider failure that retrying cannot fix (bad request, misconfig)."""

    def __init__(
        self,
        message: str = "Permanent embedding provider failure",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class DimensionMismatchError(PermanentProviderError):
    """Raised when a returned vector does not have the expected dimension."""

    def __init__(
        self,
        expected: int,
        actual: int,
        provider_name: str | None = None,
    ) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(
            message=f"Vector dimension mismatch: expected {expected}, got {actual}",
            provider_name=provider_name,
        )


class MalformedResponseError(PermanentProviderError):
    """Raised when the provider response carries no usable vector."""

    def __init__(
        self,
        message: str = "Embedding provider returned a malformed response",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


# ---------------------------------------------------------------------------
# Chunk store errors
# ---------------------------------------------------------------------------

class StoreError(ChunkflowError):
    """Raised when a chunk store operation fails."""

    def __init__(
        self,
        message: str = "Chunk store operation failed",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class StoreUnavailableError(StoreError):
    """Raised when the backing store cannot be reached.

    The worker pool treats this as transient and backs off its claim loop.
    """

    def __init__(
        self,
        message: str = "Chunk store is unavailable",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class ChunkNotFoundError(StoreError):
    """Raised when a chunk id does not exist in the store."""

    def __init__(self, chunk_id: str, provider_name: str | None = None) -> None:
        self.chunk_id = chunk_id
        super().__init__(message=f"Chunk {chunk_id} not found", provider_name=provider_name)


class StaleClaimError(StoreError):
    """Raised when a worker writes an outcome for a chunk it no longer owns."""

    def __init__(self, chunk_id: str, provider_name: str | None = None) -> None:
        self.chunk_id = chunk_id
        super().__init__(
            message=f"Chunk {chunk_id} is not claimed by this worker",
            provider_name=provider_name,
        )


class ChunkPersistenceError(StoreError):
    """Raised when a document's chunk batch could not be written.

    ``failures`` maps chunk id to the reason that chunk was rejected.
    """

    def __init__(
        self,
        document_id: str,
        failures: dict[str, str],
        provider_name: str | None = None,
    ) -> None:
        self.document_id = document_id
        self.failures = failures
        super().__init__(
            message=f"Chunk batch for document {document_id} was rejected "
            f"({len(failures)} chunk(s) failed)",
            provider_name=provider_name,
        )


# ---------------------------------------------------------------------------
# State machine / job errors
# ---------------------------------------------------------------------------

class InvalidTransitionError(ChunkflowError):
    """Raised when a chunk status change is not allowed by the state machine."""

    def __init__(self, current: str, target: str, chunk_id: str | None = None) -> None:
        self.current = current
        self.target = target
        self.chunk_id = chunk_id
        where = f" for chunk {chunk_id}" if chunk_id else ""
        super().__init__(message=f"Illegal transition {current} -> {target}{where}")


class JobNotFoundError(ChunkflowError):
    """Raised when a job id has no chunks in the store."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(message=f"Job {job_id} not found")


class ConfigurationError(ChunkflowError):
    """Raised when configuration is invalid or missing at startup."""

    def __init__(
        self,
        message: str = "Invalid or missing configuration",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)
