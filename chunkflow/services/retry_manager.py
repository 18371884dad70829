"""Retry/backoff decisions for failed vectorization attempts.

Given a chunk that just failed, :class:`RetryManager` answers one question:
should the chunk go back in the queue (``retrying``, with a ``retry_at``
time) or is it done (``failed``)?

Classification
--------------
Retryable failures are the ones a later attempt can plausibly fix:

- :class:`TransientProviderError` and its subclasses (timeouts, rate
  limits, unavailable provider);
- :class:`asyncio.TimeoutError` from the per-call timeout;
- foreign exceptions that look transient: an HTTP ``status`` /
  ``status_code`` of 429 or 5xx, an ``ETIMEDOUT`` / ``ECONNRESET`` error
  code, or a message mentioning a rate limit.

Everything else (including :class:`PermanentProviderError` such as a vector
dimension mismatch) fails the chunk immediately.

Backoff
-------
``delay = min(max_delay, base_delay * 2 ** attempt_count)`` where
``attempt_count`` is the number of times the chunk has already been moved
to ``retrying``.  Once ``attempt_count`` reaches ``max_attempts`` the next
failure is terminal.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta

import structlog

from chunkflow.models.chunk import ChunkRecord, ChunkStatus, utc_now
from chunkflow.models.retry import RetryDecision, RetryPolicy
from chunkflow.utils.errors import PermanentProviderError, TransientProviderError

logger = structlog.get_logger(logger_name=__name__)

_TRANSIENT_ERROR_CODES = frozenset({"ETIMEDOUT", "ECONNRESET"})


def _http_status(exc: BaseException) -> int | None:
    for attr in ("status_code", "status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(exc, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def describe_failure(exc: BaseException) -> str:
    """Human-readable failure reason stored on the chunk."""
    if isinstance(exc, asyncio.TimeoutError):
        return "embedding call timed out"
    text = str(exc)
    return f"{type(exc).__name__}: {text}" if text else type(exc).__name__


class RetryManager:
    """Decides ``retrying`` vs ``failed`` for a failed chunk.

    Parameters
    ----------
    policy:
        Backoff and attempt cap.
    clock:
        Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._policy = policy or RetryPolicy()
        self._clock = clock

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def is_retryable(self, exc: BaseException) -> bool:
        """Return ``True`` if *exc* is worth another attempt."""
        if isinstance(exc, TransientProviderError):
            return True
        if isinstance(exc, PermanentProviderError):
            return False
        if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
            return True

        status = _http_status(exc)
        if status is not None and (status == 429 or status >= 500):
            return True
        code = getattr(exc, "code", None)
        if isinstance(code, str) and code.upper() in _TRANSIENT_ERROR_CODES:
            return True
        return "rate limit" in str(exc).lower()

    def backoff_delay(self, attempt_count: int) -> float:
        """Seconds to wait before the next attempt after *attempt_count* retries."""
        policy = self._policy
        # Cap the exponent first; 2 ** large would overflow float conversion.
        exponent = min(max(attempt_count, 0), 62)
        return min(policy.max_delay_seconds, policy.base_delay_seconds * (2**exponent))

    def decide(
        self,
        chunk: ChunkRecord,
        attempt_count: int,
        failure: BaseException,
    ) -> RetryDecision:
        """Classify *failure* for *chunk* and schedule the next attempt if any.

        Parameters
        ----------
        chunk:
            The chunk that failed (for logging).
        attempt_count:
            Prior ``processing -> retrying`` transitions, i.e. ``chunk.attempts``.
        failure:
            The exception raised by the embedding call or vector validation.
        """
        error = describe_failure(failure)
        retryable = self.is_retryable(failure)

        if retryable and attempt_count < self._policy.max_attempts:
            delay = self.backoff_delay(attempt_count)
            retry_at = self._clock() + timedelta(seconds=delay)
            logger.info(
                "chunk_retry_scheduled",
                chunk_id=chunk.chunk_id,
                attempt=attempt_count + 1,
                delay_s=delay,
                error=error,
            )
            return RetryDecision(
                status=ChunkStatus.RETRYING,
                error=error,
                retry_at=retry_at,
                retryable=True,
            )

        logger.warning(
            "chunk_failed_permanently",
            chunk_id=chunk.chunk_id,
            attempts=attempt_count,
            retryable=retryable,
            error=error,
        )
        return RetryDecision(status=ChunkStatus.FAILED, error=error, retryable=retryable)
