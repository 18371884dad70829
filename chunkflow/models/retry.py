"""Retry policy and retry decision models."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from chunkflow.models.chunk import ChunkStatus


class RetryPolicy(BaseModel):
    """Exponential backoff policy for failed chunks.

    A chunk that has already been moved to ``retrying`` ``max_attempts``
    times is failed permanently on its next failure.
    """

    model_config = ConfigDict(frozen=True)

    base_delay_seconds: float = Field(default=2.0, gt=0.0)
    max_delay_seconds: float = Field(default=60.0, gt=0.0)
    max_attempts: int = Field(default=5, ge=0)


class RetryDecision(BaseModel):
    """Outcome of :meth:`~chunkflow.services.retry_manager.RetryManager.decide`."""

    model_config = ConfigDict(frozen=True)

    status: ChunkStatus
    error: str
    retry_at: datetime | None = None
    retryable: bool = False

    @property
    def will_retry(self) -> bool:
        return self.status is ChunkStatus.RETRYING
