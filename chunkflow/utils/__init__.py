"""Utility modules for chunkflow.

- **errors** -- Exception hierarchy rooted at ChunkflowError; the retry
  manager relies on the transient/permanent split of provider errors.
- **logging** -- structlog configuration and per-worker context binding.
"""
