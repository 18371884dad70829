"""Abstract base class for tokenizers used by the chunker.

The chunker measures and cuts documents in tokens, not characters, so that
chunk sizes line up with the embedding model's context limits.  A tokenizer
only needs to round-trip: ``decode(encode(text)) == text``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod


class ITokenizer(ABC):
    """Contract for reversible text tokenizers."""

    @abstractmethod
    def encode(self, text: str) -> list[int]:
        """Return the token ids for *text*."""

    @abstractmethod
    def decode(self, tokens: list[int]) -> str:
        """Return the text for a token id sequence."""

    @abstractmethod
    def get_name(self) -> str:
        """Return an identifier such as ``"tiktoken:cl100k_base"``."""
