"""BPE tokenizer adapter backed by ``tiktoken``.

Uses the same encodings as the OpenAI embedding models (``cl100k_base`` for
the ``text-embedding-3-*`` family), so a chunk of ``max_tokens`` tokens is
exactly ``max_tokens`` tokens to the embedding API as well.
"""

from __future__ import annotations

import structlog
import tiktoken

from chunkflow.interfaces.tokenizer import ITokenizer

logger = structlog.get_logger(logger_name=__name__)

_DEFAULT_ENCODING = "cl100k_base"


class TiktokenTokenizer(ITokenizer):
    """Tokenizer wrapping a ``tiktoken`` encoding.

    Parameters
    ----------
    encoding_name:
        A ``tiktoken`` encoding name such as ``"cl100k_base"``.
    model:
        Optional model name; when given, the encoding registered for that
        model wins over *encoding_name*.
    """

    def __init__(self, encoding_name: str = _DEFAULT_ENCODING, model: str | None = None) -> None:
        if model:
            self._encoding = tiktoken.encoding_for_model(model)
        else:
            self._encoding = tiktoken.get_encoding(encoding_name)
        logger.debug("tokenizer_loaded", encoding=self._encoding.name)

    def encode(self, text: str) -> list[int]:
        # Special-token text in user documents ("<|endoftext|>") is plain text here.
        return self._encoding.encode(text, disallowed_special=())

    def decode(self, tokens: list[int]) -> str:
        return self._encoding.decode(tokens)

    def get_name(self) -> str:
        return f"tiktoken:{self._encoding.name}"
