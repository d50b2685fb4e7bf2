"""Token counting utilities using tiktoken.

Chunks are sized with the cl100k_base encoding by default, which matches
the tokenizer of most OpenAI-compatible chat models closely enough for
budgeting prompt sizes.
"""

from __future__ import annotations

from functools import lru_cache

import tiktoken

DEFAULT_ENCODING = "cl100k_base"


@lru_cache(maxsize=8)
def _get_encoder(encoding_name: str = DEFAULT_ENCODING) -> tiktoken.Encoding:
    """Get or create a tiktoken encoder (cached per encoding name).

    Args:
        encoding_name: Name of the tiktoken encoding

    Returns:
        tiktoken.Encoding instance
    """
    return tiktoken.get_encoding(encoding_name)


def count_tokens(text: str, encoding_name: str = DEFAULT_ENCODING) -> int:
    """Count tokens in text using tiktoken.

    Args:
        text: Text to count tokens for
        encoding_name: Name of the tiktoken encoding

    Returns:
        Number of tokens (0 for empty string)
    """
    if not text:
        return 0
    encoder = _get_encoder(encoding_name)
    # Special-token text in OCR output must be counted, not rejected
    return len(encoder.encode(text, disallowed_special=()))

