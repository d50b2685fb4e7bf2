"""Lossless text splitting into token-bounded chunks.

Splitting is done by semantic-text-splitter (Rust text_splitter bindings).
The splitter fills each chunk with the largest semantic units that fit:
runs of newlines, then sentences, then words, then graphemes. It is built
with trim=False, so no whitespace is dropped and joining the chunks
reproduces the input.

A chunk is flagged oversized only when the splitter could not bring it
under the limit (a single grapheme counted above it). Such chunks are
never truncated.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from semantic_text_splitter import TextSplitter

from book_sanitizer.sanitize.chunker.models import Chunk, Document
from book_sanitizer.sanitize.chunker.token_counting import count_tokens

if TYPE_CHECKING:
    from collections.abc import Callable

# Tokenizer model for the default splitter (cl100k_base)
DEFAULT_TIKTOKEN_MODEL = "gpt-4"


def _create_splitter(
    max_tokens: int, token_counter: Callable[[str], int] | None
) -> TextSplitter:
    if token_counter is None:
        return TextSplitter.from_tiktoken_model(DEFAULT_TIKTOKEN_MODEL, max_tokens, trim=False)
    return TextSplitter.from_callback(token_counter, max_tokens, trim=False)


def split_text(
    text: str,
    max_tokens: int,
    token_counter: Callable[[str], int] | None = None,
) -> list[Chunk]:
    """Split text into ordered, non-overlapping chunks of at most max_tokens.

    Args:
        text: Source text (whitespace is preserved verbatim)
        max_tokens: Maximum tokens per chunk
        token_counter: Function returning the token count of a string
            (default: tiktoken cl100k_base)

    Returns:
        Chunks indexed from 0; empty list for empty text

    Raises:
        ValueError: If max_tokens is not positive
    """
    if max_tokens <= 0:
        raise ValueError("max_tokens must be positive")
    if not text:
        return []

    splitter = _create_splitter(max_tokens, token_counter)
    counter = token_counter if token_counter is not None else count_tokens

    chunks: list[Chunk] = []
    for start, piece in splitter.chunk_indices(text):
        if not piece:
            continue
        token_count = counter(piece)
        chunks.append(
            Chunk(
                index=len(chunks),
                text=piece,
                start=start,
                token_count=token_count,
                oversized=token_count > max_tokens,
            )
        )
    return chunks


def build_document(
    document_id: str,
    text: str,
    max_tokens: int,
    token_counter: Callable[[str], int] | None = None,
) -> Document:
    """Chunk text and wrap the result in an immutable Document.

    Args:
        document_id: Identifier for the document (file stem)
        text: Full document text
        max_tokens: Maximum tokens per chunk
        token_counter: Optional token counting function

    Returns:
        Document holding the chunks as a tuple
    """
    return Document(
        document_id=document_id,
        chunks=tuple(split_text(text, max_tokens, token_counter)),
    )
