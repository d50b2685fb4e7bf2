"""Chunker package - lossless, token-bounded text chunking.

Public API:
- Chunk: Single chunk with its source offset and token count
- Document: Source file split into an immutable tuple of chunks
- split_text: Split text into chunks of at most max_tokens
- build_document: Chunk text into a Document
- count_tokens: Token counting utility (tiktoken)
"""

from book_sanitizer.sanitize.chunker.models import Chunk, Document
from book_sanitizer.sanitize.chunker.splitting import build_document, split_text
from book_sanitizer.sanitize.chunker.token_counting import DEFAULT_ENCODING, count_tokens

__all__ = [
    "DEFAULT_ENCODING",
    "Chunk",
    "Document",
    "build_document",
    "count_tokens",
    "split_text",
]
