"""Data models for chunked documents.

- Chunk: a contiguous span of a document's text with its token count
- Document: a source file split into an ordered, immutable tuple of chunks
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Chunk:
    """Single chunk of source text.

    Attributes:
        index: Order within the document (0-indexed, contiguous)
        text: Raw text span, exactly as it appears in the source
        start: Character offset of the span in the source text
        token_count: Size of the span in tokens
        oversized: True when the span is one indivisible unit larger than
            the chunk limit (emitted whole rather than truncated)
    """

    index: int
    text: str
    start: int
    token_count: int
    oversized: bool = False

    @property
    def end(self) -> int:
        """Character offset one past the end of the span."""
        return self.start + len(self.text)


@dataclass(frozen=True)
class Document:
    """Source document split into chunks.

    Attributes:
        document_id: Source file name with the extension stripped
        chunks: Ordered chunks whose concatenation is the source text
    """

    document_id: str
    chunks: tuple[Chunk, ...]

    @property
    def chunk_count(self) -> int:
        return len(self.chunks)

    @property
    def text(self) -> str:
        """Reassemble the source text from the chunks."""
        return "".join(chunk.text for chunk in self.chunks)
