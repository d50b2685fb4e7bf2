"""Discovery and loading of input text files."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from book_sanitizer.sanitize.chunker import build_document

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from book_sanitizer.sanitize.chunker import Document

logger = logging.getLogger("book_sanitizer.documents")


def discover_documents(input_dir: Path) -> list[Path]:
    """List the .txt files directly inside input_dir, sorted by name.

    Raises:
        FileNotFoundError: If input_dir does not exist
    """
    if not input_dir.is_dir():
        raise FileNotFoundError(f"Input directory not found: {input_dir}")
    return sorted(path for path in input_dir.glob("*.txt") if path.is_file())


def load_document(
    path: Path,
    max_tokens: int,
    token_counter: Callable[[str], int] | None = None,
) -> Document:
    """Read a text file and chunk it into a Document named after the file stem.

    OCR output is often not clean UTF-8, so undecodable bytes are replaced
    rather than failing the whole file.
    """
    text = path.read_text(encoding="utf-8", errors="replace")
    document = build_document(path.stem, text, max_tokens, token_counter)
    oversized = sum(1 for chunk in document.chunks if chunk.oversized)
    logger.debug(
        "Loaded %s: %d chars, %d chunks (%d oversized)",
        path.name,
        len(text),
        document.chunk_count,
        oversized,
    )
    return document
