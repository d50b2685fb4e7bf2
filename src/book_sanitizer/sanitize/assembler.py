"""Reassembly of out-of-order chunk results into ordered document results.

Results arrive in completion order. Each (document, configuration) pair owns
a slot list sized to the document's chunk count; a result is written into
the slot at its chunk index under a lock scoped to that pair. Once every slot
is filled the finished DocumentResult goes to the sink and the pair is
retired. Partially filled pairs are never handed out.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Protocol

from book_sanitizer.sanitize.models import DocumentResult

if TYPE_CHECKING:
    from book_sanitizer.sanitize.chunker.models import Document
    from book_sanitizer.sanitize.models import ChunkResult

logger = logging.getLogger("book_sanitizer.assembler")

SlotKey = tuple[str, str]


class DocumentSink(Protocol):
    def write(self, result: DocumentResult) -> None: ...


class AssemblyError(Exception):
    """Raised when a chunk result does not fit the registered slots."""

    pass


class ResultAssembler:
    """Collects ChunkResults and emits complete DocumentResults.

    Args:
        sink: Receives each DocumentResult once all of its chunks are in
    """

    def __init__(self, sink: DocumentSink) -> None:
        self._sink = sink
        self._slots: dict[SlotKey, list[ChunkResult | None]] = {}
        self._filled: dict[SlotKey, int] = {}
        self._locks: dict[SlotKey, asyncio.Lock] = {}
        self._completed: set[SlotKey] = set()

    @property
    def completed_count(self) -> int:
        return len(self._completed)

    def pending_keys(self) -> list[SlotKey]:
        """(document_id, configuration_id) pairs still waiting for results."""
        return sorted(self._slots)

    def expect(self, document: Document, configuration_id: str) -> None:
        """Open result slots for a document under one configuration.

        Must be called before any job for the pair is submitted. A document
        without chunks is complete immediately and emitted right away.

        Raises:
            AssemblyError: If the pair was already registered
        """
        key = (document.document_id, configuration_id)
        if key in self._slots or key in self._completed:
            raise AssemblyError(f"Slots for {key} already registered")

        if document.chunk_count == 0:
            self._finish(key, ())
            return

        self._slots[key] = [None] * document.chunk_count
        self._filled[key] = 0
        self._locks[key] = asyncio.Lock()

    async def add(self, document_id: str, result: ChunkResult) -> DocumentResult | None:
        """Record one chunk result.

        Args:
            document_id: Document the chunk belongs to
            result: Terminal result of the chunk's job

        Returns:
            The finished DocumentResult if this result completed it, else None

        Raises:
            AssemblyError: If the pair is unknown, the index is out of range,
                or the slot is already filled
        """
        key = (document_id, result.configuration_id)
        lock = self._locks.get(key)
        if lock is None:
            raise AssemblyError(f"No open slots for {key}")

        async with lock:
            slots = self._slots[key]
            index = result.chunk_index
            if not 0 <= index < len(slots):
                raise AssemblyError(
                    f"Chunk index {index} out of range for {key} ({len(slots)} chunks)"
                )
            if slots[index] is not None:
                raise AssemblyError(f"Duplicate result for chunk {index} of {key}")

            slots[index] = result
            self._filled[key] += 1
            if self._filled[key] < len(slots):
                return None

            finished = tuple(slot for slot in slots if slot is not None)
            del self._slots[key]
            del self._filled[key]
            del self._locks[key]
            return self._finish(key, finished)

    def _finish(self, key: SlotKey, results: tuple[ChunkResult, ...]) -> DocumentResult:
        document_id, configuration_id = key
        document_result = DocumentResult(
            document_id=document_id,
            configuration_id=configuration_id,
            results=results,
        )
        self._completed.add(key)
        logger.debug(
            "Assembled %s under %s (%d chunks, %d failed)",
            document_id,
            configuration_id,
            document_result.chunk_count,
            document_result.failed_count,
        )
        self._sink.write(document_result)
        return document_result
