"""Data models for the chunk dispatch pipeline.

- FailureKind: severity classes for failed chunk work
- Job: one (document, chunk, configuration) unit of work
- Sanitized / Failed: terminal outcomes of a job
- ChunkResult: the single terminal result produced for a job
- DocumentResult: all chunk results of one document under one configuration
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from book_sanitizer.sanitize.chunker.models import Chunk
    from book_sanitizer.sanitize.configuration import BackendConfiguration


class FailureKind(str, Enum):
    """Why a chunk could not be sanitized."""

    TRANSIENT = "transient"
    REJECTED = "rejected"
    FATAL = "fatal"
    CHUNK_TOO_LARGE = "chunk_too_large"
    CONFIGURATION_ABORTED = "configuration_aborted"

    @property
    def retryable(self) -> bool:
        return self in (FailureKind.TRANSIENT, FailureKind.REJECTED)


@dataclass(frozen=True)
class Job:
    """A chunk submitted for processing under one configuration."""

    document_id: str
    chunk: Chunk
    configuration: BackendConfiguration

    @property
    def configuration_id(self) -> str:
        return self.configuration.name

    def describe(self) -> str:
        return f"{self.configuration.name}:{self.document_id}#{self.chunk.index}"


@dataclass(frozen=True)
class Sanitized:
    """Successful outcome carrying the rewritten text."""

    text: str


@dataclass(frozen=True)
class Failed:
    """Permanent failure outcome.

    Attributes:
        reason: Failure class of the last failed attempt
        detail: Human-readable description of the last failure
        attempts_used: Number of backend calls made (0 if never attempted)
    """

    reason: FailureKind
    detail: str
    attempts_used: int

    def describe(self) -> str:
        return f"{self.reason.value}: {self.detail}"


@dataclass(frozen=True)
class ChunkResult:
    """Terminal result for one job.

    Attributes:
        chunk_index: Index of the chunk within its document
        configuration_id: Name of the configuration that processed it
        outcome: Sanitized text or permanent failure
        attempts: Backend calls made for this job
    """

    chunk_index: int
    configuration_id: str
    outcome: Sanitized | Failed
    attempts: int = 0

    @property
    def succeeded(self) -> bool:
        return isinstance(self.outcome, Sanitized)


@dataclass(frozen=True)
class DocumentResult:
    """Fully reassembled results of one document under one configuration.

    Attributes:
        document_id: Source document identifier
        configuration_id: Configuration that produced the results
        results: One ChunkResult per chunk, in original chunk order
    """

    document_id: str
    configuration_id: str
    results: tuple[ChunkResult, ...]

    @property
    def chunk_count(self) -> int:
        return len(self.results)

    @property
    def failed_count(self) -> int:
        return sum(1 for result in self.results if not result.succeeded)
