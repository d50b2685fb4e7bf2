"""Shared pytest fixtures for book-sanitizer tests."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import pytest

from book_sanitizer.sanitize.backend import BackendError
from book_sanitizer.sanitize.chunker import Chunk, Document
from book_sanitizer.sanitize.configuration import BackendConfiguration
from book_sanitizer.sanitize.models import DocumentResult

FIXTURES_DIR = Path(__file__).parent / "fixtures"


def word_count(text: str) -> int:
    """Cheap deterministic token counter: one token per whitespace-separated word."""
    return len(text.split())


# =============================================================================
# CONFIGURATION FIXTURES
# =============================================================================


@pytest.fixture
def make_configuration() -> Any:
    """Factory fixture building BackendConfiguration objects.

    Retries default to zero delay so tests never wait.

    Usage:
        def test_something(make_configuration):
            config = make_configuration(name="local", concurrency=2)
    """

    def _make(**overrides: Any) -> BackendConfiguration:
        retry = {"max_attempts": 3, "base_delay": 0.0, "max_delay": 0.0, "jitter_fraction": 0.0}
        retry.update(overrides.pop("retry", {}))
        data: dict[str, Any] = {
            "name": "local",
            "backend": "openai",
            "api_base": "http://localhost:5001/v1",
            "model": "test-model",
            "concurrency": 2,
            "timeout_seconds": 5.0,
            "retry": retry,
        }
        data.update(overrides)
        return BackendConfiguration.model_validate(data)

    return _make


# =============================================================================
# DOCUMENT FIXTURES
# =============================================================================


@pytest.fixture
def token_counter() -> Any:
    """Word-based token counter (avoids loading tiktoken encodings)."""
    return word_count


@pytest.fixture
def make_document() -> Any:
    """Factory fixture building a Document from a list of chunk texts.

    Usage:
        def test_something(make_document):
            document = make_document("book", ["One. ", "Two. "])
    """

    def _make(document_id: str, texts: list[str]) -> Document:
        chunks: list[Chunk] = []
        offset = 0
        for index, text in enumerate(texts):
            chunks.append(Chunk(index=index, text=text, start=offset, token_count=word_count(text)))
            offset += len(text)
        return Document(document_id=document_id, chunks=tuple(chunks))

    return _make


@pytest.fixture
def ocr_text() -> str:
    """Sample noisy OCR excerpt."""
    return (FIXTURES_DIR / "ocr_excerpt.txt").read_text(encoding="utf-8")


# =============================================================================
# BACKEND STUBS
# =============================================================================


class ScriptedBackend:
    """Backend stub replaying scripted outcomes per chunk index.

    Each script entry is either a string (returned as rewritten text) or a
    BackendError instance (raised). The last entry repeats once the script
    runs out. Chunks without a script are echoed back upper-cased.

    Attributes:
        calls: (configuration name, chunk index) for every attempt, in order
        peak_concurrency: Highest number of attempts running at once
    """

    def __init__(
        self,
        scripts: dict[int, list[str | BackendError]] | None = None,
        delay: float = 0.0,
        gates: dict[int, asyncio.Event] | None = None,
    ) -> None:
        self._scripts = scripts or {}
        self._delay = delay
        self._gates = gates or {}
        self._attempts: dict[tuple[str, int], int] = {}
        self.calls: list[tuple[str, int]] = []
        self.active = 0
        self.peak_concurrency = 0

    async def attempt(self, chunk: Chunk, configuration: BackendConfiguration) -> str:
        key = (configuration.name, chunk.index)
        self.calls.append(key)
        attempt_number = self._attempts.get(key, 0)
        self._attempts[key] = attempt_number + 1

        self.active += 1
        self.peak_concurrency = max(self.peak_concurrency, self.active)
        try:
            gate = self._gates.get(chunk.index)
            if gate is not None:
                await gate.wait()
            if self._delay:
                await asyncio.sleep(self._delay)
            else:
                await asyncio.sleep(0)
        finally:
            self.active -= 1

        script = self._scripts.get(chunk.index)
        if not script:
            return chunk.text.strip().upper()
        outcome = script[min(attempt_number, len(script) - 1)]
        if isinstance(outcome, BackendError):
            raise outcome
        return outcome

    def attempts_for(self, chunk_index: int, configuration_name: str = "local") -> int:
        return self._attempts.get((configuration_name, chunk_index), 0)


@pytest.fixture
def scripted_backend() -> type[ScriptedBackend]:
    """The ScriptedBackend class, for building per-test backend stubs."""
    return ScriptedBackend


class RecordingSink:
    """Document sink keeping every emitted DocumentResult in memory."""

    def __init__(self) -> None:
        self.results: list[DocumentResult] = []

    def write(self, result: DocumentResult) -> None:
        self.results.append(result)

    def get(self, document_id: str, configuration_id: str) -> DocumentResult:
        for result in self.results:
            if result.document_id == document_id and result.configuration_id == configuration_id:
                return result
        raise KeyError((document_id, configuration_id))


@pytest.fixture
def recording_sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def sleep_recorder() -> Any:
    """Async sleep replacement recording requested delays without waiting."""

    class _Recorder:
        def __init__(self) -> None:
            self.delays: list[float] = []

        async def __call__(self, delay: float) -> None:
            self.delays.append(delay)
            await asyncio.sleep(0)

    return _Recorder()
