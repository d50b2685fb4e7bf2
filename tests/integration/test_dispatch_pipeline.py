"""Integration tests for the full dispatch pipeline.

These tests run documents through the Dispatcher, worker pools, retry
controller and assembler together, with a stub backend in place of a
real LLM server.

Test strategy:
- Script per-chunk backend outcomes to produce mixed success/failure
- Check ordering, isolation between configurations and idempotent output
- Drive the CLI end to end with httpx.AsyncClient patched
"""

import asyncio
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from book_sanitizer.config import RunSettings
from book_sanitizer.sanitize.backend import FatalBackendError, TransientBackendError
from book_sanitizer.sanitize.chunker import Chunk
from book_sanitizer.sanitize.cli import main
from book_sanitizer.sanitize.dispatcher import Dispatcher
from book_sanitizer.sanitize.models import DocumentResult, Failed, FailureKind, Sanitized
from book_sanitizer.sanitize.yaml_writer import YamlDocumentWriter


def word_count(text: str) -> int:
    return len(text.split())


def _settings(tmp_path: Path, max_chunk_tokens: int = 5) -> RunSettings:
    return RunSettings(
        input_dir=tmp_path / "books",
        output_dir=tmp_path / "out",
        max_chunk_tokens=max_chunk_tokens,
    )


class _PerConfigurationBackend:
    """Backend stub whose behaviour depends on the configuration name."""

    def __init__(
        self,
        fatal: set[str] | None = None,
        gates: dict[str, asyncio.Event] | None = None,
    ) -> None:
        self.fatal = fatal or set()
        self.gates = gates or {}
        self.calls: list[tuple[str, int]] = []

    async def attempt(self, chunk: Chunk, configuration: Any) -> str:
        self.calls.append((configuration.name, chunk.index))
        gate = self.gates.get(configuration.name)
        if gate is not None:
            await gate.wait()
        await asyncio.sleep(0)
        if configuration.name in self.fatal:
            raise FatalBackendError("Server returned 401: bad key")
        return f"[{configuration.name}] {chunk.text.strip()}"


class _SelectivelyFailingSink:
    """Sink that cannot write results of one configuration."""

    def __init__(self, failing: str) -> None:
        self.failing = failing
        self.written: list[DocumentResult] = []

    def write(self, result: DocumentResult) -> None:
        if result.configuration_id == self.failing:
            raise OSError("No space left on device")
        self.written.append(result)


# =============================================================================
# MIXED OUTCOMES
# =============================================================================


class TestMixedOutcomes:
    """A document with a permanently failing middle chunk."""

    @pytest.mark.integration
    async def test_sanitized_failed_sanitized(
        self,
        tmp_path: Path,
        make_configuration: Any,
        make_document: Any,
        scripted_backend: Any,
        recording_sink: Any,
        sleep_recorder: Any,
    ) -> None:
        document = make_document("book", ["First part. ", "Second part. ", "Third part."])
        configuration = make_configuration(retry={"max_attempts": 3}, concurrency=3)
        backend = scripted_backend(
            {
                0: ["First part, cleaned."],
                1: [TransientBackendError("Server returned 503")],
                2: ["Third part, cleaned."],
            }
        )
        dispatcher = Dispatcher(
            _settings(tmp_path),
            [configuration],
            backend,
            recording_sink,
            token_counter=word_count,
            sleep=sleep_recorder,
        )

        report = await dispatcher.run([document])

        result = recording_sink.get("book", "local")
        outcomes = [chunk_result.outcome for chunk_result in result.results]
        assert outcomes[0] == Sanitized("First part, cleaned.")
        assert isinstance(outcomes[1], Failed)
        assert outcomes[1].reason is FailureKind.TRANSIENT
        assert outcomes[1].attempts_used == 3
        assert outcomes[2] == Sanitized("Third part, cleaned.")

        assert backend.attempts_for(1) == 3
        assert report.exit_code == 0
        assert report.configurations[0].sanitized == 2
        assert report.configurations[0].failed == 1
        assert report.configurations[0].documents_written == 1

    @pytest.mark.integration
    async def test_every_pair_emitted_once(
        self,
        tmp_path: Path,
        make_configuration: Any,
        make_document: Any,
        scripted_backend: Any,
        recording_sink: Any,
    ) -> None:
        documents = [
            make_document("a", ["One. ", "Two. ", "Three."]),
            make_document("b", ["Only."]),
            make_document("empty", []),
        ]
        configurations = [make_configuration(name="x"), make_configuration(name="y")]
        dispatcher = Dispatcher(
            _settings(tmp_path),
            configurations,
            scripted_backend(),
            recording_sink,
            token_counter=word_count,
        )

        report = await dispatcher.run(documents)

        pairs = sorted((r.document_id, r.configuration_id) for r in recording_sink.results)
        assert pairs == [(d, c) for d in ("a", "b", "empty") for c in ("x", "y")]
        assert [r.documents_written for r in report.configurations] == [3, 3]
        assert recording_sink.get("empty", "x").results == ()


# =============================================================================
# CONFIGURATION ISOLATION
# =============================================================================


class TestConfigurationIsolation:
    """Configurations never affect each other."""

    @pytest.mark.integration
    async def test_fatal_configuration_does_not_affect_other(
        self,
        tmp_path: Path,
        make_configuration: Any,
        make_document: Any,
        recording_sink: Any,
    ) -> None:
        document = make_document("book", ["One. ", "Two. ", "Three. ", "Four."])
        healthy = make_configuration(name="healthy", concurrency=2)
        broken = make_configuration(name="broken", concurrency=1)
        backend = _PerConfigurationBackend(fatal={"broken"})
        dispatcher = Dispatcher(
            _settings(tmp_path),
            [healthy, broken],
            backend,
            recording_sink,
            token_counter=word_count,
        )

        report = await dispatcher.run([document])

        healthy_result = recording_sink.get("book", "healthy")
        assert all(r.succeeded for r in healthy_result.results)

        broken_result = recording_sink.get("book", "broken")
        reasons = [r.outcome.reason for r in broken_result.results]  # type: ignore[union-attr]
        assert reasons == [FailureKind.FATAL] + [FailureKind.CONFIGURATION_ABORTED] * 3
        assert [c for c in backend.calls if c[0] == "broken"] == [("broken", 0)]

        by_name = {r.configuration_id: r for r in report.configurations}
        assert by_name["broken"].aborted
        assert "bad key" in (by_name["broken"].abort_reason or "")
        assert not by_name["healthy"].aborted
        assert report.exit_code == 1

    @pytest.mark.integration
    async def test_slow_configuration_does_not_block_other(
        self,
        tmp_path: Path,
        make_configuration: Any,
        make_document: Any,
        recording_sink: Any,
    ) -> None:
        gate = asyncio.Event()
        document = make_document("book", ["One. ", "Two."])
        backend = _PerConfigurationBackend(gates={"slow": gate})
        dispatcher = Dispatcher(
            _settings(tmp_path),
            [make_configuration(name="slow"), make_configuration(name="fast")],
            backend,
            recording_sink,
            token_counter=word_count,
        )

        run = asyncio.create_task(dispatcher.run([document]))
        async with asyncio.timeout(2):
            while not recording_sink.results:
                await asyncio.sleep(0)

        assert [r.configuration_id for r in recording_sink.results] == ["fast"]
        assert not run.done()

        gate.set()
        await run
        assert {r.configuration_id for r in recording_sink.results} == {"fast", "slow"}

    @pytest.mark.integration
    async def test_output_error_stays_in_its_configuration(
        self, tmp_path: Path, make_configuration: Any, make_document: Any
    ) -> None:
        """A sink that cannot write one configuration's files spares the others."""
        sink = _SelectivelyFailingSink(failing="a")
        documents = [
            make_document(name, [f"{name} one. ", f"{name} two."])
            for name in ("first", "second", "third")
        ]
        dispatcher = Dispatcher(
            _settings(tmp_path),
            [
                make_configuration(name="a", concurrency=2),
                make_configuration(name="b", concurrency=1),
            ],
            _PerConfigurationBackend(),
            sink,
            token_counter=word_count,
        )

        report = await dispatcher.run(documents)

        assert sorted(r.document_id for r in sink.written) == ["first", "second", "third"]
        assert {r.configuration_id for r in sink.written} == {"b"}
        by_name = {r.configuration_id: r for r in report.configurations}
        assert by_name["a"].output_errors == 3
        assert by_name["a"].documents_written == 0
        assert by_name["a"].sanitized == 6
        assert by_name["b"].output_errors == 0
        assert by_name["b"].documents_written == 3
        assert report.exit_code == 1

    @pytest.mark.integration
    async def test_output_error_for_empty_document(
        self, tmp_path: Path, make_configuration: Any, make_document: Any
    ) -> None:
        sink = _SelectivelyFailingSink(failing="a")
        dispatcher = Dispatcher(
            _settings(tmp_path),
            [make_configuration(name="a"), make_configuration(name="b")],
            _PerConfigurationBackend(),
            sink,
            token_counter=word_count,
        )

        report = await dispatcher.run([make_document("blank", [])])

        by_name = {r.configuration_id: r for r in report.configurations}
        assert by_name["a"].output_errors == 1
        assert by_name["b"].documents_written == 1
        assert [r.configuration_id for r in sink.written] == ["b"]

    @pytest.mark.unit
    def test_configuration_names_must_be_unique(
        self, tmp_path: Path, make_configuration: Any, scripted_backend: Any, recording_sink: Any
    ) -> None:
        with pytest.raises(ValueError, match="unique"):
            Dispatcher(
                _settings(tmp_path),
                [make_configuration(name="a"), make_configuration(name="a")],
                scripted_backend(),
                recording_sink,
            )

    @pytest.mark.unit
    def test_at_least_one_configuration(
        self, tmp_path: Path, scripted_backend: Any, recording_sink: Any
    ) -> None:
        with pytest.raises(ValueError, match="At least one"):
            Dispatcher(_settings(tmp_path), [], scripted_backend(), recording_sink)


# =============================================================================
# FILE OUTPUT
# =============================================================================


class TestDirectoryRun:
    """Runs over an input directory writing YAML files."""

    @pytest.mark.integration
    async def test_output_is_byte_identical_across_runs(
        self,
        tmp_path: Path,
        make_configuration: Any,
        scripted_backend: Any,
        sleep_recorder: Any,
        ocr_text: str,
    ) -> None:
        books = tmp_path / "books"
        books.mkdir()
        (books / "excerpt.txt").write_text(ocr_text, encoding="utf-8")
        (books / "short.txt").write_text("Tlie end.", encoding="utf-8")
        configuration = make_configuration(concurrency=3)

        outputs = []
        for run in ("first", "second"):
            settings = RunSettings(
                input_dir=books, output_dir=tmp_path / run, max_chunk_tokens=12
            )
            writer = YamlDocumentWriter(settings.output_dir)
            backend = scripted_backend({1: [TransientBackendError("Server returned 503")]})
            dispatcher = Dispatcher(
                settings,
                [configuration],
                backend,
                writer,
                token_counter=word_count,
                sleep=sleep_recorder,
            )
            await dispatcher.run_directory()
            outputs.append(
                {path.name: path.read_bytes() for path in sorted(writer.written)}
            )

        assert set(outputs[0]) == {"excerpt.yaml", "short.yaml"}
        assert outputs[0] == outputs[1]

    @pytest.mark.integration
    async def test_unpunctuated_page_reaches_backend(
        self,
        tmp_path: Path,
        make_configuration: Any,
        scripted_backend: Any,
        recording_sink: Any,
    ) -> None:
        """A long page without sentence breaks is split and sanitized."""
        books = tmp_path / "books"
        books.mkdir()
        (books / "scan.txt").write_text(
            " ".join(f"tlie{i}" for i in range(1200)), encoding="utf-8"
        )
        backend = scripted_backend()
        dispatcher = Dispatcher(
            _settings(tmp_path, max_chunk_tokens=500),
            [make_configuration()],
            backend,
            recording_sink,
            token_counter=word_count,
        )

        report = await dispatcher.run_directory()

        result = recording_sink.get("scan", "local")
        assert result.chunk_count >= 3
        assert all(r.succeeded for r in result.results)
        assert len(backend.calls) == result.chunk_count
        assert report.configurations[0].failed == 0

    @pytest.mark.integration
    def test_cli_end_to_end(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        """book-sanitize with a mocked HTTP server writes one YAML per book."""
        books = tmp_path / "books"
        books.mkdir()
        (books / "book.txt").write_text("Tlie cat sat. Tlie dog ran.", encoding="utf-8")
        config = tmp_path / "local.yaml"
        config.write_text(
            "name: local\napi_base: http://localhost:5001/v1\nmodel: m\nconcurrency: 2\n",
            encoding="utf-8",
        )

        response = MagicMock()
        response.status_code = 200
        response.json.return_value = {
            "choices": [{"message": {"content": '{"sanitizedBookExcerpt": "The animal moved."}'}}]
        }

        argv = [
            "book-sanitize",
            "-i",
            str(books),
            "-o",
            str(tmp_path / "out"),
            "--config",
            str(config),
            "--max-tokens",
            "3",
            "--log-dir",
            str(tmp_path / "logs"),
        ]

        with (
            patch("sys.argv", argv),
            patch("httpx.AsyncClient") as mock_client_cls,
            patch(
                "book_sanitizer.sanitize.dispatcher.count_tokens",
                side_effect=lambda text, encoding_name: word_count(text),
            ),
        ):
            mock_client = mock_client_cls.return_value
            mock_client.post = AsyncMock(return_value=response)
            mock_client.aclose = AsyncMock()

            with pytest.raises(SystemExit) as exc_info:
                main()

        assert exc_info.value.code == 0
        assert mock_client.post.await_count == 2
        mock_client.aclose.assert_awaited_once()

        output = (tmp_path / "out" / "local" / "book.yaml").read_text(encoding="utf-8")
        assert "chunk_count: 2" in output
        assert output.count("The animal moved.") == 2
        assert "local: ok, 2 sanitized, 0 failed" in capsys.readouterr().out
