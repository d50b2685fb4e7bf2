"""Top-level orchestration of the chunk dispatch pipeline.

The dispatcher owns a run: it starts one worker pool per configuration,
submits one job per (document, chunk, configuration), routes every terminal
result into the result assembler, and waits for all pools to drain.
Configurations never wait on each other; an aborted configuration only
affects its own queued jobs.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from book_sanitizer.sanitize.assembler import ResultAssembler
from book_sanitizer.sanitize.chunker import count_tokens
from book_sanitizer.sanitize.documents import discover_documents, load_document
from book_sanitizer.sanitize.models import ChunkResult, Job
from book_sanitizer.sanitize.retry import RetryController
from book_sanitizer.sanitize.worker_pool import WorkerPool

if TYPE_CHECKING:
    import random
    from collections.abc import Awaitable, Callable, Sequence

    from book_sanitizer.config import RunSettings
    from book_sanitizer.sanitize.assembler import DocumentSink
    from book_sanitizer.sanitize.backend import BackendClient
    from book_sanitizer.sanitize.chunker import Document
    from book_sanitizer.sanitize.configuration import BackendConfiguration

logger = logging.getLogger("book_sanitizer.dispatcher")


@dataclass
class ConfigurationReport:
    """Outcome of one configuration across the whole run.

    Attributes:
        configuration_id: Configuration name
        sanitized: Chunks rewritten successfully
        failed: Chunks that failed permanently (any reason)
        documents_written: Document results emitted to the sink
        aborted: True if a fatal failure aborted the configuration
        abort_reason: Description of that fatal failure
        output_errors: Document results the sink failed to write
    """

    configuration_id: str
    sanitized: int = 0
    failed: int = 0
    documents_written: int = 0
    aborted: bool = False
    abort_reason: str | None = None
    output_errors: int = 0

    @property
    def aborted_without_output(self) -> bool:
        return self.aborted and self.sanitized == 0


@dataclass
class RunReport:
    """Summary of a dispatcher run."""

    documents: int
    configurations: list[ConfigurationReport] = field(default_factory=list)

    @property
    def exit_code(self) -> int:
        """1 if any configuration aborted before sanitizing anything or lost output, else 0."""
        return (
            1
            if any(
                report.aborted_without_output or report.output_errors
                for report in self.configurations
            )
            else 0
        )


class Dispatcher:
    """Runs every document through every configuration.

    Args:
        settings: Immutable run settings (directories, chunk limit, encoding)
        configurations: Backend configurations, names unique
        client: Backend client shared by all configurations
        sink: Receives each finished DocumentResult
        token_counter: Token counting function for chunking
            (default: tiktoken with settings.encoding)
        sleep: Awaitable sleep used for retry backoff
        rng: Random source for backoff jitter
    """

    def __init__(
        self,
        settings: RunSettings,
        configurations: Sequence[BackendConfiguration],
        client: BackendClient,
        sink: DocumentSink,
        *,
        token_counter: Callable[[str], int] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        names = [configuration.name for configuration in configurations]
        if not names:
            raise ValueError("At least one configuration is required")
        if len(set(names)) != len(names):
            raise ValueError(f"Configuration names must be unique: {names}")

        self._settings = settings
        self._configurations = list(configurations)
        self._client = client
        self._sink = sink
        self._token_counter = token_counter or functools.partial(
            count_tokens, encoding_name=settings.encoding
        )
        self._sleep = sleep
        self._rng = rng

    def load_documents(self) -> list[Document]:
        """Read and chunk every .txt file of the input directory."""
        paths = discover_documents(self._settings.input_dir)
        return [
            load_document(path, self._settings.max_chunk_tokens, self._token_counter)
            for path in paths
        ]

    async def run_directory(self) -> RunReport:
        """Process the input directory named in the run settings."""
        return await self.run(self.load_documents())

    async def run(self, documents: Sequence[Document]) -> RunReport:
        """Dispatch all chunks of all documents to all configurations.

        Args:
            documents: Chunked documents, identifiers unique

        Returns:
            RunReport with per-configuration counts and abort status
        """
        document_ids = [document.document_id for document in documents]
        if len(set(document_ids)) != len(document_ids):
            raise ValueError("Document identifiers must be unique")

        assembler = ResultAssembler(self._sink)
        reports = {
            configuration.name: ConfigurationReport(configuration.name)
            for configuration in self._configurations
        }

        async def on_result(job: Job, result: ChunkResult) -> None:
            report = reports[job.configuration_id]
            if result.succeeded:
                report.sanitized += 1
            else:
                report.failed += 1
            if await assembler.add(job.document_id, result) is not None:
                report.documents_written += 1

        pools = {
            configuration.name: WorkerPool(
                configuration,
                RetryController(self._client, sleep=self._sleep, rng=self._rng),
                on_result,
            )
            for configuration in self._configurations
        }

        total_jobs = sum(document.chunk_count for document in documents) * len(pools)
        logger.info(
            "Dispatching %d document(s) across %d configuration(s): %d job(s)",
            len(documents),
            len(pools),
            total_jobs,
        )

        for pool in pools.values():
            await pool.start()

        try:
            for document in documents:
                for configuration in self._configurations:
                    if document.chunk_count == 0:
                        self._expect_empty(assembler, document, reports[configuration.name])
                        continue
                    assembler.expect(document, configuration.name)
                    pool = pools[configuration.name]
                    for chunk in document.chunks:
                        await pool.submit(Job(document.document_id, chunk, configuration))

            outcomes = await asyncio.gather(
                *(pool.join() for pool in pools.values()), return_exceptions=True
            )
        finally:
            for pool in pools.values():
                await pool.close()

        for (name, pool), outcome in zip(pools.items(), outcomes, strict=True):
            report = reports[name]
            report.aborted = pool.aborted
            report.abort_reason = pool.abort_reason
            report.output_errors += pool.delivery_errors
            if isinstance(outcome, BaseException):
                logger.error("Pool %s did not finish cleanly: %s", name, outcome)
                report.output_errors += 1

        pending = assembler.pending_keys()
        if pending:
            logger.error("Run finished with incomplete documents: %s", pending)

        return RunReport(documents=len(documents), configurations=list(reports.values()))

    @staticmethod
    def _expect_empty(
        assembler: ResultAssembler, document: Document, report: ConfigurationReport
    ) -> None:
        """Register a zero-chunk document, which is written to the sink at once."""
        try:
            assembler.expect(document, report.configuration_id)
        except Exception:
            logger.exception(
                "Could not write %s for %s", document.document_id, report.configuration_id
            )
            report.output_errors += 1
        else:
            report.documents_written += 1
