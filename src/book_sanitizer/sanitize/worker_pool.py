"""Bounded-concurrency worker pool, one per backend configuration.

Jobs enter an unbounded asyncio.Queue and are drained by a fixed number of
worker tasks, so at most `concurrency` jobs of a configuration are inside
the retry controller at once. Backpressure stays in the queue instead of
piling requests onto the endpoint.

When any job fails fatally the pool aborts: jobs already running finish,
every job still queued (or submitted later) is resolved as
configuration_aborted without touching the network.
A result the callback cannot deliver is logged and counted in
delivery_errors; the pool keeps running.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from book_sanitizer.sanitize.models import ChunkResult, Failed, FailureKind

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from book_sanitizer.sanitize.configuration import BackendConfiguration
    from book_sanitizer.sanitize.models import Job
    from book_sanitizer.sanitize.retry import RetryController

logger = logging.getLogger("book_sanitizer.pool")


class WorkerPool:
    """Executes jobs of one configuration with bounded concurrency.

    Args:
        configuration: Configuration whose jobs this pool runs
        controller: Retry controller used for every job
        on_result: Awaited once with each job and its terminal result
    """

    def __init__(
        self,
        configuration: BackendConfiguration,
        controller: RetryController,
        on_result: Callable[[Job, ChunkResult], Awaitable[None]],
    ) -> None:
        self._configuration = configuration
        self._controller = controller
        self._on_result = on_result
        self._queue: asyncio.Queue[Job] = asyncio.Queue()
        self._workers: list[asyncio.Task[None]] = []
        self._aborted = False
        self._abort_reason: str | None = None
        self.in_flight = 0
        self.peak_in_flight = 0
        self.delivery_errors = 0

    @property
    def name(self) -> str:
        return self._configuration.name

    @property
    def concurrency(self) -> int:
        return self._configuration.concurrency

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def abort_reason(self) -> str | None:
        return self._abort_reason

    async def start(self) -> None:
        """Spawn the worker tasks."""
        if self._workers:
            raise RuntimeError(f"Worker pool {self.name} already started")
        self._workers = [
            asyncio.create_task(self._worker(), name=f"{self.name}-worker-{slot}")
            for slot in range(self.concurrency)
        ]
        logger.info("Started pool %s with %d worker(s)", self.name, self.concurrency)

    async def submit(self, job: Job) -> None:
        """Queue a job, or resolve it immediately if the pool was aborted.

        Raises:
            ValueError: If the job belongs to another configuration
        """
        if job.configuration_id != self.name:
            raise ValueError(f"Job for {job.configuration_id} submitted to pool {self.name}")
        if self._aborted:
            await self._emit(job, self._aborted_result(job))
            return
        self._queue.put_nowait(job)

    async def abort(self, reason: str) -> None:
        """Stop intake and resolve every queued job as aborted.

        Args:
            reason: Description of the fatal failure that caused the abort
        """
        if self._aborted:
            return
        self._aborted = True
        self._abort_reason = reason
        logger.error("Configuration %s aborted: %s", self.name, reason)

        drained = 0
        while True:
            try:
                job = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            try:
                await self._emit(job, self._aborted_result(job))
            finally:
                self._queue.task_done()
            drained += 1

        if drained:
            logger.warning("Marked %d queued job(s) of %s as aborted", drained, self.name)

    async def join(self) -> None:
        """Wait until every submitted job has a result, then stop the workers.

        Errors raised by the result callback are logged and counted in
        delivery_errors; they never stop the pool.
        """
        await self._queue.join()
        await self.close()
        logger.info(
            "Pool %s finished (peak in flight: %d%s)",
            self.name,
            self.peak_in_flight,
            ", aborted" if self._aborted else "",
        )
        if self.delivery_errors:
            logger.error(
                "Pool %s could not deliver %d result(s)", self.name, self.delivery_errors
            )

    async def close(self) -> None:
        """Cancel the worker tasks and wait for them to exit."""
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

    async def _worker(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                result = await self._execute(job)
                await self._emit(job, result)
            finally:
                self._queue.task_done()

    async def _execute(self, job: Job) -> ChunkResult:
        if self._aborted:
            return self._aborted_result(job)

        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            return await self._controller.run(
                job,
                on_fatal=self._on_fatal,
                should_stop=lambda: self._aborted,
            )
        except Exception as e:
            # Raised before any backend call; errors during attempts are
            # recorded by the controller with their attempt count
            logger.exception("Unexpected error processing %s", job.describe())
            return ChunkResult(
                job.chunk.index,
                self.name,
                Failed(
                    reason=FailureKind.REJECTED,
                    detail=f"unexpected error: {type(e).__name__}: {e}",
                    attempts_used=0,
                ),
            )
        finally:
            self.in_flight -= 1

    async def _on_fatal(self, job: Job, reason: str) -> None:
        await self.abort(f"{job.describe()}: {reason}")

    async def _emit(self, job: Job, result: ChunkResult) -> None:
        try:
            await self._on_result(job, result)
        except Exception:
            logger.exception("Could not deliver result for %s", job.describe())
            self.delivery_errors += 1

    def _aborted_result(self, job: Job) -> ChunkResult:
        return ChunkResult(
            job.chunk.index,
            self.name,
            Failed(
                reason=FailureKind.CONFIGURATION_ABORTED,
                detail=f"configuration aborted ({self._abort_reason})",
                attempts_used=0,
            ),
        )
