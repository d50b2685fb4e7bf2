"""Retry controller wrapping backend calls with exponential backoff.

Each job moves through these states:

    PENDING -> ATTEMPTING -> SUCCEEDED
                          -> RETRYING -> ATTEMPTING ...
                          -> FAILED_PERMANENTLY

Backoff before retry k+1 is min(base_delay * multiplier**(k-1), max_delay)
plus uniform jitter of up to jitter_fraction of that delay, the total capped
at max_delay. Waiting uses an awaitable sleep so a job in backoff never holds
the event loop.
"""

from __future__ import annotations

import asyncio
import logging
import random
from enum import Enum
from typing import TYPE_CHECKING

from book_sanitizer.sanitize.backend import BackendError, TransientBackendError
from book_sanitizer.sanitize.models import ChunkResult, Failed, FailureKind, Sanitized

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from book_sanitizer.sanitize.backend import BackendClient
    from book_sanitizer.sanitize.configuration import RetryPolicy
    from book_sanitizer.sanitize.models import Job

logger = logging.getLogger("book_sanitizer.retry")


class JobState(str, Enum):
    PENDING = "pending"
    ATTEMPTING = "attempting"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED_PERMANENTLY = "failed_permanently"


def compute_backoff_delay(policy: RetryPolicy, attempts_used: int, rng: random.Random) -> float:
    """Compute the wait before the next attempt.

    Args:
        policy: Retry policy of the job's configuration
        attempts_used: Attempts made so far (1 after the first failure)
        rng: Random source for jitter

    Returns:
        Delay in seconds, never more than policy.max_delay
    """
    delay = min(policy.base_delay * policy.multiplier ** (attempts_used - 1), policy.max_delay)
    jitter = rng.uniform(0, delay * policy.jitter_fraction) if policy.jitter_fraction > 0 else 0.0
    return min(delay + jitter, policy.max_delay)


class RetryController:
    """Turns one job into exactly one terminal ChunkResult.

    Args:
        client: Backend client performing single attempts
        sleep: Awaitable sleep used for backoff (default: asyncio.sleep)
        rng: Random source for jitter (default: a fresh random.Random)
    """

    def __init__(
        self,
        client: BackendClient,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self._client = client
        self._sleep = sleep
        self._rng = rng if rng is not None else random.Random()

    async def run(
        self,
        job: Job,
        *,
        on_fatal: Callable[[Job, str], Awaitable[None]] | None = None,
        should_stop: Callable[[], bool] | None = None,
    ) -> ChunkResult:
        """Process a job until it succeeds or fails permanently.

        Args:
            job: Job to process
            on_fatal: Awaited with the job and reason when an attempt fails fatally
            should_stop: Polled before each retry; when it returns True the job
                gives up with its last failure instead of calling the backend again

        Returns:
            The job's single terminal ChunkResult
        """
        chunk = job.chunk
        configuration = job.configuration
        policy = configuration.retry
        self._transition(job, JobState.PENDING)

        # Blank chunks have nothing to rewrite
        if not chunk.text.strip():
            self._transition(job, JobState.SUCCEEDED)
            return ChunkResult(chunk.index, configuration.name, Sanitized(""), attempts=0)

        too_large_detail = self._too_large(job)
        if too_large_detail is not None:
            logger.error("Skipping %s: %s", job.describe(), too_large_detail)
            return self._failed(job, FailureKind.CHUNK_TOO_LARGE, too_large_detail, 0)

        attempts = 0
        rejected = 0
        try:
            while True:
                attempts += 1
                self._transition(job, JobState.ATTEMPTING)
                try:
                    async with asyncio.timeout(configuration.timeout_seconds):
                        text = await self._client.attempt(chunk, configuration)
                except TimeoutError:
                    error: BackendError = TransientBackendError(
                        f"Call exceeded {configuration.timeout_seconds}s timeout"
                    )
                except BackendError as e:
                    error = e
                else:
                    self._transition(job, JobState.SUCCEEDED)
                    if attempts > 1:
                        logger.info("%s succeeded on attempt %d", job.describe(), attempts)
                    return ChunkResult(
                        chunk.index, configuration.name, Sanitized(text), attempts=attempts
                    )

                kind = error.kind
                if kind is FailureKind.FATAL:
                    logger.error("Fatal failure for %s: %s", job.describe(), error)
                    if on_fatal is not None:
                        await on_fatal(job, str(error))
                    return self._failed(job, kind, str(error), attempts)

                if kind is FailureKind.REJECTED:
                    rejected += 1

                if attempts >= policy.max_attempts or (
                    kind is FailureKind.REJECTED and rejected >= policy.max_rejected_attempts
                ):
                    logger.error(
                        "%s failed permanently after %d attempt(s): %s",
                        job.describe(),
                        attempts,
                        error,
                    )
                    return self._failed(job, kind, str(error), attempts)

                if should_stop is not None and should_stop():
                    logger.info("Not retrying %s: configuration aborted", job.describe())
                    return self._failed(job, kind, str(error), attempts)

                delay = compute_backoff_delay(policy, attempts, self._rng)
                logger.warning(
                    "Attempt %d/%d for %s failed (%s: %s); retrying in %.2fs",
                    attempts,
                    policy.max_attempts,
                    job.describe(),
                    kind.value,
                    error,
                    delay,
                )
                self._transition(job, JobState.RETRYING)
                await self._sleep(delay)

                # The configuration may have been aborted while this job slept
                if should_stop is not None and should_stop():
                    logger.info("Not retrying %s: configuration aborted", job.describe())
                    return self._failed(job, kind, str(error), attempts)
        except Exception as e:
            logger.exception(
                "Unexpected error processing %s after %d attempt(s)", job.describe(), attempts
            )
            return self._failed(
                job, FailureKind.REJECTED, f"unexpected error: {type(e).__name__}: {e}", attempts
            )

    @staticmethod
    def _too_large(job: Job) -> str | None:
        """Describe why a chunk exceeds what its backend accepts, or return None."""
        chunk = job.chunk
        if chunk.oversized:
            return f"chunk has {chunk.token_count} tokens and cannot be split below the chunk limit"
        ceiling = job.configuration.max_input_tokens
        if ceiling is not None and chunk.token_count > ceiling:
            return f"chunk has {chunk.token_count} tokens, endpoint accepts {ceiling}"
        return None

    def _failed(self, job: Job, kind: FailureKind, detail: str, attempts: int) -> ChunkResult:
        self._transition(job, JobState.FAILED_PERMANENTLY)
        return ChunkResult(
            job.chunk.index,
            job.configuration.name,
            Failed(reason=kind, detail=detail, attempts_used=attempts),
            attempts=attempts,
        )

    @staticmethod
    def _transition(job: Job, state: JobState) -> None:
        logger.debug("%s -> %s", job.describe(), state.value)
