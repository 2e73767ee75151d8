"""Bounded in-process work queue for fire-and-forget side effects.

Jobs are zero-argument coroutine factories. Each one is retried with
exponential backoff until it succeeds or runs out of attempts, so delivery is
at-least-once and handlers must be idempotent. The caller never waits on a
job and never sees its failure.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog
from tenacity import AsyncRetrying, RetryError, stop_after_attempt, wait_exponential

from bookrec.metrics import BACKGROUND_JOBS

logger = structlog.get_logger()

JobFactory = Callable[[], Awaitable[Any]]


@dataclass
class Job:
    name: str
    factory: JobFactory
    context: dict = field(default_factory=dict)


class BackgroundQueue:
    def __init__(
        self,
        maxsize: int = 1000,
        workers: int = 2,
        max_attempts: int = 3,
        retry_wait_max: float = 5.0,
    ):
        self._queue: asyncio.Queue[Optional[Job]] = asyncio.Queue(maxsize=maxsize)
        self._worker_count = workers
        self._max_attempts = max_attempts
        self._retry_wait_max = retry_wait_max
        self._workers: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def pending(self) -> int:
        return self._queue.qsize()

    async def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._run(i), name=f"bookrec-worker-{i}")
            for i in range(self._worker_count)
        ]
        logger.info("background_queue_started", workers=self._worker_count)

    async def stop(self, drain: bool = True) -> None:
        if not self._workers:
            return
        if drain:
            await self._queue.join()
        for _ in self._workers:
            await self._queue.put(None)
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("background_queue_stopped")

    async def join(self) -> None:
        await self._queue.join()

    def submit(self, name: str, factory: JobFactory, **context) -> bool:
        """Enqueue a job; returns False (and logs) if the queue is full."""
        try:
            self._queue.put_nowait(Job(name=name, factory=factory, context=context))
        except asyncio.QueueFull:
            BACKGROUND_JOBS.labels(job=name, status="rejected").inc()
            logger.warning("background_queue_full", job=name, **context)
            return False
        return True

    async def _run(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                if job is None:
                    return
                await self._execute(job)
            finally:
                self._queue.task_done()

    async def _execute(self, job: Job) -> None:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=0.5, min=0, max=self._retry_wait_max),
            reraise=False,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.info(
                            "background_job_retry",
                            job=job.name,
                            attempt=attempt.retry_state.attempt_number,
                            **job.context,
                        )
                    await job.factory()
        except RetryError as exc:
            error = exc.last_attempt.exception()
            BACKGROUND_JOBS.labels(job=job.name, status="failed").inc()
            logger.error(
                "background_job_failed",
                job=job.name,
                attempts=self._max_attempts,
                error=str(error),
                **job.context,
            )
            return
        BACKGROUND_JOBS.labels(job=job.name, status="succeeded").inc()
