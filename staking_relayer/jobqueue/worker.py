from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

from loguru import logger

from staking_relayer.jobqueue.constants import JobStatus, QueuePolicy
from staking_relayer.jobqueue.db import JobQueueDB, JobRecord, policy_for

JobHandler = Callable[[str, dict[str, Any]], Awaitable[Any]]


class QueueWorker:
    """Consume one queue with bounded concurrency.

    The handler receives ``(job_name, payload)``; a return value is stored as
    the job result, an exception counts as a failed attempt.
    """

    def __init__(
        self,
        db: JobQueueDB,
        queue: str,
        handler: JobHandler,
        *,
        concurrency: int = 1,
        poll_interval_s: float = 1.0,
        policy: QueuePolicy | None = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.db = db
        self.queue = queue
        self.handler = handler
        self.concurrency = int(concurrency)
        self.poll_interval_s = float(poll_interval_s)
        self.policy = policy or policy_for(queue)
        self.logger = logger.bind(component="QueueWorker", queue=queue)

    async def process_one(self, job: JobRecord) -> JobStatus:
        try:
            result = await self.handler(job.name, job.payload)
        except Exception as exc:  # noqa: BLE001
            status, delay_s = self.db.fail(job.id, f"{type(exc).__name__}: {exc}")
            if status == JobStatus.FAILED:
                self.logger.error(
                    f"Job {job.id} ({job.name}) failed after {job.attempts_made} attempts: {exc}"
                )
                self._prune()
            else:
                self.logger.warning(
                    f"Job {job.id} ({job.name}) attempt {job.attempts_made} failed: {exc}; "
                    f"retrying in {delay_s:.1f}s"
                )
            return status

        self.db.complete(job.id, result)
        self.logger.debug(f"Job {job.id} ({job.name}) completed")
        self._prune()
        return JobStatus.COMPLETED

    def _prune(self) -> None:
        self.db.prune(
            self.queue,
            keep_completed=self.policy.keep_completed,
            keep_failed=self.policy.keep_failed,
        )

    async def drain(self) -> int:
        """Process jobs that are available right now, one at a time."""
        processed = 0
        while (job := self.db.claim_next(self.queue)) is not None:
            await self.process_one(job)
            processed += 1
        return processed

    async def run(self, stop_event: asyncio.Event) -> None:
        self.logger.info(
            f"Worker started on {self.queue} (concurrency={self.concurrency})"
        )
        slots = [
            asyncio.create_task(self._slot(stop_event), name=f"{self.queue}-{i}")
            for i in range(self.concurrency)
        ]
        try:
            await asyncio.gather(*slots)
        finally:
            for task in slots:
                task.cancel()
            self.logger.info(f"Worker stopped on {self.queue}")

    async def _slot(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                job = self.db.claim_next(self.queue)
            except Exception as exc:  # noqa: BLE001
                self.logger.exception(f"Failed to claim job: {exc}")
                job = None
            if job is not None:
                await self.process_one(job)
                continue
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.poll_interval_s)
            except TimeoutError:
                pass
