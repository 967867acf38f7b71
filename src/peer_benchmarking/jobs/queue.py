"""Durable priority job queue.

This module provides the JobQueue class that owns the job state machine:
PENDING -> RUNNING -> COMPLETED | FAILED, and FAILED -> PENDING while
retries remain.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

from peer_benchmarking.exceptions import JobStateError
from peer_benchmarking.jobs.models import BenchmarkJob, JobPayload, JobPriority, JobStatus
from peer_benchmarking.storage.store import BenchmarkStore

logger = logging.getLogger(__name__)

# Default values
DEFAULT_MAX_RETRIES = 3
MAX_ERROR_MESSAGE_LENGTH = 2000


class JobQueue:
    """Priority queue of benchmark jobs backed by the store.

    Dequeue order is HIGH, MEDIUM, LOW, then earliest scheduled_at, then
    id. Every claim is a conditional PENDING -> RUNNING update, so a job is
    executed by at most one caller at a time and a RUNNING job is never
    dequeued again.

    Example:
        ```python
        queue = JobQueue(store, max_retries=3)
        job_id = await queue.create(BenchmarkUpdatePayload(address), JobPriority.HIGH)
        for job in await queue.dequeue(10):
            ...
            await queue.complete(job)
        ```
    """

    def __init__(self, store: BenchmarkStore, *, max_retries: int = DEFAULT_MAX_RETRIES) -> None:
        """Initialize the queue.

        Args:
            store: Backing store.
            max_retries: Default retry budget for new jobs.
        """
        self._store = store
        self.max_retries = max_retries

    async def create(
        self,
        payload: JobPayload,
        priority: JobPriority = JobPriority.MEDIUM,
        *,
        delay_seconds: float = 0,
        max_retries: int | None = None,
        now: datetime | None = None,
    ) -> int:
        """Create a PENDING job scheduled at now + delay.

        Returns:
            The new job id.
        """
        if delay_seconds < 0:
            raise ValueError("delay_seconds must be non-negative")
        ts = now or datetime.now(UTC)
        job = BenchmarkJob(
            payload=payload,
            priority=priority,
            scheduled_at=ts + timedelta(seconds=delay_seconds),
            max_retries=self.max_retries if max_retries is None else max_retries,
        )
        job_id = await self._store.create_job(job)
        logger.debug(
            "Created %s job %d for %s (priority=%s)",
            payload.job_type.value,
            job_id,
            payload.target,
            priority.value,
        )
        return job_id

    async def dequeue(self, limit: int, *, now: datetime | None = None) -> list[BenchmarkJob]:
        """Claim up to ``limit`` due jobs in priority order.

        Jobs claimed concurrently by another caller are skipped.
        """
        if limit <= 0:
            return []
        ts = now or datetime.now(UTC)
        claimed: list[BenchmarkJob] = []
        for job in await self._store.list_pending(limit, now=ts):
            assert job.id is not None
            running = await self._store.claim_job(job.id, now=ts)
            if running is None:
                logger.debug("Job %d was claimed elsewhere", job.id)
                continue
            claimed.append(running)
        return claimed

    async def complete(self, job: BenchmarkJob, *, now: datetime | None = None) -> None:
        assert job.id is not None
        await self._store.set_job_status(job.id, JobStatus.COMPLETED, now=now)

    async def fail(self, job: BenchmarkJob, error: str, *, now: datetime | None = None) -> JobStatus:
        """Record a failed execution.

        Returns:
            PENDING if the job was requeued, FAILED if it is terminally failed.
        """
        assert job.id is not None
        status = await self._store.fail_job(job.id, error[:MAX_ERROR_MESSAGE_LENGTH], now=now)
        if status is JobStatus.PENDING:
            logger.info(
                "Job %d (%s) failed, requeued (attempt %d of %d): %s",
                job.id,
                job.job_type.value,
                job.retry_count + 1,
                job.max_retries + 1,
                error,
            )
        else:
            logger.warning(
                "Job %d (%s) failed permanently after %d attempts: %s",
                job.id,
                job.job_type.value,
                job.retry_count + 1,
                error,
            )
        return status

    async def reap_stuck(self, older_than: timedelta, *, now: datetime | None = None) -> list[JobStatus]:
        """Fail jobs left RUNNING longer than ``older_than``.

        Reaped jobs follow the normal retry rule.
        """
        ts = now or datetime.now(UTC)
        outcomes: list[JobStatus] = []
        for job in await self._store.list_running_started_before(ts - older_than):
            try:
                outcomes.append(await self.fail(job, f"Reaped: RUNNING longer than {older_than}", now=ts))
            except JobStateError:
                # Finished between the listing and the update
                logger.debug("Job %s left RUNNING before it could be reaped", job.id)
        return outcomes

    async def has_open_job(self, payload: JobPayload) -> bool:
        return await self._store.has_open_job(payload)

    async def pending_count(self) -> int:
        return await self._store.count_pending_jobs()

    async def get(self, job_id: int) -> BenchmarkJob | None:
        return await self._store.get_job(job_id)
